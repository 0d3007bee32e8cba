# =============================================================================
# Account Model
# =============================================================================
# An email account: where to retrieve mail (IMAP), where to submit it (SMTP),
# and what the sync core last knew about its health.
#
# IMPORTANT: Passwords are NOT stored here. They live in the system keyring
# and are resolved through kestrel.credentials at connect time.
# =============================================================================

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class SyncStatus(Enum):
    """
    Account-level health as shown to the user.

    CONNECTED means the last pass finished cleanly. OFFLINE means the server
    could not be reached. ERROR covers everything that needs the user's
    attention (bad password, protocol trouble, storage failure).
    """
    IDLE = "idle"
    SYNCING = "syncing"
    CONNECTED = "connected"
    OFFLINE = "offline"
    ERROR = "error"


SECURITY_MODES = ("ssl", "starttls", "plain")


@dataclass
class Account:
    """
    Represents an email account with IMAP and SMTP configuration.

    Attributes:
        name: A unique identifier for this account (e.g., "personal", "work").
              Used as the key in config files and for keyring lookups.
        email: The email address; also the login username.
        display_name: The name shown in the "From" field when sending emails.
                      Defaults to the email address if not specified.

        imap_host: Hostname of the IMAP server.
        imap_port: 993 for implicit TLS, 143 for STARTTLS.
        imap_security: "ssl", "starttls" or "plain".

        smtp_host: Hostname of the SMTP server.
        smtp_port: 465 for implicit TLS, 587 for STARTTLS.
        smtp_security: "ssl", "starttls" or "plain".

        enabled: Disabled accounts are skipped by a full sync.
        last_sync: When the last sync pass of this account finished.
        sync_status: Last known health of the account.
        id: Database primary key. None until the account is saved to storage.
    """

    # Account identification
    name: str
    email: str
    display_name: str = ""

    # IMAP configuration (retrieval)
    imap_host: str = ""
    imap_port: int = 993
    imap_security: str = "ssl"

    # SMTP configuration (submission)
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_security: str = "starttls"

    # Sync state
    enabled: bool = True
    last_sync: datetime | None = None
    sync_status: SyncStatus = SyncStatus.IDLE

    # Database field
    id: int | None = None

    def __post_init__(self) -> None:
        if not self.display_name:
            self.display_name = self.email

    @property
    def username(self) -> str:
        """Login name for both servers."""
        return self.email

    @property
    def keyring_service(self) -> str:
        """
        Returns the service name used for keyring password storage.

        The scheme is stable so passwords can be managed with the keyring CLI:
            keyring get kestrel:personal user@example.com
        """
        return f"kestrel:{self.name}"

    @property
    def imap_use_tls(self) -> bool:
        return self.imap_security == "ssl"

    @property
    def smtp_use_tls(self) -> bool:
        return self.smtp_security == "ssl"

    @property
    def email_domain(self) -> str:
        """Domain part of the address, used for generated Message-IDs."""
        return self.email.rpartition("@")[2] or "localhost"

    def __str__(self) -> str:
        return f"{self.name} <{self.email}>"

    def __repr__(self) -> str:
        return (
            f"Account(name={self.name!r}, email={self.email!r}, "
            f"imap={self.imap_host}:{self.imap_port}, "
            f"smtp={self.smtp_host}:{self.smtp_port})"
        )
