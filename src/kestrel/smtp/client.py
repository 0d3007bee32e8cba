# =============================================================================
# SMTP Client
# =============================================================================
# Provides an async SMTP client for submitting messages.
#
# Key responsibilities:
#   - Connection lifecycle with SSL/STARTTLS and login
#   - Submitting an already-built MIME message to an explicit recipient list
#   - Mapping aiosmtplib failures onto the kestrel error types
#
# MIME building lives in kestrel.smtp.compose so a message can be built once
# and submitted any number of times with identical bytes and Message-ID.
#
# Uses aiosmtplib for async operations.
# =============================================================================

import asyncio
import logging
from email.message import Message as EmailMessage
from typing import TYPE_CHECKING

import aiosmtplib

from kestrel.core import (
    AuthenticationError,
    CredentialNotFoundError,
    KestrelError,
    MailConnectionError,
    ProtocolError,
    RejectedRecipientError,
)
from kestrel.imap.client import ConnectionPhase

if TYPE_CHECKING:
    from kestrel.core import Account
    from kestrel.credentials import CredentialStore

logger = logging.getLogger(__name__)

_CONNECTION_ERRORS = (
    aiosmtplib.SMTPConnectError,
    aiosmtplib.SMTPTimeoutError,
    aiosmtplib.SMTPServerDisconnected,
    asyncio.TimeoutError,
    OSError,
)


def map_smtp_error(error: BaseException, context: str) -> KestrelError:
    """
    Translate an aiosmtplib (or transport) exception into a kestrel error.

    Permanent 5xx replies become ProtocolError. Transient 4xx replies are
    retryable and reported as MailConnectionError.
    """
    if isinstance(error, aiosmtplib.SMTPRecipientsRefused):
        rejected = {r.recipient: f"{r.code} {r.message}" for r in error.recipients}
        return RejectedRecipientError(rejected)
    if isinstance(error, aiosmtplib.SMTPAuthenticationError):
        return AuthenticationError(f"{context}: {error.message}")
    if isinstance(error, _CONNECTION_ERRORS):
        return MailConnectionError(f"{context}: {error}")
    if isinstance(error, aiosmtplib.SMTPResponseException):
        if error.code >= 500:
            return ProtocolError(f"{context}: {error.code} {error.message}")
        return MailConnectionError(f"{context}: {error.code} {error.message}")
    return ProtocolError(f"{context}: {error}")


class SMTPClient:
    """
    Async SMTP client for Kestrel.

    Usage:
        >>> client = SMTPClient(account, credentials)
        >>> await client.connect()
        >>> rejected = await client.submit(mime, ["alice@example.com"])
        >>> await client.disconnect()

    Attributes:
        account: Account configuration with SMTP server details.
        phase: Current ConnectionPhase.
    """

    def __init__(
        self,
        account: "Account",
        credentials: "CredentialStore",
        *,
        connect_timeout: float = 30.0,
        command_timeout: float = 60.0,
    ) -> None:
        self.account = account
        self.credentials = credentials
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout

        self.phase = ConnectionPhase.DISCONNECTED
        self._client: aiosmtplib.SMTP | None = None
        self._command_lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        """Check if client is connected."""
        return (
            self.phase is ConnectionPhase.READY
            and self._client is not None
            and self._client.is_connected
        )

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self) -> None:
        """
        Connect and authenticate to the SMTP server.

        Raises:
            MailConnectionError: If the server cannot be reached in time.
            AuthenticationError: If login fails or no password is stored.
            ProtocolError: If the server refuses the session (e.g. no STARTTLS).
            StoreError: If the keyring cannot be read.
        """
        if self.is_connected:
            return

        self.phase = ConnectionPhase.CONNECTING
        try:
            password = await self.credentials.get_for(self.account)
        except CredentialNotFoundError as e:
            self._fail()
            raise AuthenticationError(str(e)) from e
        except BaseException:
            self._fail()
            raise

        host = f"{self.account.smtp_host}:{self.account.smtp_port}"
        logger.info(f"Connecting to SMTP {host}")

        self._client = aiosmtplib.SMTP(
            hostname=self.account.smtp_host,
            port=self.account.smtp_port,
            use_tls=self.account.smtp_security == "ssl",
            start_tls=self.account.smtp_security == "starttls",
            timeout=self.command_timeout,
        )
        try:
            await asyncio.wait_for(self._client.connect(), timeout=self.connect_timeout)
            logger.debug("SMTP connection established")
            await asyncio.wait_for(
                self._client.login(self.account.username, password),
                timeout=self.command_timeout,
            )
            self.phase = ConnectionPhase.AUTHENTICATED
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as e:
            self._fail()
            raise map_smtp_error(e, f"Failed to connect to SMTP {host}") from e
        except BaseException:
            self._fail()
            raise

        self.phase = ConnectionPhase.READY
        logger.info(f"Connected to SMTP {self.account.smtp_host} as {self.account.username}")

    def _fail(self) -> None:
        self.phase = ConnectionPhase.FAILED
        self._drop()

    def _drop(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            client.close()
        self.phase = ConnectionPhase.DISCONNECTED

    async def disconnect(self) -> None:
        """Disconnect from the SMTP server. Safe to call repeatedly."""
        client = self._client
        if client is None:
            self.phase = ConnectionPhase.DISCONNECTED
            return
        try:
            if client.is_connected:
                logger.debug("Disconnecting from SMTP")
                await asyncio.wait_for(client.quit(), timeout=self.command_timeout)
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as e:
            logger.warning(f"Error during SMTP disconnect: {e}")
        finally:
            self._drop()

    # =========================================================================
    # Submission
    # =========================================================================

    async def submit(self, message: EmailMessage, recipients: list[str]) -> dict[str, str]:
        """
        Submit a built message to the given envelope recipients.

        Args:
            message: MIME message; submitted as-is.
            recipients: Envelope recipients (To, Cc and Bcc).

        Returns:
            Recipients the server refused, mapped to its reply. Empty when
            every recipient was accepted.

        Raises:
            RejectedRecipientError: If every recipient was refused.
            MailConnectionError: On transport failure, timeout or 4xx reply.
            ProtocolError: On a permanent 5xx reply.
        """
        async with self._command_lock:
            if not self.is_connected:
                raise MailConnectionError(f"Not connected to SMTP {self.account.smtp_host}")

            logger.info(f"Submitting {message['Message-ID']} to {len(recipients)} recipient(s)")
            try:
                errors, response = await asyncio.wait_for(
                    self._client.send_message(message, recipients=recipients),
                    timeout=self.command_timeout,
                )
            except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as e:
                if isinstance(e, _CONNECTION_ERRORS):
                    self._drop()
                raise map_smtp_error(e, "SMTP submission failed") from e
            except asyncio.CancelledError:
                self._drop()
                raise

        rejected = {address: f"{reply.code} {reply.message}" for address, reply in errors.items()}
        if rejected:
            logger.warning(f"Server refused {len(rejected)} recipient(s): {', '.join(rejected)}")
        logger.debug(f"SMTP server replied: {response}")
        return rejected
