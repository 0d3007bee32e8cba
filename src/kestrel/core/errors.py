# =============================================================================
# Error Taxonomy
# =============================================================================
# Every component raises one of these. Library exceptions (aioimaplib,
# aiosmtplib, keyring, sqlite, OS errors) are translated at the edge of the
# module that talks to the library, so callers only ever catch KestrelError
# subclasses.
#
# Each class carries `retryable`: True when the same call may succeed later
# without anything changing on the user's side (network blip, busy keyring),
# False when retrying would just fail again (bad password, rejected address).
# =============================================================================


class KestrelError(Exception):
    """Base exception for the sync core."""

    retryable = False


class MailConnectionError(KestrelError):
    """The server could not be reached, or the connection dropped or timed out."""

    retryable = True


class AuthenticationError(KestrelError):
    """The server rejected the credentials, or none are stored."""


class ProtocolError(KestrelError):
    """The server answered with something we cannot work with (NO/BAD, bad greeting)."""


class RejectedRecipientError(KestrelError):
    """
    The submission server refused recipients.

    Attributes:
        rejected: Mapping of refused address to the server's reason.
    """

    def __init__(self, rejected: dict[str, str], message: str | None = None):
        self.rejected = dict(rejected)
        if message is None:
            message = "Recipients refused: " + ", ".join(sorted(self.rejected))
        super().__init__(message)


class NotFoundError(KestrelError):
    """A requested item does not exist."""


class CredentialNotFoundError(NotFoundError):
    """No secret is stored for the account."""


class StoreError(KestrelError):
    """The local database, file cache or keyring backend failed."""

    retryable = True


class BusyError(KestrelError):
    """The connection slot is held by another operation and waiting was not requested."""

    retryable = True
