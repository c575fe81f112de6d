"""
Sync Engine Exceptions
Error taxonomy shared by the connection, discovery, fetch and storage layers
"""

from typing import Optional


class MailVaultError(Exception):
    """Base class for all sync engine errors"""


class SyncConnectionError(MailVaultError, ConnectionError):
    """
    Network, TLS, or authentication failure on a mailbox session

    ``retryable`` is False for failures a reconnect cannot fix, such as
    rejected credentials.
    """

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class BatchTimeoutError(SyncConnectionError):
    """A fetch batch did not complete within its time budget"""


class FolderError(MailVaultError):
    """The server refused to open or read a folder"""


class DiscoveryError(MailVaultError):
    """Cursor-based search failed; callers fall back to a full header scan"""


class ParseError(MailVaultError):
    """A single message could not be parsed"""

    def __init__(self, message: str, handle: Optional[int] = None):
        super().__init__(message)
        self.handle = handle


class AttachmentError(MailVaultError):
    """An attachment was oversized or could not be written"""


class PersistenceError(MailVaultError):
    """A storage write failed; the batch was rolled back"""
