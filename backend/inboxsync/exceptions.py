"""
Error taxonomy for the ingestion engine.

Unit-level errors (TransportError, ParseError, StorageError) skip one
attachment or message. Connection-level errors (AuthError,
SyncInProgressError) skip one connection. Nothing here is shown to an
end user.
"""

from typing import Optional


class IngestionError(Exception):
    """Base class for every error raised by the sync engine."""


class AuthError(IngestionError):
    """Token refresh was rejected; the connection has been deactivated."""

    def __init__(self, message: str, connection_id: Optional[str] = None):
        super().__init__(message)
        self.connection_id = connection_id


class TransportError(IngestionError):
    """A network call failed or returned a non-success status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CursorExpiredError(TransportError):
    """Gmail can no longer resolve the stored historyId (history.list 404)."""


class ParseError(IngestionError):
    """A message payload could not be interpreted."""


class ExtractionFailure(IngestionError):
    """The extraction service errored or returned unusable output."""


class StorageError(IngestionError):
    """Uploading or downloading a file from blob storage failed."""


class SyncInProgressError(IngestionError):
    """Another run currently holds the connection's lease."""


class ConnectionRejected(IngestionError):
    """An OAuth consent could not be turned into a mailbox connection."""
