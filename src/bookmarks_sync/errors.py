"""Error taxonomy for the sync engine.

Each error carries a short machine-readable ``code`` and the HTTP status the
API layer answers with. Only authentication- and configuration-class errors
abort a sync run; ingestion and media errors are counted per item.
"""


class SyncError(Exception):
    """Base exception for sync errors.

    Attributes:
        code: Machine-readable error code (e.g. "folder_not_found")
        message: Human-readable error message
        status_code: HTTP status code used by the API layer
    """

    code = "internal"
    status_code = 500
    action_required: str | None = None

    def __init__(self, message: str | None = None, code: str | None = None):
        if code is not None:
            self.code = code
        self.message = message or self.code
        super().__init__(self.message)


class ConfigurationError(SyncError):
    code = "configuration"
    status_code = 500


class InvalidRequestError(SyncError):
    code = "invalid_request"
    status_code = 400


class UnauthenticatedError(SyncError):
    """The request did not identify a local user."""

    code = "unauthenticated"
    status_code = 401


class AuthenticationError(SyncError):
    """The authorization flow failed; the user must start it again.

    ``reason`` is one of: state_mismatch, unknown_session, code_exchange_failed.
    """

    status_code = 400

    def __init__(self, reason: str, message: str | None = None):
        self.reason = reason
        super().__init__(message or f"Authorization failed: {reason}", code=reason)


class AuthExpiredError(SyncError):
    """No usable credential: the caller should offer a reconnect action."""

    code = "auth_expired"
    status_code = 401
    action_required = "reconnect"

    def __init__(self, reason: str = "auth_expired", message: str | None = None):
        self.reason = reason
        super().__init__(message or f"X authorization expired ({reason}). Reconnect to continue.")


class TokenExpiredError(AuthExpiredError):
    """The remote API rejected the access token (HTTP 401)."""

    def __init__(self, message: str | None = None):
        super().__init__("token_rejected", message)


class RateLimitedError(SyncError):
    code = "rate_limited"
    status_code = 429

    def __init__(self, retry_after: float | None = None):
        self.retry_after = retry_after
        wait_msg = f" Retry in {retry_after:.0f}s." if retry_after else ""
        super().__init__(f"Rate limited by X.{wait_msg}")


class FolderNotFoundError(SyncError):
    code = "folder_not_found"
    status_code = 404

    def __init__(self, folder_id: str):
        self.folder_id = folder_id
        super().__init__(f"Folder {folder_id} is not known for this user")


class CollectionNotFoundError(SyncError):
    code = "collection_not_found"
    status_code = 404

    def __init__(self, collection_id: int):
        self.collection_id = collection_id
        super().__init__(f"Collection {collection_id} not found")


class RemoteApiError(SyncError):
    code = "remote_error"
    status_code = 502

    def __init__(self, message: str, status: int | None = None):
        self.status = status
        super().__init__(message)


class IngestionError(SyncError):
    """A single remote record could not be mapped. Counted, never raised out of a run."""

    code = "ingestion_error"
    status_code = 422

    def __init__(self, external_id: str, reason: str):
        self.external_id = external_id
        self.reason = reason
        super().__init__(f"Malformed remote item {external_id or '?'}: {reason}")


class MediaDownloadError(SyncError):
    """A media asset could not be fetched. The bookmark is kept without it."""

    code = "media_download_failed"
    status_code = 502

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Could not download {url}: {reason}")
