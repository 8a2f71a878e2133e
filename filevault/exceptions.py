"""
Exceptions raised by the upload core.

Each error carries a ``status_code`` hint for the HTTP layer and a short
machine-oriented ``reason``. Nothing here is retried internally.
"""


class FileVaultError(Exception):
    """Base class for all errors surfaced to callers."""

    status_code: int = 400
    reason: str = "bad_request"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.reason)
        self.message = message or self.reason


class UploadError(FileVaultError):
    """Base class for chunked upload session errors."""


class UploadSessionNotFoundError(UploadError):
    """Raised when a session id is unknown, already assembled, cancelled or expired."""

    status_code = 404
    reason = "upload_session_not_found"

    def __init__(self, upload_id: str) -> None:
        self.upload_id = upload_id
        super().__init__("Upload session not found or expired")


class UploadAccessDeniedError(UploadError):
    """Raised when the requester does not own the session."""

    reason = "upload_access_denied"

    def __init__(self, upload_id: str) -> None:
        self.upload_id = upload_id
        super().__init__("Unauthorized access to upload session")


class InvalidUploadArgumentError(UploadError):
    """Raised for out-of-range chunk indices and unusable initialization sizes."""

    reason = "invalid_argument"


class UploadIncompleteError(UploadError):
    """Raised when assembly is attempted before every chunk slot is filled."""

    reason = "upload_incomplete"

    def __init__(self, chunks_uploaded: int, total_chunks: int) -> None:
        self.chunks_uploaded = chunks_uploaded
        self.total_chunks = total_chunks
        super().__init__("Upload incomplete - missing chunks")


class MissingChunkError(UploadError):
    """Raised when a chunk index is absent at assembly time."""

    reason = "missing_chunk"

    def __init__(self, chunk_index: int) -> None:
        self.chunk_index = chunk_index
        super().__init__(f"Missing chunk {chunk_index}")


class FileSizeMismatchError(UploadError):
    """Raised when the assembled length differs from the declared file size."""

    reason = "file_size_mismatch"

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"File size mismatch: expected {expected}, got {actual}")


class FileValidationError(FileVaultError):
    """Raised when a file or upload request fails validation."""

    reason = "file_validation_failed"
