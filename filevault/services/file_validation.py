"""
File validation service.

Checks uploaded content (size, name, type, magic number) before it is handed
to storage, and checks upload requests before a presigned or chunked upload starts.
"""
import logging
import mimetypes
import re
from typing import Optional

from filevault.config import Settings, get_settings
from filevault.exceptions import FileValidationError
from filevault.schemas.upload import FileValidationConfig

logger = logging.getLogger("filevault.validation")

# Extension to allowed content types mapping
EXTENSION_TO_CONTENT_TYPES = {
    ".jpg": ["image/jpeg"],
    ".jpeg": ["image/jpeg"],
    ".png": ["image/png"],
    ".gif": ["image/gif"],
    ".webp": ["image/webp"],
    ".pdf": ["application/pdf"],
    ".txt": ["text/plain"],
    ".doc": ["application/msword"],
    ".docx": ["application/vnd.openxmlformats-officedocument.wordprocessingml.document"],
    ".xls": ["application/vnd.ms-excel"],
    ".xlsx": ["application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"],
}

ALLOWED_EXTENSIONS = list(EXTENSION_TO_CONTENT_TYPES)

ALLOWED_CONTENT_TYPES = [
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "application/pdf",
    "text/plain",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
]

# Leading bytes for types that have a reliable signature
MAGIC_NUMBERS = {
    "image/jpeg": b"\xff\xd8\xff",
    "image/png": b"\x89PNG",
    "image/gif": b"GIF",
    "application/pdf": b"%PDF",
}

_SUSPICIOUS_PATTERNS = [
    re.compile(r"\.\."),
    re.compile(r'[<>:"|?*]'),
    re.compile(r"^(CON|PRN|AUX|NUL|COM[1-9]|LPT[1-9])(\.|$)", re.IGNORECASE),
    re.compile(r"^\."),
]


def format_bytes(size: int) -> str:
    """Human-readable byte size, e.g. 10485760 -> '10 MB'."""
    if size == 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    i = 0
    while i < len(units) - 1 and size >= 1024 ** (i + 1):
        i += 1
    value = f"{size / 1024 ** i:.2f}".rstrip("0").rstrip(".")
    return f"{value} {units[i]}"


def get_file_extension(filename: str) -> str:
    dot = filename.rfind(".")
    return "" if dot == -1 else filename[dot:]


def guess_content_type(filename: str, provided_type: Optional[str] = None) -> Optional[str]:
    """
    Guess content type from filename or provided type.

    Args:
        filename: The filename
        provided_type: The content type provided by the client

    Returns:
        The content type, or the provided type if nothing better is found
    """
    if provided_type and provided_type in ALLOWED_CONTENT_TYPES:
        return provided_type

    if filename:
        types = EXTENSION_TO_CONTENT_TYPES.get(get_file_extension(filename).lower())
        if types:
            return types[0]

        # Fallback to mimetypes module
        guessed_type, _ = mimetypes.guess_type(filename)
        if guessed_type and guessed_type in ALLOWED_CONTENT_TYPES:
            return guessed_type

    return provided_type


class FileValidationService:
    """
    Validates files and upload requests against configured limits.
    """

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.config = FileValidationConfig(
            max_size_bytes=settings.upload_max_file_size,
            allowed_mime_types=list(ALLOWED_CONTENT_TYPES),
            allowed_extensions=list(ALLOWED_EXTENSIONS),
            max_filename_length=settings.upload_max_filename_length,
        )

    def validate_file(self, content: Optional[bytes], filename: str, content_type: str) -> None:
        """
        Validate an uploaded file.

        Args:
            content: File content as bytes
            filename: Original filename
            content_type: MIME type declared by the client

        Raises:
            FileValidationError: On the first failed check
        """
        if content is None:
            raise FileValidationError("No file provided")

        size = len(content)
        logger.debug(
            "Validating file: %s, size: %d, mimetype: %s",
            filename,
            size,
            content_type,
            extra={"event": "validation"},
        )

        if size > self.config.max_size_bytes:
            self._reject(
                f"File size exceeds maximum allowed size of {format_bytes(self.config.max_size_bytes)}",
                filename,
            )

        if len(filename) > self.config.max_filename_length:
            self._reject(
                f"Filename exceeds maximum length of {self.config.max_filename_length} characters",
                filename,
            )

        if content_type not in self.config.allowed_mime_types:
            self._reject(
                f"File type '{content_type}' is not allowed. "
                f"Allowed types: {', '.join(self.config.allowed_mime_types)}",
                filename,
            )

        extension = get_file_extension(filename)
        if extension.lower() not in self.config.allowed_extensions:
            self._reject(
                f"File extension '{extension}' is not allowed. "
                f"Allowed extensions: {', '.join(self.config.allowed_extensions)}",
                filename,
            )

        self._validate_filename(filename)
        self._validate_file_content(content, content_type, filename)

    def validate_file_request(self, filename: str, content_type: str) -> None:
        """
        Validate an upload request before any bytes are sent (presigned / chunked flows).

        Raises:
            FileValidationError: On the first failed check
        """
        self._validate_filename(filename)

        if content_type not in self.config.allowed_mime_types:
            self._reject(
                f"File type not allowed. Allowed types: {', '.join(self.config.allowed_mime_types)}",
                filename,
            )

        extension = get_file_extension(filename).lower()
        if extension not in self.config.allowed_extensions:
            self._reject(
                f"File extension not allowed. Allowed extensions: {', '.join(self.config.allowed_extensions)}",
                filename,
            )

        expected = EXTENSION_TO_CONTENT_TYPES.get(extension, [])
        if expected and content_type not in expected:
            self._reject(
                f"File extension '{extension}' does not match MIME type '{content_type}'. "
                f"Expected: {' or '.join(expected)}",
                filename,
            )

    def get_validation_config(self) -> FileValidationConfig:
        """Copy of the active limits (safe to hand to clients)."""
        return self.config.model_copy(deep=True)

    def _validate_filename(self, filename: str) -> None:
        if "\0" in filename:
            self._reject("Filename contains null bytes", filename)
        for pattern in _SUSPICIOUS_PATTERNS:
            if pattern.search(filename):
                self._reject("Invalid filename detected", filename)

    def _validate_file_content(self, content: bytes, content_type: str, filename: str) -> None:
        if len(content) == 0:
            self._reject("Empty file not allowed", filename)

        expected_magic = MAGIC_NUMBERS.get(content_type)
        if expected_magic and not content.startswith(expected_magic):
            logger.warning(
                "Magic number mismatch for %s. Expected: %s, Got: %s",
                content_type,
                expected_magic.hex(),
                content[: len(expected_magic)].hex(),
                extra={"event": "validation"},
            )
            raise FileValidationError("File content does not match declared file type")

    def _reject(self, message: str, filename: str) -> None:
        logger.warning(
            "File validation failed: %s",
            message,
            extra={"event": "validation", "file_name": filename},
        )
        raise FileValidationError(message)
