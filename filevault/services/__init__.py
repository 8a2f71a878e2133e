"""
Services package.
Contains the in-memory upload core: chunked upload sessions, TTL cache and file validation.
"""
from filevault.services.cache import CacheService, get_cache_service, user_files_cache_key
from filevault.services.chunked_upload import ChunkedUploadService, UploadSession, get_chunked_upload_service
from filevault.services.file_validation import FileValidationService

__all__ = [
    "CacheService",
    "ChunkedUploadService",
    "FileValidationService",
    "UploadSession",
    "get_cache_service",
    "get_chunked_upload_service",
    "user_files_cache_key",
]
