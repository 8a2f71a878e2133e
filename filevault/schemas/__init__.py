"""
Pydantic schemas package.
All schemas are exported here for easy import.
"""
from filevault.schemas.upload import (
    UploadInitResponse,
    ChunkUploadResponse,
    UploadProgressResponse,
    UploadStatsResponse,
    CacheStatsResponse,
    FileValidationConfig,
)

__all__ = [
    # Chunked upload schemas
    "UploadInitResponse",
    "ChunkUploadResponse",
    "UploadProgressResponse",
    "UploadStatsResponse",
    # Cache schemas
    "CacheStatsResponse",
    # Validation schemas
    "FileValidationConfig",
]
