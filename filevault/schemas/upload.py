"""
Upload-related Pydantic schemas returned by the upload core.
"""
from typing import List

from pydantic import BaseModel, Field


class UploadInitResponse(BaseModel):
    """Schema for a newly initialized chunked upload session."""

    upload_id: str = Field(..., description="Upload session ID used for all subsequent calls")
    total_chunks: int = Field(..., description="Number of chunks the client must send", ge=0)


class ChunkUploadResponse(BaseModel):
    """Schema for a single chunk upload result."""

    is_complete: bool = Field(..., description="True once every chunk slot has been filled")
    progress: float = Field(..., description="Upload progress in percent (0-100)")


class UploadProgressResponse(BaseModel):
    """Schema for upload session progress."""

    progress: float = Field(..., description="Upload progress in percent (0-100)")
    chunks_uploaded: int = Field(..., ge=0)
    total_chunks: int = Field(..., ge=0)
    filename: str
    file_size: int = Field(..., description="Declared file size in bytes", ge=0)


class UploadStatsResponse(BaseModel):
    """Schema for upload manager statistics."""

    active_sessions: int
    total_memory_usage: str = Field(..., description="Buffered chunk bytes, e.g. '1.50 MB'")


class CacheStatsResponse(BaseModel):
    """Schema for cache statistics."""

    size: int = Field(..., description="Stored entries, including expired ones not yet swept")
    memory_usage: str = Field(..., description="Approximate serialized size, e.g. '12 KB'")


class FileValidationConfig(BaseModel):
    """File validation limits, exposed so clients can validate before uploading."""

    max_size_bytes: int
    allowed_mime_types: List[str]
    allowed_extensions: List[str]
    max_filename_length: int
