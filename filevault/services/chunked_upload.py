"""
Chunked upload service.

Receives a file as independently transmitted chunks (retries, reordering and
resume are allowed), then assembles them in index order once every slot is filled.

Session lifecycle:
    INITIALIZED -> receiving chunks -> COMPLETE -> ASSEMBLED (session removed)
    any live state -> CANCELLED (owner request) | EXPIRED (background sweep)

Sessions live in process memory only. Horizontal scaling needs session
affinity or an external store.
"""
import logging
import math
import threading
import time
import uuid
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Dict, Optional

from filevault.config import get_settings
from filevault.exceptions import (
    FileSizeMismatchError,
    InvalidUploadArgumentError,
    MissingChunkError,
    UploadAccessDeniedError,
    UploadIncompleteError,
    UploadSessionNotFoundError,
)
from filevault.schemas.upload import (
    ChunkUploadResponse,
    UploadInitResponse,
    UploadProgressResponse,
    UploadStatsResponse,
)
from filevault.utils.periodic import PeriodicTask
from filevault.utils.prometheus_metrics import (
    upload_assembled_file_size_bytes,
    upload_assembly_total,
    upload_chunks_total,
    upload_sessions_cancelled_total,
    upload_sessions_created_total,
    upload_sessions_expired_total,
)

logger = logging.getLogger("filevault.chunked_upload")


@dataclass
class UploadSession:
    """One in-progress chunked upload. Owned exclusively by ChunkedUploadService."""

    upload_id: str
    owner_id: Any
    filename: str
    file_size: int
    chunk_size: int
    total_chunks: int
    created_at: float
    chunks: Dict[int, bytes] = field(default_factory=dict)

    @property
    def chunks_uploaded(self) -> int:
        return len(self.chunks)

    @property
    def is_complete(self) -> bool:
        return len(self.chunks) == self.total_chunks

    @property
    def progress(self) -> float:
        if self.total_chunks == 0:
            return 100.0
        return len(self.chunks) / self.total_chunks * 100

    @property
    def buffered_bytes(self) -> int:
        return sum(len(chunk) for chunk in self.chunks.values())


def _generate_upload_id() -> str:
    return f"upload_{uuid.uuid4().hex}"


class ChunkedUploadService:
    """
    Service for chunked upload sessions.

    All operations are synchronous and in-memory; a single registry lock makes
    each operation (and each full sweep) atomic when called from worker threads.
    """

    def __init__(
        self,
        session_timeout: float = 30 * 60,
        cleanup_interval: float = 5 * 60,
        default_chunk_size: int = 5 * 1024 * 1024,
        clock: Callable[[], float] = time.monotonic,
        id_factory: Callable[[], str] = _generate_upload_id,
    ):
        self.session_timeout = session_timeout
        self.default_chunk_size = default_chunk_size
        self._clock = clock
        self._id_factory = id_factory
        self._lock = threading.Lock()
        self._sessions: Dict[str, UploadSession] = {}
        self._cleanup_task = PeriodicTask("upload_session_cleanup", cleanup_interval, self.cleanup_expired_sessions)

    async def start(self) -> None:
        """Start the periodic session expiry sweep."""
        await self._cleanup_task.start()

    async def stop(self) -> None:
        """Stop the periodic session expiry sweep."""
        await self._cleanup_task.stop()

    def initialize_upload(
        self,
        filename: str,
        file_size: int,
        chunk_size: Optional[int],
        owner_id: Any,
    ) -> UploadInitResponse:
        """
        Create a new upload session.

        Args:
            filename: Original filename
            file_size: Size in bytes the assembled file must have
            chunk_size: Chunk size used to compute the number of chunks
                (None: default_chunk_size)
            owner_id: Identity allowed to act on the session

        Returns:
            Upload ID and total chunk count

        Raises:
            InvalidUploadArgumentError: If chunk_size <= 0 or file_size < 0
        """
        if chunk_size is None:
            chunk_size = self.default_chunk_size
        if chunk_size <= 0:
            raise InvalidUploadArgumentError("Chunk size must be positive")
        if file_size < 0:
            raise InvalidUploadArgumentError("File size must not be negative")

        total_chunks = math.ceil(file_size / chunk_size)

        with self._lock:
            upload_id = self._id_factory()
            while upload_id in self._sessions:
                upload_id = self._id_factory()
            self._sessions[upload_id] = UploadSession(
                upload_id=upload_id,
                owner_id=owner_id,
                filename=filename,
                file_size=file_size,
                chunk_size=chunk_size,
                total_chunks=total_chunks,
                created_at=self._clock(),
            )

        upload_sessions_created_total.inc()
        logger.info(
            "Initialized chunked upload: %s for file %s (%d chunks)",
            upload_id,
            filename,
            total_chunks,
            extra={"event": "upload", "upload_id": upload_id, "user_id": owner_id, "total_chunks": total_chunks},
        )
        return UploadInitResponse(upload_id=upload_id, total_chunks=total_chunks)

    def upload_chunk(
        self,
        upload_id: str,
        chunk_index: int,
        data: bytes,
        requester_id: Any,
    ) -> ChunkUploadResponse:
        """
        Store (or overwrite) one chunk.

        Re-uploading an index replaces its bytes without changing progress.
        Completion only means every slot is filled; sizes are checked at assembly.

        Raises:
            UploadSessionNotFoundError: Unknown or terminal session
            UploadAccessDeniedError: Requester is not the owner
            InvalidUploadArgumentError: chunk_index outside [0, total_chunks)
        """
        with self._lock:
            try:
                session = self._get_owned_session(upload_id, requester_id)
            except UploadSessionNotFoundError:
                upload_chunks_total.labels(result="not_found").inc()
                raise
            except UploadAccessDeniedError:
                upload_chunks_total.labels(result="denied").inc()
                raise

            if chunk_index < 0 or chunk_index >= session.total_chunks:
                upload_chunks_total.labels(result="invalid").inc()
                logger.warning(
                    "Invalid chunk number %d for %s",
                    chunk_index,
                    upload_id,
                    extra={"event": "upload", "upload_id": upload_id, "total_chunks": session.total_chunks},
                )
                raise InvalidUploadArgumentError("Invalid chunk number")

            session.chunks[chunk_index] = bytes(data)
            progress = session.progress
            is_complete = session.is_complete
            total_chunks = session.total_chunks

        upload_chunks_total.labels(result="success").inc()
        logger.debug(
            "Chunk %d/%d uploaded for %s (%.1f%%)",
            chunk_index + 1,
            total_chunks,
            upload_id,
            progress,
            extra={"event": "upload", "upload_id": upload_id},
        )
        return ChunkUploadResponse(is_complete=is_complete, progress=progress)

    def assemble_file(self, upload_id: str, requester_id: Any) -> bytes:
        """
        Concatenate all chunks in index order and close the session.

        A failed assembly leaves the session in place so the client can
        re-send chunks and try again.

        Returns:
            Assembled file content; the caller owns it from here on

        Raises:
            UploadSessionNotFoundError: Unknown or terminal session
            UploadAccessDeniedError: Requester is not the owner
            UploadIncompleteError: Not every chunk slot is filled
            MissingChunkError: An index is absent despite the count matching
            FileSizeMismatchError: Assembled length != declared file size
        """
        with self._lock:
            try:
                session = self._get_owned_session(upload_id, requester_id)
            except UploadSessionNotFoundError:
                upload_assembly_total.labels(result="not_found").inc()
                raise
            except UploadAccessDeniedError:
                upload_assembly_total.labels(result="denied").inc()
                raise

            if not session.is_complete:
                upload_assembly_total.labels(result="incomplete").inc()
                raise UploadIncompleteError(session.chunks_uploaded, session.total_chunks)

            # 개수만 믿지 않고 인덱스를 하나씩 다시 확인
            ordered = []
            for index in range(session.total_chunks):
                chunk = session.chunks.get(index)
                if chunk is None:
                    upload_assembly_total.labels(result="missing_chunk").inc()
                    raise MissingChunkError(index)
                ordered.append(chunk)

            assembled = b"".join(ordered)

            if len(assembled) != session.file_size:
                upload_assembly_total.labels(result="size_mismatch").inc()
                logger.warning(
                    "File size mismatch for %s: expected %d, got %d",
                    upload_id,
                    session.file_size,
                    len(assembled),
                    extra={"event": "upload", "upload_id": upload_id},
                )
                raise FileSizeMismatchError(session.file_size, len(assembled))

            del self._sessions[upload_id]

        upload_assembly_total.labels(result="success").inc()
        upload_assembled_file_size_bytes.observe(len(assembled))
        logger.info(
            "File assembled successfully: %s (%d bytes)",
            session.filename,
            len(assembled),
            extra={"event": "upload", "upload_id": upload_id, "user_id": session.owner_id},
        )
        return assembled

    def get_upload_progress(self, upload_id: str, requester_id: Any) -> UploadProgressResponse:
        """Read-only progress snapshot for the session owner."""
        with self._lock:
            session = self._get_owned_session(upload_id, requester_id)
            return UploadProgressResponse(
                progress=session.progress,
                chunks_uploaded=session.chunks_uploaded,
                total_chunks=session.total_chunks,
                filename=session.filename,
                file_size=session.file_size,
            )

    def cancel_upload(self, upload_id: str, requester_id: Any) -> None:
        """Discard the session and its chunks regardless of completeness."""
        with self._lock:
            self._get_owned_session(upload_id, requester_id)
            del self._sessions[upload_id]

        upload_sessions_cancelled_total.inc()
        logger.info("Upload cancelled: %s", upload_id, extra={"event": "upload", "upload_id": upload_id})

    def cleanup_expired_sessions(self) -> int:
        """
        Remove sessions older than session_timeout, measured from creation.

        Clients are not notified; their next call gets UploadSessionNotFoundError.

        Returns:
            Number of sessions removed.
        """
        now = self._clock()
        with self._lock:
            expired_ids = [
                upload_id
                for upload_id, session in self._sessions.items()
                if now - session.created_at > self.session_timeout
            ]
            for upload_id in expired_ids:
                del self._sessions[upload_id]

        if expired_ids:
            upload_sessions_expired_total.inc(len(expired_ids))
            logger.info(
                "Cleaned up %d expired upload sessions",
                len(expired_ids),
                extra={"event": "upload", "removed": len(expired_ids)},
            )
        return len(expired_ids)

    def active_session_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def buffered_bytes(self) -> int:
        with self._lock:
            return sum(session.buffered_bytes for session in self._sessions.values())

    def get_stats(self) -> UploadStatsResponse:
        with self._lock:
            active_sessions = len(self._sessions)
            total_bytes = sum(session.buffered_bytes for session in self._sessions.values())
        return UploadStatsResponse(
            active_sessions=active_sessions,
            total_memory_usage=f"{total_bytes / 1024 / 1024:.2f} MB",
        )

    def _get_owned_session(self, upload_id: str, requester_id: Any) -> UploadSession:
        # 호출 측에서 self._lock을 잡은 상태여야 함
        session = self._sessions.get(upload_id)
        if session is None:
            raise UploadSessionNotFoundError(upload_id)
        if session.owner_id != requester_id:
            logger.warning(
                "Unauthorized access to upload session %s",
                upload_id,
                extra={"event": "upload", "upload_id": upload_id, "user_id": requester_id},
            )
            raise UploadAccessDeniedError(upload_id)
        return session


@lru_cache()
def get_chunked_upload_service() -> ChunkedUploadService:
    """Get the process-wide upload service configured from settings."""
    settings = get_settings()
    return ChunkedUploadService(
        session_timeout=settings.upload_session_timeout_seconds,
        cleanup_interval=settings.upload_cleanup_interval_seconds,
        default_chunk_size=settings.upload_default_chunk_size,
    )
