"""Tests for chunked upload session management."""

import itertools
import threading

import pytest
from prometheus_client import REGISTRY

from filevault.exceptions import (
    FileSizeMismatchError,
    InvalidUploadArgumentError,
    MissingChunkError,
    UploadAccessDeniedError,
    UploadIncompleteError,
    UploadSessionNotFoundError,
)
from filevault.services.chunked_upload import ChunkedUploadService, get_chunked_upload_service


def _pattern(index: int, size: int = 256) -> bytes:
    return bytes([index]) * size


class TestInitializeUpload:
    """Tests for session creation."""

    def test_computes_total_chunks(self, uploads, user_a):
        """Test that total chunks is ceil(file_size / chunk_size)."""
        result = uploads.initialize_upload("a.bin", 1024, 256, user_a)

        assert result.total_chunks == 4
        assert result.upload_id.startswith("upload_")

    def test_rounds_partial_chunk_up(self, uploads, user_a):
        """Test that a trailing partial chunk counts as a chunk."""
        result = uploads.initialize_upload("a.bin", 1025, 256, user_a)

        assert result.total_chunks == 5

    def test_upload_ids_are_unique(self, uploads, user_a):
        """Test that every initialization gets a fresh id."""
        ids = {uploads.initialize_upload("a.bin", 10, 5, user_a).upload_id for _ in range(50)}

        assert len(ids) == 50
        assert uploads.get_stats().active_sessions == 50

    def test_id_collision_is_redrawn(self, clock, user_a):
        """Test that an id already held by a live session is not reused."""
        ids = iter(["upload_same", "upload_same", "upload_other"])
        service = ChunkedUploadService(clock=clock, id_factory=lambda: next(ids))

        first = service.initialize_upload("a.bin", 10, 5, user_a)
        second = service.initialize_upload("b.bin", 10, 5, user_a)

        assert first.upload_id == "upload_same"
        assert second.upload_id == "upload_other"

    @pytest.mark.parametrize("chunk_size", [0, -1])
    def test_rejects_non_positive_chunk_size(self, uploads, user_a, chunk_size):
        """Test that a chunk size of zero or less is rejected."""
        with pytest.raises(InvalidUploadArgumentError):
            uploads.initialize_upload("a.bin", 1024, chunk_size, user_a)

        assert uploads.get_stats().active_sessions == 0

    def test_rejects_negative_file_size(self, uploads, user_a):
        """Test that a negative declared size is rejected."""
        with pytest.raises(InvalidUploadArgumentError):
            uploads.initialize_upload("a.bin", -1, 256, user_a)

    def test_empty_file_session(self, uploads, user_a):
        """Test that a zero-byte file has no chunks and assembles to empty bytes."""
        result = uploads.initialize_upload("empty.txt", 0, 256, user_a)

        progress = uploads.get_upload_progress(result.upload_id, user_a)
        assert result.total_chunks == 0
        assert progress.progress == 100.0
        assert uploads.assemble_file(result.upload_id, user_a) == b""

    def test_default_chunk_size(self, clock, user_a):
        """Test that chunk_size=None uses the service default."""
        service = ChunkedUploadService(default_chunk_size=4, clock=clock)

        result = service.initialize_upload("a.bin", 10, None, user_a)

        assert result.total_chunks == 3


class TestUploadChunk:
    """Tests for chunk writes."""

    def test_reports_progress(self, uploads, user_a):
        """Test progress and completion flags after each chunk."""
        upload_id = uploads.initialize_upload("a.bin", 1024, 256, user_a).upload_id

        first = uploads.upload_chunk(upload_id, 0, _pattern(0), user_a)
        uploads.upload_chunk(upload_id, 1, _pattern(1), user_a)
        uploads.upload_chunk(upload_id, 2, _pattern(2), user_a)
        last = uploads.upload_chunk(upload_id, 3, _pattern(3), user_a)

        assert first.progress == 25.0
        assert first.is_complete is False
        assert last.progress == 100.0
        assert last.is_complete is True

    def test_reupload_same_index_is_idempotent(self, uploads, user_a):
        """Test that re-sending an index does not advance progress."""
        upload_id = uploads.initialize_upload("a.bin", 512, 256, user_a).upload_id

        uploads.upload_chunk(upload_id, 0, _pattern(0), user_a)
        again = uploads.upload_chunk(upload_id, 0, _pattern(9), user_a)

        assert again.progress == 50.0
        assert again.is_complete is False
        progress = uploads.get_upload_progress(upload_id, user_a)
        assert progress.chunks_uploaded == 1
        assert progress.total_chunks == 2

    def test_reupload_replaces_bytes(self, uploads, user_a):
        """Test that the last write for an index wins."""
        upload_id = uploads.initialize_upload("a.bin", 4, 2, user_a).upload_id

        uploads.upload_chunk(upload_id, 0, b"xx", user_a)
        uploads.upload_chunk(upload_id, 0, b"ab", user_a)
        uploads.upload_chunk(upload_id, 1, b"cd", user_a)

        assert uploads.assemble_file(upload_id, user_a) == b"abcd"

    @pytest.mark.parametrize("chunk_index", [-1, 2, 5])
    def test_rejects_out_of_range_index(self, uploads, user_a, chunk_index):
        """Test that indices outside [0, total_chunks) are rejected."""
        upload_id = uploads.initialize_upload("a.bin", 512, 256, user_a).upload_id

        with pytest.raises(InvalidUploadArgumentError):
            uploads.upload_chunk(upload_id, chunk_index, b"data", user_a)

        assert uploads.get_upload_progress(upload_id, user_a).chunks_uploaded == 0

    def test_unknown_session(self, uploads, user_a):
        """Test chunk upload against an unknown session."""
        with pytest.raises(UploadSessionNotFoundError) as exc_info:
            uploads.upload_chunk("upload_missing", 0, b"data", user_a)

        assert exc_info.value.status_code == 404

    def test_other_user_rejected(self, uploads, user_a, user_b):
        """Test that only the owner may upload chunks."""
        upload_id = uploads.initialize_upload("a.bin", 512, 256, user_a).upload_id

        with pytest.raises(UploadAccessDeniedError) as exc_info:
            uploads.upload_chunk(upload_id, 0, _pattern(0), user_b)

        assert exc_info.value.status_code == 400
        assert uploads.get_upload_progress(upload_id, user_a).chunks_uploaded == 0

    def test_accepts_bytearray_and_copies_it(self, uploads, user_a):
        """Test that mutating the caller's buffer later does not change the stored chunk."""
        upload_id = uploads.initialize_upload("a.bin", 3, 3, user_a).upload_id
        buffer = bytearray(b"abc")

        uploads.upload_chunk(upload_id, 0, buffer, user_a)
        buffer[0] = ord("z")

        assert uploads.assemble_file(upload_id, user_a) == b"abc"

    def test_counts_outcomes(self, uploads, user_a, user_b):
        """Test that chunk outcomes are counted by result."""

        def sample(result):
            return REGISTRY.get_sample_value("filevault_upload_chunks_total", {"result": result}) or 0.0

        before_success, before_denied = sample("success"), sample("denied")
        upload_id = uploads.initialize_upload("a.bin", 512, 256, user_a).upload_id

        uploads.upload_chunk(upload_id, 0, _pattern(0), user_a)
        with pytest.raises(UploadAccessDeniedError):
            uploads.upload_chunk(upload_id, 1, _pattern(1), user_b)

        assert sample("success") == before_success + 1
        assert sample("denied") == before_denied + 1


class TestAssembleFile:
    """Tests for file assembly."""

    def test_assembles_in_index_order(self, uploads, user_a):
        """Test the 4 x 256 byte scenario end to end."""
        upload_id = uploads.initialize_upload("a.bin", 1024, 256, user_a).upload_id
        for index in range(4):
            uploads.upload_chunk(upload_id, index, _pattern(index), user_a)

        assembled = uploads.assemble_file(upload_id, user_a)

        assert assembled == b"".join(_pattern(i) for i in range(4))
        assert len(assembled) == 1024
        with pytest.raises(UploadSessionNotFoundError):
            uploads.get_upload_progress(upload_id, user_a)

    @pytest.mark.parametrize("order", list(itertools.permutations(range(4))))
    def test_upload_order_does_not_matter(self, uploads, user_a, order):
        """Test that every permutation assembles to the same bytes."""
        upload_id = uploads.initialize_upload("a.bin", 10, 3, user_a).upload_id
        parts = [b"abc", b"def", b"ghi", b"j"]

        for index in order:
            uploads.upload_chunk(upload_id, index, parts[index], user_a)

        assert uploads.assemble_file(upload_id, user_a) == b"abcdefghij"

    def test_incomplete_upload(self, uploads, user_a):
        """Test assembly before every chunk is present."""
        upload_id = uploads.initialize_upload("a.bin", 768, 256, user_a).upload_id
        uploads.upload_chunk(upload_id, 0, _pattern(0), user_a)
        uploads.upload_chunk(upload_id, 1, _pattern(1), user_a)

        with pytest.raises(UploadIncompleteError) as exc_info:
            uploads.assemble_file(upload_id, user_a)

        assert exc_info.value.chunks_uploaded == 2
        assert exc_info.value.total_chunks == 3
        assert uploads.get_stats().active_sessions == 1

    def test_size_mismatch_keeps_session(self, uploads, user_a):
        """Test that 7 bytes against a declared 8 fails and the session survives."""
        upload_id = uploads.initialize_upload("a.bin", 8, 4, user_a).upload_id
        uploads.upload_chunk(upload_id, 0, b"abcd", user_a)
        uploads.upload_chunk(upload_id, 1, b"efg", user_a)

        with pytest.raises(FileSizeMismatchError) as exc_info:
            uploads.assemble_file(upload_id, user_a)

        assert exc_info.value.expected == 8
        assert exc_info.value.actual == 7
        assert uploads.get_upload_progress(upload_id, user_a).chunks_uploaded == 2

    def test_retry_after_size_mismatch(self, uploads, user_a):
        """Test that re-sending the short chunk makes assembly succeed."""
        upload_id = uploads.initialize_upload("a.bin", 8, 4, user_a).upload_id
        uploads.upload_chunk(upload_id, 0, b"abcd", user_a)
        uploads.upload_chunk(upload_id, 1, b"efg", user_a)
        with pytest.raises(FileSizeMismatchError):
            uploads.assemble_file(upload_id, user_a)

        uploads.upload_chunk(upload_id, 1, b"efgh", user_a)

        assert uploads.assemble_file(upload_id, user_a) == b"abcdefgh"

    def test_missing_chunk_despite_full_count(self, uploads, user_a):
        """Test that each index is re-checked rather than trusting the count."""
        upload_id = uploads.initialize_upload("a.bin", 4, 2, user_a).upload_id
        # Simulate out-of-band mutation: right count, wrong keys
        uploads._sessions[upload_id].chunks = {0: b"ab", 7: b"cd"}

        with pytest.raises(MissingChunkError) as exc_info:
            uploads.assemble_file(upload_id, user_a)

        assert exc_info.value.chunk_index == 1
        assert uploads.get_stats().active_sessions == 1

    def test_other_user_rejected(self, uploads, user_a, user_b):
        """Test that only the owner may assemble."""
        upload_id = uploads.initialize_upload("a.bin", 2, 2, user_a).upload_id
        uploads.upload_chunk(upload_id, 0, b"ab", user_a)

        with pytest.raises(UploadAccessDeniedError):
            uploads.assemble_file(upload_id, user_b)

        assert uploads.assemble_file(upload_id, user_a) == b"ab"

    def test_second_assembly_not_found(self, uploads, user_a):
        """Test that an assembled session is gone."""
        upload_id = uploads.initialize_upload("a.bin", 2, 2, user_a).upload_id
        uploads.upload_chunk(upload_id, 0, b"ab", user_a)
        uploads.assemble_file(upload_id, user_a)

        with pytest.raises(UploadSessionNotFoundError):
            uploads.assemble_file(upload_id, user_a)
        with pytest.raises(UploadSessionNotFoundError):
            uploads.upload_chunk(upload_id, 0, b"ab", user_a)


class TestOwnershipIsolation:
    """Tests that every operation enforces session ownership."""

    @pytest.mark.parametrize(
        "operation",
        [
            lambda svc, uid, who: svc.upload_chunk(uid, 0, b"ab", who),
            lambda svc, uid, who: svc.assemble_file(uid, who),
            lambda svc, uid, who: svc.get_upload_progress(uid, who),
            lambda svc, uid, who: svc.cancel_upload(uid, who),
        ],
        ids=["upload_chunk", "assemble_file", "get_upload_progress", "cancel_upload"],
    )
    def test_non_owner_is_denied(self, uploads, user_a, user_b, operation):
        """Test that a different requester is denied and nothing changes."""
        upload_id = uploads.initialize_upload("a.bin", 4, 2, user_a).upload_id

        with pytest.raises(UploadAccessDeniedError):
            operation(uploads, upload_id, user_b)

        assert uploads.get_upload_progress(upload_id, user_a).chunks_uploaded == 0

    def test_owner_compared_by_equality(self, uploads):
        """Test that equal owner ids of different objects are the same owner."""
        upload_id = uploads.initialize_upload("a.bin", 2, 2, 42).upload_id

        progress = uploads.get_upload_progress(upload_id, int("42"))

        assert progress.total_chunks == 1

    def test_owner_type_matters(self, uploads):
        """Test that '42' and 42 are different owners."""
        upload_id = uploads.initialize_upload("a.bin", 2, 2, 42).upload_id

        with pytest.raises(UploadAccessDeniedError):
            uploads.get_upload_progress(upload_id, "42")


class TestProgressAndCancel:
    """Tests for progress queries and cancellation."""

    def test_progress_snapshot(self, uploads, user_a):
        """Test the progress fields."""
        upload_id = uploads.initialize_upload("report.pdf", 1000, 300, user_a).upload_id
        uploads.upload_chunk(upload_id, 3, b"x" * 100, user_a)

        progress = uploads.get_upload_progress(upload_id, user_a)

        assert progress.progress == 25.0
        assert progress.chunks_uploaded == 1
        assert progress.total_chunks == 4
        assert progress.filename == "report.pdf"
        assert progress.file_size == 1000

    def test_progress_unknown_session(self, uploads, user_a):
        """Test progress against an unknown session."""
        with pytest.raises(UploadSessionNotFoundError):
            uploads.get_upload_progress("upload_missing", user_a)

    def test_cancel_removes_incomplete_session(self, uploads, user_a):
        """Test that cancel does not require completeness."""
        upload_id = uploads.initialize_upload("a.bin", 1024, 256, user_a).upload_id
        uploads.upload_chunk(upload_id, 0, _pattern(0), user_a)

        uploads.cancel_upload(upload_id, user_a)

        assert uploads.get_stats().active_sessions == 0
        with pytest.raises(UploadSessionNotFoundError):
            uploads.upload_chunk(upload_id, 1, _pattern(1), user_a)

    def test_cancel_unknown_session(self, uploads, user_a):
        """Test cancel against an unknown session."""
        with pytest.raises(UploadSessionNotFoundError):
            uploads.cancel_upload("upload_missing", user_a)


class TestExpiry:
    """Tests for the session expiry sweep."""

    def test_expired_session_removed(self, uploads, clock, user_a):
        """Test that a session older than the timeout is unreachable after the sweep."""
        upload_id = uploads.initialize_upload("a.bin", 1024, 256, user_a).upload_id
        uploads.upload_chunk(upload_id, 0, _pattern(0), user_a)

        clock.advance(1801)
        removed = uploads.cleanup_expired_sessions()

        assert removed == 1
        with pytest.raises(UploadSessionNotFoundError):
            uploads.upload_chunk(upload_id, 1, _pattern(1), user_a)
        with pytest.raises(UploadSessionNotFoundError):
            uploads.assemble_file(upload_id, user_a)

    def test_session_at_timeout_boundary_survives(self, uploads, clock, user_a):
        """Test that age equal to the timeout is not yet expired."""
        upload_id = uploads.initialize_upload("a.bin", 2, 2, user_a).upload_id

        clock.advance(1800)

        assert uploads.cleanup_expired_sessions() == 0
        assert uploads.get_upload_progress(upload_id, user_a).total_chunks == 1

    def test_activity_does_not_extend_lifetime(self, uploads, clock, user_a):
        """Test that expiry is measured from creation, not last chunk."""
        upload_id = uploads.initialize_upload("a.bin", 1024, 256, user_a).upload_id
        for index in range(3):
            clock.advance(600)
            uploads.upload_chunk(upload_id, index, _pattern(index), user_a)

        clock.advance(1)
        uploads.cleanup_expired_sessions()

        with pytest.raises(UploadSessionNotFoundError):
            uploads.get_upload_progress(upload_id, user_a)

    def test_only_old_sessions_removed(self, uploads, clock, user_a):
        """Test that younger sessions survive the sweep."""
        old_id = uploads.initialize_upload("old.bin", 2, 2, user_a).upload_id
        clock.advance(1000)
        young_id = uploads.initialize_upload("young.bin", 2, 2, user_a).upload_id
        clock.advance(900)

        uploads.cleanup_expired_sessions()

        with pytest.raises(UploadSessionNotFoundError):
            uploads.get_upload_progress(old_id, user_a)
        assert uploads.get_upload_progress(young_id, user_a).filename == "young.bin"


class TestStats:
    """Tests for upload statistics."""

    def test_empty_stats(self, uploads):
        """Test stats with no sessions."""
        stats = uploads.get_stats()

        assert stats.active_sessions == 0
        assert stats.total_memory_usage == "0.00 MB"

    def test_sums_chunk_bytes_across_sessions(self, uploads, user_a, user_b):
        """Test that buffered bytes from every session are summed."""
        first = uploads.initialize_upload("a.bin", 2 * 1024 * 1024, 1024 * 1024, user_a).upload_id
        second = uploads.initialize_upload("b.bin", 1024 * 1024, 512 * 1024, user_b).upload_id
        uploads.upload_chunk(first, 0, b"\0" * (1024 * 1024), user_a)
        uploads.upload_chunk(second, 1, b"\0" * (512 * 1024), user_b)

        stats = uploads.get_stats()

        assert stats.active_sessions == 2
        assert stats.total_memory_usage == "1.50 MB"
        assert uploads.buffered_bytes() == 1536 * 1024


class TestDefaultInstance:
    """Tests for the process-wide service."""

    def test_default_instance_uses_settings(self):
        """Test that the default instance is cached and configured from settings."""
        service = get_chunked_upload_service()

        assert service is get_chunked_upload_service()
        assert service.session_timeout == 1800
        assert service.default_chunk_size == 5 * 1024 * 1024


class TestConcurrency:
    """Tests for concurrent access from worker threads."""

    def test_parallel_chunks_with_concurrent_sweep(self, uploads, user_a):
        """Test that chunks sent from many threads all land while the sweep runs."""
        total = 800
        workers = 8
        upload_id = uploads.initialize_upload("a.bin", total, 1, user_a).upload_id
        barrier = threading.Barrier(workers + 1)
        errors = []

        def send(offset):
            barrier.wait()
            try:
                for index in range(offset, total, workers):
                    uploads.upload_chunk(upload_id, index, bytes([index % 256]), user_a)
            except Exception as e:
                errors.append(e)

        def sweep():
            barrier.wait()
            for _ in range(200):
                uploads.cleanup_expired_sessions()

        threads = [threading.Thread(target=send, args=(offset,)) for offset in range(workers)]
        threads.append(threading.Thread(target=sweep))
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        progress = uploads.get_upload_progress(upload_id, user_a)
        assert errors == []
        assert progress.chunks_uploaded == progress.total_chunks == total
        assert uploads.assemble_file(upload_id, user_a) == bytes(index % 256 for index in range(total))

    def test_parallel_sessions_get_distinct_ids(self, uploads, user_a):
        """Test that concurrent initializations never share a session."""
        ids = []

        def initialize():
            for _ in range(50):
                ids.append(uploads.initialize_upload("a.bin", 10, 5, user_a).upload_id)

        threads = [threading.Thread(target=initialize) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(set(ids)) == 200
        assert uploads.get_stats().active_sessions == 200
