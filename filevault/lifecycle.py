"""
Upload core lifecycle.

Starts and stops the background work owned by the core:
- Cache expiry sweep
- Upload session expiry sweep
- Prometheus live-state collectors for the runtime services
- Prometheus Pushgateway push (선택)

Host applications enter ``lifespan()`` once at startup, e.g. from their
own server lifespan hook, and pick the services off the yielded runtime.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncGenerator, Optional

from filevault.config import get_settings
from filevault.services.cache import CacheService, get_cache_service
from filevault.services.chunked_upload import ChunkedUploadService, get_chunked_upload_service
from filevault.utils.prometheus_metrics import pushgateway_loop, setup_prometheus

logger = logging.getLogger("filevault")


@dataclass
class UploadRuntime:
    """Services handed to the host application for the duration of the lifespan."""

    cache: CacheService
    uploads: ChunkedUploadService


@asynccontextmanager
async def lifespan(
    cache: Optional[CacheService] = None,
    uploads: Optional[ChunkedUploadService] = None,
) -> AsyncGenerator[UploadRuntime, None]:
    """
    Run the upload core background tasks.

    Args:
        cache: Cache instance (default: process-wide instance from settings)
        uploads: Upload service instance (default: process-wide instance from settings)
    """
    settings = get_settings()
    runtime = UploadRuntime(
        cache=cache if cache is not None else get_cache_service(),
        uploads=uploads if uploads is not None else get_chunked_upload_service(),
    )

    setup_prometheus(cache=runtime.cache, uploads=runtime.uploads)
    await runtime.cache.start()
    await runtime.uploads.start()
    # Pushgateway 연동: PROMETHEUS_PUSHGATEWAY_URL 설정 시 백그라운드에서 주기 푸시
    pushgateway_task = asyncio.create_task(pushgateway_loop())

    logger.info(
        "Upload core started",
        extra={
            "event": "lifecycle",
            "version": settings.app_version,
            "environment": settings.environment.value,
        },
    )
    try:
        yield runtime
    finally:
        pushgateway_task.cancel()
        try:
            await pushgateway_task
        except asyncio.CancelledError:
            pass

        await runtime.uploads.stop()
        await runtime.cache.stop()

        stats = runtime.uploads.get_stats()
        # 종료 시 남은 세션은 메모리와 함께 사라짐
        logger.info(
            "Upload core stopped",
            extra={"event": "lifecycle", "active_sessions": stats.active_sessions},
        )
