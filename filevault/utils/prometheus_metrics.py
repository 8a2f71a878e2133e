"""
Prometheus metrics for the upload core.

- Chunked upload: chunk/assembly outcomes, session lifecycle, assembled file size
- Live state: active sessions, buffered chunk bytes, cache entries (custom collectors)
- Cache: hit/miss ratio, evictions
- Pushgateway: 선택 시 주기적으로 메트릭 푸시 (PROMETHEUS_PUSHGATEWAY_URL)
"""
import asyncio
import logging
import socket
import weakref

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, pushadd_to_gateway
from prometheus_client.core import GaugeMetricFamily

from filevault.config import get_settings

logger = logging.getLogger(__name__)

# --- Chunked upload ---
upload_sessions_created_total = Counter(
    "filevault_upload_sessions_created_total",
    "Total chunked upload sessions initialized",
    registry=REGISTRY,
)
upload_sessions_cancelled_total = Counter(
    "filevault_upload_sessions_cancelled_total",
    "Total chunked upload sessions cancelled by their owner",
    registry=REGISTRY,
)
# 만료 정리로 사라진 세션 수 (클라이언트에 통보되지 않는 데이터 손실)
upload_sessions_expired_total = Counter(
    "filevault_upload_sessions_expired_total",
    "Total chunked upload sessions removed by the expiry sweep",
    registry=REGISTRY,
)
upload_chunks_total = Counter(
    "filevault_upload_chunks_total",
    "Total chunk upload attempts by outcome",
    ["result"],  # result: success | not_found | denied | invalid
    registry=REGISTRY,
)
upload_assembly_total = Counter(
    "filevault_upload_assembly_total",
    "Total file assembly attempts by outcome",
    ["result"],  # result: success | not_found | denied | incomplete | missing_chunk | size_mismatch
    registry=REGISTRY,
)
upload_assembled_file_size_bytes = Histogram(
    "filevault_upload_assembled_file_size_bytes",
    "Size of successfully assembled files in bytes",
    buckets=(
        64 * 1024,
        256 * 1024,
        1024 * 1024,
        5 * 1024 * 1024,
        10 * 1024 * 1024,
        50 * 1024 * 1024,
        100 * 1024 * 1024,
    ),
    registry=REGISTRY,
)

# --- Cache ---
cache_requests_total = Counter(
    "filevault_cache_requests_total",
    "Total cache lookups by outcome",
    ["result"],  # result: hit | miss
    registry=REGISTRY,
)
cache_evictions_total = Counter(
    "filevault_cache_evictions_total",
    "Total expired cache entries removed",
    ["reason"],  # reason: expired_read | sweep
    registry=REGISTRY,
)


class UploadSessionCollector:
    """Exposes live upload session count and buffered chunk bytes."""

    def __init__(self, uploads):
        self._uploads = uploads

    def collect(self):
        sessions = GaugeMetricFamily(
            "filevault_upload_sessions_active",
            "Chunked upload sessions currently held in memory",
        )
        sessions.add_metric([], float(self._uploads.active_session_count()))
        yield sessions

        buffered = GaugeMetricFamily(
            "filevault_upload_buffered_bytes",
            "Chunk bytes buffered across all live upload sessions",
        )
        buffered.add_metric([], float(self._uploads.buffered_bytes()))
        yield buffered


class CacheSizeCollector:
    """Collector that reports stored cache entries (expired but unswept included)."""

    def __init__(self, cache):
        self._cache = cache

    def collect(self):
        metric = GaugeMetricFamily(
            "filevault_cache_entries",
            "Entries currently stored in the in-memory cache",
        )
        metric.add_metric([], float(len(self._cache)))
        yield metric


def _node_identity() -> str:
    """Node/instance identifier: NODE_NAME env or hostname."""
    settings = get_settings()
    if settings.node_name:
        return settings.node_name
    try:
        return socket.gethostname()
    except OSError:
        return "unknown"


def push_metrics_to_gateway(registry: CollectorRegistry = REGISTRY) -> None:
    """
    Push current registry to Prometheus Pushgateway.
    Called periodically when PROMETHEUS_PUSHGATEWAY_URL is set.
    """
    settings = get_settings()
    url = (settings.prometheus_pushgateway_url or "").strip()
    if not url:
        return
    grouping_key = {"instance": settings.instance_ip or _node_identity()}
    try:
        # pushadd_to_gateway uses POST; push_to_gateway uses PUT (some gateways/proxies return 501 for PUT)
        pushadd_to_gateway(url, job="filevault", registry=registry, grouping_key=grouping_key)
    except Exception as e:
        logger.warning("Pushgateway push failed: %s", e, exc_info=False)


async def pushgateway_loop() -> None:
    """
    Background loop: push metrics to Pushgateway at configured interval.
    Returns immediately when PROMETHEUS_PUSHGATEWAY_URL is not set.
    Push is run in thread pool to avoid blocking the event loop.
    """
    settings = get_settings()
    url = (settings.prometheus_pushgateway_url or "").strip()
    if not url:
        return
    interval = max(15, settings.prometheus_push_interval_seconds)
    logger.info(
        "Pushgateway enabled: url=%s interval=%ds",
        url,
        interval,
        extra={"event": "lifecycle"},
    )
    loop = asyncio.get_running_loop()
    while True:
        await asyncio.sleep(interval)
        try:
            await loop.run_in_executor(None, push_metrics_to_gateway)
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.warning("Pushgateway push failed: %s", e, exc_info=False)


# registry -> {"app_info" | "uploads" | "cache": registered collector}
_registered = weakref.WeakKeyDictionary()


def _register_once(registry: CollectorRegistry, slot: str, collector) -> None:
    """Register collector in slot, replacing whatever an earlier setup put there."""
    slots = _registered.setdefault(registry, {})
    previous = slots.get(slot)
    if previous is not None:
        registry.unregister(previous)
    registry.register(collector)
    slots[slot] = collector


def setup_prometheus(cache=None, uploads=None, registry: CollectorRegistry = REGISTRY) -> None:
    """
    Register app identity and live-state collectors.

    1. app_info (node, version, environment).
    2. UploadSessionCollector / CacheSizeCollector for the given service instances.

    Safe to call again (e.g. a second lifespan): earlier collectors are replaced.
    """
    settings = get_settings()

    app_info = Gauge(
        "filevault_app_info",
        "Application and node identity (labels only, value is 1)",
        ["node", "app", "version", "environment"],
        registry=None,
    )
    app_info.labels(
        node=_node_identity(),
        app=settings.app_name,
        version=settings.app_version,
        environment=settings.environment.value,
    ).set(1)
    _register_once(registry, "app_info", app_info)

    if uploads is not None:
        _register_once(registry, "uploads", UploadSessionCollector(uploads))
    if cache is not None:
        _register_once(registry, "cache", CacheSizeCollector(cache))
