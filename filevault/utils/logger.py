"""
Logging for the upload core.

Levels:
- INFO: session created, file assembled, upload cancelled, sessions expired
- WARNING: owner mismatch, invalid chunk index, size mismatch, rejected file
- ERROR: unexpected system failures (a failing sweep tick is a WARNING and the loop keeps going)

Chunk bytes and personal fields (email, username, token...) never reach a log line.

Handlers:
- stdout / stderr: plain text
- {log_dir}/app.log, {log_dir}/error.log: one JSON object per line, tagged with
  the instance id and, when a host has set one, the current request id
"""
import contextvars
import json
import logging
import socket
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Optional

from filevault.config import get_settings

# ctx에 절대 싣지 않는 키
_SENSITIVE_FIELDS = frozenset({"email", "username", "password", "token", "secret"})

# 호스트(HTTP 계층 등)가 요청마다 설정, 태스크별로 분리됨
request_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "request_id", default=None
)


def get_instance_id() -> str:
    """INSTANCE_IP setting, falling back to the hostname."""
    ip = (get_settings().instance_ip or "").strip()
    if ip:
        return ip
    try:
        return socket.gethostname()
    except OSError:
        return "unknown"


def generate_request_id() -> str:
    """12 hex chars from a uuid4."""
    return uuid.uuid4().hex[:12]


def get_request_id() -> Optional[str]:
    """Request id bound to the current context, if any."""
    return request_id_var.get()


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind request_id (or a fresh one) to the current context and return it."""
    rid = request_id or generate_request_id()
    request_id_var.set(rid)
    return rid


class FlushingRotatingFileHandler(RotatingFileHandler):
    """Rotating file handler that flushes after every record so tailing readers see it immediately."""

    def emit(self, record: logging.LogRecord) -> None:
        super().emit(record)
        self.flush()


# LogRecord 기본 속성: extra로 넘긴 값만 ctx로 감
_STANDARD_ATTRS = frozenset(
    {
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "pathname", "process", "processName", "relativeCreated",
        "stack_info", "exc_info", "exc_text", "thread", "threadName",
        "message", "asctime", "taskName",
    }
)


class JsonLinesFormatter(logging.Formatter):
    """
    One JSON object per record.

    Keys: ts (UTC, ms), level, instance, rid (if set), event (if given via
    extra), msg, ctx (remaining extras minus sensitive keys), exc.
    """

    def __init__(self, instance: Optional[str] = None):
        super().__init__()
        self.instance = instance or get_instance_id()

    def format(self, record: logging.LogRecord) -> str:
        # 항상 UTC, 밀리초까지
        dt = datetime.fromtimestamp(record.created, tz=timezone.utc)
        try:
            msecs = int(getattr(record, "msecs", 0) or 0) % 1000
        except (TypeError, ValueError):
            msecs = 0
        ts_utc = dt.strftime("%Y-%m-%dT%H:%M:%S") + f".{msecs:03d}Z"
        payload = {
            "ts": ts_utc,
            "level": record.levelname,
            "instance": self.instance,
        }

        rid = get_request_id()
        if rid:
            payload["rid"] = rid

        if getattr(record, "event", None):
            payload["event"] = record.event

        payload["msg"] = record.getMessage()

        _skip_in_ctx = _STANDARD_ATTRS | {"event", "instance"}
        extra_ctx = {
            k: v for k, v in record.__dict__.items()
            if k not in _skip_in_ctx
            and k not in _SENSITIVE_FIELDS
            and v is not None
        }
        if extra_ctx:
            payload["ctx"] = extra_ctx

        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging() -> None:
    """
    Configure the root logger from settings.

    Text goes to stdout (INFO+) and stderr (ERROR+). With log_to_file, JSON lines
    also go to app.log (INFO+) and error.log (ERROR+) under log_dir; an
    unwritable log_dir only disables the file handlers.
    """
    settings = get_settings()
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if settings.debug else logging.INFO)
    root_logger.handlers.clear()

    text_formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(logging.INFO)
    stdout_handler.setFormatter(text_formatter)
    root_logger.addHandler(stdout_handler)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.ERROR)
    stderr_handler.setFormatter(text_formatter)
    root_logger.addHandler(stderr_handler)

    if settings.log_to_file:
        json_formatter = JsonLinesFormatter()
        log_dir = Path(settings.log_dir)
        try:
            log_dir.mkdir(parents=True, exist_ok=True)

            file_handler = FlushingRotatingFileHandler(
                log_dir / "app.log",
                maxBytes=10 * 1024 * 1024,
                backupCount=5,
                encoding="utf-8",
            )
            file_handler.setLevel(logging.INFO)
            file_handler.setFormatter(json_formatter)
            root_logger.addHandler(file_handler)

            error_handler = FlushingRotatingFileHandler(
                log_dir / "error.log",
                maxBytes=10 * 1024 * 1024,
                backupCount=5,
                encoding="utf-8",
            )
            error_handler.setLevel(logging.ERROR)
            error_handler.setFormatter(json_formatter)
            root_logger.addHandler(error_handler)
        except OSError as e:
            root_logger.warning("File logging disabled: %s", e)

    # 서드파티 로거는 WARNING부터
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
