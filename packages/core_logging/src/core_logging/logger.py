import logging, sys, orjson, os
from typing import Any, Optional, Dict
import time
import contextvars

# ────────────────────────────────────────────────────────────
# Request-scoped context
# ────────────────────────────────────────────────────────────
_REQUEST_ID: contextvars.ContextVar[Optional[str]] = \
    contextvars.ContextVar("_REQUEST_ID", default=None)
_CALLER_ID: contextvars.ContextVar[Optional[str]] = \
    contextvars.ContextVar("_CALLER_ID", default=None)

def bind_request_id(request_id: Optional[str]) -> None:
    """Bind the current request_id into the local context for log injection."""
    _REQUEST_ID.set(request_id)

def current_request_id() -> Optional[str]:
    """Return the currently bound request_id (if any)."""
    return _REQUEST_ID.get()

def bind_caller_id(caller_id: Optional[str]) -> None:
    """Bind the verified caller id so every later line of the request carries it."""
    _CALLER_ID.set(caller_id)


class _RequestContextFilter(logging.Filter):
    """Inject the bound request_id / caller_id into LogRecords that lack them."""
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            rid = _REQUEST_ID.get()
            if rid:
                record.request_id = rid
        if getattr(record, "caller_id", None) is None:
            cid = _CALLER_ID.get()
            if cid:
                record.caller_id = cid
        return True

# Reserved LogRecord attributes we must not overwrite
_RESERVED: set[str] = {
    "name","msg","args","levelname","levelno",
    "pathname","filename","module","exc_info","exc_text","stack_info",
    "lineno","funcName","created","msecs","relativeCreated",
    "thread","threadName","processName","process","message","asctime",
    "taskName",
}

# Top-level fields of the log envelope; everything else is nested under ``meta``
_TOP_LEVEL: set[str] = {
    "ts",
    "level",
    "service",
    "stage",
    "latency_ms",
    "request_id",
    "caller_id",
    "message",
    "status_code",
    "path",
    "method",
    "error_code",
}

def _default(obj):
    if isinstance(obj, bytes):
        return obj.decode("utf-8", errors="ignore")
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    if isinstance(obj, BaseException):
        return {"error": obj.__class__.__name__, "message": str(obj)}
    raise TypeError

class JsonFormatter(logging.Formatter):
    """Emit one JSON object per record.

    Top-level keys follow ``_TOP_LEVEL``; everything else is nested under ``meta``.
    """

    def format(self, record: logging.LogRecord) -> str:
        base: Dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(getattr(record, "created", time.time()))),
            "level": record.levelname,
            "service": os.getenv("SERVICE_NAME", record.name),
            # Canonical event key (do not duplicate as `message`)
            "event": record.getMessage(),
        }
        meta: Dict[str, Any] = {}
        for key, val in record.__dict__.items():
            if key in _RESERVED:
                continue
            if key in _TOP_LEVEL:
                base[key] = val
            else:
                meta[key] = val
        if meta:
            base["meta"] = meta
        if record.exc_info:
            base["exc"] = self.formatException(record.exc_info)
        return orjson.dumps(base, default=_default).decode("utf-8")

class StructuredLogger(logging.Logger):
    """
    A drop-in `logging.Logger` replacement that **accepts arbitrary keyword
    arguments** (e.g. `logger.info("msg", stage="gate")`) and transparently
    merges them into the `extra` mapping.
    """

    def _log(                                   # noqa: PLR0913 – keep signature
        self,
        level: int,
        msg: str,
        args,
        exc_info=None,
        extra: Dict[str, Any] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        **kwargs: Any,
    ) -> None:
        if kwargs:
            extra = {**(extra or {}), **kwargs}
        extra = _sanitize_extra(extra)
        super()._log(
            level,
            msg,
            args,
            exc_info=exc_info,
            extra=extra,
            stack_info=stack_info,
            stacklevel=stacklevel,
        )


class DynamicStdoutHandler(logging.StreamHandler):
    """
    Ensures every *emit* writes to **the current** `sys.stdout`, so output
    redirected by tests after logger creation is still captured.
    """

    def emit(self, record: logging.LogRecord) -> None:  # noqa: D401
        self.setStream(sys.stdout)
        super().emit(record)


logging.setLoggerClass(StructuredLogger)


def get_logger(name: str = "app", level: str | None = None) -> logging.Logger:
    logger = logging.getLogger(name)
    is_service_root = "." not in name  # only top-level names own handlers

    if is_service_root:
        if not logger.handlers:
            handler = DynamicStdoutHandler()
            handler.setFormatter(JsonFormatter())
            logger.addHandler(handler)
        logger.propagate = False
    else:
        # Leaf/module loggers never own handlers; let them bubble to the service root.
        for h in list(logger.handlers):
            logger.removeHandler(h)
        logger.propagate = True

    logger.setLevel(level or os.getenv("SERVICE_LOG_LEVEL", "INFO"))
    if not any(isinstance(f, _RequestContextFilter) for f in logger.filters):
        logger.addFilter(_RequestContextFilter())
    return logger

def log_event(logger: logging.Logger, event: str, **kwargs: Any) -> None:
    logger.info(event, extra=_sanitize_extra(kwargs))

def log_stage(logger: logging.Logger, stage: str, event: str, **fields: Any) -> None:
    """
    Emit exactly one structured line: ``log_stage(logger, "gate", "owner_granted", resource_type=t)``.
    A ``level`` field (``"WARNING"``, ``"ERROR"``, …) selects the record level.
    """
    level = str(fields.pop("level", "INFO")).upper()
    payload = {"stage": stage, **fields}
    logger.log(getattr(logging, level, logging.INFO), event, extra=_sanitize_extra(payload))

def record_error(
    code: str,
    *,
    where: str,
    message: str,
    logger: logging.Logger,
    action: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
    level: str = "ERROR",
    **extras: Any,
) -> None:
    """
    Emit one normalized ERROR line. Used for failures that are observed but
    not surfaced to the caller.
    """
    levelno = getattr(logging, (level or "ERROR").upper(), logging.ERROR)
    payload = {
        "stage": extras.pop("stage", None) or "error",
        "error_code": str(getattr(code, "value", code)),
        "error_message": message,
        "where": where,
        **({"action": action} if action else {}),
        **({"context": context} if isinstance(context, dict) else {}),
        **extras,
    }
    logger.log(levelno, "error", extra=_sanitize_extra(payload))

def _sanitize_extra(extra: Dict[str, Any] | None) -> Dict[str, Any]:
    """Rename keys that would collide with LogRecord attributes."""
    if not extra:
        return {}
    out: Dict[str, Any] = {}
    for k, v in extra.items():
        if k == "message":
            out["message_extra"] = v
        elif k in _RESERVED:
            out[f"{k}_"] = v
        else:
            out[k] = v
    return out
