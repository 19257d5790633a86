from .logger import (
    get_logger,
    log_stage,
    log_event,
    bind_request_id,
    bind_caller_id,
    current_request_id,
    record_error,
)

__all__ = [
    "get_logger",
    "log_stage",
    "log_event",
    "bind_request_id",
    "bind_caller_id",
    "current_request_id",
    "record_error",
]
