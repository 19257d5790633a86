from __future__ import annotations
from typing import Any, Optional


class IndexUnavailable(Exception):
    """The ownership index could not be read or written.

    Raised for any Redis failure and for an optimistic transaction that
    exhausted its retries. ``detail`` carries a JSON-safe description for the
    caller-facing error envelope.
    """

    def __init__(self, message: str, *, detail: Optional[Any] = None):
        super().__init__(message)
        self.detail = detail if detail is not None else message


__all__ = ["IndexUnavailable"]
