"""
Global conftest for the edge tests.

1. A pretty unified-diff assertion helper for clearer dict-vs-dict failures.
2. An autouse fixture that clears the request/caller ids bound into the
   logging context, so one test's ids never show up in the next test's lines.
"""

import json
import difflib

import pytest

from core_logging import bind_caller_id, bind_request_id


# --------------------------------------------------------------------------- #
# Pretty diff for dict comparisons                                            #
# --------------------------------------------------------------------------- #
def pytest_assertrepr_compare(op, left, right):
    """Pretty unified-diff output when comparing two dicts with ==."""
    if isinstance(left, dict) and isinstance(right, dict) and op == "==":
        lhs = json.dumps(left, indent=2, sort_keys=True).splitlines()
        rhs = json.dumps(right, indent=2, sort_keys=True).splitlines()
        return [""] + list(
            difflib.unified_diff(lhs, rhs, fromfile="left", tofile="right")
        )


# --------------------------------------------------------------------------- #
# Logging context isolation                                                   #
# --------------------------------------------------------------------------- #
@pytest.fixture(autouse=True)
def _reset_log_context():
    yield
    bind_request_id(None)
    bind_caller_id(None)
