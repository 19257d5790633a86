"""
Project-wide PyTest bootstrap.

Responsibilities
────────────────
1.  Put every `*/src` directory on PYTHONPATH so tests can import the
    project's packages without editable installs.
2.  Shared fixtures: an in-memory Redis (fakeredis), the ownership index on
    top of it, a stub backend FHIR server and JWT helpers.
"""

from pathlib import Path
import sys

# ── 1 · add all source roots to PYTHONPATH (prepend so we win over site-packages) ─
ROOT = Path(__file__).parent.resolve()
_paths = (
    [str(ROOT)]                                           # project root
    + [str(p) for p in (ROOT / "packages").glob("*/src")] # packages/*/src
    + [str(p) for p in (ROOT / "services").glob("*/src")] # services/*/src
)
for _p in reversed(_paths):
    if _p not in sys.path:
        sys.path.insert(0, _p)

import fakeredis
import httpx
import pytest

from core_config import Settings
from core_index.store import RedisIndexStore
from tests.helpers.edge_env import FHIR_BASE, FHIR_PATH, JWT_SECRET
from tests.helpers.fhir_backend_stub import FhirBackendStub


# ── 2 · index fixtures ──────────────────────────────────────────────────
@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(redis_server):
    return fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def index_store(redis_client):
    # Tiny backoff so conflict tests stay fast
    return RedisIndexStore(redis_client, max_attempts=5, retry_base_ms=1, retry_jitter_ms=1, retry_cap_ms=5)


# ── 3 · backend + identity fixtures ─────────────────────────────────────
@pytest.fixture
def fhir_backend():
    return FhirBackendStub(base_path=FHIR_PATH)


@pytest.fixture
def edge_settings():
    return Settings(
        DEFAULT_FHIR_URL=FHIR_BASE,
        PROXY_PATH=FHIR_PATH,
        MOUNT_PATH="",
        AUTH_JWT_SECRET=JWT_SECRET,
        TRACKED_RESOURCE_TYPES="Questionnaire",
    )


@pytest.fixture
def edge_app(edge_settings, index_store, fhir_backend):
    from fhir_edge.app import create_app
    return create_app(edge_settings, store=index_store, http_client=fhir_backend.client())


@pytest.fixture
def edge_client(edge_app):
    """Async client bound to the edge app; use inside ``@pytest.mark.asyncio`` tests."""
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=edge_app), base_url="http://edge.test")
