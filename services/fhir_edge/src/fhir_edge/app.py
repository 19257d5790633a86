from __future__ import annotations
from contextlib import asynccontextmanager
from typing import Any, Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response
from starlette.convertors import Convertor, register_url_convertor

import core_metrics
from core_config import Settings, get_settings
from core_http.client import build_http_client
from core_http.errors import attach_standard_error_handlers, error_payload, raise_http_error
from core_index.redis_client import create_redis_client
from core_index.store import IndexStore, RedisIndexStore
from core_logging import bind_caller_id, current_request_id, get_logger, log_stage
from core_logging.error_codes import ErrorCode
from core_utils import jsonx
from core_utils.fastapi_bootstrap import setup_service
from core_utils.health import attach_health_routes
from core_utils.ids import generate_request_id

from .decorators import ResponseDecorators
from .endpoint import resolve_endpoint
from .errors import OwnershipError
from .gate import OwnershipGate
from .identity import IdentityVerifier, JwtIdentityVerifier, verify_caller
from .proxy import BackendProxy, relay
from .records import RequestScope
from .search_scope import SearchScopeRewriter
from .synchronizer import IndexSynchronizer

logger = get_logger("fhir_edge")

# ──────────────────────────────────────────────────────────────────────────────
# 1) URL shapes (FHIR REST): resource types, logical ids and $operations
# ──────────────────────────────────────────────────────────────────────────────

class _ResourceTypeConvertor(Convertor):
    regex = "[A-Za-z][A-Za-z0-9]*"

    def convert(self, value: str) -> str:
        return value

    def to_string(self, value: Any) -> str:
        return str(value)


class _ResourceIdConvertor(_ResourceTypeConvertor):
    regex = r"[A-Za-z0-9\-\.]{1,64}"


class _OperationConvertor(_ResourceTypeConvertor):
    regex = r"\$[^/]+"


register_url_convertor("fhirtype", _ResourceTypeConvertor())
register_url_convertor("fhirid", _ResourceIdConvertor())
register_url_convertor("fhirop", _OperationConvertor())

_ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

# ──────────────────────────────────────────────────────────────────────────────
# 2) Request helpers & dependencies
# ──────────────────────────────────────────────────────────────────────────────

def _endpoint(request: Request) -> str:
    s: Settings = request.app.state.settings
    try:
        return resolve_endpoint(request.headers, default_fhir_url=s.default_fhir_url, proxy_path=s.proxy_path)
    except ValueError as exc:
        raise raise_http_error(
            400,
            ErrorCode.validation_failed,
            "Invalid x-target-fhir-endpoint header",
            current_request_id() or generate_request_id(),
            details={"error": str(exc)},
        )


async def require_caller(request: Request) -> str:
    caller = await verify_caller(request.headers.get("authorization"), request.app.state.verifier)
    bind_caller_id(caller)
    return caller


def _scope(request: Request, caller: str, resource_type: Optional[str] = None, resource_id: Optional[str] = None) -> RequestScope:
    return RequestScope(
        caller=caller,
        endpoint=_endpoint(request),
        resource_type=resource_type,
        resource_id=resource_id,
        root=request.app.state.settings.index_root,
    )


def _bundle(body: bytes) -> Any:
    try:
        return jsonx.loads(body) if body else None
    except ValueError:
        return None

# ──────────────────────────────────────────────────────────────────────────────
# 3) Routes – registration order is match order
# ──────────────────────────────────────────────────────────────────────────────

public = APIRouter()
protected = APIRouter()


async def _passthrough(request: Request) -> Response:
    resp = await request.app.state.proxy.forward(request, endpoint=_endpoint(request))
    return relay(resp)


@public.get("/metadata")
async def capability_statement(request: Request):
    return await _passthrough(request)


@public.api_route("/_history", methods=_ALL_METHODS)
@public.api_route("/_history/{rest:path}", methods=_ALL_METHODS)
async def system_history(request: Request):
    return await _passthrough(request)


@public.get("/{resource_type:fhirtype}/_history")
async def type_history(request: Request, resource_type: str):
    return await _passthrough(request)


@public.get("/{resource_type:fhirtype}/{resource_id:fhirid}/_history")
async def instance_history(request: Request, resource_type: str, resource_id: str):
    return await _passthrough(request)


@protected.api_route("/{operation:fhirop}", methods=["GET", "POST"])
@protected.api_route("/{resource_type:fhirtype}/{operation:fhirop}", methods=["GET", "POST"])
@protected.api_route("/{resource_type:fhirtype}/{resource_id:fhirid}/{operation:fhirop}", methods=["GET", "POST"])
async def operation(request: Request, caller: str = Depends(require_caller)):
    return await _passthrough(request)


async def _search(request: Request, caller: str, resource_type: Optional[str]) -> Response:
    state = request.app.state
    scope = _scope(request, caller, resource_type)
    params = await state.rewriter.rewrite(scope, request.query_params.multi_items())
    resp = await state.proxy.forward(request, endpoint=scope.endpoint, params=params)
    return relay(resp)


@protected.post("/{resource_type:fhirtype}/_search")
async def search_post(request: Request, resource_type: str, caller: str = Depends(require_caller)):
    return await _search(request, caller, resource_type)


@protected.get("/{resource_type:fhirtype}")
async def search_type(request: Request, resource_type: str, caller: str = Depends(require_caller)):
    return await _search(request, caller, resource_type)


@protected.get("/")
async def search_system(request: Request, caller: str = Depends(require_caller)):
    return await _search(request, caller, None)


@protected.get("/{resource_type:fhirtype}/{resource_id:fhirid}")
@protected.get("/{resource_type:fhirtype}/{resource_id:fhirid}/_history/{version_id:fhirid}")
async def read(request: Request, caller: str = Depends(require_caller)):
    return await _passthrough(request)


@protected.post("/")
async def transaction(request: Request, caller: str = Depends(require_caller)):
    state = request.app.state
    scope = _scope(request, caller)
    body = await request.body()
    resp = await state.proxy.forward(request, endpoint=scope.endpoint, body=body)
    await state.decorators.on_transaction(resp, _bundle(body), scope)
    return relay(resp)


@protected.post("/{resource_type:fhirtype}")
async def create(request: Request, resource_type: str, caller: str = Depends(require_caller)):
    state = request.app.state
    scope = _scope(request, caller, resource_type)
    resp = await state.proxy.forward(request, endpoint=scope.endpoint)
    await state.decorators.on_create(resp, scope)
    return relay(resp)


@protected.delete("/{resource_type:fhirtype}/{resource_id:fhirid}")
async def delete(request: Request, resource_type: str, resource_id: str, caller: str = Depends(require_caller)):
    state = request.app.state
    scope = _scope(request, caller, resource_type, resource_id)
    await state.gate.check(scope)
    resp = await state.proxy.forward(request, endpoint=scope.endpoint)
    await state.decorators.on_delete(resp, scope)
    return relay(resp)


@protected.api_route("/{resource_type:fhirtype}/{resource_id:fhirid}", methods=["PUT", "PATCH"])
async def update(request: Request, resource_type: str, resource_id: str, caller: str = Depends(require_caller)):
    state = request.app.state
    scope = _scope(request, caller, resource_type, resource_id)
    await state.gate.check(scope)
    resp = await state.proxy.forward(request, endpoint=scope.endpoint)
    await state.decorators.on_update(resp, scope)
    return relay(resp)


_GATED_METHODS = frozenset({"PUT", "PATCH", "DELETE"})


def _target(rest: str) -> tuple[Optional[str], Optional[str], int]:
    """``Type[/id[/...]][/]`` → (type, id, segment count)."""
    segments = [s for s in rest.split("/") if s]
    resource_type = segments[0] if segments else None
    resource_id = segments[1] if len(segments) > 1 else None
    return resource_type, resource_id, len(segments)


@protected.api_route("/{rest:path}", methods=_ALL_METHODS)
async def fallthrough(request: Request, rest: str, caller: str = Depends(require_caller)):
    state = request.app.state
    resource_type, resource_id, depth = _target(rest)
    if request.method not in _GATED_METHODS | {"POST"} or not state.synchronizer.tracks(resource_type):
        return await _passthrough(request)

    # Trailing-slash and conditional (id-less) forms of tracked-type mutations
    # still pass the gate; a missing id is refused there.
    scope = _scope(request, caller, resource_type, resource_id)
    if request.method in _GATED_METHODS:
        await state.gate.check(scope)
    resp = await state.proxy.forward(request, endpoint=scope.endpoint)
    if request.method == "POST" and depth == 1:
        await state.decorators.on_create(resp, scope)
    elif request.method == "DELETE" and depth == 2:
        await state.decorators.on_delete(resp, scope)
    elif request.method in ("PUT", "PATCH") and depth == 2:
        await state.decorators.on_update(resp, scope)
    return relay(resp)

# ──────────────────────────────────────────────────────────────────────────────
# 4) Application factory
# ──────────────────────────────────────────────────────────────────────────────

async def _ownership_error_handler(_: Request, exc: OwnershipError) -> JSONResponse:
    rid = current_request_id() or generate_request_id()
    return JSONResponse(
        status_code=exc.status_code,
        content=error_payload(exc.code, exc.message, rid, details=exc.details),
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[IndexStore] = None,
    verifier: Optional[IdentityVerifier] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Build the edge. Collaborators left as ``None`` are constructed from
    *settings*; those the factory builds are also closed on shutdown.
    """
    settings = settings or get_settings()
    get_logger("fhir_edge", settings.service_log_level)
    owned_http = http_client is None
    if http_client is None:
        http_client = build_http_client(timeout_ms=settings.backend_timeout_ms)
    redis_client = None
    if store is None:
        redis_client = create_redis_client(settings.redis_url, max_connections=settings.redis_max_connections)
        store = RedisIndexStore(redis_client, max_attempts=settings.index_txn_max_attempts)
    if verifier is None:
        verifier = JwtIdentityVerifier.from_settings(settings, http_client=http_client)

    tracked = settings.tracked_resource_types
    mount_path = settings.mount_path.rstrip("/")
    synchronizer = IndexSynchronizer(store, tracked=tracked)
    decorators = ResponseDecorators(synchronizer)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Prime metric families so the first scrape is not empty
        core_metrics.counter("fhir_edge_http_5xx_total", 0)
        log_stage(
            logger, "init", "config",
            default_fhir_url=settings.default_fhir_url,
            mount_path=settings.mount_path,
            proxy_path=settings.proxy_path,
            index_root=settings.index_root,
            tracked=sorted(tracked),
            identity="configured" if getattr(verifier, "configured", True) else "unconfigured",
            request_id="startup",
        )
        yield
        await decorators.drain()
        if owned_http:
            await http_client.aclose()
        if redis_client is not None:
            await redis_client.aclose()

    app = FastAPI(title="FHIR Ownership Edge", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.verifier = verifier
    app.state.gate = OwnershipGate(store, tracked=tracked)
    app.state.rewriter = SearchScopeRewriter(store, tracked=tracked)
    app.state.synchronizer = synchronizer
    app.state.decorators = decorators
    app.state.proxy = BackendProxy(http_client, mount_path=mount_path)

    setup_service(app, "fhir_edge")
    attach_standard_error_handlers(app, service="fhir_edge")
    app.add_exception_handler(OwnershipError, _ownership_error_handler)

    async def _readiness() -> dict:
        ping = getattr(store, "ping", None)
        ok = bool(await ping()) if ping is not None else True
        return {"status": "ready" if ok else "degraded", "ready": ok, "request_id": generate_request_id()}

    attach_health_routes(app, checks={"liveness": (lambda: True), "readiness": _readiness})

    app.include_router(public, prefix=mount_path)
    app.include_router(protected, prefix=mount_path)
    return app


app = create_app()
