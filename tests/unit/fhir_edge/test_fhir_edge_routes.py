import logging

import httpx
import pytest

from core_config import Settings
from fhir_edge.app import create_app
from fhir_edge.records import RequestScope
from tests.helpers.edge_env import ENDPOINT, FHIR_BASE, FHIR_PATH, JWT_SECRET, bearer

OTHER_ENDPOINT = "http://other.test/fhir"


def _owned(caller="alice", endpoint=ENDPOINT):
    return RequestScope(caller=caller, endpoint=endpoint, resource_type="Questionnaire").type_path()


# ── public & identity ───────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_healthz_and_readyz(edge_client):
    async with edge_client as c:
        assert (await c.get("/healthz")).json() == {"status": "ok"}
        ready = await c.get("/readyz")
    assert ready.status_code == 200
    assert ready.json()["ready"] is True


@pytest.mark.asyncio
async def test_metadata_needs_no_identity(edge_client, fhir_backend):
    async with edge_client as c:
        r = await c.get("/metadata")
    assert r.status_code == 200
    assert r.json()["resourceType"] == "CapabilityStatement"
    assert str(fhir_backend.last().url) == f"{ENDPOINT}/metadata"


@pytest.mark.asyncio
async def test_history_is_public(edge_client, fhir_backend):
    async with edge_client as c:
        r = await c.get("/Questionnaire/1/_history")
    assert r.status_code == 200
    assert fhir_backend.last().url.path == "/fhir/Questionnaire/1/_history"


@pytest.mark.asyncio
async def test_missing_token_is_403_with_envelope(edge_client, fhir_backend):
    async with edge_client as c:
        r = await c.get("/Questionnaire")
    assert r.status_code == 403
    body = r.json()
    assert body["error"]["code"] == "identity_required"
    assert body["request_id"] == r.headers["x-request-id"]
    assert fhir_backend.requests == []


@pytest.mark.asyncio
async def test_bad_token_is_401(edge_client, fhir_backend):
    async with edge_client as c:
        r = await c.get("/Questionnaire", headers={"Authorization": "Bearer nope"})
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "identity_invalid"
    assert fhir_backend.requests == []


# ── create / update / delete ────────────────────────────────────────────
@pytest.mark.asyncio
async def test_create_records_caller_as_owner(edge_client, index_store):
    async with edge_client as c:
        r = await c.post("/Questionnaire", json={"resourceType": "Questionnaire", "name": "intake"}, headers=bearer("alice"))
    assert r.status_code == 201
    assert r.headers["location"].endswith("/Questionnaire/1/_history/1")
    assert (await index_store.get(_owned() + ("1",)))["resName"] == "intake"


@pytest.mark.asyncio
async def test_create_of_untracked_type_writes_nothing(edge_client, redis_client):
    async with edge_client as c:
        r = await c.post("/Patient", json={"resourceType": "Patient"}, headers=bearer("alice"))
    assert r.status_code == 201
    assert await redis_client.keys("*") == []


@pytest.mark.asyncio
async def test_update_by_non_owner_never_reaches_backend(edge_client, index_store, fhir_backend):
    await index_store.put(_owned("bob"), {"1": {"updatedAt": "t", "resName": ""}})
    async with edge_client as c:
        r = await c.put("/Questionnaire/1", json={"resourceType": "Questionnaire", "id": "1"}, headers=bearer("alice"))
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "ownership_denied"
    assert fhir_backend.requests == []


@pytest.mark.asyncio
async def test_owner_can_update_then_delete(edge_client, index_store, fhir_backend):
    async with edge_client as c:
        await c.post("/Questionnaire", json={"resourceType": "Questionnaire"}, headers=bearer("alice"))
        updated = await c.put(
            "/Questionnaire/1",
            json={"resourceType": "Questionnaire", "id": "1", "name": "renamed"},
            headers=bearer("alice"),
        )
        assert updated.status_code == 200
        assert (await index_store.get(_owned() + ("1",)))["resName"] == "renamed"

        deleted = await c.delete("/Questionnaire/1", headers=bearer("alice"))
        assert deleted.status_code == 200
        assert await index_store.get(_owned() + ("1",)) is None

        again = await c.delete("/Questionnaire/1", headers=bearer("alice"))
    assert again.status_code == 401
    assert fhir_backend.methods() == ["POST", "PUT", "DELETE"]


@pytest.mark.asyncio
async def test_untracked_update_is_forwarded_without_check(edge_client, fhir_backend):
    async with edge_client as c:
        r = await c.put("/Patient/p1", json={"resourceType": "Patient", "id": "p1"}, headers=bearer("alice"))
    assert r.status_code == 200
    assert fhir_backend.methods() == ["PUT"]


@pytest.mark.asyncio
@pytest.mark.parametrize("method", ["PUT", "PATCH", "DELETE"])
async def test_trailing_slash_mutation_by_non_owner_is_denied(edge_client, index_store, fhir_backend, method):
    await index_store.put(_owned("alice"), {"1": {"updatedAt": "t", "resName": ""}})
    async with edge_client as c:
        r = await c.request(method, "/Questionnaire/1/", json={"resourceType": "Questionnaire", "id": "1"}, headers=bearer("bob"))
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "ownership_denied"
    assert fhir_backend.requests == []


@pytest.mark.asyncio
async def test_trailing_slash_update_by_owner_is_forwarded_and_indexed(edge_client, index_store, fhir_backend):
    await index_store.put(_owned("alice"), {"1": {"updatedAt": "t", "resName": ""}})
    async with edge_client as c:
        r = await c.put(
            "/Questionnaire/1/",
            json={"resourceType": "Questionnaire", "id": "1", "name": "renamed"},
            headers=bearer("alice"),
        )
    assert r.status_code == 200
    assert fhir_backend.methods() == ["PUT"]
    assert (await index_store.get(_owned() + ("1",)))["resName"] == "renamed"


@pytest.mark.asyncio
@pytest.mark.parametrize("method", ["PUT", "PATCH", "DELETE"])
async def test_conditional_mutation_of_tracked_type_needs_an_id(edge_client, index_store, fhir_backend, method):
    await index_store.put(_owned("alice"), {"1": {"updatedAt": "t", "resName": ""}})
    async with edge_client as c:
        r = await c.request(method, "/Questionnaire", params={"_id": "1"}, headers=bearer("bob"))
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "resource_id_required"
    assert fhir_backend.requests == []
    assert set(await index_store.get(_owned("alice"))) == {"1"}


@pytest.mark.asyncio
async def test_conditional_mutation_of_untracked_type_is_forwarded(edge_client, fhir_backend):
    async with edge_client as c:
        r = await c.delete("/Patient", params={"identifier": "mrn|42"}, headers=bearer("alice"))
    assert r.status_code == 200
    assert fhir_backend.methods() == ["DELETE"]


@pytest.mark.asyncio
async def test_conditional_create_matching_existing_resource_grants_nothing(edge_client, index_store, fhir_backend):
    await index_store.put(_owned("alice"), {"1": {"updatedAt": "t", "resName": ""}})
    fhir_backend.responder = lambda request: httpx.Response(200, json={"resourceType": "Questionnaire", "id": "1"})
    async with edge_client as c:
        created = await c.post(
            "/Questionnaire",
            json={"resourceType": "Questionnaire"},
            headers=bearer("bob", **{"If-None-Exist": "_id=1"}),
        )
        fhir_backend.responder = None
        update = await c.put("/Questionnaire/1", json={"resourceType": "Questionnaire", "id": "1"}, headers=bearer("bob"))
    assert created.status_code == 200
    assert await index_store.get(_owned("bob") + ("1",)) is None
    assert update.status_code == 401
    assert fhir_backend.methods() == ["POST"]


# ── transactions & search ───────────────────────────────────────────────
@pytest.mark.asyncio
async def test_transaction_indexes_created_and_removes_deleted(edge_client, index_store):
    await index_store.put(_owned(), {"old": {"updatedAt": "t", "resName": ""}})
    bundle = {
        "resourceType": "Bundle",
        "type": "transaction",
        "entry": [
            {"resource": {"resourceType": "Questionnaire", "name": "new"}, "request": {"method": "POST", "url": "Questionnaire"}},
            {"request": {"method": "DELETE", "url": "Questionnaire/old"}},
            {"resource": {"resourceType": "Patient"}, "request": {"method": "POST", "url": "Patient"}},
        ],
    }
    async with edge_client as c:
        r = await c.post("/", json=bundle, headers=bearer("alice"))
    assert r.status_code == 200
    assert r.json()["type"] == "transaction-response"
    owned = await index_store.get(_owned())
    assert set(owned) == {"1"}
    assert owned["1"]["resName"] == "new"


@pytest.mark.asyncio
async def test_this_user_only_with_nothing_owned_matches_nothing(edge_client, fhir_backend):
    async with edge_client as c:
        r = await c.get("/Questionnaire", params={"thisUserOnly": "true", "status": "active"}, headers=bearer("alice"))
    assert r.status_code == 200
    sent = fhir_backend.last("GET").url.params
    assert sent["_id"] == "."
    assert sent["status"] == "active"
    assert "thisUserOnly" not in sent


@pytest.mark.asyncio
async def test_all_users_search_unions_owners(edge_client, index_store, fhir_backend):
    rec = {"updatedAt": "t", "resName": ""}
    await index_store.put(_owned("alice"), {"a": rec})
    await index_store.put(_owned("bob"), {"b": rec})
    async with edge_client as c:
        await c.post("/Questionnaire/_search", params={"allUsers": "true"}, headers=bearer("alice"))
    assert fhir_backend.last("POST").url.params["_id"] == "a,b"


# ── backend targeting ───────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_target_headers_select_backend_and_its_credentials(edge_client, fhir_backend):
    headers = bearer(
        "alice",
        **{"x-target-fhir-endpoint": OTHER_ENDPOINT, "x-target-fhir-server-authorization": "Basic b3RoZXI="},
    )
    async with edge_client as c:
        await c.get("/Patient", headers=headers)
    sent = fhir_backend.last()
    assert str(sent.url) == f"{OTHER_ENDPOINT}/Patient"
    assert sent.headers["authorization"] == "Basic b3RoZXI="
    assert "x-target-fhir-endpoint" not in sent.headers


@pytest.mark.asyncio
async def test_ownership_is_partitioned_per_endpoint(edge_client, index_store):
    other = bearer("alice", **{"x-target-fhir-endpoint": OTHER_ENDPOINT})
    async with edge_client as c:
        await c.post("/Questionnaire", json={"resourceType": "Questionnaire"}, headers=other)
        default_backend = await c.put("/Questionnaire/1", json={"id": "1"}, headers=bearer("alice"))
        other_backend = await c.put("/Questionnaire/1", json={"id": "1"}, headers=other)
    assert default_backend.status_code == 401
    assert other_backend.status_code == 200
    assert await index_store.get(_owned(endpoint=OTHER_ENDPOINT) + ("1",)) is not None


@pytest.mark.asyncio
async def test_invalid_target_header_is_400(edge_client, fhir_backend):
    async with edge_client as c:
        r = await c.get("/Patient", headers=bearer("alice", **{"x-target-fhir-endpoint": "not a url"}))
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "validation_failed"
    assert fhir_backend.requests == []


# ── failure modes ───────────────────────────────────────────────────────
@pytest.mark.asyncio
@pytest.mark.parametrize(
    "exc, status, code",
    [
        (httpx.ConnectError, 502, "upstream_error"),
        (httpx.ReadTimeout, 504, "upstream_timeout"),
    ],
)
async def test_backend_transport_failures(edge_client, fhir_backend, exc, status, code):
    def boom(request):
        raise exc("backend down", request=request)

    fhir_backend.responder = boom
    async with edge_client as c:
        r = await c.get("/Patient", headers=bearer("alice"))
    assert r.status_code == status
    assert r.json()["error"]["code"] == code


@pytest.mark.asyncio
async def test_backend_errors_are_relayed_verbatim(edge_client, fhir_backend):
    fhir_backend.responder = lambda request: httpx.Response(422, json={"resourceType": "OperationOutcome"})
    async with edge_client as c:
        r = await c.post("/Questionnaire", json={"resourceType": "Questionnaire"}, headers=bearer("alice"))
    assert r.status_code == 422
    assert r.json() == {"resourceType": "OperationOutcome"}


@pytest.mark.asyncio
async def test_index_outage_after_create_keeps_backend_answer(edge_client, redis_server):
    redis_server.connected = False
    async with edge_client as c:
        r = await c.post("/Questionnaire", json={"resourceType": "Questionnaire"}, headers=bearer("alice"))
    assert r.status_code == 201


@pytest.mark.asyncio
async def test_index_outage_fails_ownership_check(edge_client, redis_server, fhir_backend):
    redis_server.connected = False
    async with edge_client as c:
        r = await c.delete("/Questionnaire/1", headers=bearer("alice"))
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "index_unavailable"
    assert fhir_backend.requests == []


# ── mount path ──────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_mount_path_is_stripped_before_forwarding(index_store, fhir_backend):
    settings = Settings(
        DEFAULT_FHIR_URL=FHIR_BASE,
        PROXY_PATH=FHIR_PATH,
        MOUNT_PATH="/edge/",
        AUTH_JWT_SECRET=JWT_SECRET,
        TRACKED_RESOURCE_TYPES="Questionnaire",
    )
    app = create_app(settings, store=index_store, http_client=fhir_backend.client())
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://edge.test") as c:
        meta = await c.get("/edge/metadata")
        created = await c.post("/edge/Questionnaire", json={"resourceType": "Questionnaire"}, headers=bearer("alice"))
    assert meta.status_code == 200
    assert created.status_code == 201
    assert [r.url.path for r in fhir_backend.requests] == ["/fhir/metadata", "/fhir/Questionnaire"]


# ── observability ───────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_request_metrics_are_labelled_by_route_template(edge_client):
    async with edge_client as c:
        r = await c.get("/Questionnaire/q-77", headers=bearer("alice"))
        scrape = await c.get("/metrics")
    assert r.status_code == 200
    assert "x-request-id" in r.headers
    text = scrape.text
    assert 'route="/{resource_type:fhirtype}/{resource_id:fhirid}"' in text
    assert "q-77" not in text


@pytest.mark.asyncio
async def test_startup_publishes_no_placeholder_label_series(edge_app):
    async with edge_app.router.lifespan_context(edge_app):
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=edge_app), base_url="http://edge.test") as c:
            scrape = await c.get("/metrics")
    assert scrape.status_code == 200
    assert "fhir_edge_http_5xx_total" in scrape.text
    assert 'op="none"' not in scrape.text


def test_service_log_level_comes_from_settings(index_store, fhir_backend):
    settings = Settings(
        DEFAULT_FHIR_URL=FHIR_BASE,
        PROXY_PATH=FHIR_PATH,
        AUTH_JWT_SECRET=JWT_SECRET,
        SERVICE_LOG_LEVEL="WARNING",
    )
    try:
        create_app(settings, store=index_store, http_client=fhir_backend.client())
        assert logging.getLogger("fhir_edge").level == logging.WARNING
    finally:
        logging.getLogger("fhir_edge").setLevel(logging.INFO)
