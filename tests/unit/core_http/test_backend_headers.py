from core_http.headers import build_backend_headers, filter_response_headers


def test_target_authorization_replaces_caller_token():
    out = build_backend_headers([
        ("Authorization", "Bearer caller-id-token"),
        ("X-Target-FHIR-Server-Authorization", "Basic YmFja2VuZA=="),
        ("X-Target-FHIR-Endpoint", "http://fhir.example.org/r4"),
        ("Accept", "application/fhir+json"),
    ])
    assert out == {"authorization": "Basic YmFja2VuZA==", "accept": "application/fhir+json"}


def test_caller_token_never_reaches_backend():
    out = build_backend_headers([("authorization", "Bearer caller-id-token"), ("prefer", "return=minimal")])
    assert "authorization" not in out
    assert out["prefer"] == "return=minimal"


def test_hop_by_hop_and_connection_listed_headers_are_dropped():
    out = build_backend_headers([
        ("connection", "keep-alive, x-private"),
        ("keep-alive", "timeout=5"),
        ("x-private", "1"),
        ("host", "edge.test"),
        ("content-length", "12"),
        ("if-match", 'W/"1"'),
    ])
    assert out == {"if-match": 'W/"1"'}


def test_response_headers_keep_repeats_and_drop_transfer_encoding():
    out = filter_response_headers([
        ("Location", "http://fhir.test/fhir/Questionnaire/1/_history/1"),
        ("Transfer-Encoding", "chunked"),
        ("Set-Cookie", "a=1"),
        ("Set-Cookie", "b=2"),
        ("ETag", 'W/"1"'),
    ])
    assert out == [
        ("location", "http://fhir.test/fhir/Questionnaire/1/_history/1"),
        ("set-cookie", "a=1"),
        ("set-cookie", "b=2"),
        ("etag", 'W/"1"'),
    ]
