import os

# Index layout
DEFAULT_INDEX_ROOT = "user-resources"
DEFAULT_TRACKED_RESOURCE_TYPES = ("Questionnaire",)

# Search rewrite: an id no backend resource can carry. An empty `_id` filter
# means "no filter" to a FHIR server, so an empty owned set must become this.
NO_MATCH_RESOURCE_ID = "."

# Custom query parameters understood by the edge and never forwarded.
SEARCH_SCOPE_PARAMS = ("thisUserOnly", "allUsers", "thisPatientOnly", "allPatients")

# Request headers that select / authorize the backend target
TARGET_ENDPOINT_HEADER = "x-target-fhir-endpoint"
TARGET_AUTH_HEADER = "x-target-fhir-server-authorization"

# Conditional-update retry/backoff controls
INDEX_TXN_MAX_ATTEMPTS = int(os.getenv("INDEX_TXN_MAX_ATTEMPTS", "5"))
INDEX_RETRY_BASE_MS = int(os.getenv("INDEX_RETRY_BASE_MS", "10"))
INDEX_RETRY_JITTER_MS = int(os.getenv("INDEX_RETRY_JITTER_MS", "25"))
INDEX_RETRY_CAP_MS = int(os.getenv("INDEX_RETRY_CAP_MS", "250"))

# Stage budgets (ms) – env override keeps tests happy
TIMEOUT_BACKEND_MS = int(os.getenv("TIMEOUT_BACKEND_MS", "30000"))
TIMEOUT_INDEX_MS   = int(os.getenv("TIMEOUT_INDEX_MS", "1000"))

HEALTH_PORT = int(os.getenv("FHIR_EDGE_PORT", "8081"))

_STAGE_TIMEOUTS_MS = {
    "backend": TIMEOUT_BACKEND_MS,
    "index": TIMEOUT_INDEX_MS,
}

def timeout_for_stage(stage: str) -> float:
    return _STAGE_TIMEOUTS_MS.get(stage, TIMEOUT_BACKEND_MS) / 1000.0
