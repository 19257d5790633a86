from __future__ import annotations
import os
from core_utils.uvicorn_entry import run
from core_config.constants import HEALTH_PORT as PORT

LOG_LEVEL = os.getenv("LOG_LEVEL", "info")
ACCESS_LOG = os.getenv("ACCESS_LOG", "0") in ("1","true","True","yes","on")


def main() -> None:
    run("fhir_edge.app:app", port=PORT, log_level=LOG_LEVEL, access_log=ACCESS_LOG)


if __name__ == "__main__":
    main()
