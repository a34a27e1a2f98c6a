"""
main.py

Entry point for the Field-Service Work Order API.

Configures logging, wires the in-memory runtime into the FastAPI app and
starts uvicorn.

Usage
-----
    # Option 1 - run directly
    python main.py

    # Option 2 - run via uvicorn CLI (recommended for development)
    uvicorn main:app --reload --port 8000

    # Option 3 - best-effort ledger on a custom port
    LEDGER_MODE=best_effort PORT=8080 python main.py

Once running, open your browser at:
    http://localhost:8000/docs      ← Swagger UI
    http://localhost:8000/redoc     ← ReDoc
    http://localhost:8000/health    ← liveness check

Quick-start walkthrough (send X-Actor-Id: <your id> on every write)
--------------------------------------------------------------------
1.  POST   /api/v1/work-orders                         - create a work order
2.  POST   /api/v1/work-orders/{id}/stages/complete    - complete "Arrival" with a photo
3.  POST   /api/v1/work-orders/{id}/support            - ask for support
4.  POST   /api/v1/work-orders/{id}/report             - register the report (needs 4 photos)
5.  GET    /api/v1/work-orders/{id}/audit              - view the audit history
6.  DELETE /api/v1/work-orders/{id}                    - cancel
"""

import logging

import uvicorn

from api import app, get_runtime, settings
from infrastructure import build_runtime

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("workorders.main")


# ---------------------------------------------------------------------------
# Wire the runtime into the FastAPI dependency system.
# To swap databases, build a Runtime around your own Unit of Work instead.
# ---------------------------------------------------------------------------

runtime = build_runtime(settings)
app.dependency_overrides[get_runtime] = lambda: runtime
logger.info("work order service ready (ledger_mode=%s)", settings.ledger_mode)


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=True,          # auto-reload on file changes during development
        log_level=settings.log_level.lower(),
    )
