"""Entra Graph Samples — Application entry point.

Runs the FastAPI app under uvicorn.  Logging and tracing are configured in
the app's lifespan handler.
"""

from __future__ import annotations

import uvicorn

from src.core.config import settings


def main() -> None:
    uvicorn.run(
        "src.api.app:app",
        host="0.0.0.0",
        port=settings.port,
        reload=not settings.is_production,
        log_config=None,  # structlog owns the root handler
    )


if __name__ == "__main__":
    main()
