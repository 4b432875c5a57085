"""Service entrypoint.

Loads configuration, routes the server's own logs through the telemetry
pipeline, and serves the demo application with uvicorn.
"""

from __future__ import annotations

import uvicorn

from config import load_config
from observability import TelemetryPipeline, capture_logging
from service.app import create_app


def main() -> None:
    """CLI entrypoint for `python src/main.py` / the `dual-sink-demo` script."""
    cfg = load_config()
    telemetry = TelemetryPipeline.from_config(cfg.telemetry)
    capture_logging(telemetry, "uvicorn", "uvicorn.error", "asyncpg")

    app = create_app(cfg, telemetry=telemetry)
    uvicorn.run(app, host=cfg.server.host, port=cfg.server.port, log_config=None)


if __name__ == "__main__":
    main()
