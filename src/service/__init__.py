"""Demo HTTP service instrumented with the telemetry pipeline."""

from .app import create_app

__all__ = ["create_app"]
