"""Route stdlib `logging` records from libraries into the telemetry pipeline."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .models import Severity

if TYPE_CHECKING:
    from .pipeline import TelemetryPipeline

# The pipeline reports its own failures through these loggers; feeding them
# back into the pipeline could loop.
_INTERNAL_PREFIX = "observability"


def severity_for(levelno: int) -> Severity:
    """Map a stdlib logging level onto the pipeline's severity scale."""
    if levelno >= logging.ERROR:
        return Severity.ERROR
    if levelno >= logging.WARNING:
        return Severity.WARN
    if levelno >= logging.INFO:
        return Severity.INFO
    if levelno >= logging.DEBUG:
        return Severity.DEBUG
    return Severity.TRACE


class PipelineLogHandler(logging.Handler):
    """`logging.Handler` that re-emits records as pipeline events."""

    def __init__(self, pipeline: TelemetryPipeline, level: int = logging.NOTSET) -> None:
        super().__init__(level)
        self._pipeline = pipeline

    def emit(self, record: logging.LogRecord) -> None:
        if record.name == _INTERNAL_PREFIX or record.name.startswith(_INTERNAL_PREFIX + "."):
            return
        try:
            message = record.getMessage()
        except Exception:  # noqa: BLE001 - malformed format args
            self.handleError(record)
            return
        fields = {"logger": record.name}
        if record.exc_info and record.exc_info[1] is not None:
            fields["error"] = repr(record.exc_info[1])
        self._pipeline.emit(severity_for(record.levelno), message, **fields)


def capture_logging(pipeline: TelemetryPipeline, *names: str) -> list[PipelineLogHandler]:
    """Attach a bridge handler to each named logger and stop propagation to the root."""
    handlers = []
    for name in names:
        target = logging.getLogger(name)
        handler = PipelineLogHandler(pipeline)
        target.addHandler(handler)
        target.propagate = False
        handlers.append(handler)
    return handlers
