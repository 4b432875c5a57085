from __future__ import annotations

import pytest

from observability import BatchSpanExporter, InMemorySpanTransport, Severity, TelemetryPipeline


@pytest.fixture
def transport() -> InMemorySpanTransport:
    return InMemorySpanTransport()


@pytest.fixture
def pipeline(transport: InMemorySpanTransport):
    """A pipeline with an INFO global gate, an in-memory collector and no sinks yet."""
    exporter = BatchSpanExporter(
        transport,
        max_queue_size=64,
        max_export_batch_size=8,
        schedule_delay_s=0.05,
        max_export_attempts=1,
    )
    p = TelemetryPipeline(global_level=Severity.INFO, exporter=exporter, id_seed=7)
    yield p
    p.shutdown(timeout_s=5.0)
