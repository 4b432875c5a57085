"""Configuration loading and validation.

This module is responsible for:

- Loading `.env` into the process environment (without overriding existing vars).
- Converting environment variables into strongly-typed Pydantic models.
- Validating values and providing actionable error messages.
"""

import os
from typing import TypeVar
from urllib.parse import quote

import dotenv
from pydantic import BaseModel, Field, field_validator

from observability.models import Severity

_T = TypeVar("_T", int, float)


def _get_env_str(name: str, default: str) -> str:
    """Read a string env var with a default (blank counts as unset)."""
    value = os.getenv(name, "").strip()
    return value or default


def _get_env_bool(name: str, default: bool) -> bool:
    """Read a boolean env var with a default."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    normalized = raw.strip().lower()
    if normalized in {"true", "1", "yes", "y", "on"}:
        return True
    if normalized in {"false", "0", "no", "n", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean (true/false). Got: {raw!r}")


def _get_env_number(name: str, default: _T, cast: type[_T]) -> _T:
    """Read an int/float env var with a default."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a {cast.__name__}. Got: {raw!r}") from exc


def _get_env_severity(name: str, default: Severity) -> Severity:
    """Read a severity level name (trace/debug/info/warn/error) with a default."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return Severity.parse(raw)
    except ValueError as exc:
        raise ValueError(f"{name}: {exc}") from exc


class TelemetryConfig(BaseModel):
    """Configuration for the logging/tracing pipeline."""

    service_name: str = Field(default="dual-sink-demo", description="Reported as service.name")
    service_version: str = Field(default="0.1.0", description="Reported as service.version")

    otlp_endpoint: str = Field(default="http://localhost:4317", description="OTLP/gRPC collector endpoint")
    otlp_insecure: bool = Field(default=True, description="Use a plaintext gRPC channel")
    sampling_ratio: float = Field(default=1.0, description="Fraction of traces exported")
    sampling_seed: int | None = Field(default=None, description="Seed for reproducible sampling")

    global_level: Severity = Field(default=Severity.INFO, description="Events below this never reach a sink")
    stdout_level: Severity = Field(default=Severity.WARN, description="Console sink threshold")
    remote_level: Severity = Field(default=Severity.INFO, description="Span-export sink threshold")
    event_db_path: str | None = Field(default=None, description="DuckDB file for durable events (optional)")
    event_db_level: Severity = Field(default=Severity.INFO, description="DuckDB sink threshold")

    # Exporter tuning knobs
    export_max_batch_size: int = Field(default=512, description="Spans per export batch")
    export_schedule_delay_s: float = Field(default=5.0, description="Max seconds between flushes")
    export_max_queue_size: int = Field(default=2048, description="Buffered spans before dropping")
    export_max_attempts: int = Field(default=3, description="Attempts per batch before dropping it")
    export_timeout_s: float = Field(default=10.0, description="Per-request collector timeout (seconds)")

    @field_validator("global_level", "stdout_level", "remote_level", "event_db_level", mode="before")
    def parse_level(cls, v: object) -> object:
        """Accept level names (`"warn"`, `"WARNING"`) as well as members and ints."""
        if isinstance(v, str):
            return Severity.parse(v)
        return v

    @field_validator("sampling_ratio")
    def validate_sampling_ratio(cls, v: float) -> float:
        """Sampling ratio is a probability."""
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"TRACE_SAMPLING_RATIO must be within [0, 1]. Got: {v}")
        return v

    @field_validator("otlp_endpoint")
    def validate_otlp_endpoint(cls, v: str) -> str:
        """Require an explicit scheme so insecure/secure channels are unambiguous."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"OTEL_EXPORTER_OTLP_ENDPOINT must start with http:// or https://. Got: {v!r}")
        return v

    @field_validator("export_max_batch_size", "export_max_queue_size", "export_max_attempts")
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"exporter sizes and attempts must be > 0. Got: {v}")
        return v


class DatabaseConfig(BaseModel):
    """Connection parameters for the database pool."""

    host: str = Field(default="127.0.0.1", description="Database host")
    port: int = Field(default=5432, description="Database port")
    user: str = Field(default="user", description="Database user")
    password: str = Field(default="password", description="Database password")
    database: str = Field(default="mydb", description="Database name")
    min_pool_size: int = Field(default=1, description="Connections kept open")
    max_pool_size: int = Field(default=10, description="Connection cap")

    @field_validator("port")
    def validate_port(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError(f"DB_PORT must be a valid TCP port. Got: {v}")
        return v

    @property
    def dsn(self) -> str:
        """Connection string for the pool."""
        return (
            f"postgresql://{quote(self.user, safe='')}:{quote(self.password, safe='')}"
            f"@{self.host}:{self.port}/{quote(self.database, safe='')}"
        )


class ServerConfig(BaseModel):
    """Listen address for the HTTP server."""

    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=3000, description="Bind port")


class Config(BaseModel):
    """Top-level application configuration."""

    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)


def load_config() -> Config:
    """Load application configuration from environment variables.

    Notes:
    - Calls `dotenv.load_dotenv()` so local `.env` values are visible to the process.
    - Every setting has a default; invalid values raise `ValueError` naming the
      offending variable.
    """
    dotenv.load_dotenv()

    seed_raw = os.getenv("TRACE_SAMPLING_SEED", "").strip()
    telemetry = TelemetryConfig(
        service_name=_get_env_str("SERVICE_NAME", "dual-sink-demo"),
        service_version=_get_env_str("SERVICE_VERSION", "0.1.0"),
        otlp_endpoint=_get_env_str("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317"),
        otlp_insecure=_get_env_bool("OTEL_EXPORTER_OTLP_INSECURE", True),
        sampling_ratio=_get_env_number("TRACE_SAMPLING_RATIO", 1.0, float),
        sampling_seed=_get_env_number("TRACE_SAMPLING_SEED", 0, int) if seed_raw else None,
        global_level=_get_env_severity("LOG_LEVEL", Severity.INFO),
        stdout_level=_get_env_severity("STDOUT_LOG_LEVEL", Severity.WARN),
        remote_level=_get_env_severity("REMOTE_LOG_LEVEL", Severity.INFO),
        event_db_path=os.getenv("EVENT_DB_PATH", "").strip() or None,
        event_db_level=_get_env_severity("EVENT_DB_LOG_LEVEL", Severity.INFO),
        export_max_batch_size=_get_env_number("EXPORT_MAX_BATCH_SIZE", 512, int),
        export_schedule_delay_s=_get_env_number("EXPORT_SCHEDULE_DELAY_S", 5.0, float),
        export_max_queue_size=_get_env_number("EXPORT_MAX_QUEUE_SIZE", 2048, int),
        export_max_attempts=_get_env_number("EXPORT_MAX_ATTEMPTS", 3, int),
        export_timeout_s=_get_env_number("EXPORT_TIMEOUT_S", 10.0, float),
    )
    database = DatabaseConfig(
        host=_get_env_str("DB_HOST", "127.0.0.1"),
        port=_get_env_number("DB_PORT", 5432, int),
        user=_get_env_str("DB_USER", "user"),
        password=_get_env_str("DB_PASSWORD", "password"),
        database=_get_env_str("DB_NAME", "mydb"),
        min_pool_size=_get_env_number("DB_POOL_MIN_SIZE", 1, int),
        max_pool_size=_get_env_number("DB_POOL_MAX_SIZE", 10, int),
    )
    server = ServerConfig(
        host=_get_env_str("HTTP_HOST", "0.0.0.0"),
        port=_get_env_number("HTTP_PORT", 3000, int),
    )
    return Config(telemetry=telemetry, database=database, server=server)
