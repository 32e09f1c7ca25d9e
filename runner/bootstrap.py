"""Bootstrap module for the job runner.

Central responsibilities:
- Load and validate settings from environment (.env supported by Settings)
- Configure structured logging (structlog + optional rotating file handler)
- Expose Prometheus metric instruments shared by the poll loop, workers and broker client
- Build the shared application context (settings, logger, config store, broker client)

Design notes:
- Heavy collaborators are imported lazily inside bootstrap() to avoid import cycles
  (broker_client and poll_loop import the metric instruments defined here).
- bootstrap() is idempotent; pass force=True to rebuild (tests do).
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, TYPE_CHECKING
import asyncio
import logging
import re
from logging.handlers import RotatingFileHandler
import sys

import structlog
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from prometheus_client import Counter, Gauge, Histogram

if TYPE_CHECKING:  # pragma: no cover
    from .broker_client import BrokerClient
    from .config import ConfigManager

# ------------------------------------------------------------
# Settings
# ------------------------------------------------------------

class Settings(BaseSettings):
    """Runner settings loaded from environment.

    Values under "Runner" seed the broker-patchable RunnerConfig; everything else
    is fixed for the process lifetime.
    """

    app_name: str = Field("job-runner", alias="APP_NAME")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_file: str | None = Field(None, alias="LOG_FILE")
    log_max_bytes: int = Field(2_000_000, alias="LOG_MAX_BYTES")
    log_backup_count: int = Field(5, alias="LOG_BACKUP_COUNT")

    # Broker
    broker_url: str = Field("http://localhost:3000", alias="BROKER_URL")
    runner_id: str = Field("local-runner", alias="RUNNER_ID")
    runner_token: Optional[str] = Field(None, alias="RUNNER_TOKEN")
    # Semicolon-separated list of job types this runner accepts (empty = any)
    job_types_raw: str = Field("", alias="RUNNER_JOB_TYPES")
    broker_timeout: float = Field(30.0, alias="BROKER_TIMEOUT")
    broker_max_retries: int = Field(3, alias="BROKER_MAX_RETRIES")

    # Runner (initial values, the broker may patch them)
    concurrency: int = Field(1, alias="CONCURRENCY", ge=1)
    check_interval: float = Field(5.0, alias="CHECK_INTERVAL", gt=0)

    # Workers
    scripts_dir: str = Field("runner-scripts", alias="SCRIPTS_DIR")
    python_executable: str = Field(sys.executable, alias="PYTHON_EXECUTABLE")
    job_timeout_seconds: float = Field(0, alias="JOB_TIMEOUT_SECONDS")  # 0 = unlimited
    worker_kill_grace_seconds: float = Field(10.0, alias="WORKER_KILL_GRACE_SECONDS")
    update_retry_attempts: int = Field(5, alias="UPDATE_RETRY_ATTEMPTS", ge=1)
    update_retry_max_wait: float = Field(10.0, alias="UPDATE_RETRY_MAX_WAIT")

    # Health server
    health_host: str = Field("0.0.0.0", alias="HEALTH_HOST")
    health_port: int = Field(3333, validation_alias=AliasChoices("AUTO_PORT0", "HEALTH_PORT", "health_port"))

    @field_validator("job_types_raw")
    @classmethod
    def _sanitize_job_types(cls, v: str) -> str:  # noqa: D401
        return v.strip()

    @property
    def job_types(self) -> list[str]:
        return [t.strip() for t in self.job_types_raw.split(";") if t.strip()]

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )


# ------------------------------------------------------------
# Logging configuration (structlog)
# ------------------------------------------------------------

_SENSITIVE_PATTERN = re.compile(r"(token|secret|password|authorization|cookie)", re.IGNORECASE)


def redact_sensitive(logger, method_name, event_dict):  # noqa: D401
    """Redact credentials anywhere in the log context (settings snapshot included)."""

    def _scrub(value):
        if isinstance(value, dict):
            return {
                k: ("[REDACTED]" if v is not None and _SENSITIVE_PATTERN.search(str(k)) else _scrub(v))
                for k, v in value.items()
            }
        if isinstance(value, (list, tuple)):
            return [_scrub(v) for v in value]
        return value

    return _scrub(event_dict)


def configure_logging(level: str = "INFO", settings: Settings | None = None) -> None:
    """Configure structured logging with structlog.

    JSON lines on stdout, plus a rotating file when LOG_FILE is set.
    """
    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            timestamper,
            structlog.processors.add_log_level,
            redact_sensitive,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper(), logging.INFO)),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handlers: list[logging.Handler] = []
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(logging.Formatter("%(message)s"))
    handlers.append(stream_handler)

    if settings and settings.log_file:
        try:
            log_path = Path(settings.log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                settings.log_file,
                maxBytes=settings.log_max_bytes,
                backupCount=settings.log_backup_count,
                encoding="utf-8",
            )
            file_handler.setFormatter(logging.Formatter("%(message)s"))
            handlers.append(file_handler)
        except OSError as e:  # pragma: no cover
            print(f"Failed to set file handler: {e}", file=sys.stderr)

    root = logging.getLogger()
    root.handlers = handlers
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


# ------------------------------------------------------------
# Metrics instruments
# ------------------------------------------------------------
RUNNER_POLLS_TOTAL = Counter(
    "runner_polls_total", "Poll attempts by outcome", labelnames=("outcome",)
)
RUNNER_POLL_DURATION_SECONDS = Histogram(
    "runner_poll_duration_seconds", "Duration of a poll-and-dispatch attempt in seconds"
)
RUNNER_JOBS_TOTAL = Counter(
    "runner_jobs_total", "Jobs that reached a terminal state", labelnames=("state",)
)
RUNNER_RUNNING_JOBS = Gauge(
    "runner_running_jobs", "Jobs currently held in the running registry"
)
RUNNER_TRACE_UPDATES_TOTAL = Counter(
    "runner_trace_updates_total", "Trace updates forwarded to the broker", labelnames=("result",)
)
RUNNER_SCRIPT_RESOLUTIONS_TOTAL = Counter(
    "runner_script_resolutions_total", "Runner script resolutions by source", labelnames=("source",)
)


# ------------------------------------------------------------
# Application context
# ------------------------------------------------------------
@dataclass(slots=True)
class AppContext:
    settings: Settings
    logger: structlog.BoundLogger
    config: "ConfigManager"
    broker: "BrokerClient"


_context_singleton: Optional[AppContext] = None
_context_lock = asyncio.Lock()


async def bootstrap(force: bool = False, settings: Settings | None = None) -> AppContext:
    """Create (or return existing) application context.

    Args:
        force: Recreate the context even if already initialized.
        settings: Use these settings instead of reading the environment.
    """
    global _context_singleton
    if _context_singleton and not force:
        return _context_singleton

    async with _context_lock:
        if _context_singleton and not force:
            return _context_singleton

        settings = settings or Settings()
        configure_logging(settings.log_level, settings)
        logger = structlog.get_logger().bind(component="bootstrap")

        logger.info("runtime_config", **settings.model_dump())

        # Lazy imports (both modules import the metric instruments above)
        from .broker_client import BrokerClient  # noqa: WPS433
        from .config import ConfigManager  # noqa: WPS433

        Path(settings.scripts_dir).mkdir(parents=True, exist_ok=True)

        ctx = AppContext(
            settings=settings,
            logger=logger.bind(subsystem="core"),
            config=ConfigManager.from_settings(settings),
            broker=BrokerClient.from_settings(settings),
        )
        logger.info(
            "bootstrap_complete",
            broker_url=settings.broker_url,
            runner_id=settings.runner_id,
            concurrency=settings.concurrency,
            check_interval=settings.check_interval,
            job_types=settings.job_types,
        )
        _context_singleton = ctx
        return ctx
