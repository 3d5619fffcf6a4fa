# ABOUTME: Structured logging with correlation IDs for the manifest service
# ABOUTME: Implements per-trigger correlation and deployment audit records

"""
Logging for deployment triggers.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

1. STRUCTURED LOGGING: every log line is an event name plus key/value pairs
   (pipeline_id, app_id, release_counter, ...) rendered as console text or
   JSON lines.

2. CORRELATION IDs: one id per deployment trigger. A trigger fans out into
   store reads, variable resolution and cluster calls; the id ties all of
   their log lines together.

3. AUDIT RECORDS: one AuditEntry per trigger outcome (built, replayed,
   failed), appended to a JSON-lines file or sent to the structured log.

=============================================================================
WHY CONTEXTVARS?
=============================================================================

Triggers for different pipelines run concurrently on one event loop. A
ContextVar gives each asyncio task its own correlation id without passing it
through every call.
"""

from __future__ import annotations

import logging
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal

import structlog
from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from pathlib import Path

# =============================================================================
# TRIGGER CORRELATION
# =============================================================================

_correlation: ContextVar[str] = ContextVar("trigger_correlation", default="")


def get_correlation_id() -> str:
    """Correlation id of the running trigger, created on first use."""
    current = _correlation.get()
    if not current:
        current = uuid.uuid4().hex[:8]
        _correlation.set(current)
    return current


def set_correlation_id(cid: str) -> None:
    """
    Bind ``cid`` to the running trigger.

    Triggers use ``wf-<cd workflow id>``. An empty string clears the id so the
    next lookup generates one.
    """
    _correlation.set(cid)


def add_correlation_id(
    _logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Structlog processor; an explicitly bound correlation_id is kept."""
    event_dict.setdefault("correlation_id", get_correlation_id())
    return event_dict


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """
    Configure structlog once at startup.

    Events pass through: bound contextvars, log level, UTC timestamp,
    correlation id, then the JSON or console renderer.
    """
    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    threshold = logging.getLevelNamesMapping().get(level.upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            add_correlation_id,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(threshold),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# =============================================================================
# AUDIT RECORDS
# =============================================================================

BUILD_MANIFEST = "build_manifest"


class AuditEntry(BaseModel):
    """
    One trigger outcome.

    EXAMPLE AUDIT LOG LINES:
    ------------------------
    {"timestamp": "2024-01-15T10:30:00Z", "correlation_id": "wf-4411",
     "action": "build_manifest", "target": "pipeline=10", "result": "success",
     "details": {"pipeline_override_id": 81, "release_counter": 12}}

    {"timestamp": "2024-01-15T10:31:02Z", "correlation_id": "wf-4412",
     "action": "build_manifest", "target": "pipeline=10", "result": "error",
     "details": {"error": "duplicate verification retry count exceeded max"}}
    """

    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    correlation_id: str = Field(default_factory=get_correlation_id)
    action: str = BUILD_MANIFEST
    target: str
    result: Literal["success", "replayed", "error"]
    details: dict[str, Any] | None = None

    @classmethod
    def for_pipeline(
        cls, pipeline_id: int, result: str, details: dict[str, Any] | None = None
    ) -> AuditEntry:
        return cls(target=f"pipeline={pipeline_id}", result=result, details=details)


class AuditLogger:
    """Writes AuditEntry records to a JSON-lines file, or to structlog if no file is set."""

    def __init__(self, log_path: Path | None = None) -> None:
        self._log_path = log_path
        self._logger = structlog.get_logger("audit")

    def record(self, entry: AuditEntry) -> None:
        if self._log_path is None:
            self._logger.info(
                "audit", **entry.model_dump(include={"action", "target", "result", "details"})
            )
            return
        with self._log_path.open("a") as f:
            f.write(entry.model_dump_json(exclude_none=True) + "\n")

    def log_built(self, pipeline_id: int, override_id: int, release_counter: int) -> None:
        """A new pipeline override was allocated and its merged values persisted."""
        self.record(
            AuditEntry.for_pipeline(
                pipeline_id,
                "success",
                {"pipeline_override_id": override_id, "release_counter": release_counter},
            )
        )

    def log_replayed(self, pipeline_id: int, override_id: int) -> None:
        """Stored merged values of an existing override were reused."""
        self.record(
            AuditEntry.for_pipeline(pipeline_id, "replayed", {"pipeline_override_id": override_id})
        )

    def log_error(self, pipeline_id: int, error: str) -> None:
        self.record(AuditEntry.for_pipeline(pipeline_id, "error", {"error": error}))
