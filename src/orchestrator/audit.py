"""Audit records for batch mutations.

Every mutating call issued by the engine is logged once as a structured
record answering:
- "What was changed, and in which workspace?"
- "Which identifiers did the call cover?"
- "What did the backend answer?"

Records go to the structured logger (stderr, JSON by default).
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
CLIENT_VERSION = os.environ.get("GLO_VERSION", "dev")

# Identifier lists beyond this length are truncated in the flattened fields
MAX_LOGGED_IDENTIFIERS = 50


@dataclass
class MutationAuditRecord:
    """Complete audit record for one batch mutation."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    client_version: str = CLIENT_VERSION
    workspace_id: str = ""
    operation: str = ""
    method: str = ""
    identifiers: list[str] = field(default_factory=list)
    resource_keys: list[str] = field(default_factory=list)
    desired_state: dict[str, Any] = field(default_factory=dict)
    outcome: str = ""
    status_code: int | None = None
    dry_run: bool = False
    duration_seconds: float = 0.0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class AuditLogger:
    """Logs mutation audit records."""

    def __init__(self, workspace_id: str, enabled: bool = True) -> None:
        self._workspace_id = workspace_id
        self._enabled = enabled

    @property
    def enabled(self) -> bool:
        return self._enabled

    def create_record(self, operation: str, method: str, dry_run: bool = False) -> MutationAuditRecord:
        return MutationAuditRecord(
            workspace_id=self._workspace_id,
            operation=operation,
            method=method,
            dry_run=dry_run,
        )

    def log_mutation(self, record: MutationAuditRecord) -> None:
        """Log a completed mutation record.

        Failed outcomes are logged at ERROR so they surface in alerting.
        """
        if not self._enabled:
            return

        log_level = logging.ERROR if record.error else logging.INFO
        logger.log(
            log_level,
            "Batch mutation",
            extra={
                "audit": record.to_dict(),
                # Flatten key fields for easier querying
                "operation": record.operation,
                "outcome": record.outcome,
                "status_code": record.status_code,
                "identifier_count": len(record.identifiers),
                "identifiers": record.identifiers[:MAX_LOGGED_IDENTIFIERS],
                "dry_run": record.dry_run,
            },
        )
