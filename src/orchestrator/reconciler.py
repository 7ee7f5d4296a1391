"""Batch reconciliation of caller-supplied identifiers.

This module implements the batch state-reconciliation pattern:
1. Create one ledger record per identifier
2. Snapshot the remote state once for the whole operation
3. Classify every record (not found / invalid / satisfied / actionable)
4. Issue a single batched mutation for the actionable subset
5. Return the ledger, one terminal record per identifier, in input order

Operations that need extra steps between classification and mutation
(quota admission, provisioning confirmation) call classify() and finish()
around their own logic instead of run().

Fatal errors raised before classification (UpstreamUnavailable,
TargetResolutionError) propagate to the caller. Once classification has
produced a ledger the operation always completes and returns it.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .classifier import AdmissionClassifier, AdmissionRules, Classification
from .config import MAX_IDENTIFIERS_PER_OPERATION
from .ledger import InvalidIdentifiers, RecordStatus, StatusLedger, StatusRecord
from .mutator import BatchMutator, MutationResult
from .resolver import RemoteStateResolver, Snapshot, SnapshotScope

logger = logging.getLogger(__name__)


class TargetResolutionError(Exception):
    """Raised when the shared target of an operation cannot be resolved.

    Examples: unknown service name, location name matching two locations,
    region without a registered endpoint. Raised before classification.
    """

    pass


@dataclass(frozen=True)
class BatchOperation:
    """Everything the engine needs to reconcile one batch.

    Attributes:
        name: Operation name for logs and audit records.
        scope: Snapshot scope fetched once per run.
        rules: Operation-specific classification predicates.
        mutator: Batch mutator issuing the single wire call.
        desired_state: Shared payload applied to every actionable resource.
        context: Secondary context copied onto every record.
    """

    name: str
    scope: SnapshotScope
    rules: AdmissionRules
    mutator: BatchMutator
    desired_state: dict[str, Any] = field(default_factory=dict)
    context: dict[str, str] = field(default_factory=dict)


@dataclass
class ReconcileResult:
    """Result of one batch operation."""

    operation: str
    ledger: StatusLedger
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    classification: Counter[Classification] = field(default_factory=Counter)
    mutation: MutationResult | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def records(self) -> list[StatusRecord]:
        return self.ledger.records()

    @property
    def success(self) -> bool:
        """True when no record failed."""
        return self.ledger.counts()[RecordStatus.FAILED.value] == 0


class BatchReconciler:
    """Runs batch operations against a remote state resolver."""

    def __init__(self, resolver: RemoteStateResolver) -> None:
        self._resolver = resolver

    @property
    def resolver(self) -> RemoteStateResolver:
        return self._resolver

    def classify(
        self,
        name: str,
        identifiers: Iterable[str],
        scope: SnapshotScope,
        rules: AdmissionRules,
        context: dict[str, str] | None = None,
    ) -> tuple[ReconcileResult, Snapshot | None]:
        """Build the ledger and classify it against a single snapshot.

        Returns:
            The in-progress result and the snapshot used (None when there
            were no identifiers and nothing was fetched).

        Raises:
            UpstreamUnavailable: If the snapshot fetch fails.
            InvalidIdentifiers: If an identifier is blank or more identifiers
                than an operation allows are given.
        """
        ledger = StatusLedger(identifiers, context)
        if len(ledger) > MAX_IDENTIFIERS_PER_OPERATION:
            raise InvalidIdentifiers(
                f"{len(ledger)} identifiers exceed the maximum of "
                f"{MAX_IDENTIFIERS_PER_OPERATION} per operation"
            )

        result = ReconcileResult(operation=name, ledger=ledger)
        if not len(ledger):
            logger.info("No identifiers supplied", extra={"operation": name})
            return result, None

        snapshot = self._resolver.snapshot(scope)
        result.classification = AdmissionClassifier(rules).partition(ledger, snapshot)
        return result, snapshot

    def finish(self, result: ReconcileResult) -> ReconcileResult:
        """Close the result and enforce the ledger output invariants."""
        result.ledger.records()
        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    def run(self, operation: BatchOperation, identifiers: Iterable[str]) -> ReconcileResult:
        """Reconcile identifiers with one snapshot and at most one mutation."""
        result, _ = self.classify(
            operation.name,
            identifiers,
            operation.scope,
            operation.rules,
            operation.context,
        )
        result.mutation = operation.mutator.apply(result.ledger, operation.desired_state)
        return self.finish(result)

    def _log_result(self, result: ReconcileResult) -> None:
        counts = result.ledger.counts()
        log_level = logging.INFO if result.success else logging.WARNING
        logger.log(
            log_level,
            "Operation complete",
            extra={
                "operation": result.operation,
                "identifiers": len(result.ledger),
                "complete": counts[RecordStatus.COMPLETE.value],
                "warning": counts[RecordStatus.WARNING.value],
                "failed": counts[RecordStatus.FAILED.value],
                "mutation_outcome": result.mutation.outcome.value if result.mutation else None,
                "duration_seconds": round(result.duration_seconds, 3),
            },
        )
