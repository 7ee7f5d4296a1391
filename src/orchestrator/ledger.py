"""Per-operation status ledger.

One StatusRecord exists per caller-supplied identifier for the lifetime of
an operation. Records are immutable: every classification or resolution
step replaces the record with a new one, so a record is never observed
half-initialized.

INVARIANTS:
- Ledger size in == ledger size out, in input order
- A record receives exactly one terminal status
- Every returned record carries a non-empty details string
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Raised when a ledger invariant would be violated."""

    pass


class InvalidIdentifiers(LedgerError, ValueError):
    """Raised when caller-supplied identifiers cannot form a ledger."""

    pass


class RecordStatus(str, Enum):
    """Terminal status of a single requested identifier."""

    COMPLETE = "Complete"
    WARNING = "Warning"
    FAILED = "Failed"


@dataclass(frozen=True)
class StatusRecord:
    """Outcome for one requested identifier.

    Attributes:
        identifier: Caller-supplied key (serial number, name, region).
        context: Secondary context such as target region or location name.
        status: Terminal status, None while unclassified or actionable.
        details: Human-readable explanation of the outcome.
        exception: Error payload when a mutating call was rejected.
        resource: Resource state attached by the classifier for actionable
            records; never rendered.
    """

    identifier: str
    context: MappingProxyType[str, str] = field(
        default_factory=lambda: MappingProxyType({})
    )
    status: RecordStatus | None = None
    details: str = ""
    exception: Any | None = None
    resource: Any | None = field(default=None, repr=False, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.status is not None

    @property
    def is_actionable(self) -> bool:
        """Actionable records carry a resource but no terminal status yet."""
        return self.status is None and self.resource is not None

    def _terminal(
        self, status: RecordStatus, details: str, exception: Any | None = None
    ) -> StatusRecord:
        if self.is_terminal:
            raise LedgerError(
                f"Record '{self.identifier}' already classified as {self.status.value}"
            )
        if not details:
            raise LedgerError(f"Record '{self.identifier}' needs details for {status.value}")
        return replace(self, status=status, details=details, exception=exception)

    def complete(self, details: str) -> StatusRecord:
        return self._terminal(RecordStatus.COMPLETE, details)

    def warn(self, details: str) -> StatusRecord:
        return self._terminal(RecordStatus.WARNING, details)

    def fail(self, details: str, exception: Any | None = None) -> StatusRecord:
        return self._terminal(RecordStatus.FAILED, details, exception)

    def mark_actionable(self, resource: Any) -> StatusRecord:
        """Attach the resource the batch call will act on."""
        if self.is_terminal:
            raise LedgerError(
                f"Record '{self.identifier}' already classified as {self.status.value}"
            )
        if resource is None:
            raise LedgerError(f"Record '{self.identifier}' marked actionable without a resource")
        return replace(self, resource=resource)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for rendering."""
        return {
            "identifier": self.identifier,
            **dict(self.context),
            "status": self.status.value if self.status else None,
            "details": self.details,
            "exception": str(self.exception) if self.exception is not None else None,
        }


class StatusLedger:
    """Ordered collection of status records for one operation."""

    def __init__(
        self,
        identifiers: Iterable[str],
        context: dict[str, str] | None = None,
    ) -> None:
        """Create one unclassified record per identifier.

        Duplicate identifiers collapse onto the first occurrence.

        Args:
            identifiers: Caller-supplied keys, in the order to report them.
            context: Secondary context shared by every record.
        """
        frozen_context = MappingProxyType(dict(context or {}))
        self._records: dict[str, StatusRecord] = {}
        for identifier in identifiers:
            key = identifier.strip()
            if not key:
                raise InvalidIdentifiers("Identifiers must be non-empty strings")
            if key in self._records:
                logger.warning(
                    "Duplicate identifier collapsed onto its first occurrence",
                    extra={"identifier": key},
                )
                continue
            self._records[key] = StatusRecord(identifier=key, context=frozen_context)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[StatusRecord]:
        return iter(self._records.values())

    def __getitem__(self, identifier: str) -> StatusRecord:
        return self._records[identifier]

    @property
    def identifiers(self) -> list[str]:
        return list(self._records)

    def replace(self, record: StatusRecord) -> None:
        """Swap in the next version of a record."""
        if record.identifier not in self._records:
            raise LedgerError(f"Unknown identifier '{record.identifier}'")
        self._records[record.identifier] = record

    def actionable(self) -> list[StatusRecord]:
        """Records awaiting the outcome of the batch call."""
        return [r for r in self._records.values() if r.is_actionable]

    def pending(self) -> list[StatusRecord]:
        return [r for r in self._records.values() if not r.is_terminal]

    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in RecordStatus}
        for record in self._records.values():
            if record.status is not None:
                counts[record.status.value] += 1
        return counts

    def records(self) -> list[StatusRecord]:
        """Return the finished ledger.

        Raises:
            LedgerError: If any record still lacks a terminal status.
        """
        pending = self.pending()
        if pending:
            names = ", ".join(r.identifier for r in pending)
            raise LedgerError(f"Ledger returned with unclassified records: {names}")
        return list(self._records.values())
