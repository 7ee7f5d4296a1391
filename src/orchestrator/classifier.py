"""Admission classifier: partitions a ledger against one snapshot.

Rules are evaluated in a fixed order and the first match wins:
1. Not found in the snapshot          -> Failed (actionable for creations)
2. Wrong subtype / conflicting state  -> Failed
3. Ambiguous (several matches)        -> Failed
4. Already in the desired state       -> Warning ("no action needed")
5. Otherwise                          -> actionable, left for the batch call

Classification never touches the network.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .ledger import StatusLedger, StatusRecord
from .resolver import Snapshot

logger = logging.getLogger(__name__)

# A rule returns a message when it applies to the resource, None otherwise
Rule = Callable[[Any], str | None]

NO_ACTION_SUFFIX = "no action needed."


class Classification(str, Enum):
    """Outcome of classifying one identifier."""

    NOT_FOUND = "not_found"
    WRONG_SUBTYPE = "wrong_subtype"
    AMBIGUOUS = "ambiguous"
    SATISFIED = "satisfied"
    ACTIONABLE = "actionable"


@dataclass(frozen=True)
class AdmissionRules:
    """Operation-specific predicates plugged into the fixed rule order.

    Attributes:
        kind: Resource kind used in messages ("Device", "Server").
        unique_key: Name of the key that disambiguates matches.
        constraint: Returns a message when the resource is of the wrong
            subtype or in a conflicting state for this operation.
        satisfied: Returns a message when the resource is already in the
            desired end state.
        create_missing: For creation operations, builds the resource to
            create from a missing identifier. Missing identifiers then
            become actionable instead of failing as not found.
    """

    kind: str
    unique_key: str = "id"
    constraint: Rule | None = None
    satisfied: Rule | None = None
    create_missing: Callable[[str], Any] | None = None


class AdmissionClassifier:
    """Applies AdmissionRules to every pending record of a ledger."""

    def __init__(self, rules: AdmissionRules) -> None:
        self._rules = rules

    def classify(
        self, record: StatusRecord, snapshot: Snapshot
    ) -> tuple[Classification, StatusRecord]:
        """Classify a single record.

        Returns:
            The classification and the replacement record. Actionable records
            come back without a status but with the matched resource attached.
        """
        rules = self._rules
        matches = snapshot.matches(record.identifier)

        if not matches:
            if rules.create_missing is not None:
                return Classification.ACTIONABLE, record.mark_actionable(
                    rules.create_missing(record.identifier)
                )
            return Classification.NOT_FOUND, record.fail(
                f"{rules.kind} '{record.identifier}' not found."
            )

        if rules.constraint is not None:
            for resource in matches:
                message = rules.constraint(resource)
                if message:
                    return Classification.WRONG_SUBTYPE, record.fail(message)

        if len(matches) > 1:
            return Classification.AMBIGUOUS, record.fail(
                f"{rules.kind} '{record.identifier}' matches {len(matches)} resources; "
                f"specify the unique {rules.unique_key} instead."
            )

        resource = matches[0]
        if rules.satisfied is not None:
            message = rules.satisfied(resource)
            if message:
                return Classification.SATISFIED, record.warn(f"{message}; {NO_ACTION_SUFFIX}")

        return Classification.ACTIONABLE, record.mark_actionable(resource)

    def partition(self, ledger: StatusLedger, snapshot: Snapshot) -> Counter[Classification]:
        """Classify every pending record of the ledger in place.

        Returns:
            Count of records per classification.
        """
        counts: Counter[Classification] = Counter()
        for record in ledger.pending():
            classification, updated = self.classify(record, snapshot)
            ledger.replace(updated)
            counts[classification] += 1
            logger.debug(
                "Classified identifier",
                extra={
                    "identifier": record.identifier,
                    "classification": classification.value,
                },
            )

        logger.info(
            "Classification complete",
            extra={
                "scope": snapshot.label,
                **{f"count_{c.value}": n for c, n in counts.items()},
            },
        )
        return counts
