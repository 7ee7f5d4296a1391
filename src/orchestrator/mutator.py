"""Batch mutator: one wire call for the whole actionable partition.

The backend answers a batched change with a single status code, not one
per item. The mutator therefore maps that one outcome onto every
actionable record identically. It never partially updates the ledger:
either every actionable record gets the same terminal status from one
call, or no call is made (empty partition).
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from azure.core.exceptions import AzureError

from .audit import AuditLogger
from .ledger import StatusLedger, StatusRecord

logger = logging.getLogger(__name__)

SUCCESS_STATUS_CODES = frozenset({200, 201, 202, 204})

# Longest response body excerpt carried in a rejection payload
MAX_BODY_EXCERPT = 2000


class OutcomeCode(str, Enum):
    """Closed set of outcomes for a mutating call."""

    SUCCESS = "success"
    BAD_REQUEST = "bad_request"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    VALIDATION_ERROR = "validation_error"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    UNRECOGNIZED = "unrecognized"


OUTCOME_MESSAGES: dict[OutcomeCode, str] = {
    OutcomeCode.BAD_REQUEST: "Bad request: the service rejected the {action} request as malformed.",
    OutcomeCode.UNAUTHORIZED: "Unauthorized: the session token is missing or expired.",
    OutcomeCode.FORBIDDEN: "Forbidden: the caller lacks permission to {action}.",
    OutcomeCode.VALIDATION_ERROR: "Validation error: the service could not {action} with the given values.",
    OutcomeCode.RATE_LIMITED: "Rate limited: too many requests; retry the {action} later.",
    OutcomeCode.SERVER_ERROR: "Server error: the service failed to {action}.",
    OutcomeCode.UNRECOGNIZED: "Unexpected error while trying to {action}.",
}


def outcome_from_status(status_code: int) -> OutcomeCode:
    """Map an HTTP status code onto the closed outcome set."""
    if status_code in SUCCESS_STATUS_CODES:
        return OutcomeCode.SUCCESS
    if 500 <= status_code <= 599:
        return OutcomeCode.SERVER_ERROR
    return {
        400: OutcomeCode.BAD_REQUEST,
        401: OutcomeCode.UNAUTHORIZED,
        403: OutcomeCode.FORBIDDEN,
        422: OutcomeCode.VALIDATION_ERROR,
        429: OutcomeCode.RATE_LIMITED,
    }.get(status_code, OutcomeCode.UNRECOGNIZED)


class MutationResponse(Protocol):
    """What the mutator needs from a transport response."""

    status_code: int

    def text(self) -> str: ...

    def json(self) -> Any: ...


# Mutate(actionable_keys, desired_state) -> response
Mutate = Callable[[list[str], dict[str, Any]], MutationResponse]


class ConfirmationError(Exception):
    """Raised by a confirm hook when a successful call did not take effect."""

    pass


class MutationRejected(Exception):
    """Payload attached to records whose batch call was rejected."""

    def __init__(self, status_code: int, outcome: OutcomeCode, body: str = "") -> None:
        self.status_code = status_code
        self.outcome = outcome
        self.body = body[:MAX_BODY_EXCERPT]
        self.service_message = _service_message(self.body)
        detail = f": {self.service_message}" if self.service_message else ""
        super().__init__(f"HTTP {status_code} ({outcome.value}){detail}")


def _service_message(body: str) -> str | None:
    """Extract the service's own error message from a JSON error body."""
    if not body:
        return None
    try:
        parsed = json.loads(body)
    except ValueError:
        return None
    if isinstance(parsed, dict):
        message = parsed.get("message") or parsed.get("errorMessage")
        return str(message) if message else None
    return None


@dataclass(frozen=True)
class MutationResult:
    """Outcome of one batch call."""

    outcome: OutcomeCode
    keys: tuple[str, ...]
    status_code: int | None = None
    exception: BaseException | None = None

    @property
    def success(self) -> bool:
        return self.outcome == OutcomeCode.SUCCESS


class BatchMutator:
    """Issues exactly one mutating call per operation.

    Args:
        mutate: Collaborator performing the wire call.
        operation: Operation name for logs and audit.
        action: Verb phrase used in messages ("assign devices to the service").
        success_message: Details for completed records; a callable receives
            the record.
        confirm: Called per record after a successful call with the record
            and the response; returns the completion details or raises
            ConfirmationError, which fails that record.
        method: HTTP method, for the audit record only.
        key: Extracts the wire key from an actionable record (defaults to
            the resource id).
        audit: Audit logger; mutations are not audited when None.
        dry_run: Classify only; actionable records become warnings.
    """

    def __init__(
        self,
        mutate: Mutate,
        *,
        operation: str,
        action: str,
        success_message: str | Callable[[StatusRecord], str],
        method: str = "PATCH",
        key: Callable[[StatusRecord], str] | None = None,
        confirm: Callable[[StatusRecord, MutationResponse], str] | None = None,
        audit: AuditLogger | None = None,
        dry_run: bool = False,
    ) -> None:
        self._mutate = mutate
        self._operation = operation
        self._action = action
        self._success_message = success_message
        self._method = method
        self._key = key or (lambda record: record.resource.id)
        self._confirm = confirm
        self._audit = audit
        self._dry_run = dry_run

    def _completed(self, record: StatusRecord) -> str:
        if callable(self._success_message):
            return self._success_message(record)
        return self._success_message

    def apply(self, ledger: StatusLedger, desired_state: dict[str, Any]) -> MutationResult | None:
        """Act once on the actionable partition of the ledger.

        Returns:
            The batch result, or None if no call was issued (empty
            partition or dry run).
        """
        actionable = ledger.actionable()
        if not actionable:
            logger.info(
                "No actionable identifiers, skipping mutation",
                extra={"operation": self._operation},
            )
            return None

        keys = [self._key(record) for record in actionable]
        audit_record = None
        if self._audit is not None:
            audit_record = self._audit.create_record(self._operation, self._method, self._dry_run)
            audit_record.identifiers = [r.identifier for r in actionable]
            audit_record.resource_keys = list(keys)
            audit_record.desired_state = dict(desired_state)

        if self._dry_run:
            for record in actionable:
                ledger.replace(record.warn(f"Dry run: would {self._action}."))
            if audit_record is not None:
                audit_record.outcome = "dry_run"
                self._audit.log_mutation(audit_record)
            return None

        start_time = time.monotonic()
        response: MutationResponse | None = None
        status_code: int | None = None
        exception: BaseException | None = None
        try:
            response = self._mutate(keys, desired_state)
        except AzureError as e:
            outcome = OutcomeCode.UNRECOGNIZED
            exception = e
            logger.error(
                "Batch mutation transport failure",
                extra={"operation": self._operation, "error_type": type(e).__name__},
            )
        else:
            status_code = response.status_code
            outcome = outcome_from_status(status_code)
            if outcome != OutcomeCode.SUCCESS:
                exception = MutationRejected(status_code, outcome, response.text() or "")

        result = MutationResult(
            outcome=outcome,
            keys=tuple(keys),
            status_code=status_code,
            exception=exception,
        )
        self._resolve(ledger, actionable, result, response)

        if audit_record is not None:
            audit_record.outcome = outcome.value
            audit_record.status_code = status_code
            audit_record.duration_seconds = round(time.monotonic() - start_time, 3)
            audit_record.error = str(exception) if exception else None
            self._audit.log_mutation(audit_record)

        return result

    def _resolve(
        self,
        ledger: StatusLedger,
        actionable: list[StatusRecord],
        result: MutationResult,
        response: MutationResponse | None,
    ) -> None:
        """Give every actionable record the same terminal status."""
        if result.success:
            for record in actionable:
                ledger.replace(self._complete_or_fail(record, response))
            logger.info(
                "Batch mutation succeeded",
                extra={"operation": self._operation, "count": len(actionable)},
            )
            return

        message = OUTCOME_MESSAGES[result.outcome].format(action=self._action)
        if result.outcome == OutcomeCode.UNRECOGNIZED and result.exception is not None:
            message = f"{message} {result.exception}"
        for record in actionable:
            ledger.replace(record.fail(message, result.exception))
        logger.warning(
            "Batch mutation failed",
            extra={
                "operation": self._operation,
                "outcome": result.outcome.value,
                "status_code": result.status_code,
                "count": len(actionable),
            },
        )

    def _complete_or_fail(
        self, record: StatusRecord, response: MutationResponse | None
    ) -> StatusRecord:
        if self._confirm is None or response is None:
            return record.complete(self._completed(record))
        try:
            details = self._confirm(record, response)
        except ConfirmationError as e:
            return record.fail(str(e), e)
        return record.complete(details or self._completed(record))
