"""Rendering of finished ledgers and read-only listings.

Status records render as a colored table for terminals, or as JSON or YAML
for scripting. Exceptions carried on records are reduced to their message.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

import click
import yaml

from .config import OutputFormat
from .ledger import RecordStatus, StatusRecord
from .models import ResourceRestrictionPolicy

STATUS_COLORS: dict[RecordStatus, str] = {
    RecordStatus.COMPLETE: "green",
    RecordStatus.WARNING: "yellow",
    RecordStatus.FAILED: "red",
}

# Column cap before details wrap onto the terminal
MAX_IDENTIFIER_WIDTH = 40


def _record_rows(records: Sequence[StatusRecord]) -> list[dict[str, Any]]:
    return [record.to_dict() for record in records]


def _table(records: Sequence[StatusRecord], color: bool) -> str:
    if not records:
        return "No identifiers processed."

    width = min(
        max(len("IDENTIFIER"), *(len(r.identifier) for r in records)),
        MAX_IDENTIFIER_WIDTH,
    )
    lines = [f"{'IDENTIFIER':<{width}}  {'STATUS':<8}  DETAILS"]
    for record in records:
        status = record.status.value if record.status else "-"
        padded = f"{status:<8}"
        if color and record.status is not None:
            padded = click.style(padded, fg=STATUS_COLORS[record.status])
        lines.append(f"{record.identifier:<{width}}  {padded}  {record.details}")
    return "\n".join(lines)


def render_ledger(
    records: Sequence[StatusRecord],
    fmt: OutputFormat = OutputFormat.TABLE,
    *,
    color: bool = True,
) -> str:
    """Render status records in the requested output format."""
    if fmt == OutputFormat.JSON:
        return json.dumps(_record_rows(records), indent=2)
    if fmt == OutputFormat.YAML:
        return yaml.safe_dump(_record_rows(records), sort_keys=False)
    return _table(records, color)


def render_summary(records: Sequence[StatusRecord]) -> str:
    """One-line count per terminal status."""
    counts = {status: 0 for status in RecordStatus}
    for record in records:
        if record.status is not None:
            counts[record.status] += 1
    return ", ".join(f"{n} {status.value.lower()}" for status, n in counts.items())


def render_policies(
    policies: Sequence[ResourceRestrictionPolicy],
    fmt: OutputFormat = OutputFormat.TABLE,
) -> str:
    """Render restriction policies with their expanded scopes."""
    if fmt != OutputFormat.TABLE:
        data = [policy.model_dump(mode="json") for policy in policies]
        if fmt == OutputFormat.JSON:
            return json.dumps(data, indent=2)
        return yaml.safe_dump(data, sort_keys=False)

    if not policies:
        return "No resource restriction policies found."
    lines = []
    for policy in policies:
        lines.append(f"{policy.name} ({policy.id})")
        if policy.description:
            lines.append(f"  {policy.description}")
        for scope in policy.scopes:
            kind = f" [{scope.resource_type}]" if scope.resource_type else ""
            lines.append(f"  - {scope.name or scope.id}{kind}")
        if not policy.scopes:
            lines.append("  (no scopes)")
    return "\n".join(lines)
