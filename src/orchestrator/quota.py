"""Quota admission for limited resource classes.

GreenLake caps the number of personal API credentials per workspace. The
check runs once per creation attempt, before any mutating call, against a
count read fresh from the backend.

The check is advisory: another actor can create a credential between the
count and the creation call. The backend stays the source of truth and
rejects the create if the ceiling is actually hit.
"""

from __future__ import annotations

from enum import Enum


class Admission(str, Enum):
    """Result of a quota admission check."""

    ALLOWED = "allowed"
    DENIED = "denied"


def admit(current_count: int, ceiling: int) -> Admission:
    """Decide whether one more resource may be created.

    Args:
        current_count: Resources of the class that exist right now.
        ceiling: Fixed maximum for the class.

    Returns:
        DENIED when the count has reached the ceiling, ALLOWED otherwise.
    """
    if current_count < 0 or ceiling < 0:
        raise ValueError("Quota counts cannot be negative")
    if current_count >= ceiling:
        return Admission.DENIED
    return Admission.ALLOWED


def denial_message(resource_class: str, ceiling: int) -> str:
    return (
        f"Maximum of {ceiling} {resource_class} reached; "
        f"delete an existing one before creating another."
    )
