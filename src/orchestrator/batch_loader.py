"""Batch file loading with validation.

A batch file lists the operation to run and its identifiers, so large
inventories can be driven from version-controlled YAML instead of
command-line arguments:

    operation: assign-devices
    service: Compute Ops Management
    region: eu-central
    identifiers:
      - SN0001
      - SN0002

The Kubernetes-style wrapper (apiVersion/kind/spec) is accepted as well.

SECURITY: File size is checked before reading. Input validation is
performed at the boundary.
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Annotated

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .config import MAX_BATCH_FILE_SIZE_BYTES, MAX_IDENTIFIERS_PER_OPERATION

logger = logging.getLogger(__name__)


class BatchFileError(Exception):
    """Raised when a batch file cannot be loaded or fails validation."""

    pass


class BatchOperationName(str, Enum):
    """Operations that can be driven from a batch file."""

    ASSIGN_DEVICES = "assign-devices"
    UNASSIGN_DEVICES = "unassign-devices"
    SET_SERVER_LOCATION = "set-server-location"
    REMOVE_SERVER_LOCATION = "remove-server-location"
    REMOVE_WEBHOOKS = "remove-webhooks"
    ENABLE_WEBHOOKS = "enable-webhooks"
    DISABLE_WEBHOOKS = "disable-webhooks"


# Operations that cannot run without a shared target
REQUIRED_TARGETS: dict[BatchOperationName, str] = {
    BatchOperationName.ASSIGN_DEVICES: "service",
    BatchOperationName.SET_SERVER_LOCATION: "location",
}


class BatchRequest(BaseModel):
    """Validated contents of a batch file."""

    model_config = {"extra": "forbid"}

    operation: BatchOperationName
    identifiers: Annotated[
        list[str], Field(min_length=1, max_length=MAX_IDENTIFIERS_PER_OPERATION)
    ]
    service: str | None = None
    region: str | None = None
    location: str | None = None

    @field_validator("identifiers", mode="before")
    @classmethod
    def coerce_identifiers(cls, v: object) -> object:
        # YAML turns bare numeric serials into ints
        if isinstance(v, list):
            return [str(item) if isinstance(item, int) else item for item in v]
        return v

    @field_validator("identifiers")
    @classmethod
    def reject_blank(cls, v: list[str]) -> list[str]:
        blank = [i for i, identifier in enumerate(v) if not identifier.strip()]
        if blank:
            raise ValueError(f"identifiers at positions {blank} are blank")
        return v

    @model_validator(mode="after")
    def require_target(self) -> BatchRequest:
        target = REQUIRED_TARGETS.get(self.operation)
        if target and not getattr(self, target):
            raise ValueError(f"operation '{self.operation.value}' requires '{target}'")
        return self


def _format_validation_error(error: ValidationError) -> str:
    lines = []
    for err in error.errors():
        location = ".".join(str(part) for part in err["loc"]) or "(root)"
        lines.append(f"  {location}: {err['msg']}")
    return "\n".join(lines)


def load_batch(path: Path) -> BatchRequest:
    """Load and validate a batch file from YAML.

    Raises:
        BatchFileError: If the file cannot be read or fails validation.
    """
    if not path.exists():
        raise BatchFileError(f"Batch file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise BatchFileError(f"Failed to stat batch file {path}: {e}") from e

    if file_size > MAX_BATCH_FILE_SIZE_BYTES:
        raise BatchFileError(
            f"Batch file exceeds maximum size of {MAX_BATCH_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise BatchFileError(f"Failed to read batch file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise BatchFileError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise BatchFileError(f"Batch file must contain a YAML mapping: {path}")

    # Kubernetes-style format: apiVersion, kind, metadata, spec
    if "apiVersion" in raw_data and "spec" in raw_data:
        raw_data = raw_data["spec"]
        if not isinstance(raw_data, dict):
            raise BatchFileError(f"'spec' section must be a YAML mapping: {path}")

    try:
        request = BatchRequest.model_validate(raw_data)
    except ValidationError as e:
        raise BatchFileError(
            f"Batch file validation failed for {path}:\n{_format_validation_error(e)}"
        ) from e

    logger.info(
        "Loaded batch file",
        extra={
            "path": str(path),
            "operation": request.operation.value,
            "identifiers": len(request.identifiers),
        },
    )
    return request
