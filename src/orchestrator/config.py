"""Configuration management with validation.

Limits that protect the GreenLake workspace (quota ceilings, poll bounds,
page sizes) are enforced at configuration load time so that an operation
never starts with an unbounded setting.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum


class OutputFormat(str, Enum):
    """Supported renderings of a finished ledger."""

    TABLE = "table"
    JSON = "json"
    YAML = "yaml"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_BASE_URL = "https://global.api.greenlake.hpe.com"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 60
MAX_REQUEST_TIMEOUT_SECONDS = 600

DEFAULT_POLL_INTERVAL_SECONDS = 5.0
MIN_POLL_INTERVAL_SECONDS = 0.0
MAX_POLL_INTERVAL_SECONDS = 300.0

DEFAULT_MAX_POLL_ATTEMPTS = 10
MAX_POLL_ATTEMPTS_LIMIT = 100

# GreenLake refuses more than seven personal API clients per workspace
MAX_API_CREDENTIALS = 7

DEFAULT_PAGE_SIZE = 1000
MAX_PAGE_SIZE = 2000
MAX_FETCH_PAGES = 500  # Hard stop on pagination (prevent unbounded loops)

MAX_BATCH_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max batch file
MAX_IDENTIFIERS_PER_OPERATION = 5000

# Known GreenLake regions and their Compute Ops Management endpoints
COM_REGION_ENDPOINTS: dict[str, str] = {
    "us-west": "https://us-west2-api.compute.cloud.hpe.com",
    "eu-central": "https://eu-central1-api.compute.cloud.hpe.com",
    "ap-northeast": "https://ap-northeast1-api.compute.cloud.hpe.com",
}

# Input validation patterns
VALID_WORKSPACE_ID_PATTERN = r"^[0-9a-f]{32}$"
VALID_REGION_PATTERN = r"^[a-z]{2,}-[a-z0-9-]+$"


@dataclass(frozen=True)
class Config:
    """Client configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-operation.
    """

    # Required fields
    workspace_id: str

    # Connection
    base_url: str = DEFAULT_BASE_URL
    token: str | None = field(default=None, repr=False)
    default_region: str | None = None
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS
    page_size: int = DEFAULT_PAGE_SIZE

    # Provisioning poller bounds
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    max_poll_attempts: int = DEFAULT_MAX_POLL_ATTEMPTS

    # Quota admission
    max_api_credentials: int = MAX_API_CREDENTIALS

    # Behavior
    dry_run: bool = False
    enable_audit_logging: bool = True
    output_format: OutputFormat = OutputFormat.TABLE

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.workspace_id:
            errors.append("GLP_WORKSPACE_ID is required")
        elif not re.match(VALID_WORKSPACE_ID_PATTERN, self.workspace_id.lower()):
            errors.append(
                f"GLP_WORKSPACE_ID must be a 32 character hex id: {self.workspace_id}"
            )

        if not self.base_url.startswith("https://"):
            errors.append(f"GLP_BASE_URL must use https: {self.base_url}")

        if self.default_region is not None and not re.match(
            VALID_REGION_PATTERN, self.default_region
        ):
            errors.append(f"GLP_DEFAULT_REGION is not a valid region: {self.default_region}")

        if not (1 <= self.request_timeout_seconds <= MAX_REQUEST_TIMEOUT_SECONDS):
            errors.append(
                f"GLP_REQUEST_TIMEOUT must be between 1 and {MAX_REQUEST_TIMEOUT_SECONDS} seconds"
            )

        if not (1 <= self.page_size <= MAX_PAGE_SIZE):
            errors.append(f"GLP_PAGE_SIZE must be between 1 and {MAX_PAGE_SIZE}")

        if not (MIN_POLL_INTERVAL_SECONDS <= self.poll_interval_seconds <= MAX_POLL_INTERVAL_SECONDS):
            errors.append(
                f"GLP_POLL_INTERVAL must be between {MIN_POLL_INTERVAL_SECONDS} "
                f"and {MAX_POLL_INTERVAL_SECONDS} seconds"
            )

        if not (1 <= self.max_poll_attempts <= MAX_POLL_ATTEMPTS_LIMIT):
            errors.append(f"GLP_MAX_POLL_ATTEMPTS must be between 1 and {MAX_POLL_ATTEMPTS_LIMIT}")

        # The platform ceiling cannot be raised client-side
        if not (1 <= self.max_api_credentials <= MAX_API_CREDENTIALS):
            errors.append(f"GLP_MAX_API_CREDENTIALS must be between 1 and {MAX_API_CREDENTIALS}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            GLP_WORKSPACE_ID: Target GreenLake workspace (required)
            GLP_BASE_URL: Global API endpoint (default: global.api.greenlake.hpe.com)
            GLP_TOKEN: Pre-issued bearer token for the workspace
            GLP_DEFAULT_REGION: Region used when a command omits --region
            GLP_REQUEST_TIMEOUT: Per-request timeout in seconds (default: 60)
            GLP_PAGE_SIZE: Page size for collection fetches (default: 1000)
            GLP_POLL_INTERVAL: Seconds between provisioning polls (default: 5)
            GLP_MAX_POLL_ATTEMPTS: Provisioning poll ceiling (default: 10)
            GLP_MAX_API_CREDENTIALS: API credential ceiling (default and max: 7)
            GLP_DRY_RUN: If "true", classify only and skip mutations (default: false)
            GLP_ENABLE_AUDIT_LOGGING: Log every batch mutation (default: true)
            GLP_OUTPUT_FORMAT: One of table, json, yaml (default: table)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_format(value: str | None) -> OutputFormat:
            if not value:
                return OutputFormat.TABLE
            try:
                return OutputFormat(value.lower())
            except ValueError as e:
                valid = [f.value for f in OutputFormat]
                raise ConfigurationError(f"GLP_OUTPUT_FORMAT must be one of {valid}: {value}") from e

        return cls(
            workspace_id=os.environ.get("GLP_WORKSPACE_ID", ""),
            base_url=os.environ.get("GLP_BASE_URL", DEFAULT_BASE_URL),
            token=os.environ.get("GLP_TOKEN"),
            default_region=os.environ.get("GLP_DEFAULT_REGION") or None,
            request_timeout_seconds=get_int("GLP_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS),
            page_size=get_int("GLP_PAGE_SIZE", DEFAULT_PAGE_SIZE),
            poll_interval_seconds=get_float("GLP_POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            max_poll_attempts=get_int("GLP_MAX_POLL_ATTEMPTS", DEFAULT_MAX_POLL_ATTEMPTS),
            max_api_credentials=get_int("GLP_MAX_API_CREDENTIALS", MAX_API_CREDENTIALS),
            dry_run=get_bool("GLP_DRY_RUN", False),
            enable_audit_logging=get_bool("GLP_ENABLE_AUDIT_LOGGING", True),
            output_format=get_format(os.environ.get("GLP_OUTPUT_FORMAT")),
        )
