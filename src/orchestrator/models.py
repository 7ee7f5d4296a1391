"""Pydantic models for GreenLake resources with validation.

These models provide:
1. Type-safe parsing of API collection items
2. Validation at the boundary (fail fast, fail loudly)
3. Clean transformation to mutation payloads
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

# =============================================================================
# Base Models
# =============================================================================


class GreenLakeResource(BaseModel):
    """Base resource with the fields every collection item carries."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    id: Annotated[str, Field(min_length=1)]


class ResourceRef(BaseModel):
    """Reference to another resource by id (application, location)."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    id: str | None = None
    name: str | None = None


# =============================================================================
# Devices
# =============================================================================


class Device(GreenLakeResource):
    """Device in the workspace inventory."""

    serial_number: Annotated[str, Field(min_length=1, alias="serialNumber")]
    part_number: str | None = Field(None, alias="partNumber")
    device_type: str | None = Field(None, alias="deviceType")
    application: ResourceRef | None = None
    region: str | None = None
    location: ResourceRef | None = None
    archived: bool = False

    @property
    def service_id(self) -> str | None:
        """Id of the service the device is assigned to, if any."""
        if self.application is None:
            return None
        return self.application.id

    def is_assigned_to(self, service_id: str, region: str) -> bool:
        return self.service_id == service_id and self.region == region


# =============================================================================
# Compute Ops Management servers and locations
# =============================================================================


class ConnectionType(str, Enum):
    """How COM reaches a server."""

    DIRECT = "DIRECT"
    ONEVIEW = "ONEVIEW"


class Server(GreenLakeResource):
    """Server managed by Compute Ops Management in one region."""

    name: str
    serial_number: str = Field(alias="serialNumber")
    connection_type: ConnectionType = Field(ConnectionType.DIRECT, alias="connectionType")
    location_id: str | None = Field(None, alias="locationId")

    @field_validator("connection_type", mode="before")
    @classmethod
    def normalize_connection_type(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.upper()
        return v

    @property
    def oneview_managed(self) -> bool:
        return self.connection_type == ConnectionType.ONEVIEW


class Location(GreenLakeResource):
    """Physical location defined in the workspace."""

    name: Annotated[str, Field(min_length=1)]
    location_type: str | None = Field(None, alias="locationType")


# =============================================================================
# Service catalog
# =============================================================================


class ProvisionStatus(str, Enum):
    """Provisioning states reported for a service manager in a region."""

    INITIATED = "PROVISION_INITIATED"
    PROVISIONED = "PROVISIONED"
    FAILED = "PROVISION_FAILED"
    UNPROVISION_INITIATED = "UNPROVISION_INITIATED"
    UNPROVISIONED = "UNPROVISIONED"


class ServiceManager(GreenLakeResource):
    """Service offered by the platform (e.g. Compute Ops Management)."""

    name: Annotated[str, Field(min_length=1)]
    regions: list[str] = Field(default_factory=list)

    @field_validator("regions", mode="before")
    @classmethod
    def flatten_regions(cls, v: Any) -> Any:
        # Catalog entries list regions either as ids or as {"id": ...} objects
        if isinstance(v, list):
            return [r.get("id") if isinstance(r, dict) else r for r in v]
        return v


class ServiceManagerProvision(GreenLakeResource):
    """A service manager provisioned (or being provisioned) in one region."""

    service_manager: ResourceRef = Field(alias="serviceManager")
    region: str
    provision_status: ProvisionStatus = Field(alias="provisionStatus")
    api_endpoint: str | None = Field(None, alias="apiEndpoint")

    @property
    def service_manager_id(self) -> str | None:
        return self.service_manager.id


# =============================================================================
# API credentials, webhooks, restriction policies
# =============================================================================


class ApiCredential(GreenLakeResource):
    """Personal API client credential bound to a service manager."""

    name: Annotated[str, Field(min_length=1, alias="credentialName")]
    client_id: str | None = Field(None, alias="clientId")
    service_manager_id: str | None = Field(None, alias="serviceManagerId")
    region: str | None = None


class IssuedCredential(BaseModel):
    """Creation response; the secret is only ever returned once."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    client_id: str = Field(alias="clientId")
    client_secret: str = Field(alias="clientSecret", repr=False)
    name: str | None = Field(None, alias="credentialName")


class WebhookState(str, Enum):
    ENABLED = "ENABLED"
    DISABLED = "DISABLED"


class Webhook(GreenLakeResource):
    """COM webhook subscription."""

    name: Annotated[str, Field(min_length=1)]
    destination: str | None = None
    state: WebhookState = WebhookState.ENABLED


class RestrictionScope(GreenLakeResource):
    """Scope (resource group or filter) referenced by a restriction policy."""

    name: str | None = None
    resource_type: str | None = Field(None, alias="resourceType")


class ResourceRestrictionPolicy(GreenLakeResource):
    """Resource restriction policy with its scopes expanded on demand."""

    name: Annotated[str, Field(min_length=1)]
    description: str | None = None
    scopes: list[RestrictionScope] = Field(default_factory=list)


# =============================================================================
# Mutation payloads
# =============================================================================


def service_assignment_payload(service_id: str | None, region: str | None) -> dict[str, Any]:
    """Desired state for device-to-service assignment (None unassigns)."""
    return {
        "application": {"id": service_id} if service_id else None,
        "region": region,
    }


def location_payload(location_id: str | None) -> dict[str, Any]:
    return {"locationId": location_id}


def webhook_state_payload(enabled: bool) -> dict[str, Any]:
    state = WebhookState.ENABLED if enabled else WebhookState.DISABLED
    return {"state": state.value}


def provision_payload(service_manager_id: str, region: str) -> dict[str, Any]:
    return {"serviceManager": {"id": service_manager_id}, "region": region}


def credential_payload(name: str, service_manager_id: str, region: str) -> dict[str, Any]:
    return {
        "credentialName": name,
        "serviceManagerId": service_manager_id,
        "region": region,
    }
