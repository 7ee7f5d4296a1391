"""GreenLake operations built on the batch reconciliation engine.

Each operation maps a user-facing action onto:
- the snapshot scope its identifiers are classified against
- the admission rules deciding not found / invalid / satisfied
- the single mutating call issued for the actionable subset

Shared targets (service, region, location) are resolved before
classification; failing to resolve them raises TargetResolutionError and
nothing is classified. Global endpoints live under the configured base URL;
Compute Ops Management endpoints are regional and come from the session
store's region registry.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Sequence
from typing import Any, TypeVar

from pydantic import BaseModel

from .audit import AuditLogger
from .classifier import AdmissionRules
from .client import GreenLakeClient
from .config import COM_REGION_ENDPOINTS
from .ledger import StatusRecord
from .models import (
    ApiCredential,
    Device,
    IssuedCredential,
    Location,
    ProvisionStatus,
    ResourceRestrictionPolicy,
    RestrictionScope,
    Server,
    ServiceManager,
    ServiceManagerProvision,
    Webhook,
    WebhookState,
    credential_payload,
    location_payload,
    provision_payload,
    service_assignment_payload,
    webhook_state_payload,
)
from .mutator import BatchMutator, ConfirmationError, Mutate, MutationResponse
from .poller import ProvisioningPoller, ProvisioningSession
from .quota import Admission, admit, denial_message
from .reconciler import BatchOperation, BatchReconciler, ReconcileResult, TargetResolutionError
from .resolver import RemoteStateResolver, SnapshotScope, UpstreamUnavailable
from .session import CachedCredential, SessionStore

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

# Global API paths
DEVICES_URL = "/devices/v1/devices"
LOCATIONS_URL = "/locations/v1/locations"
SERVICE_MANAGERS_URL = "/service-catalog/v1/service-managers"
PROVISIONS_URL = "/service-catalog/v1/service-manager-provisions"
API_CREDENTIALS_URL = "/identity/v1/api-credentials"
RESTRICTION_POLICIES_URL = "/authorization/v2/resource-restriction-policies"

# Compute Ops Management paths, relative to a regional endpoint
SERVERS_PATH = "/compute-ops-mgmt/v1/servers"
WEBHOOKS_PATH = "/compute-ops-mgmt/v1beta1/webhooks"

COM_SERVICE_NAME = "Compute Ops Management"


def id_filter(keys: Sequence[str]) -> str:
    """OData-style filter selecting resources by id."""
    quoted = ", ".join(f"'{key}'" for key in keys)
    return f"id in ({quoted})"


class Operations:
    """Entry points for every batch operation against one workspace.

    Args:
        client: REST client for the workspace.
        session: Session-scoped region registry and credential cache.
        resolver: Snapshot resolver (a fresh one per Operations by default).
        audit: Audit logger for mutations.
        sleep: Sleep used between provisioning polls.
    """

    def __init__(
        self,
        client: GreenLakeClient,
        session: SessionStore,
        *,
        resolver: RemoteStateResolver | None = None,
        audit: AuditLogger | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._config = client.config
        self._session = session
        self._resolver = resolver or RemoteStateResolver()
        self._reconciler = BatchReconciler(self._resolver)
        self._audit = audit or AuditLogger(
            self._config.workspace_id, enabled=self._config.enable_audit_logging
        )
        self._sleep = sleep

    @property
    def session(self) -> SessionStore:
        return self._session

    # =========================================================================
    # Scopes and shared targets
    # =========================================================================

    def _collection(
        self, url: str, model: type[ModelT], params: dict[str, Any] | None = None
    ) -> Callable[[], list[ModelT]]:
        def fetch() -> list[ModelT]:
            return [model.model_validate(item) for item in self._client.get_all(url, params)]

        return fetch

    def _scope(
        self, label: str, url: str, model: type[BaseModel], key_fields: tuple[str, ...]
    ) -> SnapshotScope:
        return SnapshotScope(label=label, fetch=self._collection(url, model), key_fields=key_fields)

    def _devices_scope(self) -> SnapshotScope:
        return self._scope("devices", DEVICES_URL, Device, ("serial_number", "id"))

    def _service_managers_scope(self) -> SnapshotScope:
        return self._scope("service managers", SERVICE_MANAGERS_URL, ServiceManager, ("name", "id"))

    def _provisions_scope(self) -> SnapshotScope:
        return self._scope(
            "service provisions", PROVISIONS_URL, ServiceManagerProvision, ("id",)
        )

    def _credentials_scope(self) -> SnapshotScope:
        return self._scope("API credentials", API_CREDENTIALS_URL, ApiCredential, ("name", "client_id"))

    def _region(self, region: str | None) -> str:
        resolved = region or self._config.default_region
        if not resolved:
            raise TargetResolutionError("No region given and GLP_DEFAULT_REGION is not set")
        return resolved

    def _resolve_one(self, scope: SnapshotScope, identifier: str, kind: str) -> Any:
        """Resolve a shared target by name or id from a single snapshot."""
        matches = self._resolver.snapshot(scope).matches(identifier)
        if not matches:
            raise TargetResolutionError(f"{kind} '{identifier}' not found")
        if len(matches) > 1:
            raise TargetResolutionError(
                f"{kind} '{identifier}' matches {len(matches)} resources; use its id instead"
            )
        return matches[0]

    def _provisions(self) -> tuple[ServiceManagerProvision, ...]:
        return self._resolver.snapshot(self._provisions_scope()).resources

    @staticmethod
    def _find_provision(
        provisions: Iterable[ServiceManagerProvision], service_id: str, region: str
    ) -> ServiceManagerProvision | None:
        for provision in provisions:
            if provision.service_manager_id == service_id and provision.region == region:
                return provision
        return None

    def _require_provisioned(self, service: ServiceManager, region: str) -> None:
        provision = self._find_provision(self._provisions(), service.id, region)
        if provision is None or provision.provision_status != ProvisionStatus.PROVISIONED:
            raise TargetResolutionError(
                f"Service '{service.name}' is not provisioned in region '{region}'"
            )

    def _com_endpoint(self, region: str) -> str:
        """Regional Compute Ops Management endpoint, discovered on first use.

        Provisions that already exist when the session starts are registered
        from a single fetch; provisions created in this session are
        registered by the provisioning poller.
        """
        endpoint = self._session.endpoint_for(region, COM_SERVICE_NAME)
        if endpoint:
            return endpoint

        for provision in self._provisions():
            if provision.provision_status != ProvisionStatus.PROVISIONED:
                continue
            if provision.service_manager.name != COM_SERVICE_NAME:
                continue
            discovered = provision.api_endpoint or COM_REGION_ENDPOINTS.get(provision.region)
            if discovered:
                self._session.register_region(provision.region, COM_SERVICE_NAME, discovered)

        endpoint = self._session.endpoint_for(region, COM_SERVICE_NAME)
        if endpoint is None:
            raise TargetResolutionError(
                f"{COM_SERVICE_NAME} is not provisioned in region '{region}'"
            )
        return endpoint

    def _mutator(
        self,
        mutate: Mutate,
        *,
        operation: str,
        action: str,
        success_message: str | Callable[[StatusRecord], str],
        method: str = "PATCH",
        key: Callable[[StatusRecord], str] | None = None,
        confirm: Callable[[StatusRecord, MutationResponse], str] | None = None,
    ) -> BatchMutator:
        return BatchMutator(
            mutate,
            operation=operation,
            action=action,
            success_message=success_message,
            method=method,
            key=key,
            confirm=confirm,
            audit=self._audit,
            dry_run=self._config.dry_run,
        )

    def _patch_by_ids(self, url: str) -> Mutate:
        return lambda keys, state: self._client.send("PATCH", url, params={"id": keys}, json=state)

    def _patch_by_filter(self, url: str) -> Mutate:
        return lambda keys, state: self._client.send(
            "PATCH", url, params={"filter": id_filter(keys)}, json=state
        )

    # =========================================================================
    # Device to service assignment
    # =========================================================================

    def assign_devices_to_service(
        self,
        serial_numbers: Iterable[str],
        service_name: str,
        region: str | None = None,
    ) -> ReconcileResult:
        """Assign devices to a service provisioned in a region.

        Raises:
            TargetResolutionError: If the service is unknown or not
                provisioned in the region.
            UpstreamUnavailable: If a snapshot cannot be fetched.
        """
        region = self._region(region)
        service: ServiceManager = self._resolve_one(
            self._service_managers_scope(), service_name, "Service"
        )
        self._require_provisioned(service, region)

        def constraint(device: Device) -> str | None:
            if device.archived:
                return (
                    f"Device '{device.serial_number}' is archived; "
                    f"unarchive it before assigning a service."
                )
            if device.service_id and not device.is_assigned_to(service.id, region):
                return (
                    f"Device '{device.serial_number}' is assigned to another service or "
                    f"region; unassign it first."
                )
            return None

        def satisfied(device: Device) -> str | None:
            if device.is_assigned_to(service.id, region):
                return (
                    f"Device '{device.serial_number}' is already assigned to "
                    f"{service.name} in {region}"
                )
            return None

        operation = BatchOperation(
            name="assign_devices_to_service",
            scope=self._devices_scope(),
            rules=AdmissionRules(
                kind="Device",
                unique_key="device id",
                constraint=constraint,
                satisfied=satisfied,
            ),
            mutator=self._mutator(
                self._patch_by_ids(DEVICES_URL),
                operation="assign_devices_to_service",
                action=f"assign devices to {service.name}",
                success_message=f"Device assigned to {service.name} in {region}.",
            ),
            desired_state=service_assignment_payload(service.id, region),
            context={"service": service.name, "region": region},
        )
        return self._reconciler.run(operation, serial_numbers)

    def unassign_devices_from_service(self, serial_numbers: Iterable[str]) -> ReconcileResult:
        """Remove devices from whatever service they are assigned to."""

        def constraint(device: Device) -> str | None:
            if device.archived:
                return f"Device '{device.serial_number}' is archived; unarchive it first."
            return None

        def satisfied(device: Device) -> str | None:
            if device.service_id is None:
                return f"Device '{device.serial_number}' is not assigned to any service"
            return None

        operation = BatchOperation(
            name="unassign_devices_from_service",
            scope=self._devices_scope(),
            rules=AdmissionRules(
                kind="Device",
                unique_key="device id",
                constraint=constraint,
                satisfied=satisfied,
            ),
            mutator=self._mutator(
                self._patch_by_ids(DEVICES_URL),
                operation="unassign_devices_from_service",
                action="unassign devices from their service",
                success_message="Device unassigned from its service.",
            ),
            desired_state=service_assignment_payload(None, None),
        )
        return self._reconciler.run(operation, serial_numbers)

    # =========================================================================
    # Server locations (Compute Ops Management)
    # =========================================================================

    def _servers_scope(self, endpoint: str, region: str) -> SnapshotScope:
        return self._scope(
            f"servers in {region}",
            f"{endpoint}{SERVERS_PATH}",
            Server,
            ("serial_number", "name", "id"),
        )

    @staticmethod
    def _require_oneview(server: Server) -> str | None:
        if not server.oneview_managed:
            return (
                f"Server '{server.name}' is not managed through OneView; locations can "
                f"only be assigned to OneView-managed servers."
            )
        return None

    def set_server_location(
        self,
        servers: Iterable[str],
        location_name: str,
        region: str | None = None,
    ) -> ReconcileResult:
        """Assign a workspace location to OneView-managed servers.

        Servers may be given by serial number or name.
        """
        region = self._region(region)
        endpoint = self._com_endpoint(region)
        location: Location = self._resolve_one(
            self._scope("locations", LOCATIONS_URL, Location, ("name", "id")),
            location_name,
            "Location",
        )

        def satisfied(server: Server) -> str | None:
            if server.location_id == location.id:
                return f"Server '{server.name}' is already at location '{location.name}'"
            return None

        operation = BatchOperation(
            name="set_server_location",
            scope=self._servers_scope(endpoint, region),
            rules=AdmissionRules(
                kind="Server",
                unique_key="serial number",
                constraint=self._require_oneview,
                satisfied=satisfied,
            ),
            mutator=self._mutator(
                self._patch_by_ids(f"{endpoint}{SERVERS_PATH}"),
                operation="set_server_location",
                action=f"assign servers to location {location.name}",
                success_message=f"Server assigned to location '{location.name}'.",
            ),
            desired_state=location_payload(location.id),
            context={"location": location.name, "region": region},
        )
        return self._reconciler.run(operation, servers)

    def remove_server_location(
        self, servers: Iterable[str], region: str | None = None
    ) -> ReconcileResult:
        """Clear the location of OneView-managed servers."""
        region = self._region(region)
        endpoint = self._com_endpoint(region)

        def satisfied(server: Server) -> str | None:
            if server.location_id is None:
                return f"Server '{server.name}' has no location"
            return None

        operation = BatchOperation(
            name="remove_server_location",
            scope=self._servers_scope(endpoint, region),
            rules=AdmissionRules(
                kind="Server",
                unique_key="serial number",
                constraint=self._require_oneview,
                satisfied=satisfied,
            ),
            mutator=self._mutator(
                self._patch_by_ids(f"{endpoint}{SERVERS_PATH}"),
                operation="remove_server_location",
                action="remove the location from servers",
                success_message="Server location removed.",
            ),
            desired_state=location_payload(None),
            context={"region": region},
        )
        return self._reconciler.run(operation, servers)

    # =========================================================================
    # Service provisioning
    # =========================================================================

    def provision_service(self, service_name: str, region: str | None = None) -> ReconcileResult:
        """Provision a service manager in a region and wait until it is ready.

        The POST returns as soon as provisioning starts; the provisioning
        poller then re-fetches the provision until it is PROVISIONED, failed,
        or the attempt ceiling is hit. Failure and timeout are reported on
        the service's record. On success the regional endpoint is registered
        in the session store.
        """
        region = self._region(region)
        provisions = self._provisions()

        def constraint(service: ServiceManager) -> str | None:
            if region not in service.regions:
                return f"Service '{service.name}' is not offered in region '{region}'."
            provision = self._find_provision(provisions, service.id, region)
            if provision and provision.provision_status == ProvisionStatus.UNPROVISION_INITIATED:
                return (
                    f"Service '{service.name}' is being unprovisioned in '{region}'; "
                    f"retry once it completes."
                )
            return None

        def satisfied(service: ServiceManager) -> str | None:
            provision = self._find_provision(provisions, service.id, region)
            if provision is None:
                return None
            if provision.provision_status == ProvisionStatus.PROVISIONED:
                return f"Service '{service.name}' is already provisioned in {region}"
            if provision.provision_status == ProvisionStatus.INITIATED:
                return f"Service '{service.name}' is already being provisioned in {region}"
            return None

        def confirm(record: StatusRecord, response: MutationResponse) -> str:
            service: ServiceManager = record.resource
            session = ProvisioningSession(
                target_identifier=f"{service.name}@{region}",
                success_states=frozenset({ProvisionStatus.PROVISIONED.value}),
                failure_states=frozenset({ProvisionStatus.FAILED.value}),
                max_attempts=self._config.max_poll_attempts,
                poll_interval_seconds=self._config.poll_interval_seconds,
            )
            self._provisioning_poller(service, region).wait(session)
            return (
                f"Service '{service.name}' provisioned in {region} "
                f"after {session.attempt_count} poll(s)."
            )

        operation = BatchOperation(
            name="provision_service",
            scope=self._service_managers_scope(),
            rules=AdmissionRules(
                kind="Service",
                unique_key="service id",
                constraint=constraint,
                satisfied=satisfied,
            ),
            mutator=self._mutator(
                lambda keys, state: self._client.send(
                    "POST", PROVISIONS_URL, json=provision_payload(keys[0], state["region"])
                ),
                operation="provision_service",
                action=f"provision the service in {region}",
                success_message=f"Service provisioned in {region}.",
                method="POST",
                confirm=confirm,
            ),
            desired_state={"region": region},
            context={"region": region},
        )
        return self._reconciler.run(operation, [service_name])

    def _provisioning_poller(self, service: ServiceManager, region: str) -> ProvisioningPoller:
        latest: dict[str, Any] = {}

        def fetch_state() -> str | None:
            # Raw items: a status outside ProvisionStatus keeps polling
            items = self._client.get_all(PROVISIONS_URL, {"filter": f"region eq '{region}'"})
            for item in items:
                manager = item.get("serviceManager") or {}
                if manager.get("id") == service.id and item.get("region") == region:
                    latest["api_endpoint"] = item.get("apiEndpoint")
                    return item.get("provisionStatus")
            return None

        def register(session: ProvisioningSession) -> None:
            endpoint = latest.get("api_endpoint") or COM_REGION_ENDPOINTS.get(region)
            if endpoint is None:
                logger.warning(
                    "Provisioned service has no known endpoint",
                    extra={"service": service.name, "region": region},
                )
                return
            if not self._session.is_registered(region, service.name):
                self._session.register_region(region, service.name, endpoint)

        return ProvisioningPoller(fetch_state, on_provisioned=register, sleep=self._sleep)

    # =========================================================================
    # API credentials
    # =========================================================================

    def create_api_credential(
        self,
        name: str,
        service_name: str,
        region: str | None = None,
    ) -> ReconcileResult:
        """Create a personal API credential for a provisioned service.

        The quota check reads the current credential count fresh, right
        before the creation call. The issued secret is cached in the
        session store; it cannot be retrieved again later.
        """
        region = self._region(region)
        service: ServiceManager = self._resolve_one(
            self._service_managers_scope(), service_name, "Service"
        )
        self._require_provisioned(service, region)
        scope = self._credentials_scope()

        result, _ = self._reconciler.classify(
            "create_api_credential",
            [name],
            scope,
            AdmissionRules(
                kind="API credential",
                unique_key="client id",
                satisfied=lambda credential: f"API credential '{credential.name}' already exists",
                create_missing=lambda identifier: credential_payload(identifier, service.id, region),
            ),
            context={"service": service.name, "region": region},
        )

        if result.ledger.actionable():
            self._admit_credentials(result, scope)

        def confirm(record: StatusRecord, response: MutationResponse) -> str:
            try:
                issued = IssuedCredential.model_validate(response.json())
            except ValueError as e:
                raise ConfirmationError(
                    f"API credential '{record.identifier}' was created but the response did "
                    f"not include its secret; delete and recreate it: {e}"
                ) from e
            self._session.cache_credential(
                CachedCredential(
                    name=record.identifier,
                    client_id=issued.client_id,
                    client_secret=issued.client_secret,
                    region=region,
                )
            )
            return f"API credential '{record.identifier}' created with client id {issued.client_id}."

        mutator = self._mutator(
            lambda keys, state: self._client.send(
                "POST", API_CREDENTIALS_URL, json=credential_payload(keys[0], service.id, region)
            ),
            operation="create_api_credential",
            action="create the API credential",
            success_message="API credential created.",
            method="POST",
            key=lambda record: record.identifier,
            confirm=confirm,
        )
        result.mutation = mutator.apply(result.ledger, {"region": region})
        return self._reconciler.finish(result)

    def _admit_credentials(self, result: ReconcileResult, scope: SnapshotScope) -> None:
        """Fail every actionable record when the credential ceiling is reached."""
        ceiling = self._config.max_api_credentials
        try:
            current = self._resolver.count(scope)
        except UpstreamUnavailable as e:
            for record in result.ledger.actionable():
                result.ledger.replace(record.fail(f"Unable to verify API credential quota: {e}"))
            return

        if admit(current, ceiling) == Admission.DENIED:
            logger.warning(
                "API credential quota reached",
                extra={"current_count": current, "ceiling": ceiling},
            )
            message = denial_message("API credentials", ceiling)
            for record in result.ledger.actionable():
                result.ledger.replace(record.fail(message))

    # =========================================================================
    # Webhooks (Compute Ops Management)
    # =========================================================================

    def _webhooks_scope(self, endpoint: str, region: str) -> SnapshotScope:
        return self._scope(
            f"webhooks in {region}", f"{endpoint}{WEBHOOKS_PATH}", Webhook, ("name", "id")
        )

    def remove_webhooks(self, names: Iterable[str], region: str | None = None) -> ReconcileResult:
        """Delete webhooks by name (or id) with one filtered DELETE."""
        region = self._region(region)
        endpoint = self._com_endpoint(region)
        url = f"{endpoint}{WEBHOOKS_PATH}"

        operation = BatchOperation(
            name="remove_webhooks",
            scope=self._webhooks_scope(endpoint, region),
            rules=AdmissionRules(kind="Webhook", unique_key="webhook id"),
            mutator=self._mutator(
                lambda keys, state: self._client.send(
                    "DELETE", url, params={"filter": id_filter(keys)}
                ),
                operation="remove_webhooks",
                action="remove webhooks",
                success_message="Webhook removed.",
                method="DELETE",
            ),
            context={"region": region},
        )
        return self._reconciler.run(operation, names)

    def set_webhook_state(
        self,
        names: Iterable[str],
        enabled: bool,
        region: str | None = None,
    ) -> ReconcileResult:
        """Enable or disable webhooks by name (or id)."""
        region = self._region(region)
        endpoint = self._com_endpoint(region)
        target = WebhookState.ENABLED if enabled else WebhookState.DISABLED

        def satisfied(webhook: Webhook) -> str | None:
            if webhook.state == target:
                return f"Webhook '{webhook.name}' is already {target.value.lower()}"
            return None

        operation = BatchOperation(
            name="set_webhook_state",
            scope=self._webhooks_scope(endpoint, region),
            rules=AdmissionRules(kind="Webhook", unique_key="webhook id", satisfied=satisfied),
            mutator=self._mutator(
                self._patch_by_filter(f"{endpoint}{WEBHOOKS_PATH}"),
                operation="set_webhook_state",
                action=f"set webhooks to {target.value.lower()}",
                success_message=f"Webhook {target.value.lower()}.",
            ),
            desired_state=webhook_state_payload(enabled),
            context={"region": region},
        )
        return self._reconciler.run(operation, names)

    # =========================================================================
    # Resource restriction policies (read only)
    # =========================================================================

    def list_resource_restriction_policies(
        self, names: Iterable[str] | None = None
    ) -> list[ResourceRestrictionPolicy]:
        """List restriction policies with their scopes expanded.

        Scopes live behind a per-policy endpoint, so one follow-up fetch is
        issued per returned policy.
        """
        snapshot = self._resolver.snapshot(
            self._scope(
                "resource restriction policies",
                RESTRICTION_POLICIES_URL,
                ResourceRestrictionPolicy,
                ("name", "id"),
            )
        )
        policies: list[ResourceRestrictionPolicy] = list(snapshot.resources)
        if names is not None:
            wanted = {name.lower() for name in names}
            policies = [p for p in policies if p.name.lower() in wanted or p.id.lower() in wanted]

        expanded = self._resolver.expand(
            policies,
            lambda policy: self._collection(
                f"{RESTRICTION_POLICIES_URL}/{policy.id}/scopes", RestrictionScope
            )(),
            label="restriction policy scopes",
        )
        return [policy.model_copy(update={"scopes": scopes}) for policy, scopes in expanded]
