"""Integration tests for GreenLake operations against the in-memory API."""

from __future__ import annotations

import dataclasses
from typing import Any
from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import ServiceRequestError
from greenlake_mock import MockGreenLakeClient

from orchestrator.config import COM_REGION_ENDPOINTS, Config
from orchestrator.ledger import RecordStatus
from orchestrator.mutator import MutationRejected
from orchestrator.operations import (
    API_CREDENTIALS_URL,
    COM_SERVICE_NAME,
    DEVICES_URL,
    PROVISIONS_URL,
    SERVERS_PATH,
    WEBHOOKS_PATH,
    Operations,
    id_filter,
)
from orchestrator.poller import ProvisioningFailed, ProvisioningTimedOut
from orchestrator.reconciler import TargetResolutionError
from orchestrator.resolver import UpstreamUnavailable
from orchestrator.session import SessionStore

EU = "eu-central"
US = "us-west"


@pytest.fixture
def com(mock_client: MockGreenLakeClient) -> dict[str, Any]:
    """Compute Ops Management offered in two regions, provisioned in eu-central."""
    service = mock_client.state.add_service_manager(COM_SERVICE_NAME, [EU, US])
    mock_client.state.add_provision(service, EU)
    return service


@pytest.fixture
def operations(mock_client: MockGreenLakeClient, store: SessionStore) -> Operations:
    return Operations(mock_client, store, sleep=MagicMock())


def statuses(result: Any) -> dict[str, RecordStatus]:
    return {record.identifier: record.status for record in result.records}


def details(result: Any) -> dict[str, str]:
    return {record.identifier: record.details for record in result.records}


class TestAssignDevices:
    """Tests for assign_devices_to_service."""

    def test_classifies_and_assigns(
        self, operations: Operations, mock_client: MockGreenLakeClient, com: dict[str, Any]
    ) -> None:
        """Each device gets exactly one terminal status; one PATCH covers the rest."""
        state = mock_client.state
        other = state.add_service_manager("Data Services", [EU])
        free = state.add_device("SN1")
        state.add_device("SN2", service_id=com["id"], region=EU)
        state.add_device("SN3", archived=True)
        state.add_device("SN4", service_id=other["id"], region=EU)

        result = operations.assign_devices_to_service(
            ["SN1", "SN2", "SN3", "SN4", "SN9"], COM_SERVICE_NAME, EU
        )

        assert statuses(result) == {
            "SN1": RecordStatus.COMPLETE,
            "SN2": RecordStatus.WARNING,
            "SN3": RecordStatus.FAILED,
            "SN4": RecordStatus.FAILED,
            "SN9": RecordStatus.FAILED,
        }
        text = details(result)
        assert "no action needed" in text["SN2"]
        assert "archived" in text["SN3"]
        assert "another service" in text["SN4"]
        assert text["SN9"] == "Device 'SN9' not found."

        assert len(mock_client.mutations) == 1
        call = mock_client.mutations[0]
        assert call.method == "PATCH"
        assert call.url == DEVICES_URL
        assert call.params == {"id": [free["id"]]}
        assert call.json == {"application": {"id": com["id"]}, "region": EU}
        assert state.devices[free["id"]]["region"] == EU

    def test_snapshot_fetched_once(
        self, operations: Operations, mock_client: MockGreenLakeClient, com: dict[str, Any]
    ) -> None:
        """Devices are fetched once regardless of identifier count."""
        for i in range(20):
            mock_client.state.add_device(f"SN{i}")

        operations.assign_devices_to_service([f"SN{i}" for i in range(20)], COM_SERVICE_NAME)

        device_fetches = [c for c in mock_client.fetches if c.url == DEVICES_URL]
        assert len(device_fetches) == 1

    def test_second_run_only_warns(
        self, operations: Operations, mock_client: MockGreenLakeClient, com: dict[str, Any]
    ) -> None:
        """Running the same assignment twice is idempotent."""
        mock_client.state.add_device("SN1")
        mock_client.state.add_device("SN2")

        first = operations.assign_devices_to_service(["SN1", "SN2"], COM_SERVICE_NAME)
        second = operations.assign_devices_to_service(["SN1", "SN2"], COM_SERVICE_NAME)

        assert set(statuses(first).values()) == {RecordStatus.COMPLETE}
        assert set(statuses(second).values()) == {RecordStatus.WARNING}
        assert len(mock_client.mutations) == 1

    def test_forbidden_fails_all_actionable_identically(
        self, operations: Operations, mock_client: MockGreenLakeClient, com: dict[str, Any]
    ) -> None:
        """A 403 fails C and D with the same details and payload."""
        mock_client.state.add_device("C")
        mock_client.state.add_device("D")
        mock_client.fail_mutations(403, {"message": "Missing devices edit permission"})

        result = operations.assign_devices_to_service(["A", "C", "D"], COM_SERVICE_NAME)

        a, c, d = result.records
        assert a.details == "Device 'A' not found."
        assert c.status == d.status == RecordStatus.FAILED
        assert c.details == d.details
        assert c.details.startswith("Forbidden")
        assert c.exception is d.exception
        assert isinstance(c.exception, MutationRejected)
        assert c.exception.service_message == "Missing devices edit permission"

    def test_transport_failure_fails_actionable(
        self, operations: Operations, mock_client: MockGreenLakeClient, com: dict[str, Any]
    ) -> None:
        """A transport error on the batch call fails the partition, not the operation."""
        mock_client.state.add_device("SN1", service_id=com["id"], region=EU)
        mock_client.state.add_device("SN2")
        mock_client.raise_on_mutation(ServiceRequestError("connection reset"))

        result = operations.assign_devices_to_service(["SN1", "SN2"], COM_SERVICE_NAME)

        assert statuses(result) == {"SN1": RecordStatus.WARNING, "SN2": RecordStatus.FAILED}
        assert "connection reset" in details(result)["SN2"]

    def test_unknown_service(
        self, operations: Operations, mock_client: MockGreenLakeClient, com: dict[str, Any]
    ) -> None:
        """An unknown service stops the operation before classification."""
        mock_client.state.add_device("SN1")

        with pytest.raises(TargetResolutionError, match="'Nope' not found"):
            operations.assign_devices_to_service(["SN1"], "Nope")

        assert not [c for c in mock_client.fetches if c.url == DEVICES_URL]

    def test_service_not_provisioned_in_region(
        self, operations: Operations, com: dict[str, Any]
    ) -> None:
        with pytest.raises(TargetResolutionError, match="not provisioned in region 'us-west'"):
            operations.assign_devices_to_service(["SN1"], COM_SERVICE_NAME, US)

    def test_region_required(
        self, mock_client: MockGreenLakeClient, store: SessionStore, test_config: Config
    ) -> None:
        """Without --region or a default region the target cannot be resolved."""
        client = MockGreenLakeClient(dataclasses.replace(test_config, default_region=None))
        ops = Operations(client, store)

        with pytest.raises(TargetResolutionError, match="No region"):
            ops.assign_devices_to_service(["SN1"], COM_SERVICE_NAME)

    def test_devices_unavailable(
        self, operations: Operations, mock_client: MockGreenLakeClient, com: dict[str, Any]
    ) -> None:
        """A failed device fetch is fatal; nothing is mutated."""
        mock_client.fail_fetch(DEVICES_URL, ServiceRequestError("connection reset"))

        with pytest.raises(UpstreamUnavailable, match="devices"):
            operations.assign_devices_to_service(["SN1"], COM_SERVICE_NAME)

        assert mock_client.mutations == []

    def test_dry_run(
        self, mock_client: MockGreenLakeClient, store: SessionStore, test_config: Config
    ) -> None:
        """Dry run classifies but never mutates."""
        client = MockGreenLakeClient(dataclasses.replace(test_config, dry_run=True))
        service = client.state.add_service_manager(COM_SERVICE_NAME, [EU])
        client.state.add_provision(service, EU)
        client.state.add_device("SN1")

        result = Operations(client, store).assign_devices_to_service(["SN1"], COM_SERVICE_NAME)

        record = result.records[0]
        assert record.status == RecordStatus.WARNING
        assert record.details.startswith("Dry run: would assign devices")
        assert client.mutations == []


class TestUnassignDevices:
    """Tests for unassign_devices_from_service."""

    def test_unassign(
        self, operations: Operations, mock_client: MockGreenLakeClient, com: dict[str, Any]
    ) -> None:
        assigned = mock_client.state.add_device("SN1", service_id=com["id"], region=EU)
        mock_client.state.add_device("SN2")

        result = operations.unassign_devices_from_service(["SN1", "SN2"])

        assert statuses(result) == {"SN1": RecordStatus.COMPLETE, "SN2": RecordStatus.WARNING}
        assert mock_client.mutations[0].json == {"application": None, "region": None}
        assert mock_client.state.devices[assigned["id"]]["application"] is None


class TestServerLocations:
    """Tests for set_server_location and remove_server_location."""

    def test_set_location(
        self,
        operations: Operations,
        mock_client: MockGreenLakeClient,
        store: SessionStore,
        com: dict[str, Any],
    ) -> None:
        state = mock_client.state
        lab = state.add_location("Lab A")
        target = state.add_server(EU, "srv-a", "CZ001")
        state.add_server(EU, "srv-b", "CZ002", connection_type="direct")
        state.add_server(EU, "srv-c", "CZ003", location_id=lab["id"])

        result = operations.set_server_location(["srv-a", "CZ002", "srv-c"], "Lab A", EU)

        assert statuses(result) == {
            "srv-a": RecordStatus.COMPLETE,
            "CZ002": RecordStatus.FAILED,
            "srv-c": RecordStatus.WARNING,
        }
        assert "OneView" in details(result)["CZ002"]
        call = mock_client.mutations[0]
        assert call.url == f"{COM_REGION_ENDPOINTS[EU]}{SERVERS_PATH}"
        assert call.params == {"id": [target["id"]]}
        assert state.servers[EU][target["id"]]["locationId"] == lab["id"]
        assert store.endpoint_for(EU, COM_SERVICE_NAME) == COM_REGION_ENDPOINTS[EU]

    def test_region_without_com(self, operations: Operations, com: dict[str, Any]) -> None:
        """COM must be provisioned in the region to reach its servers."""
        with pytest.raises(TargetResolutionError, match="'us-west'"):
            operations.set_server_location(["srv-a"], "Lab A", US)

    def test_ambiguous_location(
        self, operations: Operations, mock_client: MockGreenLakeClient, com: dict[str, Any]
    ) -> None:
        mock_client.state.add_location("Lab A")
        mock_client.state.add_location("Lab A")

        with pytest.raises(TargetResolutionError, match="matches 2 resources"):
            operations.set_server_location(["srv-a"], "Lab A", EU)

    def test_remove_location(
        self, operations: Operations, mock_client: MockGreenLakeClient, com: dict[str, Any]
    ) -> None:
        lab = mock_client.state.add_location("Lab A")
        located = mock_client.state.add_server(EU, "srv-a", "CZ001", location_id=lab["id"])
        mock_client.state.add_server(EU, "srv-b", "CZ002")

        result = operations.remove_server_location(["srv-a", "srv-b"], EU)

        assert statuses(result) == {"srv-a": RecordStatus.COMPLETE, "srv-b": RecordStatus.WARNING}
        assert mock_client.state.servers[EU][located["id"]]["locationId"] is None


class TestProvisionService:
    """Tests for provision_service."""

    def test_provision_and_register(
        self,
        operations: Operations,
        mock_client: MockGreenLakeClient,
        store: SessionStore,
        com: dict[str, Any],
    ) -> None:
        """Provisioning polls until done and registers the regional endpoint."""
        mock_client.state.provisioning_sequence = ["PROVISION_INITIATED", "PROVISIONED"]

        result = operations.provision_service(COM_SERVICE_NAME, US)

        record = result.records[0]
        assert record.status == RecordStatus.COMPLETE
        assert "after 2 poll(s)" in record.details
        posts = [c for c in mock_client.mutations if c.url == PROVISIONS_URL]
        assert len(posts) == 1
        assert posts[0].json == {"serviceManager": {"id": com["id"]}, "region": US}
        assert store.endpoint_for(US, COM_SERVICE_NAME) == COM_REGION_ENDPOINTS[US]

    def test_registered_endpoint_used_later(
        self, operations: Operations, mock_client: MockGreenLakeClient, com: dict[str, Any]
    ) -> None:
        """A region provisioned in this session serves later operations."""
        mock_client.state.provisioning_sequence = ["PROVISIONED"]
        mock_client.state.add_webhook(US, "alerts")
        operations.provision_service(COM_SERVICE_NAME, US)
        provision_fetches = len([c for c in mock_client.fetches if c.url == PROVISIONS_URL])

        result = operations.set_webhook_state(["alerts"], enabled=False, region=US)

        assert statuses(result) == {"alerts": RecordStatus.COMPLETE}
        assert len([c for c in mock_client.fetches if c.url == PROVISIONS_URL]) == (
            provision_fetches
        )

    def test_timeout_folds_into_record(
        self,
        operations: Operations,
        mock_client: MockGreenLakeClient,
        store: SessionStore,
        com: dict[str, Any],
    ) -> None:
        """A provision that never completes fails the record after max attempts."""
        result = operations.provision_service(COM_SERVICE_NAME, US)

        record = result.records[0]
        assert record.status == RecordStatus.FAILED
        assert isinstance(record.exception, ProvisioningTimedOut)
        assert record.exception.session.attempt_count == mock_client.config.max_poll_attempts
        assert store.endpoint_for(US, COM_SERVICE_NAME) is None

    def test_failure_folds_into_record(
        self, operations: Operations, mock_client: MockGreenLakeClient, com: dict[str, Any]
    ) -> None:
        mock_client.state.provisioning_sequence = ["PROVISION_FAILED"]

        result = operations.provision_service(COM_SERVICE_NAME, US)

        assert isinstance(result.records[0].exception, ProvisioningFailed)
        assert result.success is False

    def test_unknown_status_keeps_polling(
        self,
        operations: Operations,
        mock_client: MockGreenLakeClient,
        store: SessionStore,
        com: dict[str, Any],
    ) -> None:
        """A status the client does not model is neither success nor failure."""
        mock_client.state.provisioning_sequence = ["PROVISIONING"]

        result = operations.provision_service(COM_SERVICE_NAME, US)

        record = result.records[0]
        assert record.status == RecordStatus.FAILED
        assert isinstance(record.exception, ProvisioningTimedOut)
        assert record.exception.session.current_state == "PROVISIONING"
        assert store.endpoint_for(US, COM_SERVICE_NAME) is None

    def test_already_provisioned(
        self, operations: Operations, mock_client: MockGreenLakeClient, com: dict[str, Any]
    ) -> None:
        result = operations.provision_service(COM_SERVICE_NAME, EU)

        assert result.records[0].status == RecordStatus.WARNING
        assert mock_client.mutations == []

    def test_region_not_offered(
        self, operations: Operations, mock_client: MockGreenLakeClient, com: dict[str, Any]
    ) -> None:
        result = operations.provision_service(COM_SERVICE_NAME, "ap-northeast")

        assert result.records[0].status == RecordStatus.FAILED
        assert "not offered" in result.records[0].details
        assert mock_client.mutations == []


class TestCreateApiCredential:
    """Tests for create_api_credential."""

    def test_create_and_cache_secret(
        self,
        operations: Operations,
        mock_client: MockGreenLakeClient,
        store: SessionStore,
        com: dict[str, Any],
    ) -> None:
        mock_client.state.add_api_credential("existing", com["id"], EU)

        result = operations.create_api_credential("ci-bot", COM_SERVICE_NAME, EU)

        record = result.records[0]
        assert record.status == RecordStatus.COMPLETE
        assert "client-ci-bot" in record.details
        assert "secret-ci-bot" not in record.details
        cached = store.credential("ci-bot")
        assert cached is not None
        assert cached.client_secret == "secret-ci-bot"
        posts = [c for c in mock_client.mutations if c.url == API_CREDENTIALS_URL]
        assert len(posts) == 1

    def test_existing_name_warns(
        self, operations: Operations, mock_client: MockGreenLakeClient, com: dict[str, Any]
    ) -> None:
        mock_client.state.add_api_credential("ci-bot", com["id"], EU)

        result = operations.create_api_credential("ci-bot", COM_SERVICE_NAME, EU)

        assert result.records[0].status == RecordStatus.WARNING
        assert mock_client.mutations == []

    def test_quota_reached(
        self, operations: Operations, mock_client: MockGreenLakeClient, com: dict[str, Any]
    ) -> None:
        """The eighth credential is refused before any creation call."""
        for i in range(7):
            mock_client.state.add_api_credential(f"client-{i}", com["id"], EU)

        result = operations.create_api_credential("ci-bot", COM_SERVICE_NAME, EU)

        record = result.records[0]
        assert record.status == RecordStatus.FAILED
        assert record.details.startswith("Maximum of 7 API credentials reached")
        assert mock_client.mutations == []

    def test_configured_lower_ceiling(
        self, mock_client: MockGreenLakeClient, store: SessionStore, test_config: Config
    ) -> None:
        client = MockGreenLakeClient(dataclasses.replace(test_config, max_api_credentials=2))
        service = client.state.add_service_manager(COM_SERVICE_NAME, [EU])
        client.state.add_provision(service, EU)
        client.state.add_api_credential("one", service["id"], EU)
        client.state.add_api_credential("two", service["id"], EU)

        result = Operations(client, store).create_api_credential("three", COM_SERVICE_NAME, EU)

        assert "Maximum of 2" in result.records[0].details

    def test_credentials_unavailable(
        self, operations: Operations, mock_client: MockGreenLakeClient, com: dict[str, Any]
    ) -> None:
        mock_client.fail_fetch(API_CREDENTIALS_URL, ServiceRequestError("timeout"))

        with pytest.raises(UpstreamUnavailable):
            operations.create_api_credential("ci-bot", COM_SERVICE_NAME, EU)

    def test_service_not_provisioned(self, operations: Operations, com: dict[str, Any]) -> None:
        with pytest.raises(TargetResolutionError):
            operations.create_api_credential("ci-bot", COM_SERVICE_NAME, US)


class TestWebhooks:
    """Tests for remove_webhooks and set_webhook_state."""

    def test_remove(
        self, operations: Operations, mock_client: MockGreenLakeClient, com: dict[str, Any]
    ) -> None:
        """Duplicate names are ambiguous; unique ones are deleted in one call."""
        state = mock_client.state
        state.add_webhook(EU, "alerts")
        state.add_webhook(EU, "alerts")
        audit = state.add_webhook(EU, "audit")

        result = operations.remove_webhooks(["alerts", "audit", "ghost"], EU)

        assert statuses(result) == {
            "alerts": RecordStatus.FAILED,
            "audit": RecordStatus.COMPLETE,
            "ghost": RecordStatus.FAILED,
        }
        assert "webhook id" in details(result)["alerts"]
        call = mock_client.mutations[0]
        assert call.method == "DELETE"
        assert call.url == f"{COM_REGION_ENDPOINTS[EU]}{WEBHOOKS_PATH}"
        assert call.params == {"filter": id_filter([audit["id"]])}
        assert audit["id"] not in state.webhooks[EU]

    def test_ambiguous_name_resolved_by_id(
        self, operations: Operations, mock_client: MockGreenLakeClient, com: dict[str, Any]
    ) -> None:
        first = mock_client.state.add_webhook(EU, "alerts")
        mock_client.state.add_webhook(EU, "alerts")

        result = operations.remove_webhooks([first["id"]], EU)

        assert result.records[0].status == RecordStatus.COMPLETE

    def test_disable(
        self, operations: Operations, mock_client: MockGreenLakeClient, com: dict[str, Any]
    ) -> None:
        enabled = mock_client.state.add_webhook(EU, "alerts")
        mock_client.state.add_webhook(EU, "audit", state="DISABLED")

        result = operations.set_webhook_state(["alerts", "audit"], enabled=False, region=EU)

        assert statuses(result) == {"alerts": RecordStatus.COMPLETE, "audit": RecordStatus.WARNING}
        assert "already disabled" in details(result)["audit"]
        assert mock_client.mutations[0].json == {"state": "DISABLED"}
        assert mock_client.state.webhooks[EU][enabled["id"]]["state"] == "DISABLED"


def test_id_filter() -> None:
    assert id_filter(["wh-1", "wh-2"]) == "id in ('wh-1', 'wh-2')"


class TestRestrictionPolicies:
    """Tests for list_resource_restriction_policies."""

    def test_scopes_expanded(
        self, operations: Operations, mock_client: MockGreenLakeClient
    ) -> None:
        mock_client.state.add_policy("Lab servers", ["lab-group"])
        mock_client.state.add_policy("Prod servers", ["prod-a", "prod-b"])

        policies = operations.list_resource_restriction_policies()

        assert [p.name for p in policies] == ["Lab servers", "Prod servers"]
        assert [s.name for s in policies[1].scopes] == ["prod-a", "prod-b"]
        # One listing plus one scope fetch per policy
        assert len(mock_client.fetches) == 3

    def test_filter_by_name(
        self, operations: Operations, mock_client: MockGreenLakeClient
    ) -> None:
        mock_client.state.add_policy("Lab servers", ["lab-group"])
        mock_client.state.add_policy("Prod servers", ["prod-a"])

        policies = operations.list_resource_restriction_policies(["lab SERVERS"])

        assert [p.name for p in policies] == ["Lab servers"]
        assert len(mock_client.fetches) == 2
