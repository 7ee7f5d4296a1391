"""Tests for GreenLake resource models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from orchestrator.models import (
    ApiCredential,
    ConnectionType,
    Device,
    IssuedCredential,
    ProvisionStatus,
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


class TestDevice:
    """Tests for Device parsing."""

    def test_parse_api_item(self) -> None:
        device = Device.model_validate(
            {
                "id": "dev-1",
                "serialNumber": "SN1",
                "partNumber": "P1",
                "application": {"id": "sm-1"},
                "region": "eu-central",
                "unknownField": "ignored",
            }
        )

        assert device.serial_number == "SN1"
        assert device.service_id == "sm-1"
        assert device.is_assigned_to("sm-1", "eu-central")
        assert not device.is_assigned_to("sm-1", "us-west")
        assert device.archived is False

    def test_unassigned(self) -> None:
        device = Device.model_validate({"id": "dev-1", "serialNumber": "SN1", "application": None})

        assert device.service_id is None

    def test_serial_required(self) -> None:
        with pytest.raises(ValidationError):
            Device.model_validate({"id": "dev-1", "serialNumber": ""})


class TestServer:
    """Tests for Server parsing."""

    def test_connection_type_normalized(self) -> None:
        server = Server.model_validate(
            {"id": "srv-1", "name": "srv", "serialNumber": "CZ1", "connectionType": "oneview"}
        )

        assert server.connection_type == ConnectionType.ONEVIEW
        assert server.oneview_managed

    def test_defaults_to_direct(self) -> None:
        server = Server.model_validate({"id": "srv-1", "name": "srv", "serialNumber": "CZ1"})

        assert server.oneview_managed is False
        assert server.location_id is None


class TestServiceCatalog:
    """Tests for service manager and provision parsing."""

    def test_regions_flattened(self) -> None:
        service = ServiceManager.model_validate(
            {"id": "sm-1", "name": "COM", "regions": [{"id": "eu-central"}, "us-west"]}
        )

        assert service.regions == ["eu-central", "us-west"]

    def test_provision(self) -> None:
        provision = ServiceManagerProvision.model_validate(
            {
                "id": "prov-1",
                "serviceManager": {"id": "sm-1"},
                "region": "eu-central",
                "provisionStatus": "PROVISION_INITIATED",
            }
        )

        assert provision.service_manager_id == "sm-1"
        assert provision.provision_status == ProvisionStatus.INITIATED
        assert provision.api_endpoint is None

    def test_unknown_provision_status_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ServiceManagerProvision.model_validate(
                {
                    "id": "prov-1",
                    "serviceManager": {"id": "sm-1"},
                    "region": "eu-central",
                    "provisionStatus": "SOMETHING_ELSE",
                }
            )


class TestCredentials:
    """Tests for API credential models."""

    def test_credential_name_alias(self) -> None:
        credential = ApiCredential.model_validate(
            {"id": "c-1", "credentialName": "ci-bot", "clientId": "abc"}
        )

        assert credential.name == "ci-bot"
        assert credential.client_id == "abc"

    def test_issued_secret_hidden_from_repr(self) -> None:
        issued = IssuedCredential.model_validate({"clientId": "abc", "clientSecret": "s3cret"})

        assert issued.client_secret == "s3cret"
        assert "s3cret" not in repr(issued)

    def test_issued_requires_secret(self) -> None:
        with pytest.raises(ValidationError):
            IssuedCredential.model_validate({"clientId": "abc"})


class TestWebhook:
    def test_state(self) -> None:
        webhook = Webhook.model_validate({"id": "wh-1", "name": "alerts", "state": "DISABLED"})

        assert webhook.state == WebhookState.DISABLED


class TestPayloads:
    """Tests for mutation payload builders."""

    def test_service_assignment(self) -> None:
        assert service_assignment_payload("sm-1", "eu-central") == {
            "application": {"id": "sm-1"},
            "region": "eu-central",
        }

    def test_service_unassignment(self) -> None:
        assert service_assignment_payload(None, None) == {"application": None, "region": None}

    def test_location(self) -> None:
        assert location_payload(None) == {"locationId": None}

    def test_webhook_state(self) -> None:
        assert webhook_state_payload(True) == {"state": "ENABLED"}

    def test_provision(self) -> None:
        assert provision_payload("sm-1", "us-west") == {
            "serviceManager": {"id": "sm-1"},
            "region": "us-west",
        }

    def test_credential(self) -> None:
        assert credential_payload("ci-bot", "sm-1", "eu-central") == {
            "credentialName": "ci-bot",
            "serviceManagerId": "sm-1",
            "region": "eu-central",
        }
