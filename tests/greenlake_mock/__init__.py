"""GreenLake API Mock for Integration Testing.

In-memory stand-in for the GreenLake global and Compute Ops Management
APIs, so operations can be tested end to end without connectivity.

Key Features:
- In-memory workspace state seeded with raw API items
- Mutations applied to state, so a second run sees the new state
- Provisioning that advances one status per poll
- Error injection for fetch and mutation failures
- Request recording for call-count assertions

Usage:
    from greenlake_mock import MockGreenLakeClient

    client = MockGreenLakeClient(config)
    client.state.add_device("SN0001")
    operations = Operations(client, SessionStore())
    result = operations.unassign_devices_from_service(["SN0001"])

    assert len(client.mutations) == 0
"""

from .client import MockCall, MockGreenLakeClient, MockResponse
from .state import MockGreenLakeState

__all__ = [
    "MockCall",
    "MockGreenLakeClient",
    "MockGreenLakeState",
    "MockResponse",
]
