"""Explicitly scoped session state.

Operations that provision a regional service register the new endpoint
here, and later unrelated operations look it up. Newly issued API
credentials are cached for the same session. Nothing here is global: the
store is created at session start, passed by reference into operations,
and cleared when the session ends.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import TracebackType

logger = logging.getLogger(__name__)


def _key(region: str, service_name: str) -> tuple[str, str]:
    return region.lower(), service_name.lower()


class SessionClosedError(Exception):
    """Raised when a closed session store is used."""

    pass


@dataclass(frozen=True)
class RegionEndpoint:
    """Regional API endpoint of a provisioned service."""

    region: str
    service_name: str
    endpoint: str


@dataclass(frozen=True)
class CachedCredential:
    """API credential issued during this session."""

    name: str
    client_id: str
    client_secret: str
    region: str | None = None

    def __repr__(self) -> str:
        return f"CachedCredential(name={self.name!r}, client_id={self.client_id!r})"


class SessionStore:
    """Region registry and credential cache with an explicit lifecycle.

    Usage:
        with SessionStore() as store:
            operations = Operations(client, store)
            operations.provision_service("Compute Ops Management", "eu-central")
            store.endpoint_for("eu-central", "Compute Ops Management")
    """

    def __init__(self) -> None:
        self._regions: dict[tuple[str, str], RegionEndpoint] = {}
        self._credentials: dict[str, CachedCredential] = {}
        self._closed = False

    def __enter__(self) -> SessionStore:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.clear()

    def _check_open(self) -> None:
        if self._closed:
            raise SessionClosedError("Session store has been cleared")

    def is_registered(self, region: str, service_name: str) -> bool:
        self._check_open()
        return _key(region, service_name) in self._regions

    def register_region(self, region: str, service_name: str, endpoint: str) -> bool:
        """Register a regional endpoint if it is not already known.

        Returns:
            True if the endpoint was added, False if the service was already
            registered for the region (the existing entry is kept).
        """
        self._check_open()
        key = _key(region, service_name)
        if key in self._regions:
            return False
        self._regions[key] = RegionEndpoint(
            region=region, service_name=service_name, endpoint=endpoint
        )
        logger.info(
            "Registered regional endpoint",
            extra={"region": region, "service": service_name, "endpoint": endpoint},
        )
        return True

    def endpoint_for(self, region: str, service_name: str) -> str | None:
        self._check_open()
        entry = self._regions.get(_key(region, service_name))
        return entry.endpoint if entry else None

    @property
    def regions(self) -> list[RegionEndpoint]:
        self._check_open()
        return list(self._regions.values())

    def cache_credential(self, credential: CachedCredential) -> None:
        self._check_open()
        self._credentials[credential.name] = credential

    def credential(self, name: str) -> CachedCredential | None:
        self._check_open()
        return self._credentials.get(name)

    def clear(self) -> None:
        """End the session; cached secrets are dropped."""
        self._regions.clear()
        self._credentials.clear()
        self._closed = True
        logger.debug("Session store cleared")
