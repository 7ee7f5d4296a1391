"""Remote state resolver: one point-in-time snapshot per operation.

Classification for an operation always runs against a single fetch of the
relevant resource universe (all devices, all servers in a region, ...).
Looking identifiers up one request at a time would cost N round trips and
could classify different identifiers against different states.

The only nested lookup is expand(): resource restriction policies carry
their scopes behind a second endpoint, so one follow-up fetch is issued per
returned policy. That is bounded by the number of policies, never by the
number of caller-supplied identifiers.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

from azure.core.exceptions import AzureError

logger = logging.getLogger(__name__)

T = TypeVar("T")
C = TypeVar("C")


class UpstreamUnavailable(Exception):
    """Raised when the backing fetch for a snapshot fails.

    Fatal for the whole operation: nothing is classified against a partial
    snapshot.
    """

    def __init__(self, label: str, cause: BaseException) -> None:
        self.label = label
        self.cause = cause
        super().__init__(f"Unable to fetch {label}: {cause}")


@dataclass(frozen=True)
class SnapshotScope:
    """What to fetch and which attributes identify a resource.

    Attributes:
        label: Human-readable scope name used in logs and errors.
        fetch: Callable returning every resource in scope.
        key_fields: Attribute names an identifier may match (e.g. serial
            number and name). Matching is case-insensitive.
    """

    label: str
    fetch: Callable[[], Iterable[Any]]
    key_fields: tuple[str, ...] = ("id",)


class Snapshot(Mapping[str, tuple[Any, ...]]):
    """Read-only view of the resources in scope, indexed by key fields.

    A key maps to a tuple so that ambiguous matches (two resources sharing a
    display name) stay visible to the classifier.
    """

    def __init__(self, label: str, resources: Sequence[Any], key_fields: tuple[str, ...]) -> None:
        self._label = label
        self._resources = tuple(resources)
        index: dict[str, list[Any]] = defaultdict(list)
        for resource in self._resources:
            for key_field in key_fields:
                value = getattr(resource, key_field, None)
                if not value:
                    continue
                bucket = index[str(value).lower()]
                if not any(existing is resource for existing in bucket):
                    bucket.append(resource)
        self._index = {key: tuple(matches) for key, matches in index.items()}

    def __getitem__(self, identifier: str) -> tuple[Any, ...]:
        return self._index[identifier.lower()]

    def __iter__(self) -> Iterator[str]:
        return iter(self._index)

    def __len__(self) -> int:
        return len(self._index)

    def __contains__(self, identifier: object) -> bool:
        return isinstance(identifier, str) and identifier.lower() in self._index

    @property
    def label(self) -> str:
        return self._label

    @property
    def resources(self) -> tuple[Any, ...]:
        return self._resources

    def matches(self, identifier: str) -> tuple[Any, ...]:
        """Resources matching the identifier, empty when not found."""
        return self._index.get(identifier.lower(), ())


class RemoteStateResolver:
    """Fetches snapshots and counts from the backing service.

    Every call performs exactly one fetch. Nothing is cached across calls,
    so quota counts are always read fresh.
    """

    def __init__(self) -> None:
        self._fetch_count = 0

    @property
    def fetch_count(self) -> int:
        """Number of backing fetches issued through this resolver."""
        return self._fetch_count

    def _fetch(self, label: str, fetch: Callable[[], Iterable[T]]) -> list[T]:
        start_time = time.monotonic()
        self._fetch_count += 1
        try:
            resources = list(fetch())
        except (AzureError, ValueError) as e:
            # ValueError covers pydantic ValidationError on malformed items
            logger.error(
                "Snapshot fetch failed",
                extra={"scope": label, "error_type": type(e).__name__},
            )
            raise UpstreamUnavailable(label, e) from e

        logger.info(
            "Snapshot fetched",
            extra={
                "scope": label,
                "resources_found": len(resources),
                "query_time_seconds": round(time.monotonic() - start_time, 2),
            },
        )
        return resources

    def snapshot(self, scope: SnapshotScope) -> Snapshot:
        """Fetch the resource universe for one operation.

        Raises:
            UpstreamUnavailable: If the fetch fails for any reason.
        """
        resources = self._fetch(scope.label, scope.fetch)
        return Snapshot(scope.label, resources, scope.key_fields)

    def count(self, scope: SnapshotScope) -> int:
        """Count resources in scope with a fresh fetch (quota input)."""
        return len(self._fetch(scope.label, scope.fetch))

    def expand(
        self,
        parents: Sequence[T],
        fetch_children: Callable[[T], Iterable[C]],
        label: str,
    ) -> list[tuple[T, list[C]]]:
        """Fetch children for each parent, one request per parent.

        Raises:
            UpstreamUnavailable: If any child fetch fails.
        """
        expanded: list[tuple[T, list[C]]] = []
        for parent in parents:
            children = self._fetch(label, lambda p=parent: fetch_children(p))
            expanded.append((parent, children))
        return expanded
