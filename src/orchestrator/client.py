"""GreenLake REST client built on the Azure Core pipeline.

The orchestration engine only needs two primitives from the transport:
- get_all(): read a whole paginated collection (raises on any failure)
- send(): issue one mutating request and hand back the raw response so the
  batch mutator can map the status code itself

Authentication is a collaborator: any azure.core TokenCredential works.
StaticTokenCredential wraps a bearer token issued out of band.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from azure.core import PipelineClient
from azure.core.credentials import AccessToken, TokenCredential
from azure.core.exceptions import HttpResponseError
from azure.core.pipeline.policies import (
    BearerTokenCredentialPolicy,
    HeadersPolicy,
    NetworkTraceLoggingPolicy,
    RetryPolicy,
    UserAgentPolicy,
)
from azure.core.rest import HttpRequest, HttpResponse

from .config import MAX_FETCH_PAGES, Config

logger = logging.getLogger(__name__)

USER_AGENT = "greenlake-orchestrator"
TOKEN_SCOPE = "greenlake"
STATIC_TOKEN_VALIDITY_SECONDS = 7200

# Transport-level retries only; the batch mutator never retries a mutation
MAX_TRANSPORT_RETRIES = 3


class StaticTokenCredential:
    """TokenCredential over a bearer token obtained outside this process."""

    def __init__(self, token: str, expires_on: int | None = None) -> None:
        if not token:
            raise ValueError("Token cannot be empty")
        self._token = token
        self._expires_on = expires_on or int(time.time()) + STATIC_TOKEN_VALIDITY_SECONDS

    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        return AccessToken(self._token, self._expires_on)


class GreenLakeClient:
    """Thin REST client over the GreenLake global and regional APIs."""

    def __init__(self, config: Config, credential: TokenCredential) -> None:
        """Initialize the pipeline.

        Args:
            config: Validated client configuration.
            credential: Credential used for the bearer token policy.
        """
        self._config = config
        self._client = PipelineClient(
            base_url=config.base_url,
            policies=[
                HeadersPolicy({"Accept": "application/json"}),
                UserAgentPolicy(base_user_agent=USER_AGENT),
                RetryPolicy(retry_total=MAX_TRANSPORT_RETRIES),
                BearerTokenCredentialPolicy(credential, TOKEN_SCOPE),
                NetworkTraceLoggingPolicy(),
            ],
        )

    @property
    def config(self) -> Config:
        return self._config

    def send(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any | None = None,
    ) -> HttpResponse:
        """Issue a single request and return the response without raising.

        Args:
            method: HTTP verb.
            url: Path relative to the global API, or an absolute regional URL.
            params: Query parameters; list values are sent as repeated keys.
            json: Request body.

        Returns:
            The raw response. Status code interpretation is left to callers.

        Raises:
            AzureError: On transport failures (connection, timeout).
        """
        request = HttpRequest(
            method,
            self._client.format_url(url),
            params=params,
            json=json,
        )
        logger.debug(
            "Sending request",
            extra={"method": method, "url": request.url},
        )
        return self._client.send_request(
            request,
            connection_timeout=self._config.request_timeout_seconds,
            read_timeout=self._config.request_timeout_seconds,
        )

    def get_all(self, url: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """Read every item of a paginated collection.

        Collections answer with {"items": [...], "count": n, "total": n}.

        Raises:
            HttpResponseError: If any page fails.
            AzureError: On transport failures.
        """
        items: list[dict[str, Any]] = []
        offset = 0

        for _ in range(MAX_FETCH_PAGES):
            page_params = {**(params or {}), "offset": offset, "limit": self._config.page_size}
            response = self.send("GET", url, params=page_params)
            response.raise_for_status()

            body = response.json() or {}
            page = body.get("items") or []
            items.extend(page)

            total = body.get("total", len(items))
            if not page or len(items) >= total:
                return items
            offset += len(page)

        raise HttpResponseError(
            message=f"Pagination for {url} exceeded {MAX_FETCH_PAGES} pages"
        )

    def close(self) -> None:
        self._client.close()
