"""Blocking HTTP transport for RPC commands."""

import json
import logging
from typing import Protocol

import httpx

from realm_rpc.errors import RpcProtocolError
from realm_rpc.errors import RpcTransportError

logger = logging.getLogger(__name__)

CONTENT_TYPE: str = "text/plain;charset=UTF-8"


class Transport(Protocol):
    """Blocking POST-and-wait primitive used by the dispatcher."""

    def post(self, url: str, payload: dict[str, object]) -> object:
        """Send ``payload`` and return the decoded JSON response."""
        ...

    def close(self) -> None:
        """Release transport resources."""
        ...


def build_url(host: str, command: str) -> str:
    """Build the endpoint URL for one command.

    :param host: ``host[:port]`` of the RPC server.
    :param command: Command name.
    :returns: Absolute URL.
    """
    return f"http://{host}/{command}"


class HttpTransport:
    """``httpx``-backed transport posting JSON bodies synchronously."""

    _client: httpx.Client
    _owns_client: bool

    def __init__(
        self,
        client: httpx.Client | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the transport.

        :param client: Optional preconfigured client; not closed by ``close()``.
        :param timeout: Request timeout in seconds; ``None`` waits indefinitely.
        :param transport: Optional ``httpx`` transport for a newly created client.
        """
        if client is not None:
            self._client = client
            self._owns_client = False
            return
        self._client = httpx.Client(timeout=timeout, transport=transport)
        self._owns_client = True

    def post(self, url: str, payload: dict[str, object]) -> object:
        """POST ``payload`` as JSON and decode the JSON response.

        :param url: Endpoint URL.
        :param payload: JSON-compatible request body.
        :returns: Decoded response body.
        :raises RpcTransportError: If the request fails or the status is not 200.
        :raises RpcProtocolError: If the response body is not valid JSON.
        """
        body: str = json.dumps(payload)
        try:
            response: httpx.Response = self._client.post(
                url,
                content=body.encode("utf-8"),
                headers={"Content-Type": CONTENT_TYPE},
            )
        except httpx.HTTPError as exc:
            raise RpcTransportError(None, f"Request to {url} failed: {exc}") from exc

        if response.status_code != 200:
            logger.debug("POST %s returned status %d", url, response.status_code)
            raise RpcTransportError(response.status_code, response.text)

        try:
            return response.json()
        except ValueError as exc:
            raise RpcProtocolError(f"Response from {url} is not valid JSON") from exc

    def close(self) -> None:
        """Close the underlying client when this transport created it."""
        if self._owns_client is True:
            self._client.close()
