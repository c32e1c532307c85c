import json
import logging
from typing import Any

import httpx

from ..errors import RelayRejectedError, RelayTransportError
from ..models import PingResponse

logger = logging.getLogger(__name__)


class RelayHttpClient:
    """HTTP client for the GSN relay server API.

    Provides ``/getaddr`` pings and ``/relay`` submissions. Network problems
    and malformed responses surface as ``RelayTransportError``; an explicit
    refusal by the relay surfaces as ``RelayRejectedError``.
    """

    def __init__(self, timeout: float = 30.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        """Initialize the relay HTTP client.

        Args:
            timeout: Per-request timeout in seconds
            transport: Optional transport override (e.g. ``httpx.MockTransport``)
        """
        self.timeout: float = timeout
        self.transport: httpx.AsyncBaseTransport | None = transport

    @staticmethod
    def _url(relay_url: str, path: str) -> str:
        return relay_url.rstrip("/") + path

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        """Send a request to a relay server and decode the JSON body.

        Raises:
            RelayTransportError: On timeouts, connection errors, non-JSON or
                non-2xx responses without an error message
            RelayRejectedError: If the relay answered with an error message
        """
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                logger.debug(f"{method} {url}: {json.dumps(kwargs.get('json')) if 'json' in kwargs else kwargs.get('params')}")
                response: httpx.Response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise RelayTransportError(f"timeout talking to relay: {e}", relay_url=url) from e
        except httpx.TransportError as e:
            raise RelayTransportError(f"relay unreachable: {e}", relay_url=url) from e

        try:
            body: Any = response.json()
        except ValueError as e:
            raise RelayTransportError(
                f"malformed relay response (HTTP {response.status_code}): {response.text[:200]}",
                relay_url=url,
            ) from e

        if isinstance(body, dict) and body.get("error"):
            raise RelayRejectedError(f"Got error response from relay: {body['error']}", relay_url=url)

        if response.is_error:
            raise RelayTransportError(f"relay returned HTTP {response.status_code}", relay_url=url)

        return body

    async def get_ping_response(self, relay_url: str, paymaster: str | None = None) -> PingResponse:
        """Fetch a relay's capability snapshot.

        Args:
            relay_url: Base URL of the relay server
            paymaster: Paymaster the relay should report readiness for

        Returns:
            Parsed PingResponse

        Raises:
            RelayTransportError: If the relay is unreachable or the body is malformed
        """
        params = {"paymaster": paymaster} if paymaster else None
        body = await self._request("GET", self._url(relay_url, "/getaddr"), params=params)

        try:
            ping = PingResponse.from_dict(body)
        except (KeyError, ValueError, TypeError) as e:
            raise RelayTransportError(f"malformed ping response: {e}", relay_url=relay_url) from e

        logger.debug(f"Ping {relay_url}: worker={ping.relay_worker_address} ready={ping.ready}")
        return ping

    async def relay_transaction(self, relay_url: str, request: dict[str, Any]) -> str:
        """Submit a signed relay request.

        Args:
            relay_url: Base URL of the relay server
            request: ``{"relayRequest": ..., "metadata": ...}`` body

        Returns:
            The raw transaction signed by the relay worker (0x-prefixed hex)

        Raises:
            RelayTransportError: On network failure or a response without ``signedTx``
            RelayRejectedError: If the relay refused to relay
        """
        body = await self._request("POST", self._url(relay_url, "/relay"), json=request)

        match body:
            case {"signedTx": str(signed_tx)} if signed_tx:
                if body.get("nonceGapFilled"):
                    logger.debug(f"Relay filled nonce gap: {body['nonceGapFilled']}")
                return signed_tx
            case _:
                raise RelayTransportError("body.signedTx field missing.", relay_url=relay_url)
