#!/usr/bin/env python3
"""Relay worker selection.

Selection is pluggable: ``PinnedWorkerSelection`` always returns a worker
chosen up front, ``PreferredRelaysSelection`` pings a list of relay URLs and
picks the cheapest ready one. ``RelayFailureRegistry`` remembers relays that
recently failed so a retry goes to a different worker.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Collection

from .errors import RelayClientError
from .models import PingResponse, RelayData, RelayInfo, RelayWorkerInfo
from .utils.relay_http_client import RelayHttpClient

logger = logging.getLogger(__name__)


def fee_bounds_violation(relay_data: RelayData, ping: PingResponse) -> str | None:
    """
    Check the request's fee terms against a worker's advertised band.

    Returns:
        A description of the first violation, or None if the fees are acceptable
    """
    if relay_data.max_priority_fee_per_gas < ping.min_max_priority_fee_per_gas:
        return (
            f"maxPriorityFeePerGas {relay_data.max_priority_fee_per_gas} below relay minimum "
            f"{ping.min_max_priority_fee_per_gas}"
        )
    if relay_data.max_fee_per_gas < ping.min_max_fee_per_gas:
        return f"maxFeePerGas {relay_data.max_fee_per_gas} below relay minimum {ping.min_max_fee_per_gas}"
    if relay_data.max_fee_per_gas > ping.max_max_fee_per_gas:
        return f"maxFeePerGas {relay_data.max_fee_per_gas} above relay maximum {ping.max_max_fee_per_gas}"
    if relay_data.max_priority_fee_per_gas > relay_data.max_fee_per_gas:
        return (
            f"maxPriorityFeePerGas {relay_data.max_priority_fee_per_gas} exceeds "
            f"maxFeePerGas {relay_data.max_fee_per_gas}"
        )
    return None


class RelayFailureRegistry:
    """
    Bounded in-memory record of relay failures.

    Uses an OrderedDict for LRU-style eviction. A relay counts as failed for
    ``grace_seconds`` after its most recent failure.
    """

    def __init__(self, grace_seconds: int = 1800, max_entries: int = 1000) -> None:
        self.grace_seconds = grace_seconds
        self.max_entries = max_entries
        self._failures: OrderedDict[str, float] = OrderedDict()

    @staticmethod
    def _key(relay_url: str) -> str:
        return relay_url.rstrip("/").lower()

    def record_failure(self, relay_url: str, at: float | None = None) -> None:
        """Track a failure, evicting the oldest entries over the limit."""
        key = self._key(relay_url)
        if key in self._failures:
            del self._failures[key]
        self._failures[key] = time.time() if at is None else at

        while len(self._failures) > self.max_entries:
            self._failures.popitem(last=False)

        logger.info(f"Recorded relay failure for {relay_url}")

    def is_failed(self, relay_url: str, now: float | None = None) -> bool:
        failed_at = self._failures.get(self._key(relay_url))
        if failed_at is None:
            return False
        now = time.time() if now is None else now
        return now - failed_at < self.grace_seconds

    def get_stats(self) -> dict:
        return {"tracked_failures": len(self._failures), "max_entries": self.max_entries}


class WorkerSelection(ABC):
    """Policy choosing the relay worker for the next attempt."""

    @abstractmethod
    async def select(self, paymaster: str, excluded: Collection[str] = ()) -> RelayWorkerInfo | None:
        """
        Pick a worker.

        Args:
            paymaster: Paymaster the request will use
            excluded: Relay URLs that must not be returned

        Returns:
            The chosen worker, or None when no candidate is left
        """


class PinnedWorkerSelection(WorkerSelection):
    """Always returns a single pre-selected worker."""

    def __init__(self, worker_info: RelayWorkerInfo) -> None:
        self.worker_info = worker_info

    async def select(self, paymaster: str, excluded: Collection[str] = ()) -> RelayWorkerInfo | None:
        excluded_keys = {RelayFailureRegistry._key(url) for url in excluded}
        if RelayFailureRegistry._key(self.worker_info.relay_url) in excluded_keys:
            return None
        return self.worker_info


class PreferredRelaysSelection(WorkerSelection):
    """
    Pings preferred relays and returns the best ready one.

    Candidates that fail to answer, are not ready, serve another chain or hub,
    or failed recently are dropped. The rest are ordered by lowest
    ``minMaxPriorityFeePerGas``; ties keep the preferred order.
    """

    def __init__(
        self,
        relay_urls: Collection[str],
        http_client: RelayHttpClient,
        registry: RelayFailureRegistry | None = None,
        chain_id: int | None = None,
        relay_hub_address: str | None = None,
    ) -> None:
        self.relay_urls = list(relay_urls)
        self.http_client = http_client
        self.registry = registry or RelayFailureRegistry()
        self.chain_id = chain_id
        self.relay_hub_address = relay_hub_address

    async def _ping(self, relay_url: str, paymaster: str) -> RelayWorkerInfo | None:
        try:
            ping = await self.http_client.get_ping_response(relay_url, paymaster)
        except RelayClientError as e:
            logger.warning(f"Ping to {relay_url} failed: {e}")
            self.registry.record_failure(relay_url)
            return None

        if not ping.ready:
            logger.info(f"Relay {relay_url} is not ready")
            return None
        if self.chain_id is not None and ping.chain_id != self.chain_id:
            logger.warning(f"Relay {relay_url} serves chain {ping.chain_id}, expected {self.chain_id}")
            return None
        if self.relay_hub_address and ping.relay_hub_address.lower() != self.relay_hub_address.lower():
            logger.warning(f"Relay {relay_url} uses hub {ping.relay_hub_address}")
            return None

        return RelayWorkerInfo(
            ping_response=ping,
            relay_info=RelayInfo(relay_manager=ping.relay_manager_address, relay_url=relay_url),
        )

    async def select(self, paymaster: str, excluded: Collection[str] = ()) -> RelayWorkerInfo | None:
        excluded_keys = {RelayFailureRegistry._key(url) for url in excluded}
        candidates = [
            url for url in self.relay_urls
            if RelayFailureRegistry._key(url) not in excluded_keys and not self.registry.is_failed(url)
        ]
        if not candidates:
            logger.warning("No relay candidates left to ping")
            return None

        results = await asyncio.gather(*(self._ping(url, paymaster) for url in candidates))
        ready = [info for info in results if info is not None]
        if not ready:
            return None

        # sorted() is stable, so equal fees keep the preferred order
        best = sorted(ready, key=lambda info: info.ping_response.min_max_priority_fee_per_gas)[0]
        logger.info(f"Selected relay {best.relay_url} (worker {best.ping_response.relay_worker_address})")
        return best
