# betsync/session.py
"""
Wallet session management.

Wallet callbacks (connect, account changed, chain changed, disconnect) are
fed in as WalletEvents. Each (address, network) pair gets its own
NotificationEngine; switching either tears the old one down before the new
one starts, so no results from the old session are ever applied.
Events are handled one at a time, in arrival order.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from config import POLL_INTERVAL, get_network
from chain.transport import make_transport
from notifications import NotificationEngine

logger = logging.getLogger(__name__)


class WalletEventKind(str, Enum):
    CONNECTED = "connected"
    ACCOUNTS_CHANGED = "accounts_changed"
    CHAIN_CHANGED = "chain_changed"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class WalletEvent:
    kind: WalletEventKind
    address: Optional[str] = None
    network: Optional[str] = None


class SessionManager:
    def __init__(
        self,
        transport_factory: Callable[[str], object] = make_transport,
        poll_interval: float = POLL_INTERVAL,
        autostart: bool = True,
    ):
        self.transport_factory = transport_factory
        self.poll_interval = poll_interval
        self.autostart = autostart
        self.engine: Optional[NotificationEngine] = None
        self._lock = asyncio.Lock()

    @property
    def key(self):
        if self.engine is None:
            return None
        return (self.engine.address.lower(), self.engine.network)

    async def handle(self, event: WalletEvent) -> Optional[NotificationEngine]:
        async with self._lock:
            return await self._apply(event)

    async def _apply(self, event: WalletEvent) -> Optional[NotificationEngine]:
        if event.kind == WalletEventKind.DISCONNECTED:
            await self._teardown()
            return None

        address = event.address or (self.engine.address if self.engine else None)
        network = event.network or (self.engine.network if self.engine else None)
        if not address or not network:
            raise ValueError(f"{event.kind.value} needs an address and a network")
        get_network(network)

        if self.key == (address.lower(), network):
            return self.engine

        await self._teardown()
        self.engine = NotificationEngine(
            address=address,
            network=network,
            transport=self.transport_factory(network),
            poll_interval=self.poll_interval,
        )
        logger.info("Session started for %s on %s", address, network)
        if self.autostart:
            self.engine.start()
        return self.engine

    async def _teardown(self):
        if self.engine is None:
            return
        engine, self.engine = self.engine, None
        engine.reset()
        await engine.stop()
        logger.info("Session ended for %s on %s", engine.address, engine.network)

    async def close(self):
        async with self._lock:
            await self._teardown()
