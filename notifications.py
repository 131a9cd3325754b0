# betsync/notifications.py
"""
Per-session notification poller.

UNINITIALIZED -> BASELINE_SCAN -> STEADY_POLLING

The baseline scan seeds the set of open bets involving the address and
emits nothing. Each steady cycle then looks only at blocks after the
cursor: Resolved events produce a win/loss notification, and every tracked
bet is re-read to detect "opponent joined" and "vote needed".

Every notification is guarded by a NotificationKey that lives for the whole
session, so provider overlap or repeated polling never alerts twice.
Cycles never overlap: a tick that fires while one is running is skipped.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple

from config import BASELINE_WINDOW_BLOCKS, POLL_INTERVAL
from chain.abi import VARIANT_SPECS, address_topic, event_abi, event_topic
from chain.bet_state import BetStateFetcher
from chain.discovery import BetDiscoveryScanner
from chain.errors import DecodeError, FetchError, ScanFailed
from chain.log_reader import ChainLogReader, decode_all
from chain.models import BetSnapshot, RawPhase, Variant, same_address
from lifecycle import resolve

logger = logging.getLogger(__name__)

BetKey = Tuple[Variant, int]

_NOUN = {Variant.CHALLENGE: "Challenge", Variant.OFFER: "Offer"}


class EngineState(str, Enum):
    UNINITIALIZED = "uninitialized"
    BASELINE_SCAN = "baseline_scan"
    STEADY_POLLING = "steady_polling"


class NotificationKind(str, Enum):
    RESOLVED = "resolved"
    VOTE_NUDGE = "vote_nudge"
    TAKEN = "taken"


@dataclass(frozen=True)
class NotificationKey:
    variant: Variant
    bet_id: int
    kind: NotificationKind

    def __str__(self) -> str:
        return f"{self.variant.value}-{self.bet_id}-{self.kind.value}"


@dataclass(frozen=True)
class Notification:
    key: NotificationKey
    title: str
    message: str
    won: Optional[bool] = None
    created: float = 0.0

    def to_dict(self):
        return {
            "key": str(self.key),
            "variant": self.key.variant.value,
            "bet_id": self.key.bet_id,
            "kind": self.key.kind.value,
            "title": self.title,
            "message": self.message,
            "won": self.won,
            "created": self.created,
        }


@dataclass
class ScanCursor:
    last_scanned_block: int = 0     # 0: never scanned
    known_events: Set[NotificationKey] = field(default_factory=set)
    tracked_open_bets: Dict[BetKey, RawPhase] = field(default_factory=dict)


_OPEN_PHASES = (RawPhase.OPEN, RawPhase.ACTIVE)


class NotificationEngine:
    def __init__(
        self,
        address: str,
        network: str,
        transport,
        poll_interval: float = POLL_INTERVAL,
        baseline_window: int = BASELINE_WINDOW_BLOCKS,
        clock: Callable[[], float] = time.time,
    ):
        self.address = address
        self.network = network
        self.transport = transport
        self.poll_interval = poll_interval
        self.clock = clock
        self.reader = ChainLogReader(transport)
        self.fetcher = BetStateFetcher(transport, network)
        self.scanner = BetDiscoveryScanner(self.reader, self.fetcher, window=baseline_window)

        self.state = EngineState.UNINITIALIZED
        self.cursor = ScanCursor()
        self.notifications: List[Notification] = []
        self.unread = 0
        self._subscribers: List[Callable[[Notification], None]] = []
        self._token = 0
        self._cycle: Optional[asyncio.Task] = None
        self._ticker: Optional[asyncio.Task] = None

    # ------------------------------------------------------------
    # Session control
    # ------------------------------------------------------------

    def subscribe(self, callback: Callable[[Notification], None]) -> Callable[[], None]:
        self._subscribers.append(callback)
        return lambda: self._subscribers.remove(callback)

    def reset(self):
        """Back to UNINITIALIZED; results of any in-flight cycle are discarded."""
        self._token += 1
        self.state = EngineState.UNINITIALIZED
        self.cursor = ScanCursor()
        self.notifications = []
        self.unread = 0

    def clear(self):
        self.unread = 0

    @property
    def running(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    def start(self):
        if not self.running:
            self._ticker = asyncio.create_task(self._tick_loop())
            logger.info(
                "Notification polling started for %s on %s (every %ss)",
                self.address, self.network, self.poll_interval,
            )

    async def stop(self):
        self._token += 1
        for task in (self._ticker, self._cycle):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._ticker = None
        self._cycle = None
        logger.info("Notification polling stopped for %s on %s", self.address, self.network)

    async def _tick_loop(self):
        while True:
            self.tick()
            await asyncio.sleep(self.poll_interval)

    def tick(self) -> bool:
        """Start a cycle unless one is still running. Returns False if skipped."""
        if self._cycle is not None and not self._cycle.done():
            logger.debug("Previous cycle still running, skipping tick")
            return False
        self._cycle = asyncio.create_task(self.poll_once())
        return True

    # ------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------

    async def poll_once(self) -> List[Notification]:
        token = self._token
        try:
            if self.state == EngineState.UNINITIALIZED:
                await self._baseline(token)
                return []
            if self.state == EngineState.STEADY_POLLING:
                return await self._steady(token)
            return []
        except Exception:
            logger.exception("Notification cycle failed for %s", self.address)
            return []

    def _stale(self, token: int) -> bool:
        return token != self._token

    async def _baseline(self, token: int):
        self.state = EngineState.BASELINE_SCAN
        try:
            result = await self.scanner.scan(self.address, resolutions=False)
        except ScanFailed as e:
            logger.warning("Baseline scan failed, will retry next tick: %s", e)
            if not self._stale(token):
                self.state = EngineState.UNINITIALIZED
            return
        except Exception:
            if not self._stale(token):
                self.state = EngineState.UNINITIALIZED
            raise
        if self._stale(token):
            logger.debug("Discarding baseline scan from an old session")
            return

        for bet in result.bets:
            if bet.snapshot.phase_raw in _OPEN_PHASES:
                self.cursor.tracked_open_bets[bet.snapshot.key] = bet.snapshot.phase_raw
        self.cursor.last_scanned_block = result.head_block
        self.state = EngineState.STEADY_POLLING
        logger.info(
            "Baseline for %s: tracking %d open bets from block %d",
            self.address, len(self.cursor.tracked_open_bets), result.head_block,
        )

    async def _steady(self, token: int) -> List[Notification]:
        try:
            head = await self.transport.get_block_number()
        except FetchError as e:
            logger.warning("Could not read chain head: %s", e)
            return []
        if self._stale(token):
            return []

        last = self.cursor.last_scanned_block
        if head <= last:
            return []
        from_block, to_block = last + 1, head

        emitted: List[Notification] = []
        complete = True
        for variant in self.fetcher.variants:
            ok = await self._scan_range(variant, from_block, to_block, token, emitted)
            complete = complete and ok
            if self._stale(token):
                return []

        for key in list(self.cursor.tracked_open_bets):
            await self._check_tracked(key, token, emitted)
            if self._stale(token):
                return []

        if complete:
            self.cursor.last_scanned_block = to_block
        else:
            logger.info("Blocks %d..%d incomplete, rescanning next cycle", from_block, to_block)
        return emitted

    async def _scan_range(self, variant, from_block, to_block, token, emitted) -> bool:
        spec = VARIANT_SPECS[variant]
        contract = self.fetcher.contract_address(variant)
        resolved = event_abi(spec.abi, spec.resolved_event)
        opened = event_abi(spec.abi, spec.opened_event)

        resolved_scan = await self.reader.fetch_logs(
            contract, [event_topic(resolved)], from_block, to_block
        )
        opened_scan = await self.reader.fetch_logs(
            contract, [event_topic(opened), None, address_topic(self.address)],
            from_block, to_block,
        )
        if self._stale(token):
            return False

        for event in decode_all(resolved, resolved_scan):
            bet_id = int(event.args[resolved["inputs"][0]["name"]])
            key = NotificationKey(variant, bet_id, NotificationKind.RESOLVED)
            if key in self.cursor.known_events:
                continue
            if (variant, bet_id) not in self.cursor.tracked_open_bets:
                snapshot = await self._read(variant, bet_id)
                if self._stale(token) or snapshot is None or not snapshot.involves(self.address):
                    continue
            won = same_address(str(event.args["winner"]), self.address)
            noun = _NOUN[variant]
            self._emit(emitted, key, won=won,
                       title="You won!" if won else f"{noun} resolved",
                       message=f"{noun} #{bet_id} has been resolved. "
                               + ("Payout sent to your wallet." if won else "Better luck next time."))
            self.cursor.tracked_open_bets.pop((variant, bet_id), None)

        # Bets the address opened since the last cycle
        for event in decode_all(opened, opened_scan):
            bet_id = int(event.args[opened["inputs"][0]["name"]])
            if NotificationKey(variant, bet_id, NotificationKind.RESOLVED) in self.cursor.known_events:
                continue
            self.cursor.tracked_open_bets.setdefault((variant, bet_id), RawPhase.OPEN)

        return resolved_scan.complete and opened_scan.complete

    async def _check_tracked(self, key: BetKey, token: int, emitted):
        variant, bet_id = key
        snapshot = await self._read(variant, bet_id)
        if snapshot is None or self._stale(token):
            return
        previous = self.cursor.tracked_open_bets.get(key)
        if previous is None:
            return
        noun = _NOUN[variant]

        if previous == RawPhase.OPEN and snapshot.phase_raw == RawPhase.ACTIVE:
            verb = "took your offer" if variant == Variant.OFFER else "joined your challenge"
            self._emit(emitted, NotificationKey(variant, bet_id, NotificationKind.TAKEN),
                       title="Opponent joined!",
                       message=f"Someone {verb} #{bet_id}. Time to vote on the outcome.")

        if resolve(snapshot, self.address, self.clock()).nudge:
            self._emit(emitted, NotificationKey(variant, bet_id, NotificationKind.VOTE_NUDGE),
                       title="Vote needed",
                       message=f"Your opponent voted on {noun} #{bet_id}. "
                               "Submit your vote to resolve the bet.")

        if snapshot.phase_raw in _OPEN_PHASES:
            self.cursor.tracked_open_bets[key] = snapshot.phase_raw
        else:
            self.cursor.tracked_open_bets.pop(key, None)

    async def _read(self, variant: Variant, bet_id: int) -> Optional[BetSnapshot]:
        try:
            return await self.fetcher.fetch_snapshot(variant, bet_id)
        except (FetchError, DecodeError) as e:
            logger.warning("Skipping %s #%d this cycle: %s", variant.value, bet_id, e)
            return None

    def _emit(self, emitted, key: NotificationKey, title: str, message: str,
              won: Optional[bool] = None) -> Optional[Notification]:
        if key in self.cursor.known_events:
            return None
        self.cursor.known_events.add(key)
        note = Notification(key=key, title=title, message=message, won=won, created=self.clock())
        self.notifications.append(note)
        self.unread += 1
        emitted.append(note)
        logger.info("Notification %s: %s", key, title)
        for callback in list(self._subscribers):
            try:
                callback(note)
            except Exception:
                logger.exception("Notification subscriber failed")
        return note
