# betsync/chain/discovery.py
"""
Discovery scan: find every bet an address created or joined.

Three passes per variant over a bounded block window:
  Pass 1: Opened events where the address is the indexed creator (topic 2)
  Pass 2: all Opened events; read each unknown bet and keep it if the
          address is its counterparty (joins emit no indexed event)
  Pass 3: Resolved events; attach winner/payout to bets already found

The open-bets list reuses pass 2 without the address filter.

Events are only discovery hints. Phase and votes always come from the live
read. Bets older than the window are not found.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from config import DISCOVERY_WINDOW_BLOCKS
from lifecycle import JOIN, resolve
from .abi import VARIANT_SPECS, address_topic, event_abi, event_topic
from .bet_state import BetStateFetcher
from .errors import DecodeError, FetchError, ScanFailed
from .log_reader import ChainLogReader, decode_all
from .models import BetSnapshot, DecodedEvent, Variant, same_address

logger = logging.getLogger(__name__)

_NOUN = {Variant.CHALLENGE: "Challenge", Variant.OFFER: "Offer"}
_JOIN_VERB = {Variant.CHALLENGE: "Joined", Variant.OFFER: "Took"}


@dataclass(frozen=True)
class Resolution:
    winner: str
    payout: int
    transaction_hash: str
    block_number: int


@dataclass(frozen=True)
class DiscoveredBet:
    snapshot: BetSnapshot
    role: Optional[str]                 # "creator" | "counterparty"; None in the open-bets list
    resolution: Optional[Resolution] = None

    def won_by(self, address: str) -> Optional[bool]:
        if self.resolution is None:
            return None
        return same_address(self.resolution.winner, address)


@dataclass(frozen=True)
class ActivityEntry:
    transaction_hash: str
    action: str
    variant: Variant
    bet_id: int
    block_number: int


@dataclass
class DiscoveryResult:
    bets: List[DiscoveredBet] = field(default_factory=list)
    history: List[ActivityEntry] = field(default_factory=list)
    missed: List[Tuple[int, int]] = field(default_factory=list)
    head_block: int = 0
    loaded: bool = False

    @property
    def complete(self) -> bool:
        return self.loaded and not self.missed


class BetDiscoveryScanner:
    def __init__(
        self,
        reader: ChainLogReader,
        fetcher: BetStateFetcher,
        window: int = DISCOVERY_WINDOW_BLOCKS,
    ):
        self.reader = reader
        self.fetcher = fetcher
        self.window = window

    async def scan(self, address: str, resolutions: bool = True) -> DiscoveryResult:
        try:
            head = await self.reader.transport.get_block_number()
        except FetchError as e:
            raise ScanFailed(f"Could not scan blockchain events: {e}") from e

        from_block = max(0, head - self.window + 1)
        result = DiscoveryResult(head_block=head)

        partials = await asyncio.gather(*(
            self._scan_variant(v, address, from_block, head, resolutions)
            for v in self.fetcher.variants
        ))
        for bets, history, missed in partials:
            result.bets.extend(bets)
            result.history.extend(history)
            result.missed.extend(missed)

        result.bets.sort(key=lambda b: b.snapshot.created_at, reverse=True)
        result.history.sort(key=lambda h: h.block_number, reverse=True)
        result.loaded = True
        logger.info(
            "Discovery for %s: %d bets, %d history entries, %d missed chunks",
            address, len(result.bets), len(result.history), len(result.missed),
        )
        return result

    async def _read(self, variant: Variant, bet_id: int) -> Optional[BetSnapshot]:
        try:
            return await self.fetcher.fetch_snapshot(variant, bet_id)
        except (FetchError, DecodeError) as e:
            logger.warning("Skipping %s #%d: %s", variant.value, bet_id, e)
            return None

    async def scan_open(self, include_all: bool = False, now: Optional[float] = None) -> DiscoveryResult:
        """Every bet opened in the window, biggest pot first.

        Unless ``include_all``, only bets a stranger could still join are kept.
        """
        try:
            head = await self.reader.transport.get_block_number()
        except FetchError as e:
            raise ScanFailed(f"Could not scan blockchain events: {e}") from e

        from_block = max(0, head - self.window + 1)
        result = DiscoveryResult(head_block=head)
        partials = await asyncio.gather(*(
            self._each_opened(v, from_block, head) for v in self.fetcher.variants
        ))
        for pairs, missed in partials:
            result.missed.extend(missed)
            for _, snapshot in pairs:
                if include_all or JOIN in resolve(snapshot, None, now).valid_actions:
                    result.bets.append(DiscoveredBet(snapshot=snapshot, role=None))

        result.bets.sort(
            key=lambda b: (b.snapshot.creator_stake + b.snapshot.counterparty_stake,
                           b.snapshot.created_at),
            reverse=True,
        )
        result.loaded = True
        logger.info("Open bets scan: %d bets, %d missed chunks", len(result.bets), len(result.missed))
        return result

    async def _each_opened(
        self,
        variant: Variant,
        from_block: int,
        to_block: int,
        skip: Optional[Set[int]] = None,
    ) -> Tuple[List[Tuple[DecodedEvent, BetSnapshot]], List[Tuple[int, int]]]:
        """Read every bet with an Opened event in the range, once each, ids in ``skip`` excepted."""
        spec = VARIANT_SPECS[variant]
        opened = event_abi(spec.abi, spec.opened_event)
        scan = await self.reader.fetch_logs(
            self.fetcher.contract_address(variant), [event_topic(opened)], from_block, to_block
        )
        checked = set(skip or ())
        pairs = []
        for event in decode_all(opened, scan):
            bet_id = int(event.args[opened["inputs"][0]["name"]])
            if bet_id in checked:
                continue
            checked.add(bet_id)
            snapshot = await self._read(variant, bet_id)
            if snapshot is not None:
                pairs.append((event, snapshot))
        return pairs, scan.missed

    async def _scan_variant(
        self,
        variant: Variant,
        address: str,
        from_block: int,
        to_block: int,
        resolutions: bool,
    ):
        spec = VARIANT_SPECS[variant]
        contract = self.fetcher.contract_address(variant)
        opened = event_abi(spec.abi, spec.opened_event)
        opened_topic = event_topic(opened)
        noun = _NOUN[variant]

        found: Dict[int, DiscoveredBet] = {}
        history: List[ActivityEntry] = []
        missed: List[Tuple[int, int]] = []

        # Pass 1: created by address
        scan = await self.reader.fetch_logs(
            contract, [opened_topic, None, address_topic(address)], from_block, to_block
        )
        missed.extend(scan.missed)
        for event in decode_all(opened, scan):
            bet_id = int(event.args[opened["inputs"][0]["name"]])
            if bet_id in found:
                continue
            snapshot = await self._read(variant, bet_id)
            if snapshot is None:
                continue
            found[bet_id] = DiscoveredBet(snapshot=snapshot, role="creator")
            history.append(ActivityEntry(
                event.transaction_hash, f"Created {noun}", variant, bet_id, event.block_number
            ))

        # Pass 2: joined by address
        pairs, pass_missed = await self._each_opened(variant, from_block, to_block, skip=set(found))
        missed.extend(pass_missed)
        for event, snapshot in pairs:
            bet_id = snapshot.bet_id
            if not same_address(snapshot.counterparty, address):
                continue
            found[bet_id] = DiscoveredBet(snapshot=snapshot, role="counterparty")
            history.append(ActivityEntry(
                event.transaction_hash, f"{_JOIN_VERB[variant]} {noun}", variant, bet_id,
                event.block_number,
            ))

        # Pass 3: resolutions for bets already found
        if resolutions and found:
            resolved = event_abi(spec.abi, spec.resolved_event)
            scan = await self.reader.fetch_logs(
                contract, [event_topic(resolved)], from_block, to_block
            )
            missed.extend(scan.missed)
            for event in decode_all(resolved, scan):
                bet_id = int(event.args[resolved["inputs"][0]["name"]])
                entry = found.get(bet_id)
                if entry is None:
                    continue
                winner = str(event.args["winner"])
                if entry.resolution is None:
                    found[bet_id] = dataclasses.replace(entry, resolution=Resolution(
                        winner=winner,
                        payout=int(event.args["payoutWei"]),
                        transaction_hash=event.transaction_hash,
                        block_number=event.block_number,
                    ))
                action = f"Won {noun}" if same_address(winner, address) else f"{noun} Resolved"
                history.append(ActivityEntry(
                    event.transaction_hash, action, variant, bet_id, event.block_number
                ))

        return list(found.values()), history, missed
