# betsync/chain/bet_state.py
"""
Read-only bet state: core + status view calls normalized into a BetSnapshot.
Used by discovery, the notification engine, lookup and post-action refresh.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Iterable, Optional, Union

from config import get_network
from .abi import VARIANT_SPECS
from .errors import DecodeError, FetchError, NotFound
from .models import ZERO_ADDRESS, BetSnapshot, RawPhase, Variant, Vote
from .retry import LOOKUP_RETRY, RetryPolicy

logger = logging.getLogger(__name__)


def _address(value) -> Optional[str]:
    value = str(value)
    if value.lower() == ZERO_ADDRESS:
        return None
    return value


def _phase(value) -> RawPhase:
    try:
        return RawPhase(int(value))
    except ValueError:
        raise DecodeError(f"unknown bet state {value!r}") from None


def challenge_snapshot(bet_id: int, core: tuple, status: tuple) -> BetSnapshot:
    try:
        challenger, participant, stake, fee_bps, join_deadline, resolve_deadline = core
        created_at, state, challenger_vote, participant_vote = status
    except ValueError as e:
        raise DecodeError(f"challenge #{bet_id}: {e}") from e
    return BetSnapshot(
        bet_id=bet_id,
        variant=Variant.CHALLENGE,
        creator=str(challenger),
        counterparty=_address(participant),
        creator_stake=int(stake),
        counterparty_stake=int(stake),
        join_deadline=int(join_deadline),
        resolve_deadline=int(resolve_deadline),
        created_at=int(created_at),
        phase_raw=_phase(state),
        creator_vote=Vote.from_raw(challenger_vote),
        counterparty_vote=Vote.from_raw(participant_vote),
        fee_bps=int(fee_bps),
    )


def offer_snapshot(bet_id: int, core: tuple, status: tuple) -> BetSnapshot:
    try:
        creator, taker, creator_side_yes, p_bps, creator_stake, taker_stake = core
        (join_deadline, resolve_deadline, created_at, state,
         creator_vote, taker_vote, paid) = status
    except ValueError as e:
        raise DecodeError(f"offer #{bet_id}: {e}") from e
    return BetSnapshot(
        bet_id=bet_id,
        variant=Variant.OFFER,
        creator=str(creator),
        counterparty=_address(taker),
        creator_stake=int(creator_stake),
        counterparty_stake=int(taker_stake),
        join_deadline=int(join_deadline),
        resolve_deadline=int(resolve_deadline),
        created_at=int(created_at),
        phase_raw=_phase(state),
        creator_vote=Vote.from_raw(creator_vote),
        counterparty_vote=Vote.from_raw(taker_vote),
        paid=bool(paid),
        creator_side_yes=bool(creator_side_yes),
        odds_bps=int(p_bps),
    )


_NORMALIZERS = {
    Variant.CHALLENGE: challenge_snapshot,
    Variant.OFFER: offer_snapshot,
}


class BetStateFetcher:
    def __init__(self, transport, network: str):
        self.transport = transport
        self.network = network
        self._net = get_network(network)

    def contract_address(self, variant: Variant) -> str:
        return self._net.get(VARIANT_SPECS[variant].contract_key) or ""

    @property
    def variants(self) -> list:
        """Variants that have a contract deployed on this network."""
        return [v for v in Variant if self.contract_address(v)]

    async def fetch_snapshot(
        self, variant: Variant, bet_id: int, transport=None
    ) -> Optional[BetSnapshot]:
        """Return the bet, or None when the creator slot is the zero address."""
        spec = VARIANT_SPECS[variant]
        address = self.contract_address(variant)
        if not address:
            raise FetchError(f"no {variant.value} contract on {self.network}")
        transport = transport or self.transport

        core, status = await asyncio.gather(
            transport.call(address, spec.abi, spec.core_method, [bet_id]),
            transport.call(address, spec.abi, spec.status_method, [bet_id]),
        )
        if not core or str(core[0]).lower() == ZERO_ADDRESS:
            return None
        return _NORMALIZERS[variant](bet_id, core, status)

    async def protocol_fee_bps(self, variant: Variant) -> int:
        address = self.contract_address(variant)
        if not address:
            raise FetchError(f"no {variant.value} contract on {self.network}")
        (fee,) = await self.transport.call(address, VARIANT_SPECS[variant].abi, "protocolFeeBps", [])
        return int(fee)

    async def fetch_all(
        self, bet_id: int, variants: Optional[Iterable[Variant]] = None
    ) -> Dict[Variant, Union[BetSnapshot, None, Exception]]:
        """Query each variant for ``bet_id``; one variant failing never hides the other."""
        variants = list(variants or self.variants)
        results = await asyncio.gather(
            *(self.fetch_snapshot(v, bet_id) for v in variants),
            return_exceptions=True,
        )
        out = {}
        for variant, result in zip(variants, results):
            if isinstance(result, (FetchError, DecodeError)):
                logger.warning("%s #%d read failed: %s", variant.value, bet_id, result)
            elif isinstance(result, BaseException):
                raise result
            out[variant] = result
        return out


def parse_bet_id(raw) -> int:
    text = str(raw).strip()
    if not text:
        raise ValueError("Enter a bet ID")
    if text.startswith("0x") and len(text) > 10:
        raise ValueError("Enter the numeric Bet ID (e.g. 3), not a transaction hash.")
    if not text.isdigit():
        raise ValueError(f"Invalid bet ID: {text!r}")
    return int(text)


def pick_latest(snapshots: Iterable[BetSnapshot]) -> BetSnapshot:
    # Ids are per-variant; the newer bet is the more likely one the user means.
    return max(snapshots, key=lambda s: (s.created_at, s.variant == Variant.OFFER))


async def lookup_bet(
    raw_id,
    network: str,
    transport_factory: Callable[[str], object],
    policy: RetryPolicy = LOOKUP_RETRY,
    variant: Optional[Variant] = None,
) -> BetSnapshot:
    """User-initiated single-bet lookup.

    Each attempt uses a fresh transport from ``transport_factory``. FetchError
    is retried per ``policy`` and then surfaced; NotFound is not retried.
    """
    bet_id = parse_bet_id(raw_id)

    async def attempt() -> BetSnapshot:
        fetcher = BetStateFetcher(transport_factory(network), network)
        results = await fetcher.fetch_all(bet_id, [variant] if variant else None)
        found = [r for r in results.values() if isinstance(r, BetSnapshot)]
        if found:
            return pick_latest(found)
        errors = [r for r in results.values() if isinstance(r, FetchError)]
        if errors:
            raise errors[0]
        raise NotFound(f"No bet found with ID #{bet_id}")

    return await policy.run(attempt)
