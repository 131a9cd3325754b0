# betsync/chain/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, Optional, Tuple

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class Variant(str, Enum):
    CHALLENGE = "challenge"
    OFFER = "offer"


class RawPhase(IntEnum):
    OPEN = 0
    ACTIVE = 1      # "Filled" for offers
    RESOLVED = 2
    REFUNDED = 3


class Vote(IntEnum):
    PENDING = 0
    SIDE_A = 1      # challenger won / YES
    SIDE_B = 2      # participant won / NO

    @classmethod
    def from_raw(cls, value: int) -> "Vote":
        # int8 on chain: 0 pending, 1 side A, anything else side B
        value = int(value)
        if value == 0:
            return cls.PENDING
        if value == 1:
            return cls.SIDE_A
        return cls.SIDE_B


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and a.lower() == b.lower()


@dataclass(frozen=True)
class BetSnapshot:
    """Point-in-time read of one bet. Never mutated; re-fetch for new state."""

    bet_id: int
    variant: Variant
    creator: str
    counterparty: Optional[str]
    creator_stake: int
    counterparty_stake: int
    join_deadline: int
    resolve_deadline: int
    created_at: int
    phase_raw: RawPhase
    creator_vote: Vote
    counterparty_vote: Vote
    paid: bool = False
    fee_bps: Optional[int] = None
    creator_side_yes: Optional[bool] = None
    odds_bps: Optional[int] = None

    @property
    def key(self) -> Tuple[Variant, int]:
        return (self.variant, self.bet_id)

    @property
    def joined(self) -> bool:
        return self.counterparty is not None

    def role_of(self, address: Optional[str]) -> Optional[str]:
        if same_address(address, self.creator):
            return "creator"
        if same_address(address, self.counterparty):
            return "counterparty"
        return None

    def involves(self, address: Optional[str]) -> bool:
        return self.role_of(address) is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.bet_id,
            "variant": self.variant.value,
            "creator": self.creator,
            "counterparty": self.counterparty,
            "creator_stake": str(self.creator_stake),
            "counterparty_stake": str(self.counterparty_stake),
            "join_deadline": self.join_deadline,
            "resolve_deadline": self.resolve_deadline,
            "created_at": self.created_at,
            "phase_raw": int(self.phase_raw),
            "creator_vote": int(self.creator_vote),
            "counterparty_vote": int(self.counterparty_vote),
            "paid": self.paid,
            "fee_bps": self.fee_bps,
            "creator_side_yes": self.creator_side_yes,
            "odds_bps": self.odds_bps,
        }


@dataclass(frozen=True)
class RawLog:
    address: str
    topics: Tuple[str, ...]
    data: bytes
    block_number: int
    transaction_hash: str = ""
    log_index: int = 0


@dataclass(frozen=True)
class DecodedEvent:
    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    block_number: int = 0
    transaction_hash: str = ""
    log_index: int = 0
