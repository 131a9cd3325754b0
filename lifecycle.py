# betsync/lifecycle.py
"""
Pure mapping from a BetSnapshot (+ viewer + wall clock) to the bet's phase,
the actions the viewer may take right now, and whether they should be nudged
to vote. No I/O; deterministic for fixed inputs.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from chain.models import BetSnapshot, RawPhase, Variant, Vote


class Phase(str, Enum):
    AWAITING_COUNTERPARTY = "awaiting_counterparty"
    AWAITING_VOTES = "awaiting_votes"
    SETTLED = "settled"
    REFUNDED = "refunded"


class ActionKind(str, Enum):
    JOIN = "join"
    VOTE = "vote"
    RESOLVE = "resolve"
    REFUND = "refund"
    OPEN = "open"          # creating a bet; never a lifecycle action


class RefundReason(str, Enum):
    NO_COUNTERPARTY = "no counterparty"
    VOTE_CONFLICT = "vote conflict"
    DEADLINE_EXPIRED = "deadline expired"


@dataclass(frozen=True)
class Action:
    kind: ActionKind
    reason: Optional[RefundReason] = None

    def to_dict(self):
        return {"kind": self.kind.value, "reason": self.reason.value if self.reason else None}


JOIN = Action(ActionKind.JOIN)
VOTE = Action(ActionKind.VOTE)
RESOLVE = Action(ActionKind.RESOLVE)
REFUND_NO_COUNTERPARTY = Action(ActionKind.REFUND, RefundReason.NO_COUNTERPARTY)
REFUND_VOTE_CONFLICT = Action(ActionKind.REFUND, RefundReason.VOTE_CONFLICT)
REFUND_DEADLINE_EXPIRED = Action(ActionKind.REFUND, RefundReason.DEADLINE_EXPIRED)


@dataclass(frozen=True)
class LifecycleView:
    phase: Phase
    valid_actions: Tuple[Action, ...] = ()
    nudge: bool = False

    def to_dict(self):
        return {
            "phase": self.phase.value,
            "valid_actions": [a.to_dict() for a in self.valid_actions],
            "nudge": self.nudge,
        }


_PHASES = {
    RawPhase.OPEN: Phase.AWAITING_COUNTERPARTY,
    RawPhase.ACTIVE: Phase.AWAITING_VOTES,
    RawPhase.RESOLVED: Phase.SETTLED,
    RawPhase.REFUNDED: Phase.REFUNDED,
}

_PHASE_LABELS = {
    Variant.CHALLENGE: ("Open", "Active", "Resolved", "Refunded"),
    Variant.OFFER: ("Open", "Filled", "Resolved", "Refunded"),
}

_VOTE_LABELS = {
    Variant.CHALLENGE: {Vote.PENDING: "Pending", Vote.SIDE_A: "Creator won", Vote.SIDE_B: "Opponent won"},
    Variant.OFFER: {Vote.PENDING: "Pending", Vote.SIDE_A: "YES", Vote.SIDE_B: "NO"},
}


def phase_of(snapshot: BetSnapshot) -> Phase:
    return _PHASES[snapshot.phase_raw]


def phase_label(variant: Variant, phase_raw: RawPhase) -> str:
    return _PHASE_LABELS[variant][int(phase_raw)]


def vote_label(variant: Variant, vote: Vote) -> str:
    return _VOTE_LABELS[variant][vote]


def expired(deadline: int, now: float) -> bool:
    # 0 means the contract is not enforcing a deadline
    return deadline > 0 and now >= deadline


def own_votes(snapshot: BetSnapshot, viewer: Optional[str]) -> Optional[Tuple[Vote, Vote]]:
    """(viewer's vote, other party's vote), or None if the viewer is not a party."""
    role = snapshot.role_of(viewer)
    if role == "creator":
        return snapshot.creator_vote, snapshot.counterparty_vote
    if role == "counterparty":
        return snapshot.counterparty_vote, snapshot.creator_vote
    return None


def _awaiting_counterparty(snapshot, viewer, now) -> Tuple[Action, ...]:
    if snapshot.joined:
        return ()
    if not expired(snapshot.join_deadline, now):
        if snapshot.role_of(viewer) == "creator":
            return ()
        return (JOIN,)
    if snapshot.role_of(viewer) == "creator" and not snapshot.paid:
        return (REFUND_NO_COUNTERPARTY,)
    return ()


def _awaiting_votes(snapshot, viewer, now) -> Tuple[Action, ...]:
    votes = own_votes(snapshot, viewer)
    if votes is None:
        return ()
    mine, theirs = votes
    both_cast = mine != Vote.PENDING and theirs != Vote.PENDING

    if both_cast:
        if snapshot.paid:
            return ()
        if mine == theirs:
            return (RESOLVE,)
        return (REFUND_VOTE_CONFLICT,)

    if not expired(snapshot.resolve_deadline, now):
        return (VOTE,) if mine == Vote.PENDING else ()

    if mine == Vote.PENDING and theirs == Vote.PENDING:
        # Nobody voted before the deadline: no action exists for this state.
        return ()
    if snapshot.paid:
        return ()
    return (REFUND_DEADLINE_EXPIRED,)


def resolve(
    snapshot: BetSnapshot,
    viewer: Optional[str] = None,
    now: Optional[float] = None,
) -> LifecycleView:
    if now is None:
        now = time.time()
    phase = phase_of(snapshot)

    if phase == Phase.AWAITING_COUNTERPARTY:
        actions = _awaiting_counterparty(snapshot, viewer, now)
    elif phase == Phase.AWAITING_VOTES:
        actions = _awaiting_votes(snapshot, viewer, now)
    else:
        actions = ()

    nudge = False
    if phase == Phase.AWAITING_VOTES:
        votes = own_votes(snapshot, viewer)
        nudge = votes is not None and votes[0] == Vote.PENDING and votes[1] != Vote.PENDING

    return LifecycleView(phase=phase, valid_actions=actions, nudge=nudge)
