# betsync/chain/abi.py
"""
ABIs for the two escrow contract variants and helpers to derive event
topics and function selectors from them.

Both variants expose the same shape (open / join / vote / resolve / refund,
a "core" and a "status" view, an Opened and a Resolved event), so callers
look up method and event names through VARIANT_SPECS instead of branching.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from web3 import Web3

from .models import Variant


def _fn(name, inputs, outputs=(), mutability="nonpayable"):
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in outputs],
        "stateMutability": mutability,
    }


def _event(name, inputs):
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [
            {"name": n, "type": t, "indexed": indexed} for n, t, indexed in inputs
        ],
    }


CHALLENGE_ABI: List[Dict[str, Any]] = [
    _fn(
        "openChallenge",
        [("stakeWei", "uint256"), ("feeBps", "uint16"),
         ("joinWindowSeconds", "uint64"), ("resolveWindowSeconds", "uint64")],
        [("", "uint256")],
        "payable",
    ),
    _fn("joinChallenge", [("challengeId", "uint256")], mutability="payable"),
    _fn("submitOutcomeVote", [("challengeId", "uint256"), ("challengerWon", "bool")]),
    _fn("resolveChallenge", [("challengeId", "uint256")]),
    _fn("issueRefund", [("challengeId", "uint256")]),
    _fn(
        "getChallengeCore",
        [("challengeId", "uint256")],
        [("challenger", "address"), ("participant", "address"),
         ("stakeWei", "uint256"), ("feeBps", "uint16"),
         ("joinDeadline", "uint64"), ("resolveDeadline", "uint64")],
        "view",
    ),
    _fn(
        "getChallengeStatus",
        [("challengeId", "uint256")],
        [("createdAt", "uint64"), ("state", "uint8"),
         ("challengerVote", "int8"), ("participantVote", "int8")],
        "view",
    ),
    _fn("nextChallengeId", [], [("", "uint256")], "view"),
    _fn("protocolFeeBps", [], [("", "uint16")], "view"),
    _event(
        "ChallengeOpened",
        [("challengeId", "uint256", True), ("challenger", "address", True),
         ("stakeWei", "uint256", False), ("joinDeadline", "uint64", False),
         ("resolveDeadline", "uint64", False)],
    ),
    _event(
        "ChallengeResolved",
        [("challengeId", "uint256", False), ("winner", "address", False),
         ("payoutWei", "uint256", False)],
    ),
]

OFFER_ABI: List[Dict[str, Any]] = [
    _fn(
        "openOffer",
        [("creatorSideYes", "bool"), ("pBps", "uint16"),
         ("joinWindowSeconds", "uint64"), ("resolveWindowSeconds", "uint64")],
        [("", "uint256")],
        "payable",
    ),
    _fn("protocolFeeBps", [], [("", "uint16")], "view"),
    _fn("takeOffer", [("offerId", "uint256")], mutability="payable"),
    _fn("submitOfferVote", [("offerId", "uint256"), ("outcomeYes", "bool")]),
    _fn("resolveOffer", [("offerId", "uint256")]),
    _fn("refundOffer", [("offerId", "uint256")]),
    _fn(
        "getOfferCore",
        [("offerId", "uint256")],
        [("creator", "address"), ("taker", "address"),
         ("creatorSideYes", "bool"), ("pBps", "uint16"),
         ("creatorStakeWei", "uint256"), ("takerStakeWei", "uint256")],
        "view",
    ),
    _fn(
        "getOfferStatus",
        [("offerId", "uint256")],
        [("joinDeadline", "uint64"), ("resolveDeadline", "uint64"),
         ("createdAt", "uint64"), ("state", "uint8"),
         ("creatorVote", "int8"), ("takerVote", "int8"), ("paid", "bool")],
        "view",
    ),
    _event(
        "OfferOpened",
        [("offerId", "uint256", True), ("creator", "address", True),
         ("creatorSideYes", "bool", False), ("pBps", "uint16", False),
         ("creatorStakeWei", "uint256", False), ("takerStakeWei", "uint256", False),
         ("joinDeadline", "uint64", False), ("resolveDeadline", "uint64", False)],
    ),
    _event(
        "OfferResolved",
        [("offerId", "uint256", False), ("winner", "address", False),
         ("payoutWei", "uint256", False)],
    ),
]


@dataclass(frozen=True)
class VariantSpec:
    variant: Variant
    abi: List[Dict[str, Any]]
    contract_key: str       # key in config.NETWORKS[...]
    open_method: str
    core_method: str
    status_method: str
    join_method: str
    vote_method: str
    resolve_method: str
    refund_method: str
    opened_event: str
    resolved_event: str
    next_id_method: Optional[str] = None


VARIANT_SPECS: Dict[Variant, VariantSpec] = {
    Variant.CHALLENGE: VariantSpec(
        variant=Variant.CHALLENGE,
        abi=CHALLENGE_ABI,
        contract_key="challenge_contract",
        open_method="openChallenge",
        core_method="getChallengeCore",
        status_method="getChallengeStatus",
        join_method="joinChallenge",
        vote_method="submitOutcomeVote",
        resolve_method="resolveChallenge",
        refund_method="issueRefund",
        opened_event="ChallengeOpened",
        resolved_event="ChallengeResolved",
        next_id_method="nextChallengeId",
    ),
    Variant.OFFER: VariantSpec(
        variant=Variant.OFFER,
        abi=OFFER_ABI,
        contract_key="offer_contract",
        open_method="openOffer",
        core_method="getOfferCore",
        status_method="getOfferStatus",
        join_method="takeOffer",
        vote_method="submitOfferVote",
        resolve_method="resolveOffer",
        refund_method="refundOffer",
        opened_event="OfferOpened",
        resolved_event="OfferResolved",
    ),
}


def find_abi(abi: List[Dict[str, Any]], name: str, kind: str) -> Dict[str, Any]:
    for entry in abi:
        if entry.get("type") == kind and entry.get("name") == name:
            return entry
    raise KeyError(f"{kind} {name!r} not in ABI")


def event_abi(abi, name):
    return find_abi(abi, name, "event")


def function_abi(abi, name):
    return find_abi(abi, name, "function")


def signature(entry: Dict[str, Any]) -> str:
    """Canonical signature, e.g. ``ChallengeOpened(uint256,address,uint256,uint64,uint64)``."""
    types = ",".join(i["type"] for i in entry["inputs"])
    return f"{entry['name']}({types})"


def event_topic(entry: Dict[str, Any]) -> str:
    return Web3.to_hex(Web3.keccak(text=signature(entry)))


def function_selector(entry: Dict[str, Any]) -> bytes:
    return bytes(Web3.keccak(text=signature(entry)))[:4]


def address_topic(address: str) -> str:
    """Left-pad an address to a 32-byte topic, as used for indexed address args."""
    return "0x" + address.lower().replace("0x", "").rjust(64, "0")
