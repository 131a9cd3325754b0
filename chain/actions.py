# betsync/chain/actions.py
"""
Contract writes: open, join/take, vote, resolve/payout and refund.

Pattern: build tx -> (optional) simulate for a gas quote -> signer submits
-> wait for receipt -> re-read the bet so callers see on-chain truth rather
than an optimistic local update. Failures surface as ActionFailed and are
never retried automatically.
"""
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from eth_abi import encode as abi_encode
from eth_account import Account
from web3 import Web3

from config import RECEIPT_TIMEOUT
from lifecycle import ActionKind
from .abi import VARIANT_SPECS, event_abi, function_abi, function_selector
from .bet_state import BetStateFetcher
from .errors import ActionFailed, FetchError
from .log_reader import decode_log
from .models import BetSnapshot, DecodedEvent, Variant, same_address
from .retry import REFRESH_RETRY, RetryPolicy
from .transport import to_raw_log

logger = logging.getLogger(__name__)

BPS = 10_000
MIN_ODDS_BPS = 500
MAX_ODDS_BPS = 9_500

MIN_JOIN_WINDOW = 5 * 60            # seconds
MIN_RESOLVE_WINDOW = 30 * 60
MAX_WINDOW = 30 * 24 * 60 * 60


def _ceil_div(n: int, d: int) -> int:
    return -(-n // d)


def compute_taker_stake(creator_stake_wei: int, creator_side_yes: bool, p_bps: int) -> int:
    """Stake the taker matches for an Offer priced at ``p_bps`` implied YES probability.

    Rounded up so the taker never underpays the contract's own check.
    """
    if not MIN_ODDS_BPS <= p_bps <= MAX_ODDS_BPS:
        raise ValueError(f"Odds out of range: {p_bps} bps (allowed {MIN_ODDS_BPS}-{MAX_ODDS_BPS})")
    if creator_stake_wei <= 0:
        raise ValueError("Invalid stake")
    if creator_side_yes:
        return _ceil_div(creator_stake_wei * p_bps, BPS - p_bps)
    return _ceil_div(creator_stake_wei * (BPS - p_bps), p_bps)


def check_windows(join_window: int, resolve_window: int):
    if not MIN_JOIN_WINDOW <= join_window <= MAX_WINDOW:
        raise ValueError(f"Join window must be {MIN_JOIN_WINDOW}-{MAX_WINDOW} seconds")
    if not MIN_RESOLVE_WINDOW <= resolve_window <= MAX_WINDOW:
        raise ValueError(f"Resolve window must be {MIN_RESOLVE_WINDOW}-{MAX_WINDOW} seconds")
    if resolve_window <= join_window:
        raise ValueError("Resolve deadline must be after join deadline")


@dataclass(frozen=True)
class BetAction:
    kind: ActionKind
    variant: Variant
    bet_id: Optional[int]           # None until an opened bet is mined
    side_a: Optional[bool] = None   # vote: challenger won / YES
    value_wei: int = 0
    open_args: Tuple[Any, ...] = ()
    counterparty_stake: int = 0     # open: what the joiner will have to put in

    @property
    def key(self) -> Tuple[Variant, Optional[int]]:
        return (self.variant, self.bet_id)

    @classmethod
    def open_challenge(cls, stake_wei: int, fee_bps: int, join_window: int,
                       resolve_window: int) -> "BetAction":
        if stake_wei <= 0:
            raise ValueError("Invalid stake")
        check_windows(join_window, resolve_window)
        return cls(
            ActionKind.OPEN, Variant.CHALLENGE, None,
            value_wei=stake_wei,
            open_args=(stake_wei, fee_bps, join_window, resolve_window),
            counterparty_stake=stake_wei,
        )

    @classmethod
    def open_offer(cls, creator_stake_wei: int, creator_side_yes: bool, p_bps: int,
                   join_window: int, resolve_window: int) -> "BetAction":
        taker_stake = compute_taker_stake(creator_stake_wei, creator_side_yes, p_bps)
        check_windows(join_window, resolve_window)
        return cls(
            ActionKind.OPEN, Variant.OFFER, None,
            value_wei=creator_stake_wei,
            open_args=(bool(creator_side_yes), p_bps, join_window, resolve_window),
            counterparty_stake=taker_stake,
        )

    @classmethod
    def join(cls, snapshot: BetSnapshot) -> "BetAction":
        return cls(ActionKind.JOIN, snapshot.variant, snapshot.bet_id,
                   value_wei=snapshot.counterparty_stake)

    @classmethod
    def vote(cls, snapshot: BetSnapshot, side_a: bool) -> "BetAction":
        return cls(ActionKind.VOTE, snapshot.variant, snapshot.bet_id, side_a=side_a)

    @classmethod
    def vote_i_won(cls, snapshot: BetSnapshot, viewer: str, i_won: bool) -> "BetAction":
        """Challenge vote from the viewer's side: "I won" means challengerWon only for the creator."""
        role = snapshot.role_of(viewer)
        if role is None:
            raise ValueError(f"{viewer} is not a party to {snapshot.variant.value} #{snapshot.bet_id}")
        return cls.vote(snapshot, i_won if role == "creator" else not i_won)

    @classmethod
    def resolve(cls, snapshot: BetSnapshot) -> "BetAction":
        return cls(ActionKind.RESOLVE, snapshot.variant, snapshot.bet_id)

    @classmethod
    def refund(cls, snapshot: BetSnapshot) -> "BetAction":
        return cls(ActionKind.REFUND, snapshot.variant, snapshot.bet_id)

    def method(self) -> Tuple[str, list]:
        spec = VARIANT_SPECS[self.variant]
        if self.kind == ActionKind.OPEN:
            return spec.open_method, list(self.open_args)
        if self.kind == ActionKind.JOIN:
            return spec.join_method, [self.bet_id]
        if self.kind == ActionKind.VOTE:
            if self.side_a is None:
                raise ValueError("vote needs a side")
            return spec.vote_method, [self.bet_id, bool(self.side_a)]
        if self.kind == ActionKind.RESOLVE:
            return spec.resolve_method, [self.bet_id]
        return spec.refund_method, [self.bet_id]


@dataclass(frozen=True)
class GasQuote:
    gas: int
    gas_price: int

    @property
    def cost_wei(self) -> int:
        return self.gas * self.gas_price


@dataclass
class TransactionHandle:
    hash: str
    wait: Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class ActionOutcome:
    action: BetAction
    tx_hash: str
    receipt: Any
    snapshot: Optional[BetSnapshot]


class PendingAction:
    def __init__(self, dispatcher: "ActionDispatcher", action: BetAction, handle: TransactionHandle):
        self.dispatcher = dispatcher
        self.action = action
        self.handle = handle

    @property
    def hash(self) -> str:
        return self.handle.hash

    async def confirm(self) -> ActionOutcome:
        return await self.dispatcher.confirm(self)


def encode_call(abi, method: str, args) -> str:
    fn = function_abi(abi, method)
    types = [i["type"] for i in fn["inputs"]]
    return Web3.to_hex(function_selector(fn) + abi_encode(types, list(args)))


class ActionDispatcher:
    def __init__(self, transport, network: str, refresh_policy: RetryPolicy = REFRESH_RETRY):
        self.transport = transport
        self.fetcher = BetStateFetcher(transport, network)
        self.refresh_policy = refresh_policy
        self.in_flight: Dict[Tuple[Variant, Optional[int]], str] = {}

    def build_transaction(self, action: BetAction, sender: Optional[str] = None) -> Dict[str, Any]:
        address = self.fetcher.contract_address(action.variant)
        if not address:
            raise ActionFailed(f"No {action.variant.value} contract on {self.fetcher.network}")
        method, args = action.method()
        tx = {
            "to": Web3.to_checksum_address(address),
            "data": encode_call(VARIANT_SPECS[action.variant].abi, method, args),
            "value": int(action.value_wei),
        }
        if sender:
            tx["from"] = Web3.to_checksum_address(sender)
        return tx

    async def estimate(self, action: BetAction, sender: str) -> GasQuote:
        """Gas quote from a read-only simulation of the same call."""
        tx = self.build_transaction(action, sender)
        try:
            gas = await self.transport.estimate_gas(tx)
            fees = await self.transport.get_fee_data()
        except FetchError as e:
            raise ActionFailed(f"Simulation failed: {e}") from e
        return GasQuote(gas=gas, gas_price=int(fees.get("gas_price") or 0))

    def pending(self, variant: Variant, bet_id: Optional[int]) -> Optional[str]:
        """Hash of the in-flight transaction for a bet; ``bet_id=None`` for a bet being opened."""
        return self.in_flight.get((variant, bet_id))

    async def dispatch(self, action: BetAction, signer) -> PendingAction:
        in_flight = self.pending(action.variant, action.bet_id)
        if in_flight:
            raise ActionFailed(f"A transaction for this bet is still pending: {in_flight}")
        tx = self.build_transaction(action, signer.address)
        try:
            handle = await signer.send_transaction(tx)
        except ActionFailed:
            raise
        except Exception as e:
            raise ActionFailed(str(e) or type(e).__name__) from e
        self.in_flight[action.key] = handle.hash
        logger.info("%s %s #%s submitted: %s", action.kind.value, action.variant.value,
                    action.bet_id if action.bet_id is not None else "new", handle.hash)
        return PendingAction(self, action, handle)

    async def confirm(self, pending: PendingAction) -> ActionOutcome:
        action = pending.action
        try:
            receipt = await pending.handle.wait()
        except Exception as e:
            raise ActionFailed(str(e) or type(e).__name__) from e
        finally:
            self.in_flight.pop(action.key, None)

        if int(receipt.get("status", 1)) == 0:
            raise ActionFailed(f"Transaction {pending.hash} reverted")

        if action.kind == ActionKind.OPEN:
            bet_id = await self.opened_bet_id(action.variant, receipt)
            if bet_id is None:
                logger.warning("Opened %s in %s but could not read its id",
                               action.variant.value, pending.hash)
                return ActionOutcome(action=action, tx_hash=pending.hash, receipt=receipt, snapshot=None)
            action = dataclasses.replace(action, bet_id=bet_id)

        try:
            snapshot = await self.refresh_policy.run(
                lambda: self.fetcher.fetch_snapshot(action.variant, action.bet_id)
            )
        except FetchError as e:
            logger.warning("Refresh after %s failed: %s", pending.hash, e)
            snapshot = None
        return ActionOutcome(action=action, tx_hash=pending.hash, receipt=receipt, snapshot=snapshot)

    async def opened_bet_id(self, variant: Variant, receipt) -> Optional[int]:
        """Id from the Opened event in ``receipt``, else the contract's next id minus one."""
        spec = VARIANT_SPECS[variant]
        contract = self.fetcher.contract_address(variant)
        opened = event_abi(spec.abi, spec.opened_event)
        for entry in receipt.get("logs") or []:
            try:
                log = to_raw_log(entry)
            except (KeyError, TypeError, ValueError):
                continue
            if not same_address(log.address, contract):
                continue
            event = decode_log(opened, log)
            if isinstance(event, DecodedEvent):
                return int(event.args[opened["inputs"][0]["name"]])

        if not spec.next_id_method:
            return None
        try:
            (next_id,) = await self.refresh_policy.run(
                lambda: self.transport.call(contract, spec.abi, spec.next_id_method, [])
            )
        except FetchError as e:
            logger.warning("%s read failed: %s", spec.next_id_method, e)
            return None
        return int(next_id) - 1

    async def execute(self, action: BetAction, signer) -> ActionOutcome:
        pending = await self.dispatch(action, signer)
        return await pending.confirm()

class LocalAccountSigner:
    """Signs with a local key. For scripts and tests; the browser wallet is the usual signer."""

    def __init__(self, private_key: str, w3, receipt_timeout: int = RECEIPT_TIMEOUT):
        self.account = Account.from_key(private_key)
        self.w3 = w3
        self.receipt_timeout = receipt_timeout

    @property
    def address(self) -> str:
        return self.account.address

    async def send_transaction(self, tx: Dict[str, Any]) -> TransactionHandle:
        tx = dict(tx)
        tx.pop("gasPrice", None)

        try:
            block = await self.w3.eth.get_block("latest")
            priority = (await self.w3.eth.max_priority_fee) * 150 // 100
            tx["type"] = 2
            tx["maxFeePerGas"] = block["baseFeePerGas"] * 2 + priority
            tx["maxPriorityFeePerGas"] = priority
        except Exception:
            tx.pop("type", None)
            tx["gasPrice"] = (await self.w3.eth.gas_price) * 120 // 100

        tx["nonce"] = await self.w3.eth.get_transaction_count(self.account.address, "pending")
        tx["chainId"] = await self.w3.eth.chain_id

        if "gas" not in tx:
            try:
                tx["gas"] = await self.w3.eth.estimate_gas(tx)
            except Exception as e:
                raise ActionFailed(f"Transaction would fail: {e}") from e

        signed = self.account.sign_transaction(tx)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)

        async def wait():
            return await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)

        return TransactionHandle(hash=Web3.to_hex(tx_hash), wait=wait)
