import asyncio

import pytest
from eth_abi import decode as abi_decode
from hexbytes import HexBytes
from web3 import Web3

from chain.abi import CHALLENGE_ABI, OFFER_ABI
from chain.actions import (
    ActionDispatcher,
    BetAction,
    LocalAccountSigner,
    TransactionHandle,
    check_windows,
    compute_taker_stake,
    encode_call,
)
from chain.errors import ActionFailed, FetchError
from chain.models import RawPhase, Variant, Vote
from chain.retry import RetryPolicy
from fakes import ALICE, BOB, CAROL, NETWORK, FakeChain, contract_for, opened_log, resolved_log
from lifecycle import ActionKind

FAST_REFRESH = RetryPolicy(attempts=2, delay=0)
TX_HASH = "0x" + "ee" * 32


class FakeSigner:
    """Mines instantly: applies ``on_mined`` to the chain when the receipt is awaited."""

    def __init__(self, address=ALICE, status=1, on_mined=None, reject=None):
        self.address = address
        self.status = status
        self.on_mined = on_mined
        self.reject = reject
        self.sent = []

    async def send_transaction(self, tx):
        if self.reject is not None:
            raise self.reject
        self.sent.append(tx)

        async def wait():
            if self.on_mined:
                self.on_mined()
            return {"status": self.status, "transactionHash": TX_HASH}

        return TransactionHandle(hash=TX_HASH, wait=wait)


def run(coro):
    return asyncio.run(coro)


def snapshot(chain, variant, bet_id):
    return run(ActionDispatcher(chain, NETWORK).fetcher.fetch_snapshot(variant, bet_id))


class TestCalldata:
    def test_selector_and_args(self):
        data = encode_call(CHALLENGE_ABI, "submitOutcomeVote", [7, True])
        selector = Web3.keccak(text="submitOutcomeVote(uint256,bool)")[:4]
        raw = Web3.to_bytes(hexstr=data)
        assert raw[:4] == selector
        assert abi_decode(["uint256", "bool"], raw[4:]) == (7, True)

    def test_methods_per_variant(self):
        chain = FakeChain()
        chain.add_bet(Variant.OFFER, 3, ALICE, stake=300, counter_stake=100)
        s = snapshot(chain, Variant.OFFER, 3)
        assert BetAction.join(s).method() == ("takeOffer", [3])
        assert BetAction.join(s).value_wei == 100
        assert BetAction.refund(s).method() == ("refundOffer", [3])
        assert BetAction.resolve(s).method() == ("resolveOffer", [3])

    def test_vote_without_side_rejected(self):
        action = BetAction(ActionKind.VOTE, Variant.CHALLENGE, 1)
        with pytest.raises(ValueError):
            action.method()

    def test_build_transaction(self):
        chain = FakeChain()
        chain.add_bet(Variant.CHALLENGE, 4, ALICE, stake=5)
        s = snapshot(chain, Variant.CHALLENGE, 4)
        tx = ActionDispatcher(chain, NETWORK).build_transaction(BetAction.join(s), BOB)
        assert tx["to"] == Web3.to_checksum_address(contract_for(Variant.CHALLENGE))
        assert tx["from"] == Web3.to_checksum_address(BOB)
        assert tx["value"] == 5
        assert tx["data"] == encode_call(CHALLENGE_ABI, "joinChallenge", [4])

    def test_missing_contract(self):
        dispatcher = ActionDispatcher(FakeChain(), "mainnet")
        if dispatcher.fetcher.contract_address(Variant.OFFER):
            pytest.skip("offer contract configured for mainnet in this environment")
        with pytest.raises(ActionFailed):
            dispatcher.build_transaction(BetAction(ActionKind.REFUND, Variant.OFFER, 1))


class TestVoteSides:
    def test_i_won_flips_for_counterparty(self):
        chain = FakeChain()
        chain.add_bet(Variant.CHALLENGE, 1, ALICE, BOB, state=1)
        s = snapshot(chain, Variant.CHALLENGE, 1)
        assert BetAction.vote_i_won(s, ALICE, True).side_a is True
        assert BetAction.vote_i_won(s, BOB, True).side_a is False
        assert BetAction.vote_i_won(s, BOB, False).side_a is True
        with pytest.raises(ValueError):
            BetAction.vote_i_won(s, CAROL, True)


class TestDispatch:
    def test_confirmed_action_returns_refetched_state(self):
        chain = FakeChain()
        chain.add_bet(Variant.CHALLENGE, 2, ALICE, BOB, state=1)
        s = snapshot(chain, Variant.CHALLENGE, 2)
        signer = FakeSigner(on_mined=lambda: chain.update(Variant.CHALLENGE, 2, votes=(1, 0)))
        dispatcher = ActionDispatcher(chain, NETWORK, refresh_policy=FAST_REFRESH)

        async def scenario():
            pending = await dispatcher.dispatch(BetAction.vote(s, True), signer)
            assert dispatcher.pending(Variant.CHALLENGE, 2) == TX_HASH
            outcome = await pending.confirm()
            assert dispatcher.pending(Variant.CHALLENGE, 2) is None
            return outcome

        outcome = run(scenario())
        assert outcome.tx_hash == TX_HASH
        assert outcome.snapshot.creator_vote == Vote.SIDE_A
        assert outcome.snapshot.phase_raw == RawPhase.ACTIVE
        assert signer.sent[0]["data"] == encode_call(CHALLENGE_ABI, "submitOutcomeVote", [2, True])

    def test_reverted_receipt_is_action_failed(self):
        chain = FakeChain()
        chain.add_bet(Variant.OFFER, 1, ALICE, BOB, state=1, votes=(1, 1))
        s = snapshot(chain, Variant.OFFER, 1)
        dispatcher = ActionDispatcher(chain, NETWORK, refresh_policy=FAST_REFRESH)
        with pytest.raises(ActionFailed, match="reverted"):
            run(dispatcher.execute(BetAction.resolve(s), FakeSigner(status=0)))
        assert dispatcher.pending(Variant.OFFER, 1) is None

    def test_second_action_waits_for_the_first(self):
        chain = FakeChain()
        chain.add_bet(Variant.CHALLENGE, 2, ALICE, BOB, state=1)
        s = snapshot(chain, Variant.CHALLENGE, 2)
        signer = FakeSigner()
        dispatcher = ActionDispatcher(chain, NETWORK, refresh_policy=FAST_REFRESH)

        async def scenario():
            pending = await dispatcher.dispatch(BetAction.vote(s, True), signer)
            with pytest.raises(ActionFailed, match="still pending"):
                await dispatcher.dispatch(BetAction.vote(s, False), signer)
            await pending.confirm()
            await dispatcher.dispatch(BetAction.vote(s, False), signer)

        run(scenario())
        assert len(signer.sent) == 2
        assert signer.sent[1]["data"] == encode_call(CHALLENGE_ABI, "submitOutcomeVote", [2, False])

    def test_signer_rejection_is_action_failed(self):
        chain = FakeChain()
        chain.add_bet(Variant.OFFER, 1, ALICE)
        s = snapshot(chain, Variant.OFFER, 1)
        dispatcher = ActionDispatcher(chain, NETWORK)
        signer = FakeSigner(address=BOB, reject=RuntimeError("User rejected the request"))
        with pytest.raises(ActionFailed, match="User rejected"):
            run(dispatcher.execute(BetAction.join(s), signer))
        assert dispatcher.in_flight == {}

    def test_failed_refresh_still_reports_the_transaction(self):
        chain = FakeChain()
        chain.add_bet(Variant.CHALLENGE, 5, ALICE)
        s = snapshot(chain, Variant.CHALLENGE, 5)
        dispatcher = ActionDispatcher(chain, NETWORK, refresh_policy=FAST_REFRESH)
        signer = FakeSigner(on_mined=lambda: chain.fail_reads.add(("getChallengeCore", 5)))

        outcome = run(dispatcher.execute(BetAction.refund(s), signer))
        assert outcome.tx_hash == TX_HASH
        assert outcome.snapshot is None
        assert chain.reads.count(("getChallengeCore", 5)) == 3     # first read + two refresh tries


class TestEstimate:
    def test_gas_quote(self):
        chain = FakeChain()
        chain.add_bet(Variant.OFFER, 6, ALICE, stake=300, counter_stake=100)
        s = snapshot(chain, Variant.OFFER, 6)
        quote = run(ActionDispatcher(chain, NETWORK).estimate(BetAction.join(s), BOB))
        assert quote.gas == 84_000
        assert quote.cost_wei == 84_000 * 2_000_000_000
        assert chain.estimates[0]["value"] == 100
        assert chain.estimates[0]["data"] == encode_call(OFFER_ABI, "takeOffer", [6])

    def test_simulation_failure(self):
        class RevertingChain(FakeChain):
            async def estimate_gas(self, tx):
                raise FetchError("execution reverted")

        chain = RevertingChain()
        chain.add_bet(Variant.OFFER, 6, ALICE)
        s = snapshot(chain, Variant.OFFER, 6)
        with pytest.raises(ActionFailed, match="Simulation failed"):
            run(ActionDispatcher(chain, NETWORK).estimate(BetAction.join(s), BOB))


# ────────────────────────────────────────────────────────────
# Local key signer
# ────────────────────────────────────────────────────────────

TEST_KEY = "0x" + "11" * 32


async def _value(v):
    return v


class FakeEth:
    def __init__(self, eip1559=True, estimate_error=None):
        self.eip1559 = eip1559
        self.estimate_error = estimate_error
        self.raw = []

    async def get_block(self, tag):
        if not self.eip1559:
            raise KeyError("baseFeePerGas")
        return {"baseFeePerGas": 1_000_000}

    @property
    def max_priority_fee(self):
        return _value(100)

    @property
    def gas_price(self):
        return _value(5_000)

    @property
    def chain_id(self):
        return _value(84532)

    async def get_transaction_count(self, address, block):
        return 7

    async def estimate_gas(self, tx):
        if self.estimate_error:
            raise self.estimate_error
        return 50_000

    async def send_raw_transaction(self, raw):
        self.raw.append(raw)
        return b"\xee" * 32

    async def wait_for_transaction_receipt(self, tx_hash, timeout):
        return {"status": 1, "transactionHash": tx_hash}


class FakeW3:
    def __init__(self, eth):
        self.eth = eth


class TestLocalAccountSigner:
    def _tx(self, signer):
        return {
            "to": Web3.to_checksum_address(contract_for(Variant.OFFER)),
            "from": signer.address,
            "data": encode_call(OFFER_ABI, "takeOffer", [1]),
            "value": 100,
        }

    def test_signs_and_sends_eip1559(self):
        eth = FakeEth()
        signer = LocalAccountSigner(TEST_KEY, FakeW3(eth))

        async def scenario():
            handle = await signer.send_transaction(self._tx(signer))
            return handle, await handle.wait()

        handle, receipt = run(scenario())
        assert handle.hash == TX_HASH
        assert receipt["status"] == 1
        assert len(eth.raw) == 1

    def test_legacy_gas_price_fallback(self):
        eth = FakeEth(eip1559=False)
        signer = LocalAccountSigner(TEST_KEY, FakeW3(eth))
        handle = run(signer.send_transaction(self._tx(signer)))
        assert handle.hash == TX_HASH

    def test_failing_estimate_never_sends(self):
        eth = FakeEth(estimate_error=ValueError("execution reverted: not open"))
        signer = LocalAccountSigner(TEST_KEY, FakeW3(eth))
        with pytest.raises(ActionFailed, match="would fail"):
            run(signer.send_transaction(self._tx(signer)))
        assert eth.raw == []


# ────────────────────────────────────────────────────────────
# Opening bets
# ────────────────────────────────────────────────────────────

ETHER = 10 ** 18


def receipt_log(raw):
    """A RawLog as it appears in an RPC receipt."""
    return {
        "address": raw.address,
        "topics": [HexBytes(t) for t in raw.topics],
        "data": HexBytes(raw.data),
        "blockNumber": raw.block_number,
        "transactionHash": HexBytes(raw.transaction_hash),
        "logIndex": raw.log_index,
    }


class OpeningSigner(FakeSigner):
    """Receipt carries ``logs``; mining adds the new bet to the chain."""

    def __init__(self, logs=(), **kwargs):
        super().__init__(**kwargs)
        self.logs = list(logs)

    async def send_transaction(self, tx):
        handle = await super().send_transaction(tx)
        inner = handle.wait

        async def wait():
            receipt = await inner()
            receipt["logs"] = self.logs
            return receipt

        return TransactionHandle(hash=handle.hash, wait=wait)


class TestTakerStake:
    def test_yes_creator_rounds_up(self):
        # 1 ETH on YES at 25%: taker covers 1/3 ETH, rounded up to the wei
        assert compute_taker_stake(ETHER, True, 2500) == 333_333_333_333_333_334

    def test_no_creator(self):
        assert compute_taker_stake(ETHER, False, 2500) == 3 * ETHER

    def test_even_odds_match_the_stake(self):
        assert compute_taker_stake(ETHER, True, 5000) == ETHER
        assert compute_taker_stake(ETHER, False, 5000) == ETHER

    def test_never_rounds_to_zero(self):
        assert compute_taker_stake(1, True, 500) == 1

    @pytest.mark.parametrize("p_bps", [0, 499, 9501, 10_000])
    def test_odds_out_of_range(self, p_bps):
        with pytest.raises(ValueError, match="Odds out of range"):
            compute_taker_stake(ETHER, True, p_bps)

    def test_bounds_are_inclusive(self):
        assert compute_taker_stake(19 * ETHER, True, 9500) == 361 * ETHER
        assert compute_taker_stake(19 * ETHER, False, 500) == 361 * ETHER

    def test_invalid_stake(self):
        with pytest.raises(ValueError, match="Invalid stake"):
            compute_taker_stake(0, True, 5000)


class TestOpenActions:
    def test_open_challenge_calldata(self):
        action = BetAction.open_challenge(ETHER, 100, 3600, 7200)
        assert action.kind == ActionKind.OPEN
        assert action.bet_id is None
        assert action.value_wei == ETHER
        assert action.counterparty_stake == ETHER
        assert action.method() == ("openChallenge", [ETHER, 100, 3600, 7200])

        tx = ActionDispatcher(FakeChain(), NETWORK).build_transaction(action, ALICE)
        assert tx["value"] == ETHER
        assert tx["data"] == encode_call(CHALLENGE_ABI, "openChallenge", [ETHER, 100, 3600, 7200])

    def test_open_offer_calldata(self):
        action = BetAction.open_offer(ETHER, False, 2500, 3600, 7200)
        assert action.value_wei == ETHER
        assert action.counterparty_stake == 3 * ETHER
        assert action.method() == ("openOffer", [False, 2500, 3600, 7200])

    def test_open_offer_checks_odds(self):
        with pytest.raises(ValueError, match="Odds out of range"):
            BetAction.open_offer(ETHER, True, 9900, 3600, 7200)

    @pytest.mark.parametrize("join_window, resolve_window, message", [
        (60, 7200, "Join window"),
        (3600, 600, "Resolve window"),
        (3600, 31 * 24 * 3600, "Resolve window"),
        (7200, 3600, "after join"),
        (3600, 3600, "after join"),
    ])
    def test_window_bounds(self, join_window, resolve_window, message):
        with pytest.raises(ValueError, match=message):
            check_windows(join_window, resolve_window)
        with pytest.raises(ValueError, match=message):
            BetAction.open_challenge(ETHER, 100, join_window, resolve_window)

    def test_zero_stake_challenge(self):
        with pytest.raises(ValueError, match="Invalid stake"):
            BetAction.open_challenge(0, 100, 3600, 7200)


class TestOpenConfirm:
    def test_bet_id_read_from_opened_event(self):
        chain = FakeChain()
        signer = OpeningSigner(
            logs=[receipt_log(opened_log(Variant.OFFER, 12, ALICE, block=900))],
            on_mined=lambda: chain.add_bet(Variant.OFFER, 12, ALICE),
        )
        dispatcher = ActionDispatcher(chain, NETWORK, refresh_policy=FAST_REFRESH)
        action = BetAction.open_offer(ETHER, True, 2500, 3600, 7200)

        async def scenario():
            pending = await dispatcher.dispatch(action, signer)
            assert dispatcher.pending(Variant.OFFER, None) == TX_HASH
            return await pending.confirm()

        outcome = run(scenario())
        assert outcome.action.bet_id == 12
        assert outcome.snapshot.bet_id == 12
        assert outcome.snapshot.creator == ALICE
        assert dispatcher.in_flight == {}
        assert ("nextChallengeId", 0) not in chain.reads

    def test_falls_back_to_next_challenge_id(self):
        chain = FakeChain()
        chain.next_challenge_id = 8
        signer = OpeningSigner(on_mined=lambda: chain.add_bet(Variant.CHALLENGE, 7, ALICE))
        dispatcher = ActionDispatcher(chain, NETWORK, refresh_policy=FAST_REFRESH)

        outcome = run(dispatcher.execute(BetAction.open_challenge(ETHER, 100, 3600, 7200), signer))
        assert outcome.action.bet_id == 7
        assert outcome.snapshot.creator == ALICE
        assert ("nextChallengeId", 0) in chain.reads

    def test_unrelated_receipt_logs_are_ignored(self):
        chain = FakeChain()
        chain.next_challenge_id = 4
        resolved = receipt_log(resolved_log(Variant.CHALLENGE, 99, BOB, block=900))
        signer = OpeningSigner(
            logs=[resolved, {"garbage": True}],
            on_mined=lambda: chain.add_bet(Variant.CHALLENGE, 3, ALICE),
        )
        dispatcher = ActionDispatcher(chain, NETWORK, refresh_policy=FAST_REFRESH)

        outcome = run(dispatcher.execute(BetAction.open_challenge(ETHER, 100, 3600, 7200), signer))
        assert outcome.action.bet_id == 3

    def test_offer_without_event_has_no_snapshot(self):
        chain = FakeChain()
        dispatcher = ActionDispatcher(chain, NETWORK, refresh_policy=FAST_REFRESH)
        outcome = run(dispatcher.execute(
            BetAction.open_offer(ETHER, True, 2500, 3600, 7200), OpeningSigner()
        ))
        assert outcome.tx_hash == TX_HASH
        assert outcome.action.bet_id is None
        assert outcome.snapshot is None
