import asyncio

import pytest

from chain.bet_state import (
    BetStateFetcher,
    challenge_snapshot,
    lookup_bet,
    parse_bet_id,
)
from chain.errors import DecodeError, FetchError, NotFound
from chain.models import RawPhase, Variant, Vote
from chain.retry import RetryPolicy
from fakes import ALICE, BOB, NETWORK, NOW, FakeChain

FAST_RETRY = RetryPolicy(attempts=2, delay=0)


def run(coro):
    return asyncio.run(coro)


class TestFetchSnapshot:
    def test_challenge_normalized(self):
        chain = FakeChain()
        chain.add_bet(Variant.CHALLENGE, 3, ALICE, BOB, state=1, votes=(1, -1), stake=5)
        s = run(BetStateFetcher(chain, NETWORK).fetch_snapshot(Variant.CHALLENGE, 3))

        assert s.key == (Variant.CHALLENGE, 3)
        assert s.role_of(ALICE) == "creator"
        assert s.role_of(BOB) == "counterparty"
        assert s.creator_stake == s.counterparty_stake == 5
        assert s.phase_raw == RawPhase.ACTIVE
        assert (s.creator_vote, s.counterparty_vote) == (Vote.SIDE_A, Vote.SIDE_B)
        assert s.fee_bps == 100
        assert s.paid is False

    def test_offer_normalized(self):
        chain = FakeChain()
        chain.add_bet(Variant.OFFER, 12, ALICE, state=0, stake=300, counter_stake=100, paid=False)
        s = run(BetStateFetcher(chain, NETWORK).fetch_snapshot(Variant.OFFER, 12))

        assert s.counterparty is None
        assert not s.joined
        assert (s.creator_stake, s.counterparty_stake) == (300, 100)
        assert s.odds_bps == 2500
        assert s.creator_side_yes is True

    def test_zero_creator_is_not_found(self):
        chain = FakeChain()
        assert run(BetStateFetcher(chain, NETWORK).fetch_snapshot(Variant.CHALLENGE, 99)) is None

    def test_core_and_status_both_read(self):
        chain = FakeChain()
        chain.add_bet(Variant.OFFER, 1, ALICE)
        run(BetStateFetcher(chain, NETWORK).fetch_snapshot(Variant.OFFER, 1))
        assert sorted(chain.reads) == [("getOfferCore", 1), ("getOfferStatus", 1)]

    def test_either_call_failing_is_fetch_error(self):
        chain = FakeChain()
        chain.add_bet(Variant.CHALLENGE, 1, ALICE)
        chain.fail_reads = {("getChallengeStatus", 1)}
        with pytest.raises(FetchError):
            run(BetStateFetcher(chain, NETWORK).fetch_snapshot(Variant.CHALLENGE, 1))

    def test_refetch_is_idempotent(self):
        chain = FakeChain()
        chain.add_bet(Variant.CHALLENGE, 8, ALICE, BOB, state=1, votes=(0, 1))
        fetcher = BetStateFetcher(chain, NETWORK)
        first = run(fetcher.fetch_snapshot(Variant.CHALLENGE, 8))
        second = run(fetcher.fetch_snapshot(Variant.CHALLENGE, 8))
        assert first == second
        assert first is not second

    def test_unknown_state_is_decode_error(self):
        with pytest.raises(DecodeError):
            challenge_snapshot(1, (ALICE, BOB, 1, 0, 0, 0), (0, 9, 0, 0))

    def test_short_tuple_is_decode_error(self):
        with pytest.raises(DecodeError):
            challenge_snapshot(1, (ALICE, BOB), (0, 1, 0, 0))


class TestFetchAll:
    def test_one_variant_failing_does_not_hide_the_other(self):
        chain = FakeChain()
        chain.add_bet(Variant.OFFER, 4, ALICE)
        chain.fail_reads = {("getChallengeCore", 4)}
        results = run(BetStateFetcher(chain, NETWORK).fetch_all(4))

        assert isinstance(results[Variant.CHALLENGE], FetchError)
        assert results[Variant.OFFER].creator == ALICE


class TestLookup:
    def test_parse_bet_id(self):
        assert parse_bet_id(" 12 ") == 12
        with pytest.raises(ValueError, match="transaction hash"):
            parse_bet_id("0x" + "ab" * 32)
        with pytest.raises(ValueError):
            parse_bet_id("")
        with pytest.raises(ValueError):
            parse_bet_id("-3")

    def test_newer_variant_wins_when_both_exist(self):
        chain = FakeChain()
        chain.add_bet(Variant.CHALLENGE, 3, ALICE, created_at=NOW - 10)
        chain.add_bet(Variant.OFFER, 3, BOB, created_at=NOW - 500)
        s = run(lookup_bet("3", NETWORK, lambda net: chain, FAST_RETRY))
        assert s.variant == Variant.CHALLENGE

    def test_explicit_variant(self):
        chain = FakeChain()
        chain.add_bet(Variant.CHALLENGE, 3, ALICE, created_at=NOW - 10)
        chain.add_bet(Variant.OFFER, 3, BOB, created_at=NOW - 500)
        s = run(lookup_bet("3", NETWORK, lambda net: chain, FAST_RETRY, variant=Variant.OFFER))
        assert s.creator == BOB

    def test_not_found(self):
        chain = FakeChain()
        with pytest.raises(NotFound):
            run(lookup_bet("5", NETWORK, lambda net: chain, FAST_RETRY))

    def test_fetch_error_retried_with_fresh_transport(self):
        broken = FakeChain()
        broken.fail_reads = {("getChallengeCore", 2), ("getOfferCore", 2)}
        healthy = FakeChain()
        healthy.add_bet(Variant.OFFER, 2, ALICE)
        transports = iter([broken, healthy])

        s = run(lookup_bet("2", NETWORK, lambda net: next(transports), FAST_RETRY))
        assert s.variant == Variant.OFFER

    def test_fetch_error_surfaces_after_retries(self):
        chain = FakeChain()
        chain.fail_reads = {("getChallengeCore", 2), ("getOfferCore", 2)}
        with pytest.raises(FetchError):
            run(lookup_bet("2", NETWORK, lambda net: chain, FAST_RETRY))
        assert chain.reads.count(("getChallengeCore", 2)) == 2

    def test_not_found_is_not_retried(self):
        chain = FakeChain()
        with pytest.raises(NotFound):
            run(lookup_bet("5", NETWORK, lambda net: chain, FAST_RETRY))
        assert chain.reads.count(("getOfferCore", 5)) == 1
