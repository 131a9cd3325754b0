# betsync/main.py
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from config import DEFAULT_NETWORK, LOG_LEVEL, NETWORKS, get_network
from db import get_db
from labels import ensure_label_table, get_label, get_labels, set_label
from lifecycle import ActionKind, phase_label, resolve, vote_label
from oracle import get_eth_usd, wei_to_usd
from session import SessionManager, WalletEvent, WalletEventKind
from chain.actions import ActionDispatcher, BetAction
from chain.bet_state import BetStateFetcher, lookup_bet
from chain.discovery import BetDiscoveryScanner
from chain.errors import ActionFailed, DecodeError, FetchError, NotFound, ScanFailed
from chain.log_reader import ChainLogReader
from chain.models import BetSnapshot, Variant
from chain.transport import make_transport

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app):
    logger.info("Bet sync API started")
    yield
    await app.state.sessions.close()
    logger.info("Bet sync API stopped")


app = FastAPI(title="Escrow Bet Sync API", version="0.1.0", lifespan=lifespan)
app.state.sessions = SessionManager()


# ------------------------------------------------------------
# Dependencies
# ------------------------------------------------------------

def get_transport_factory():
    return make_transport


def get_sessions(request: Request) -> SessionManager:
    return request.app.state.sessions


def get_label_db(db: Session = Depends(get_db)) -> Session:
    ensure_label_table(db)
    return db


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, NotFound):
        return HTTPException(404, str(e))
    if isinstance(e, ValueError):
        return HTTPException(400, str(e))
    if isinstance(e, (FetchError, DecodeError, ScanFailed)):
        return HTTPException(502, f"Chain read failed: {e}")
    if isinstance(e, ActionFailed):
        return HTTPException(409, str(e))
    return HTTPException(500, str(e))


def _check_network(network: str):
    try:
        get_network(network)
    except ValueError as e:
        raise HTTPException(400, str(e))


def _bet_view(snapshot: BetSnapshot, viewer: Optional[str], label: Optional[str] = None,
              price: Optional[float] = None) -> dict:
    out = snapshot.to_dict()
    out["lifecycle"] = resolve(snapshot, viewer).to_dict()
    out["role"] = snapshot.role_of(viewer)
    out["phase_label"] = phase_label(snapshot.variant, snapshot.phase_raw)
    out["creator_vote_label"] = vote_label(snapshot.variant, snapshot.creator_vote)
    out["counterparty_vote_label"] = vote_label(snapshot.variant, snapshot.counterparty_vote)
    out["label"] = label
    if price is not None:
        out["creator_stake_usd"] = wei_to_usd(snapshot.creator_stake, price)
        out["counterparty_stake_usd"] = wei_to_usd(snapshot.counterparty_stake, price)
    return out


def _label_key(snapshot: BetSnapshot) -> str:
    return f"{snapshot.variant.value}-{snapshot.bet_id}"


async def _single_bet_view(snapshot: BetSnapshot, network: str, viewer: Optional[str],
                           db: Session, usd: bool) -> dict:
    # Label and price reads block; keep them off the event loop.
    label = await run_in_threadpool(get_label, db, network, snapshot.variant, snapshot.bet_id)
    price = await run_in_threadpool(get_eth_usd) if usd else None
    return _bet_view(snapshot, viewer, label, price)


# ------------------------------------------------------------
# Routes
# ------------------------------------------------------------

@app.get("/healthz")
def healthz():
    return {"ok": "true"}


@app.get("/api/networks")
def networks():
    return {
        key: {
            "chain_id": n["chain_id"],
            "name": n["name"],
            "explorer": n["explorer"],
            "challenge_contract": n["challenge_contract"],
            "offer_contract": n["offer_contract"],
        }
        for key, n in NETWORKS.items()
    }


@app.get("/api/bets/{bet_id}")
async def get_bet(
    bet_id: str,
    network: str = DEFAULT_NETWORK,
    viewer: Optional[str] = None,
    usd: bool = False,
    transport_factory=Depends(get_transport_factory),
    db: Session = Depends(get_label_db),
):
    """Look up a bet by numeric id across both variants."""
    _check_network(network)
    try:
        snapshot = await lookup_bet(bet_id, network, transport_factory)
    except (ValueError, NotFound, FetchError) as e:
        raise _http_error(e)
    return await _single_bet_view(snapshot, network, viewer, db, usd)


@app.get("/api/bets/{variant}/{bet_id}")
async def get_bet_variant(
    variant: Variant,
    bet_id: str,
    network: str = DEFAULT_NETWORK,
    viewer: Optional[str] = None,
    usd: bool = False,
    transport_factory=Depends(get_transport_factory),
    db: Session = Depends(get_label_db),
):
    _check_network(network)
    try:
        snapshot = await lookup_bet(bet_id, network, transport_factory, variant=variant)
    except (ValueError, NotFound, FetchError) as e:
        raise _http_error(e)
    return await _single_bet_view(snapshot, network, viewer, db, usd)


@app.get("/api/accounts/{address}/bets")
async def account_bets(
    address: str,
    network: str = DEFAULT_NETWORK,
    transport_factory=Depends(get_transport_factory),
    db: Session = Depends(get_label_db),
):
    """All bets the address created or joined within the discovery window."""
    _check_network(network)
    transport = transport_factory(network)
    scanner = BetDiscoveryScanner(ChainLogReader(transport), BetStateFetcher(transport, network))
    try:
        result = await scanner.scan(address)
    except ScanFailed as e:
        raise _http_error(e)

    labels = await run_in_threadpool(get_labels, db, network)
    bets = []
    for bet in result.bets:
        view = _bet_view(bet.snapshot, address, labels.get(_label_key(bet.snapshot)))
        view["role"] = bet.role
        view["won"] = bet.won_by(address)
        view["payout"] = str(bet.resolution.payout) if bet.resolution else None
        bets.append(view)

    return {
        "address": address,
        "network": network,
        "loaded": result.loaded,
        "complete": result.complete,
        "head_block": result.head_block,
        "missed": [list(r) for r in result.missed],
        "bets": bets,
        "history": [
            {
                "tx_hash": h.transaction_hash,
                "action": h.action,
                "variant": h.variant.value,
                "bet_id": h.bet_id,
                "block_number": h.block_number,
            }
            for h in result.history
        ],
    }


@app.get("/api/trending")
async def trending(
    network: str = DEFAULT_NETWORK,
    include_all: bool = Query(False, alias="all"),
    transport_factory=Depends(get_transport_factory),
    db: Session = Depends(get_label_db),
):
    """Open bets anyone can join, biggest pot first. ``all=true`` lists every bet in the window."""
    _check_network(network)
    transport = transport_factory(network)
    scanner = BetDiscoveryScanner(ChainLogReader(transport), BetStateFetcher(transport, network))
    try:
        result = await scanner.scan_open(include_all=include_all)
    except ScanFailed as e:
        raise _http_error(e)

    labels = await run_in_threadpool(get_labels, db, network)
    bets = []
    for bet in result.bets:
        view = _bet_view(bet.snapshot, None, labels.get(_label_key(bet.snapshot)))
        view["pot_wei"] = str(bet.snapshot.creator_stake + bet.snapshot.counterparty_stake)
        bets.append(view)

    return {
        "network": network,
        "loaded": result.loaded,
        "complete": result.complete,
        "head_block": result.head_block,
        "missed": [list(r) for r in result.missed],
        "bets": bets,
    }


class EstimateRequest(BaseModel):
    action: ActionKind
    sender: str = Field(..., min_length=42, max_length=42)
    side_a: Optional[bool] = None


@app.post("/api/bets/{variant}/{bet_id}/estimate")
async def estimate_action(
    variant: Variant,
    bet_id: str,
    req: EstimateRequest,
    network: str = DEFAULT_NETWORK,
    transport_factory=Depends(get_transport_factory),
):
    """Gas quote for an action, for the confirmation dialog."""
    _check_network(network)
    try:
        snapshot = await lookup_bet(bet_id, network, transport_factory, variant=variant)
        allowed = {a.kind for a in resolve(snapshot, req.sender).valid_actions}
        if req.action not in allowed:
            raise ActionFailed(f"{req.action.value} is not available for this bet right now")

        if req.action == ActionKind.JOIN:
            action = BetAction.join(snapshot)
        elif req.action == ActionKind.VOTE:
            if req.side_a is None:
                raise ValueError("side_a is required for a vote")
            action = BetAction.vote(snapshot, req.side_a)
        elif req.action == ActionKind.RESOLVE:
            action = BetAction.resolve(snapshot)
        else:
            action = BetAction.refund(snapshot)

        dispatcher = ActionDispatcher(transport_factory(network), network)
        quote = await dispatcher.estimate(action, req.sender)
    except (ValueError, NotFound, FetchError, ActionFailed) as e:
        raise _http_error(e)

    return {
        "gas": quote.gas,
        "gas_price": str(quote.gas_price),
        "cost_wei": str(quote.cost_wei),
        "value_wei": str(action.value_wei),
    }


class OpenRequest(BaseModel):
    sender: str = Field(..., min_length=42, max_length=42)
    stake_wei: int = Field(..., gt=0)
    join_window_seconds: int
    resolve_window_seconds: int
    creator_side_yes: Optional[bool] = None     # offer only
    p_bps: Optional[int] = None                 # offer only


@app.post("/api/open/{variant}/estimate")
async def estimate_open(
    variant: Variant,
    req: OpenRequest,
    network: str = DEFAULT_NETWORK,
    transport_factory=Depends(get_transport_factory),
):
    """Gas quote and matching stake for a new bet before the wallet is asked to sign."""
    _check_network(network)
    dispatcher = ActionDispatcher(transport_factory(network), network)
    try:
        if variant == Variant.OFFER and (req.creator_side_yes is None or req.p_bps is None):
            raise ValueError("creator_side_yes and p_bps are required for an offer")
        fee_bps = await dispatcher.fetcher.protocol_fee_bps(variant)
        if variant == Variant.CHALLENGE:
            action = BetAction.open_challenge(
                req.stake_wei, fee_bps, req.join_window_seconds, req.resolve_window_seconds
            )
        else:
            action = BetAction.open_offer(
                req.stake_wei, req.creator_side_yes, req.p_bps,
                req.join_window_seconds, req.resolve_window_seconds,
            )
        quote = await dispatcher.estimate(action, req.sender)
    except (ValueError, FetchError, DecodeError, ActionFailed) as e:
        raise _http_error(e)

    return {
        "gas": quote.gas,
        "gas_price": str(quote.gas_price),
        "cost_wei": str(quote.cost_wei),
        "value_wei": str(action.value_wei),
        "counterparty_stake": str(action.counterparty_stake),
        "fee_bps": fee_bps,
    }


class SessionRequest(BaseModel):
    address: str = Field(..., min_length=42, max_length=42)
    network: str = DEFAULT_NETWORK


@app.post("/api/session")
async def open_session(req: SessionRequest, sessions: SessionManager = Depends(get_sessions)):
    """Wallet connected, or switched account/network."""
    try:
        engine = await sessions.handle(
            WalletEvent(WalletEventKind.CONNECTED, address=req.address, network=req.network)
        )
    except ValueError as e:
        raise _http_error(e)
    return {"address": engine.address, "network": engine.network, "state": engine.state.value}


@app.delete("/api/session")
async def close_session(sessions: SessionManager = Depends(get_sessions)):
    await sessions.handle(WalletEvent(WalletEventKind.DISCONNECTED))
    return {"ok": "true"}


@app.get("/api/notifications")
def notifications(sessions: SessionManager = Depends(get_sessions)):
    engine = sessions.engine
    if engine is None:
        return {"connected": False, "unread": 0, "notifications": []}
    return {
        "connected": True,
        "address": engine.address,
        "network": engine.network,
        "state": engine.state.value,
        "unread": engine.unread,
        "notifications": [n.to_dict() for n in reversed(engine.notifications)],
    }


@app.post("/api/notifications/clear")
def clear_notifications(sessions: SessionManager = Depends(get_sessions)):
    if sessions.engine is not None:
        sessions.engine.clear()
    return {"unread": 0}


class LabelRequest(BaseModel):
    label: str = Field(..., max_length=1000)


@app.put("/api/labels/{network}/{variant}/{bet_id}")
def put_label(
    network: str,
    variant: Variant,
    bet_id: int,
    req: LabelRequest,
    db: Session = Depends(get_label_db),
):
    _check_network(network)
    label = set_label(db, network, variant, bet_id, req.label)
    return {"network": network, "variant": variant.value, "bet_id": bet_id, "label": label or None}
