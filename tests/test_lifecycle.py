import asyncio
import logging

import pytest
from sqlalchemy import func, select, update

from conftest import participant
from starraffle.constants import (
    RAFFLE_ACTIVE, RAFFLE_CANCELLED, RAFFLE_COMPLETED,
    TX_COMPLETED, TX_FAILED, TX_PRIZE, TX_REFUND,
    EV_NEW_RAFFLE, EV_RAFFLE_UPDATE, EV_RAFFLE_COMPLETED, EV_RAFFLE_CANCELLED,
    EV_YOU_WON, EV_REFUND, EV_INTEGRITY_ALERT,
)
from starraffle.core.errors import (
    AlreadyParticipated, InvalidAmount, PaymentRejected, RaffleNotActive,
    RaffleNotCompleted, RaffleNotFound, RaffleNotFull, RateLimited, SettingsNotFound,
)
from starraffle.db.session import transaction
from starraffle.models.raffle import Raffle
from starraffle.models.star_transaction import StarTransaction
from starraffle.services.gate import MemoryAdmissionGate
from starraffle.services.lifecycle import RaffleLifecycleController
from starraffle.services.settings_service import create_settings


async def fill(controller, ids):
    return [await controller.place_bid(participant(pid), 1, f"proof-{pid}") for pid in ids]


async def prize_rows(session_factory, raffle_id):
    async with transaction(session_factory) as session:
        return (await session.execute(
            select(StarTransaction).where(StarTransaction.raffle_id == raffle_id, StarTransaction.kind == TX_PRIZE)
        )).scalars().all()


async def test_ensure_active_raffle_opens_once(controller, sink):
    first = await controller.ensure_active_raffle()
    second = await controller.ensure_active_raffle()
    assert first.id == second.id
    assert first.status == RAFFLE_ACTIVE
    assert sink.events().count(EV_NEW_RAFFLE) == 1


async def test_concurrent_ensure_active_raffle(controller, session_factory):
    results = await asyncio.gather(*(controller.ensure_active_raffle() for _ in range(5)))
    assert len({r.id for r in results}) == 1
    async with transaction(session_factory) as session:
        active = await session.scalar(select(func.count(Raffle.id)).where(Raffle.status == RAFFLE_ACTIVE))
    assert active == 1


async def test_ensure_active_raffle_without_settings(session_factory, payments, sink):
    controller = RaffleLifecycleController(session_factory, MemoryAdmissionGate(), payments, sink)
    with pytest.raises(SettingsNotFound):
        await controller.ensure_active_raffle()


async def test_get_active_raffle_hides_nothing_secret(controller):
    view = await controller.get_active_raffle()
    data = view.model_dump()
    assert data["settings"]["bid_amount"] == 1
    assert "winner_id" not in data["raffle"]
    assert "selection_seed" not in data["raffle"]


async def test_full_round(controller, payments, sink, session_factory):
    """Three participants, one star each, 70% to the winner."""
    results = await fill(controller, (101, 102, 103))

    assert [r.entry.position for r in results] == [1, 2, 3]
    assert [r.completed for r in results] == [False, False, True]
    outcome = results[-1].outcome
    assert outcome.winner_id in (101, 102, 103)
    assert (outcome.winner_prize, outcome.operator_fee) == (2, 1)
    assert results[-1].raffle.status == RAFFLE_COMPLETED

    raffle_id = results[-1].raffle.id
    assert payments.payouts == [(outcome.winner_id, 2, raffle_id)]
    assert [tx.status for tx in await prize_rows(session_factory, raffle_id)] == [TX_COMPLETED]

    verification = await controller.verify_raffle(raffle_id)
    assert verification.is_valid
    assert verification.stored_winner == verification.recomputed_winner == outcome.winner_id
    assert verification.participant_ids == [101, 102, 103]
    assert verification.seed == outcome.seed

    # the next round is already open
    nxt = await controller.ensure_active_raffle()
    assert nxt.id != raffle_id
    assert nxt.current_participants == 0

    events = sink.events()
    assert events.count(EV_RAFFLE_UPDATE) == 3
    assert events.count(EV_RAFFLE_COMPLETED) == 1
    assert events.count(EV_NEW_RAFFLE) == 2
    assert sink.notifications == [(outcome.winner_id, EV_YOU_WON, {"raffle_id": raffle_id, "prize": 2})]


async def test_no_partial_outcome_is_visible(controller, session_factory):
    await fill(controller, (101, 102))
    async with transaction(session_factory) as session:
        raffle = await controller.ledger.active_raffle(session)
    assert raffle.winner_id is None
    assert raffle.selection_seed is None
    with pytest.raises(RaffleNotCompleted):
        await controller.verify_raffle(raffle.id)


async def test_wrong_amount_is_not_charged(controller, payments):
    with pytest.raises(InvalidAmount):
        await controller.place_bid(participant(101), 2, "proof")
    with pytest.raises(InvalidAmount):
        await controller.place_bid(participant(101), 0, "proof")
    assert payments.captures == []


async def test_double_tap_is_not_charged(controller, payments):
    await controller.place_bid(participant(101), 1, "proof-a")
    with pytest.raises(AlreadyParticipated):
        await controller.place_bid(participant(101), 1, "proof-b")
    assert len(payments.captures) == 1


async def test_rejected_payment_creates_no_entry(controller, payments, session_factory):
    payments.reject_proofs.add("bad")
    with pytest.raises(PaymentRejected):
        await controller.place_bid(participant(101), 1, "bad")
    raffle = await controller.ensure_active_raffle()
    assert raffle.current_participants == 0


async def test_conflict_after_capture_is_refunded(controller, payments, sink, session_factory):
    raffle = await controller.ensure_active_raffle()

    async def cancel_underneath(participant_id):
        async with transaction(session_factory) as session:
            await controller.ledger.cancel(session, raffle.id, "closed meanwhile")

    payments.on_capture = cancel_underneath
    with pytest.raises(RaffleNotActive):
        await controller.place_bid(participant(101), 1, "proof")

    assert payments.refunds == [(101, 1, "Bid rejected: RAFFLE_NOT_ACTIVE")]
    async with transaction(session_factory) as session:
        refund = await session.scalar(select(StarTransaction).where(StarTransaction.kind == TX_REFUND))
    assert refund.status == TX_COMPLETED


async def test_storage_failure_after_capture_is_refunded(controller, payments, session_factory, monkeypatch):
    await controller.ensure_active_raffle()

    async def lost_connection(*args, **kwargs):
        raise RuntimeError("db connection lost")

    monkeypatch.setattr(controller.ledger, "admit", lost_connection)
    with pytest.raises(RuntimeError):
        await controller.place_bid(participant(105), 1, "proof-5")

    assert payments.captures == [(105, 1, "proof-5")]
    assert payments.refunds == [(105, 1, "Bid rejected: RuntimeError")]
    async with transaction(session_factory) as session:
        refunds = (await session.execute(
            select(StarTransaction).where(StarTransaction.kind == TX_REFUND)
        )).scalars().all()
    assert [(tx.participant_id, tx.amount, tx.status) for tx in refunds] == [(105, 1, TX_COMPLETED)]


async def test_replayed_proof_is_not_refunded(controller, payments):
    await controller.place_bid(participant(101), 1, "same-proof")
    with pytest.raises(PaymentRejected):
        await controller.place_bid(participant(102), 1, "same-proof")
    assert payments.refunds == []


async def test_rate_limit_runs_before_payment(session_factory, raffle_settings, payments, sink):
    controller = RaffleLifecycleController(
        session_factory, MemoryAdmissionGate(points=1, duration=60, block_duration=300), payments, sink,
    )
    await controller.place_bid(participant(101), 1, "proof-1")
    with pytest.raises(RateLimited) as e:
        await controller.place_bid(participant(101), 1, "proof-2")
    assert e.value.retry_after == 300
    assert len(payments.captures) == 1


async def test_failed_payout_keeps_the_outcome(controller, payments, session_factory):
    payments.fail_payouts = True
    results = await fill(controller, (101, 102, 103))
    raffle_id = results[-1].raffle.id

    async with transaction(session_factory) as session:
        raffle = await controller.ledger.get(session, raffle_id)
    assert raffle.status == RAFFLE_COMPLETED
    rows = await prize_rows(session_factory, raffle_id)
    assert [(tx.status, tx.attempts) for tx in rows] == [(TX_FAILED, 1)]

    payments.fail_payouts = False
    assert await controller.delivery.retry_pending() == 1
    rows = await prize_rows(session_factory, raffle_id)
    assert [tx.status for tx in rows] == [TX_COMPLETED]
    assert payments.payouts == [(raffle.winner_id, 2, raffle_id)]


async def test_complete_raffle_requires_quota(controller):
    raffle = await controller.ensure_active_raffle()
    with pytest.raises(RaffleNotFull):
        await controller.complete_raffle(raffle.id)


async def test_cancel_raffle(controller, payments, sink):
    first = (await fill(controller, (101, 102)))[0].raffle

    outcome = await controller.cancel_raffle(first.id, "maintenance")

    assert outcome.raffle.status == RAFFLE_CANCELLED
    assert sorted(payments.refunds) == [(101, 1, "maintenance"), (102, 1, "maintenance")]
    assert sorted(pid for pid, ev, _ in sink.notifications if ev == EV_REFUND) == [101, 102]
    assert EV_RAFFLE_CANCELLED in sink.events()

    with pytest.raises(RaffleNotActive):
        await controller.cancel_raffle(first.id, "again")

    nxt = await controller.ensure_active_raffle()
    assert nxt.id != first.id


async def test_cancel_unknown_raffle(controller):
    with pytest.raises(RaffleNotFound):
        await controller.cancel_raffle(999, "nope")


async def test_new_settings_apply_to_the_next_round(controller, session_factory):
    await controller.place_bid(participant(101), 1, "proof-1")
    async with transaction(session_factory) as session:
        await create_settings(session, {"required_participants": 2, "bid_amount": 5, "winner_share": "0.5"})

    results = await fill(controller, (102, 103))
    assert results[-1].completed
    assert results[-1].raffle.required_participants == 3

    nxt = await controller.ensure_active_raffle()
    assert (nxt.required_participants, nxt.bid_amount) == (2, 5)


async def test_tampered_winner_raises_an_alert(controller, sink, session_factory, caplog):
    results = await fill(controller, (101, 102, 103))
    raffle_id = results[-1].raffle.id
    real_winner = results[-1].outcome.winner_id
    fake_winner = next(pid for pid in (101, 102, 103) if pid != real_winner)

    async with transaction(session_factory) as session:
        await session.execute(update(Raffle).where(Raffle.id == raffle_id).values(winner_id=fake_winner))

    with caplog.at_level(logging.CRITICAL, logger="starraffle.services.lifecycle"):
        verification = await controller.verify_raffle(raffle_id)

    assert not verification.is_valid
    assert verification.stored_winner == fake_winner
    assert verification.recomputed_winner == real_winner
    assert [event for event, _ in sink.alerts] == [EV_INTEGRITY_ALERT]
    assert any(r.levelno == logging.CRITICAL for r in caplog.records)
