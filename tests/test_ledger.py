import asyncio

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from starraffle.constants import (
    RAFFLE_ACTIVE, RAFFLE_CANCELLED, RAFFLE_COMPLETED,
    ENTRY_REFUNDED, TX_PRIZE, TX_REFUND, TX_PENDING,
)
from starraffle.core.errors import (
    AlreadyParticipated, InvalidAmount, PaymentRejected,
    RaffleFull, RaffleNotActive, RaffleNotFound, RaffleNotFull,
)
from starraffle.db.session import transaction
from starraffle.models.audit_log import AuditLog
from starraffle.models.raffle import Entry
from starraffle.models.star_transaction import StarTransaction
from starraffle.models.user import User


async def test_open_raffle_snapshots_settings(open_raffle, raffle_settings):
    raffle = await open_raffle()
    assert raffle.status == RAFFLE_ACTIVE
    assert raffle.settings_id == raffle_settings.id
    assert raffle.required_participants == 3
    assert raffle.current_participants == 0
    assert raffle.total_prize_pool == 0
    assert raffle.winner_id is None
    assert raffle.selection_seed is None


async def test_only_one_active_raffle(session_factory, ledger, open_raffle, raffle_settings):
    first = await open_raffle()
    async with transaction(session_factory) as session:
        with pytest.raises(IntegrityError):
            async with session.begin_nested():
                await ledger.open_raffle(session, raffle_settings)
        active = await ledger.active_raffle(session)
    assert active.id == first.id


async def test_positions_are_gapless(session_factory, ledger, open_raffle, admit):
    raffle = await open_raffle()
    results = [await admit(raffle.id, pid) for pid in (11, 12, 13)]

    assert [r.entry.position for r in results] == [1, 2, 3]
    assert [r.completed for r in results] == [False, False, True]
    assert results[-1].raffle.current_participants == 3
    assert results[-1].raffle.total_prize_pool == 3

    async with transaction(session_factory) as session:
        assert await ledger.admission_order(session, raffle.id) == [11, 12, 13]
        user = await session.get(User, 11)
    assert user.total_bids == 1


async def test_duplicate_entry_changes_nothing(session_factory, ledger, open_raffle, admit):
    raffle = await open_raffle()
    await admit(raffle.id, 11)
    with pytest.raises(AlreadyParticipated):
        await admit(raffle.id, 11)

    async with transaction(session_factory) as session:
        again = await ledger.get(session, raffle.id)
        user = await session.get(User, 11)
    assert again.current_participants == 1
    assert again.total_prize_pool == 1
    assert user.total_bids == 1


async def test_wrong_amount(open_raffle, admit):
    raffle = await open_raffle()
    with pytest.raises(InvalidAmount):
        await admit(raffle.id, 11, amount=2)


async def test_guards_are_checked_in_order(session_factory, ledger, open_raffle, admit):
    raffle = await open_raffle()
    for pid in (11, 12, 13):
        await admit(raffle.id, pid)

    # an existing participant on a full raffle is told they already entered
    with pytest.raises(AlreadyParticipated):
        await admit(raffle.id, 11)
    with pytest.raises(RaffleFull):
        await admit(raffle.id, 14)
    # fullness is reported before a bad amount
    with pytest.raises(RaffleFull):
        await admit(raffle.id, 14, amount=5)

    async with transaction(session_factory) as session:
        await ledger.cancel(session, raffle.id, "test")
    with pytest.raises(RaffleNotActive):
        await admit(raffle.id, 14)


async def test_unknown_raffle(admit):
    with pytest.raises(RaffleNotFound):
        await admit(424242, 11)


async def test_concurrent_admissions_never_overfill(session_factory, ledger, open_raffle, admit):
    raffle = await open_raffle()
    ids = list(range(201, 209))
    results = await asyncio.gather(*(admit(raffle.id, pid) for pid in ids), return_exceptions=True)

    admitted = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, Exception)]
    assert len(admitted) == 3
    assert all(isinstance(e, RaffleFull) for e in rejected)
    assert sorted(r.entry.position for r in admitted) == [1, 2, 3]
    assert sum(r.completed for r in admitted) == 1

    async with transaction(session_factory) as session:
        again = await ledger.get(session, raffle.id)
        order = await ledger.admission_order(session, raffle.id)
    assert again.current_participants == 3
    assert len(order) == 3


async def test_replayed_charge_is_rejected(session_factory, ledger, open_raffle, admit):
    raffle = await open_raffle()
    await admit(raffle.id, 11, charge_id="charge-1")
    with pytest.raises(PaymentRejected):
        await admit(raffle.id, 12, charge_id="charge-1")

    async with transaction(session_factory) as session:
        again = await ledger.get(session, raffle.id)
    assert again.current_participants == 1


async def test_complete_requires_a_full_raffle(session_factory, ledger, open_raffle, admit):
    raffle = await open_raffle()
    await admit(raffle.id, 11)
    async with transaction(session_factory) as session:
        with pytest.raises(RaffleNotFull):
            await ledger.complete(session, raffle.id)


async def test_complete_draws_and_closes(session_factory, ledger, completed_raffle):
    outcome = await completed_raffle()
    raffle = outcome.raffle

    assert raffle.status == RAFFLE_COMPLETED
    assert raffle.winner_id in (101, 102, 103)
    assert raffle.winner_id == outcome.participant_ids[outcome.winner_index]
    assert outcome.participant_ids == [101, 102, 103]
    assert (raffle.winner_prize, raffle.operator_fee) == (2, 1)
    assert len(raffle.selection_seed) == 64
    assert raffle.completed_at is not None

    ok, selection = ledger.selector.verify(raffle.selection_seed, outcome.participant_ids, raffle.winner_id)
    assert ok
    assert selection.verification_hash == outcome.verification_hash

    async with transaction(session_factory) as session:
        assert await ledger.active_raffle(session) is None
        payout = await session.get(StarTransaction, outcome.payout_transaction_id)
        winner = await session.get(User, raffle.winner_id)
        audit = (await session.execute(
            select(AuditLog.action)
            .where(AuditLog.entity_type == "raffle", AuditLog.entity_id == raffle.id)
            .order_by(AuditLog.id)
        )).scalars().all()
        with pytest.raises(RaffleNotActive):
            await ledger.complete(session, raffle.id)

    assert (payout.kind, payout.status, payout.amount) == (TX_PRIZE, TX_PENDING, 2)
    assert payout.participant_id == raffle.winner_id
    assert winner.total_winnings == 2
    assert audit == ["RAFFLE_CREATED", "RAFFLE_COMPLETED"]


async def test_cancel_refunds_every_entry(session_factory, ledger, open_raffle, admit):
    raffle = await open_raffle()
    await admit(raffle.id, 11)
    await admit(raffle.id, 12)

    async with transaction(session_factory) as session:
        outcome = await ledger.cancel(session, raffle.id, "maintenance")

    assert outcome.raffle.status == RAFFLE_CANCELLED
    assert outcome.raffle.cancel_reason == "maintenance"
    assert sorted(r.participant_id for r in outcome.refunds) == [11, 12]
    assert all(r.amount == 1 for r in outcome.refunds)

    async with transaction(session_factory) as session:
        entries = (await session.execute(select(Entry).where(Entry.raffle_id == raffle.id))).scalars().all()
        refunds = (await session.execute(
            select(StarTransaction).where(StarTransaction.kind == TX_REFUND)
        )).scalars().all()
        assert await ledger.active_raffle(session) is None
        assert await ledger.admission_order(session, raffle.id) == []

    assert {e.status for e in entries} == {ENTRY_REFUNDED}
    assert len(refunds) == 2
    assert {tx.status for tx in refunds} == {TX_PENDING}

    with pytest.raises(RaffleNotActive):
        await admit(raffle.id, 13)
    async with transaction(session_factory) as session:
        with pytest.raises(RaffleNotActive):
            await ledger.cancel(session, raffle.id, "again")


async def test_cancel_empty_raffle(session_factory, ledger, open_raffle):
    raffle = await open_raffle()
    async with transaction(session_factory) as session:
        outcome = await ledger.cancel(session, raffle.id, "nobody came")
    assert outcome.refunds == []
    assert outcome.raffle.status == RAFFLE_CANCELLED


async def test_record_refund(session_factory, ledger, open_raffle):
    raffle = await open_raffle()
    async with transaction(session_factory) as session:
        tx_id = await ledger.record_refund(session, raffle.id, 11, 1, reason="Bid rejected: RAFFLE_FULL")
    async with transaction(session_factory) as session:
        tx = await session.get(StarTransaction, tx_id)
    assert (tx.kind, tx.status, tx.participant_id, tx.amount) == (TX_REFUND, TX_PENDING, 11, 1)
