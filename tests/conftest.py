import os

# must be set before anything under starraffle reads its settings
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["ADMIN_TELEGRAM_IDS"] = "900"
os.environ["ADMISSION_GATE_BACKEND"] = "memory"
os.environ["NOTIFY_BACKEND"] = "log"

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from starraffle.core.errors import PaymentBridgeError
from starraffle.db.session import transaction
from starraffle.schemas.user import Participant
from starraffle.services.bootstrap_service import init_db
from starraffle.services.gate import MemoryAdmissionGate
from starraffle.services.ledger import RaffleLedger
from starraffle.services.lifecycle import RaffleLifecycleController
from starraffle.services.notify import NotificationSink
from starraffle.services.payment import CaptureResult, PaymentBridge
from starraffle.services.selector import WinnerSelector
from starraffle.services.settings_service import create_settings


class FakePaymentBridge(PaymentBridge):
    def __init__(self):
        self.captures = []
        self.payouts = []
        self.refunds = []
        self.reject_proofs = set()
        self.fail_payouts = False
        self.fail_refunds = False
        # awaited after a successful capture, before the admission runs
        self.on_capture = None

    async def verify_and_capture(self, participant_id, amount, proof):
        self.captures.append((participant_id, amount, proof))
        if proof in self.reject_proofs:
            return CaptureResult(ok=False, reason="Transaction verification failed")
        if self.on_capture is not None:
            await self.on_capture(participant_id)
        return CaptureResult(ok=True, charge_id=f"charge-{proof}")

    async def payout(self, participant_id, amount, raffle_id):
        if self.fail_payouts:
            raise PaymentBridgeError("provider down")
        self.payouts.append((participant_id, amount, raffle_id))
        return f"payout-{len(self.payouts)}"

    async def refund(self, participant_id, amount, reason):
        if self.fail_refunds:
            raise PaymentBridgeError("provider down")
        self.refunds.append((participant_id, amount, reason))
        return f"refund-{len(self.refunds)}"


class RecordingSink(NotificationSink):
    def __init__(self):
        self.broadcasts = []
        self.notifications = []
        self.alerts = []

    async def broadcast(self, event, payload=None):
        self.broadcasts.append((event, payload))

    async def notify(self, participant_id, event, payload=None):
        self.notifications.append((participant_id, event, payload))

    async def alert_admins(self, event, payload=None):
        self.alerts.append((event, payload))

    def events(self):
        return [e for e, _ in self.broadcasts]


def participant(telegram_id: int) -> Participant:
    return Participant(telegram_id=telegram_id, username=f"user{telegram_id}", first_name=f"User {telegram_id}")


@pytest.fixture
async def engine(tmp_path):
    eng = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'raffle.db'}",
        connect_args={"timeout": 30},
    )

    # take the write lock at BEGIN so concurrent transactions queue up like row locks
    @event.listens_for(eng.sync_engine, "connect")
    def _connect(dbapi_conn, record):
        dbapi_conn.isolation_level = None

    @event.listens_for(eng.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def raffle_settings(session_factory):
    async with transaction(session_factory) as session:
        return await create_settings(session, {
            "required_participants": 3,
            "bid_amount": 1,
            "winner_share": "0.7",
        })


@pytest.fixture
def selector():
    return WinnerSelector(entropy=lambda n: "ab" * n)


@pytest.fixture
def ledger(selector):
    return RaffleLedger(selector)


@pytest.fixture
def payments():
    return FakePaymentBridge()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def controller(session_factory, raffle_settings, ledger, payments, sink):
    return RaffleLifecycleController(
        session_factory,
        MemoryAdmissionGate(points=100, duration=60, block_duration=300),
        payments,
        sink,
        ledger=ledger,
    )


@pytest.fixture
def open_raffle(session_factory, ledger, raffle_settings):
    async def _open(settings_snapshot=None):
        async with transaction(session_factory) as session:
            return await ledger.open_raffle(session, settings_snapshot or raffle_settings)
    return _open


@pytest.fixture
def admit(session_factory, ledger):
    async def _admit(raffle_id, participant_id, amount=1, charge_id=None):
        async with transaction(session_factory) as session:
            return await ledger.admit(session, raffle_id, participant_id, amount, charge_id=charge_id)
    return _admit


@pytest.fixture
def completed_raffle(session_factory, ledger, open_raffle, admit):
    """Open a raffle, fill it with three participants and draw it."""
    async def _complete(ids=(101, 102, 103)):
        raffle = await open_raffle()
        for pid in ids:
            await admit(raffle.id, pid)
        async with transaction(session_factory) as session:
            return await ledger.complete(session, raffle.id)
    return _complete
