"""Pytest fixtures for testing"""

import asyncio
from datetime import datetime, timezone
from typing import Callable, Generator, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from bnpl_scheduler.api.dependencies import get_clock, get_gateway
from bnpl_scheduler.api.main import create_app
from bnpl_scheduler.config import Settings
from bnpl_scheduler.domain.clock import FixedClock
from bnpl_scheduler.domain.models import ChargeReceipt
from bnpl_scheduler.infrastructure.database.models import Base, Installment, InstallmentEvent, OutboundNotification
from bnpl_scheduler.infrastructure.database.repositories import TransactionRepository, as_uuid
from bnpl_scheduler.infrastructure.database.session import get_session_factory
from bnpl_scheduler.services.batch import BatchProcessor
from bnpl_scheduler.services.early_payment import EarlyPaymentService
from bnpl_scheduler.services.payment_methods import PaymentMethodService
from bnpl_scheduler.services.scheduler import EnterpriseScheduler


class FakeGateway:
    """In-memory gateway; queue exceptions in `failures` to make the next charges fail"""

    def __init__(self):
        self.charges: List[dict] = []
        self.refunds: List[dict] = []
        self.instruments: List[str] = []
        self.failures: list = []
        self.instrument_error: Optional[Exception] = None
        self.refund_error: Optional[Exception] = None
        self.delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0

    async def charge_stored_instrument(self, customer_ref, instrument_ref, amount_cents, metadata):
        self.charges.append(
            {
                "customer_ref": customer_ref,
                "instrument_ref": instrument_ref,
                "amount_cents": amount_cents,
                "metadata": metadata,
            }
        )
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.failures:
                error = self.failures.pop(0)
                if error is not None:
                    raise error
        finally:
            self.in_flight -= 1
        return ChargeReceipt(charge_ref=f"ch_{len(self.charges)}", status="succeeded")

    async def create_reusable_instrument(self, customer_ref):
        if self.instrument_error is not None:
            raise self.instrument_error
        self.instruments.append(customer_ref)
        return f"pi_{customer_ref}"

    async def refund_charge(self, charge_ref, amount_cents=None):
        if self.refund_error is not None:
            raise self.refund_error
        self.refunds.append({"charge_ref": charge_ref, "amount_cents": amount_cents})
        return f"re_{charge_ref}"


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def test_settings() -> Settings:
    """Deterministic settings: no jitter, no pauses between batches"""
    return Settings(
        database_url="sqlite://",
        retry_jitter_ratio=0.0,
        batch_pause_seconds=0.0,
        gateway_timeout_seconds=1.0,
        notification_max_retries=2,
        notification_backoff_base=0.0,
    )


@pytest.fixture
def session_factory(tmp_path) -> Generator[sessionmaker, None, None]:
    """Create test database and session factory"""
    engine = create_engine(f"sqlite:///{tmp_path}/test.db", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def scheduler(session_factory, gateway, clock, test_settings) -> EnterpriseScheduler:
    return EnterpriseScheduler(session_factory, gateway, clock, test_settings)


@pytest.fixture
def processor(session_factory, gateway, clock, test_settings) -> BatchProcessor:
    return BatchProcessor(session_factory, gateway, clock, test_settings, sleep=no_sleep)


@pytest.fixture
def early_payments(session_factory, gateway, clock, test_settings) -> EarlyPaymentService:
    return EarlyPaymentService(session_factory, gateway, clock, test_settings)


@pytest.fixture
def payment_methods(session_factory) -> PaymentMethodService:
    return PaymentMethodService(session_factory)


@pytest.fixture
def make_transaction(session_factory) -> Callable[..., str]:
    """Persist a transaction and return its id"""

    def _make(
        amount_cents: int = 30000,
        payment_plan: str = "pay_in_3",
        merchant_id: str = "merchant_1",
        customer_id: str = "customer_1",
        card_amount_cents: Optional[int] = None,
    ) -> str:
        db = session_factory()
        try:
            transaction = TransactionRepository(db).create_transaction(
                merchant_id=merchant_id,
                customer_id=customer_id,
                amount_cents=amount_cents,
                payment_plan=payment_plan,
                card_amount_cents=amount_cents if card_amount_cents is None else card_amount_cents,
            )
            db.commit()
            return str(transaction.id)
        finally:
            db.close()

    return _make


@pytest.fixture
def fetch_installments(session_factory) -> Callable[[str], List[Installment]]:
    """Fresh read of a transaction's installments, ordered by number"""

    def _fetch(transaction_id: str) -> List[Installment]:
        db = session_factory()
        try:
            return (
                db.query(Installment)
                .filter(Installment.transaction_id == as_uuid(transaction_id))
                .order_by(Installment.installment_number)
                .all()
            )
        finally:
            db.close()

    return _fetch


@pytest.fixture
def fetch_events(session_factory) -> Callable[[str], List[InstallmentEvent]]:
    def _fetch(transaction_id: str) -> List[InstallmentEvent]:
        db = session_factory()
        try:
            return db.query(InstallmentEvent).filter(InstallmentEvent.transaction_id == as_uuid(transaction_id)).all()
        finally:
            db.close()

    return _fetch


@pytest.fixture
def fetch_notifications(session_factory) -> Callable[[str], List[OutboundNotification]]:
    def _fetch(event_type: str) -> List[OutboundNotification]:
        db = session_factory()
        try:
            return db.query(OutboundNotification).filter(OutboundNotification.event_type == event_type).all()
        finally:
            db.close()

    return _fetch


@pytest.fixture
def client(session_factory, gateway, clock) -> TestClient:
    """Create FastAPI test client wired to the test database, fake gateway and fixed clock"""
    app = create_app()
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_clock] = lambda: clock
    return TestClient(app)
