"""
Shared fixtures for the enforcement pipeline tests.

Every test gets its own SQLite file database so that threaded tests see
real cross-connection contention, not a shared in-memory connection.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"

import threading
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.database import Base
from app.models.db_models import (
    UserDB, DeadlineUnitDB, UnitKind, UnitStatus,
)
from app.services.collaborators import (
    PaymentProcessor, ContentReleaseService, SocialConnector,
    ChargeResult, ReleaseResult, PostResult, Collaborators,
)


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'enforcer.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# CLOCK
# =============================================================================

class FakeClock:
    """Settable stand-in for datetime.utcnow."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 0, 5))


# =============================================================================
# FACTORIES
# =============================================================================

@pytest.fixture
def make_user(db):
    def _make_user(email=None):
        user = UserDB(id=str(uuid4()), email=email or f"{uuid4().hex[:8]}@example.com")
        db.add(user)
        db.commit()
        return user
    return _make_user


@pytest.fixture
def user(make_user):
    return make_user("owner@example.com")


@pytest.fixture
def make_unit(db, user):
    def _make_unit(
        deadline=datetime(2024, 1, 1, 0, 0),
        stakes=None,
        kind=UnitKind.CHECKPOINT,
        status=UnitStatus.PENDING,
        is_final=False,
        owner=None,
        title="Write chapter one",
    ):
        unit = DeadlineUnitDB(
            id=str(uuid4()),
            owner_id=(owner or user).id,
            kind=kind,
            title=title,
            deadline=deadline,
            status=status,
            is_final=is_final,
            stakes=stakes if stakes is not None else [MONETARY_STAKE],
        )
        db.add(unit)
        db.commit()
        return unit
    return _make_unit


MONETARY_STAKE = {"kind": "monetary", "amount": "10", "destination": "doctors_without_borders"}
CONTENT_STAKE = {"kind": "content_release", "content_ref": "uploads/photo-1.jpg"}
SOCIAL_STAKE = {"kind": "social_post", "platform_account_ref": "twitter:owner"}


def always(value):
    """A randbelow stand-in that always rolls `value`."""
    return lambda n: value


# =============================================================================
# COLLABORATOR FAKES
# =============================================================================

class FakePaymentProcessor(PaymentProcessor):
    """
    Deduplicates on the idempotency key like Stripe does.

    `failures` are raised in order before any effect. With
    `crash_after_effect`, the first call makes the transfer and then raises,
    like a connection dropped after the processor committed.
    """

    def __init__(self, failures=None, crash_after_effect=False, delay=0.0):
        self.calls = []
        self.transfers = {}
        self.failures = list(failures or [])
        self.crash_after_effect = crash_after_effect
        self.delay = delay
        self._lock = threading.Lock()

    @property
    def call_count(self):
        return len(self.calls)

    def charge(self, idempotency_key, amount: Decimal, destination):
        with self._lock:
            self.calls.append((idempotency_key, amount, destination))
            if self.failures:
                raise self.failures.pop(0)
            if idempotency_key not in self.transfers:
                self.transfers[idempotency_key] = f"tr_{len(self.transfers) + 1}"
            transfer_id = self.transfers[idempotency_key]
            if self.crash_after_effect:
                self.crash_after_effect = False
                raise ConnectionResetError("connection reset after transfer")
        if self.delay:
            threading.Event().wait(self.delay)
        return ChargeResult(transaction_id=transfer_id)


class FakeContentReleaseService(ContentReleaseService):
    def __init__(self, failures=None):
        self.calls = []
        self.failures = list(failures or [])

    def release(self, idempotency_key, content_ref, recipient_selection, severity=None):
        self.calls.append((idempotency_key, content_ref, recipient_selection, severity))
        if self.failures:
            raise self.failures.pop(0)
        return ReleaseResult(delivery_id=f"dl_{idempotency_key[:8]}", recipient_id="contact_7")


class FakeSocialConnector(SocialConnector):
    def __init__(self, failures=None):
        self.calls = []
        self.failures = list(failures or [])

    def post(self, idempotency_key, account_ref, content):
        self.calls.append((idempotency_key, account_ref, content))
        if self.failures:
            raise self.failures.pop(0)
        return PostResult(post_id="1500", post_url="https://twitter.com/owner/status/1500")


@pytest.fixture
def collaborators():
    return Collaborators(
        payment=FakePaymentProcessor(),
        content=FakeContentReleaseService(),
        social=FakeSocialConnector(),
    )


def run_concurrently(fn, count):
    """Start `count` threads on a barrier; return results and re-raise the first error."""
    barrier = threading.Barrier(count)
    results = [None] * count
    errors = []

    def worker(i):
        barrier.wait()
        try:
            results[i] = fn(i)
        except Exception as e:  # surfaced to the test below
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(60)
    if errors:
        raise errors[0]
    return results
