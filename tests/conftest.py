from contextlib import contextmanager
from datetime import datetime
import threading

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.pool import StaticPool

from core.contact_model import Contact, LinkPrecedence
from repositories.contact_repository import ContactRepository, contacts
from repositories.lock_repository import LockRepository
from services.identity_service import IdentityReconciler


class CountingSequence:
    """Hands out 1, 2, 3, ... like a fresh Redis counter"""

    def __init__(self):
        self.value = 0
        self.names = []

    def next(self, sequence_name):
        self.names.append(sequence_name)
        self.value += 1
        return self.value

    def ping(self):
        return True


class RecordingLocks:
    """Takes no real locks, remembers which ones were asked for"""

    def __init__(self):
        self.requested = []

    @contextmanager
    def hold(self, email, phone):
        self.requested.append(LockRepository.lock_names(email, phone))
        yield


class ThreadLock:
    """One named lock handed out by ThreadLockClient"""

    def __init__(self, name, inner, blocking_timeout):
        self.name = name
        self._inner = inner
        self._blocking_timeout = blocking_timeout

    def acquire(self):
        wait = -1 if self._blocking_timeout is None else self._blocking_timeout
        return self._inner.acquire(timeout=wait)

    def release(self):
        self._inner.release()


class ThreadLockClient:
    """In-process stand-in for redis.Redis.lock() that really blocks"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    def lock(self, name, timeout=None, blocking_timeout=None):
        with self._guard:
            inner = self._locks.setdefault(name, threading.Lock())
        return ThreadLock(name, inner, blocking_timeout)

    def held(self):
        with self._guard:
            return sorted(name for name, inner in self._locks.items() if inner.locked())


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield engine
    engine.dispose()


@pytest.fixture
def contact_repo(engine):
    return ContactRepository(engine=engine)


@pytest.fixture
def sequence():
    return CountingSequence()


@pytest.fixture
def locks():
    return RecordingLocks()


@pytest.fixture
def lock_client():
    return ThreadLockClient()


@pytest.fixture
def reconciler(contact_repo, sequence, locks):
    return IdentityReconciler(contact_repo, sequence, locks)


@pytest.fixture
def seed(contact_repo, sequence):
    """Insert a contact directly, bypassing reconciliation"""

    def _seed(contact_id, email, phone, precedence=LinkPrecedence.PRIMARY,
              linked_id=None, created_at=None, deleted_at=None):
        contact = Contact(
            id=contact_id,
            email=email,
            phone_number=phone,
            link_precedence=precedence,
            linked_id=linked_id,
            created_at=created_at or datetime(2024, 1, contact_id, 12, 0, 0),
            deleted_at=deleted_at,
        )
        with contact_repo.transaction() as tx:
            tx.insert(contact)
        sequence.value = max(sequence.value, contact_id)
        return contact

    return _seed


@pytest.fixture
def stored(engine):
    """Snapshot of the contacts table keyed by id"""

    def _stored():
        with engine.connect() as conn:
            rows = conn.execute(select(contacts).order_by(contacts.c.id)).fetchall()
        return {row.id: Contact.from_row(row) for row in rows}

    return _stored
