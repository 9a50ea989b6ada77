"""
Lock Repository - Redis locks that serialize reconciliations

Two requests carrying the same email or the same phone number never
reconcile at the same time: each takes one lock per submitted value,
always in sorted key order, and holds them until its transaction ends.
"""
from contextlib import contextmanager
from typing import Iterator, List, Optional
import os

import redis
import structlog

from core.contact_model import ContactHelper
from core.errors import ReconciliationTimeout, StoreUnavailable
from repositories.contact_repository import transaction_budget_seconds

logger = structlog.get_logger()


class LockRepository:
    """Per-value reconciliation locks"""

    KEY_PREFIX = 'identify'

    def __init__(
        self,
        host: str = None,
        port: int = None,
        client: redis.Redis = None,
        timeout: float = None,
        blocking_timeout: float = None
    ):
        self.client = client or redis.Redis(
            host=host or os.getenv('REDIS_HOST', 'localhost'),
            port=int(port or os.getenv('REDIS_PORT', '6379')),
            db=int(os.getenv('REDIS_DB', '0')),
            decode_responses=True
        )
        # Lock lifetime: an abandoned lock frees itself after this many seconds.
        # Defaults to the transaction budget: statement_timeout ends a
        # reconciliation before its lock expires.
        budget = transaction_budget_seconds()
        lock_timeout = timeout or os.getenv('IDENTIFY_LOCK_TIMEOUT_SECONDS')
        self.timeout = float(lock_timeout) if lock_timeout else budget
        if self.timeout < budget:
            logger.warning("identify_lock_shorter_than_transaction", lock_timeout=self.timeout, budget=budget)
        # How long a request may wait for a lock before giving up
        self.blocking_timeout = float(blocking_timeout or os.getenv('IDENTIFY_LOCK_WAIT_SECONDS', '10'))

    @classmethod
    def lock_names(cls, email: Optional[str], phone: Optional[str]) -> List[str]:
        """Lock keys for a submitted pair; values are hashed, never stored raw"""
        names = []
        if email is not None:
            names.append(f"{cls.KEY_PREFIX}:email:{ContactHelper.hash_value(email)}")
        if phone is not None:
            names.append(f"{cls.KEY_PREFIX}:phone:{ContactHelper.hash_value(phone)}")
        return sorted(names)

    @contextmanager
    def hold(self, email: Optional[str], phone: Optional[str]) -> Iterator[None]:
        """Hold every lock for the pair; released on all exit paths"""
        acquired = []
        try:
            for name in self.lock_names(email, phone):
                lock = self.client.lock(
                    name,
                    timeout=self.timeout,
                    blocking_timeout=self.blocking_timeout
                )
                try:
                    got_it = lock.acquire()
                except redis.RedisError as e:
                    raise StoreUnavailable("Lock store unavailable") from e
                if not got_it:
                    logger.warning("identify_lock_timeout", lock=name, waited=self.blocking_timeout)
                    raise ReconciliationTimeout(f"Timed out waiting for {name}")
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                self._release(lock)

    @staticmethod
    def _release(lock):
        try:
            lock.release()
        except redis.RedisError as e:
            # Expired or lost; the lock timeout already freed it
            logger.warning("identify_lock_release_failed", lock=lock.name, error=str(e))
