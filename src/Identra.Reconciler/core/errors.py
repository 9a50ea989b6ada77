"""
Reconciliation error types.

Each error carries a stable `code`, the HTTP `status_code` the controller
answers with, and a `public_detail` that is safe to show callers.
"""

from typing import Any, Dict, Optional


class ReconciliationError(Exception):
    """Base error for the identify flow"""

    code = "identify.failed"
    status_code = 500
    public_message = "Internal Server Error"

    def __init__(self, message: str, meta: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.meta = dict(meta or {})

    @property
    def public_detail(self) -> str:
        return self.public_message


class ValidationFault(ReconciliationError):
    """Neither email nor phoneNumber was submitted"""

    code = "identify.invalid_input"
    status_code = 400

    @property
    def public_detail(self) -> str:
        return self.message


class ConsistencyFault(ReconciliationError):
    """Cluster expansion found no record to act as primary"""

    code = "identify.inconsistent_cluster"


class IdGenerationFault(ReconciliationError):
    """The id allocator could not hand out a new id"""

    code = "identify.id_generation_failed"


class StoreUnavailable(ReconciliationError):
    """A contact store (or lock store) query or update failed"""

    code = "identify.store_unavailable"


class StoreConflict(ReconciliationError):
    """A concurrent reconciliation touched the same clusters; safe to retry"""

    code = "identify.store_conflict"
    status_code = 503
    public_message = "Service Unavailable"


class ReconciliationTimeout(ReconciliationError):
    """The request could not take its reconciliation locks in time"""

    code = "identify.lock_timeout"
    status_code = 503
    public_message = "Service Unavailable"
