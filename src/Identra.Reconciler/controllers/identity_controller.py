"""
Identity Controller - HTTP route handlers
"""
from fastapi import HTTPException
from typing import Dict
import os

import structlog

from core.errors import ReconciliationError, StoreConflict
from models.requests import IdentifyRequest
from services.identity_service import IdentityReconciler

logger = structlog.get_logger()


class IdentityController:
    """Controller for identity endpoints"""

    def __init__(self, reconciler: IdentityReconciler, max_attempts: int = None):
        self.reconciler = reconciler
        # Serialization conflicts are retried here, at the request boundary
        self.max_attempts = max(1, int(max_attempts or os.getenv('IDENTIFY_MAX_ATTEMPTS', '3')))

    def identify(self, request: IdentifyRequest) -> Dict:
        """POST /identify"""
        attempt = 0
        while True:
            attempt += 1
            try:
                view = self.reconciler.identify(request.email, request.phone_number)
                return view.to_dict()
            except StoreConflict as e:
                if attempt < self.max_attempts:
                    logger.info("identify_retry", attempt=attempt, reason=e.code)
                    continue
                raise self._to_http(e)
            except ReconciliationError as e:
                raise self._to_http(e)

    def health(self) -> Dict:
        """GET /health"""
        checks = {
            "postgres": self.reconciler.contact_repo.ping,
            "redis": self.reconciler.sequence_repo.ping,
        }
        if self.reconciler.audit_repo is not None:
            checks["clickhouse"] = self.reconciler.audit_repo.ping

        status = {}
        try:
            for name, check in checks.items():
                check()
                status[name] = "ok"
            return {"status": "healthy", **status}
        except Exception as e:
            return {"status": "unhealthy", **status, "error": str(e)}

    @staticmethod
    def _to_http(error: ReconciliationError) -> HTTPException:
        if error.status_code >= 500:
            logger.error(
                "identify_failed",
                code=error.code,
                error=error.message,
                cause=repr(error.__cause__) if error.__cause__ else None,
                **error.meta
            )
        else:
            logger.info("identify_rejected", code=error.code, error=error.message)
        return HTTPException(status_code=error.status_code, detail=error.public_detail)
