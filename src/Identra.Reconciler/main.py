"""
Identra Reconciler API

Resolves submitted (email, phone) pairs to one canonical contact identity.
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import logging
import os

import structlog

from controllers.identity_controller import IdentityController
from models.requests import IdentifyRequest
from models.responses import IdentifyResponse
from repositories.audit_repository import AuditRepository
from repositories.contact_repository import ContactRepository
from repositories.lock_repository import LockRepository
from repositories.sequence_repository import CONTACT_SEQUENCE, SequenceRepository
from services.identity_service import IdentityReconciler

SERVICE_NAME = "Identra Reconciler API"
SERVICE_VERSION = "1.0.0"

_LOG_LEVEL_MAP = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer()
        if os.getenv('LOG_FORMAT', 'json') == 'json'
        else structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        _LOG_LEVEL_MAP.get(os.getenv('LOG_LEVEL', 'info').lower(), logging.INFO)
    ),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


def build_reconciler() -> IdentityReconciler:
    """Wire the reconciler from environment configuration"""
    contact_repo = ContactRepository()
    sequence_repo = SequenceRepository()
    sequence_repo.ensure_floor(CONTACT_SEQUENCE, contact_repo.max_id())
    lock_repo = LockRepository(client=sequence_repo.client)

    audit_repo = None
    if os.getenv('AUDIT_ENABLED', 'false').lower() in ('1', 'true', 'yes'):
        audit_repo = AuditRepository()

    return IdentityReconciler(contact_repo, sequence_repo, lock_repo, audit_repo)


def create_app(reconciler: IdentityReconciler = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.reconciler = reconciler or build_reconciler()
        app.state.controller = IdentityController(app.state.reconciler)
        logger.info(
            "service_started",
            service=SERVICE_NAME,
            version=SERVICE_VERSION,
            audit=app.state.reconciler.audit_repo is not None
        )
        yield
        logger.info("service_stopping", service=SERVICE_NAME)
        app.state.reconciler.contact_repo.close()

    app = FastAPI(
        title=SERVICE_NAME,
        version=SERVICE_VERSION,
        description="Contact identity reconciliation",
        lifespan=lifespan
    )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        # Malformed bodies are client errors, same status as a missing pair
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    @app.get("/")
    def root():
        return {
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "status": "running",
            "endpoints": {
                "identify": "/identify",
                "health": "/health"
            }
        }

    @app.get("/health")
    def health_check(request: Request):
        return request.app.state.controller.health()

    @app.post("/identify", response_model=IdentifyResponse)
    def identify(payload: IdentifyRequest, request: Request):
        """
        Reconcile an (email, phoneNumber) pair.

        - No match: a new primary contact is created
        - New email or phone on a known identity: a secondary is added
        - Pair bridging two identities: the newer primary is demoted
        """
        return request.app.state.controller.identify(payload)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv('PORT', '8000')))
