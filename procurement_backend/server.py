from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import logging

from procurement_backend import settings
from procurement_backend.audit_service import AuditService
from procurement_backend.core.dependency_resolver import DependencyResolver
from procurement_backend.core.lifecycle_mutator import LifecycleMutator
from procurement_backend.core.recalculation_engine import RecalculationEngine
from procurement_backend.core.split_payment_processor import SplitPaymentProcessor
from procurement_backend.lifecycle_routes import lifecycle_router
from procurement_backend.permissions import PermissionChecker

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def create_app(client=None, db=None) -> FastAPI:
    """
    Build the API with every engine service wired onto app.state.

    A client/db pair may be injected (tests); otherwise MONGO_URL is used.
    """
    if client is None:
        client = AsyncIOMotorClient(settings.MONGO_URL)
    if db is None:
        db = client[settings.DB_NAME]

    app = FastAPI(title="Procurement Lifecycle Engine")

    audit = AuditService(db)
    resolver = DependencyResolver(db)
    recalc = RecalculationEngine(client, db, audit)
    permissions = PermissionChecker()

    app.state.client = client
    app.state.db = db
    app.state.audit = audit
    app.state.resolver = resolver
    app.state.recalc = recalc
    app.state.permissions = permissions
    app.state.mutator = LifecycleMutator(client, db, resolver, recalc, audit, permissions)
    app.state.payments = SplitPaymentProcessor(client, db, audit)

    app.include_router(lifecycle_router)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def create_indexes():
        await audit.create_indexes()
        logger.info(f"Lifecycle engine ready on database '{settings.DB_NAME}'")

    @app.on_event("shutdown")
    async def shutdown_db_client():
        client.close()

    return app
