from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import logging

from config import settings
from audit_service import AuditService
from permissions import PermissionChecker
from billing_routes import create_billing_routes
from core.bill_transaction import BillTransactionCoordinator, TaxInputs
from core.memory_store import InMemoryBillStore
from core.mongo_store import MongoBillStore
from core.store import BillStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_store() -> BillStore:
    """MongoDB (replica set required for transactions) or the in-memory store"""
    if settings.store_backend == "memory":
        logger.warning("Using in-memory billing store; data is lost on restart")
        return InMemoryBillStore()
    client = AsyncIOMotorClient(settings.mongo_url)
    return MongoBillStore(client, client[settings.db_name])


def create_app(store: BillStore = None) -> FastAPI:
    store = store or build_store()

    # Initialize services
    audit_service = AuditService(store)
    permission_checker = PermissionChecker()
    coordinator = BillTransactionCoordinator(
        store,
        audit_service,
        TaxInputs(settings.home_jurisdiction, settings.gst_rate),
        invoice_prefix=settings.invoice_prefix
    )

    # Create the main app
    app = FastAPI(
        title="Storefront Billing Core",
        version="1.0.0",
        description="Bill Transaction Engine: atomic invoice, stock and payment reconciliation"
    )
    app.state.store = store
    app.state.coordinator = coordinator

    app.include_router(create_billing_routes(
        store,
        coordinator,
        audit_service,
        permission_checker,
        low_stock_threshold=settings.low_stock_threshold
    ))

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "store_backend": type(store).__name__}

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def ensure_indexes():
        await store.ensure_indexes()

    @app.on_event("shutdown")
    async def shutdown_db_client():
        store.close()

    return app


app = create_app()
