import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from storefront.core.config import settings

# 1. Infrastructure & Domain Imports
from storefront.infrastructure.database import Database
from storefront.infrastructure.ledger_client import SolanaRpcClient
from storefront.infrastructure.notification_service import NotificationService
from storefront.infrastructure.override_guard import OverrideGuard
from storefront.infrastructure.repositories.order_repository import SqlAlchemyOrderRepository
from storefront.application.confirmation_engine import ConfirmationEngine
from storefront.application.ledger_verifier import LedgerVerifier
from storefront.application.order_service import OrderService
from storefront.application.sweepers import (
    PendingPaymentMonitor, PendingTransactionVerifier, StaleDraftCleanup,
)
from storefront.interfaces import payment_routes
from storefront.interfaces.ILedgerClient import ILedgerClient
from storefront.interfaces.INotifier import INotifier

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_services(
    database: Database,
    notifier: INotifier | None = None,
    ledger_client: ILedgerClient | None = None,
    override_guard: OverrideGuard | None = None,
) -> dict:
    """Wires every component against one database. Shared by the API and the worker."""
    order_repo = SqlAlchemyOrderRepository(database.SessionLocal)
    notifier = notifier or NotificationService()
    engine = ConfirmationEngine(order_repo, notifier=notifier, override_guard=override_guard or OverrideGuard())
    verifier = LedgerVerifier(ledger_client or SolanaRpcClient())

    return {
        "order_repo": order_repo,
        "engine": engine,
        "order_service": OrderService(order_repo, engine),
        "cleanup": StaleDraftCleanup(order_repo),
        "monitor": PendingPaymentMonitor(order_repo),
        "transaction_verifier": PendingTransactionVerifier(order_repo, verifier, engine),
    }


def create_app(database: Database | None = None, **overrides) -> FastAPI:
    database = database or Database(settings.DATABASE_URL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # ---------------------------------------------------------
        # DATABASE CONNECTION (With Retry Logic)
        # ---------------------------------------------------------
        app.state.db_ready = database.connect_with_retry(
            settings.DB_CONNECT_RETRIES, settings.DB_CONNECT_WAIT_SECONDS
        )
        yield
        database.dispose()

    app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)
    app.state.database = database
    app.state.db_ready = False

    # ---------------------------------------------------------
    # COMPOSITION ROOT
    # ---------------------------------------------------------
    for name, service in build_services(database, **overrides).items():
        setattr(app.state, name, service)

    # Include Routers
    app.include_router(payment_routes.router)

    @app.get("/")
    def health_check():
        status = "active" if app.state.db_ready else "degraded"
        return {"status": status, "system": settings.PROJECT_NAME}

    return app


app = create_app()
