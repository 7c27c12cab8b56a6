"""Main FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from governance import config
from governance.database import SessionLocal, engine, init_db
from governance.api import accounts, routes
# Import models to register them with SQLAlchemy Base
from governance.models.domain import AdminAccount, BootstrapLock, LedgerSettings, PendingAction, Policy
from governance.models.audit import AuditEntry
from governance.models.identity import IdentityRecord, IdentityToken
from governance.services.bootstrap import IdentityBootstrap
from governance.api.deps import get_identity_authority
from governance.services.policy_store import PolicyStore

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s"
)
logger = logging.getLogger(__name__)

# Create database tables
init_db(engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Converge a bootstrap that crashed after setting the lock but before seeding
    db = SessionLocal()
    try:
        if IdentityBootstrap(db, get_identity_authority()).is_bootstrapped():
            PolicyStore(db).seed_defaults()
    finally:
        db.close()
    logger.info("governance_engine_started")
    yield


app = FastAPI(
    title="Governance Engine",
    description="Multi-party approval for irreversible administrative actions, "
                "backed by a hash-chained audit ledger.",
    version="0.1.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(routes.router, prefix="/api/governance", tags=["Governance"])
app.include_router(accounts.router, prefix="/api/auth", tags=["Accounts"])


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "Governance Engine"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
