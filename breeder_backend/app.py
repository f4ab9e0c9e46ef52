import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from .routes import health, accounts, animals, transfers, public, notifications, admin
from .config import USE_POSTGRES, LOG_LEVEL
from .errors import TransferError, transfer_error_handler

logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Breeder Backend", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(TransferError, transfer_error_handler)

# Database initialization
if USE_POSTGRES:
    @app.on_event("startup")
    async def startup_event():
        """Initialize database connection pool on startup"""
        from .db_postgres import init_db_pool, init_schema
        await init_db_pool()
        await init_schema()

    @app.on_event("shutdown")
    async def shutdown_event():
        """Close database connection pool on shutdown"""
        from .db_postgres import close_db_pool
        await close_db_pool()
else:
    @app.on_event("startup")
    def startup_event():
        from .db import init_db
        init_db()

app.include_router(health.router)
app.include_router(accounts.router, tags=["accounts"])
app.include_router(transfers.router, tags=["transfers"])
app.include_router(public.router, tags=["public"])
app.include_router(admin.router, tags=["admin"])

# Animal editing and the notification inbox live on the SQLite store. A
# PostgreSQL deployment serves transfers, preferences, public reads and
# maintenance over animals written by another service.
if not USE_POSTGRES:
    app.include_router(animals.router, tags=["animals"])
    app.include_router(notifications.router, tags=["notifications"])
