from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from agenda.config import settings
from agenda.exceptions import EntitlementError
from agenda.api import catalog, customers, entitlements
import os
import time
import asyncio
import logging

logger = logging.getLogger(__name__)


def get_db_resources():
    from agenda.database import engine, Base, connect_with_retry
    return engine, Base, connect_with_retry


async def initialize_db():
    """Background task to create tables without blocking app startup"""
    if os.getenv("SKIP_DB_INIT"):
        logger.info("Skipping database initialization (SKIP_DB_INIT set)")
        return

    engine, Base, connect_with_retry = get_db_resources()

    logger.info("Waiting for the database to accept connections...")
    if await asyncio.to_thread(connect_with_retry, max_retries=15, delay=3):
        try:
            # Import all models so Base knows about them
            import agenda.models.auth
            import agenda.models.customer
            import agenda.models.service
            import agenda.models.package
            import agenda.models.customer_package

            await asyncio.to_thread(Base.metadata.create_all, bind=engine)
            logger.info("Database schema is up to date.")
        except Exception as e:
            logger.error(f"SCHEMA ERROR: {e}", exc_info=True)
    else:
        logger.critical("DATABASE UNREACHABLE: Background initialization failed.")


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.start_time = time.time()
    asyncio.create_task(initialize_db())
    yield


app = FastAPI(
    title="Agenda Packages",
    description="Service packages, session balances and renewals for small service businesses",
    version="1.0.0",
    lifespan=lifespan
)


@app.exception_handler(EntitlementError)
async def entitlement_exception_handler(request: Request, exc: EntitlementError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code, "context": exc.detail}
    )


# Global Exception Handler to prevent raw text "Internal Server Error"
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"GLOBAL ERROR: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": str(exc), "type": type(exc).__name__, "status": "error"}
    )


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(customers.router)
app.include_router(catalog.router)
app.include_router(entitlements.router)


@app.get("/api/v1/health")
def health_check():
    """Service and database health"""
    from agenda.database import check_database_health

    database_ok = check_database_health()
    uptime = time.time() - getattr(app.state, "start_time", time.time())
    return {
        "status": "healthy" if database_ok else "degraded",
        "database": "connected" if database_ok else "unreachable",
        "uptime_seconds": round(uptime, 1),
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
