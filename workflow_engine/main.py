"""Main FastAPI application entry point."""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from workflow_engine.config import get_settings
from workflow_engine.database import engine, Base, SessionLocal
from workflow_engine.api.routes import router
from workflow_engine.errors import StoreUnavailableError
from workflow_engine.logging_config import setup_app_logging
# Import models to register them with SQLAlchemy Base
from workflow_engine.models.domain import WorkItem
from workflow_engine.models.audit import AuditEntry
from workflow_engine.services.sla import expire_breached
from workflow_engine.timeutil import utcnow

settings = get_settings()
setup_app_logging(settings)
logger = logging.getLogger(__name__)

# Create database tables
Base.metadata.create_all(bind=engine)


def run_sla_sweep():
    """One SLA tick: expire overdue items in a fresh session."""
    db = SessionLocal()
    try:
        return expire_breached(db, utcnow())
    finally:
        db.close()


async def _sla_tick_loop(interval_seconds: int):
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await run_in_threadpool(run_sla_sweep)
        except StoreUnavailableError:
            logger.warning("SLA tick skipped: store unavailable", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    tick = None
    if settings.sla_tick_seconds > 0:
        logger.info("SLA tick enabled every %d second(s)", settings.sla_tick_seconds)
        tick = asyncio.create_task(_sla_tick_loop(settings.sla_tick_seconds))
    yield
    if tick is not None:
        tick.cancel()
        try:
            await tick
        except asyncio.CancelledError:
            pass


# Create FastAPI app
app = FastAPI(
    title="Ops Console Workflow Engine",
    description="Approval and exception workflow shared by compliance, merchandising, finance and procurement screens.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(router, prefix="/api", tags=["Workflow"])


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
    return JSONResponse(status_code=503, content={"success": False, "error": exc.to_dict()})


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "workflow-engine"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
