import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

from content_engine.settings import settings
from content_engine.auth.security import require_admin
from content_engine.api.v1.jobs import router as jobs_router
from content_engine.api.v1.workers import router as workers_router
from content_engine.api.v1.admin import router as admin_router
from content_engine.api.v1.metrics import router as metrics_router

logging.basicConfig(level=settings.LOG_LEVEL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    from content_engine.scheduler.service import SchedulerService
    from content_engine.services.outbox import OutboxProcessor
    from content_engine.db.session import engine, queue_engine, init_models

    logger = logging.getLogger("uvicorn")

    # 1. Schema (idempotent create_all)
    try:
        await init_models(engine, queue_engine)
    except Exception as e:
        # Keep serving; readers degrade and the scheduler retries its work each tick.
        logger.error(f"Schema bootstrap failed: {e}")

    # 2. Start Scheduler (Reaper/Outbox sweep/Status file)
    scheduler = SchedulerService()
    await scheduler.start()

    # 3. Start Outbox relay
    outbox = OutboxProcessor(queue=scheduler.queue)
    await outbox.start()

    yield

    # Shutdown
    await scheduler.stop()
    await outbox.stop()

app = FastAPI(
    title=settings.PROJECT_NAME,
    lifespan=lifespan
)

app.include_router(jobs_router, prefix="/api/v1/jobs", tags=["jobs"], dependencies=[Depends(require_admin)])
app.include_router(workers_router, prefix="/api/v1/workers", tags=["workers"], dependencies=[Depends(require_admin)])
app.include_router(admin_router, prefix="/api/v1/admin", tags=["admin"], dependencies=[Depends(require_admin)])
app.include_router(metrics_router, tags=["metrics"])

@app.get("/health")
async def health():
    return {"status": "ok"}
