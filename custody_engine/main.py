from contextlib import asynccontextmanager
from fastapi import FastAPI
from .config import settings
from .logging import setup_logging
from .api.routes import router as api_router
from .pipeline.scheduler import schedule_jobs, shutdown_scheduler

setup_logging()

@asynccontextmanager
async def lifespan(_app: FastAPI):
    if settings.scheduler_enabled:
        schedule_jobs()
    yield
    shutdown_scheduler()

app = FastAPI(title="custody-engine", lifespan=lifespan)
app.include_router(api_router)
