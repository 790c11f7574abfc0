import logging
from fastapi import FastAPI
from .config import settings
from .flows.registry import FLOWS
from .routers import tasks

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

app = FastAPI(title="Mediaflow API", version="1.0.0",
              description="Queue media pipeline tasks and track their status")
app.include_router(tasks.router)

@app.get("/health")
async def health():
    return {"status": "ok", "task_types": sorted(FLOWS)}
