from fastapi import FastAPI

from .api import health, timesync

app = FastAPI(title="Timekeeper")

app.include_router(health.router, prefix="/health", tags=["health"])
app.include_router(timesync.router, prefix="/timesync", tags=["timesync"])
