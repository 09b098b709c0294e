import logging

from fastapi import FastAPI

from creative_engine.api import router
from creative_engine.experiment_api import experiment_router
from creative_engine.settings import settings

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Creative Engine", version="0.1.0")
app.include_router(router)
app.include_router(experiment_router)
