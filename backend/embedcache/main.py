"""Application bootstrap for the local embedding cache API.

Functions:
    lifespan(app: FastAPI): Create the cache schema (and optionally load the model) on startup.
    health_check(): Lightweight readiness probe used by monitoring and local smoke tests.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from embedcache.api import api_router
from embedcache.core.config import get_settings
from embedcache.db.session import init_db
from embedcache.services import get_model_coordinator

settings = get_settings()
_LOGGER = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    if settings.preload_model:
        _LOGGER.info("Preloading embedding model %s", settings.embedding_model)
        await get_model_coordinator().preload()
    yield
    get_model_coordinator().unload()


app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)


@app.get("/health")
async def health_check():
    return {"status": "ok"}
