import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from healthlens.config import get_settings
from healthlens.core.redis import close_redis
from healthlens.routers import analysis
from healthlens.services.analysis_cache import build_analysis_cache
from healthlens.services.gateway import AnalysisGateway
from healthlens.services.genai_client import get_client, is_configured

logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    cache = await build_analysis_cache(settings)
    if is_configured(settings):
        app.state.gateway = AnalysisGateway(get_client(settings), cache, settings)
        logger.info("Analysis gateway ready (cache: %s)", cache.backend)
    else:
        app.state.gateway = None
        logger.warning("No Gemini credentials configured; analysis endpoints will return 503")
    try:
        yield
    finally:
        await close_redis()


app = FastAPI(title="HealthLens API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(analysis.router)


@app.get("/")
def root():
    return {"message": "HealthLens API", "docs": "/docs"}
