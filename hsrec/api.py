from __future__ import annotations

"""
FastAPI binding for the recommender.

A thin transport layer: it builds (or receives) an engine, exposes
``recommend``, ``lookup`` and health over HTTP, and maps the engine's
error kinds to status codes.  No ranking logic lives here.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel, Field

from .config import CORPUS_PATH, DEFAULT_K, ClassificationEntry, HealthResponse, Recommendation
from .engine import RecommendationEngine
from .errors import EngineNotReadyError, InvalidConfigError, InvalidQueryError, NotFoundError


class RecommendRequest(BaseModel):
    query: str
    k: int = DEFAULT_K
    alpha: Optional[float] = Field(default=None)
    augment: bool = True


def create_app(engine: Optional[RecommendationEngine] = None) -> FastAPI:
    """
    Build the app.  Without an ``engine`` one is created from the
    environment at startup and loaded from ``HSREC_CORPUS_PATH``.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.engine is None
        if owned:
            logger.info("Starting app warmup...")
            eng = RecommendationEngine.from_env()
            try:
                eng.load(CORPUS_PATH)
            except Exception as e:
                logger.error("Corpus load failed at startup: {}", e)
                raise
            app.state.engine = eng
            logger.info("Warmup complete.")
        yield
        if owned:
            app.state.engine.close()

    app = FastAPI(title="hsrec", lifespan=lifespan)
    app.state.engine = engine
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _engine() -> RecommendationEngine:
        eng = app.state.engine
        if eng is None or not eng.ready:
            raise HTTPException(status_code=503, detail="Corpus not loaded")
        return eng

    @app.get("/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        eng = app.state.engine
        if eng is None:
            return HealthResponse(status="not_loaded")
        return eng.status()

    @app.post("/recommend", response_model=Recommendation)
    def recommend(req: RecommendRequest) -> Recommendation:
        eng = _engine()
        try:
            return eng.recommend(req.query, k=req.k, alpha=req.alpha, augment=req.augment)
        except (InvalidQueryError, InvalidConfigError) as e:
            raise HTTPException(status_code=422, detail=str(e))
        except EngineNotReadyError as e:
            raise HTTPException(status_code=503, detail=str(e))

    @app.get("/codes/{code}", response_model=ClassificationEntry)
    def lookup(code: str) -> ClassificationEntry:
        eng = _engine()
        try:
            return eng.lookup(code)
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))

    return app


# uvicorn hsrec.api:app
app = create_app()
