"""HTTP surface for the recommendation engine."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request

from . import database
from .config import EngineConfig
from .engine import RecommendationEngine, RecommendationRequest
from .exceptions import InvalidRequest, NotFound, StoreUnavailable
from .store import SQLiteRecommendationStore
from .utils import parse_languages

logger = logging.getLogger(__name__)


def build_engine() -> RecommendationEngine:
    return RecommendationEngine(SQLiteRecommendationStore(), EngineConfig.from_env())


def create_app(engine: RecommendationEngine | None = None) -> FastAPI:
    """
    Build the FastAPI app.

    Without an explicit engine the lifespan hook initializes the database and
    wires the SQLite-backed engine; the pool is closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if engine is None:
            database.init_db()
            app.state.engine = build_engine()
        else:
            app.state.engine = engine
        logger.info("Recommendation service started")
        yield
        if engine is None:
            database.close_pool()
        logger.info("Recommendation service stopped")

    app = FastAPI(title="Video Recommendations API", lifespan=lifespan)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/recs", response_model=list[int])
    def get_recommendations(
        request: Request,
        languages: str = Query(..., description="Comma separated, highest priority first"),
        size: int = Query(...),
        userId: Optional[str] = Query(None),
        page: int = Query(0),
    ):
        """Up to `size` distinct video ids in random order."""
        rec_engine = request.app.state.engine
        try:
            rec_request = RecommendationRequest(
                user_id=userId,
                page=page,
                languages=parse_languages(languages),
                size=size,
            )
            return rec_engine.get_recommendations(rec_request)
        except NotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except InvalidRequest as e:
            raise HTTPException(status_code=400, detail=str(e))
        except StoreUnavailable:
            raise HTTPException(status_code=503, detail="Recommendation store unavailable")

    return app
