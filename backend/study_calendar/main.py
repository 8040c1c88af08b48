import logging
from typing import Any, Dict

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .calendar_routes import router as calendar_router
from .config import Settings, get_settings
from .db.monitoring import get_pool_snapshot
from .db.session import get_engine
from .logging_config import configure_logging


configure_logging()
logger = logging.getLogger(__name__)
app = FastAPI(title="Study Calendar Engine", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(calendar_router)

logger.info("Calendar engine starting; database configured: %s", bool(get_settings().database_url))


@app.get("/healthz")
def health(settings: Settings = Depends(get_settings)) -> Dict[str, str]:
    return {"status": "ok", "database": "configured" if settings.database_url else "missing"}


@app.get("/healthz/database")
def database_health() -> Dict[str, Any]:
    try:
        engine = get_engine()
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except RuntimeError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except SQLAlchemyError as exc:
        logger.warning("Database health check failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database is unreachable.",
        ) from exc
    return {"status": "ok", "pool": get_pool_snapshot(engine)}
