import logging
from typing import Any, Dict

from fastapi import Depends, FastAPI, HTTPException
from sqlalchemy import text

from .config import Settings, get_settings
from .db.monitoring import get_pool_snapshot
from .db.session import get_engine
from .logging_config import configure_logging
from .telemetry_pipeline import install as install_telemetry_pipeline


configure_logging()
install_telemetry_pipeline()
logger = logging.getLogger(__name__)
app = FastAPI(title="StudyFlow Backend", version="0.1.0")


@app.get("/healthz")
def health(settings: Settings = Depends(get_settings)) -> Dict[str, str]:
    return {"status": "ok", "school_timezone": settings.school_timezone}


@app.get("/healthz/database")
def database_health(settings: Settings = Depends(get_settings)) -> Dict[str, Any]:
    try:
        engine = get_engine()
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except Exception as exc:  # noqa: BLE001
        logger.warning("Database health check failed: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {
        "status": "ok",
        "school_timezone": settings.school_timezone,
        "pool": get_pool_snapshot(engine),
    }
