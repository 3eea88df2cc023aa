import logging
from typing import Any, Dict

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import RedirectResponse
from sqlalchemy import text

from .auth_routes import router as auth_router
from .config import Settings, get_settings
from .db.session import get_engine
from .logging_config import configure_logging
from .onboarding_routes import router as onboarding_router
from .server_auth import RedirectRequired, redirect


configure_logging()
logger = logging.getLogger(__name__)
app = FastAPI(title="Aula Web Backend", version="0.1.0")

settings_snapshot = get_settings()
logger.info("Backend starting in %s mode", settings_snapshot.environment)
logger.info("Supabase configured: %s", settings_snapshot.remote_configured)

app.include_router(auth_router)
app.include_router(onboarding_router)


@app.exception_handler(RedirectRequired)
async def redirect_required_handler(request: Request, exc: RedirectRequired) -> RedirectResponse:
    logger.debug("Redirecting %s to %s", request.url.path, exc.location)
    return redirect(exc.location, carry=exc.carry, status_code=303)


@app.get("/healthz")
def health(settings: Settings = Depends(get_settings)) -> Dict[str, Any]:
    return {
        "status": "ok",
        "environment": settings.environment,
        "storage_mode": settings.storage_mode,
        "remote_configured": settings.remote_configured,
    }


@app.get("/healthz/database")
def database_health(settings: Settings = Depends(get_settings)) -> Dict[str, Any]:
    try:
        engine = get_engine()
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except Exception as exc:  # noqa: BLE001
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"status": "ok", "storage_mode": settings.storage_mode}
