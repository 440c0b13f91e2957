import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine.url import make_url

from crmgate.auth.router import router as auth_router
from crmgate.auth.router import user_router
from crmgate.auth.security import ACCESS_TOKEN_TTL, REFRESH_TOKEN_TTL
from crmgate.cache.store import build_cache
from crmgate.core.config import settings
from crmgate.core.errors import register_exception_handlers
from crmgate.crm.client import CrmError
from crmgate.db.init_db import init_db
from crmgate.db.session import ping_database
from crmgate.permissions.router import router as permissions_router

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL, logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(
    title="CRM Identity Gateway",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)

# One cache client per process, handed to services through request.app.state.
app.state.cache = build_cache()

register_exception_handlers(app)


@app.exception_handler(CrmError)
async def handle_crm_error(request: Request, exc: CrmError):
    logger.warning("CRM failure on %s %s: %s (status=%s)", request.method, request.url.path, exc, exc.status)
    return JSONResponse(status_code=502, content={"detail": "CRM unavailable", "code": "crm_unavailable"})


@app.on_event("startup")
def on_startup() -> None:
    db_url = make_url(settings.DATABASE_URL)
    logger.info(
        "Config sanity: env=%s db_host=%s cache=%s cors_origins=%s access_ttl=%s refresh_ttl=%s",
        settings.ENV,
        db_url.host or "local",
        type(app.state.cache).__name__,
        len(settings.CORS_ORIGINS),
        ACCESS_TOKEN_TTL,
        REFRESH_TOKEN_TTL,
    )
    init_db()


# --- Routers ---
app.include_router(auth_router, prefix="/api/v1/auth", tags=["auth"])
app.include_router(user_router, prefix="/api/v1/user", tags=["user"])
app.include_router(permissions_router, prefix="/api/v1/permissions", tags=["permissions"])


# --- System ---
@app.get("/health", tags=["system"])
def health():
    return {"status": "ok"}


@app.get("/ready", tags=["system"])
def readiness():
    try:
        ping_database()
        app.state.cache.ping()
    except Exception:
        raise HTTPException(status_code=503, detail="Dependencies not ready")
    return {"status": "ready"}
