from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from govscore.config.settings import ALLOWED_ORIGINS
from govscore.routers.governance_router import router as governance_router
from govscore.utils.logger import logger

logger.info("govscore read API starting up...")

app = FastAPI(title="govscore", version="0.1.0")

allowed_origins = [origin.strip() for origin in ALLOWED_ORIGINS.split(",")]
logger.info(f"Allowed origins: {allowed_origins}")

# Wildcard origins cannot be combined with credentials
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials="*" not in allowed_origins,
    allow_methods=["GET", "OPTIONS"],
    allow_headers=["*"],
)


@app.get("/healthz")
def healthz() -> dict:
    """Liveness plus database pool state when a database is configured."""
    health_status = {"status": "ok"}
    try:
        from govscore.config.database_config import is_database_configured

        if is_database_configured():
            from govscore.services.connection_pool import get_connection_pool

            pool_stats = get_connection_pool().get_stats()
            if pool_stats.get("in_backoff"):
                health_status["database"] = "backoff mode"
                health_status["status"] = "degraded"
            else:
                health_status["database"] = "ok"
            health_status["pool_stats"] = {
                "failure_count": pool_stats.get("failure_count", 0),
                "pool_exists": pool_stats.get("pool_exists", False),
            }
        else:
            health_status["database"] = "not configured"
    except Exception as e:
        health_status["database"] = f"error: {str(e)[:100]}"
        health_status["status"] = "degraded"
    return health_status


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Shutting down govscore read API...")
    from govscore.config.database_config import is_database_configured

    if is_database_configured():
        from govscore.services.connection_pool import close_connection_pool

        close_connection_pool()


app.include_router(governance_router)
