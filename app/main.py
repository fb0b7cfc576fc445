from pathlib import Path
from dotenv import load_dotenv

project_root = Path(__file__).parent.parent  # Go up from app/ to project root
env_file = project_root / ".env"
load_dotenv(env_file)


from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn
import logging
from datetime import datetime, timezone

from app.config import settings
from app.database import create_tables_safely, database_health_check
from app.handoff.router import router as handoff_router
from app.handoff.widget_router import router as widget_handoff_router
from app.handoff.tasks import sweeper


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# Validate production configuration at startup
try:
    settings.validate_production_config()
    logger.info(f"Configuration validated for environment: {settings.ENVIRONMENT}")
except ValueError as e:
    logger.error(f"Configuration error: {e}")
    if settings.requires_security_validation():  # Both production AND staging
        raise
    else:
        logger.warning("Configuration issues detected but continuing in development mode")

try:
    create_tables_safely()
    logger.info("Database tables created successfully")
except Exception as e:
    logger.error(f"Failed to create database tables: {e}")
    if settings.is_production():
        raise
    else:
        logger.warning("Continuing without table creation in development mode")


app = FastAPI(
    title="Handoff Desk",
    description="Human handoff queue, assignment and relay for multi-tenant chatbots",
    version="1.0.0",
    debug=settings.is_development(),
)

if not settings.JWT_SECRET_KEY or len(settings.JWT_SECRET_KEY) < 32:
    raise ValueError("JWT_SECRET_KEY must be at least 32 characters")


allowed_origins = settings.get_allowed_origins_list()
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=allowed_origins != ["*"],  # Must be False when using "*"
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["*"],
)

logger.info(f"CORS configured for {settings.ENVIRONMENT}: {allowed_origins}")


app.include_router(handoff_router, prefix="/handoff", tags=["Handoff - Agent Console"])
app.include_router(widget_handoff_router, prefix="/widget/handoff", tags=["Handoff - Channels"])


@app.on_event("startup")
async def startup_event():
    try:
        sweeper.start()
        logger.info("Application startup completed")
    except Exception as e:
        logger.error(f"Error in startup event: {e}")


@app.on_event("shutdown")
async def shutdown_event():
    try:
        await sweeper.stop()
    except Exception as e:
        logger.error(f"Error in shutdown event: {e}")


@app.get("/health")
def health_check():
    database = database_health_check()
    return {
        "status": "healthy" if database.get("status") == "healthy" else "degraded",
        "environment": settings.ENVIRONMENT,
        "database": database,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


if __name__ == "__main__":
    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=settings.is_development())
