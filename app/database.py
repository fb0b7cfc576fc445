from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.exc import DisconnectionError, TimeoutError, OperationalError, DatabaseError
import logging
import time
from app.config import settings
from typing import Callable, Any


logger = logging.getLogger(__name__)
db_logger = logging.getLogger('database')


def get_engine_config(database_url: str) -> dict:
    """Database engine configuration per environment"""
    is_postgresql = "postgresql" in database_url.lower()

    if not is_postgresql:
        # SQLite - only use supported parameters
        return {
            "echo": False,
            "connect_args": {"check_same_thread": False},
        }

    base_config = {
        "pool_pre_ping": True,
        "pool_recycle": 1800,
        "pool_timeout": 30,
        "echo": False,
        "connect_args": {
            "application_name": "handoff-desk",
            "connect_timeout": 10,
        },
    }

    if settings.is_production():
        return {**base_config, "pool_size": 20, "max_overflow": 30}
    elif settings.is_staging():
        return {**base_config, "pool_size": 10, "max_overflow": 15}
    return {**base_config, "pool_size": 5, "max_overflow": 10}


def build_engine(database_url: str):
    database_url = database_url.replace("postgresql://", "postgresql+psycopg://")
    return create_engine(database_url, **get_engine_config(database_url))


engine = build_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


@event.listens_for(engine.pool, "connect")
def log_connection(dbapi_conn, connection_record):
    db_logger.info("New database connection established")

@event.listens_for(engine.pool, "checkout")
def log_checkout(dbapi_conn, connection_record, connection_proxy):
    db_logger.debug("Connection checked out from pool")

@event.listens_for(engine.pool, "checkin")
def log_checkin(dbapi_conn, connection_record):
    db_logger.debug("Connection returned to pool")


def get_db():
    """Database session with error handling"""
    db = SessionLocal()
    try:
        yield db
    except (DisconnectionError, TimeoutError, OperationalError) as e:
        db_logger.error(f"Database session error: {e}")
        db.rollback()
        raise
    finally:
        db.close()


def database_health_check():
    """Health check for monitoring"""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        health = {"status": "healthy"}
        pool = engine.pool
        if hasattr(pool, "checkedout"):
            health.update({
                "pool_size": pool.size(),
                "checked_out": pool.checkedout(),
                "overflow": pool.overflow(),
            })
        return health
    except Exception as e:
        db_logger.error(f"Database health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}


def retry_database_initialization(
    func: Callable,
    max_retries: int = 3,
    delay: float = 1.0,
    backoff_factor: float = 2.0
) -> Any:
    """
    Retry database initialization operations with exponential backoff.

    Args:
        func: The database operation to retry
        max_retries: Maximum number of retry attempts
        delay: Initial delay between retries in seconds
        backoff_factor: Factor to multiply delay by after each retry

    Returns:
        Result of the successful function call

    Raises:
        The last exception if all retries fail
    """
    last_exception = None
    current_delay = delay

    for attempt in range(max_retries):
        try:
            logger.info(f"Database operation attempt {attempt + 1}/{max_retries}")
            result = func()
            logger.info(f"Database operation succeeded on attempt {attempt + 1}")
            return result

        except (OperationalError, DatabaseError, ConnectionError) as e:
            last_exception = e
            logger.warning(
                f"Database operation failed on attempt {attempt + 1}/{max_retries}: {str(e)}"
            )

            if attempt < max_retries - 1:
                logger.info(f"Retrying in {current_delay} seconds...")
                time.sleep(current_delay)
                current_delay *= backoff_factor
            else:
                logger.error("All database operation attempts failed")

    raise last_exception


def create_tables_safely(bind=None):
    """Create tables with retry logic"""
    # Register the handoff models on Base.metadata
    from app.handoff import models  # noqa: F401

    target = bind or engine

    def _create_tables():
        db_logger.info("Creating database tables...")
        Base.metadata.create_all(bind=target)
        db_logger.info("Database tables created successfully")
        return True

    return retry_database_initialization(_create_tables)
