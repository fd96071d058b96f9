"""
Database connection and session setup.
PostgreSQL in production, SQLite for local runs and tests.
"""
from sqlalchemy import create_engine, text
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool

from core.config import DATABASE_URL, logger

if not DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")


def _build_engine(url: str):
    if url.startswith("sqlite"):
        # Single shared connection so in-memory databases survive across sessions
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    return create_engine(
        url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=10,
        max_overflow=20,
        echo=False,  # Set to True for SQL query logging in development
    )


engine = _build_engine(DATABASE_URL)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for ORM models
Base = declarative_base()


def get_db():
    """
    Dependency for FastAPI routes to get database session
    Usage:
        @router.get("/items")
        def list_items(db: Session = Depends(get_db)):
            ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def is_postgres(db: Session) -> bool:
    bind = db.get_bind()
    return bind.dialect.name == "postgresql"


def begin_snapshot(db: Session) -> None:
    """
    Start a fresh read transaction so every query of one aggregation sees the same rows.
    On PostgreSQL the transaction is REPEATABLE READ READ ONLY; SQLite transactions
    are already serializable.
    """
    db.rollback()
    if is_postgres(db):
        db.execute(text("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ READ ONLY"))


def init_db():
    """
    Initialize database tables
    Call this on application startup
    """
    # Register models on the metadata before create_all
    import models.affiliates  # noqa: F401
    import models.appointments  # noqa: F401
    import models.quiz  # noqa: F401
    import models.settings  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info("[db.init] tables ensured")
