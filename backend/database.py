import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

DATABASE_URL = os.environ.get("DATABASE_URL", "")

_engine_kwargs = {"pool_pre_ping": True}

if not DATABASE_URL:
    # Local development fallback, SQLite file next to the backend
    _db_path = os.path.join(os.path.dirname(__file__), "local_dev.db")
    DATABASE_URL = f"sqlite:///{_db_path}"

if DATABASE_URL.startswith("sqlite"):
    _engine_kwargs["connect_args"] = {"check_same_thread": False}
    if DATABASE_URL in ("sqlite://", "sqlite:///:memory:"):
        # In-memory databases live on a single connection
        _engine_kwargs["poolclass"] = StaticPool
elif DATABASE_URL.startswith("postgres://"):
    # Hosted Postgres providers hand out postgres:// but SQLAlchemy requires postgresql://
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

engine = create_engine(DATABASE_URL, **_engine_kwargs)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
