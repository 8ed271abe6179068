import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

def _dsn() -> str:
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    user = os.getenv("POSTGRES_USER")
    pwd = os.getenv("POSTGRES_PASSWORD")
    host = os.getenv("POSTGRES_HOST", "postgres")
    port = os.getenv("POSTGRES_PORT", "5432")
    db = os.getenv("POSTGRES_DB")
    return f"postgresql+psycopg://{user}:{pwd}@{host}:{port}/{db}"

def _engine_kwargs(dsn: str) -> dict:
    if dsn.startswith("sqlite"):
        # request handlers and the inline worker share connections across threads
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}

DSN = _dsn()
engine = create_engine(DSN, **_engine_kwargs(DSN))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

def db_dep():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
