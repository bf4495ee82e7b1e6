from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from stockengine.app.core.config import settings

engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True, echo=settings.SQL_ECHO)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
