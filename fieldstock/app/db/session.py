from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from fieldstock.app.core.config import settings

engine = create_engine(
    settings.database_url,
    echo=settings.database_echo,
    pool_pre_ping=True,
)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
