import logging
import time

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import declarative_base, sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()


class Database:
    """Owns one engine and its session factory. Built by the composition root."""

    def __init__(self, url: str, **engine_kwargs):
        if url.startswith("sqlite") and "connect_args" not in engine_kwargs:
            # worker threads and request handlers share the file
            engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
        self.url = url
        self.engine = create_engine(url, **engine_kwargs)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)

    def create_tables(self):
        # Import so the model registers on Base.metadata
        from storefront.domain import models  # noqa: F401
        Base.metadata.create_all(bind=self.engine)

    def connect_with_retry(self, max_retries: int = 10, wait_seconds: float = 3) -> bool:
        for attempt in range(max_retries):
            try:
                logger.info(f"🔄 Attempting DB connection ({attempt + 1}/{max_retries})...")
                self.create_tables()
                logger.info("✅ DB Connected and Tables Created.")
                return True
            except OperationalError:
                logger.warning(f"⚠️ DB not ready yet. Waiting {wait_seconds}s...")
                time.sleep(wait_seconds)
        logger.error("❌ Could not connect to DB after retries.")
        return False

    def dispose(self):
        self.engine.dispose()
