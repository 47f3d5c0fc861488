# =======================================================================================
# gate_discovery/database.py - Database Management
# =======================================================================================
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool, StaticPool
from contextlib import contextmanager
from typing import Optional
from .config import config
from .tables import metadata

class DatabaseManager:
    """Manages database connections and transactions."""

    def __init__(self, url: Optional[str] = None):
        self.url = url or config.DB_URL
        if self.url.startswith("sqlite"):
            # Single shared connection so in-memory databases survive across threads
            self.engine: Engine = create_engine(
                self.url,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
                future=True,
            )
        else:
            self.engine = create_engine(
                self.url,
                poolclass=QueuePool,
                pool_size=config.DB_POOL_SIZE,
                max_overflow=config.DB_MAX_OVERFLOW,
                pool_pre_ping=True,
                isolation_level="READ COMMITTED",
                future=True,
            )

    def init_schema(self):
        """Create any missing tables."""
        metadata.create_all(self.engine)

    @contextmanager
    def get_connection(self):
        """Get a database connection with automatic cleanup."""
        with self.engine.begin() as conn:
            yield conn

    def fetch_one(self, query: str, params: dict = None):
        """Fetch a single result."""
        with self.get_connection() as conn:
            result = conn.execute(text(query), params or {})
            return result.mappings().first()

# Global database instance
db_manager = DatabaseManager()
