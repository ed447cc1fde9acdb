"""
Database initialization helpers.
"""
import logging

from sqlalchemy import inspect
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel

from app.database.engine import engine as default_engine

logger = logging.getLogger("app.database")

REQUIRED_TABLES = ("import_jobs", "import_job_items", "decks", "cards")


def register_models() -> None:
    """Import model modules so their tables land in SQLModel.metadata."""
    from app.models import deck_models, import_models  # noqa: F401


def tables_exist(engine: Engine = None) -> bool:
    """
    Check whether the import schema is already present.

    Args:
        engine: Engine to inspect, defaults to the global engine

    Returns:
        True when all core tables exist
    """
    existing = set(inspect(engine or default_engine).get_table_names())
    return all(table in existing for table in REQUIRED_TABLES)


def init_database(engine: Engine = None) -> None:
    """
    Create all tables that are missing.
    """
    engine = engine or default_engine
    logger.info("Initializing database...")

    register_models()
    SQLModel.metadata.create_all(engine)
    logger.info("Database tables created")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    init_database()
