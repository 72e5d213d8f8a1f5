"""Database engine and session construction.

Handles are built explicitly and handed to whoever needs them (the app
factory keeps them on ``app.state``, services receive a ``Session``).
"""

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from stockledger.core.config import Settings


def build_engine(settings: Settings) -> Engine:
    """Create an engine - handle SQLite specially for check_same_thread."""
    connect_args = {}
    pool_config = {}

    if settings.database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        pool_config = {
            "pool_pre_ping": True,
        }
    else:
        # PostgreSQL/MySQL connection pooling configuration
        pool_config = {
            "pool_size": 20,
            "max_overflow": 40,
            "pool_pre_ping": True,
            "pool_recycle": 3600,  # Recycle connections after 1 hour
        }

    engine = create_engine(
        settings.database_url,
        connect_args=connect_args,
        echo=settings.sql_echo,
        **pool_config,
    )

    # Enable foreign key enforcement for SQLite
    if settings.database_url.startswith("sqlite"):
        enable_sqlite_foreign_keys(engine)

    return engine


def enable_sqlite_foreign_keys(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
