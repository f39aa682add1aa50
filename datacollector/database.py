"""Database engine, session factory and declarative base."""

import logging
import os
from typing import Callable

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()

SessionFactory = Callable[[], Session]


def create_db_engine(database_url: str) -> Engine:
    """Create an engine usable from multiple worker threads."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker:
    """Create a session factory bound to the engine."""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Create tables that do not exist yet."""
    import datacollector.models  # noqa: F401

    Base.metadata.create_all(engine)


def run_migrations(engine: Engine, database_url: str) -> None:
    """
    Upgrade the schema to the latest Alembic revision.

    Runs on every start; revisions skip objects that already exist, so
    databases created by ``init_db`` are adopted and stamped.
    """
    from alembic import command
    from alembic.config import Config

    logger.info("Running database migrations...")
    alembic_cfg = Config(os.path.join(os.path.dirname(os.path.dirname(__file__)), "alembic.ini"))
    alembic_cfg.set_main_option("sqlalchemy.url", database_url.replace("%", "%%"))
    alembic_cfg.attributes["configure_logger"] = False
    with engine.begin() as connection:
        alembic_cfg.attributes["connection"] = connection
        command.upgrade(alembic_cfg, "head")
    logger.info("Database migrations completed successfully")
