"""Tests for schema migrations."""

from sqlalchemy import inspect, text

from datacollector.database import create_db_engine, run_migrations


def test_migrations_create_schema(tmp_path):
    database_url = f"sqlite:///{tmp_path / 'fresh.db'}"
    engine = create_db_engine(database_url)
    try:
        run_migrations(engine, database_url)

        tables = set(inspect(engine).get_table_names())
        assert {"jobs", "job_events", "alembic_version"} <= tables
    finally:
        engine.dispose()


def test_migrations_stamp_existing_schema(engine, settings):
    """Test that a database created without Alembic is adopted at the current revision."""
    run_migrations(engine, settings.DATABASE_URL)
    run_migrations(engine, settings.DATABASE_URL)

    with engine.connect() as connection:
        versions = connection.execute(text("SELECT version_num FROM alembic_version")).scalars().all()
    assert versions == ["001"]
