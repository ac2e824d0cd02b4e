"""
Database migrations for gfsbackup.

Simple migration system to handle schema changes without requiring Alembic:
new tables are created, and columns added to the models later are added to
existing tables.
"""

import logging
from sqlalchemy import text, inspect
from sqlalchemy.exc import SQLAlchemyError
from gfsbackup import db

logger = logging.getLogger(__name__)


def init_database_schema(app):
    """
    Initialize database schema and run migrations.

    This function creates tables if they don't exist and runs any necessary migrations.
    It's safe to call from several processes sharing the same database.
    """
    with app.app_context():
        inspector = inspect(db.engine)
        existing_tables = inspector.get_table_names()

        # If no tables exist, create them all
        if not existing_tables:
            logger.info("No tables found - creating initial database schema")
            try:
                db.create_all()
                logger.info("Database schema created successfully")
            except SQLAlchemyError as e:
                # Another process may have created the schema first
                logger.error(f"Failed to create database schema: {e}")
        else:
            # Tables exist - create missing ones, then run migrations
            db.create_all()
            run_migrations(app, inspect(db.engine))


def run_migrations(app, inspector=None):
    """
    Run all necessary database migrations.

    Compares each model table with the live schema and adds any missing
    column. Added columns are nullable or carry a server-side default.

    Returns:
        List of 'table.column' names that were added
    """
    if inspector is None:
        inspector = inspect(db.engine)

    added = []
    existing_tables = inspector.get_table_names()

    for table in db.metadata.sorted_tables:
        if table.name not in existing_tables:
            continue

        columns = {col['name'] for col in inspector.get_columns(table.name)}
        for column in table.columns:
            if column.name in columns:
                continue
            if _add_column(table.name, column):
                added.append(f"{table.name}.{column.name}")

    return added


def _add_column(table_name: str, column) -> bool:
    """Add one column to an existing table; returns True on success."""
    column_type = column.type.compile(dialect=db.engine.dialect)
    statement = f"ALTER TABLE {table_name} ADD COLUMN {column.name} {column_type}"

    if not column.nullable:
        default = _literal_default(column)
        if default is None:
            logger.error(
                f"Cannot add NOT NULL column {table_name}.{column.name} without a default"
            )
            return False
        statement += f" NOT NULL DEFAULT {default}"

    logger.info(f"Running migration: Adding {column.name} column to {table_name} table")
    try:
        db.session.execute(text(statement))
        db.session.commit()
        logger.info(f"Successfully added {column.name} column")
        return True
    except SQLAlchemyError as e:
        logger.error(f"Failed to add {column.name} column: {e}")
        db.session.rollback()
        return False


def _literal_default(column):
    """SQL literal for a column's scalar Python default, or None."""
    default = column.default
    if default is None or not default.is_scalar:
        return None
    value = default.arg
    if isinstance(value, bool):
        return '1' if value else '0'
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return "'" + value.replace("'", "''") + "'"
    return None
