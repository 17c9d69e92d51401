"""
Shared fixtures for the migration tests.

The PostgreSQL target is stood in for by an on-disk SQLite database, which
supports savepoints and ON CONFLICT DO NOTHING. The MySQL source is a
FakeIntrospector holding columns and rows in memory.
"""

import os
import sys

import pytest
from sqlalchemy import create_engine
from sqlalchemy import event
from sqlalchemy import text

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from mysql2pgsql import ColumnDescriptor  # noqa: E402
from mysql2pgsql import ErrorSink  # noqa: E402


def make_column(
    name,
    data_type,
    column_type=None,
    nullable=True,
    default=None,
    key='',
    extra='',
):
    return ColumnDescriptor.from_row(
        {
            'column_name': name,
            'data_type': data_type,
            'column_type': column_type or data_type,
            'is_nullable': 'YES' if nullable else 'NO',
            'column_default': default,
            'extra': extra,
            'column_key': key,
        }
    )


class FakeIntrospector:
    def __init__(self, tables):
        # table name -> (columns, rows)
        self.tables = tables
        self.fetch_errors = {}

    def list_tables(self):
        return sorted(self.tables)

    def get_columns(self, table_name):
        return self.tables[table_name][0]

    def fetch_rows(self, table_name):
        if table_name in self.fetch_errors:
            raise self.fetch_errors[table_name]
        return [dict(row) for row in self.tables[table_name][1]]


@pytest.fixture
def target_engine(tmp_path):
    """SQLite engine with BEGIN IMMEDIATE so savepoints nest and workers queue."""
    engine = create_engine(f"sqlite:///{tmp_path / 'target.db'}")

    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    yield engine
    engine.dispose()


@pytest.fixture
def target_conn(target_engine):
    with target_engine.connect() as conn:
        yield conn


@pytest.fixture
def sink():
    return ErrorSink()


@pytest.fixture
def count_rows(target_engine):
    def _count(table_name):
        with target_engine.connect() as conn:
            return conn.execute(
                text(f'SELECT COUNT(*) FROM "{table_name}"')
            ).scalar()

    return _count
