import argparse
import json
import logging
import math
import os
import re
import sys
import threading
import time
from concurrent.futures import as_completed
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict
from dataclasses import dataclass
from dataclasses import field
from datetime import date
from datetime import datetime
from datetime import time as dt_time
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Dict
from typing import List
from typing import Optional

import yaml
from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy import text
from sqlalchemy.engine import URL


DEFAULT_ERRORS_FILE = 'migration_errors.json'
DEFAULT_MANUAL_SQL_FILE = 'manual_inserts.sql'

ROW_SKIPPED = 'row_skipped'
TABLE_FAILED = 'table_failed'
TABLE_SKIPPED = 'table_skipped'


class CleanLogger:
    """
    Clean logging system inspired by dbt's approach for multi-threaded
    operations.
    """

    def __init__(self, log_level=logging.INFO):
        self.logger = logging.getLogger('migration')
        self.logger.setLevel(log_level)

        # Remove existing handlers to avoid duplicates
        for handler in self.logger.handlers[:]:
            self.logger.removeHandler(handler)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.DEBUG)
        formatter = logging.Formatter(
            '%(asctime)s  [%(levelname)s] %(thread_name)s: %(message)s',
            datefmt='%H:%M:%S',
        )
        console_handler.setFormatter(formatter)
        self.logger.addHandler(console_handler)

        self._lock = threading.Lock()

    def set_level(self, log_level):
        self.logger.setLevel(log_level)

    def _get_thread_name(self):
        """
        Get a clean thread name for logging.
        """
        thread = threading.current_thread()
        if thread.name.startswith('ThreadPoolExecutor'):
            parts = thread.name.split('_')
            if len(parts) >= 2:
                return f"Worker-{parts[-1]}"
        return thread.name

    def _log(self, level, message, **kwargs):
        with self._lock:
            extra = {'thread_name': self._get_thread_name()}
            self.logger.log(level, message, extra=extra, **kwargs)

    def debug(self, message, **kwargs):
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message, **kwargs):
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message, **kwargs):
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message, **kwargs):
        self._log(logging.ERROR, message, **kwargs)

    def success(self, message, **kwargs):
        """
        Log success message (info level with ✓ prefix).
        """
        self.info(f"✓ {message}", **kwargs)

    def failure(self, message, **kwargs):
        """
        Log failure message (error level with ✗ prefix).
        """
        self.error(f"✗ {message}", **kwargs)

    def skip(self, message, **kwargs):
        """
        Log skip message (info level with ⏭ prefix).
        """
        self.info(f"⏭ {message}", **kwargs)

    def progress(self, message, **kwargs):
        """
        Log progress message (info level with → prefix).
        """
        self.info(f"→ {message}", **kwargs)


# Global logger instance
logger = CleanLogger()


class MigrationError(Exception):
    pass


class RowMigrationError(MigrationError):
    """
    A single row could not be inserted while skip_on_error is disabled.
    """

    def __init__(self, table, row_index, row_data, message):
        super().__init__(f"Row {row_index} failed: {message}")
        self.table = table
        self.row_index = row_index
        self.row_data = row_data


class TableMigrationError(MigrationError):
    """
    The data transfer of a table was rolled back as a whole.
    """

    def __init__(self, table, message):
        super().__init__(message)
        self.table = table


@dataclass
class MigrationOptions:
    skip_on_error: bool = True
    batch_size: int = 1000

    def __post_init__(self):
        if int(self.batch_size) < 1:
            raise ValueError(
                f"batch_size must be a positive integer, got {self.batch_size}"
            )
        self.batch_size = int(self.batch_size)


@dataclass(frozen=True)
class ColumnDescriptor:
    """
    One source column as reported by MySQL's information_schema.
    """

    name: str
    data_type: str
    column_type: str
    nullable: bool = True
    default: Optional[str] = None
    extra: str = ''
    is_primary_key: bool = False
    is_unsigned: bool = False
    is_auto_increment: bool = False

    @classmethod
    def from_row(cls, row):
        column_type = _as_str(row['column_type']) or ''
        extra = _as_str(row.get('extra')) or ''
        return cls(
            name=_as_str(row['column_name']),
            data_type=_as_str(row['data_type']) or '',
            column_type=column_type,
            nullable=_as_str(row.get('is_nullable')) == 'YES',
            default=_as_str(row.get('column_default')),
            extra=extra,
            is_primary_key=_as_str(row.get('column_key')) == 'PRI',
            is_unsigned='unsigned' in column_type.lower(),
            is_auto_increment='auto_increment' in extra.lower(),
        )

    @property
    def pg_type(self):
        return map_mysql_type(
            self.data_type, self.column_type, self.is_unsigned, self.extra
        )

    @property
    def is_json(self):
        return self.data_type.lower() == 'json'


@dataclass
class FailureRecord:
    kind: str
    table: str
    error: str
    row_index: Optional[int] = None
    row_data: Optional[dict] = None
    timestamp: str = field(
        default_factory=lambda: datetime.now().isoformat(timespec='seconds')
    )


@dataclass
class TableResult:
    table: str
    migrated: int = 0
    skipped: int = 0
    conflicts: int = 0
    status: str = 'completed'  # completed, empty, skipped
    elapsed: float = 0.0


@dataclass
class MigrationTotals:
    migrated: int = 0
    skipped: int = 0
    conflicts: int = 0
    tables_completed: int = 0
    failed_tables: List[str] = field(default_factory=list)
    skipped_tables: List[str] = field(default_factory=list)
    aborted: bool = False

    def add(self, result: TableResult):
        self.migrated += result.migrated
        self.skipped += result.skipped
        self.conflicts += result.conflicts
        if result.status == 'skipped':
            self.skipped_tables.append(result.table)
        else:
            self.tables_completed += 1

    def mark_failed(self, table_name):
        if table_name not in self.failed_tables:
            self.failed_tables.append(table_name)


def _as_str(value):
    if isinstance(value, (bytes, bytearray)):
        return value.decode('utf-8')
    return value


# Maps MySQL base types to PostgreSQL types. Anything missing becomes text.
MYSQL_TO_POSTGRES_TYPES = {
    'tinyint': 'smallint',
    'smallint': 'smallint',
    'year': 'smallint',
    'mediumint': 'integer',
    'int': 'integer',
    'integer': 'integer',
    'bigint': 'bigint',
    'float': 'real',
    'double': 'double precision',
    'real': 'double precision',
    'decimal': 'numeric',
    'numeric': 'numeric',
    'date': 'date',
    'time': 'time',
    'datetime': 'timestamp',
    'timestamp': 'timestamp',
    'char': 'char',
    'varchar': 'varchar',
    'tinytext': 'text',
    'text': 'text',
    'mediumtext': 'text',
    'longtext': 'text',
    'bool': 'boolean',
    'boolean': 'boolean',
    'binary': 'bytea',
    'varbinary': 'bytea',
    'tinyblob': 'bytea',
    'blob': 'bytea',
    'mediumblob': 'bytea',
    'longblob': 'bytea',
    'json': 'jsonb',
    'enum': 'text',
    'set': 'text',
}

UNSIGNED_WIDENING = {
    'smallint': 'integer',
    'integer': 'bigint',
}

AUTO_INCREMENT_TYPES = {
    'integer': 'serial',
    'bigint': 'bigserial',
}

_SIZE_SUFFIX = re.compile(r'\(\d+(,\s*\d+)?\)')
_LENGTH = re.compile(r'(\w+)\((\d+)\)')
_PRECISION_SCALE = re.compile(r'(\w+)\((\d+),\s*(\d+)\)')


def map_mysql_type(data_type, column_type, is_unsigned=False, extra=''):
    """
    Map a MySQL column type to a PostgreSQL column type string.

    Unknown types default to text. Unsigned integers are widened one step
    since PostgreSQL has no unsigned integers, and auto_increment integers
    become serial/bigserial. Length is kept for char/varchar and
    precision/scale for decimal/numeric.
    """
    base_type = _SIZE_SUFFIX.sub('', (data_type or '').lower()).strip()
    pg_type = MYSQL_TO_POSTGRES_TYPES.get(base_type, 'text')

    if is_unsigned:
        pg_type = UNSIGNED_WIDENING.get(pg_type, pg_type)

    if extra and 'auto_increment' in extra.lower():
        if pg_type in AUTO_INCREMENT_TYPES:
            return AUTO_INCREMENT_TYPES[pg_type]

    column_type = column_type or ''
    if base_type in ('char', 'varchar'):
        match = _LENGTH.search(column_type)
        if match:
            return f"{pg_type}({match.group(2)})"
    elif base_type in ('decimal', 'numeric'):
        match = _PRECISION_SCALE.search(column_type)
        if match:
            return f"{pg_type}({match.group(2)},{match.group(3)})"

    return pg_type


def _reject_constant(name):
    raise ValueError(f"{name} is not valid JSON")


def normalize_json_value(value):
    """
    Normalize a value to a JSON string safe for a jsonb column.

    Malformed or unsupported values are replaced by the JSON literal 'null'
    so that the row can still be inserted.
    """
    if value is None:
        return 'null'

    if isinstance(value, (bytes, bytearray)):
        try:
            value = value.decode('utf-8')
        except UnicodeDecodeError:
            logger.warning("Invalid JSON bytes (not UTF-8), using null")
            return 'null'

    if isinstance(value, str):
        try:
            json_obj = json.loads(value, parse_constant=_reject_constant)
        except ValueError:
            logger.warning(
                f"Invalid JSON string: {value[:100]}... (using null)"
            )
            return 'null'
    elif isinstance(value, (dict, list)):
        json_obj = value
    else:
        return 'null'

    try:
        return json.dumps(json_obj, allow_nan=False)
    except (TypeError, ValueError) as e:
        logger.warning(f"JSON serialization failed: {e} (using null)")
        return 'null'


def _json_default(value):
    """
    Encode values that json cannot serialize natively.

    bytes become PostgreSQL bytea hex literals so that the replay script can
    insert them back unchanged.
    """
    if isinstance(value, (bytes, bytearray, memoryview)):
        return '\\x' + bytes(value).hex()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date, dt_time)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return str(value)
    if isinstance(value, set):
        return sorted(value)
    return str(value)


def quote_identifier(name):
    """
    Double-quote a PostgreSQL identifier so reserved words like "order" work.
    """
    quoted = '"' + str(name).replace('"', '""') + '"'
    # Colons would be taken as bind parameters by text()
    return quoted.replace(':', '\\:')


_NUMERIC_DEFAULT = re.compile(r'^-?\d+(\.\d+)?([eE][-+]?\d+)?$')
_TIMESTAMP_DEFAULT = re.compile(
    r'^(current_timestamp|now|localtimestamp|current_date|current_time)'
    r'(\(\d*\))?$',
    re.IGNORECASE,
)


def format_default(default, pg_type):
    """
    Render a MySQL COLUMN_DEFAULT as a PostgreSQL DEFAULT clause.
    """
    if default is None or pg_type in ('serial', 'bigserial'):
        return ''

    raw = str(default).strip()
    if raw.upper() == 'NULL':
        return ' DEFAULT NULL'
    if _TIMESTAMP_DEFAULT.match(raw):
        keyword = raw.split('(')[0].upper()
        if keyword == 'NOW':
            keyword = 'CURRENT_TIMESTAMP'
        return f" DEFAULT {keyword}"
    if pg_type == 'boolean' and raw in ('0', '1'):
        return f" DEFAULT {'true' if raw == '1' else 'false'}"
    if _NUMERIC_DEFAULT.match(raw):
        return f" DEFAULT {raw}"
    if raw.startswith('(') or (raw.startswith("'") and raw.endswith("'")):
        return f" DEFAULT {raw}"
    escaped = raw.replace("'", "''").replace(':', '\\:')
    return f" DEFAULT '{escaped}'"


def generate_create_table_sql(table_name, columns: List[ColumnDescriptor]):
    """
    Generate CREATE TABLE SQL with quoted column names.

    A single primary key column is marked inline, a composite key becomes a
    table-level constraint.
    """
    primary_keys = [col.name for col in columns if col.is_primary_key]
    inline_pk = len(primary_keys) == 1

    definitions = []
    for col in columns:
        pg_type = col.pg_type
        nullable = '' if col.nullable else ' NOT NULL'
        default = format_default(col.default, pg_type)
        pk = ' PRIMARY KEY' if inline_pk and col.is_primary_key else ''
        definitions.append(
            f"  {quote_identifier(col.name)} {pg_type}{nullable}{default}{pk}"
        )

    if len(primary_keys) > 1:
        key_list = ', '.join(quote_identifier(name) for name in primary_keys)
        definitions.append(f"  PRIMARY KEY ({key_list})")

    body = ',\n'.join(definitions)
    return (
        f"CREATE TABLE IF NOT EXISTS {quote_identifier(table_name)} (\n"
        f"{body}\n);"
    )


def generate_insert_sql(table_name, column_names):
    quoted_columns = ', '.join(quote_identifier(c) for c in column_names)
    placeholders = ', '.join(f":p{i}" for i in range(len(column_names)))
    return (
        f"INSERT INTO {quote_identifier(table_name)} ({quoted_columns}) "
        f"VALUES ({placeholders}) ON CONFLICT DO NOTHING"
    )


class SchemaIntrospector:
    """
    Read-only access to the MySQL source schema over a SQLAlchemy connection.
    """

    def __init__(self, connection, schema_name):
        self.connection = connection
        self.schema_name = schema_name

    def list_tables(self):
        """
        Get all base table names from the source schema.
        """
        result = self.connection.execute(
            text(
                """
            SELECT TABLE_NAME AS table_name
            FROM information_schema.TABLES
            WHERE TABLE_SCHEMA = :schema_name
            AND TABLE_TYPE = 'BASE TABLE'
            ORDER BY TABLE_NAME
            """
            ),
            {"schema_name": self.schema_name},
        )
        return [_as_str(row[0]) for row in result.fetchall()]

    def get_columns(self, table_name) -> List[ColumnDescriptor]:
        """
        Get column descriptors of a table in declaration order.
        """
        result = self.connection.execute(
            text(
                """
            SELECT
                COLUMN_NAME AS column_name,
                DATA_TYPE AS data_type,
                COLUMN_TYPE AS column_type,
                IS_NULLABLE AS is_nullable,
                COLUMN_DEFAULT AS column_default,
                EXTRA AS extra,
                COLUMN_KEY AS column_key
            FROM information_schema.COLUMNS
            WHERE TABLE_SCHEMA = :schema_name
            AND TABLE_NAME = :table_name
            ORDER BY ORDINAL_POSITION
            """
            ),
            {"schema_name": self.schema_name, "table_name": table_name},
        )
        return [ColumnDescriptor.from_row(row) for row in result.mappings()]

    def fetch_rows(self, table_name) -> List[Dict]:
        quoted = '`' + table_name.replace('`', '``') + '`'
        result = self.connection.execute(text(f"SELECT * FROM {quoted}"))
        return [dict(row) for row in result.mappings()]


class ErrorSink:
    """
    Ordered collection of failure records for one migration run.

    Records are kept in memory and written to disk once, at the end of the
    run. Appends are locked so table workers can share one sink.
    """

    def __init__(self):
        self.records: List[FailureRecord] = []
        self._lock = threading.Lock()

    def __len__(self):
        return len(self.records)

    def record(self, kind, table, error, row_index=None, row_data=None):
        failure = FailureRecord(
            kind=kind,
            table=table,
            error=str(error),
            row_index=row_index,
            row_data=row_data,
        )
        with self._lock:
            self.records.append(failure)
        return failure

    def by_kind(self, kind):
        return [r for r in self.records if r.kind == kind]

    def flush(self, path):
        """
        Write all records as JSON. Nothing is written when there are none.
        """
        if not self.records:
            return False

        path = Path(path)
        with self._lock:
            data = [asdict(r) for r in self.records]
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, default=_json_default)
        logger.info(f"Errors logged to: {path}")
        return True


def sql_literal(value):
    """
    Render a value from the failure report as a SQL literal.
    """
    if value is None:
        return 'NULL'
    if isinstance(value, bool):
        return 'TRUE' if value else 'FALSE'
    if isinstance(value, float) and not math.isfinite(value):
        if math.isnan(value):
            return "'NaN'"
        return "'Infinity'" if value > 0 else "'-Infinity'"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return "'" + value.replace("'", "''") + "'"
    if isinstance(value, (dict, list)):
        return "'" + json.dumps(value).replace("'", "''") + "'"
    return "'" + str(value).replace("'", "''") + "'"


def generate_manual_inserts(errors_file, sql_file):
    """
    Generate manual INSERT statements for skipped rows from the error report.

    Returns the number of statements written.
    """
    errors_file = Path(errors_file)
    sql_file = Path(sql_file)
    if not errors_file.exists():
        logger.info(
            f"No {errors_file.name} found; skipping manual SQL generation."
        )
        return 0

    with open(errors_file, encoding='utf-8') as f:
        records = json.load(f)

    skipped_rows = [r for r in records if r.get('kind') == ROW_SKIPPED]
    lines = [
        "-- Manual INSERT statements for skipped rows",
        "-- Run these in your PostgreSQL database to insert missing data",
        f"-- Generated on {datetime.now().isoformat(timespec='seconds')}",
        "",
    ]

    for record in skipped_rows:
        table = record['table']
        row_data = record.get('row_data') or {}
        columns = list(row_data.keys())
        quoted_columns = ', '.join(
            '"' + c.replace('"', '""') + '"' for c in columns
        )
        values = ', '.join(sql_literal(row_data[c]) for c in columns)
        quoted_table = '"' + table.replace('"', '""') + '"'
        lines.append(f"-- Row {record.get('row_index')} from {table}")
        lines.append(
            f"INSERT INTO {quoted_table} ({quoted_columns}) VALUES ({values}) "
            "ON CONFLICT DO NOTHING;"
        )
        lines.append("")

    with open(sql_file, 'w', encoding='utf-8') as f:
        f.write('\n'.join(lines) + '\n')

    logger.info(
        f"Generated {len(skipped_rows)} manual INSERTs in: {sql_file}"
    )
    return len(skipped_rows)


def _transfer_rows(
    target_conn, table_name, columns, rows, options, sink, result
):
    """
    Insert rows one savepoint at a time inside the current transaction.

    A failed row is rolled back to its savepoint so earlier rows in the
    transaction survive. Batches only control progress reporting.
    """
    column_names = [col.name for col in columns]
    json_columns = {col.name for col in columns if col.is_json}
    insert_sql = text(generate_insert_sql(table_name, column_names))
    total_rows = len(rows)
    batch_size = options.batch_size

    for start in range(0, total_rows, batch_size):
        batch = rows[start : start + batch_size]
        for offset, row in enumerate(batch):
            row_index = start + offset + 1
            savepoint = f"row_sp_{row_index}"

            target_conn.execute(text(f"SAVEPOINT {savepoint}"))
            try:
                params = {}
                for i, col_name in enumerate(column_names):
                    value = row.get(col_name)
                    if col_name in json_columns:
                        value = normalize_json_value(value)
                    params[f"p{i}"] = value

                inserted = target_conn.execute(insert_sql, params)
                target_conn.execute(text(f"RELEASE SAVEPOINT {savepoint}"))
            except Exception as row_error:
                target_conn.execute(
                    text(f"ROLLBACK TO SAVEPOINT {savepoint}")
                )
                target_conn.execute(text(f"RELEASE SAVEPOINT {savepoint}"))

                if not options.skip_on_error:
                    raise RowMigrationError(
                        table_name, row_index, row, str(row_error)
                    ) from row_error

                result.skipped += 1
                sink.record(
                    ROW_SKIPPED,
                    table_name,
                    row_error,
                    row_index=row_index,
                    row_data=row,
                )
                logger.failure(
                    f"Skipped row {row_index} in {table_name}: {str(row_error)[:200]}"
                )
                continue

            if inserted.rowcount == 0:
                result.conflicts += 1
                logger.debug(
                    f"Row {row_index} in {table_name} already exists, not inserted"
                )
            else:
                result.migrated += 1

        logger.progress(
            f"Batch complete: {min(start + batch_size, total_rows):,}/{total_rows:,} "
            f"(migrated: {result.migrated:,}, skipped: {result.skipped:,})"
        )


def migrate_table(introspector, target_conn, table_name, options, sink):
    """
    Migrate a single table: create it, read its rows and insert them.

    Schema or fetch failures mark the table as skipped and return an empty
    result. A failure during the transfer rolls back the whole table and
    raises TableMigrationError.
    """
    start_time = time.time()
    result = TableResult(table=table_name)
    logger.info(f"Processing table: {table_name}")

    try:
        columns = introspector.get_columns(table_name)
        if not columns:
            raise MigrationError(f"No columns found for {table_name}")

        target_conn.execute(text(generate_create_table_sql(table_name, columns)))
        target_conn.commit()
        logger.success(f"Created table schema for {table_name}")

        json_columns = [col.name for col in columns if col.is_json]
        if json_columns:
            logger.info(f"JSON columns: {', '.join(json_columns)}")

        rows = introspector.fetch_rows(table_name)
    except Exception as e:
        if target_conn.in_transaction():
            target_conn.rollback()
        sink.record(TABLE_SKIPPED, table_name, e)
        logger.failure(f"Skipped table {table_name}: {str(e)[:200]}")
        result.status = 'skipped'
        result.elapsed = time.time() - start_time
        return result

    if not rows:
        logger.skip(f"No data in {table_name}")
        result.status = 'empty'
        result.elapsed = time.time() - start_time
        return result

    logger.progress(
        f"Migrating {len(rows):,} rows in batches of {options.batch_size:,}"
    )

    trans = target_conn.begin()
    try:
        _transfer_rows(
            target_conn, table_name, columns, rows, options, sink, result
        )
        trans.commit()
    except Exception as e:
        try:
            trans.rollback()
        except Exception as rollback_error:
            logger.warning(
                f"Rollback of {table_name} failed: {rollback_error}"
            )
        row_index = getattr(e, 'row_index', None)
        row_data = getattr(e, 'row_data', None)
        sink.record(
            TABLE_FAILED,
            table_name,
            e,
            row_index=row_index,
            row_data=row_data,
        )
        logger.failure(f"Table {table_name} failed: {str(e)[:200]}")
        raise TableMigrationError(table_name, str(e)) from e

    result.elapsed = time.time() - start_time
    rows_per_sec = len(rows) / result.elapsed if result.elapsed > 0 else 0
    logger.success(
        f"Completed {table_name}: {result.migrated:,} migrated, "
        f"{result.skipped:,} skipped, {result.conflicts:,} already present "
        f"({result.elapsed:.1f}s, {rows_per_sec:.0f} rows/sec)"
    )
    return result


def load_yaml_config(config_path):
    """
    Load configuration from a YAML file.
    """
    path = Path(config_path)
    if not path.exists():
        logger.warning(
            f"Config file {path} not found, using defaults and environment"
        )
        return {}

    with open(path, encoding='utf-8') as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return data


def _env_overrides(section, prefix):
    """
    Apply <PREFIX>_HOST style environment variables over a config section.
    """
    env_keys = {
        'host': f'{prefix}_HOST',
        'port': f'{prefix}_PORT',
        'username': f'{prefix}_USER',
        'password': f'{prefix}_PASSWORD',
        'database': f'{prefix}_DATABASE',
    }
    for key, env_name in env_keys.items():
        value = os.getenv(env_name)
        if value:
            section[key] = value
    section['port'] = int(section['port'])
    return section


def get_mysql_config(yaml_config):
    config = {
        'host': 'localhost',
        'port': 3306,
        'username': 'root',
        'password': '',
        'database': '',
    }
    config.update(yaml_config.get('mysql') or {})
    return _env_overrides(config, 'MYSQL')


def get_postgres_config(yaml_config):
    config = {
        'host': 'localhost',
        'port': 5432,
        'username': 'postgres',
        'password': '',
        'database': 'postgres',
    }
    config.update(yaml_config.get('postgres') or {})
    return _env_overrides(config, 'PG')


def get_migration_config(yaml_config):
    config = {
        'skip_on_error': True,
        'batch_size': 1000,
        'max_threads': 1,
        'errors_file': DEFAULT_ERRORS_FILE,
        'manual_sql_file': DEFAULT_MANUAL_SQL_FILE,
        'include_tables': [],
        'exclude_tables': [],
    }
    config.update(yaml_config.get('migration') or {})
    return config


def get_mysql_connection_url(config):
    """
    Build MySQL connection URL.
    """
    return URL.create(
        'mysql+pymysql',
        username=config['username'],
        password=config['password'],
        host=config['host'],
        port=config['port'],
        database=config['database'],
        query={'charset': 'utf8mb4'},
    )


def get_postgres_connection_url(config):
    """
    Build PostgreSQL connection URL.
    """
    return URL.create(
        'postgresql+psycopg2',
        username=config['username'],
        password=config['password'],
        host=config['host'],
        port=config['port'],
        database=config['database'],
    )


def filter_tables(tables, include_tables=None, exclude_tables=None):
    if include_tables:
        wanted = set(include_tables)
        tables = [t for t in tables if t in wanted]
    if exclude_tables:
        unwanted = set(exclude_tables)
        tables = [t for t in tables if t not in unwanted]
    return tables


def _migrate_table_with_connections(
    source_engine, target_engine, schema_name, table_name, options, sink
):
    with source_engine.connect() as source_conn:
        with target_engine.connect() as target_conn:
            introspector = SchemaIntrospector(source_conn, schema_name)
            return migrate_table(
                introspector, target_conn, table_name, options, sink
            )


def migrate_database(
    mysql_config,
    pg_config,
    migration_config,
    source_engine=None,
    target_engine=None,
):
    """
    Migrate every table of the MySQL schema to PostgreSQL.

    Tables fail independently. Engines are disposed, the error report is
    written and the manual insert script is generated however the run ends.
    """
    options = MigrationOptions(
        skip_on_error=migration_config.get('skip_on_error', True),
        batch_size=migration_config.get('batch_size', 1000),
    )
    max_threads = max(1, int(migration_config.get('max_threads', 1)))
    errors_file = migration_config.get('errors_file', DEFAULT_ERRORS_FILE)
    sql_file = migration_config.get('manual_sql_file', DEFAULT_MANUAL_SQL_FILE)
    schema_name = mysql_config['database']

    sink = ErrorSink()
    totals = MigrationTotals()

    try:
        if source_engine is None:
            source_engine = create_engine(
                get_mysql_connection_url(mysql_config), pool_recycle=3600
            )
        if target_engine is None:
            target_engine = create_engine(
                get_postgres_connection_url(pg_config), pool_pre_ping=True
            )

        with source_engine.connect() as source_conn:
            tables = SchemaIntrospector(source_conn, schema_name).list_tables()
        logger.success(f"Connected to MySQL: {schema_name}")
        with target_engine.connect():
            pass
        logger.success(f"Connected to PostgreSQL: {pg_config['database']}")

        tables = filter_tables(
            tables,
            migration_config.get('include_tables'),
            migration_config.get('exclude_tables'),
        )
        if not tables:
            logger.warning(f"No tables to migrate in schema '{schema_name}'")
        else:
            logger.info(f"Found {len(tables)} tables: {', '.join(tables)}")

        if max_threads == 1:
            for table_name in tables:
                try:
                    result = _migrate_table_with_connections(
                        source_engine,
                        target_engine,
                        schema_name,
                        table_name,
                        options,
                        sink,
                    )
                    totals.add(result)
                except Exception as e:
                    totals.mark_failed(table_name)
                    logger.failure(
                        f"Skipped entire table {table_name} due to error: {str(e)[:200]}"
                    )
        else:
            logger.info(f"Using {max_threads} concurrent threads for tables")
            with ThreadPoolExecutor(max_workers=max_threads) as executor:
                future_to_table = {
                    executor.submit(
                        _migrate_table_with_connections,
                        source_engine,
                        target_engine,
                        schema_name,
                        table_name,
                        options,
                        sink,
                    ): table_name
                    for table_name in tables
                }
                for future in as_completed(future_to_table):
                    table_name = future_to_table[future]
                    try:
                        totals.add(future.result())
                    except Exception as e:
                        totals.mark_failed(table_name)
                        logger.failure(
                            f"Skipped entire table {table_name} due to error: {str(e)[:200]}"
                        )

        logger.info("")
        logger.success(
            f"Full migration complete! Total: {totals.migrated:,} rows migrated, "
            f"{totals.skipped:,} row skips, {totals.conflicts:,} rows already present."
        )
        if totals.failed_tables:
            logger.warning(f"Failed tables: {', '.join(totals.failed_tables)}")
        if totals.skipped_tables:
            logger.warning(
                f"Skipped tables: {', '.join(totals.skipped_tables)}"
            )

    except Exception as e:
        totals.aborted = True
        logger.failure(f"Migration aborted: {str(e)}")
    finally:
        for engine in (source_engine, target_engine):
            if engine is not None:
                engine.dispose()
        logger.info("Connections closed.")

        try:
            sink.flush(errors_file)
        except OSError as e:
            logger.failure(f"Failed to write {errors_file}: {e}")
        try:
            generate_manual_inserts(errors_file, sql_file)
        except (OSError, ValueError) as e:
            logger.failure(f"Failed to generate manual inserts: {e}")

    return totals


def main(argv=None):
    """
    Main migration function.
    """
    parser = argparse.ArgumentParser(
        description='MySQL to PostgreSQL Migration Tool'
    )
    parser.add_argument(
        '--config',
        type=str,
        default='config.yml',
        help='Path to YAML configuration file (default: config.yml)',
    )
    parser.add_argument(
        '--threads',
        type=int,
        default=None,
        help='Number of tables migrated concurrently (default: from config)',
    )
    parser.add_argument(
        '--batch-size',
        type=int,
        default=None,
        help='Rows per progress report (default: from config)',
    )
    parser.add_argument(
        '--no-skip-on-error',
        action='store_true',
        help='Roll back the whole table when a single row fails',
    )
    parser.add_argument('--errors-file', type=str, default=None)
    parser.add_argument('--manual-sql-file', type=str, default=None)
    parser.add_argument(
        '--table',
        action='append',
        dest='tables',
        default=None,
        help='Only migrate this table (repeatable)',
    )
    parser.add_argument(
        '--exclude-table',
        action='append',
        dest='exclude_tables',
        default=None,
        help='Do not migrate this table (repeatable)',
    )
    parser.add_argument('--verbose', action='store_true')
    args = parser.parse_args(argv)

    if args.verbose:
        logger.set_level(logging.DEBUG)

    load_dotenv()
    try:
        yaml_config = load_yaml_config(args.config)
        mysql_config = get_mysql_config(yaml_config)
        pg_config = get_postgres_config(yaml_config)
        migration_config = get_migration_config(yaml_config)
    except (OSError, TypeError, ValueError, yaml.YAMLError) as e:
        logger.failure(f"Invalid configuration: {e}")
        return 1

    if args.threads is not None:
        migration_config['max_threads'] = args.threads
    if args.batch_size is not None:
        migration_config['batch_size'] = args.batch_size
    if args.no_skip_on_error:
        migration_config['skip_on_error'] = False
    if args.errors_file:
        migration_config['errors_file'] = args.errors_file
    if args.manual_sql_file:
        migration_config['manual_sql_file'] = args.manual_sql_file
    if args.tables:
        migration_config['include_tables'] = args.tables
    if args.exclude_tables:
        migration_config['exclude_tables'] = args.exclude_tables

    logger.info("MySQL to PostgreSQL Migration Tool")
    logger.info("=" * 50)
    logger.info(
        f"Source MySQL: {mysql_config['host']}:{mysql_config['port']}/{mysql_config['database']}"
    )
    logger.info(
        f"Target PostgreSQL: {pg_config['host']}:{pg_config['port']}/{pg_config['database']}"
    )
    logger.info(
        f"Options: skip_on_error={migration_config['skip_on_error']}, "
        f"batch_size={migration_config['batch_size']}, "
        f"threads={migration_config['max_threads']}"
    )

    try:
        totals = migrate_database(mysql_config, pg_config, migration_config)
    except (TypeError, ValueError) as e:
        logger.failure(f"Invalid configuration: {e}")
        return 1

    if totals.aborted or totals.failed_tables:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
