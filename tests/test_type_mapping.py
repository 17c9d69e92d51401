import pytest

from conftest import make_column
from mysql2pgsql import format_default
from mysql2pgsql import generate_create_table_sql
from mysql2pgsql import generate_insert_sql
from mysql2pgsql import map_mysql_type
from mysql2pgsql import quote_identifier


@pytest.mark.parametrize(
    'data_type, column_type, expected',
    [
        ('tinyint', 'tinyint(4)', 'smallint'),
        ('smallint', 'smallint(6)', 'smallint'),
        ('mediumint', 'mediumint(9)', 'integer'),
        ('int', 'int(11)', 'integer'),
        ('bigint', 'bigint(20)', 'bigint'),
        ('float', 'float', 'real'),
        ('double', 'double', 'double precision'),
        ('decimal', 'decimal(10,2)', 'numeric(10,2)'),
        ('decimal', 'decimal', 'numeric'),
        ('date', 'date', 'date'),
        ('time', 'time', 'time'),
        ('datetime', 'datetime', 'timestamp'),
        ('timestamp', 'timestamp', 'timestamp'),
        ('varchar', 'varchar(255)', 'varchar(255)'),
        ('char', 'char(2)', 'char(2)'),
        ('text', 'text', 'text'),
        ('longtext', 'longtext', 'text'),
        ('boolean', 'boolean', 'boolean'),
        ('blob', 'blob', 'bytea'),
        ('varbinary', 'varbinary(16)', 'bytea'),
        ('json', 'json', 'jsonb'),
        ('enum', "enum('a','b')", 'text'),
        ('set', "set('x','y')", 'text'),
        ('year', 'year(4)', 'smallint'),
    ],
)
def test_base_type_table(data_type, column_type, expected):
    assert map_mysql_type(data_type, column_type) == expected


@pytest.mark.parametrize('data_type', ['geometry', 'point', 'bit', 'whatever', ''])
def test_unknown_types_fall_back_to_text(data_type):
    assert map_mysql_type(data_type, data_type) == 'text'


def test_size_suffix_stripped_from_base_type():
    assert map_mysql_type('INT(11)', 'int(11)') == 'integer'
    assert map_mysql_type('VARCHAR(40)', 'varchar(40)') == 'varchar(40)'


@pytest.mark.parametrize(
    'data_type, expected',
    [
        ('tinyint', 'integer'),
        ('smallint', 'integer'),
        ('mediumint', 'bigint'),
        ('int', 'bigint'),
        ('bigint', 'bigint'),
    ],
)
def test_unsigned_widens_one_step(data_type, expected):
    assert map_mysql_type(data_type, f"{data_type} unsigned", True) == expected


@pytest.mark.parametrize(
    'data_type, unsigned, expected',
    [
        ('int', False, 'serial'),
        ('int', True, 'bigserial'),
        ('mediumint', False, 'serial'),
        ('bigint', False, 'bigserial'),
        ('bigint', True, 'bigserial'),
        ('tinyint', True, 'serial'),
        ('smallint', False, 'smallint'),
    ],
)
def test_auto_increment_promotes_to_sequence(data_type, unsigned, expected):
    assert map_mysql_type(data_type, data_type, unsigned, 'auto_increment') == expected


def test_auto_increment_ignored_for_non_integers():
    assert map_mysql_type('varchar', 'varchar(10)', False, 'auto_increment') == 'varchar(10)'


def test_unsigned_decimal_keeps_precision():
    assert map_mysql_type('decimal', 'decimal(12,4) unsigned', True) == 'numeric(12,4)'


def test_quote_identifier_escapes_quotes():
    assert quote_identifier('order') == '"order"'
    assert quote_identifier('we"ird') == '"we""ird"'


def test_format_default():
    assert format_default(None, 'integer') == ''
    assert format_default('0', 'integer') == ' DEFAULT 0'
    assert format_default('1', 'boolean') == ' DEFAULT true'
    assert format_default('CURRENT_TIMESTAMP', 'timestamp') == ' DEFAULT CURRENT_TIMESTAMP'
    assert format_default('current_timestamp()', 'timestamp') == ' DEFAULT CURRENT_TIMESTAMP'
    assert format_default('pending', 'varchar(20)') == " DEFAULT 'pending'"
    assert format_default("it's", 'text') == " DEFAULT 'it''s'"
    assert format_default('5', 'serial') == ''


def test_orders_table_ddl_quotes_reserved_word_and_uses_bigserial():
    columns = [
        make_column(
            'id',
            'int',
            'int(10) unsigned',
            nullable=False,
            key='PRI',
            extra='auto_increment',
        ),
        make_column('order', 'varchar', 'varchar(50)', nullable=False),
        make_column('total', 'decimal', 'decimal(10,2)', default='0.00'),
    ]

    sql = generate_create_table_sql('orders', columns)

    assert sql.startswith('CREATE TABLE IF NOT EXISTS "orders" (')
    assert '"id" bigserial NOT NULL PRIMARY KEY' in sql
    assert '"order" varchar(50) NOT NULL' in sql
    assert '"total" numeric(10,2) DEFAULT 0.00' in sql


def test_unknown_column_type_uses_text_in_ddl():
    sql = generate_create_table_sql('shapes', [make_column('area', 'polygon')])
    assert '"area" text' in sql


def test_composite_primary_key_is_table_constraint():
    columns = [
        make_column('a', 'int', nullable=False, key='PRI'),
        make_column('b', 'int', nullable=False, key='PRI'),
    ]
    sql = generate_create_table_sql('pairs', columns)
    assert 'PRIMARY KEY ("a", "b")' in sql
    assert sql.count('PRIMARY KEY') == 1


def test_insert_sql_uses_conflict_guard():
    sql = generate_insert_sql('orders', ['id', 'order'])
    assert sql == (
        'INSERT INTO "orders" ("id", "order") VALUES (:p0, :p1) '
        'ON CONFLICT DO NOTHING'
    )
