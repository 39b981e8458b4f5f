# tests/conftest.py
"""
Shared test fixtures and configuration for pytest.

SQL Server is not available to the test suite, so ``FakeSqlServer`` plays its
part: a DB-API connection whose cursor understands the statements dbmerge
generates and applies them to an in-memory table. Output rows come back in
reverse ordinal order to make sure nothing relies on the server keeping input
order.
"""

import copy
import os
import re
import types
from pathlib import Path
from unittest.mock import patch

import pytest

from dbmerge import defaults
from dbmerge.database import Database
from dbmerge.merge.metadata import ORDINAL_COLUMN
from dbmerge.merge.template import source_columns, clear_template_cache


@pytest.fixture(autouse=True)
def setup_test_config():
    """Use tests/test.yml and a known encryption key, and put settings back after each test."""
    from dbmerge.config import set_config_file

    saved = copy.deepcopy(defaults.settings)
    with patch.dict(os.environ, {'DBMERGE_ENCRYPTION_KEY': '2YvTXI9DHQPy4d6-ZC9NxcypvLMsJ94OBdmoHyjmwbM='}):
        set_config_file(str(Path(__file__).parent / 'test.yml'))
        yield
    defaults.settings.clear()
    defaults.settings.update(saved)
    clear_template_cache()


class Error(Exception):
    pass


class DatabaseError(Error):
    pass


class IntegrityError(DatabaseError):
    pass


class OperationalError(DatabaseError):
    pass


def make_interface(name: str = 'fake_sqlserver', paramstyle: str = 'qmark'):
    """Stand-in for a driver module such as pyodbc."""
    interface = types.ModuleType(name)
    interface.paramstyle = paramstyle
    interface.Error = Error
    interface.DatabaseError = DatabaseError
    interface.IntegrityError = IntegrityError
    interface.OperationalError = OperationalError
    return interface


VALUES_ROW = re.compile(r'^    \(', re.MULTILINE)


class FakeSqlServer:
    """
    In-memory table that executes dbmerge's MERGE and staging statements.

    Args:
        descriptor: RecordDescriptor of the only table this server holds
        computed: column name -> fn(row) for computed columns
    """

    def __init__(self, descriptor, computed=None):
        self.descriptor = descriptor
        self.computed = computed or {}
        self.rows = {}
        self.next_identity = 1
        self.statements = []
        self.merge_count = 0
        self.staged = None
        self.dropped = 0
        self.cancel_calls = 0
        self.commits = 0
        self.rollbacks = 0
        self.fail_on_merge = None
        self.tamper = None
        self.before_merge = None

    def key_of(self, row):
        return tuple(row[col.name] for col in self.descriptor.key_columns)

    def insert_row(self, values):
        """Seed a row directly, filling identity and computed columns."""
        row = {col.name: values.get(col.name) for col in self.descriptor.columns}
        for col in self.descriptor.identity_columns:
            row[col.name] = self.next_identity
            self.next_identity += 1
        self._compute(row)
        key = self.key_of(row)
        if key in self.rows:
            raise IntegrityError(f"Violation of PRIMARY KEY constraint. Duplicate key {key}")
        self.rows[key] = row
        return row

    def _compute(self, row):
        for name, fn in self.computed.items():
            row[name] = fn(row)

    def run(self, sql, params):
        self.statements.append((sql, params))
        if sql.startswith('IF OBJECT_ID'):
            self.staged = []
            return None, -1
        if sql.startswith('INSERT INTO #'):
            self.staged.append(list(params))
            return None, 1
        if sql.startswith('TRUNCATE TABLE #'):
            self.staged = []
            return None, -1
        if sql.startswith('DROP TABLE #'):
            self.dropped += 1
            self.staged = None
            return None, -1
        if sql.startswith('MERGE'):
            return self._merge(sql, params)
        raise DatabaseError(f"FakeSqlServer cannot run: {sql[:40]}")

    def _source_records(self, sql, params, columns):
        names = [col.name for col in columns]
        if 'USING #' in sql:
            return [(row[-1], dict(zip(names, row[:-1]))) for row in self.staged]
        width = len(names)
        count = len(VALUES_ROW.findall(sql))
        return [(i, dict(zip(names, params[i * width:(i + 1) * width]))) for i in range(count)]

    def _merge(self, sql, params):
        self.merge_count += 1
        if self.before_merge:
            self.before_merge(self.merge_count)
        if self.fail_on_merge == self.merge_count:
            raise DatabaseError(f"Simulated failure on statement {self.merge_count}")

        if 'ON 1 = 0' in sql:
            operation = 'insert'
        elif 'WHEN NOT MATCHED BY TARGET' in sql:
            operation = 'upsert'
        elif '\n    DELETE' in sql:
            operation = 'delete'
        else:
            operation = 'update'
        d = self.descriptor
        records = self._source_records(sql, params, source_columns(d, operation))

        outputs = []
        affected = 0
        for ordinal, source in records:
            key = tuple(source.get(col.name) for col in d.key_columns)
            matched = operation != 'insert' and key in self.rows
            if operation == 'delete':
                if matched:
                    del self.rows[key]
                    affected += 1
                continue
            if matched:
                row = self.rows[key]
                for col in d.update_columns:
                    row[col.name] = source[col.name]
                self._compute(row)
                action = 'UPDATE'
            elif operation == 'update':
                continue
            else:
                row = self.insert_row({col.name: source.get(col.name) for col in d.insert_columns})
                action = 'INSERT'
            affected += 1
            values = [ordinal]
            if operation == 'upsert':
                values.append(action)
            if operation == 'update':
                values.extend(row[col.name] for col in d.computed_columns)
            else:
                values.extend(row[col.name] for col in d.output_columns)
            outputs.append(values)

        if 'OUTPUT' not in sql:
            return None, affected
        outputs.reverse()
        if self.tamper:
            outputs = self.tamper(outputs)
            if outputs is None:
                return None, -1
        return outputs, len(outputs)

    def connect(self):
        return FakeConnection(self)


class FakeCursor:
    arraysize = 1000

    def __init__(self, server):
        self.server = server
        self.description = None
        self.rowcount = -1
        self._rows = []

    def _set_result(self, rows, rowcount):
        self.rowcount = rowcount
        if rows is None:
            self.description = None
            self._rows = []
        else:
            self.description = [(ORDINAL_COLUMN,) + (None,) * 6] + [('col',) + (None,) * 6] * 8
            self._rows = list(rows)

    def execute(self, sql, params=()):
        self._set_result(*self.server.run(sql, list(params)))

    def executemany(self, sql, seq_of_params):
        total = 0
        for params in seq_of_params:
            _, count = self.server.run(sql, list(params))
            total += count
        self._set_result(None, total)

    def fetchone(self):
        return self._rows.pop(0) if self._rows else None

    def fetchmany(self, size=None):
        size = size or self.arraysize
        rows, self._rows = self._rows[:size], self._rows[size:]
        return rows

    def fetchall(self):
        rows, self._rows = self._rows, []
        return rows

    def cancel(self):
        self.server.cancel_calls += 1

    def close(self):
        pass


class FakeConnection:
    def __init__(self, server):
        self.server = server

    def cursor(self):
        return FakeCursor(self.server)

    def commit(self):
        self.server.commits += 1

    def rollback(self):
        self.server.rollbacks += 1

    def close(self):
        pass


@pytest.fixture
def fake_sqlserver():
    """Factory returning ``(server, database)`` for a descriptor."""

    def factory(descriptor, computed=None):
        server = FakeSqlServer(descriptor, computed=computed)
        db = Database(server.connect(), make_interface(), 'fake', server_type='sqlserver')
        return server, db

    return factory


@pytest.fixture
def sqlite_db():
    """Create in-memory SQLite database."""
    db = Database.create('sqlite', database=':memory:')
    yield db
    db.close()


@pytest.fixture
def cursor(sqlite_db):
    """Get cursor from SQLite database."""
    return sqlite_db.cursor()
