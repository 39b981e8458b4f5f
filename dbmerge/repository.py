# dbmerge/repository.py

"""
Per-model façade over the bulk engine, the single-row writer and the query builder.

Example
-------
::

    import dbmerge
    from dbmerge.repository import Repository
    from dbmerge.query import QueryFilter, UpdateSpec

    repo = Repository(dbmerge.connect('ba_sing_se'))
    citizens = repo.entity(Citizen)

    citizens.add_many(new_citizens)          # identities are set on the records
    citizens.upsert_many(census)
    citizens.update_where(UpdateSpec(ring='Lower'), QueryFilter(ring='Outer'))
    oldest = citizens.max('age', QueryFilter(city='Ba Sing Se'))

Writes with more than one record run inside one transaction. Whether they
use MERGE or one statement per record depends on what the database declared
it supports when the repository was created.
"""

import logging
from typing import Any, Callable, Iterable, List, Optional, Union

from .exceptions import UnsupportedShapeError
from .merge.engine import BulkMerge
from .merge.metadata import RecordDescriptor, resolve
from .merge.rows import RowWriter, row_to_record
from .merge.template import TARGET_ALIAS
from .query import QueryBuilder, QueryFilter, UpdateSpec

logger = logging.getLogger(__name__)

# rows are mapped onto records by position
ROW_CURSOR = 'list'


class Repository:
    """
    Runs work against one database.

    Args:
        database: dbmerge Database
        cursor_type: Cursor type handed to the functions passed to execute().
            Entities always read through list cursors whatever this is set to.
    """

    def __init__(self, database, cursor_type: str = 'list'):
        self.database = database
        self.cursor_type = cursor_type
        self.supports_bulk_merge = bool(getattr(database, 'supports_bulk_merge', False))
        self.server_type = getattr(database, 'server_type', 'unknown')
        self.paramstyle = database.interface.paramstyle

    def __repr__(self) -> str:
        return f"Repository({self.database}, bulk_merge={self.supports_bulk_merge})"

    def execute(self, fn: Callable[[Any], Any], cursor_type: Optional[str] = None) -> Any:
        """Call ``fn(cursor)`` with a fresh cursor and return its result."""
        cursor = self.database.cursor(cursor_type or self.cursor_type)
        try:
            return fn(cursor)
        finally:
            cursor.close()

    def execute_with_transaction(self, fn: Callable[[Any], Any], cursor_type: Optional[str] = None) -> Any:
        """Like :meth:`execute`, committed on success and rolled back on any exception."""
        with self.database.transaction():
            return self.execute(fn, cursor_type)

    def entity(self, model: Union[type, RecordDescriptor]) -> 'Entity':
        return Entity(self, model)


class Entity:
    """
    Reads and writes one record type.

    Override :meth:`select_query`, :meth:`filter` or :meth:`join` to change how
    filters turn into SQL, e.g. to join a lookup table for a typed filter.
    """

    alias: Optional[str] = None

    def __init__(self, repository: Repository, model: Union[type, RecordDescriptor]):
        self.repository = repository
        self.descriptor = resolve(model)

    def __repr__(self) -> str:
        return f"Entity({self.descriptor.table})"

    def builder(self) -> QueryBuilder:
        return QueryBuilder(self.descriptor, self.repository.paramstyle, alias=self.alias,
                            server_type=self.repository.server_type)

    # hooks
    def select_query(self, builder: QueryBuilder, filter: Optional[QueryFilter]) -> None:
        self.query(builder, filter)

    def query(self, builder: QueryBuilder, filter: Optional[QueryFilter]) -> None:
        self.join(builder, filter)
        self.filter(builder, filter)

    def filter(self, builder: QueryBuilder, filter: Optional[QueryFilter]) -> None:
        builder.filter(filter)

    def join(self, builder: QueryBuilder, filter: Optional[QueryFilter]) -> None:
        pass

    def merge_filter(self, filter: Optional[QueryFilter]) -> Optional[QueryBuilder]:
        """
        Condition restricting key-matched rows of a bulk update or delete.

        Built through the same :meth:`query` hooks as reads, over the MERGE
        target alias. Hooks that join other tables cannot restrict a MERGE.
        """
        if filter is None:
            return None
        builder = QueryBuilder(self.descriptor, self.repository.paramstyle, alias=TARGET_ALIAS,
                               server_type=self.repository.server_type)
        self.query(builder, filter)
        if builder.has_joins:
            raise UnsupportedShapeError(
                f"Filtered {self.descriptor.table} writes cannot join other tables; use update_where or delete_where")
        return builder

    # reads
    def get(self, key: Any) -> Optional[Any]:
        """Record with the given key (a value, a dict of key values or a record), or None."""
        return self.repository.execute(lambda cursor: RowWriter(cursor, self.descriptor).select(key), ROW_CURSOR)

    def list(self, filter: Optional[QueryFilter] = None, top: Optional[int] = None,
             order_by: Optional[Iterable[str]] = None) -> List[Any]:
        builder = self.builder()
        self.select_query(builder, filter)
        sql, params = builder.as_select(top=top, order_by=order_by)

        def fetch(cursor):
            cursor.execute(sql, params)
            names = [d[0] for d in cursor.description]
            return [row_to_record(self.descriptor, names, row) for row in cursor.fetchall()]

        return self.repository.execute(fetch, ROW_CURSOR)

    def get_one(self, filter: Optional[QueryFilter] = None, order_by: Optional[Iterable[str]] = None
                ) -> Optional[Any]:
        records = self.list(filter, top=1, order_by=order_by)
        return records[0] if records else None

    def exists(self, filter: Optional[QueryFilter] = None) -> bool:
        return self.count(filter) > 0

    def count(self, filter: Optional[QueryFilter] = None) -> int:
        return int(self._aggregate('COUNT', '*', filter) or 0)

    def min(self, column: str, filter: Optional[QueryFilter] = None) -> Any:
        return self._aggregate('MIN', column, filter)

    def max(self, column: str, filter: Optional[QueryFilter] = None) -> Any:
        return self._aggregate('MAX', column, filter)

    def _aggregate(self, fn: str, column: str, filter: Optional[QueryFilter]) -> Any:
        builder = self.builder()
        self.query(builder, filter)
        sql, params = builder.as_aggregate(fn, column)

        def fetch(cursor):
            cursor.execute(sql, params)
            row = cursor.fetchone()
            return row[0] if row else None

        return self.repository.execute(fetch, ROW_CURSOR)

    # writes
    def _write(self, operation: str, records: Iterable[Any], filter: Optional[QueryFilter] = None) -> int:
        records = list(records)
        if not records:
            return 0

        if self.repository.supports_bulk_merge:
            condition = self.merge_filter(filter)

            def run(cursor):
                return BulkMerge(cursor, self.descriptor).execute(operation, records, filter=condition).affected
        else:
            if operation == 'upsert':
                raise NotImplementedError(
                    f"Upsert needs MERGE, which {self.repository.server_type} databases do not support")
            if filter is not None and not filter.is_empty:
                raise NotImplementedError(
                    f"Filtered {operation} needs MERGE, which {self.repository.server_type} databases do not support")
            if operation != 'insert':
                self.descriptor.require_key(operation)

            def run(cursor):
                return getattr(RowWriter(cursor, self.descriptor), operation)(records)

        affected = self.repository.execute_with_transaction(run, ROW_CURSOR)
        logger.debug(f"{operation.capitalize()} of {len(records)} {self.descriptor.table} records "
                     f"affected {affected} rows")
        return affected

    def add(self, record: Any) -> int:
        return self._write('insert', [record])

    def add_many(self, records: Iterable[Any]) -> int:
        return self._write('insert', records)

    def update(self, record: Any) -> bool:
        return self._write('update', [record]) > 0

    def update_many(self, records: Iterable[Any], filter: Optional[QueryFilter] = None) -> int:
        """
        Update rows matched by the records' keys.

        A filter further restricts which matched rows change. An empty filter
        adds no condition; rows that are not key-matched are never touched.
        On MERGE databases the filter goes through the entity's query hooks;
        hooks that join other tables are rejected there.
        """
        return self._write('update', records, filter)

    def upsert(self, record: Any) -> int:
        return self._write('upsert', [record])

    def upsert_many(self, records: Iterable[Any]) -> int:
        return self._write('upsert', records)

    def delete(self, record: Any) -> bool:
        return self._write('delete', [record]) > 0

    def delete_many(self, records: Iterable[Any], filter: Optional[QueryFilter] = None) -> int:
        """Delete rows matched by the records' keys, optionally restricted by a filter."""
        return self._write('delete', records, filter)

    def _require_filter(self, operation: str, filter: Optional[QueryFilter], all_rows: bool) -> None:
        if (filter is None or filter.is_empty) and not all_rows:
            raise UnsupportedShapeError(
                f"{operation} on {self.descriptor.table} without a filter would touch every row; "
                f"pass all_rows=True to do that")

    def update_where(self, update: UpdateSpec, filter: Optional[QueryFilter] = None,
                     all_rows: bool = False) -> int:
        """
        Set the values in ``update`` on every row matching ``filter``.

        An empty or missing filter raises UnsupportedShapeError unless
        ``all_rows`` is True.
        """
        self._require_filter('update_where', filter, all_rows)
        builder = self.builder().update(update)
        self.query(builder, filter)
        return self._execute_write(*builder.as_update())

    def delete_where(self, filter: Optional[QueryFilter] = None, all_rows: bool = False) -> int:
        """Delete every row matching ``filter``; an empty filter needs ``all_rows=True``."""
        self._require_filter('delete_where', filter, all_rows)
        builder = self.builder()
        self.query(builder, filter)
        return self._execute_write(*builder.as_delete())

    def _execute_write(self, sql: str, params) -> int:
        def run(cursor):
            cursor.execute(sql, params)
            return max(cursor.rowcount or 0, 0)

        return self.repository.execute_with_transaction(run, ROW_CURSOR)
