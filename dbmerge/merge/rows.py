# dbmerge/merge/rows.py

"""
Single-row writes and reads for backends without MERGE support.

Each record is one INSERT, UPDATE or DELETE. Identity values come back through
``cursor.lastrowid``; computed columns are re-read by key after the write.
"""

import dataclasses
import logging
from typing import Any, Dict, Iterable, Optional

from .metadata import RecordDescriptor, get_value, set_value
from .template import single_row_sql
from ..utils import bind_parameters, Mapping

logger = logging.getLogger(__name__)


def build_record(descriptor: RecordDescriptor, values: Dict[str, Any]) -> Any:
    """
    Create a record of the descriptor's type from attribute values.

    Dataclasses are created through their constructor; other classes get
    their attributes set on an uninitialized instance. Descriptors without a
    record type produce dicts.
    """
    record_type = descriptor.record_type
    if record_type is None:
        return dict(values)
    if dataclasses.is_dataclass(record_type):
        init_fields = {fld.name for fld in dataclasses.fields(record_type) if fld.init}
        record = record_type(**{key: val for key, val in values.items() if key in init_fields})
        for key, val in values.items():
            if key not in init_fields:
                set_value(record, key, val)
        return record
    record = record_type.__new__(record_type)
    for key, val in values.items():
        setattr(record, key, val)
    return record


def row_to_record(descriptor: RecordDescriptor, column_names, row) -> Any:
    """
    Map a result row onto a record using the descriptor's column names (case-insensitive).

    ``row`` is a sequence in ``column_names`` order or a mapping row from a dict cursor.
    """
    if isinstance(row, Mapping):
        row = list(row.values())
    values = {}
    for name, value in zip(column_names, row):
        values[descriptor.column(name).attr] = value
    return build_record(descriptor, values)


class RowWriter:
    """
    Writes records one statement at a time.

    Example:
        writer = RowWriter(cursor, resolve(Scroll))
        writer.insert(scrolls)
    """

    def __init__(self, cursor, descriptor: RecordDescriptor):
        self.cursor = cursor
        self.descriptor = descriptor
        self.paramstyle = cursor.paramstyle
        self._sql = {}

    def _statement(self, operation: str):
        if operation not in self._sql:
            self._sql[operation] = single_row_sql(self.descriptor, operation, self.paramstyle)
        return self._sql[operation]

    def _params(self, param_names, record) -> Any:
        used = set(param_names)
        by_bind = {col.bind_name: get_value(record, col.attr) for col in self.descriptor.columns
                   if col.bind_name in used}
        return bind_parameters(param_names, by_bind, self.paramstyle)

    def _exec(self, operation: str, record: Any) -> int:
        sql, param_names = self._statement(operation)
        try:
            self.cursor.execute(sql, self._params(param_names, record))
        except self.cursor.connection.interface.DatabaseError as e:
            logger.error(f"{operation.capitalize()} failed for {self.descriptor.table}: {e}")
            raise
        return max(self.cursor.rowcount or 0, 0)

    def _refresh_computed(self, record: Any) -> None:
        if not self.descriptor.computed_columns or not self.descriptor.key_columns:
            return
        current = self.select(record)
        if current is None:
            return
        for col in self.descriptor.computed_columns:
            set_value(record, col.attr, get_value(current, col.attr))

    def insert(self, records: Iterable[Any]) -> int:
        identity = self.descriptor.identity_columns
        count = 0
        for record in records:
            count += self._exec('insert', record)
            if len(identity) == 1 and self.cursor.lastrowid is not None:
                set_value(record, identity[0].attr, self.cursor.lastrowid)
            self._refresh_computed(record)
        return count

    def update(self, records: Iterable[Any]) -> int:
        count = 0
        for record in records:
            updated = self._exec('update', record)
            if updated:
                self._refresh_computed(record)
            count += updated
        return count

    def delete(self, records: Iterable[Any]) -> int:
        return sum(self._exec('delete', record) for record in records)

    def select(self, key: Any) -> Optional[Any]:
        """Read one record by key. ``key`` is a record, a dict of key values or a single key value."""
        keys = self.descriptor.require_key('select')
        if not isinstance(key, Mapping) and not hasattr(key, keys[0].attr):
            if len(keys) > 1:
                raise ValueError(f"{self.descriptor.table} has a composite key; pass a dict or record")
            key = {keys[0].attr: key}

        sql, param_names = self._statement('select')
        self.cursor.execute(sql, self._params(param_names, key))
        row = self.cursor.fetchone()
        if row is None:
            return None
        names = [d[0] for d in self.cursor.description]
        return row_to_record(self.descriptor, names, row)
