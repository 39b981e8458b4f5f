# dbmerge/merge/metadata.py

"""
Record type metadata.

Describes how a record type maps onto a table: the table name, its columns in
a fixed order and the role each column plays in generated statements. A
descriptor is built once per record type and cached for the life of the
process.

Column Configuration
--------------------
    Each column is configured with a dict containing:

    * **field** (str, optional):
      Record attribute (or mapping key) holding the value, if it differs
      from the column name.

    * **primary_key** (bool, optional, default False):
      Column takes part in the key that matches records to rows.

    * **explicit_key** (bool, optional, default False):
      Key column whose value is supplied by the caller rather than generated
      by the database. Implies primary_key.

    * **identity** (bool, optional, default False):
      Value is generated by the database on insert and copied back onto the
      record.

    * **computed** (bool, optional, default False):
      Read-only column calculated by the database. Never written, copied back
      onto the record after insert, update and upsert.

    * **write** (bool, optional, default True):
      False leaves the column out of every statement.

Example
-------
::

    from dbmerge.merge import model

    @model(table='fire_nation_army', columns={
        'soldier_id': {'primary_key': True, 'identity': True},
        'full_name': {'field': 'name'},
        'rank': {},
        'callsign': {'computed': True},
    })
    class Soldier:
        def __init__(self, name, rank, soldier_id=None, callsign=None):
            ...

Dataclasses can put the same keys in field metadata (``column`` names the
database column when it differs from the field)::

    @dataclass
    class Scroll:
        __table__ = 'library_scrolls'
        scroll_id: int = field(default=None, metadata={'primary_key': True, 'identity': True})
        title: str = None
"""

import dataclasses
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from ..exceptions import UnsupportedShapeError
from ..utils import validate_identifier, sanitize_identifier, Mapping

logger = logging.getLogger(__name__)

ORDINAL_COLUMN = 'merge_ordinal__'
ACTION_COLUMN = 'merge_action__'
RESERVED_COLUMNS = (ORDINAL_COLUMN, ACTION_COLUMN)

COLUMN_OPTIONS = ('field', 'column', 'primary_key', 'explicit_key', 'identity', 'computed', 'write')

ColumnConfig = Union[Dict[str, Dict[str, Any]], Iterable[str]]


@dataclass(frozen=True)
class ColumnDescriptor:
    """One column of a record type and the role it plays in statements."""
    name: str
    attr: str
    bind_name: str
    primary_key: bool = False
    explicit_key: bool = False
    identity: bool = False
    computed: bool = False
    write: bool = True

    @property
    def is_key(self) -> bool:
        return self.primary_key or self.explicit_key

    @property
    def is_output(self) -> bool:
        """Value comes back from the database after a write."""
        return self.write and (self.identity or self.computed)

    @property
    def is_insertable(self) -> bool:
        return self.write and not self.identity and not self.computed

    @property
    def is_updatable(self) -> bool:
        return self.is_insertable and not self.is_key


@dataclass(frozen=True)
class RecordDescriptor:
    """
    Table name and ordered columns of a record type.

    Column order is declaration order and never changes for a descriptor;
    parameter positions and output ordinals depend on it.
    """
    table: str
    columns: Tuple[ColumnDescriptor, ...]
    record_type: Optional[type] = None

    def __repr__(self) -> str:
        return f"RecordDescriptor('{self.table}', {len(self.columns)} columns)"

    @property
    def key_columns(self) -> Tuple[ColumnDescriptor, ...]:
        return tuple(col for col in self.columns if col.write and col.is_key)

    @property
    def insert_columns(self) -> Tuple[ColumnDescriptor, ...]:
        return tuple(col for col in self.columns if col.is_insertable)

    @property
    def update_columns(self) -> Tuple[ColumnDescriptor, ...]:
        return tuple(col for col in self.columns if col.is_updatable)

    @property
    def output_columns(self) -> Tuple[ColumnDescriptor, ...]:
        return tuple(col for col in self.columns if col.is_output)

    @property
    def identity_columns(self) -> Tuple[ColumnDescriptor, ...]:
        return tuple(col for col in self.columns if col.write and col.identity)

    @property
    def computed_columns(self) -> Tuple[ColumnDescriptor, ...]:
        return tuple(col for col in self.columns if col.write and col.computed)

    @property
    def readable_columns(self) -> Tuple[ColumnDescriptor, ...]:
        return tuple(col for col in self.columns if col.write)

    def column(self, name: str) -> ColumnDescriptor:
        """Look up a column by database name or record attribute (case-insensitive)."""
        lowered = name.lower()
        for col in self.columns:
            if col.name.lower() == lowered or col.attr.lower() == lowered:
                return col
        raise UnsupportedShapeError(f"Table {self.table} has no column or attribute '{name}'")

    def require_key(self, operation: str) -> Tuple[ColumnDescriptor, ...]:
        """Return the key columns, failing when the operation needs a key and none is declared."""
        keys = self.key_columns
        if not keys:
            raise UnsupportedShapeError(
                f"Cannot {operation} {self.table}: no primary_key or explicit_key column declared"
            )
        return keys


def _column_from_config(index: int, name: str, config: Optional[Dict[str, Any]],
                        table: str) -> ColumnDescriptor:
    config = dict(config or {})
    unknown = set(config) - set(COLUMN_OPTIONS)
    if unknown:
        raise UnsupportedShapeError(f"Unknown option(s) {sorted(unknown)} for column {table}.{name}")

    name = config.pop('column', None) or name
    try:
        validate_identifier(name)
    except ValueError as e:
        raise UnsupportedShapeError(f"Column {table}.{name}: {e}")
    if name.lower() in RESERVED_COLUMNS:
        raise UnsupportedShapeError(f"Column name {name} is reserved for MERGE output correlation")

    explicit_key = bool(config.get('explicit_key'))
    identity = bool(config.get('identity'))
    computed = bool(config.get('computed'))
    if computed and identity:
        raise UnsupportedShapeError(f"Column {table}.{name} cannot be both computed and identity")
    if explicit_key and identity:
        raise UnsupportedShapeError(f"Column {table}.{name} cannot be both explicit_key and identity")

    return ColumnDescriptor(
        name=name,
        attr=config.get('field') or name,
        bind_name=sanitize_identifier(name, index),
        primary_key=bool(config.get('primary_key')) or explicit_key,
        explicit_key=explicit_key,
        identity=identity,
        computed=computed,
        write=bool(config.get('write', True)),
    )


def describe(table: str, columns: ColumnConfig, record_type: Optional[type] = None) -> RecordDescriptor:
    """
    Build a descriptor from a table name and column configuration.

    ``columns`` is either a dict of column name to config dict or a plain
    list of column names. Use this directly for records that are dicts.

    Example:
        scrolls = describe('library_scrolls', {
            'scroll_id': {'primary_key': True, 'identity': True},
            'title': {},
        })
    """
    try:
        validate_identifier(table)
    except ValueError as e:
        raise UnsupportedShapeError(f"Table name {table}: {e}")

    if isinstance(columns, Mapping):
        items = list(columns.items())
    else:
        items = [(name, None) for name in columns]
    if not items:
        raise UnsupportedShapeError(f"Table {table} has no resolvable columns")

    descriptors = []
    seen_binds = set()
    for index, (name, config) in enumerate(items):
        col = _column_from_config(index, name, config, table)
        if col.bind_name in seen_binds:
            col = dataclasses.replace(col, bind_name=f'{col.bind_name}_{index}')
        seen_binds.add(col.bind_name)
        descriptors.append(col)

    names = [col.name.lower() for col in descriptors]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise UnsupportedShapeError(f"Table {table} declares duplicate columns: {duplicates}")

    descriptor = RecordDescriptor(table, tuple(descriptors), record_type)
    logger.debug(f"Resolved {descriptor!r}: keys={[c.name for c in descriptor.key_columns]}, "
                 f"outputs={[c.name for c in descriptor.output_columns]}")
    return descriptor


def _columns_from_class(cls: type) -> Dict[str, Dict[str, Any]]:
    """Column configuration declared on the class itself."""
    declared = getattr(cls, '__columns__', None)
    if declared:
        if isinstance(declared, Mapping):
            return dict(declared)
        return {name: {} for name in declared}

    if dataclasses.is_dataclass(cls):
        columns = {}
        for fld in dataclasses.fields(cls):
            config = {key: val for key, val in fld.metadata.items() if key in COLUMN_OPTIONS}
            config['field'] = fld.name
            columns[config.pop('column', fld.name)] = config
        return columns

    annotations = {}
    for klass in reversed(cls.__mro__):
        annotations.update(getattr(klass, '__annotations__', {}))
    return {name: {} for name in annotations if not name.startswith('_')}


_registry: Dict[type, RecordDescriptor] = {}
_registry_lock = threading.RLock()


def register_model(cls: type, table: Optional[str] = None,
                   columns: Optional[ColumnConfig] = None) -> RecordDescriptor:
    """
    Register a record type and return its descriptor.

    The table defaults to ``cls.__table__`` or the class name; columns default
    to ``cls.__columns__``, dataclass fields or class annotations, in that order.
    Registering a type again replaces its descriptor.
    """
    table = table or getattr(cls, '__table__', None) or cls.__name__
    if columns is None:
        columns = _columns_from_class(cls)
    descriptor = describe(table, columns, record_type=cls)
    with _registry_lock:
        _registry[cls] = descriptor
    return descriptor


def model(table: Optional[str] = None, columns: Optional[ColumnConfig] = None):
    """Class decorator form of :func:`register_model`."""

    def decorator(cls):
        register_model(cls, table=table, columns=columns)
        return cls

    return decorator


def resolve(record_type: Union[type, RecordDescriptor]) -> RecordDescriptor:
    """
    Return the descriptor for a record type, building and caching it on first use.

    A descriptor passed in is returned unchanged.
    """
    if isinstance(record_type, RecordDescriptor):
        return record_type
    descriptor = _registry.get(record_type)
    if descriptor is not None:
        return descriptor
    if not isinstance(record_type, type):
        raise UnsupportedShapeError(f"Cannot resolve metadata for {record_type!r}: not a class")
    with _registry_lock:
        descriptor = _registry.get(record_type)
        if descriptor is None:
            descriptor = register_model(record_type)
    return descriptor


def get_value(record: Any, attr: str) -> Any:
    """
    Read an attribute from an object record or a key from a mapping record.

    Mapping records may leave keys out (read as None). Object records must
    carry every declared attribute, so a misspelled ``field`` cannot bind NULL.
    """
    if isinstance(record, Mapping):
        return record.get(attr)
    try:
        return getattr(record, attr)
    except AttributeError:
        raise UnsupportedShapeError(
            f"{type(record).__name__} record has no attribute '{attr}' declared for its table") from None


def set_value(record: Any, attr: str, value: Any) -> None:
    """Write an attribute on an object record or a key on a mapping record."""
    if isinstance(record, Mapping):
        record[attr] = value
    else:
        setattr(record, attr, value)
