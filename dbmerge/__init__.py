# dbmerge/__init__.py
"""
dbmerge - bulk, set-based writes for DB-API databases

Provides:
- Bulk insert, update, upsert and delete through batched T-SQL MERGE statements
- Identity and computed values copied back onto the records that were written
- Composable query filters for SELECT, UPDATE and DELETE
- A per-model repository façade with a single-row fallback for databases without MERGE
- YAML-based configuration with password encryption

Basic usage::

    import dbmerge
    from dbmerge.merge import BulkMerge, model

    @model(table='citizens', columns={
        'citizen_id': {'primary_key': True, 'identity': True},
        'name': {},
        'city': {},
    })
    class Citizen:
        ...

    with dbmerge.connect('ba_sing_se') as db:
        with db.transaction():
            BulkMerge(db.cursor(), Citizen).insert(citizens)
"""

__version__ = '0.1.0'

from .database import Database
from .config import connect, set_config_file
from .cursors import Cursor, TupleCursor, DictCursor
from .exceptions import (BulkOperationError, UnsupportedShapeError, RecordTooWideError,
                         OutputCorrelationError, ExecutionError, BulkCancelledError)
from .logging_utils import setup_logging, errors_logged
from .merge import BulkMerge, OutputMap, describe, model, register_model, resolve
from .query import QueryBuilder, QueryFilter, UpdateSpec
from .repository import Repository, Entity

__all__ = [
    'connect',
    'set_config_file',
    'Database',
    'Cursor',
    'TupleCursor',
    'DictCursor',
    'BulkOperationError',
    'UnsupportedShapeError',
    'RecordTooWideError',
    'OutputCorrelationError',
    'ExecutionError',
    'BulkCancelledError',
    'setup_logging',
    'errors_logged',
    'BulkMerge',
    'OutputMap',
    'describe',
    'model',
    'register_model',
    'resolve',
    'QueryBuilder',
    'QueryFilter',
    'UpdateSpec',
    'Repository',
    'Entity',
]
