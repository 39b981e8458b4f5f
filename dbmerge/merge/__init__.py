# dbmerge/merge/__init__.py
"""
Bulk write engine: record metadata, MERGE templates, batching and execution.
"""

from .metadata import (ColumnDescriptor, RecordDescriptor, describe, model, register_model, resolve,
                       ORDINAL_COLUMN, ACTION_COLUMN)
from .template import StatementTemplate, build_template, single_row_sql, OPERATIONS
from .batcher import Batch, BatchPlan, Batcher
from .engine import BulkMerge, OperationResult, OutputMap, reflection_output_map
from .rows import RowWriter

__all__ = [
    'ColumnDescriptor',
    'RecordDescriptor',
    'describe',
    'model',
    'register_model',
    'resolve',
    'ORDINAL_COLUMN',
    'ACTION_COLUMN',
    'StatementTemplate',
    'build_template',
    'single_row_sql',
    'OPERATIONS',
    'Batch',
    'BatchPlan',
    'Batcher',
    'BulkMerge',
    'OperationResult',
    'OutputMap',
    'reflection_output_map',
    'RowWriter',
]
