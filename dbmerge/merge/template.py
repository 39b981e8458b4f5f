# dbmerge/merge/template.py

"""
SQL generation for bulk and single-row writes.

Bulk statements are T-SQL MERGE statements. The records of a batch are always
the MERGE source, either a table value constructor or a staged temp table,
and the persisted table is always the target::

    MERGE INTO orders AS Target
    USING (VALUES
        (:r0_order_id, :r0_status, 0),
        (:r1_order_id, :r1_status, 1)
    ) AS Source (order_id, status, merge_ordinal__)
    ON Target.order_id = Source.order_id
    WHEN MATCHED THEN
        UPDATE SET Target.status = Source.status
    WHEN NOT MATCHED BY TARGET THEN
        INSERT (order_id, status) VALUES (Source.order_id, Source.status)
    OUTPUT Source.merge_ordinal__, $action AS merge_action__;

Statements are written with ``:name`` placeholders and converted to the
driver's paramstyle. Templates only depend on the record type, operation,
batch size, paramstyle, filter and source kind, so they are cached.
"""

import logging
import threading
from textwrap import indent
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple, Union

from .metadata import (RecordDescriptor, ColumnDescriptor, ORDINAL_COLUMN, ACTION_COLUMN,
                       get_value)
from ..exceptions import UnsupportedShapeError
from ..utils import (ParamStyle, process_sql_parameters, bind_parameters, quote_identifier,
                     sanitize_identifier, wrap_at_comma)

logger = logging.getLogger(__name__)

OPERATIONS = ('insert', 'update', 'upsert', 'delete')
TARGET_ALIAS = 'Target'
SOURCE_ALIAS = 'Source'


def check_operation(operation: str) -> str:
    operation = (operation or '').lower()
    if operation not in OPERATIONS:
        raise ValueError(f"Invalid operation '{operation}'. Must be one of {OPERATIONS}")
    return operation


def source_columns(descriptor: RecordDescriptor, operation: str) -> Tuple[ColumnDescriptor, ...]:
    """Columns each record contributes to the MERGE source, in parameter order."""
    operation = check_operation(operation)
    if operation == 'insert':
        return descriptor.insert_columns
    keys = descriptor.require_key(operation)
    if operation == 'delete':
        return keys
    return keys + descriptor.update_columns


def output_columns(descriptor: RecordDescriptor, operation: str) -> Tuple[ColumnDescriptor, ...]:
    """Columns reported back by the OUTPUT clause."""
    operation = check_operation(operation)
    if operation in ('insert', 'upsert'):
        return descriptor.output_columns
    if operation == 'update':
        return descriptor.computed_columns
    return ()


def staging_table_name(descriptor: RecordDescriptor) -> str:
    return f"#stage_{sanitize_identifier(descriptor.table)}"


def _join(items: Sequence[str]) -> str:
    text = ', '.join(items)
    if len(items) > 4:
        text = wrap_at_comma(text)
    return text


class StatementTemplate:
    """
    A generated MERGE statement and everything needed to bind and read it.

    Attributes:
        operation: insert, update, upsert or delete
        sql: Statement in the driver's paramstyle
        param_names: Parameter names in the order they appear in ``sql``
        source_columns: Columns each record contributes, in order
        output_columns: Columns read back from each output row, after the
            ordinal and (for upsert) the action
        batch_size: Records bound per statement (None for staged templates)
        staged: Records come from a temp table loaded by ``load_sql``
    """

    def __init__(self, descriptor: RecordDescriptor, operation: str, sql: str,
                 param_names: Tuple[str, ...], paramstyle: str,
                 source_columns: Tuple[ColumnDescriptor, ...],
                 output_columns: Tuple[ColumnDescriptor, ...],
                 batch_size: Optional[int] = None, staged: bool = False,
                 has_output: bool = False, reports_action: bool = False):
        self.descriptor = descriptor
        self.operation = operation
        self.sql = sql
        self.param_names = param_names
        self.paramstyle = paramstyle
        self.source_columns = source_columns
        self.output_columns = output_columns
        self.batch_size = batch_size
        self.staged = staged
        self.has_output = has_output
        self.reports_action = reports_action
        self.stage_sql = None
        self.load_sql = None
        self.load_param_names: Tuple[str, ...] = ()
        self.clear_sql = None
        self.drop_sql = None

    def __repr__(self) -> str:
        source = 'staged' if self.staged else f'{self.batch_size} rows'
        return f"StatementTemplate({self.operation} {self.descriptor.table}, {source}, {self.paramstyle})"

    @property
    def parameters_per_record(self) -> int:
        """Parameters one record binds; staged loads also bind the ordinal."""
        return len(self.source_columns) + (1 if self.staged else 0)

    @property
    def output_width(self) -> int:
        return 1 + (1 if self.reports_action else 0) + len(self.output_columns)

    def bind(self, records: Sequence[Any] = (), filter_params: Optional[Dict[str, Any]] = None
             ) -> Union[tuple, dict]:
        """
        Parameters for one execution of ``sql``.

        For VALUES templates ``records`` must hold exactly ``batch_size``
        records; staged templates only bind the filter parameters.
        """
        values = {}
        if not self.staged:
            if len(records) != self.batch_size:
                raise ValueError(f"Template for {self.batch_size} records bound with {len(records)}")
            for ordinal, record in enumerate(records):
                for col in self.source_columns:
                    values[f'r{ordinal}_{col.bind_name}'] = get_value(record, col.attr)
        if filter_params:
            values.update(filter_params)
        return bind_parameters(self.param_names, values, self.paramstyle)

    def bind_rows(self, records: Iterable[Any]) -> list:
        """Parameter sets for loading records into the staging table with ``load_sql``."""
        rows = []
        for ordinal, record in enumerate(records):
            values = {col.bind_name: get_value(record, col.attr) for col in self.source_columns}
            values[ORDINAL_COLUMN] = ordinal
            rows.append(bind_parameters(self.load_param_names, values, self.paramstyle))
        return rows


def _source_clause(descriptor, columns, batch_size, staged) -> str:
    if staged:
        return f"USING {staging_table_name(descriptor)} AS {SOURCE_ALIAS}"

    rows = []
    for ordinal in range(batch_size):
        placeholders = [f':r{ordinal}_{col.bind_name}' for col in columns]
        placeholders.append(str(ordinal))
        rows.append(f"({', '.join(placeholders)})")
    alias_cols = [quote_identifier(col.name) for col in columns] + [ORDINAL_COLUMN]
    values = indent(',\n'.join(rows), '    ')
    return f"USING (VALUES\n{values}\n) AS {SOURCE_ALIAS} ({_join(alias_cols)})"


def _key_condition(keys) -> str:
    return ' AND '.join(
        f"{TARGET_ALIAS}.{quote_identifier(col.name)} = {SOURCE_ALIAS}.{quote_identifier(col.name)}"
        for col in keys)


def _update_action(descriptor, operation) -> str:
    columns = descriptor.update_columns
    if not columns and operation == 'upsert':
        # matched rows still have to report an action, so keys are set to themselves
        columns = tuple(col for col in descriptor.key_columns if col.is_insertable)
    if not columns:
        raise UnsupportedShapeError(f"Cannot {operation} {descriptor.table}: no updatable columns declared")
    assignments = [f"{TARGET_ALIAS}.{quote_identifier(col.name)} = {SOURCE_ALIAS}.{quote_identifier(col.name)}"
                   for col in columns]
    return f"UPDATE SET {_join(assignments)}"


def _insert_action(descriptor) -> str:
    columns = descriptor.insert_columns
    if not columns:
        return "INSERT DEFAULT VALUES"
    names = [quote_identifier(col.name) for col in columns]
    values = [f"{SOURCE_ALIAS}.{name}" for name in names]
    return f"INSERT ({_join(names)})\n        VALUES ({_join(values)})"


def _output_clause(outputs, reports_action) -> str:
    items = [f"{SOURCE_ALIAS}.{ORDINAL_COLUMN}"]
    if reports_action:
        items.append(f"$action AS {ACTION_COLUMN}")
    items.extend(f"inserted.{quote_identifier(col.name)}" for col in outputs)
    return f"OUTPUT {_join(items)}"


def _matched(where: Optional[str]) -> str:
    if where:
        return f"WHEN MATCHED AND ({where}) THEN"
    return "WHEN MATCHED THEN"


def _create_merge(descriptor: RecordDescriptor, operation: str, batch_size: Optional[int],
                  where: Optional[str], staged: bool) -> Tuple[str, Tuple, Tuple, bool, bool]:
    """Generate the MERGE statement with named parameters."""
    columns = source_columns(descriptor, operation)
    outputs = output_columns(descriptor, operation)
    reports_action = operation == 'upsert'
    has_output = bool(outputs) or reports_action

    lines = [f"MERGE INTO {quote_identifier(descriptor.table)} AS {TARGET_ALIAS}",
             _source_clause(descriptor, columns, batch_size, staged)]

    if operation == 'insert':
        lines.append("ON 1 = 0")
        lines.append("WHEN NOT MATCHED BY TARGET THEN")
        lines.append(f"    {_insert_action(descriptor)}")
    else:
        lines.append(f"ON {_key_condition(descriptor.key_columns)}")
        lines.append(_matched(where))
        if operation == 'delete':
            lines.append("    DELETE")
        else:
            lines.append(f"    {_update_action(descriptor, operation)}")
        if operation == 'upsert':
            lines.append("WHEN NOT MATCHED BY TARGET THEN")
            lines.append(f"    {_insert_action(descriptor)}")

    if has_output:
        lines.append(_output_clause(outputs, reports_action))
    sql = '\n'.join(lines) + ';'
    return sql, columns, outputs, has_output, reports_action


def _add_staging_sql(template: StatementTemplate) -> None:
    """Statements that create, load, clear and drop the staging table."""
    descriptor = template.descriptor
    stage = staging_table_name(descriptor)
    table = quote_identifier(descriptor.table)
    names = [quote_identifier(col.name) for col in template.source_columns]

    # the self join keeps SELECT INTO from copying the IDENTITY property
    select_cols = [f"{TARGET_ALIAS}.{name}" for name in names]
    select_cols.append(f"CAST(0 AS INT) AS {ORDINAL_COLUMN}")
    template.stage_sql = (
        f"IF OBJECT_ID('tempdb..{stage}') IS NOT NULL DROP TABLE {stage};\n"
        f"SELECT TOP 0 {_join(select_cols)}\n"
        f"INTO {stage}\n"
        f"FROM {table} AS {TARGET_ALIAS}\n"
        f"LEFT JOIN {table} AS Dummy ON 1 = 0;"
    )

    load_cols = names + [ORDINAL_COLUMN]
    placeholders = [f':{col.bind_name}' for col in template.source_columns] + [f':{ORDINAL_COLUMN}']
    load_sql = f"INSERT INTO {stage} ({_join(load_cols)})\nVALUES ({_join(placeholders)})"
    template.load_sql, template.load_param_names = process_sql_parameters(load_sql, template.paramstyle)
    template.clear_sql = f"TRUNCATE TABLE {stage};"
    template.drop_sql = f"DROP TABLE {stage};"


_template_cache: Dict[tuple, StatementTemplate] = {}
_template_lock = threading.Lock()


def build_template(descriptor: RecordDescriptor, operation: str, batch_size: Optional[int] = None,
                   paramstyle: str = ParamStyle.QMARK, where: Optional[str] = None,
                   staged: bool = False) -> StatementTemplate:
    """
    Build (or fetch from cache) the MERGE template for one batch shape.

    Args:
        descriptor: Record type metadata
        operation: insert, update, upsert or delete
        batch_size: Records per statement; ignored for staged templates
        paramstyle: Driver paramstyle placeholders are converted to
        where: Condition over the ``Target`` alias, with ``:name`` parameters,
            restricting which matched rows are updated or deleted
        staged: Read records from a temp table instead of a VALUES list

    Raises:
        UnsupportedShapeError: The record type cannot support the operation
    """
    operation = check_operation(operation)
    if where and operation not in ('update', 'delete'):
        raise UnsupportedShapeError(f"A filter can only restrict update and delete, not {operation}")
    if staged:
        batch_size = None
    elif not batch_size or batch_size < 1:
        raise ValueError(f"batch_size must be at least 1: {batch_size}")

    key = (descriptor, operation, batch_size, paramstyle, where or None, staged)
    template = _template_cache.get(key)
    if template is not None:
        return template

    sql, columns, outputs, has_output, reports_action = _create_merge(
        descriptor, operation, batch_size, where, staged)
    logger.debug(f"Generated {operation} merge SQL for {descriptor.table}:\n{sql}")
    converted, param_names = process_sql_parameters(sql, paramstyle)
    template = StatementTemplate(descriptor, operation, converted, param_names, paramstyle,
                                 columns, outputs, batch_size=batch_size, staged=staged,
                                 has_output=has_output, reports_action=reports_action)
    if staged:
        _add_staging_sql(template)

    with _template_lock:
        template = _template_cache.setdefault(key, template)
    return template


def clear_template_cache() -> None:
    with _template_lock:
        _template_cache.clear()


def single_row_sql(descriptor: RecordDescriptor, operation: str,
                   paramstyle: str = ParamStyle.QMARK) -> Tuple[str, Tuple[str, ...]]:
    """
    Single-row INSERT, SELECT, UPDATE or DELETE for backends without MERGE.

    Parameters are named after the columns' bind names. Returns the statement
    in ``paramstyle`` and its parameter names.
    """
    table = quote_identifier(descriptor.table)
    operation = (operation or '').lower()

    if operation == 'insert':
        columns = descriptor.insert_columns
        if columns:
            names = _join([quote_identifier(col.name) for col in columns])
            placeholders = _join([f':{col.bind_name}' for col in columns])
            sql = f"INSERT INTO {table} ({names})\nVALUES ({placeholders})"
        else:
            sql = f"INSERT INTO {table} DEFAULT VALUES"
    elif operation in ('select', 'update', 'delete'):
        keys = descriptor.require_key(operation)
        conditions = '\n  AND '.join(f"{quote_identifier(col.name)} = :{col.bind_name}" for col in keys)
        if operation == 'select':
            names = _join([quote_identifier(col.name) for col in descriptor.readable_columns])
            sql = f"SELECT {names}\nFROM {table}\nWHERE {conditions}"
        elif operation == 'update':
            columns = descriptor.update_columns
            if not columns:
                raise UnsupportedShapeError(f"Cannot update {descriptor.table}: no updatable columns declared")
            assignments = _join([f"{quote_identifier(col.name)} = :{col.bind_name}" for col in columns])
            sql = f"UPDATE {table} SET {assignments}\nWHERE {conditions}"
        else:
            sql = f"DELETE FROM {table}\nWHERE {conditions}"
    else:
        raise ValueError(f"Invalid operation '{operation}'. Must be one of insert, select, update, delete")

    logger.debug(f"Generated single-row {operation} SQL for {descriptor.table}:\n{sql}")
    return process_sql_parameters(sql, paramstyle)
