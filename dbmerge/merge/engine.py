# dbmerge/merge/engine.py

"""
Bulk write engine.

Turns a sequence of records into batched MERGE statements, runs them one
after another on the caller's cursor and copies generated values (identity
and computed columns) back onto the records.

Example
-------
::

    import dbmerge
    from dbmerge.merge import BulkMerge

    with dbmerge.connect('ba_sing_se') as db:
        with db.transaction():
            merger = BulkMerge(db.cursor(), Citizen)
            result = merger.execute('upsert', citizens)
            print(result.inserted, result.updated)

The engine never commits, rolls back, opens or closes anything. Run it inside
a transaction so a failed batch can be rolled back along with the batches
before it.
"""

import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from .batcher import Batcher, Batch
from .metadata import RecordDescriptor, resolve, set_value, ACTION_COLUMN
from .template import (StatementTemplate, build_template, check_operation, source_columns,
                       TARGET_ALIAS)
from ..cursors import Cursor
from ..defaults import settings
from ..exceptions import (UnsupportedShapeError, OutputCorrelationError, ExecutionError,
                          BulkCancelledError)

logger = logging.getLogger(__name__)

STAGING_MODES = ('auto', 'values', 'temp')
# 2100 per SQL Server request, less the two sp_executesql arguments the driver adds
DEFAULT_MAX_PARAMETERS = 2098

BatchCallback = Callable[[List[Any], List[tuple], List[str], List[str]], None]


@dataclass
class OperationResult:
    """
    Outcome of one bulk operation.

    ``outputs`` holds a ``(record, values)`` pair for every record that got
    values back from the database; ``inserted`` and ``updated`` split the
    affected count of an upsert by the MERGE branch that fired.
    """
    operation: str
    affected: int = 0
    inserted: int = 0
    updated: int = 0
    batches: int = 0
    outputs: List[Tuple[Any, Dict[str, Any]]] = field(default_factory=list)


class OutputMap:
    """
    Copies output values onto a record with a caller supplied function.

    ``fn(record, values)`` receives a dict of attribute name to value for the
    output columns named in ``columns`` (all output columns by default).
    Columns are checked against the record type when the map is created.

    Example:
        def stamp(soldier, values):
            soldier.id = values['soldier_id']

        BulkMerge(cursor, Soldier, output_map=OutputMap(Soldier, stamp, ['soldier_id']))
    """

    def __init__(self, model: Union[type, RecordDescriptor], fn: Callable[[Any, Dict[str, Any]], None],
                 columns: Optional[Iterable[str]] = None):
        if not callable(fn):
            raise TypeError(f"Output map function must be callable, got {type(fn).__name__}")
        self.descriptor = resolve(model)
        outputs = self.descriptor.output_columns
        if not outputs:
            raise UnsupportedShapeError(f"{self.descriptor.table} has no identity or computed columns to map")

        if columns is None:
            selected = outputs
        else:
            selected = tuple(self.descriptor.column(name) for name in columns)
            invalid = [col.name for col in selected if col not in outputs]
            if invalid:
                raise UnsupportedShapeError(
                    f"Columns {invalid} of {self.descriptor.table} are not identity or computed columns")
        self.fn = fn
        self.attrs = tuple(col.attr for col in selected)

    def __call__(self, record: Any, values: Dict[str, Any]) -> None:
        self.fn(record, {attr: values[attr] for attr in self.attrs if attr in values})


def reflection_output_map(record: Any, values: Dict[str, Any]) -> None:
    """Default mapping: set each value on the record attribute (or mapping key) of the same name."""
    for attr, value in values.items():
        set_value(record, attr, value)


class BulkMerge:
    """
    Runs bulk insert, update, upsert and delete for one record type.

    Args:
        cursor: dbmerge cursor of the connection to write through
        model: Record type or RecordDescriptor
        max_parameters: Bound parameters allowed per statement (database limit by default)
        output_map: Default output mapping for this engine: an :class:`OutputMap`,
            a batch callback ``fn(inputs, outputs, input_columns, output_columns)``
            or None to follow the ``output_mapping`` setting
        staging: 'values', 'temp' or 'auto' (``staging`` setting by default)
        timeout: Seconds after which a running operation is cancelled
    """

    def __init__(self, cursor, model: Union[type, RecordDescriptor], max_parameters: Optional[int] = None,
                 output_map: Union[OutputMap, BatchCallback, None] = None, staging: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.cursor = cursor
        # output rows are read by position, whatever row type the wrapper builds
        self._driver_cursor = cursor._cursor if isinstance(cursor, Cursor) else cursor
        self.descriptor = resolve(model)
        self.paramstyle = cursor.paramstyle

        connection = getattr(cursor, 'connection', None)
        if max_parameters is None:
            max_parameters = getattr(connection, 'max_parameters', None) or settings.get('max_parameters')
        self.max_parameters = max_parameters or DEFAULT_MAX_PARAMETERS

        staging = staging or settings.get('staging', 'auto')
        if staging not in STAGING_MODES:
            raise ValueError(f"Invalid staging '{staging}'. Must be one of {STAGING_MODES}")
        self.staging = staging
        self.output_map = self._check_output_map(output_map)
        self.timeout = timeout

        interface = getattr(connection, 'interface', None)
        self._driver_error = getattr(interface, 'DatabaseError', Exception)
        self._cancelled = threading.Event()

    def __repr__(self) -> str:
        return f"BulkMerge({self.descriptor.table}, max_parameters={self.max_parameters}, staging={self.staging})"

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """
        Cancel the running operation. Safe to call from another thread.

        The statement in flight is cancelled through the driver when it
        supports ``cursor.cancel()``; batches not yet started are abandoned.
        """
        self._cancelled.set()
        driver_cancel = getattr(self.cursor, 'cancel', None)
        if callable(driver_cancel):
            driver_cancel()

    def _timed_out(self) -> None:
        logger.warning(f"Bulk operation on {self.descriptor.table} exceeded {self.timeout}s, cancelling")
        try:
            self.cancel()
        except self._driver_error as e:
            logger.warning(f"Driver cancel failed for {self.descriptor.table}: {e}")

    def _filter_clause(self, operation: str, filter) -> Tuple[Optional[str], Dict[str, Any]]:
        """Condition over the target alias from a QueryFilter or a prebuilt builder. An empty filter adds nothing."""
        if filter is None:
            return None, {}
        if operation not in ('update', 'delete'):
            raise UnsupportedShapeError(f"A filter can only restrict update and delete, not {operation}")
        from ..query import QueryBuilder, QueryFilter

        if isinstance(filter, QueryBuilder):
            builder = filter
            if builder.alias != TARGET_ALIAS or builder.has_joins:
                raise UnsupportedShapeError(
                    f"A MERGE filter must use the {TARGET_ALIAS} alias and cannot join other tables")
        else:
            if isinstance(filter, dict):
                filter = QueryFilter(**filter)
            builder = QueryBuilder(self.descriptor, self.paramstyle, alias=TARGET_ALIAS).filter(filter)
        condition, params = builder.condition()
        return condition or None, params

    def _use_staging(self, record_count: int) -> bool:
        if self.staging == 'temp':
            return True
        if self.staging == 'values':
            return False
        return record_count > settings.get('staging_threshold', 10_000)

    def _check_output_map(self, output_map):
        if isinstance(output_map, OutputMap) and output_map.descriptor != self.descriptor:
            raise UnsupportedShapeError(
                f"Output map was built for {output_map.descriptor!r}, not {self.descriptor!r}")
        return output_map

    def _resolve_output_map(self, output_map):
        output_map = self._check_output_map(output_map) or self.output_map
        if output_map is not None:
            return output_map
        mode = settings.get('output_mapping', 'reflection')
        if mode == 'reflection':
            return reflection_output_map
        if mode == 'none':
            return None
        raise ValueError(f"Invalid output_mapping setting '{mode}'. Must be 'reflection' or 'none'")

    def execute(self, operation: str, records: Iterable[Any], filter=None,
                output_map: Union[OutputMap, BatchCallback, None] = None) -> OperationResult:
        """
        Write ``records`` with one operation.

        Args:
            operation: insert, update, upsert or delete
            records: Records in the order they should be written
            filter: QueryFilter (or dict of predicates) restricting which key-matched
                rows an update or delete touches. An empty filter adds no condition.
                A QueryBuilder aliased ``Target`` is used as built.
            output_map: Output mapping for this call only

        Returns:
            OperationResult

        Raises:
            UnsupportedShapeError: The record type cannot support the operation
            RecordTooWideError: One record needs more parameters than a statement allows
            OutputCorrelationError: Output rows do not line up with the records of a batch
            ExecutionError: A statement did not return the output it was built to return
            BulkCancelledError: cancel() was called or the timeout expired
            DatabaseError: Driver errors are raised unchanged
        """
        operation = check_operation(operation)
        if not isinstance(records, Sequence):
            records = list(records)
        if operation != 'insert':
            self.descriptor.require_key(operation)
        where, filter_params = self._filter_clause(operation, filter)

        result = OperationResult(operation)
        if not records:
            logger.debug(f"No records to {operation} for {self.descriptor.table}")
            return result

        mapper = self._resolve_output_map(output_map)
        staged = self._use_staging(len(records))
        parameters_per_record = len(source_columns(self.descriptor, operation))
        if staged:
            batcher = Batcher.staged(parameters_per_record + 1, self.max_parameters,
                                     settings.get('staging_batch_size', 10_000))
            template = build_template(self.descriptor, operation, paramstyle=self.paramstyle,
                                      where=where, staged=True)
        else:
            batcher = Batcher(parameters_per_record, self.max_parameters - len(filter_params),
                              max_rows=settings.get('values_row_limit', 1000))
            template = None
        plan = batcher.split(records)

        self._cancelled.clear()
        timer = None
        if self.timeout:
            timer = threading.Timer(self.timeout, self._timed_out)
            timer.daemon = True
            timer.start()
        try:
            if staged:
                self._run(template.stage_sql, (), None, result)
            for batch in plan:
                if self._cancelled.is_set():
                    raise BulkCancelledError(
                        f"{operation.capitalize()} of {self.descriptor.table} cancelled before batch "
                        f"{batch.number} of {len(plan)}", batch.number, result.affected)
                if not staged:
                    template = build_template(self.descriptor, operation, len(batch),
                                              paramstyle=self.paramstyle, where=where)
                self._execute_batch(template, batch, filter_params, mapper, result)
            if staged:
                self._run(template.drop_sql, (), None, result)
        finally:
            if timer is not None:
                timer.cancel()

        summary = f"{operation}: {result.affected:,}"
        if operation == 'upsert':
            summary += f", inserted: {result.inserted:,}, updated: {result.updated:,}"
        logger.info(f"Merged `{self.descriptor.table}` <{summary}> in {result.batches} batches")
        return result

    def _run(self, sql: str, params, batch: Optional[Batch], result: OperationResult, many: bool = False):
        """Execute one statement, keeping driver errors intact."""
        try:
            if many:
                self.cursor.executemany(sql, params)
            else:
                self.cursor.execute(sql, params)
        except self._driver_error as e:
            number = batch.number if batch else None
            if self._cancelled.is_set():
                raise BulkCancelledError(
                    f"{result.operation.capitalize()} of {self.descriptor.table} cancelled during batch {number}",
                    number, result.affected) from e
            where = f"batch {number}" if batch else "staging"
            logger.error(f"{result.operation.capitalize()} {where} failed for {self.descriptor.table}: {e}")
            raise

    def _execute_batch(self, template: StatementTemplate, batch: Batch, filter_params: Dict[str, Any],
                       mapper, result: OperationResult) -> None:
        """Bind, execute, read output, correlate and map one batch."""
        if template.staged:
            if batch.number > 1:
                self._run(template.clear_sql, (), batch, result)
            self._run(template.load_sql, template.bind_rows(batch.records), batch, result, many=True)
            self._run(template.sql, template.bind((), filter_params), batch, result)
        else:
            self._run(template.sql, template.bind(batch.records, filter_params), batch, result)

        if not template.has_output:
            rowcount = self.cursor.rowcount
            if rowcount is None or rowcount < 0:
                logger.warning(f"Driver did not report a row count for batch {batch.number} "
                               f"of {self.descriptor.table}")
                rowcount = 0
            result.affected += rowcount
            result.batches += 1
            return

        rows = self._fetch_output(template, batch, result)
        correlated = self._correlate(template, batch, rows)
        self._apply_outputs(template, correlated, mapper, result)
        result.affected += len(correlated)
        result.batches += 1

    def _fetch_output(self, template: StatementTemplate, batch: Batch, result: OperationResult) -> list:
        if self.cursor.description is None:
            msg = (f"{template.operation.capitalize()} batch {batch.number} of {self.descriptor.table} "
                   f"returned no output rows")
            logger.error(msg)
            raise ExecutionError(msg, batch.number, result.affected)
        try:
            return self._driver_cursor.fetchall()
        except self._driver_error as e:
            if self._cancelled.is_set():
                raise BulkCancelledError(
                    f"{template.operation.capitalize()} of {self.descriptor.table} cancelled during "
                    f"batch {batch.number}", batch.number, result.affected) from e
            logger.error(f"Reading output of batch {batch.number} failed for {self.descriptor.table}: {e}")
            raise

    def _correlation_error(self, message: str, batch: Batch, received: int) -> OutputCorrelationError:
        msg = f"Batch {batch.number} of {self.descriptor.table}: {message}"
        logger.error(msg)
        return OutputCorrelationError(msg, batch.number, len(batch), received)

    def _correlate(self, template: StatementTemplate, batch: Batch, rows: list) -> List[Tuple[Any, Optional[str], tuple]]:
        """
        Pair output rows with batch records by the ordinal each row carries.

        Returns ``(record, action, output_values)`` in ordinal order.
        """
        count = len(batch)
        width = template.output_width
        if any(len(row) != width for row in rows):
            raise self._correlation_error(f"expected output rows of {width} columns", batch, len(rows))

        ordinals = [int(row[0]) for row in rows]
        if template.operation in ('insert', 'upsert'):
            if len(rows) != count:
                raise self._correlation_error(
                    f"submitted {count} records but received {len(rows)} output rows", batch, len(rows))
            if sorted(ordinals) != list(batch.ordinals):
                raise self._correlation_error(
                    f"output ordinals do not match records 0..{count - 1}", batch, len(rows))
        elif len(set(ordinals)) != len(ordinals) or any(o < 0 or o >= count for o in ordinals):
            raise self._correlation_error("output ordinals are duplicated or out of range", batch, len(rows))

        correlated = []
        offset = 2 if template.reports_action else 1
        for ordinal, row in sorted(zip(ordinals, rows), key=lambda pair: pair[0]):
            action = str(row[1]).strip().upper() if template.reports_action else None
            correlated.append((batch.records[ordinal], action, tuple(row[offset:])))
        return correlated

    def _apply_outputs(self, template: StatementTemplate, correlated, mapper, result: OperationResult) -> None:
        columns = template.output_columns
        if template.reports_action:
            for _, action, _ in correlated:
                if action == 'INSERT':
                    result.inserted += 1
                else:
                    result.updated += 1
        if not columns:
            return

        pairs = []
        for record, action, values in correlated:
            applied = {}
            for col, value in zip(columns, values):
                # matched rows keep the key the caller supplied
                if col.identity and action is not None and action != 'INSERT':
                    continue
                applied[col.attr] = value
            pairs.append((record, applied))
        result.outputs.extend(pairs)

        if mapper is None:
            return
        if mapper is reflection_output_map or isinstance(mapper, OutputMap):
            for record, applied in pairs:
                mapper(record, applied)
        elif template.reports_action:
            # upsert callbacks see which branch fired for each row
            mapper([record for record, _, _ in correlated],
                   [(action,) + values for _, action, values in correlated],
                   [col.attr for col in template.source_columns],
                   [ACTION_COLUMN] + [col.attr for col in columns])
        else:
            mapper([record for record, _, _ in correlated],
                   [values for _, _, values in correlated],
                   [col.attr for col in template.source_columns],
                   [col.attr for col in columns])

    def insert(self, records: Iterable[Any], output_map=None) -> int:
        """Insert records, copying identity and computed values back. Returns rows inserted."""
        return self.execute('insert', records, output_map=output_map).affected

    def update(self, records: Iterable[Any], filter=None, output_map=None) -> int:
        """Update rows matched by key. Returns rows updated."""
        return self.execute('update', records, filter=filter, output_map=output_map).affected

    def upsert(self, records: Iterable[Any], output_map=None) -> int:
        """Update rows matched by key and insert the rest. Returns rows affected."""
        return self.execute('upsert', records, output_map=output_map).affected

    def delete(self, records: Iterable[Any], filter=None) -> int:
        """Delete rows matched by key. Returns rows deleted."""
        return self.execute('delete', records, filter=filter).affected
