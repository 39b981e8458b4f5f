# dbmerge/query.py

"""
Composable filters and the WHERE/SET assembly shared by bulk and single-row paths.

Filters map columns (or record attributes) to predicates::

    from dbmerge.query import QueryFilter, QueryBuilder, gt, like

    recent = QueryFilter(nation='Earth Kingdom', age=gt(30), name=like('B%'))
    sql, params = QueryBuilder(Citizen, 'qmark').filter(recent).as_select(order_by=['-age'])

Plain values mean equality, None means IS NULL and lists, tuples and sets mean IN.
Subclasses can take typed arguments and override :meth:`QueryFilter.apply`.
"""

import itertools
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from .exceptions import UnsupportedShapeError
from .merge.metadata import RecordDescriptor, resolve
from .utils import ParamStyle, process_sql_parameters, bind_parameters, quote_identifier

logger = logging.getLogger(__name__)

AGGREGATES = ('MIN', 'MAX', 'COUNT', 'SUM', 'AVG')


class Predicate:
    """A comparison applied to one column."""

    OPERATORS = {
        'eq': '=', 'ne': '<>', 'lt': '<', 'le': '<=', 'gt': '>', 'ge': '>=', 'like': 'LIKE',
    }

    def __init__(self, op: str, *values):
        self.op = op
        self.values = values

    def __repr__(self) -> str:
        return f"Predicate({self.op}, {', '.join(repr(v) for v in self.values)})"

    def __eq__(self, other) -> bool:
        return isinstance(other, Predicate) and (self.op, self.values) == (other.op, other.values)

    def render(self, column_sql: str, param) -> str:
        """SQL for this predicate; ``param(value)`` registers a value and returns its placeholder."""
        if self.op in ('eq', 'ne') and self.values[0] is None:
            return f"{column_sql} IS {'NOT ' if self.op == 'ne' else ''}NULL"
        if self.op in self.OPERATORS:
            return f"{column_sql} {self.OPERATORS[self.op]} {param(self.values[0])}"
        if self.op in ('in', 'not_in'):
            items = list(self.values[0])
            if not items:
                return '1 = 0' if self.op == 'in' else '1 = 1'
            placeholders = ', '.join(param(item) for item in items)
            return f"{column_sql} {'NOT IN' if self.op == 'not_in' else 'IN'} ({placeholders})"
        if self.op == 'between':
            low, high = self.values
            return f"{column_sql} BETWEEN {param(low)} AND {param(high)}"
        if self.op == 'is_null':
            return f"{column_sql} IS NULL"
        if self.op == 'not_null':
            return f"{column_sql} IS NOT NULL"
        raise ValueError(f"Unknown predicate operator '{self.op}'")


def eq(value) -> Predicate:
    return Predicate('eq', value)


def ne(value) -> Predicate:
    return Predicate('ne', value)


def lt(value) -> Predicate:
    return Predicate('lt', value)


def le(value) -> Predicate:
    return Predicate('le', value)


def gt(value) -> Predicate:
    return Predicate('gt', value)


def ge(value) -> Predicate:
    return Predicate('ge', value)


def like(pattern: str) -> Predicate:
    return Predicate('like', pattern)


def in_(values: Iterable[Any]) -> Predicate:
    return Predicate('in', tuple(values))


def not_in(values: Iterable[Any]) -> Predicate:
    return Predicate('not_in', tuple(values))


def between(low, high) -> Predicate:
    return Predicate('between', low, high)


def is_null() -> Predicate:
    return Predicate('is_null')


def not_null() -> Predicate:
    return Predicate('not_null')


def as_predicate(value: Any) -> Predicate:
    """Turn a plain filter value into a predicate."""
    if isinstance(value, Predicate):
        return value
    if value is None:
        return is_null()
    if isinstance(value, (list, tuple, set, frozenset)):
        return in_(value)
    return eq(value)


class QueryFilter:
    """
    Column predicates combined with AND.

    Example
    -------
    ::

        QueryFilter(city='Ba Sing Se', ring=in_(['Upper', 'Middle']))

        class CitizenFilter(QueryFilter):
            def __init__(self, min_age=None, **predicates):
                super().__init__(**predicates)
                self.min_age = min_age

            @property
            def is_empty(self):
                return super().is_empty and self.min_age is None

            def apply(self, builder, alias=None):
                super().apply(builder, alias)
                if self.min_age is not None:
                    builder.add('age', ge(self.min_age))
    """

    def __init__(self, **predicates):
        self.predicates: Dict[str, Predicate] = {name: as_predicate(value) for name, value in predicates.items()}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.predicates})"

    @property
    def is_empty(self) -> bool:
        return not self.predicates

    def apply(self, builder: 'QueryBuilder', alias: Optional[str] = None) -> None:
        """Add this filter's conditions to ``builder``."""
        for name, predicate in self.predicates.items():
            builder.add(name, predicate)


class UpdateSpec:
    """New values for columns, applied by :meth:`QueryBuilder.update`."""

    def __init__(self, **values):
        self.values: Dict[str, Any] = dict(values)

    def __repr__(self) -> str:
        return f"UpdateSpec({self.values})"

    @property
    def is_empty(self) -> bool:
        return not self.values

    def apply(self, builder: 'QueryBuilder') -> None:
        for name, value in self.values.items():
            builder.set(name, value)


class QueryBuilder:
    """
    Assembles WHERE, JOIN and SET clauses for one table.

    Conditions and assignments are collected with ``:name`` placeholders. The
    finished statements (``as_select``, ``as_update``, ``as_delete``,
    ``as_aggregate``) are converted to ``paramstyle`` and returned with their
    parameters ready for ``cursor.execute``.

    Args:
        model: Record type or RecordDescriptor
        paramstyle: Driver paramstyle of the finished statements
        alias: Table alias used to qualify columns
        server_type: 'sqlserver' renders row limits as TOP, anything else as LIMIT
    """

    def __init__(self, model: Union[type, RecordDescriptor], paramstyle: str = ParamStyle.NAMED,
                 alias: Optional[str] = None, server_type: str = 'sqlserver'):
        self.descriptor = resolve(model)
        self.paramstyle = paramstyle
        self.alias = alias
        self.server_type = server_type
        self._conditions: List[str] = []
        self._joins: List[str] = []
        self._assignments: List[str] = []
        self._params: Dict[str, Any] = {}
        self._counter = itertools.count(1)

    def __repr__(self) -> str:
        return f"QueryBuilder({self.descriptor.table}, {len(self._conditions)} conditions)"

    def column_sql(self, name: str) -> str:
        """Quoted, alias-qualified SQL for a column given its name or record attribute."""
        if name == '*':
            return name
        column = quote_identifier(self.descriptor.column(name).name)
        return f"{self.alias}.{column}" if self.alias else column

    def _param(self, value: Any) -> str:
        name = f"p{next(self._counter)}"
        while name in self._params:
            name = f"p{next(self._counter)}"
        self._params[name] = value
        return f":{name}"

    def where(self, fragment: str, **params) -> 'QueryBuilder':
        """Add a raw condition written with ``:name`` placeholders."""
        for name, value in params.items():
            if name in self._params and self._params[name] != value:
                raise ValueError(f"Parameter '{name}' is already bound to a different value")
        self._params.update(params)
        self._conditions.append(fragment)
        return self

    def add(self, column: str, predicate: Any) -> 'QueryBuilder':
        """Add a predicate (or plain value) on a column."""
        self._conditions.append(as_predicate(predicate).render(self.column_sql(column), self._param))
        return self

    def filter(self, query_filter: Optional[QueryFilter]) -> 'QueryBuilder':
        if query_filter is not None:
            query_filter.apply(self, self.alias)
        return self

    def join(self, clause: str, **params) -> 'QueryBuilder':
        """Add a JOIN clause, e.g. ``builder.join('JOIN nations n ON n.id = c.nation_id')``."""
        self._params.update(params)
        self._joins.append(clause)
        return self

    def set(self, column: str, value: Any) -> 'QueryBuilder':
        col = self.descriptor.column(column)
        if not col.is_insertable:
            raise UnsupportedShapeError(f"Column {self.descriptor.table}.{col.name} cannot be written")
        target = quote_identifier(col.name)
        if self.alias:
            target = f"{self.alias}.{target}"
        self._assignments.append(f"{target} = {self._param(value)}")
        return self

    def update(self, update_spec: UpdateSpec) -> 'QueryBuilder':
        update_spec.apply(self)
        return self

    @property
    def has_conditions(self) -> bool:
        return bool(self._conditions)

    @property
    def has_joins(self) -> bool:
        return bool(self._joins)

    def condition(self) -> Tuple[str, Dict[str, Any]]:
        """Conditions joined with AND, with ``:name`` placeholders ('' when there are none)."""
        if len(self._conditions) == 1:
            sql = self._conditions[0]
        else:
            sql = ' AND '.join(f"({cond})" for cond in self._conditions)
        return sql, dict(self._params)

    def where_clause(self) -> Tuple[str, Dict[str, Any]]:
        """``WHERE ...`` with ``:name`` placeholders, or '' when there are no conditions."""
        sql, params = self.condition()
        return (f"WHERE {sql}" if sql else ''), params

    def _from(self) -> str:
        table = quote_identifier(self.descriptor.table)
        parts = [f"{table} AS {self.alias}" if self.alias else table]
        parts.extend(self._joins)
        return '\n'.join(parts)

    def _finish(self, lines: List[str]) -> Tuple[str, Union[tuple, dict]]:
        sql = '\n'.join(line for line in lines if line)
        logger.debug(f"Generated query for {self.descriptor.table}:\n{sql}")
        converted, param_names = process_sql_parameters(sql, self.paramstyle)
        return converted, bind_parameters(param_names, self._params, self.paramstyle)

    def as_select(self, columns: Optional[Iterable[str]] = None, top: Optional[int] = None,
                  order_by: Optional[Iterable[str]] = None) -> Tuple[str, Union[tuple, dict]]:
        """
        SELECT statement.

        Args:
            columns: Column names or attributes (all readable columns by default)
            top: Maximum rows to return
            order_by: Columns to sort by; prefix a name with '-' for descending
        """
        if columns is None:
            columns = [col.name for col in self.descriptor.readable_columns]
        select_list = ', '.join(self.column_sql(name) for name in columns)
        limit = ''
        if top is not None:
            top = int(top)
            if self.server_type == 'sqlserver':
                select_list = f"TOP {top} {select_list}"
            else:
                limit = f"LIMIT {top}"

        order = ''
        if order_by:
            items = []
            for name in order_by:
                if name.startswith('-'):
                    items.append(f"{self.column_sql(name[1:])} DESC")
                else:
                    items.append(self.column_sql(name))
            order = f"ORDER BY {', '.join(items)}"

        return self._finish([f"SELECT {select_list}", f"FROM {self._from()}",
                             self.where_clause()[0], order, limit])

    def as_update(self) -> Tuple[str, Union[tuple, dict]]:
        if not self._assignments:
            raise UnsupportedShapeError(f"Nothing to update on {self.descriptor.table}")
        assignments = ', '.join(self._assignments)
        if self.alias:
            lines = [f"UPDATE {self.alias} SET {assignments}", f"FROM {self._from()}"]
        else:
            lines = [f"UPDATE {quote_identifier(self.descriptor.table)} SET {assignments}"]
        return self._finish(lines + [self.where_clause()[0]])

    def as_delete(self) -> Tuple[str, Union[tuple, dict]]:
        if self.alias:
            lines = [f"DELETE {self.alias}", f"FROM {self._from()}"]
        else:
            lines = [f"DELETE FROM {quote_identifier(self.descriptor.table)}"]
        return self._finish(lines + [self.where_clause()[0]])

    def as_aggregate(self, fn: str, column: str = '*') -> Tuple[str, Union[tuple, dict]]:
        """``SELECT fn(column)`` over the filtered rows; fn is MIN, MAX, COUNT, SUM or AVG."""
        fn = fn.upper()
        if fn not in AGGREGATES:
            raise ValueError(f"Invalid aggregate '{fn}'. Must be one of {AGGREGATES}")
        if column == '*' and fn != 'COUNT':
            raise ValueError(f"{fn} needs a column")
        return self._finish([f"SELECT {fn}({self.column_sql(column)})", f"FROM {self._from()}",
                             self.where_clause()[0]])
