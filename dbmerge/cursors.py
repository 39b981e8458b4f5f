# dbmerge/cursors.py
"""
Cursor classes that wrap database cursors and provide different return types.
All cursors delegate to the underlying database cursor stored in _cursor.
"""

import logging
from typing import List, Any, Optional, Iterator, Callable
from collections import namedtuple, OrderedDict

from .utils import ParamStyle, process_sql_parameters, bind_parameters, sanitize_identifier
from .defaults import settings

logger = logging.getLogger(__name__)
__all__ = ['Cursor', 'TupleCursor', 'DictCursor', 'ColumnCase']


class ColumnCase:
    """
    Column name case transformation options for result sets.

    - UPPER: Convert to uppercase (USER_ID)
    - LOWER: Convert to lowercase (user_id) [default]
    - TITLE: Convert to title case (User_Id)
    - PRESERVE: Keep original case from database

    Example:
        >>> cursor = db.cursor(column_case=ColumnCase.PRESERVE)
    """
    UPPER = 'upper'
    LOWER = 'lower'
    TITLE = 'title'
    PRESERVE = 'preserve'
    DEFAULT = LOWER

    @classmethod
    def values(cls):
        return [getattr(cls, attr) for attr in dir(cls)
                if not attr.startswith('_') and isinstance(getattr(cls, attr), str)]


class Cursor:
    """
    Base cursor class that returns rows as lists.

    Wraps the DB-API cursor of a :class:`~dbmerge.database.Database` and keeps
    track of the statement and parameters last executed. Attributes that are
    not defined here (``rowcount``, ``description``, ``cancel`` ...) are
    delegated to the underlying cursor.
    """

    WRAPPER_SETTINGS = ('column_case', 'debug', 'return_cursor', 'batch_size')
    _local_attrs = [
        'connection', 'column_case', 'debug', 'return_cursor', 'batch_size',
        'record_factory', 'paramstyle', 'placeholder', '_cursor', '_row_factory_invalid',
        '_statement', '_bind_vars', '_bulk_method'
    ]

    def __init__(self, connection, column_case: Optional[str] = None, debug: bool = False,
                 return_cursor: bool = False, batch_size: Optional[int] = None, **kwargs):
        """
        Initialize the cursor.

        Args:
            connection: Database instance
            column_case: Case applied to column names (see ColumnCase)
            debug: Log every statement and its bind variables at DEBUG level
            return_cursor: execute() returns the cursor to allow method chaining
            batch_size: Rows per executemany page for drivers that page
            **kwargs: Passed to the driver's cursor() method
        """
        self.connection = connection
        self.debug = debug
        self.record_factory = None
        self._row_factory_invalid = True
        self.return_cursor = return_cursor
        if column_case is None:
            column_case = settings.get('default_column_case', ColumnCase.DEFAULT)
        self.column_case = column_case
        if batch_size is None:
            batch_size = settings.get('default_batch_size', 1000)
        self.batch_size = batch_size
        self._statement = None
        self._bind_vars = None
        self._bulk_method = None
        filtered_kwargs = {key: val for key, val in kwargs.items() if key not in self.WRAPPER_SETTINGS}
        try:
            if hasattr(self.connection, '_connection'):
                self._cursor = self.connection._connection.cursor(**filtered_kwargs)
            else:
                self._cursor = self.connection.cursor(**filtered_kwargs)
        except Exception as e:
            raise TypeError(f'First argument must be a database connection object: {e}')

        self.paramstyle = self.connection.interface.paramstyle
        self.placeholder = ParamStyle.get_placeholder(self.paramstyle)

    def __getattr__(self, key: str) -> Any:
        """Delegate attribute access to underlying cursor."""
        if key == 'statement' and not hasattr(self._cursor, 'statement'):
            return self._statement
        if key == 'bind_vars' and not hasattr(self._cursor, 'bind_vars'):
            return self._bind_vars
        return getattr(self._cursor, key)

    def __setattr__(self, key: str, value: Any) -> None:
        """Set attributes on this cursor or delegate to underlying cursor."""
        if key in self._local_attrs:
            self.__dict__[key] = value
        else:
            setattr(self._cursor, key, value)

    def __iter__(self) -> Iterator:
        if self._is_ready():
            return self

    def __next__(self) -> Any:
        row = self.fetchone()
        if row is not None:
            return row
        raise StopIteration

    def _detect_bulk_method(self) -> Callable:
        """
        Detect and return the fastest bulk execution method for this cursor.

        Called once per cursor, on first executemany(). Stored in self._bulk_method.
        """
        adapter = self.connection.interface.__name__
        if adapter == 'pyodbc':
            if hasattr(self._cursor, 'fast_executemany') and not getattr(self._cursor, 'fast_executemany', False):
                self._cursor.fast_executemany = True
                logger.debug("pyodbc: enabled fast_executemany for bulk operations")

        return lambda cur, sql, argslist: cur.executemany(sql, argslist)

    def _create_record_factory(self) -> None:
        """Create the function to process each row. Override in subclasses."""

        def factory(*args):
            return list(args)

        self.record_factory = factory

    def columns(self, case: Optional[str] = None) -> List[str]:
        """Return list of column names of the current result set."""
        if not self.description:
            return []

        if case not in ColumnCase.values():
            case = self.column_case

        if case == ColumnCase.LOWER:
            cols = [c[0].lower() for c in self.description]
        elif case == ColumnCase.UPPER:
            cols = [c[0].upper() for c in self.description]
        elif case == ColumnCase.TITLE:
            cols = [c[0].title() for c in self.description]
        else:
            cols = [c[0] for c in self.description]

        return [sanitize_identifier(cols[i], i) for i in range(len(cols))]

    def _is_ready(self) -> bool:
        """Check if cursor is ready to fetch results."""
        if self._cursor.description is None:
            raise Exception('Query has not been run or did not succeed.')

        if self.record_factory is None or self._row_factory_invalid:
            self._create_record_factory()
            self._row_factory_invalid = False

        return True

    def execute(self, query: str, bind_vars: Any = ()) -> Any:
        """Execute a database query."""
        self._row_factory_invalid = True

        if self.debug:
            logger.debug(f'Query:\n{query}')
            logger.debug(f'Bind vars:\n{bind_vars}')

        if not hasattr(self._cursor, 'statement'):
            self.__dict__['_statement'] = query
        if not hasattr(self._cursor, 'bind_vars'):
            self.__dict__['_bind_vars'] = bind_vars

        # some adapters return a cursor instead of the Database API specified None
        _ = self._cursor.execute(query, bind_vars)
        if self.return_cursor:
            return self
        return None

    def execute_named(self, query: str, bind_vars: Optional[dict] = None) -> Any:
        """
        Execute a query written with ``:name`` placeholders.

        The query is converted to the cursor's paramstyle and the values in
        ``bind_vars`` are arranged to match.

        Example:
            cursor.execute_named('SELECT * FROM orders WHERE id = :id', {'id': 7})
        """
        sql, param_names = process_sql_parameters(query, self.paramstyle)
        bind_vars = bind_vars or {}
        missing = set(param_names) - set(bind_vars.keys())
        if missing:
            logger.info(f"Parameters not provided, defaulting to None: {', '.join(sorted(missing))}")
        return self.execute(sql, bind_parameters(param_names, bind_vars, self.paramstyle))

    def executemany(self, query: str, bind_vars: List[Any]) -> Any:
        """Execute a query against multiple parameter sets."""
        self._row_factory_invalid = True

        if self.debug:
            logger.debug(f'Executemany - Query:\n{query}')
            logger.debug(f'Bind vars (first row):\n{bind_vars[0] if bind_vars else None}')

        if not hasattr(self._cursor, 'statement'):
            self.__dict__['_statement'] = query
        if not hasattr(self._cursor, 'bind_vars'):
            self.__dict__['_bind_vars'] = bind_vars[0] if bind_vars else None

        if self._bulk_method is None:
            self._bulk_method = self._detect_bulk_method()

        _ = self._bulk_method(self._cursor, query, bind_vars)
        if self.return_cursor:
            return self
        return None

    def selectinto(self, query: str, bind_vars: Any = ()) -> Any:
        """Execute query that must return exactly one row."""
        self.execute(query, bind_vars)
        rows = self.fetchmany(2)

        if len(rows) == 0:
            raise self.connection.interface.DatabaseError('No Data Found.')
        elif len(rows) > 1:
            raise self.connection.interface.DatabaseError(
                'selectinto() must return one and only one row.'
            )
        return rows[0]

    def fetchone(self) -> Optional[Any]:
        """Fetch the next row."""
        if self._is_ready():
            row = self._cursor.fetchone()
            if row is not None:
                return self.record_factory(*row)
        return None

    def fetchmany(self, size: Optional[int] = None) -> List[Any]:
        """Fetch the next set of rows."""
        if size is None:
            size = getattr(self._cursor, 'arraysize', 1000)

        if self._is_ready():
            return [self.record_factory(*row) for row in self._cursor.fetchmany(size)]
        return []

    def fetchall(self) -> List[Any]:
        """Fetch all remaining rows."""
        if self._is_ready():
            return [self.record_factory(*row) for row in self._cursor.fetchall()]
        return []


class TupleCursor(Cursor):
    """Cursor that returns namedtuples."""

    def _create_record_factory(self) -> None:
        self.record_factory = namedtuple('TupleRecord', self.columns())


class DictCursor(Cursor):
    """Cursor that returns OrderedDict objects."""

    def _create_record_factory(self) -> None:
        columns = self.columns()

        def factory(*args):
            return OrderedDict(zip(columns, args))

        self.record_factory = factory
