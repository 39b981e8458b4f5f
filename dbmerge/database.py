# dbmerge/database.py
"""
Database connection wrapper that provides a uniform interface
to different database adapters.
"""

import importlib
import importlib.util
import os
import logging
from typing import Dict, Any, Optional, Union, Type, List
from contextlib import contextmanager

from .cursors import Cursor, TupleCursor, DictCursor
from .defaults import settings
from .utils import ParamStyle

logger = logging.getLogger(__name__)


class CursorType:
    TUPLE = 'tuple'
    DICT = 'dict'
    LIST = 'list'

    @classmethod
    def values(cls):
        return [getattr(cls, attr) for attr in dir(cls)
                if not attr.startswith('_') and isinstance(getattr(cls, attr), str)]


# What each database type can do. Selected once when a Database is created.
# SQL Server allows 2100 parameters per request, and the drivers send the statement
# text and parameter declarations of sp_executesql / sp_prepexec as two of them.
CAPABILITIES = {
    'sqlserver': {'bulk_merge': True, 'max_parameters': 2098},
    'sqlite': {'bulk_merge': False, 'max_parameters': 999},
    'unknown': {'bulk_merge': False, 'max_parameters': 999},
}

DRIVERS = {
    # SQL Server Drivers
    'pyodbc_sqlserver': {
        'database_type': 'sqlserver',
        'module': 'pyodbc',
        'priority': 11,
        'param_map': {'host': 'SERVER', 'database': 'DATABASE', 'user': 'UID', 'password': 'PWD'},
        'required_params': [{'host', 'database', 'user'}, {'host', 'database', 'trusted_connection'}],
        'optional_params': {'password', 'port', 'driver', 'trusted_connection', 'encrypt',
                            'trustservercertificate'},
        'connection_method': 'odbc_string',
        'odbc_driver_name': 'ODBC Driver 18 for SQL Server',
        'default_port': 1433
    },
    'pymssql': {
        'database_type': 'sqlserver',
        'module': 'pymssql',
        'priority': 12,
        'param_map': {'host': 'server'},
        'required_params': [{'host', 'database', 'user'}],
        'optional_params': {'password', 'port', 'timeout', 'login_timeout', 'charset', 'appname'},
        'connection_method': 'kwargs',
        'default_port': 1433
    },

    # SQLite Driver
    'sqlite3': {
        'database_type': 'sqlite',
        'module': 'sqlite3',
        'priority': 1,
        'param_map': {},
        'required_params': [{'database'}],
        'optional_params': {'timeout', 'detect_types', 'isolation_level', 'check_same_thread',
                            'cached_statements', 'uri'},
        'connection_method': 'kwargs'
    }
}


def get_drivers_for_database(db_type: str, valid_only: bool = True) -> List[str]:
    """
    Gets a list of drivers available for the specified database type, sorted by priority.

    Parameters:
        db_type (str): The type of database for which to retrieve drivers.
        valid_only (bool): Only include drivers whose module can be imported.
    """
    available_drivers = []
    for driver_name, info in DRIVERS.items():
        if info['database_type'] != db_type:
            continue
        if valid_only and importlib.util.find_spec(info['module']) is None:
            continue
        available_drivers.append(driver_name)

    available_drivers.sort(key=lambda d: DRIVERS[d]['priority'])
    return available_drivers


def get_db_type_for_driver(driver_name: str) -> Optional[str]:
    """Get database type for a driver or driver module name."""
    for name, info in DRIVERS.items():
        if driver_name in (name, info['module']):
            return info['database_type']
    return None


def get_params_for_database(db_type: str, driver: str = None) -> set:
    """Get all valid parameters for a database type from DRIVERS metadata."""
    valid_params = set()
    for driver_name, driver_info in DRIVERS.items():
        if driver_info['database_type'] != db_type:
            continue
        if driver and driver_name != driver:
            continue
        for param_set in driver_info['required_params']:
            valid_params.update(param_set)
        valid_params.update(driver_info.get('optional_params', set()))
    return valid_params


def validate_connection_params(driver_name: str, **params) -> dict:
    """
    Validate connection parameters against driver requirements.

    Args:
        driver_name: Name of the database driver
        **params: Connection parameters

    Returns:
        Dict of validated parameters, renamed for the driver, with extras removed

    Raises:
        ValueError: If the driver is unknown or required parameters are missing
    """
    if driver_name not in DRIVERS:
        raise ValueError(f"Unknown driver: {driver_name}")

    driver_info = DRIVERS[driver_name]
    if 'port' not in params and driver_info.get('default_port'):
        params['port'] = driver_info['default_port']

    if not any(required.issubset(params.keys()) for required in driver_info['required_params']):
        raise ValueError(f"Missing required parameters. Need one of: {driver_info['required_params']}")

    param_map = driver_info.get('param_map', {})
    all_valid_params = set(driver_info.get('optional_params', set()))
    for req_set in driver_info['required_params']:
        all_valid_params.update(req_set)

    return {param_map.get(key, key): value for key, value in params.items()
            if key in all_valid_params and value is not None}


def get_odbc_connection_string(odbc_driver_name: Optional[str] = None, **params) -> str:
    """ Get connection string for ODBC from keyword arguments."""
    server = params.pop('SERVER', 'localhost')
    port = params.pop('port', None)
    if port:
        server = f"{server},{port}"
    parts = [f"SERVER={server}"]
    parts.extend(f"{key.upper()}={value}" for key, value in params.items())
    if odbc_driver_name:
        parts.insert(0, f"DRIVER={{{odbc_driver_name}}}")
    return ";".join(parts)


class Database:
    """
    Database connection wrapper that provides uniform interface
    across different database adapters.

    The database type decides which capabilities are available: whether the
    set-based MERGE path can be used and how many parameters may be bound to
    one statement. Both are fixed when the wrapper is created.
    """

    _local_attrs = [
        '_connection', 'server_type', 'database_name', 'interface', 'name',
        'placeholder', 'capabilities'
    ]

    CURSOR_TYPES = {
        CursorType.TUPLE: TupleCursor,
        CursorType.DICT: DictCursor,
        CursorType.LIST: Cursor
    }

    def __init__(self, connection, interface, database_name: Optional[str] = None,
                 server_type: Optional[str] = None):
        """
        Initialize Database wrapper.

        Args:
            connection: Underlying database connection object
            interface: Database adapter module (pyodbc, sqlite3, ...)
            database_name: Name of the database
            server_type: Database type; looked up from the adapter module when omitted
        """
        self._connection = connection
        self.interface = interface
        self.database_name = database_name
        self.name = None

        paramstyle = getattr(interface, 'paramstyle', ParamStyle.DEFAULT)
        self.placeholder = ParamStyle.get_placeholder(paramstyle)

        if server_type is None:
            server_type = get_db_type_for_driver(interface.__name__) or 'unknown'
        self.server_type = server_type
        self.capabilities = dict(CAPABILITIES.get(server_type, CAPABILITIES['unknown']))

    def __getattr__(self, key: str) -> Any:
        """Delegate attribute access to underlying connection."""
        return getattr(self._connection, key)

    def __setattr__(self, key: str, value: Any) -> None:
        """Set attributes locally or delegate to connection."""
        if key in self._local_attrs:
            self.__dict__[key] = value
        else:
            setattr(self._connection, key, value)

    def __str__(self) -> str:
        if self.database_name:
            return f'Database({self.database_name}:{self.server_type})'
        return f'Database({self.server_type})'

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def supports_bulk_merge(self) -> bool:
        """True when the backend can run the set-based MERGE statements."""
        return bool(self.capabilities.get('bulk_merge'))

    @property
    def max_parameters(self) -> int:
        """Bound parameter limit per statement (``max_parameters`` setting wins)."""
        return settings.get('max_parameters') or self.capabilities['max_parameters']

    def cursor(self, cursor_type: Union[str, Type] = None, **kwargs) -> Cursor:
        """
        Create a cursor of the specified type.

        Args:
            cursor_type: Type of cursor ('tuple', 'dict', 'list') or cursor class
            **kwargs: Additional arguments passed to cursor

        Examples:
            cursor = db.cursor()  # list rows by default
            cursor = db.cursor('dict')
        """
        if cursor_type is None:
            cursor_type = settings.get('default_cursor_type', CursorType.LIST)
        if isinstance(cursor_type, str):
            if cursor_type not in CursorType.values():
                raise ValueError(
                    f"Invalid cursor type '{cursor_type}'. "
                    f"Must be one of: {CursorType.values()}"
                )
            cursor_class = self.CURSOR_TYPES[cursor_type]
        elif isinstance(cursor_type, type) and issubclass(cursor_type, Cursor):
            cursor_class = cursor_type
        else:
            raise ValueError(f"Invalid cursor type: {cursor_type}")

        return cursor_class(self, **kwargs)

    @contextmanager
    def transaction(self):
        """
        Context manager for database transactions.

        Example:
            with db.transaction():
                cursor = db.cursor()
                cursor.execute("INSERT ...")
                cursor.execute("UPDATE ...")
                # Auto-commit on success, rollback on exception
        """
        try:
            yield self
            self.commit()
        except Exception:
            self.rollback()
            raise

    @classmethod
    def create(cls, db_type: str, driver: str = None, **kwargs) -> 'Database':
        """
        Factory method to create database connections.

        Args:
            db_type: Database type ('sqlserver' or 'sqlite')
            driver: Driver name from DRIVERS; the highest priority installed driver when omitted
            **kwargs: Connection parameters

        Returns:
            Database instance
        """
        db_driver = None
        driver_name = None
        if driver:
            if driver not in DRIVERS:
                raise ValueError(f"Unknown driver: {driver}")
            if DRIVERS[driver]['database_type'] != db_type:
                raise ValueError(f"Driver '{driver}' is not compatible with database type '{db_type}'")
            try:
                db_driver = importlib.import_module(DRIVERS[driver]['module'])
                driver_name = driver
            except ImportError:
                logger.warning(f"Driver '{driver}' not available, falling back to default")

        if db_driver is None:
            for candidate in get_drivers_for_database(db_type):
                try:
                    db_driver = importlib.import_module(DRIVERS[candidate]['module'])
                    driver_name = candidate
                    break
                except ImportError:
                    pass

        if db_driver is None:
            raise ImportError(f"No database driver found for database type '{db_type}'")

        database_name = kwargs.get('database')
        params = validate_connection_params(driver_name, **kwargs)
        driver_conf = DRIVERS[driver_name]
        if driver_conf['connection_method'] == 'kwargs':
            connection = db_driver.connect(**params)
        elif driver_conf['connection_method'] == 'odbc_string':
            odbc_driver_name = params.pop('driver', driver_conf.get('odbc_driver_name'))
            connection = db_driver.connect(get_odbc_connection_string(odbc_driver_name, **params))
        else:
            raise ValueError(f"Unsupported connection method: {driver_conf['connection_method']}")

        logger.debug(f"Connected to {db_type} database {database_name} using {driver_name}")
        return cls(connection, db_driver, database_name, server_type=db_type)


def sqlserver(user: Optional[str] = None, password: Optional[str] = None, database: str = None,
              host: str = 'localhost', port: int = 1433, driver: str = None, **kwargs) -> Database:
    """Create SQL Server connection."""
    return Database.create('sqlserver', user=user, password=password, database=database,
                           host=host, port=port, driver=driver, **kwargs)


def sqlite(database: str, **kwargs) -> Database:
    """Create SQLite connection."""
    import sqlite3

    connection = sqlite3.connect(database, **kwargs)
    return Database(connection, sqlite3, os.path.basename(database), server_type='sqlite')
