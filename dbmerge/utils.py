# dbmerge/utils.py
"""
Utility functions for dbmerge.
"""

import re
from typing import Tuple, Any, Union, Dict

from collections.abc import Mapping


class ParamStyle:
    """
    SQL parameter placeholder styles for different database drivers.

    Statements are always generated with named placeholders (``:name``) and
    converted to the style of the driver by :func:`process_sql_parameters`.

    - QMARK: Question mark placeholders (?, ?) - pyodbc, SQLite
    - NUMERIC: Numeric placeholders (:1, :2)
    - NAMED: Named placeholders (:name, :email) - SQLite
    - FORMAT: Printf-style (%s, %s) - pymssql
    - PYFORMAT: Python format (%(name)s) - pymssql

    Example
    -------
    ::
        >>> ParamStyle.get_placeholder('qmark')
        '?'
        >>> ParamStyle.get_placeholder('format')
        '%s'
    """
    QMARK = 'qmark'         # id = ?
    NUMERIC = 'numeric'     # id = :1
    NAMED = 'named'         # id = :id
    FORMAT = 'format'       # id = %s
    PYFORMAT = 'pyformat'   # id = %(id)s
    DEFAULT = NAMED

    @classmethod
    def values(cls):
        return [getattr(cls, attr) for attr in dir(cls)
                if not attr.startswith('_') and isinstance(getattr(cls, attr), str)]

    @classmethod
    def positional_styles(cls):
        """ Parameter styles where parameters must be in properly ordered tuple instead of dict"""
        return (cls.QMARK, cls.NUMERIC, cls.FORMAT)

    @classmethod
    def named_styles(cls):
        """ Parameter styles where parameters must be in dict instead of tuple"""
        return (cls.NAMED, cls.PYFORMAT)

    @classmethod
    def get_placeholder(cls, paramstyle: str) -> str:
        if paramstyle == cls.QMARK:
            return '?'
        elif paramstyle in (cls.FORMAT, cls.PYFORMAT):
            return '%s'
        elif paramstyle in (cls.NUMERIC, cls.NAMED):
            return ':1'
        return ''


def wrap_at_comma(text: str) -> str:
    """Wrap text at commas, avoiding breaks inside parentheses."""
    parts = re.split(r'(\([^)]*\))', text)

    wrapped_parts = []
    for i, part in enumerate(parts):
        if i % 2 == 0:  # Outside parentheses
            wrapped = re.sub(r'(.{70}[^,]*), ', r'\1,\n    ', part)
            wrapped_parts.append(wrapped)
        else:
            wrapped_parts.append(part)

    return ''.join(wrapped_parts)


def process_sql_parameters(sql: str, paramstyle: str) -> Tuple[str, Tuple[str, ...]]:
    """
    Process SQL parameters according to the specified paramstyle.
    Always extracts parameter names; converts SQL format if needed.

    Parameters:
        sql: The SQL query string containing named parameters in the format ':name'.
        paramstyle: The desired parameter style for the resulting SQL string.

    Returns:
        A tuple containing the processed SQL query string and a tuple of all named parameters
        extracted in the order in which they appear in the original query.

    Raises:
        ValueError: If the provided paramstyle is not supported.
    """
    # (?<![:\w]) keeps T-SQL '::' scope qualifiers and times like '10:30' out of the match
    pattern = r'(?<![:\w]):([A-Za-z_]\w*)'
    param_names = tuple(re.findall(pattern, sql))

    if paramstyle == ParamStyle.NAMED:
        return sql, param_names
    elif paramstyle == ParamStyle.PYFORMAT:
        new_sql = re.sub(pattern, r'%(\1)s', sql)
        return new_sql, param_names
    elif paramstyle == ParamStyle.QMARK:
        new_sql = re.sub(pattern, '?', sql)
        return new_sql, param_names
    elif paramstyle == ParamStyle.FORMAT:
        new_sql = re.sub(pattern, '%s', sql)
        return new_sql, param_names
    elif paramstyle == ParamStyle.NUMERIC:
        counter = iter(range(1, len(param_names) + 1))
        new_sql = re.sub(pattern, lambda m: f':{next(counter)}', sql)
        return new_sql, param_names
    else:
        raise ValueError(f"Unsupported paramstyle: {paramstyle}")


def bind_parameters(param_names: Tuple[str, ...], values: Dict[str, Any],
                    paramstyle: str) -> Union[tuple, dict]:
    """
    Arrange named values the way the driver expects them.

    Positional styles get a tuple ordered like ``param_names``; named styles get
    a dict holding only the names used by the statement.
    """
    if paramstyle in ParamStyle.positional_styles():
        return tuple(values.get(name) for name in param_names)
    return {name: values.get(name) for name in param_names}


def validate_identifier(identifier: str, max_length: int = 128) -> str:
    """
    Validate that an identifier is safe for use (even if it needs quoting).
    Returns the identifier if valid, raises ValueError if invalid.
    """
    if '.' in identifier:
        parts = identifier.split('.')
        validated_parts = [validate_identifier(part, max_length) for part in parts]
        return '.'.join(validated_parts)

    if not identifier:
        raise ValueError("Invalid identifier: cannot be empty")
    if not (identifier[0].isalpha() or identifier[0] in '#_'):
        raise ValueError(f"Invalid identifier: must start with a letter: {identifier}")
    if len(identifier) > max_length:
        raise ValueError(f"Invalid identifier: exceeds max length of {max_length}")

    # Characters/sequences that could enable injection or break SQL parsing
    dangerous_patterns = ['\x00', '\n', '\r', '"', ';', '\x1a', '--', '/*', '*/', '[', ']']
    for pattern in dangerous_patterns:
        if pattern in identifier:
            raise ValueError(f"Invalid identifier: contains dangerous pattern '{pattern}': {identifier}")

    if identifier.startswith(' ') or identifier.endswith(' '):
        raise ValueError(f"Invalid identifier: has leading/trailing spaces: {identifier}")

    return identifier


def identifier_needs_quoting(identifier: str) -> bool:
    """Check if identifier needs quoting."""
    return not re.match(r'^(#?[a-z][a-z0-9_]*|#?[A-Z][A-Z0-9_]*)$', identifier)


def quote_identifier(identifier: str) -> str:
    """Quote identifier, handling qualified names by splitting on dots."""
    if '.' in identifier:
        parts = identifier.split('.')
        return '.'.join(quote_identifier(part) for part in parts)

    if identifier_needs_quoting(identifier):
        return f'"{identifier}"'
    return identifier


def sanitize_identifier(name: str, idx: int = 0) -> str:
    """Sanitize an identifier/column name."""
    if name is None or name == '':
        return f'col_{idx + 1}'

    # Replace non-alphanumeric chars with underscore, collapse multiple underscores
    sanitized = re.sub(r'[^a-z0-9_]+', '_', name.lower())

    if not sanitized[0].isalpha():
        sanitized = 'col_' + sanitized

    return sanitized.rstrip('_')

