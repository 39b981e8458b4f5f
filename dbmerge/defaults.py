# dbmerge/defaults.py
"""Default settings - no imports to avoid circular dependencies."""

settings = {
    'default_column_case': 'lower',
    'default_cursor_type': 'list',
    'default_batch_size': 1000,
    # bound parameters per statement; None uses the limit of the connected database type
    'max_parameters': None,
    # SQL Server table value constructor accepts at most 1000 rows
    'values_row_limit': 1000,
    'staging': 'auto',           # 'values', 'temp' or 'auto'
    'staging_threshold': 10_000,  # auto mode stages through a temp table above this many records
    'staging_batch_size': 10_000,
    'output_mapping': 'reflection',  # 'reflection' or 'none'
    'logging': {
        'directory': './logs',
        'level': 'INFO',
        'format': '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        'timestamp_format': '%Y-%m-%d %H:%M:%S',
        'filename_format': '%Y%m%d_%H%M%S',  # Set to '' for single log file (no timestamp)
        'split_errors': True,
        'console': True,
    }
}
