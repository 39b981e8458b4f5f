# dbmerge/logging_utils.py
"""
Logging setup for load jobs.

Jobs that push records through the bulk engine usually run unattended, so
each run gets its own timestamped log file (``job_YYYYMMDD_HHMMSS.log``) and
errors can be split into a second file that only exists when something failed.
"""

import logging
import sys
from pathlib import Path
from datetime import datetime
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

_error_handler: Optional['ErrorCountHandler'] = None
_main_log_path: Optional[str] = None
_error_log_path: Optional[str] = None
_split_errors: bool = False


class ErrorCountHandler(logging.Handler):
    """Counts ERROR and CRITICAL records and opens the error log on the first one."""

    def __init__(self, error_log_path: Optional[str] = None, formatter: Optional[logging.Formatter] = None):
        super().__init__()
        self.error_count = 0
        self.error_log_path = error_log_path
        self.formatter = formatter
        self._error_file_handler = None

    def emit(self, record):
        if record.levelno < logging.ERROR:
            return
        self.error_count += 1

        if self.error_log_path and self._error_file_handler is None:
            handler = logging.FileHandler(self.error_log_path, encoding='utf-8')
            handler.setLevel(logging.ERROR)
            if self.formatter:
                handler.setFormatter(self.formatter)
            # appended to the root handlers still being iterated, so it also receives this record
            logging.getLogger().addHandler(handler)
            self._error_file_handler = handler


def setup_logging(
    script_name: Optional[str] = None,
    log_dir: Optional[str] = None,
    level: Optional[str] = None,
    split_errors: Optional[bool] = None,
    console: Optional[bool] = None
) -> Tuple[str, Optional[str]]:
    """
    Configure the root logger for a load job.

    Args:
        script_name: Base name for log files (defaults to the running script's name)
        log_dir: Directory for log files (``logging.directory`` setting)
        level: DEBUG, INFO, WARNING or ERROR (``logging.level`` setting)
        split_errors: Write errors to a separate ``_error.log`` (``logging.split_errors`` setting)
        console: Also log to stdout (``logging.console`` setting)

    Returns:
        Tuple of (log_file_path, error_log_path or None)

    Example
    -------
    ::

        import dbmerge

        dbmerge.setup_logging('nightly_orders')
        # DEBUG shows every generated MERGE statement
        dbmerge.setup_logging('nightly_orders', level='DEBUG')

    Set ``logging.filename_format`` to ``''`` in dbmerge.yml for a single log
    file that is reused by every run.
    """
    from .config import get_setting

    if script_name is None:
        script_name = Path(sys.argv[0]).stem

    logging_config = get_setting('logging', {})

    log_dir = log_dir or logging_config.get('directory', './logs')
    level = (level or logging_config.get('level', 'INFO')).upper()
    split_errors = split_errors if split_errors is not None else logging_config.get('split_errors', True)
    console = console if console is not None else logging_config.get('console', True)

    log_format = logging_config.get('format', '%(asctime)s [%(levelname)s] %(name)s: %(message)s')
    timestamp_format = logging_config.get('timestamp_format', '%Y-%m-%d %H:%M:%S')
    filename_format = logging_config.get('filename_format', '%Y%m%d_%H%M%S')

    log_dir_path = Path(log_dir)
    log_dir_path.mkdir(parents=True, exist_ok=True)

    stem = script_name
    if filename_format:
        stem = f"{script_name}_{datetime.now().strftime(filename_format)}"
    log_file = log_dir_path / f"{stem}.log"
    error_file = log_dir_path / f"{stem}_error.log" if split_errors else None

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level))
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(log_format, datefmt=timestamp_format)

    global _error_handler, _main_log_path, _error_log_path, _split_errors
    _error_handler = ErrorCountHandler(
        error_log_path=str(error_file) if error_file else None,
        formatter=formatter
    )
    _error_handler.setLevel(logging.ERROR)
    root_logger.addHandler(_error_handler)

    file_handler = logging.FileHandler(log_file, encoding='utf-8')
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(getattr(logging, level))
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    logging.info(f"Logging initialized: {log_file}")

    _main_log_path = str(log_file)
    _error_log_path = str(error_file) if error_file else None
    _split_errors = bool(split_errors)

    return _main_log_path, _error_log_path


def errors_logged() -> Optional[str]:
    """
    Path of the log holding this run's errors, or None when nothing was logged
    at ERROR or above.

    Returns the error log when errors are split out, the main log otherwise.

    Example
    -------
    ::

        dbmerge.setup_logging('nightly_orders')
        try:
            orders.upsert_many(batch)
        except Exception as e:
            logging.error(f"Order load failed: {e}")

        error_log = dbmerge.errors_logged()
        if error_log:
            notify_support(error_log)
    """
    if _error_handler is None:
        logger.warning("errors_logged() called but setup_logging() was not called")
        return None

    if _error_handler.error_count == 0:
        return None

    if _split_errors and _error_log_path:
        return _error_log_path
    return _main_log_path
