# tests/test_logging_utils.py
import pytest
import logging
import tempfile
from pathlib import Path

from dbmerge import defaults
from dbmerge.logging_utils import setup_logging, errors_logged, ErrorCountHandler


@pytest.fixture
def temp_log_dir():
    """Create temporary directory for log files, detaching file handlers afterwards."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir
        root = logging.getLogger()
        for handler in list(root.handlers):
            if isinstance(handler, (logging.FileHandler, ErrorCountHandler)):
                root.removeHandler(handler)
                handler.close()


def make_record(level, msg='test message'):
    return logging.LogRecord(name='test', level=level, pathname='', lineno=0,
                             msg=msg, args=(), exc_info=None)


class TestErrorCountHandler:
    """Test ErrorCountHandler class functionality."""

    def test_counts_errors(self):
        """Test that handler counts ERROR messages."""
        handler = ErrorCountHandler()

        handler.emit(make_record(logging.ERROR))
        handler.emit(make_record(logging.INFO))
        handler.emit(make_record(logging.ERROR))

        assert handler.error_count == 2

    def test_counts_critical(self):
        """Test that handler counts CRITICAL messages."""
        handler = ErrorCountHandler()
        handler.emit(make_record(logging.CRITICAL))
        assert handler.error_count == 1

    def test_ignores_lower_levels(self):
        """Test that handler ignores DEBUG, INFO, WARNING."""
        handler = ErrorCountHandler()

        handler.emit(make_record(logging.DEBUG))
        handler.emit(make_record(logging.WARNING))

        assert handler.error_count == 0

    def test_error_log_created_lazily(self, temp_log_dir):
        error_path = Path(temp_log_dir) / 'lazy_error.log'
        handler = ErrorCountHandler(error_log_path=str(error_path))

        handler.emit(make_record(logging.WARNING))
        assert not error_path.exists()

        handler.emit(make_record(logging.ERROR))
        assert error_path.exists()


class TestSetupLogging:
    """Test setup_logging() file naming and settings."""

    def test_timestamped_file_names(self, temp_log_dir):
        main_log, error_log = setup_logging('nightly_census', log_dir=temp_log_dir, console=False)

        assert Path(main_log).name.startswith('nightly_census_')
        assert main_log.endswith('.log')
        assert error_log.endswith('_error.log')
        assert Path(main_log).exists()
        assert not Path(error_log).exists()

    def test_single_file_when_no_filename_format(self, temp_log_dir):
        defaults.settings['logging']['filename_format'] = ''
        main_log, _ = setup_logging('nightly_census', log_dir=temp_log_dir, console=False)

        assert Path(main_log).name == 'nightly_census.log'

    def test_engine_debug_messages_written(self, temp_log_dir):
        main_log, _ = setup_logging('debug_run', log_dir=temp_log_dir, level='DEBUG', console=False)

        logging.getLogger('dbmerge.merge.template').debug('Generated insert merge SQL')

        assert 'Generated insert merge SQL' in Path(main_log).read_text()


class TestErrorsLogged:
    """Test errors_logged() function."""

    def test_no_errors_returns_none(self, temp_log_dir):
        """Test that errors_logged() returns None when no errors."""
        setup_logging('test_script', log_dir=temp_log_dir, console=False)

        logging.info("This is just info")
        logging.warning("This is a warning")

        assert errors_logged() is None

    def test_with_errors_split_true(self, temp_log_dir):
        """Test errors_logged() returns error log path when split_errors=True."""
        main_log, error_log = setup_logging('test_script', log_dir=temp_log_dir,
                                            split_errors=True, console=False)

        logging.error("This is an error")

        result = errors_logged()
        assert result == error_log
        assert Path(result).exists()

    def test_with_errors_split_false(self, temp_log_dir):
        """Test errors_logged() returns main log path when split_errors=False."""
        main_log, error_log = setup_logging('test_script', log_dir=temp_log_dir,
                                            split_errors=False, console=False)

        assert error_log is None

        logging.error("This is an error")

        result = errors_logged()
        assert result == main_log
        assert Path(result).exists()

    def test_integration_pattern(self, temp_log_dir):
        """Test the integration pattern: setup, load, check errors."""
        setup_logging('integration_test', log_dir=temp_log_dir, console=False)

        try:
            logging.info("Starting census load")
            raise ValueError("Batch 2 failed")
        except Exception as e:
            logging.error(f"Census load failed: {e}")

        error_log = errors_logged()
        assert error_log is not None

        with open(error_log, 'r') as f:
            content = f.read()
            assert 'ERROR' in content
            assert 'Batch 2 failed' in content
