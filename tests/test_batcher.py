# tests/test_batcher.py
import pytest

from dbmerge.exceptions import RecordTooWideError
from dbmerge.merge.batcher import Batcher, BatchPlan


class TestBatchSize:
    """Test batch sizing against the parameter limit."""

    def test_size_from_parameters(self):
        assert Batcher(3, 2100).batch_size == 700
        assert Batcher(4, 2100).batch_size == 525

    def test_max_rows_caps_size(self):
        assert Batcher(1, 2100, max_rows=1000).batch_size == 1000

    def test_zero_parameters(self):
        """Test records that bind nothing still batch (e.g. DEFAULT VALUES inserts)."""
        assert Batcher(0, 2100).batch_size == 2100
        assert Batcher(0, 2100, max_rows=1000).batch_size == 1000

    def test_record_exactly_at_limit(self):
        assert Batcher(2100, 2100).batch_size == 1

    def test_record_too_wide(self):
        with pytest.raises(RecordTooWideError) as exc_info:
            Batcher(2101, 2100)

        assert exc_info.value.parameters_per_record == 2101
        assert exc_info.value.max_parameters == 2100

    def test_no_parameters_allowed(self):
        with pytest.raises(RecordTooWideError):
            Batcher(0, 0)

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            Batcher(-1, 2100)
        with pytest.raises(ValueError):
            Batcher(3, 2100, max_rows=0)

    def test_staged_batcher(self):
        """Test staged batches are sized by rows, only one record has to fit the limit."""
        batcher = Batcher.staged(4, 2100, 10_000)
        assert batcher.batch_size == 10_000

        with pytest.raises(RecordTooWideError):
            Batcher.staged(2101, 2100, 10_000)


class TestSplit:
    """Test splitting record sequences into batches."""

    @pytest.mark.parametrize('count, per_record, limit', [
        (0, 3, 2100),
        (1, 3, 2100),
        (700, 3, 2100),
        (701, 3, 2100),
        (2500, 2, 10),
        (17, 5, 12),
    ])
    def test_batches_cover_records_in_order(self, count, per_record, limit):
        """Test batch sizes sum to the record count, fit the limit and keep input order."""
        records = list(range(count))
        batcher = Batcher(per_record, limit)
        batches = list(batcher.split(records))

        assert sum(len(b) for b in batches) == count
        assert all(len(b) * per_record <= limit for b in batches)
        assert [r for b in batches for r in b.records] == records
        assert [b.number for b in batches] == list(range(1, len(batches) + 1))

    def test_capacity_boundary(self):
        """Test capacity records make one batch and one more record starts a second."""
        batcher = Batcher(3, 2100)

        assert len(list(batcher.split(range(700)))) == 1

        batches = list(batcher.split(range(701)))
        assert len(batches) == 2
        assert len(batches[1]) == 1
        assert batches[1].start == 700
        assert batches[1].records == (700,)

    def test_ordinals(self):
        batch = next(iter(Batcher(1, 3).split(['Aang', 'Katara', 'Sokka', 'Toph'])))

        assert list(batch.ordinals) == [0, 1, 2]
        assert batch.records == ('Aang', 'Katara', 'Sokka')

    def test_plan_is_restartable(self):
        plan = Batcher(2, 4).split(['Aang', 'Katara', 'Sokka', 'Toph', 'Zuko'])

        first = [b.records for b in plan]
        second = [b.records for b in plan]
        assert first == second == [('Aang', 'Katara'), ('Sokka', 'Toph'), ('Zuko',)]
        assert len(plan) == 3

    def test_generators_are_materialized(self):
        plan = Batcher(1, 2).split(name for name in ['Appa', 'Momo', 'Hawky'])

        assert isinstance(plan, BatchPlan)
        assert len(plan) == 2
        assert [len(b) for b in plan] == [2, 1]
