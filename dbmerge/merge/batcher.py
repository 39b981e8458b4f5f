# dbmerge/merge/batcher.py

"""
Splits record sequences into batches that fit the bound-parameter limit.
"""

import logging
from dataclasses import dataclass
from typing import Any, Iterator, Optional, Sequence, Tuple

from ..exceptions import RecordTooWideError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Batch:
    """A slice of the input records. ``number`` is 1-based, ``start`` is the offset in the input."""
    number: int
    start: int
    records: Tuple[Any, ...]

    @property
    def ordinals(self) -> range:
        """Ordinal of each record within the batch, used to correlate output rows."""
        return range(len(self.records))

    def __len__(self) -> int:
        return len(self.records)


class BatchPlan:
    """
    Batches over one record sequence.

    Iterating starts from the first record every time; each batch is sliced
    from the input only when it is reached.
    """

    def __init__(self, records: Sequence[Any], batch_size: int):
        self._records = records
        self.batch_size = batch_size

    def __iter__(self) -> Iterator[Batch]:
        size = self.batch_size
        for number, start in enumerate(range(0, len(self._records), size), 1):
            yield Batch(number, start, tuple(self._records[start:start + size]))

    def __len__(self) -> int:
        return -(-len(self._records) // self.batch_size)

    def __repr__(self) -> str:
        return f"BatchPlan({len(self._records)} records, {len(self)} batches of {self.batch_size})"


class Batcher:
    """
    Sizes batches so ``records_in_batch * parameters_per_record`` stays within
    ``max_parameters``.

    Args:
        parameters_per_record: Parameters one record binds in the statement
        max_parameters: Parameters one statement may bind
        max_rows: Upper bound on records per batch regardless of parameters

    Raises:
        RecordTooWideError: A single record needs more than ``max_parameters``

    Example
    -------
    ::

        >>> Batcher(parameters_per_record=3, max_parameters=2100).batch_size
        700
        >>> Batcher(3, 2100, max_rows=500).batch_size
        500
    """

    def __init__(self, parameters_per_record: int, max_parameters: int, max_rows: Optional[int] = None):
        if parameters_per_record < 0:
            raise ValueError(f"parameters_per_record must not be negative: {parameters_per_record}")
        if max_rows is not None and max_rows < 1:
            raise ValueError(f"max_rows must be at least 1: {max_rows}")
        if parameters_per_record > max_parameters or max_parameters < 1:
            raise RecordTooWideError(parameters_per_record, max_parameters)

        self.parameters_per_record = parameters_per_record
        self.max_parameters = max_parameters
        self.max_rows = max_rows

        if parameters_per_record:
            size = max_parameters // parameters_per_record
        else:
            size = max_parameters
        if max_rows:
            size = min(size, max_rows)
        self.batch_size = max(size, 1)

    @classmethod
    def staged(cls, parameters_per_record: int, max_parameters: int, rows: int) -> 'Batcher':
        """
        Batcher for records loaded into a staging table.

        Rows are loaded one statement per row, so only a single record has to
        fit the parameter limit and ``rows`` sets the batch size.
        """
        batcher = cls(parameters_per_record, max_parameters, max_rows=rows)
        batcher.batch_size = rows
        return batcher

    def split(self, records: Sequence[Any]) -> BatchPlan:
        """Plan batches over ``records`` (iterables without len() are read into a list)."""
        if not isinstance(records, Sequence):
            records = list(records)
        plan = BatchPlan(records, self.batch_size)
        logger.debug(f"Planned {plan!r}")
        return plan

    def __repr__(self) -> str:
        return (f"Batcher(parameters_per_record={self.parameters_per_record}, "
                f"max_parameters={self.max_parameters}, batch_size={self.batch_size})")
