"""
Tests for Partitioned Path Execution
====================================
"""

import threading
import time

import numpy as np
import pytest

from quantcore.exceptions import SimulationCancelledError
from quantcore.parallel import ExecutionOptions, partition, run_partitioned
from quantcore.random_variates import VariateGenerator


def draw_chunk(gen, n):
    return gen.standard_normal(n)


class TestPartition:
    """Tests for chunk sizing."""

    def test_even_split(self):
        """Test exact multiples."""
        assert partition(100, 25) == [25, 25, 25, 25]

    def test_remainder_last(self):
        """Test that only the last chunk is short."""
        assert partition(110, 25) == [25, 25, 25, 25, 10]

    def test_single_chunk(self):
        """Test fewer items than a chunk."""
        assert partition(7, 25) == [7]

    def test_rejects_empty(self):
        """Test zero items."""
        with pytest.raises(ValueError, match="Need at least 1 item"):
            partition(0, 25)


class TestExecutionOptions:
    """Tests for option validation."""

    def test_defaults(self):
        """Test default options."""
        options = ExecutionOptions()
        assert options.n_workers == 1
        assert options.deadline is None

    @pytest.mark.parametrize("kwargs", [
        {"n_workers": 0},
        {"chunk_size": 0},
        {"deadline": -1.0},
    ])
    def test_invalid(self, kwargs):
        """Test rejected options."""
        with pytest.raises(ValueError):
            ExecutionOptions(**kwargs)


class TestRunPartitioned:
    """Tests for chunked execution."""

    def test_results_in_chunk_order(self):
        """Test that chunk sizes come back in order."""
        results = run_partitioned(
            lambda gen, n: n, 110, VariateGenerator(1), ExecutionOptions(n_workers=3, chunk_size=25),
        )
        assert results == [25, 25, 25, 25, 10]

    def test_worker_count_does_not_change_results(self):
        """Test reproducibility across worker counts for a fixed seed and chunk size."""
        sequential = run_partitioned(
            draw_chunk, 10_000, VariateGenerator(5), ExecutionOptions(n_workers=1, chunk_size=1000),
        )
        threaded = run_partitioned(
            draw_chunk, 10_000, VariateGenerator(5), ExecutionOptions(n_workers=4, chunk_size=1000),
        )
        np.testing.assert_array_equal(np.concatenate(sequential), np.concatenate(threaded))

    def test_cancel_event(self):
        """Test that a set cancel event stops the run."""
        event = threading.Event()
        event.set()
        options = ExecutionOptions(n_workers=1, chunk_size=10, cancel_event=event)
        with pytest.raises(SimulationCancelledError, match="cancelled") as exc_info:
            run_partitioned(draw_chunk, 100, VariateGenerator(1), options, "test_run")
        assert exc_info.value.completed_chunks == 0
        assert exc_info.value.total_chunks == 10

    def test_cancel_event_threaded(self):
        """Test cancellation with a worker pool."""
        event = threading.Event()
        event.set()
        options = ExecutionOptions(n_workers=2, chunk_size=10, cancel_event=event)
        with pytest.raises(SimulationCancelledError):
            run_partitioned(draw_chunk, 100, VariateGenerator(1), options)

    def test_deadline_sequential(self):
        """Test that the deadline is enforced between chunks."""
        def slow(gen, n):
            time.sleep(0.05)
            return n

        options = ExecutionOptions(n_workers=1, chunk_size=10, deadline=0.01)
        with pytest.raises(SimulationCancelledError, match="deadline"):
            run_partitioned(slow, 50, VariateGenerator(1), options)

    def test_deadline_threaded(self):
        """Test that the deadline is enforced while waiting on workers."""
        def slow(gen, n):
            time.sleep(0.2)
            return n

        options = ExecutionOptions(n_workers=2, chunk_size=10, deadline=0.05)
        with pytest.raises(SimulationCancelledError, match="deadline"):
            run_partitioned(slow, 60, VariateGenerator(1), options)
