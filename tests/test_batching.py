import pathlib
import sys
import threading

import pytest

REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))

from cardpipeline.utils.batching import run_in_batches
from cardpipeline.workflow.llm import ProviderError


def test_results_keep_input_order_and_failures_become_none():
    def square(value):
        if value == 3:
            raise ValueError("bad unit")
        return value * value

    assert run_in_batches([1, 2, 3, 4, 5], square, batch_size=2, delay_seconds=0) == [1, 4, None, 16, 25]


def test_delay_between_batches_only():
    pauses = []
    run_in_batches(list(range(7)), lambda value: value, batch_size=3, delay_seconds=0.5, sleep=pauses.append)
    assert pauses == [0.5, 0.5]


def test_in_flight_calls_never_exceed_batch_size():
    lock = threading.Lock()
    state = {"active": 0, "peak": 0}

    def work(value):
        with lock:
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
        threading.Event().wait(0.01)
        with lock:
            state["active"] -= 1
        return value

    run_in_batches(list(range(10)), work, batch_size=3, delay_seconds=0)
    assert state["peak"] <= 3


def test_provider_error_aborts():
    def fail(value):
        raise ProviderError("quota exceeded")

    with pytest.raises(ProviderError):
        run_in_batches([1, 2], fail, delay_seconds=0)


def test_empty_input():
    assert run_in_batches([], lambda value: value) == []
