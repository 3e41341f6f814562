from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence, TypeVar

from cardpipeline.utils.logging_config import get_logger
from cardpipeline.workflow.llm import ProviderError

logger = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def run_in_batches(
    items: Sequence[T],
    fn: Callable[[T], Optional[R]],
    *,
    batch_size: int = 3,
    delay_seconds: float = 1.0,
    label: str = "batch",
    sleep: Callable[[float], None] = time.sleep,
) -> List[Optional[R]]:
    """Apply ``fn`` to every item with at most ``batch_size`` calls in flight.

    Results keep input order. A unit that raises is logged and yields ``None``;
    ``ProviderError`` aborts the whole run.
    """
    batch_size = max(1, int(batch_size))
    results: List[Optional[R]] = []
    total_batches = (len(items) + batch_size - 1) // batch_size
    for batch_idx in range(total_batches):
        if batch_idx and delay_seconds > 0:
            sleep(delay_seconds)
        batch = items[batch_idx * batch_size : (batch_idx + 1) * batch_size]
        with ThreadPoolExecutor(max_workers=len(batch)) as executor:
            futures = [executor.submit(fn, item) for item in batch]
            for offset, future in enumerate(futures):
                try:
                    results.append(future.result())
                except ProviderError:
                    raise
                except Exception:
                    logger.warning("%s unit failed | batch=%s/%s item=%s", label, batch_idx + 1, total_batches, batch_idx * batch_size + offset, exc_info=True)
                    results.append(None)
        logger.debug("%s progress | batch=%s/%s", label, batch_idx + 1, total_batches)
    return results
