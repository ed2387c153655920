"""
Parallel execution for EnhancerLink.

Chromosomes, samples and cell-type/treatment groups share no mutable state,
so they are processed with a thread pool. Reference data (genome table,
transcript model, called regions) must be fully built before a map starts.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed, Future
from typing import Any, Callable, Dict, Hashable, Iterable, List, Mapping, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def parallel_map(
    func: Callable[[T], R],
    items: Iterable[T],
    max_workers: int = 4,
    label: str = "task",
) -> List[R]:
    """Apply ``func`` to every item, returning results in input order.

    Args:
        func: Function of one argument
        items: Independent work units
        max_workers: Thread pool size; 1 runs inline
        label: Name used in log messages

    Raises:
        The first exception raised by ``func``, after logging which item failed.
    """
    items = list(items)
    if not items:
        return []

    if max_workers <= 1 or len(items) == 1:
        return [func(item) for item in items]

    results: Dict[int, R] = {}
    with ThreadPoolExecutor(max_workers=min(max_workers, len(items))) as executor:
        futures: Dict[Future, int] = {executor.submit(func, item): i for i, item in enumerate(items)}
        for future in as_completed(futures):
            i = futures[future]
            try:
                results[i] = future.result()
            except Exception as e:
                logger.error(f"{label} {i} failed: {e}")
                for pending in futures:
                    pending.cancel()
                raise

    logger.debug(f"Completed {len(items)} {label} units with {max_workers} workers")
    return [results[i] for i in range(len(items))]


def parallel_map_dict(
    func: Callable[[Any], R],
    groups: Mapping[Hashable, Any],
    max_workers: int = 4,
    label: str = "group",
) -> Dict[Hashable, R]:
    """Apply ``func`` to each value of a mapping, keeping its keys and order."""
    keys = list(groups.keys())
    results = parallel_map(func, [groups[k] for k in keys], max_workers=max_workers, label=label)
    return dict(zip(keys, results))
