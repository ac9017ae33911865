"""
Partition worker pool and cooperative cancellation.

Window partitions and grouping levels are independent units of work. When
there are enough of them, they are dispatched to a ThreadPoolExecutor;
otherwise they run on the calling thread. Either way results come back in
the order the units were submitted, so output never depends on scheduling.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence, TypeVar

from ..config import EvaluatorConfig
from ..logging_config import configure_logger_for_debug_trace
from ..rowset_exceptions import EvaluationCancelled

logger = configure_logger_for_debug_trace(__name__)

T = TypeVar("T")
U = TypeVar("U")


class CancellationToken:
    """Cooperative cancellation signal shared by a caller and an evaluation.

    Engines check the token between partitions, grouping levels and
    recursive iterations, never in the middle of a row.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a value-object.
    ::: This is-in-process Main-Process.
    ::: This is stateful.
    """

    def __init__(self):
        self._event = threading.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        self._reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def raise_if_cancelled(self, where: str = "") -> None:
        if self._event.is_set():
            suffix = f" during {where}" if where else ""
            raise EvaluationCancelled(f"Evaluation cancelled{suffix}: {self._reason}")


def check_cancelled(token: Optional[CancellationToken], where: str = "") -> None:
    """No-op when no token was supplied."""
    if token is not None:
        token.raise_if_cancelled(where)


def run_partitions(fn: Callable[[T], U], items: Sequence[T],
                   config: EvaluatorConfig,
                   token: Optional[CancellationToken] = None,
                   label: str = "partition") -> List[U]:
    """Apply ``fn`` to every item, in parallel when it pays off.

    Results are returned in item order. The first exception raised by any
    unit propagates to the caller after the pool shuts down.
    """
    check_cancelled(token, label)

    use_pool = (
        config.parallel_enabled
        and len(items) > 1
        and len(items) >= config.parallel_min_partitions
    )
    if not use_pool:
        results = []
        for item in items:
            check_cancelled(token, label)
            results.append(fn(item))
        return results

    def guarded(item: T) -> U:
        check_cancelled(token, label)
        return fn(item)

    workers = min(config.max_workers, len(items))
    logger.debug(f"[parallel] {len(items)} {label}(s) on {workers} worker(s)")
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="rowset") as pool:
        futures = [pool.submit(guarded, item) for item in items]
        try:
            return [f.result() for f in futures]
        except BaseException:
            for f in futures:
                f.cancel()
            raise
