from __future__ import annotations

from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from threading import Event
from typing import Any, Callable, Generic, Sequence, TypeVar

from pharmacy_assistant.errors import AssistantError, UpstreamTimeout

T = TypeVar("T")

_BOUNDED_CALL_POOL = ThreadPoolExecutor(max_workers=32, thread_name_prefix="bounded-call")
_CANCEL_POLL_SECONDS = 0.05


class RequestCancelled(AssistantError):
    """The caller abandoned the request while work was still in flight."""


@dataclass(frozen=True)
class TaskOutcome(Generic[T]):
    value: T | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def call_with_timeout(
    fn: Callable[..., T],
    *args: Any,
    timeout_seconds: float,
    source: str,
    **kwargs: Any,
) -> T:
    """Run a single blocking call with a hard wait bound and no retry."""
    future = _BOUNDED_CALL_POOL.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=max(0.001, float(timeout_seconds)))
    except FuturesTimeoutError as exc:
        future.cancel()
        raise UpstreamTimeout(source, timeout_seconds) from exc


def run_parallel(
    tasks: Sequence[Callable[[], T]],
    *,
    max_workers: int = 4,
    cancel_event: Event | None = None,
    thread_name_prefix: str = "pipeline",
) -> list[TaskOutcome[T]]:
    """Run tasks concurrently and return outcomes in task order once all complete.

    Failures are captured per task. When ``cancel_event`` is set before the
    barrier is reached, pending tasks are cancelled, finished results are
    discarded and RequestCancelled is raised.
    """
    if not tasks:
        return []
    executor = ThreadPoolExecutor(
        max_workers=max(1, min(int(max_workers), len(tasks))),
        thread_name_prefix=thread_name_prefix,
    )
    futures: list[Future[T]] = []
    try:
        futures = [executor.submit(task) for task in tasks]
        pending = set(futures)
        while pending:
            if cancel_event is not None and cancel_event.is_set():
                for future in pending:
                    future.cancel()
                raise RequestCancelled("Request cancelled before retrieval completed.")
            _, pending = wait(pending, timeout=_CANCEL_POLL_SECONDS, return_when=FIRST_COMPLETED)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    outcomes: list[TaskOutcome[T]] = []
    for future in futures:
        error = future.exception()
        if error is not None:
            outcomes.append(TaskOutcome(error=error))
        else:
            outcomes.append(TaskOutcome(value=future.result()))
    return outcomes
