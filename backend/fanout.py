from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple

DEFAULT_MAX_WORKERS = 6


@dataclass
class Outcome:
    label: str
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def settle_all(
    tasks: Sequence[Tuple[str, Callable[[], Any]]],
    max_workers: int = DEFAULT_MAX_WORKERS,
) -> List[Outcome]:
    """Run every task concurrently and wait for all of them to finish.

    A failing task never cancels its siblings. One outcome is returned per
    task, in submission order.
    """
    if not tasks:
        return []

    worker_count = max(1, min(max_workers, len(tasks)))
    with ThreadPoolExecutor(max_workers=worker_count) as executor:
        futures = [executor.submit(task) for _, task in tasks]
        wait(futures)

    outcomes: List[Outcome] = []
    for (label, _), future in zip(tasks, futures):
        error = future.exception()
        if error is not None:
            outcomes.append(Outcome(label=label, error=error))
        else:
            outcomes.append(Outcome(label=label, value=future.result()))
    return outcomes


def failures(outcomes: Sequence[Outcome]) -> List[Outcome]:
    return [outcome for outcome in outcomes if not outcome.ok]
