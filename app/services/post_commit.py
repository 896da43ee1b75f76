"""
Best-effort work that runs after the ledger transaction committed.

Tasks run in the order they were added, each isolated: an exception or a False
return is logged and the next task still runs. Nothing here is retried and
nothing here can reverse a ledger write.
"""
import logging
from typing import Any, Callable, List, Tuple

logger = logging.getLogger(__name__)


class PostCommitTasks:
    def __init__(self) -> None:
        self._tasks: List[Tuple[str, Callable[[], Any]]] = []

    def add(self, name: str, fn: Callable[[], Any]) -> None:
        self._tasks.append((name, fn))

    def __len__(self) -> int:
        return len(self._tasks)

    @property
    def names(self) -> List[str]:
        return [name for name, _ in self._tasks]

    def run(self) -> List[Tuple[str, bool]]:
        """Execute and drain the queue. Returns (name, succeeded) per task."""
        tasks, self._tasks = self._tasks, []
        results = []
        for name, fn in tasks:
            try:
                ok = fn() is not False
                if not ok:
                    logger.warning("Post-commit task %s reported failure", name)
            except Exception:
                logger.exception("Post-commit task %s failed", name)
                ok = False
            results.append((name, ok))
        return results
