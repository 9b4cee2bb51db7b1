"""Order tasks by their declared dependencies."""

from __future__ import annotations

from typing import Iterable, Mapping, Protocol, Sequence, TypeVar

from loguru import logger

from .models import DependencyMode, TaskStatus


class _Schedulable(Protocol):
    id: str
    depends_on: Sequence[str]


T = TypeVar("T", bound=_Schedulable)


def order_by_dependencies(tasks: Sequence[T]) -> tuple[list[T], set[str]]:
    """Return tasks in execution order plus the ids that could not be ordered.

    Tasks are taken in their given order, a task becoming eligible once every
    dependency that is itself in `tasks` has been placed. Dependencies on ids
    outside `tasks` do not hold back ordering. When a pass places nothing the
    remainder forms a cycle; it is appended in its given order and its ids
    are returned so callers can run those tasks regardless of dependencies.
    """
    known = {task.id for task in tasks}
    pending = list(tasks)
    placed: set[str] = set()
    ordered: list[T] = []

    while pending:
        progressed = False
        remaining: list[T] = []
        for task in pending:
            blockers = [dep for dep in task.depends_on if dep in known and dep not in placed]
            if blockers:
                remaining.append(task)
                continue
            ordered.append(task)
            placed.add(task.id)
            progressed = True
        pending = remaining
        if not progressed:
            cyclic = {task.id for task in pending}
            logger.warning(
                "Circular dependencies among {}; running them in document order",
                ", ".join(sorted(cyclic)),
            )
            ordered.extend(pending)
            return ordered, cyclic

    return ordered, set()


def dependencies_met(
    depends_on: Iterable[str],
    mode: DependencyMode,
    statuses: Mapping[str, TaskStatus],
) -> bool:
    """Check whether enough dependencies have completed for a task to start.

    Ids missing from `statuses` count as not completed.
    """
    deps = list(depends_on)
    if not deps:
        return True
    done = [dep for dep in deps if statuses.get(dep) == TaskStatus.COMPLETED]
    if mode == DependencyMode.ANY:
        return bool(done)
    return len(done) == len(deps)


def unknown_dependencies(depends_on: Iterable[str], known_ids: Iterable[str]) -> list[str]:
    known = set(known_ids)
    return [dep for dep in depends_on if dep not in known]
