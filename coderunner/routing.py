import itertools
from typing import Sequence, TypeVar

T = TypeVar("T")


class RoundRobinSelector:
    """
    Cycles an index over whatever snapshot of targets it is given.
    The target list itself is owned by the caller and may change between calls.
    """

    def __init__(self):
        self._counter = itertools.count()

    def select(self, targets: Sequence[T]) -> T:
        if not targets:
            raise LookupError("no targets to select from")
        return targets[next(self._counter) % len(targets)]
