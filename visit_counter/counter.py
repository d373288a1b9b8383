import logging
from typing import NamedTuple

from .store import Store, StoreError, parse_count

logger = logging.getLogger(__name__)

KEY = "visits"


class InitializationError(Exception):
    pass


class Visit(NamedTuple):
    previous: int
    current: int


class CounterService:
    """
    A single named counter living in an external store.

    In the default mode the increment is a plain read-then-write: two
    requests racing each other can read the same value and one increment
    is lost. With atomic=True the store's own increment primitive is used.
    """

    def __init__(self, store: Store, key: str = KEY,
                 atomic: bool = False, reset_on_start: bool = True):
        self.store = store
        self.key = key
        self.atomic = atomic
        self.reset_on_start = reset_on_start

    def initialize(self) -> None:
        try:
            if self.reset_on_start:
                self.store.set(self.key, "0")
                logger.info("counter %r reset to 0", self.key)
            elif self.store.set_if_absent(self.key, "0"):
                logger.info("counter %r initialized to 0", self.key)
            else:
                logger.info("counter %r already present, keeping it", self.key)
        except StoreError as e:
            raise InitializationError(f"could not initialize counter {self.key!r}: {e}") from e

    def increment_and_get(self) -> Visit:
        if self.atomic:
            v = self.store.incr(self.key)
            return Visit(v - 1, v)

        previous = parse_count(self.store.get(self.key))
        current = previous + 1
        self.store.set(self.key, str(current))
        return Visit(previous, current)
