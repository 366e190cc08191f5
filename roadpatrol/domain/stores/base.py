"""
Observable state container.

State is an immutable pydantic snapshot; ``set_state`` swaps in a new snapshot
and notifies listeners synchronously, in subscription order.
"""
import logging
from typing import Callable, Generic, List, TypeVar

from pydantic import BaseModel

logger = logging.getLogger(__name__)

S = TypeVar("S", bound=BaseModel)
Listener = Callable[[S], None]


class Store(Generic[S]):
    def __init__(self, initial_state: S):
        self._state = initial_state
        self._listeners: List[Listener] = []

    @property
    def state(self) -> S:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; call the returned function to unsubscribe."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_state(self, **changes) -> None:
        self._state = self._state.model_copy(update=changes)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception as e:
                logger.error(f"{type(self).__name__} listener failed: {e}")
