import logging
from typing import Any, Callable, List

logger = logging.getLogger(__name__)


class LiveValue:
    """
    Single-writer value holder that notifies observers when the value changes.
    Observers run synchronously on the writer's thread (the event loop).
    """

    def __init__(self, initial: Any = None, name: str = "value"):
        self._value = initial
        self._name = name
        self._observers: List[Callable[[Any], None]] = []

    @property
    def value(self) -> Any:
        return self._value

    def set(self, value: Any) -> bool:
        if value == self._value:
            return False
        self._value = value
        for observer in list(self._observers):
            try:
                observer(value)
            except Exception as e:
                logger.error(f"Observer of {self._name} failed: {str(e)}")
        return True

    def observe(self, observer: Callable[[Any], None]) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe():
            if observer in self._observers:
                self._observers.remove(observer)
        return unsubscribe
