"""
Synchronous notification center used by engines to announce progress.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

WILL_EXECUTE_COMMAND = "will-execute-command"
DID_END = "did-end"
DID_PAUSE = "did-pause"
DID_RESUME = "did-resume"


@dataclass
class Notification:
    topic: str
    subject: Any = None
    info: Dict[str, Any] = field(default_factory=dict)


@dataclass(eq=False)
class _Observer:
    topic: str
    handler: Callable[[Notification], Any]
    subject: Any = None


class NotificationCenter:
    """Delivers posted notifications to subscribers in subscription order.

    A subscription may be narrowed to a single subject (compared by identity).
    Delivery happens synchronously inside post().
    """

    default: 'NotificationCenter'

    def __init__(self):
        self._observers: List[_Observer] = []

    def subscribe(self, topic: str, handler: Callable[[Notification], Any], subject: Any = None) -> Callable[[], None]:
        """Registers handler for topic; returns a function that removes the subscription."""
        observer = _Observer(topic, handler, subject)
        self._observers.append(observer)

        def unsubscribe():
            try:
                self._observers.remove(observer)
            except ValueError:
                pass
        return unsubscribe

    def post(self, topic: str, subject: Any = None, **info) -> Notification:
        note = Notification(topic, subject, info)
        # Handlers may unsubscribe while we deliver
        for observer in list(self._observers):
            if observer.topic != topic:
                continue
            if observer.subject is not None and observer.subject is not subject:
                continue
            observer.handler(note)
        return note

    def observer_count(self, topic: Optional[str] = None) -> int:
        if topic is None:
            return len(self._observers)
        return sum(1 for o in self._observers if o.topic == topic)


NotificationCenter.default = NotificationCenter()
