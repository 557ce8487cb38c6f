"""Fire-and-forget notifications.

Listeners observe progress (status changes, batch progress, user-facing
messages). Contract: notifying NEVER affects control flow. Listener errors
are logged and swallowed; async listeners are awaited in place so ordering
is preserved, but their exceptions stay here too.
"""

import inspect
import logging
from typing import Any, Awaitable, Callable, List, Optional, Union

logger = logging.getLogger(__name__)

Listener = Callable[[str, dict], Union[None, Awaitable[None]]]


class Notifier:
    """Broadcasts named events with a payload to registered listeners."""

    def __init__(self, listeners: Optional[List[Listener]] = None):
        self._listeners: List[Listener] = list(listeners or [])

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    async def notify(self, event: str, **payload: Any) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event, payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Notification listener failed on '{event}': {e}")


async def fire_and_forget(func: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
    """Call a sync or async side effect; log and drop any error."""
    name = getattr(func, '__name__', repr(func))
    try:
        result = func(*args, **kwargs)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.warning(f"Side effect {name} failed (ignored): {e}")
