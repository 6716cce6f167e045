"""
Lifecycle hooks around delivery

`NotificationHooks` is a plain record of four optional callables; leave any of them as None. `HookDispatcher`
calls them from whatever delivery thread is handling the message, so callbacks must be thread-safe

Callback signatures
----------
- before_send(event, ack) -> bool               return False to skip delivery (the message is still acknowledged)
- after_send(event, success, error, ack)         once per delivered or permanently failed message
- on_retry(event, attempt, max_retries)          once per retry, before the delay
- on_permanent_failure(event, error, ack)        once, before dead-letter routing

`ack` is the message's `Acknowledgment`; hooks may acknowledge early, the pipeline's own acknowledge is then a no-op
"""
import logging
from dataclasses import dataclass
from typing import Callable, Optional

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationHooks:
    before_send: Optional[Callable] = None
    after_send: Optional[Callable] = None
    on_retry: Optional[Callable] = None
    on_permanent_failure: Optional[Callable] = None


NO_HOOKS = NotificationHooks()


class HookDispatcher:
    """
    Exception-safe invocation of `NotificationHooks`

    Every callback exception is caught and logged, then the default action is taken:
    - before_send errors are fail-open: delivery proceeds. Only an explicit falsy return value vetoes a message
    - after_send / on_retry / on_permanent_failure errors are ignored
    """

    def __init__(self, hooks: Optional[NotificationHooks] = None):
        self.hooks = hooks or NO_HOOKS

    def before_send(self, event, ack) -> bool:
        callback = self.hooks.before_send
        if callback is None:
            return True
        try:
            proceed = callback(event, ack)
        except Exception:
            log.exception(f"before_send hook failed for notification {event.id}; continuing with delivery")
            return True
        return bool(proceed)

    def after_send(self, event, success: bool, error, ack):
        callback = self.hooks.after_send
        if callback is None:
            return
        try:
            callback(event, success, error, ack)
        except Exception:
            log.exception(f"after_send hook failed for notification {event.id}")

    def on_retry(self, event, attempt: int, max_retries: int):
        callback = self.hooks.on_retry
        if callback is None:
            return
        try:
            callback(event, attempt, max_retries)
        except Exception:
            log.exception(f"on_retry hook failed for notification {event.id}")

    def on_permanent_failure(self, event, error, ack):
        callback = self.hooks.on_permanent_failure
        if callback is None:
            return
        try:
            callback(event, error, ack)
        except Exception:
            log.exception(f"on_permanent_failure hook failed for notification {event.id}")
