"""
Bounded retry with a fixed delay, and the terminal dead-letter step

State machine per message
----------
Attempting -> Succeeded                  handler returned success
Attempting -> Retrying -> Attempting     handler raised or returned a transient failure, attempts remain
Attempting -> PermanentlyFailed          retries exhausted, or the handler returned a permanent failure

Retry state (attempt count, last error) lives only for the duration of one `deliver` call; a redelivered message
starts again from zero
"""
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .hooks import HookDispatcher
from .models import NotificationEvent
from .registry import DeliveryOutcome, HandlerRegistry

log = logging.getLogger(__name__)


class RetryInterrupted(Exception):
    """The inter-retry delay was cut short by shutdown; the message is left for redelivery"""


class DeliveryState(str, Enum):
    ATTEMPTING = "attempting"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    PERMANENTLY_FAILED = "permanently_failed"


@dataclass(frozen=True)
class DeliveryReport:
    state: DeliveryState
    attempts: int
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.state is DeliveryState.SUCCEEDED


class RetryEngine:
    """
    Runs delivery attempts for one event at a time (instances are shared and stateless between calls)

    Parameters
    ----------
    registry: HandlerRegistry - performs one attempt via the channel's handler
    dispatcher: HookDispatcher - fires on_retry and on_permanent_failure
    max_retries: int - retries after the first attempt; 0 means a single attempt. Applies to every event; the
        event's own max_retries field is not consulted
    retry_delay: float - fixed seconds between attempts (not exponential)
    stop_event: threading.Event - when set, a pending delay returns early and `RetryInterrupted` is raised
    dead_letters: DeadLetterPublisher | None - when given, permanently failed events are routed there
    """

    def __init__(self, registry: HandlerRegistry, dispatcher: HookDispatcher, max_retries: int = 3,
                 retry_delay: float = 5.0, stop_event: Optional[threading.Event] = None, dead_letters=None):
        self.registry = registry
        self.dispatcher = dispatcher
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.stop_event = stop_event or threading.Event()
        self.dead_letters = dead_letters

    def retry_limit(self) -> int:
        return max(0, self.max_retries)

    def _attempt(self, event: NotificationEvent) -> DeliveryOutcome:
        try:
            return self.registry.send(event)
        except Exception as e:
            return DeliveryOutcome.transient(e)

    def deliver(self, event: NotificationEvent, ack=None, source_topic: Optional[str] = None) -> DeliveryReport:
        """
        Deliver `event` with bounded retries; on exhaustion fire on_permanent_failure and dead-letter it

        Raises
        ----------
        RetryInterrupted - shutdown interrupted a retry delay. No terminal hook has fired and the caller must not
            acknowledge the message
        """
        limit = self.retry_limit()
        attempt = 0
        last_error: Optional[BaseException] = None

        while True:
            outcome = self._attempt(event)
            attempt += 1

            if outcome.ok:
                if attempt > 1:
                    log.info(f"Notification {event.id} delivered on attempt {attempt}/{limit + 1}")
                return DeliveryReport(DeliveryState.SUCCEEDED, attempt)

            last_error = outcome.error
            if not outcome.retryable:
                log.error(f"Permanent failure for notification {event.id}: {last_error}")
                break

            log.warning(f"Attempt {attempt}/{limit + 1} failed for notification {event.id}: {last_error}")
            if attempt > limit:
                break

            self.dispatcher.on_retry(event, attempt, limit)
            if self.stop_event.wait(self.retry_delay):
                raise RetryInterrupted(f"shutdown during retry delay of notification {event.id}")

        log.error(f"Failed to process notification {event.id} after {attempt} attempt(s): {last_error}")
        self.dispatcher.on_permanent_failure(event, last_error, ack)
        if self.dead_letters is not None and source_topic is not None:
            self.dead_letters.publish(event, source_topic, error=last_error, attempts=attempt)
        return DeliveryReport(DeliveryState.PERMANENTLY_FAILED, attempt, last_error)
