"""
Delivery handlers and their outcomes

A handler is any object with `send(event) -> DeliveryOutcome | None`. The registry is an immutable mapping from
channel to handler, built once at startup and passed into the consumer; there is no global registration
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional, Protocol

from .models import ChannelType, NotificationEvent

log = logging.getLogger(__name__)


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass(frozen=True)
class DeliveryOutcome:
    """
    Tagged result of one delivery attempt

    - SUCCESS: the event reached the channel
    - TRANSIENT_FAILURE: worth retrying (timeouts, 5xx, rate limits)
    - PERMANENT_FAILURE: retrying cannot help (no handler, invalid event, 4xx)
    """
    kind: OutcomeKind
    error: Optional[BaseException] = None

    @classmethod
    def success(cls) -> "DeliveryOutcome":
        return cls(OutcomeKind.SUCCESS)

    @classmethod
    def transient(cls, error) -> "DeliveryOutcome":
        return cls(OutcomeKind.TRANSIENT_FAILURE, _as_exception(error))

    @classmethod
    def permanent(cls, error) -> "DeliveryOutcome":
        return cls(OutcomeKind.PERMANENT_FAILURE, _as_exception(error))

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    @property
    def retryable(self) -> bool:
        return self.kind is OutcomeKind.TRANSIENT_FAILURE


class DeliveryError(Exception):
    """Generic delivery failure carrying a human readable reason"""


class NoHandlerError(DeliveryError):
    pass


class InvalidEventError(DeliveryError):
    pass


def _as_exception(error) -> BaseException:
    if isinstance(error, BaseException):
        return error
    return DeliveryError(str(error))


class DeliveryHandler(Protocol):
    def send(self, event: NotificationEvent) -> Optional[DeliveryOutcome]:
        ...


class HandlerRegistry(Mapping):
    """
    Read-only channel -> handler mapping

    Keys may be given as `ChannelType` members or channel names; unknown names raise `UnknownChannelError`
    at construction time rather than at delivery time
    """

    def __init__(self, handlers: Optional[Mapping[Any, DeliveryHandler]] = None):
        resolved: Dict[ChannelType, DeliveryHandler] = {}
        for channel, handler in (handlers or {}).items():
            resolved[ChannelType.parse(channel)] = handler
        self._handlers = MappingProxyType(resolved)

    def __getitem__(self, channel) -> DeliveryHandler:
        return self._handlers[ChannelType.parse(channel)]

    def __iter__(self) -> Iterator[ChannelType]:
        return iter(self._handlers)

    def __len__(self) -> int:
        return len(self._handlers)

    def __repr__(self) -> str:
        names = ", ".join(c.value for c in self._handlers)
        return f"HandlerRegistry({names})"

    def send(self, event: NotificationEvent) -> DeliveryOutcome:
        """
        Run exactly one delivery attempt for `event`

        Behavior
        ----------
        - Missing handler -> PERMANENT_FAILURE(NoHandlerError)
        - `event.is_valid()` is False -> PERMANENT_FAILURE(InvalidEventError)
        - Handler returns None -> SUCCESS; returns an outcome -> that outcome
        - Handler raises -> the exception propagates; the retry engine treats it as transient
        """
        handler = self._handlers.get(event.channel)
        if handler is None:
            log.error(f"No handler registered for channel {event.channel.value}")
            return DeliveryOutcome.permanent(NoHandlerError(f"no handler registered for {event.channel.value}"))

        if not event.is_valid():
            log.error(f"Invalid notification event: {event}")
            return DeliveryOutcome.permanent(InvalidEventError(f"invalid {event.channel.value} event {event.id}"))

        outcome = handler.send(event)
        if outcome is None:
            return DeliveryOutcome.success()
        return outcome
