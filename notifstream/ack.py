"""
Acknowledgment handles and the pending-acknowledgment ledger

Delivery tasks run on executor threads, but only the poll thread that owns a Kafka connection may drive it. The
ledger is the hand-off between the two: many delivery threads enqueue, the single poll thread drains

Why "next" offset?
----------
Kafka commits the offset of the *next* message your consumer should read. After you process offset N, you commit
N+1 to ack all messages up to and including N have been handled
"""
import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Tuple

from .config import AckMode

log = logging.getLogger(__name__)

PartitionKey = Tuple[str, int]


@dataclass(frozen=True)
class PartitionOffset:
    """(topic, partition) plus the next offset to commit"""
    topic: str
    partition: int
    offset: int

    @property
    def key(self) -> PartitionKey:
        return (self.topic, self.partition)


class AcknowledgmentLedger:
    """
    Multi-producer / single-consumer queue of acknowledged positions - Thread-safe

    What it does
    ----------
    - `enqueue` is called by delivery tasks (any thread) once a message is done
    - `drain` is called by the owning poll thread only. It empties the queue and folds entries by partition, keeping
      the maximum next-offset, so out-of-order completions inside one partition collapse into a single marker

    Notes
    ----------
    - A single lock guards the list; the critical sections are an append and a swap
    - `drain` swaps the list out under the lock and folds outside it, keeping producers unblocked
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: List[PartitionOffset] = []
        self.enqueued_total = 0

    def enqueue(self, topic: str, partition: int, offset: int) -> PartitionOffset:
        marker = PartitionOffset(topic, partition, offset + 1)
        with self._lock:
            self._pending.append(marker)
            self.enqueued_total += 1
        return marker

    def drain(self) -> Dict[PartitionKey, int]:
        """
        Remove every pending marker and fold them per partition

        Returns
        ----------
        Dict[(topic, partition), next_offset] - the maximum next offset seen per partition; empty if nothing pending
        """
        with self._lock:
            if not self._pending:
                return {}
            batch, self._pending = self._pending, []

        folded: Dict[PartitionKey, int] = {}
        for marker in batch:
            current = folded.get(marker.key)
            if current is None or marker.offset > current:
                folded[marker.key] = marker.offset
        return folded

    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def discard(self, keys) -> int:
        """Drop pending markers for the given (topic, partition) keys; returns how many were dropped"""
        keys = set(keys)
        with self._lock:
            kept = [m for m in self._pending if m.key not in keys]
            dropped = len(self._pending) - len(kept)
            self._pending = kept
        return dropped


# ---------- Ack handles ----------
class Acknowledgment:
    """
    One handle per consumed message; satisfied at most once

    The first `acknowledge()` wins under a lock, later calls are logged and ignored. Subclasses implement `_commit`
    according to the acknowledgment discipline. Handles are passed to hooks, which may acknowledge early; the
    pipeline's own final acknowledge then becomes a no-op
    """

    def __init__(self, topic: str, partition: int, offset: int):
        self.topic = topic
        self.partition = partition
        self.offset = offset
        self._lock = threading.Lock()
        self._acknowledged = False

    @property
    def is_acknowledged(self) -> bool:
        return self._acknowledged

    def describe(self) -> str:
        return f"topic={self.topic}, partition={self.partition}, offset={self.offset}"

    def acknowledge(self):
        with self._lock:
            if self._acknowledged:
                log.warning(f"Message {self.describe()} already acknowledged")
                return
            self._acknowledged = True
        self._commit()

    def _commit(self):
        raise NotImplementedError


class AutoAcknowledgment(Acknowledgment):
    """AUTO mode: librdkafka commits on its own, so the handle is born satisfied and acknowledging does nothing"""

    def __init__(self, topic: str, partition: int, offset: int):
        super().__init__(topic, partition, offset)
        self._acknowledged = True

    def acknowledge(self):
        return None


class DeferredAcknowledgment(Acknowledgment):
    """
    MANUAL mode: queue the position; the poll thread commits it at the top of its next iteration

    With a coordinator, the handle remembers the partition's assignment epoch and the position is dropped if the
    partition was revoked in the meantime
    """

    def __init__(self, topic: str, partition: int, offset: int, ledger: AcknowledgmentLedger, coordinator=None):
        super().__init__(topic, partition, offset)
        self.ledger = ledger
        self.coordinator = coordinator
        self.epoch = coordinator.epoch(topic, partition) if coordinator is not None else None

    def _commit(self):
        if self.coordinator is not None:
            if not self.coordinator.enqueue(self.topic, self.partition, self.offset, self.epoch):
                return
        else:
            self.ledger.enqueue(self.topic, self.partition, self.offset)
        log.debug(f"Queued acknowledgment for {self.describe()}")


class ImmediateAcknowledgment(Acknowledgment):
    """
    MANUAL_IMMEDIATE mode: commit synchronously through the owning connection's coordinator

    Commit errors propagate to the caller. The handle stays satisfied either way: the offset was not durably
    committed, so the message remains redeliverable, but this handle will not try again
    """

    def __init__(self, topic: str, partition: int, offset: int, coordinator):
        super().__init__(topic, partition, offset)
        self.coordinator = coordinator
        self.epoch = coordinator.epoch(topic, partition)

    def _commit(self):
        self.coordinator.commit_immediate(self.topic, self.partition, self.offset, epoch=self.epoch)


def create_acknowledgment(mode: AckMode, msg, ledger: AcknowledgmentLedger, coordinator) -> Acknowledgment:
    """Build the handle matching `mode` for a confluent_kafka.Message"""
    topic, partition, offset = msg.topic(), msg.partition(), msg.offset()
    if mode is AckMode.AUTO:
        return AutoAcknowledgment(topic, partition, offset)
    if mode is AckMode.MANUAL_IMMEDIATE:
        return ImmediateAcknowledgment(topic, partition, offset, coordinator)
    return DeferredAcknowledgment(topic, partition, offset, ledger, coordinator)
