"""
Offset coordinator: the only component allowed to commit offsets on a Kafka connection

Commit semantics
----------
- At-least-once: a position is committed only after its handle has been acknowledged
- Per partition, committed offsets never regress. The coordinator keeps a watermark of the highest committed
  next-offset and drops anything at or below it, so late completions of older messages cannot move it backwards
- Only one commit call is in flight per connection at a time: the poll thread's batched commits and the delivery
  threads' immediate commits share one mutex, held for the commit call only
- Revoked partitions are never committed from this connection. Revocation bumps the partition's epoch, so handles
  created before it are ignored even if the partition is assigned back later
"""
import logging
import threading
from typing import Dict, Iterable, List, Optional, Set

from confluent_kafka import TopicPartition

from .ack import AcknowledgmentLedger, PartitionKey

log = logging.getLogger(__name__)


class CommitError(RuntimeError):
    """Raised by `commit_immediate` when the connection can no longer commit"""


def on_commit(err, partitions):
    """
    librdkafka commit callback (asynchronous commits issued by the poll thread)

    Behavior and notes
    ----------
    - Runs from within poll/consume on the owning thread; keep it lightweight
    - A failed commit is only logged: the offset was not stored, so the messages stay redeliverable
    """
    if err is not None:
        log.error(f"Failed to commit offsets: {err}")
        return

    failed = [p for p in partitions or [] if p.error]
    if failed:
        log.error(f"Commit rejected for {[(p.topic, p.partition, p.offset, str(p.error)) for p in failed]}")
    else:
        log.debug(f"Committed {[(p.topic, p.partition, p.offset) for p in partitions or []]}")


class OffsetCoordinator:
    """
    Owns the commit path of one consumer connection

    Fields
    ----------
    consumer: confluent_kafka.Consumer - the connection; polled by exactly one thread
    ledger: AcknowledgmentLedger - pending MANUAL acknowledgments for this connection
    name: str - used in log lines (e.g. "consumer-0")
    """

    def __init__(self, consumer, ledger: AcknowledgmentLedger, name: str = "consumer"):
        self.consumer = consumer
        self.ledger = ledger
        self.name = name
        self._commit_lock = threading.Lock()
        self._watermarks: Dict[PartitionKey, int] = {}
        self._epochs: Dict[PartitionKey, int] = {}
        self._revoked: Set[PartitionKey] = set()
        self._closed = False
        self.commit_calls = 0

    def committed(self) -> Dict[PartitionKey, int]:
        """Snapshot of the highest next-offset handed to a commit call, per partition"""
        with self._commit_lock:
            return dict(self._watermarks)

    def epoch(self, topic: str, partition: int) -> int:
        with self._commit_lock:
            return self._epochs.get((topic, partition), 0)

    def _owns(self, key: PartitionKey, epoch: Optional[int] = None) -> bool:
        # Caller holds _commit_lock
        if key in self._revoked:
            return False
        return epoch is None or self._epochs.get(key, 0) == epoch

    def enqueue(self, topic: str, partition: int, offset: int, epoch: Optional[int] = None) -> bool:
        """
        Queue an acknowledged position for the next drain (MANUAL mode); any thread

        Returns False, and queues nothing, when the partition was revoked after the handle saw `epoch`
        """
        with self._commit_lock:
            if not self._owns((topic, partition), epoch):
                log.info(f"[{self.name}] {topic}[{partition}] was revoked; dropping acknowledgment of offset {offset}")
                return False
            self.ledger.enqueue(topic, partition, offset)
        return True

    def _advance(self, folded: Dict[PartitionKey, int]) -> List[TopicPartition]:
        # Caller holds _commit_lock
        tps = []
        for (topic, partition), next_off in folded.items():
            if (topic, partition) in self._revoked:
                log.debug(f"[{self.name}] {topic}[{partition}] is not assigned; skipping offset {next_off}")
                continue
            prev = self._watermarks.get((topic, partition))
            if prev is not None and next_off <= prev:
                continue
            tps.append(TopicPartition(topic, partition, next_off))
        return tps

    def _record(self, tps: List[TopicPartition]):
        for tp in tps:
            self._watermarks[(tp.topic, tp.partition)] = tp.offset

    def drain_and_commit(self, asynchronous: bool = True) -> List[TopicPartition]:
        """
        Commit everything queued in the ledger (MANUAL mode); poll thread only

        Behavior
        ----------
        1. Drain the ledger (non-blocking); it already folds to the max next-offset per partition
        2. Drop partitions whose watermark is already at or beyond that offset
        3. Issue one commit covering every remaining partition (asynchronous by default; results reach `on_commit`)

        Errors are logged, never raised, so a commit failure cannot stop the poll loop

        Returns
        ----------
        List[TopicPartition] - what was handed to the commit call (empty if nothing was due)
        """
        folded = self.ledger.drain()
        if not folded:
            return []

        with self._commit_lock:
            if self._closed:
                log.warning(f"[{self.name}] connection closed; dropping {len(folded)} pending commits")
                return []
            tps = self._advance(folded)
            if not tps:
                return []
            try:
                self.consumer.commit(offsets=tps, asynchronous=asynchronous)
                self.commit_calls += 1
            except Exception as e:
                log.error(f"[{self.name}] Commit failed: {e}")
                return []
            self._record(tps)

        log.debug(f"[{self.name}] Committed: {[(tp.topic, tp.partition, tp.offset) for tp in tps]}")
        return tps

    def commit_immediate(self, topic: str, partition: int, offset: int,
                         epoch: Optional[int] = None) -> List[TopicPartition]:
        """
        Synchronously commit `offset + 1` for one partition (MANUAL_IMMEDIATE mode); any thread

        Raises
        ----------
        CommitError - if the connection is already closed
        confluent_kafka.KafkaException - if the broker rejects the commit
        """
        with self._commit_lock:
            if self._closed:
                raise CommitError(f"{self.name} is closed; offset {offset} of {topic}[{partition}] not committed")
            if not self._owns((topic, partition), epoch):
                log.info(f"[{self.name}] {topic}[{partition}] was revoked; not committing offset {offset}")
                return []
            tps = self._advance({(topic, partition): offset + 1})
            if not tps:
                log.debug(f"[{self.name}] {topic}[{partition}] already committed past offset {offset}")
                return []
            self.consumer.commit(offsets=tps, asynchronous=False)
            self.commit_calls += 1
            self._record(tps)
        return tps

    def flush(self) -> List[TopicPartition]:
        """Final synchronous drain-and-commit, used on shutdown and partition revocation"""
        return self.drain_and_commit(asynchronous=False)

    def assign(self, partitions: Iterable[TopicPartition]):
        """Mark partitions as owned again after an assignment"""
        with self._commit_lock:
            for tp in partitions:
                self._revoked.discard((tp.topic, tp.partition))

    def forget(self, partitions: Iterable[TopicPartition]):
        """
        Stop committing revoked partitions

        Drops their watermarks and queued positions and bumps their epoch; a later re-assignment starts from the
        broker's committed offset
        """
        with self._commit_lock:
            keys = {(tp.topic, tp.partition) for tp in partitions}
            for key in keys:
                self._watermarks.pop(key, None)
                self._epochs[key] = self._epochs.get(key, 0) + 1
            self._revoked.update(keys)
            dropped = self.ledger.discard(keys)
        if dropped:
            log.info(f"[{self.name}] Dropped {dropped} queued acknowledgments of revoked partitions")

    def close(self):
        """Close the underlying connection; later commits are refused"""
        with self._commit_lock:
            if self._closed:
                return
            self._closed = True
        self.consumer.close()
        log.info(f"[{self.name}] Consumer closed.")
