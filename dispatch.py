# Swarmbatch dispatch queue
# The "commands" channel: a bounded FIFO of serialized entries between the
# scheduling tick (producer) and the controller (consumer).
#
# Full queue = backpressure, never overwrite. Empty read = NULL_PORT_DATA,
# never an error. Entries are a closed tagged variant:
#
#   {"type": "placement", "kind", "target", "hostname", "threadCount", "delayMs"}
#   {"type": "control", "signal": "stop" | "reset"}

import json
import logging
import threading
import time
from collections import deque
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

log = logging.getLogger("swarmbatch")

COMMANDS = "commands"
NULL_PORT_DATA = "NULL PORT DATA"
DEFAULT_CAPACITY = 50


class QueueUnavailableError(RuntimeError):
    """The queue is closed. Tick-fatal for the producer."""


class InvalidEntryError(ValueError):
    """Entry is not valid JSON or fails the schema for its tag."""


class UnknownEntryError(ValueError):
    """Entry carries a tag this build does not know."""

    def __init__(self, tag):
        super().__init__(f"Unknown entry type: {tag!r}")
        self.tag = tag


# ── Wire models ───────────────────────────────────────────────────────


class PlacementEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["placement"] = "placement"
    kind: Literal["hack", "weaken", "grow", "share"]
    target: str = Field(min_length=1)
    hostname: str = Field(min_length=1)
    threadCount: int = Field(gt=0)
    delayMs: int = Field(ge=0)
    costPerThread: int = Field(default=0, ge=0)
    stage: str = ""
    batchId: str = ""

    @property
    def total_cost(self) -> int:
        return self.threadCount * self.costPerThread


class ControlEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["control"] = "control"
    signal: Literal["stop", "reset"]


Entry = Annotated[Union[PlacementEntry, ControlEntry], Field(discriminator="type")]
_ENTRY_ADAPTER = TypeAdapter(Entry)
ENTRY_TYPES = ("placement", "control")


def encode_placement(placement):
    """Placement -> wire string."""
    req = placement.request
    return PlacementEntry(
        kind=req.kind.value,
        target=req.target,
        hostname=placement.hostname,
        threadCount=req.thread_count,
        delayMs=req.delay_ms,
        costPerThread=req.cost_per_thread,
        stage=req.stage.value,
        batchId=req.batch_id,
    ).model_dump_json()


def encode_control(signal):
    return ControlEntry(signal=signal).model_dump_json()


def decode_entry(raw):
    """
    Wire string -> PlacementEntry | ControlEntry.
    Raises UnknownEntryError for unknown tags, InvalidEntryError for the rest.
    """
    try:
        data = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise InvalidEntryError(f"Entry is not JSON: {str(raw)[:100]!r}") from e
    if not isinstance(data, dict):
        raise InvalidEntryError(f"Entry is not an object: {str(raw)[:100]!r}")
    tag = data.get("type")
    if tag not in ENTRY_TYPES:
        raise UnknownEntryError(tag)
    try:
        return _ENTRY_ADAPTER.validate_python(data)
    except ValidationError as e:
        raise InvalidEntryError(f"{tag} entry failed validation: {e.errors()}") from e


# ── Queue ─────────────────────────────────────────────────────────────


class DispatchQueue:
    """
    Bounded, thread-safe FIFO of wire strings.
    One producer side (write), one consumer side (read). Both may be called
    from different threads at once.
    """

    def __init__(self, capacity=DEFAULT_CAPACITY, name=COMMANDS, sleep=time.sleep):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.name = name
        self.capacity = capacity
        self._sleep = sleep
        self._items = deque()
        self._lock = threading.Lock()
        self._closed = False
        self.metrics = {
            "written": 0,
            "read": 0,
            "backpressure": 0,
            "dropped": 0,
            "cleared": 0,
        }

    def __len__(self):
        with self._lock:
            return len(self._items)

    @property
    def fill_level(self) -> float:
        return len(self) / self.capacity

    def is_full(self) -> bool:
        return len(self) >= self.capacity

    def is_empty(self) -> bool:
        return len(self) == 0

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self):
        with self._lock:
            self._closed = True

    def reopen(self):
        with self._lock:
            self._closed = False

    def try_write(self, raw) -> bool:
        """Append if there is room. False (and a backpressure count) if full."""
        with self._lock:
            if self._closed:
                raise QueueUnavailableError(f"queue {self.name} is closed")
            if len(self._items) >= self.capacity:
                self.metrics["backpressure"] += 1
                return False
            self._items.append(raw)
            self.metrics["written"] += 1
            return True

    def write_with_retry(self, raw, retries=5, base_delay=0.05) -> bool:
        """
        Bounded retry with exponential backoff. On exhaustion the entry is
        dropped, counted, and logged. Never blocks longer than
        base_delay * (2**(retries-1) - 1) in total.
        """
        delay = base_delay
        for attempt in range(retries):
            if self.try_write(raw):
                if attempt > 0:
                    log.debug("ENQUEUED queue=%s attempt=%d/%d", self.name, attempt + 1, retries)
                return True
            if attempt < retries - 1:
                self._sleep(delay)
                delay *= 2
        with self._lock:
            self.metrics["dropped"] += 1
        log.warning("DROPPED queue=%s after %d attempts (capacity %d full)", self.name, retries, self.capacity)
        return False

    def read(self):
        """Pop the oldest entry, or NULL_PORT_DATA if there is none."""
        with self._lock:
            if self._closed:
                raise QueueUnavailableError(f"queue {self.name} is closed")
            if not self._items:
                return NULL_PORT_DATA
            self.metrics["read"] += 1
            return self._items.popleft()

    def peek(self):
        with self._lock:
            return self._items[0] if self._items else NULL_PORT_DATA

    def clear(self) -> int:
        """Drop everything buffered. Returns how many entries went."""
        with self._lock:
            n = len(self._items)
            self._items.clear()
            self.metrics["cleared"] += n
            return n

    def entries(self):
        """Copy of buffered entries, oldest first."""
        with self._lock:
            return list(self._items)

    def status(self) -> dict:
        with self._lock:
            depth = len(self._items)
            return {
                "name": self.name,
                "depth": depth,
                "capacity": self.capacity,
                "fill_level": round(depth / self.capacity, 4),
                "closed": self._closed,
                **self.metrics,
            }
