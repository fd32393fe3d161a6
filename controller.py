# Swarmbatch controller
# Drains the commands queue and turns placements into running workers.
#
# Placement lifecycle:   queued → validating → launched | rejected
#
# Validation happens right before launch, against the live fleet: the
# placement was decided on a snapshot that may be seconds old. Rejected
# placements are never retried. The next tick plans fresh ones.

import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum

from dispatch import (
    NULL_PORT_DATA,
    ControlEntry,
    InvalidEntryError,
    QueueUnavailableError,
    UnknownEntryError,
    decode_entry,
)

log = logging.getLogger("swarmbatch")


class PlacementState(str, Enum):
    QUEUED = "queued"
    VALIDATING = "validating"
    LAUNCHED = "launched"    # Terminal: worker is running, we stop watching
    REJECTED = "rejected"    # Terminal: discarded, superseded by the next tick


VALID_TRANSITIONS = {
    PlacementState.QUEUED: {PlacementState.VALIDATING, PlacementState.REJECTED},
    PlacementState.VALIDATING: {PlacementState.LAUNCHED, PlacementState.REJECTED},
    PlacementState.LAUNCHED: set(),
    PlacementState.REJECTED: set(),
}


class RejectReason(str, Enum):
    """The precondition that failed. Logged and counted, one per rejection."""
    NODE_MISSING = "node_missing"
    NODE_NOT_ROOTED = "node_not_rooted"
    DEPLOY_FAILED = "deploy_failed"
    INSUFFICIENT_CAPACITY = "insufficient_capacity"
    LAUNCH_REFUSED = "launch_refused"
    LAUNCH_ERROR = "launch_error"
    INVALID_ENTRY = "invalid_entry"
    UNKNOWN_ENTRY = "unknown_entry"


@dataclass
class LaunchOutcome:
    entry: object = None
    state: PlacementState = PlacementState.QUEUED
    reason: RejectReason = None
    pid: int = 0
    detail: str = ""
    history: list = field(default_factory=lambda: [PlacementState.QUEUED])

    def transition(self, new_state):
        if new_state not in VALID_TRANSITIONS[self.state]:
            raise ValueError(f"Invalid transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)
        return self

    @property
    def launched(self) -> bool:
        return self.state == PlacementState.LAUNCHED


class Controller:
    """
    Owns every launch. One instance per run, driven by run() on its own thread
    or by step() from tests.
    """

    def __init__(self, config, inventory, queue, launcher=None):
        self.config = config
        self.inventory = inventory
        self.queue = queue
        self.launcher = launcher or inventory.fleet
        self._deployed = defaultdict(set)  # hostname -> binaries known present
        self._lock = threading.Lock()
        self.launched = defaultdict(list)  # hostname -> [pid, ...]
        self.poll_ms = config.controller_poll_ms
        self.consecutive_errors = 0
        self.stopped = False
        self.metrics = {
            "processed": 0,
            "launched": 0,
            "rejected": 0,
            "threads_launched": 0,
            "control_signals": 0,
            "launches_pruned": 0,
            "rejections": {r.value: 0 for r in RejectReason},
            "started_at": time.time(),
            "last_entry_at": 0.0,
        }

    # -- per entry --

    def handle(self, raw):
        """
        Decode and act on one wire entry.
        Returns a LaunchOutcome for placements and rejects, the ControlEntry for signals.
        """
        self.metrics["processed"] += 1
        self.metrics["last_entry_at"] = time.time()
        try:
            entry = decode_entry(raw)
        except UnknownEntryError as e:
            log.error("REJECTED reason=%s tag=%r", RejectReason.UNKNOWN_ENTRY.value, e.tag)
            return self._reject(LaunchOutcome(), RejectReason.UNKNOWN_ENTRY, str(e))
        except InvalidEntryError as e:
            log.error("REJECTED reason=%s err=%s", RejectReason.INVALID_ENTRY.value, e)
            return self._reject(LaunchOutcome(), RejectReason.INVALID_ENTRY, str(e))

        if isinstance(entry, ControlEntry):
            return self._control(entry)
        return self.execute(entry)

    def _control(self, entry):
        self.metrics["control_signals"] += 1
        if entry.signal == "stop":
            log.info("CONTROL stop received, controller stops draining")
            self.stopped = True
        elif entry.signal == "reset":
            log.info("CONTROL reset received, deploy cache cleared")
            self.reset_cache()
        return entry

    def execute(self, entry):
        """Validate a placement against the live fleet and launch it."""
        outcome = LaunchOutcome(entry=entry)
        outcome.transition(PlacementState.VALIDATING)
        host = entry.hostname
        path = self.config.binaries.get(entry.kind)
        cost_per_thread = entry.costPerThread or self.config.cost_for(entry.kind)
        need = entry.threadCount * cost_per_thread

        node = self.inventory.lookup(host)
        if node is None:
            return self._reject(outcome, RejectReason.NODE_MISSING, f"host={host}")
        if not node.rooted:
            return self._reject(outcome, RejectReason.NODE_NOT_ROOTED, f"host={host}")

        if not self._ensure_binary(host, path):
            return self._reject(outcome, RejectReason.DEPLOY_FAILED, f"host={host} binary={path}")

        if node.free_capacity < need:
            return self._reject(
                outcome, RejectReason.INSUFFICIENT_CAPACITY,
                f"host={host} need={need} free={node.free_capacity}",
            )

        if entry.kind == "share":
            args = [entry.delayMs]
        else:
            args = [entry.target, entry.delayMs]

        try:
            pid = self.launcher.launch(path, host, entry.threadCount, *args)
        except Exception as e:
            log.error("LAUNCH ERROR kind=%s host=%s err=%s", entry.kind, host, e, exc_info=True)
            return self._reject(outcome, RejectReason.LAUNCH_ERROR, str(e))

        if not pid:
            # Binary may have vanished under us. Check again next time.
            self._deployed[host].discard(path)
            return self._reject(
                outcome, RejectReason.LAUNCH_REFUSED,
                f"host={host} threads={entry.threadCount} need={need}",
            )

        outcome.pid = pid
        outcome.transition(PlacementState.LAUNCHED)
        with self._lock:
            self.launched[host].append(pid)
        self.metrics["launched"] += 1
        self.metrics["threads_launched"] += entry.threadCount
        self.consecutive_errors = 0
        self.poll_ms = self.config.controller_poll_ms
        if self.config.debug:
            log.debug(
                "LAUNCHED kind=%s target=%s host=%s threads=%d delay=%dms pid=%d",
                entry.kind, entry.target, host, entry.threadCount, entry.delayMs, pid,
            )
        return outcome

    def _ensure_binary(self, host, path):
        """Deploy once, then trust the cache. One deploy attempt per miss."""
        if path is None:
            return False
        if path in self._deployed[host]:
            return True
        try:
            present = self.inventory.has_binary(host, path)
            if not present:
                present = self.inventory.deploy(path, host)
                if present:
                    log.info("DEPLOYED binary=%s host=%s", path, host)
        except Exception as e:
            log.error("DEPLOY ERROR binary=%s host=%s err=%s", path, host, e)
            return False
        if present:
            self._deployed[host].add(path)
        return present

    def _reject(self, outcome, reason, detail=""):
        outcome.transition(PlacementState.REJECTED)
        outcome.reason = reason
        outcome.detail = detail
        self.metrics["rejected"] += 1
        self.metrics["rejections"][reason.value] += 1
        self.consecutive_errors += 1
        entry = outcome.entry
        if entry is not None:
            log.warning(
                "REJECTED reason=%s kind=%s target=%s %s",
                reason.value, entry.kind, entry.target, detail,
            )

        if self.consecutive_errors >= self.config.controller_backoff_errors:
            self.poll_ms = min(self.poll_ms * 2, self.config.controller_max_poll_ms)
            log.warning("%d consecutive rejections, poll backoff to %dms",
                        self.consecutive_errors, self.poll_ms)
            self.consecutive_errors = 0
        return outcome

    # -- loop --

    def step(self):
        """
        Handle at most one entry. Returns the outcome, or None if the queue
        was empty.
        """
        raw = self.queue.read()
        if raw == NULL_PORT_DATA:
            return None
        return self.handle(raw)

    def drain(self, limit=None):
        """Handle entries until the queue is empty (or limit reached). Returns outcomes."""
        outcomes = []
        while limit is None or len(outcomes) < limit:
            outcome = self.step()
            if outcome is None:
                break
            outcomes.append(outcome)
            if self.stopped:
                break
        return outcomes

    def run(self, stop_event):
        """
        Drain forever. Sleeps only when idle or backing off; every sleep is
        an interruptible wait on stop_event.
        """
        log.info("CONTROLLER STARTED queue=%s poll=%dms", self.queue.name, self.poll_ms)
        self.stopped = False
        last_prune = time.monotonic()
        while not stop_event.is_set() and not self.stopped:
            try:
                outcome = self.step()
            except QueueUnavailableError as e:
                log.error("CONTROLLER queue unavailable: %s", e)
                stop_event.wait(self.config.fatal_backoff)
                continue
            except Exception as e:
                log.error("CONTROLLER loop error: %s", e, exc_info=True)
                self.consecutive_errors += 1
                stop_event.wait(self.poll_ms / 1000)
                continue

            if time.monotonic() - last_prune >= self.config.launch_prune_interval:
                self.prune_launches()
                last_prune = time.monotonic()

            if outcome is None or (isinstance(outcome, LaunchOutcome) and not outcome.launched):
                stop_event.wait(self.poll_ms / 1000)
        if self.stopped:
            # A stop signal ends the whole system, not just this loop.
            stop_event.set()
        log.info("CONTROLLER STOPPED launched=%d rejected=%d",
                 self.metrics["launched"], self.metrics["rejected"])

    # -- state --

    def reset_cache(self):
        self._deployed.clear()

    def forget_launches(self):
        with self._lock:
            n = sum(len(p) for p in self.launched.values())
            self.launched.clear()
        return n

    def running_launches(self):
        with self._lock:
            return sum(len(p) for p in self.launched.values())

    def prune_launches(self):
        """
        Drop tracked pids the fleet no longer reports. Hosts that cannot be
        listed keep their pids until the next pass. Returns how many went.
        """
        with self._lock:
            hosts = list(self.launched)
        pruned = 0
        for host in hosts:
            try:
                live = {p["pid"] for p in self.inventory.fleet.processes(host)}
            except Exception as e:
                log.warning("PRUNE SKIPPED host=%s err=%s", host, e)
                continue
            with self._lock:
                before = self.launched.get(host, [])
                kept = [pid for pid in before if pid in live]
                pruned += len(before) - len(kept)
                if kept:
                    self.launched[host] = kept
                else:
                    self.launched.pop(host, None)
        self.metrics["launches_pruned"] += pruned
        if pruned:
            log.debug("PRUNED launches=%d tracked=%d", pruned, self.running_launches())
        return pruned

    def status(self):
        processed = self.metrics["processed"]
        return {
            **{k: v for k, v in self.metrics.items() if k != "rejections"},
            "rejections": dict(self.metrics["rejections"]),
            "success_rate": round(self.metrics["launched"] / processed, 4) if processed else 0.0,
            "poll_ms": self.poll_ms,
            "tracked_launches": self.running_launches(),
        }
