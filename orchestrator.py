# Swarmbatch orchestrator
# The scheduling tick and the two loops that run the system:
#
#   tick loop        refresh inventory → pick targets → plan batches →
#                    pack everything at once → enqueue placements
#   controller loop  drain the queue → validate → launch
#
# Each loop runs on its own thread and only yields between ticks. The
# dispatch queue is the only thing they share.

import logging
import threading
import time
from dataclasses import asdict, dataclass, field

from controller import Controller
from dispatch import DispatchQueue, QueueUnavailableError, encode_placement
from inventory import NodeInventory, TopologyError
from packer import Packer
from planner import BatchPlanner, select_targets

log = logging.getLogger("swarmbatch")

SUMMARY_EVERY_TICKS = 10


@dataclass
class TickReport:
    tick: int = 0
    started_at: float = field(default_factory=time.time)
    duration_ms: float = 0.0
    targets: list = field(default_factory=list)
    batches_planned: int = 0
    batches_skipped: int = 0
    requests_planned: int = 0
    placed: int = 0
    unplaceable: int = 0
    unmet_demand: int = 0
    placement_rate: float = 1.0
    share_placed: int = 0
    enqueued: int = 0
    dropped: int = 0
    fatal: str = ""

    def to_dict(self):
        return asdict(self)


@dataclass
class KillReport:
    queue_cleared: int = 0
    processes_killed: int = 0
    hosts_cleaned: int = 0
    host_errors: list = field(default_factory=list)
    remaining: int = 0
    forgotten_launches: int = 0

    def to_dict(self):
        return asdict(self)


class Scheduler:
    """Planner + packer, one tick at a time, producing into the queue."""

    def __init__(self, config, inventory, planner, packer, queue):
        self.config = config
        self.inventory = inventory
        self.planner = planner
        self.packer = packer
        self.queue = queue
        self.last_report = None
        self.metrics = {
            "ticks": 0,
            "fatal_ticks": 0,
            "errors": 0,
            "requests_planned": 0,
            "placed": 0,
            "unplaceable": 0,
            "unmet_demand": 0,
            "enqueued": 0,
            "dropped": 0,
            "batches_skipped": 0,
            "started_at": time.time(),
        }

    def tick(self):
        """
        One scheduling pass. Per-item problems are counted and skipped.
        TopologyError and QueueUnavailableError propagate: the tick is lost.
        """
        self.metrics["ticks"] += 1
        report = TickReport(tick=self.metrics["ticks"])
        t0 = time.monotonic()

        snapshot = self.inventory.refresh()
        if self.queue.closed:
            raise QueueUnavailableError(f"queue {self.queue.name} is closed")

        player = self.inventory.fleet.player()
        capacity = snapshot.working_capacity()
        total_free = sum(capacity.values())

        targets = select_targets(
            snapshot.records, player, self.config.max_targets,
            exclude={self.config.home_hostname},
        )
        report.targets = [t.hostname for t in targets]

        requests = []
        for target in targets:
            fraction = self.planner.choose_fraction(target, player, capacity_limit=total_free)
            plan = self.planner.plan(target, player, fraction=fraction)
            if plan.skipped:
                report.batches_skipped += 1
                continue
            report.batches_planned += 1
            requests.extend(plan.requests)
        report.requests_planned = len(requests)

        result = self.packer.pack(requests, capacity)
        placements = list(result.placements)
        report.placed = result.placed
        report.unplaceable = len(result.unplaceable)
        report.unmet_demand = result.unmet_demand
        report.placement_rate = round(result.placement_rate, 4)

        for u in result.unplaceable:
            log.warning(
                "UNPLACEABLE kind=%s target=%s threads=%d cost=%d largest_free=%d",
                u.request.kind.value, u.request.target, u.request.thread_count,
                u.unmet_demand, u.largest_free,
            )

        if self.config.share_ratio > 0:
            share = self.planner.plan_share(result.remaining)
            share_result = self.packer.pack(share, result.remaining)
            placements.extend(share_result.placements)
            report.share_placed = share_result.placed

        self._enqueue(placements, report)

        report.duration_ms = round((time.monotonic() - t0) * 1000, 2)
        self._record(report)
        return report

    def _enqueue(self, placements, report):
        """FIFO into the queue. After the first drop, the rest of the tick is dropped too."""
        saturated = False
        for placement in placements:
            if saturated:
                report.dropped += 1
                continue
            ok = self.queue.write_with_retry(
                encode_placement(placement),
                retries=self.config.enqueue_retries,
                base_delay=self.config.enqueue_base_delay,
            )
            if ok:
                report.enqueued += 1
            else:
                report.dropped += 1
                saturated = True
        if saturated:
            log.warning(
                "DISPATCH BACKPRESSURE queue=%s dropped=%d of %d placements this tick",
                self.queue.name, report.dropped, len(placements),
            )

    def _record(self, report):
        self.last_report = report
        m = self.metrics
        m["requests_planned"] += report.requests_planned
        m["placed"] += report.placed
        m["unplaceable"] += report.unplaceable
        m["unmet_demand"] += report.unmet_demand
        m["enqueued"] += report.enqueued
        m["dropped"] += report.dropped
        m["batches_skipped"] += report.batches_skipped

        if report.unplaceable:
            log.info(
                "TICK %d placed=%d/%d rate=%.2f unmet=%d",
                report.tick, report.placed, report.requests_planned,
                report.placement_rate, report.unmet_demand,
            )
        if report.tick % SUMMARY_EVERY_TICKS == 0:
            log.info(
                "SUMMARY ticks=%d placed=%d/%d enqueued=%d dropped=%d fatal=%d",
                m["ticks"], m["placed"], m["requests_planned"], m["enqueued"],
                m["dropped"], m["fatal_ticks"],
            )

    def placement_rate(self):
        planned = self.metrics["requests_planned"]
        return self.metrics["placed"] / planned if planned else 1.0

    def run(self, stop_event):
        """Tick until stopped. Target period tick_interval, never less than min_tick_sleep between ticks."""
        log.info("SCHEDULER STARTED interval=%.1fs max_targets=%d",
                 self.config.tick_interval, self.config.max_targets)
        while not stop_event.is_set():
            t0 = time.monotonic()
            try:
                self.tick()
            except (TopologyError, QueueUnavailableError) as e:
                self.metrics["fatal_ticks"] += 1
                self.last_report = TickReport(tick=self.metrics["ticks"], fatal=str(e))
                log.error("TICK FATAL %s: %s", type(e).__name__, e)
                stop_event.wait(self.config.fatal_backoff)
                continue
            except Exception as e:
                self.metrics["errors"] += 1
                log.error("TICK ERROR: %s", e, exc_info=True)
                stop_event.wait(self.config.fatal_backoff)
                continue
            elapsed = time.monotonic() - t0
            stop_event.wait(max(self.config.min_tick_sleep, self.config.tick_interval - elapsed))
        log.info("SCHEDULER STOPPED ticks=%d", self.metrics["ticks"])


# ── Kill ──────────────────────────────────────────────────────────────


def global_kill(fleet, queue=None, known_hosts=()):
    """
    Clear the queue and kill every worker on every node. Safe to run on a
    stopped system, safe to run twice.
    """
    report = KillReport()
    if queue is not None:
        report.queue_cleared = queue.clear()

    try:
        hosts = [r.hostname for r in fleet.list_nodes()]
    except Exception as e:
        log.error("KILL topology scan failed, using last known hosts: %s", e)
        hosts = list(known_hosts)

    for host in hosts:
        try:
            procs = fleet.processes(host)
            if not procs:
                continue
            if fleet.kill_all(host):
                report.processes_killed += len(procs)
                report.hosts_cleaned += 1
            else:
                report.host_errors.append(host)
                log.warning("KILL FAILED host=%s processes=%d", host, len(procs))
        except Exception as e:
            report.host_errors.append(host)
            log.error("KILL ERROR host=%s err=%s", host, e)

    for host in hosts:
        try:
            report.remaining += len(fleet.processes(host))
        except Exception:
            log.debug("KILL recount skipped host=%s", host)

    log.info(
        "GLOBAL KILL cleared=%d killed=%d hosts=%d remaining=%d",
        report.queue_cleared, report.processes_killed, report.hosts_cleaned, report.remaining,
    )
    return report


# ── System ────────────────────────────────────────────────────────────


class System:
    """Everything wired together. start() boots both loops, kill() resets the lot."""

    def __init__(self, config, fleet):
        self.config = config
        self.fleet = fleet
        self.inventory = NodeInventory(fleet, config)
        self.planner = BatchPlanner(config)
        self.packer = Packer()
        self.queue = DispatchQueue(capacity=config.queue_capacity)
        self.controller = Controller(config, self.inventory, self.queue)
        self.scheduler = Scheduler(config, self.inventory, self.planner, self.packer, self.queue)
        self._stop = threading.Event()
        self._threads = []
        self._lock = threading.Lock()

    @property
    def running(self):
        return any(t.is_alive() for t in self._threads)

    def start(self):
        """Boot scheduler + controller. Refuses to boot on config errors."""
        errors, warnings = self.config.validate()
        for w in warnings:
            log.warning("CONFIG %s", w)
        if errors:
            for e in errors:
                log.error("CONFIG %s", e)
            raise ValueError("Invalid configuration: " + "; ".join(errors))

        with self._lock:
            if self._threads and all(t.is_alive() for t in self._threads):
                log.info("SYSTEM already running")
                return self._threads
            if self.running:
                log.warning("SYSTEM half stopped, restarting both loops")
                self.stop()
            self._stop.clear()
            self.queue.reopen()
            self.queue.clear()
            self._threads = [
                threading.Thread(target=self.controller.run, args=(self._stop,),
                                 name="controller", daemon=True),
                threading.Thread(target=self.scheduler.run, args=(self._stop,),
                                 name="scheduler", daemon=True),
            ]
            for t in self._threads:
                t.start()
        log.info("SYSTEM STARTED queue_capacity=%d gap=%dms",
                 self.config.queue_capacity, self.config.batch_gap_ms)
        return self._threads

    def stop(self, timeout=5.0):
        self._stop.set()
        for t in self._threads:
            t.join(timeout)
        self._threads = [t for t in self._threads if t.is_alive()]

    def kill(self, timeout=5.0):
        """
        Stop both loops, clear the queue, kill every worker. Idempotent.
        The queue stays closed until the next start().
        """
        self._stop.set()
        self.queue.close()
        self.stop(timeout)
        known = [n.hostname for n in self.inventory.list()]
        report = global_kill(self.fleet, self.queue, known_hosts=known)
        report.forgotten_launches = self.controller.forget_launches()
        self.controller.reset_cache()
        return report

    def status(self):
        last = self.scheduler.last_report
        return {
            "running": self.running,
            "scheduler": {
                **self.scheduler.metrics,
                "placement_rate": round(self.scheduler.placement_rate(), 4),
                "last_tick": last.to_dict() if last else None,
            },
            "planner": dict(self.planner.metrics),
            "controller": self.controller.status(),
            "queue": self.queue.status(),
            "capacity": self.inventory.snapshot.pools(),
            "fragmentation": self.inventory.snapshot.fragmentation(),
        }
