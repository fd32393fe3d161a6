# Swarmbatch configuration
# One value, built once per run, handed to every component. No globals read mid-tick.

import logging
import os
from dataclasses import dataclass, field, replace

LOG_FILE = os.path.join(os.path.dirname(__file__), "swarmbatch.log")
HOSTS_FILE = os.path.join(os.path.dirname(__file__), "hosts.json")

# Capacity is integer memory units. 1 unit = 0.01 GB, so worker costs stay exact.
MEMORY_UNITS_PER_GB = 100

DEFAULT_HACK_FRACTION_CANDIDATES = (0.01, 0.02, 0.05, 0.10, 0.15, 0.20, 0.25, 0.30, 0.40, 0.50)


def gb_to_units(gb):
    """Convert a GB figure to integer memory units (rounded to nearest)."""
    return int(round(float(gb) * MEMORY_UNITS_PER_GB))


def _env_bool(name, default=False):
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in ("1", "true", "yes")


def _env_fractions(name, default):
    raw = os.environ.get(name, "")
    if not raw.strip():
        return tuple(default)
    return tuple(float(p) for p in raw.split(",") if p.strip())


@dataclass(frozen=True)
class Config:
    """Run configuration. Read at tick boundaries only."""

    home_hostname: str = "home"
    reserved_home_capacity: int = 12800  # 128 GB
    batch_gap_ms: int = 200
    hack_fraction: float = 0.10
    hack_fraction_candidates: tuple = DEFAULT_HACK_FRACTION_CANDIDATES
    ev_recalc_interval_s: float = 300.0
    max_targets: int = 3
    max_grow_threads: int = 10000
    share_ratio: float = 0.0

    # Worker costs per thread, in memory units
    hack_cost: int = 170
    grow_cost: int = 175
    weaken_cost: int = 175
    share_cost: int = 400

    # Dispatch queue
    queue_capacity: int = 50
    enqueue_retries: int = 5
    enqueue_base_delay: float = 0.05

    # Loop pacing (seconds)
    tick_interval: float = 5.0
    min_tick_sleep: float = 1.0
    fatal_backoff: float = 10.0
    controller_poll_ms: int = 50
    controller_max_poll_ms: int = 3200
    controller_backoff_errors: int = 5
    launch_prune_interval: float = 30.0

    # Worker binaries, keyed by operation kind
    binaries: dict = field(default_factory=lambda: {
        "hack": "/hack/workers/hack.js",
        "grow": "/hack/workers/grow.js",
        "weaken": "/hack/workers/weaken.js",
        "share": "/hack/workers/share.js",
    })

    log_file: str = LOG_FILE
    log_level: str = "INFO"
    debug: bool = False
    hosts_file: str = HOSTS_FILE

    @classmethod
    def from_env(cls, **overrides):
        """Build from SWARMBATCH_* environment variables. Keyword overrides win."""
        env = os.environ
        values = dict(
            home_hostname=env.get("SWARMBATCH_HOME_HOSTNAME", "home"),
            reserved_home_capacity=int(env.get("SWARMBATCH_RESERVED_HOME_CAPACITY", "12800")),
            batch_gap_ms=int(env.get("SWARMBATCH_BATCH_GAP_MS", "200")),
            hack_fraction=float(env.get("SWARMBATCH_HACK_FRACTION", "0.10")),
            hack_fraction_candidates=_env_fractions(
                "SWARMBATCH_HACK_FRACTION_CANDIDATES", DEFAULT_HACK_FRACTION_CANDIDATES
            ),
            ev_recalc_interval_s=float(env.get("SWARMBATCH_EV_RECALC_INTERVAL", "300")),
            max_targets=int(env.get("SWARMBATCH_MAX_TARGETS", "3")),
            max_grow_threads=int(env.get("SWARMBATCH_MAX_GROW_THREADS", "10000")),
            share_ratio=float(env.get("SWARMBATCH_SHARE_RATIO", "0")),
            queue_capacity=int(env.get("SWARMBATCH_QUEUE_CAPACITY", "50")),
            tick_interval=float(env.get("SWARMBATCH_TICK_INTERVAL", "5")),
            launch_prune_interval=float(env.get("SWARMBATCH_LAUNCH_PRUNE_INTERVAL", "30")),
            log_file=env.get("SWARMBATCH_LOG_FILE", LOG_FILE),
            log_level=env.get("SWARMBATCH_LOG_LEVEL", "INFO").upper(),
            debug=_env_bool("SWARMBATCH_DEBUG"),
            hosts_file=env.get("SWARMBATCH_HOSTS_FILE", HOSTS_FILE),
        )
        values.update(overrides)
        return cls(**values)

    def with_overrides(self, **changes):
        return replace(self, **changes)

    def cost_for(self, kind):
        """Per-thread cost for an operation kind ("hack", "grow", ...)."""
        costs = {
            "hack": self.hack_cost,
            "grow": self.grow_cost,
            "weaken": self.weaken_cost,
            "share": self.share_cost,
        }
        if kind not in costs:
            raise ValueError(f"Unknown operation kind: {kind!r}")
        return costs[kind]

    def validate(self):
        """
        Sanity-check the configuration.
        Returns (errors, warnings). Errors mean: do not boot.
        """
        errors = []
        warnings = []

        for i, p in enumerate(self.hack_fraction_candidates):
            if p <= 0 or p > 1:
                errors.append(f"hack_fraction_candidates[{i}] = {p} must be in (0, 1]")
        if self.hack_fraction <= 0 or self.hack_fraction > 1:
            errors.append(f"hack_fraction = {self.hack_fraction} must be in (0, 1]")
        if self.queue_capacity < 1:
            errors.append("queue_capacity must be >= 1")
        if self.batch_gap_ms < 0:
            errors.append("batch_gap_ms must be >= 0")
        if not 0 <= self.share_ratio <= 1:
            errors.append(f"share_ratio = {self.share_ratio} must be in [0, 1]")
        for kind in ("hack", "grow", "weaken", "share"):
            if self.cost_for(kind) <= 0:
                errors.append(f"{kind}_cost must be > 0")
            if kind not in self.binaries:
                errors.append(f"no worker binary configured for {kind}")

        if self.batch_gap_ms < 10:
            warnings.append(f"batch_gap_ms ({self.batch_gap_ms}ms) is very low, batches may desync")
        if self.max_grow_threads < 100:
            warnings.append(f"max_grow_threads ({self.max_grow_threads}) is very low, batches will be capped")

        return errors, warnings


# ── Logging ───────────────────────────────────────────────────────────


def setup_logging(log_file=None, level=logging.INFO):
    """
    Console + file. Same format everywhere.
    Idempotent: a second call returns the configured logger untouched.
    """
    log_file = log_file or LOG_FILE
    logger = logging.getLogger("swarmbatch")

    if logger.handlers:
        return logger

    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    logger.setLevel(level)
    fmt = logging.Formatter(
        "[%(asctime)s] %(levelname)-8s %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )

    fh = logging.FileHandler(log_file)
    fh.setLevel(level)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setLevel(level)
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    return logger
