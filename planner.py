# Swarmbatch batch planner
# For one target: how many threads of each operation, and how long each one
# waits before starting, so that H, W1, G, W2 land gap milliseconds apart.
#
# Knows nothing about nodes. Output is a BatchPlan of OperationRequests.

import logging
import math
import time
import uuid
from dataclasses import dataclass

from models import BatchPlan, OperationKind, OperationRequest, Stage, STAGE_KINDS, STAGE_SLOTS

log = logging.getLogger("swarmbatch")

# Security effects per thread
HACK_SECURITY_PER_THREAD = 0.002
GROW_SECURITY_PER_THREAD = 0.004
WEAKEN_SECURITY_PER_THREAD = 0.05

# Duration ratios relative to hack time
GROW_TIME_RATIO = 3.2
WEAKEN_TIME_RATIO = 4.0

# Formula constants
_HACK_BALANCE_FACTOR = 240
_HACK_CHANCE_FACTOR = 1.75
_HACK_TIME_MULTIPLIER = 5
_HACK_TIME_BASE_DIFF = 500
_HACK_TIME_BASE_SKILL = 50
_HACK_TIME_DIFF_FACTOR = 2.5
_GROWTH_BASE_RATE = 1.03
_GROWTH_MAX_RATE = 1.0035

# Float noise guard for floor/ceil on products like 100 * 0.002 / 0.05
_ROUND_DIGITS = 9


@dataclass(frozen=True)
class TargetState:
    hostname: str
    money_available: float
    money_max: float
    security: float
    min_security: float = 1.0
    required_skill: int = 1
    server_growth: float = 0.0

    @classmethod
    def from_record(cls, record):
        return cls(
            hostname=record.hostname,
            money_available=record.money_available,
            money_max=record.money_max,
            security=record.security,
            min_security=record.min_security,
            required_skill=record.required_skill,
            server_growth=record.server_growth,
        )


@dataclass(frozen=True)
class BatchTiming:
    """Durations and start delays for one batch, all integer milliseconds."""
    hack_ms: int
    grow_ms: int
    weaken_ms: int
    anchor_ms: int
    delays: dict

    def duration(self, stage):
        kind = STAGE_KINDS[stage]
        if kind == OperationKind.HACK:
            return self.hack_ms
        if kind == OperationKind.GROW:
            return self.grow_ms
        return self.weaken_ms

    def completion(self, stage):
        """Completion time of a stage, measured from batch dispatch."""
        return self.delays[stage] + self.duration(stage)


# ── Formulas ──────────────────────────────────────────────────────────


def _floor(x):
    return math.floor(round(x, _ROUND_DIGITS))


def _ceil(x):
    return math.ceil(round(x, _ROUND_DIGITS))


def hack_time_ms(security, required_skill, skill, speed_mult=1.0):
    """Hack duration. Higher security is slower, higher skill is faster."""
    skill_factor = _HACK_TIME_DIFF_FACTOR * required_skill * security + _HACK_TIME_BASE_DIFF
    skill_factor /= skill + _HACK_TIME_BASE_SKILL
    seconds = _HACK_TIME_MULTIPLIER * skill_factor / max(speed_mult, 1e-9)
    return seconds * 1000


def hack_fraction_per_thread(security, required_skill, skill, money_mult=1.0):
    """Fraction of available money one hack thread steals."""
    if skill <= 0:
        return 0.0
    difficulty_mult = (100 - security) / 100
    skill_mult = (skill - (required_skill - 1)) / skill
    pct = difficulty_mult * skill_mult * money_mult / _HACK_BALANCE_FACTOR
    return min(1.0, max(0.0, pct))


def hack_chance(security, required_skill, skill, chance_mult=1.0):
    if skill <= 0:
        return 0.0
    skill_mult = _HACK_CHANCE_FACTOR * skill
    skill_chance = (skill_mult - required_skill) / skill_mult
    difficulty_mult = (100 - security) / 100
    return min(1.0, max(0.0, skill_chance * difficulty_mult * chance_mult))


def grow_threads_needed(current_money, money_max, security, server_growth, grow_mult=1.0):
    """
    Threads to bring current_money back up to money_max.
    Monotonic: more missing money or higher security means more threads.
    0 when the target is already full or cannot grow at all.
    """
    if current_money >= money_max or money_max <= 0:
        return 0
    if server_growth <= 0 or grow_mult <= 0:
        return 0
    rate = min(1 + (_GROWTH_BASE_RATE - 1) / max(security, 1e-9), _GROWTH_MAX_RATE)
    growth = money_max / max(current_money, 1.0)
    cycles = math.log(growth) / (math.log(rate) * (server_growth / 100) * grow_mult)
    return max(1, _ceil(cycles))


def weaken_threads_for(security_delta):
    """Weaken threads that cancel a security increase."""
    if security_delta <= 0:
        return 0
    return _ceil(security_delta / WEAKEN_SECURITY_PER_THREAD)


def batch_timing(hack_ms, gap_ms, stages):
    """
    Delays that make every stage complete at anchor + slot * gap.
    The anchor is the earliest that keeps every delay non-negative.
    """
    hack_ms = int(round(hack_ms))
    grow_ms = int(round(hack_ms * GROW_TIME_RATIO))
    weaken_ms = int(round(hack_ms * WEAKEN_TIME_RATIO))
    durations = {
        OperationKind.HACK: hack_ms,
        OperationKind.GROW: grow_ms,
        OperationKind.WEAKEN: weaken_ms,
    }
    anchor = max(durations[STAGE_KINDS[s]] - STAGE_SLOTS[s] * gap_ms for s in stages)
    anchor = max(anchor, 0)
    delays = {
        s: anchor + STAGE_SLOTS[s] * gap_ms - durations[STAGE_KINDS[s]]
        for s in stages
    }
    return BatchTiming(hack_ms=hack_ms, grow_ms=grow_ms, weaken_ms=weaken_ms,
                       anchor_ms=anchor, delays=delays)


# ── Planner ───────────────────────────────────────────────────────────


class BatchPlanner:
    """Turns a target's state into one HWGW batch."""

    def __init__(self, config, clock=time.monotonic):
        self.config = config
        self._clock = clock
        self._fraction_cache = {}  # hostname -> (chosen_at, fraction)
        self.metrics = {
            "batches_planned": 0,
            "batches_skipped": 0,
            "threads_planned": 0,
        }

    def thread_counts(self, target, player, fraction):
        """(hack, weaken1, grow, weaken2) thread counts for one batch."""
        if target.money_available <= 0:
            return 0, 0, 0, 0
        per_thread = hack_fraction_per_thread(
            target.security, target.required_skill, player.skill, player.hack_money_mult
        )
        if per_thread <= 0:
            return 0, 0, 0, 0

        hack = _floor(fraction / per_thread)
        if hack <= 0:
            return 0, 0, 0, 0
        weaken1 = weaken_threads_for(hack * HACK_SECURITY_PER_THREAD)

        grow = grow_threads_needed(
            target.money_available, target.money_max, target.security,
            target.server_growth, player.grow_mult,
        )
        grow = min(grow, self.config.max_grow_threads)
        weaken2 = weaken_threads_for(grow * GROW_SECURITY_PER_THREAD)
        return hack, weaken1, grow, weaken2

    def plan(self, target, player, fraction=None, now=None):
        """
        Plan one batch. A zero hack count skips the whole batch; a zero grow
        count drops the G and W2 stages.
        """
        if fraction is None:
            fraction = self.choose_fraction(target, player, now=now)

        hack, weaken1, grow, weaken2 = self.thread_counts(target, player, fraction)
        if hack <= 0:
            self.metrics["batches_skipped"] += 1
            reason = "no_money" if target.money_available <= 0 else "zero_hack_threads"
            log.debug("BATCH SKIPPED target=%s reason=%s", target.hostname, reason)
            return BatchPlan(target=target.hostname, hack_fraction=fraction,
                             skipped=True, skip_reason=reason)

        counts = {
            Stage.HACK: hack,
            Stage.WEAKEN1: weaken1,
            Stage.GROW: grow,
            Stage.WEAKEN2: weaken2,
        }
        stages = [s for s, n in counts.items() if n > 0]

        h_ms = hack_time_ms(target.security, target.required_skill, player.skill,
                            player.hack_speed_mult)
        timing = batch_timing(h_ms, self.config.batch_gap_ms, stages)

        batch_id = uuid.uuid4().hex[:12]
        requests = []
        for stage in stages:
            kind = STAGE_KINDS[stage]
            requests.append(OperationRequest(
                kind=kind,
                target=target.hostname,
                thread_count=counts[stage],
                cost_per_thread=self.config.cost_for(kind.value),
                delay_ms=timing.delays[stage],
                stage=stage,
                batch_id=batch_id,
            ))

        plan = BatchPlan(target=target.hostname, requests=requests, hack_fraction=fraction)
        self.metrics["batches_planned"] += 1
        self.metrics["threads_planned"] += plan.total_threads
        if self.config.debug:
            log.debug(
                "BATCH PLANNED target=%s fraction=%.2f H=%d W1=%d G=%d W2=%d anchor=%dms",
                target.hostname, fraction, hack, weaken1, grow, weaken2, timing.anchor_ms,
            )
        return plan

    # -- hack fraction --

    def sustain_cost(self, target, player, fraction):
        """
        Memory a batch at this fraction costs once the target runs steady:
        hack + its weaken, plus the grow (and weaken) that refills what was taken.
        """
        per_thread = hack_fraction_per_thread(
            target.security, target.required_skill, player.skill, player.hack_money_mult
        )
        if per_thread <= 0:
            return 0, 0.0
        hack = _floor(fraction / per_thread)
        if hack <= 0:
            return 0, 0.0
        stolen = min(1.0, hack * per_thread)
        weaken1 = weaken_threads_for(hack * HACK_SECURITY_PER_THREAD)
        grow = grow_threads_needed(
            target.money_max * (1 - stolen), target.money_max, target.min_security,
            target.server_growth, player.grow_mult,
        )
        grow = min(grow, self.config.max_grow_threads)
        weaken2 = weaken_threads_for(grow * GROW_SECURITY_PER_THREAD)
        cost = (
            hack * self.config.hack_cost
            + (weaken1 + weaken2) * self.config.weaken_cost
            + grow * self.config.grow_cost
        )
        return cost, stolen

    def expected_value_rate(self, target, player, fraction, capacity_limit=None):
        """
        Expected money per second per memory unit for batches at this fraction.
        Candidates whose steady-state batch would not fit capacity_limit score 0.
        """
        cost, stolen = self.sustain_cost(target, player, fraction)
        if cost <= 0:
            return 0.0
        if capacity_limit is not None and cost > capacity_limit:
            return 0.0
        chance = hack_chance(target.security, target.required_skill, player.skill,
                             player.hack_chance_mult)
        weaken_s = hack_time_ms(target.security, target.required_skill, player.skill,
                                player.hack_speed_mult) * WEAKEN_TIME_RATIO / 1000
        if weaken_s <= 0:
            return 0.0
        return chance * target.money_max * stolen / weaken_s / cost

    def choose_fraction(self, target, player, now=None, capacity_limit=None):
        """Best candidate fraction for this target. Cached per target for a while."""
        now = self._clock() if now is None else now
        cached = self._fraction_cache.get(target.hostname)
        if cached and now - cached[0] < self.config.ev_recalc_interval_s:
            return cached[1]

        best = self.config.hack_fraction
        best_rate = 0.0
        for p in self.config.hack_fraction_candidates:
            rate = self.expected_value_rate(target, player, p, capacity_limit)
            if rate > best_rate:
                best, best_rate = p, rate

        self._fraction_cache[target.hostname] = (now, best)
        log.info("HACK FRACTION target=%s fraction=%.2f ev_rate=%.4g", target.hostname, best, best_rate)
        return best

    def forget(self, hostname=None):
        """Drop cached fractions (one target, or all)."""
        if hostname is None:
            self._fraction_cache.clear()
        else:
            self._fraction_cache.pop(hostname, None)

    # -- share filler --

    def plan_share(self, working_capacity, ratio=None):
        """
        Share requests sized from leftover capacity, one per node.
        Returns requests only. Placement still goes through the packer.
        """
        ratio = self.config.share_ratio if ratio is None else ratio
        if ratio <= 0:
            return []
        cost = self.config.share_cost
        requests = []
        for hostname in sorted(working_capacity):
            threads = _floor(working_capacity[hostname] * ratio / cost)
            if threads > 0:
                requests.append(OperationRequest(
                    kind=OperationKind.SHARE,
                    target=hostname,
                    thread_count=threads,
                    cost_per_thread=cost,
                    delay_ms=0,
                    stage=Stage.SHARE,
                ))
        return requests


# ── Target selection ──────────────────────────────────────────────────


def target_score(record, player):
    """Money per second of weaken time, weighted by hack chance."""
    chance = hack_chance(record.security, record.required_skill, player.skill, player.hack_chance_mult)
    weaken_s = hack_time_ms(record.security, record.required_skill, player.skill,
                            player.hack_speed_mult) * WEAKEN_TIME_RATIO / 1000
    if weaken_s <= 0:
        return 0.0
    return record.money_max * chance / weaken_s


def select_targets(records, player, max_targets, exclude=()):
    """Top targets by score. Rooted, has money, within the player's skill."""
    scored = []
    for r in records:
        if r.hostname in exclude or not r.rooted or r.money_max <= 0:
            continue
        if r.required_skill > player.skill:
            continue
        score = target_score(r, player)
        if score > 0:
            scored.append((score, r))
    scored.sort(key=lambda x: (-x[0], x[1].hostname))
    return [TargetState.from_record(r) for _, r in scored[:max_targets]]
