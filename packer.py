# Swarmbatch packer: first-fit-decreasing
# Biggest requests first, onto nodes ordered by free capacity (largest first).
# Every placement is deducted immediately from a private working copy.
#
# Node order is re-derived after every deduction by default, so "first fit"
# always means "first in the current order", never a stale one. resort=False
# keeps the single up-front sort.

import bisect
import logging
from dataclasses import dataclass, field

from models import Placement, Unplaceable

log = logging.getLogger("swarmbatch")


@dataclass
class PackResult:
    placements: list = field(default_factory=list)
    unplaceable: list = field(default_factory=list)
    remaining: dict = field(default_factory=dict)  # hostname -> free after packing
    assigned: dict = field(default_factory=dict)   # hostname -> total cost placed

    @property
    def planned(self) -> int:
        return len(self.placements) + len(self.unplaceable)

    @property
    def placed(self) -> int:
        return len(self.placements)

    @property
    def placement_rate(self) -> float:
        return self.placed / self.planned if self.planned else 1.0

    @property
    def unmet_demand(self) -> int:
        return sum(u.unmet_demand for u in self.unplaceable)

    def summary(self) -> dict:
        return {
            "planned": self.planned,
            "placed": self.placed,
            "unplaceable": len(self.unplaceable),
            "unmet_demand": self.unmet_demand,
            "placement_rate": round(self.placement_rate, 4),
        }


class Packer:
    def __init__(self, resort=True):
        self.resort = resort

    def pack(self, requests, capacity):
        """
        Place requests onto nodes.

        capacity: {hostname: free_capacity}. Copied, never mutated.
        Deterministic: ties between nodes break on hostname, ties between
        requests keep input order.
        """
        remaining = {h: max(0, int(free)) for h, free in capacity.items()}
        order = sorted((-free, h) for h, free in remaining.items())
        result = PackResult(assigned={h: 0 for h in remaining})

        for req in sorted(requests, key=lambda r: -r.total_cost):
            need = req.total_cost
            slot = None
            for i, (neg_free, hostname) in enumerate(order):
                if -neg_free >= need:
                    slot = i
                    break

            if slot is None:
                largest = max(remaining.values(), default=0)
                result.unplaceable.append(Unplaceable(request=req, unmet_demand=need, largest_free=largest))
                log.debug(
                    "UNPLACEABLE kind=%s target=%s threads=%d cost=%d largest_free=%d",
                    req.kind.value, req.target, req.thread_count, need, largest,
                )
                continue

            _, hostname = order[slot]
            remaining[hostname] -= need
            result.assigned[hostname] += need
            result.placements.append(Placement(request=req, hostname=hostname))

            if self.resort:
                del order[slot]
                bisect.insort(order, (-remaining[hostname], hostname))
            else:
                order[slot] = (-remaining[hostname], hostname)

        result.remaining = remaining
        return result
