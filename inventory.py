# Swarmbatch node inventory
# Snapshot of the fleet, taken once per tick. Copy-on-read: the packer gets its
# own dict of free capacity, the controller re-asks the fleet at launch time.

import logging
import time
from dataclasses import dataclass, field

log = logging.getLogger("swarmbatch")

# Free capacity below this (units) on a node is counted as fragmentation waste
FRAGMENTATION_THRESHOLD = 200


class TopologyError(RuntimeError):
    """The topology scan failed outright. Tick-fatal."""


@dataclass(frozen=True)
class Node:
    hostname: str
    max_capacity: int
    used_capacity: int
    rooted: bool
    reserved: int = 0

    @property
    def free_capacity(self) -> int:
        return max(0, self.max_capacity - self.used_capacity - self.reserved)

    def to_dict(self) -> dict:
        return {
            "hostname": self.hostname,
            "max_capacity": self.max_capacity,
            "used_capacity": self.used_capacity,
            "rooted": self.rooted,
            "reserved": self.reserved,
            "free_capacity": self.free_capacity,
        }


@dataclass(frozen=True)
class InventorySnapshot:
    """Immutable view of the fleet at one instant."""
    nodes: tuple = ()
    records: tuple = ()
    taken_at: float = field(default_factory=time.time)

    def usable(self):
        """Rooted nodes only: the ones we may place work on."""
        return [n for n in self.nodes if n.rooted]

    def working_capacity(self):
        """Fresh mutable {hostname: free} for rooted nodes. Caller owns it."""
        return {n.hostname: n.free_capacity for n in self.usable()}

    def get(self, hostname):
        for n in self.nodes:
            if n.hostname == hostname:
                return n
        return None

    def pools(self):
        usable = self.usable()
        total_max = sum(n.max_capacity for n in usable)
        total_used = sum(n.used_capacity for n in usable)
        total_free = sum(n.free_capacity for n in usable)
        return {
            "nodes": len(usable),
            "total_max": total_max,
            "total_used": total_used,
            "total_free": total_free,
            "largest_free": max((n.free_capacity for n in usable), default=0),
        }

    def fragmentation(self, threshold=FRAGMENTATION_THRESHOLD):
        """Free capacity stranded in slivers too small to hold a worker."""
        usable = self.usable()
        slivers = [n for n in usable if 0 < n.free_capacity < threshold]
        total_max = sum(n.max_capacity for n in usable)
        wasted = sum(n.free_capacity for n in slivers)
        return {
            "wasted": wasted,
            "waste_pct": round(wasted / total_max * 100, 2) if total_max else 0.0,
            "fragmented_nodes": len(slivers),
            "total_nodes": len(usable),
        }


class NodeInventory:
    """
    Wraps the fleet's topology surface. Applies the home reserve.
    refresh() is the only thing that talks to the fleet in bulk.
    """

    def __init__(self, fleet, config):
        self.fleet = fleet
        self.config = config
        self._snapshot = InventorySnapshot()

    def _to_node(self, record):
        reserved = self.config.reserved_home_capacity if record.hostname == self.config.home_hostname else 0
        return Node(
            hostname=record.hostname,
            max_capacity=int(record.max_capacity),
            used_capacity=int(record.used_capacity),
            rooted=bool(record.rooted),
            reserved=reserved,
        )

    def refresh(self):
        """Rebuild the snapshot wholesale. Raises TopologyError if the scan fails."""
        try:
            records = self.fleet.list_nodes()
        except Exception as e:
            log.error("TOPOLOGY SCAN FAILED err=%s", e)
            raise TopologyError(str(e)) from e

        seen = set()
        nodes = []
        for r in records:
            if r.hostname in seen:
                log.warning("DUPLICATE NODE hostname=%s, keeping first record", r.hostname)
                continue
            seen.add(r.hostname)
            nodes.append(self._to_node(r))

        self._snapshot = InventorySnapshot(nodes=tuple(nodes), records=tuple(records))
        return self._snapshot

    @property
    def snapshot(self):
        return self._snapshot

    def list(self):
        return list(self._snapshot.nodes)

    def lookup(self, hostname):
        """Live lookup, bypassing the snapshot. None if the node is gone."""
        record = self.fleet.node(hostname)
        return self._to_node(record) if record else None

    def free_capacity(self, hostname):
        """Live free capacity (home reserve applied). 0 for unknown nodes."""
        node = self.lookup(hostname)
        return node.free_capacity if node else 0

    def has_binary(self, hostname, path):
        return self.fleet.has_binary(hostname, path)

    def deploy(self, path, hostname):
        return self.fleet.deploy(path, hostname)
