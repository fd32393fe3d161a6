# Swarmbatch data model
# Requests, placements, and the batch stages that tie them together.
#
# A batch is not an object. It is four requests for one target whose delays
# make them finish at T, T+gap, T+2*gap, T+3*gap (H, W1, G, W2).

from dataclasses import asdict, dataclass, field
from enum import Enum


class OperationKind(str, Enum):
    HACK = "hack"
    WEAKEN = "weaken"
    GROW = "grow"
    SHARE = "share"


class Stage(str, Enum):
    """Position of a request inside its batch. Value = completion slot."""
    HACK = "H"
    WEAKEN1 = "W1"
    GROW = "G"
    WEAKEN2 = "W2"
    SHARE = "S"  # Not part of a batch


# Completion slot (multiples of the batch gap) for each stage
STAGE_SLOTS = {
    Stage.HACK: 0,
    Stage.WEAKEN1: 1,
    Stage.GROW: 2,
    Stage.WEAKEN2: 3,
}

STAGE_KINDS = {
    Stage.HACK: OperationKind.HACK,
    Stage.WEAKEN1: OperationKind.WEAKEN,
    Stage.GROW: OperationKind.GROW,
    Stage.WEAKEN2: OperationKind.WEAKEN,
    Stage.SHARE: OperationKind.SHARE,
}


@dataclass(frozen=True)
class OperationRequest:
    """One worker launch the planner wants: kind x threads, against a target, after a delay."""
    kind: OperationKind
    target: str
    thread_count: int
    cost_per_thread: int
    delay_ms: int = 0
    stage: Stage = Stage.SHARE
    batch_id: str = ""

    def __post_init__(self):
        if self.thread_count <= 0:
            raise ValueError(f"thread_count must be positive, got {self.thread_count}")
        if self.cost_per_thread <= 0:
            raise ValueError(f"cost_per_thread must be positive, got {self.cost_per_thread}")
        if self.delay_ms < 0:
            raise ValueError(f"delay_ms must be non-negative, got {self.delay_ms}")

    @property
    def total_cost(self) -> int:
        return self.thread_count * self.cost_per_thread

    def to_dict(self) -> dict:
        d = asdict(self)
        d["kind"] = self.kind.value
        d["stage"] = self.stage.value
        d["total_cost"] = self.total_cost
        return d


@dataclass(frozen=True)
class Placement:
    """A request pinned to a node. Immutable once the packer creates it."""
    request: OperationRequest
    hostname: str

    def to_dict(self) -> dict:
        return {"hostname": self.hostname, **self.request.to_dict()}


@dataclass
class Unplaceable:
    """A request no node could hold this tick, with how much capacity it lacked."""
    request: OperationRequest
    unmet_demand: int
    largest_free: int = 0


@dataclass
class BatchPlan:
    """Planner output for one target."""
    target: str
    requests: list = field(default_factory=list)
    hack_fraction: float = 0.0
    skipped: bool = False
    skip_reason: str = ""

    @property
    def total_threads(self) -> int:
        return sum(r.thread_count for r in self.requests)

    @property
    def total_cost(self) -> int:
        return sum(r.total_cost for r in self.requests)
