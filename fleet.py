# Swarmbatch fleet adapters
# The outside world: which nodes exist, how much memory they hold, and how to
# put a worker on one. Two adapters, same surface:
#
#   SimulatedFleet  in-memory nodes and processes. Tests and --simulate runs.
#   SshFleet        real hosts over key-only SSH. scp to deploy, nohup to launch.
#
# Surface (duck-typed, both adapters):
#   list_nodes() -> [NodeRecord]        node(hostname) -> NodeRecord | None
#   has_binary(hostname, path) -> bool  deploy(path, hostname) -> bool
#   launch(path, hostname, threads, *args) -> pid (0 = refused)
#   processes(hostname) -> [dict]       kill_all(hostname) -> bool
#   player() -> PlayerState

import copy
import json
import logging
import os
import re
import shlex
import subprocess
import threading
import time
from dataclasses import asdict, dataclass, field

from config import gb_to_units

log = logging.getLogger("swarmbatch")


# ── Records ───────────────────────────────────────────────────────────


@dataclass
class NodeRecord:
    """What the topology scan reports for one host."""
    hostname: str
    max_capacity: int = 0
    used_capacity: int = 0
    rooted: bool = False
    ip: str = ""
    money_available: float = 0.0
    money_max: float = 0.0
    security: float = 1.0
    min_security: float = 1.0
    required_skill: int = 1
    server_growth: float = 0.0

    @classmethod
    def from_dict(cls, d):
        """Accept capacity in units (max_capacity) or GB (max_gb / used_gb)."""
        max_capacity = d.get("max_capacity")
        if max_capacity is None:
            max_capacity = gb_to_units(d.get("max_gb", 0))
        used_capacity = d.get("used_capacity")
        if used_capacity is None:
            used_capacity = gb_to_units(d.get("used_gb", 0))
        return cls(
            hostname=str(d["hostname"]),
            max_capacity=int(max_capacity),
            used_capacity=int(used_capacity),
            rooted=bool(d.get("rooted", False)),
            ip=str(d.get("ip", "")),
            money_available=float(d.get("money_available", 0) or 0),
            money_max=float(d.get("money_max", 0) or 0),
            security=float(d.get("security", 1) or 1),
            min_security=float(d.get("min_security", 1) or 1),
            required_skill=int(d.get("required_skill", 1) or 1),
            server_growth=float(d.get("server_growth", 0) or 0),
        )

    def to_dict(self):
        return asdict(self)


@dataclass
class PlayerState:
    """Player skill and multipliers that feed the hacking formulas."""
    skill: int = 1
    hack_money_mult: float = 1.0
    hack_chance_mult: float = 1.0
    hack_speed_mult: float = 1.0
    grow_mult: float = 1.0

    @classmethod
    def from_dict(cls, d):
        d = d or {}
        return cls(
            skill=int(d.get("skill", 1)),
            hack_money_mult=float(d.get("hack_money_mult", 1.0)),
            hack_chance_mult=float(d.get("hack_chance_mult", 1.0)),
            hack_speed_mult=float(d.get("hack_speed_mult", 1.0)),
            grow_mult=float(d.get("grow_mult", 1.0)),
        )


def load_hosts_file(path):
    """
    Read a hosts file: {"player": {...}, "nodes": [{...}, ...]}.
    A bare list is accepted as the node list.
    """
    with open(path) as f:
        data = json.load(f)
    if isinstance(data, list):
        data = {"nodes": data}
    records = [NodeRecord.from_dict(n) for n in data.get("nodes", [])]
    return records, PlayerState.from_dict(data.get("player"))


# ── Simulated fleet ───────────────────────────────────────────────────


@dataclass
class SimProcess:
    pid: int
    hostname: str
    path: str
    threads: int
    args: list
    cost: int
    started_at: float = field(default_factory=time.time)


class SimulatedFleet:
    """
    In-memory fleet. Memory, binaries and processes behave like the real thing:
    a launch that does not fit is refused with pid 0, not queued.
    """

    def __init__(self, records=None, player=None, binary_costs=None,
                 process_ttl=None, clock=time.time):
        self._lock = threading.Lock()
        self._nodes = {r.hostname: copy.deepcopy(r) for r in (records or [])}
        self._player = player or PlayerState()
        self._binaries = {h: set() for h in self._nodes}
        self._processes = {}
        self._next_pid = 1
        self._binary_costs = dict(binary_costs or {})
        self._process_ttl = process_ttl
        self._clock = clock
        self.refuse_launches = False
        self.scan_error = None

    @classmethod
    def from_hosts_file(cls, path, **kwargs):
        records, player = load_hosts_file(path)
        return cls(records, player=player, **kwargs)

    @classmethod
    def for_config(cls, config, records=None, **kwargs):
        """
        Fleet whose workers cost what the config says they cost.
        Without records, the nodes come from config.hosts_file.
        """
        kwargs.setdefault(
            "binary_costs", {config.binaries[k]: config.cost_for(k) for k in config.binaries}
        )
        if records is None:
            return cls.from_hosts_file(config.hosts_file, **kwargs)
        return cls(records, **kwargs)

    # -- topology --

    def list_nodes(self):
        if self.scan_error:
            raise self.scan_error
        with self._lock:
            self._reap_locked()
            return [copy.deepcopy(r) for r in self._nodes.values()]

    def node(self, hostname):
        with self._lock:
            self._reap_locked()
            r = self._nodes.get(hostname)
            return copy.deepcopy(r) if r else None

    def player(self):
        return copy.deepcopy(self._player)

    def add_node(self, record):
        with self._lock:
            self._nodes[record.hostname] = copy.deepcopy(record)
            self._binaries.setdefault(record.hostname, set())

    def remove_node(self, hostname):
        with self._lock:
            self._nodes.pop(hostname, None)
            self._binaries.pop(hostname, None)
            for pid in [p for p, proc in self._processes.items() if proc.hostname == hostname]:
                del self._processes[pid]

    def set_used(self, hostname, used_capacity):
        """Drift a node's used memory, as something outside us would."""
        with self._lock:
            self._nodes[hostname].used_capacity = int(used_capacity)

    # -- binaries --

    def has_binary(self, hostname, path):
        with self._lock:
            return path in self._binaries.get(hostname, set())

    def deploy(self, path, hostname):
        with self._lock:
            r = self._nodes.get(hostname)
            if r is None or not r.rooted:
                return False
            self._binaries[hostname].add(path)
            return True

    # -- processes --

    def launch(self, path, hostname, threads, *args):
        with self._lock:
            r = self._nodes.get(hostname)
            if r is None or not r.rooted or self.refuse_launches:
                return 0
            if path not in self._binaries.get(hostname, set()):
                return 0
            cost = self._binary_costs.get(path, 0) * int(threads)
            if r.used_capacity + cost > r.max_capacity:
                return 0
            pid = self._next_pid
            self._next_pid += 1
            r.used_capacity += cost
            self._processes[pid] = SimProcess(
                pid=pid, hostname=hostname, path=path, threads=int(threads),
                args=list(args), cost=cost, started_at=self._clock(),
            )
            return pid

    def processes(self, hostname=None):
        with self._lock:
            self._reap_locked()
            return [
                asdict(p) for p in self._processes.values()
                if hostname is None or p.hostname == hostname
            ]

    def kill_all(self, hostname):
        with self._lock:
            if hostname not in self._nodes:
                return False
            for pid in [p for p, proc in self._processes.items() if proc.hostname == hostname]:
                proc = self._processes.pop(pid)
                self._nodes[hostname].used_capacity = max(
                    0, self._nodes[hostname].used_capacity - proc.cost
                )
            return True

    def _reap_locked(self):
        """Workers finish on their own. Free the memory of the ones past their TTL."""
        if not self._process_ttl:
            return
        now = self._clock()
        for pid in [p for p, proc in self._processes.items()
                    if now - proc.started_at >= self._process_ttl]:
            proc = self._processes.pop(pid)
            node = self._nodes.get(proc.hostname)
            if node:
                node.used_capacity = max(0, node.used_capacity - proc.cost)


# ── SSH fleet ─────────────────────────────────────────────────────────

SSH_KEY_PATH = os.environ.get("SWARMBATCH_SSH_KEY_PATH", os.path.expanduser("~/.ssh/swarmbatch"))
SSH_USER = os.environ.get("SWARMBATCH_SSH_USER", "swarmbatch")
BINARIES_DIR = os.environ.get("SWARMBATCH_BINARIES_DIR", os.path.join(os.path.dirname(__file__), "workers"))

_SAFE_NAME_RE = re.compile(r"^[a-zA-Z0-9._:/@-]+$")


def _validate_name(value, label="value"):
    """Reject shell-unsafe characters in names used in commands."""
    if not value or not _SAFE_NAME_RE.match(str(value)):
        raise ValueError(f"Invalid {label}: {value!r}")
    return str(value)


def _ssh_options(key_path=None):
    return [
        "-i", key_path or SSH_KEY_PATH,
        "-o", "StrictHostKeyChecking=accept-new",
        "-o", "PasswordAuthentication=no",
        "-o", "KbdInteractiveAuthentication=no",
        "-o", "BatchMode=yes",
        "-o", "ConnectTimeout=5",
    ]


def ssh_exec(ip, cmd, timeout=30, user=None, key_path=None):
    """
    Run a command on a remote host via SSH. Key-based auth only.
    Returns (returncode, stdout, stderr). Timeouts come back as rc 124.
    """
    full_cmd = ["ssh", *_ssh_options(key_path), f"{user or SSH_USER}@{ip}", cmd]
    try:
        result = subprocess.run(full_cmd, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        return 124, "", f"ssh to {ip} timed out after {timeout}s"
    return result.returncode, result.stdout.strip(), result.stderr.strip()


def _parse_free_mb(output):
    """Pull (total, used) MiB out of `free -m` output."""
    for line in output.splitlines():
        if line.startswith("Mem:"):
            parts = line.split()
            return int(parts[1]), int(parts[2])
    raise RuntimeError(f"Unexpected free -m output: {output[:80]!r}")


def _mib_to_units(mib):
    return gb_to_units(mib / 1024)


class SshFleet:
    """
    Real hosts listed in a hosts file. Memory comes from `free -m`, binaries
    are checked with `test -f` and pushed with scp, workers run under nohup.
    """

    def __init__(self, hosts_file, binaries_dir=None, process_marker="swarmbatch-worker",
                 ssh_user=None, ssh_key_path=None):
        self.hosts_file = hosts_file
        # Per instance, after any .env load
        env = os.environ
        self.binaries_dir = binaries_dir or env.get("SWARMBATCH_BINARIES_DIR", BINARIES_DIR)
        self.ssh_user = ssh_user or env.get("SWARMBATCH_SSH_USER", SSH_USER)
        self.ssh_key_path = ssh_key_path or env.get("SWARMBATCH_SSH_KEY_PATH", SSH_KEY_PATH)
        self.process_marker = process_marker
        self._records, self._player = load_hosts_file(hosts_file)

    def _ssh(self, ip, cmd, timeout=30):
        return ssh_exec(ip, cmd, timeout=timeout, user=self.ssh_user, key_path=self.ssh_key_path)

    def _record(self, hostname):
        for r in self._records:
            if r.hostname == hostname:
                return r
        return None

    def _probe(self, record):
        """Fill in live memory figures. Unreachable hosts come back unrooted."""
        probed = copy.deepcopy(record)
        rc, out, err = self._ssh(record.ip or record.hostname, "free -m")
        if rc != 0:
            log.warning("NODE UNREACHABLE host=%s err=%s", record.hostname, err)
            probed.rooted = False
            probed.max_capacity = 0
            probed.used_capacity = 0
            return probed
        total, used = _parse_free_mb(out)
        probed.max_capacity = _mib_to_units(total)
        probed.used_capacity = _mib_to_units(used)
        return probed

    def list_nodes(self):
        self._records, self._player = load_hosts_file(self.hosts_file)
        return [self._probe(r) for r in self._records]

    def node(self, hostname):
        r = self._record(hostname)
        return self._probe(r) if r else None

    def player(self):
        return copy.deepcopy(self._player)

    def has_binary(self, hostname, path):
        r = self._record(hostname)
        if r is None:
            return False
        _validate_name(path, "binary path")
        rc, _, _ = self._ssh(r.ip or hostname, f"test -f {shlex.quote(path)}")
        return rc == 0

    def deploy(self, path, hostname):
        r = self._record(hostname)
        if r is None:
            return False
        _validate_name(path, "binary path")
        local = os.path.join(self.binaries_dir, path.lstrip("/"))
        if not os.path.exists(local):
            log.error("DEPLOY FAILED host=%s binary=%s err=missing locally (%s)", hostname, path, local)
            return False
        ip = r.ip or hostname
        rc, _, err = self._ssh(ip, f"mkdir -p {shlex.quote(os.path.dirname(path) or '/')}")
        if rc != 0:
            log.error("DEPLOY FAILED host=%s binary=%s err=%s", hostname, path, err)
            return False
        try:
            result = subprocess.run(
                ["scp", *_ssh_options(self.ssh_key_path), local, f"{self.ssh_user}@{ip}:{path}"],
                capture_output=True, text=True, timeout=60,
            )
        except subprocess.TimeoutExpired:
            log.error("DEPLOY FAILED host=%s binary=%s err=scp timed out", hostname, path)
            return False
        if result.returncode != 0:
            log.error("DEPLOY FAILED host=%s binary=%s err=%s", hostname, path, result.stderr.strip())
            return False
        self._ssh(ip, f"chmod +x {shlex.quote(path)}")
        return True

    def launch(self, path, hostname, threads, *args):
        r = self._record(hostname)
        if r is None:
            return 0
        _validate_name(path, "binary path")
        quoted = " ".join(shlex.quote(str(a)) for a in args)
        cmd = (
            f"nohup {shlex.quote(path)} --marker {self.process_marker} "
            f"--threads {int(threads)} {quoted} >/dev/null 2>&1 & echo $!"
        )
        rc, out, err = self._ssh(r.ip or hostname, cmd)
        if rc != 0:
            log.debug("LAUNCH RC=%d host=%s err=%s", rc, hostname, err)
            return 0
        try:
            return int(out.splitlines()[-1])
        except (ValueError, IndexError):
            return 0

    def processes(self, hostname=None):
        hosts = [self._record(hostname)] if hostname else list(self._records)
        found = []
        for r in hosts:
            if r is None:
                continue
            rc, out, _ = self._ssh(r.ip or r.hostname, f"pgrep -af {shlex.quote(self.process_marker)}")
            if rc not in (0, 1):
                continue
            for line in out.splitlines():
                pid, _, cmdline = line.partition(" ")
                if pid.isdigit():
                    found.append({"pid": int(pid), "hostname": r.hostname, "cmdline": cmdline})
        return found

    def kill_all(self, hostname):
        r = self._record(hostname)
        if r is None:
            return False
        # pkill exits 1 when nothing matched. That is still a clean host.
        rc, _, err = self._ssh(r.ip or hostname, f"pkill -f {shlex.quote(self.process_marker)}")
        if rc not in (0, 1):
            log.warning("KILL FAILED host=%s err=%s", hostname, err)
            return False
        return True
