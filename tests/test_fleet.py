"""Tests for the fleet adapters: hosts file, simulated fleet, SSH fleet."""

import json
import subprocess

import pytest

import fleet as fleet_mod
from conftest import make_node
from fleet import NodeRecord, SimulatedFleet, SshFleet, load_hosts_file

HACK = "/hack/workers/hack.js"


# ── Hosts file ────────────────────────────────────────────────────────


class TestHostsFile:

    def test_from_dict_gb(self):
        r = NodeRecord.from_dict({"hostname": "a", "max_gb": 64, "used_gb": 1.75, "rooted": True})
        assert r.max_capacity == 6_400
        assert r.used_capacity == 175

    def test_from_dict_units_win(self):
        r = NodeRecord.from_dict({"hostname": "a", "max_capacity": 123, "max_gb": 64})
        assert r.max_capacity == 123

    def test_load_full_document(self, tmp_path):
        path = tmp_path / "hosts.json"
        path.write_text(json.dumps({
            "player": {"skill": 250, "hack_money_mult": 1.5},
            "nodes": [{"hostname": "a", "max_gb": 8, "rooted": True}],
        }))
        records, player = load_hosts_file(str(path))
        assert [r.hostname for r in records] == ["a"]
        assert player.skill == 250
        assert player.hack_money_mult == 1.5

    def test_load_bare_list(self, tmp_path):
        path = tmp_path / "hosts.json"
        path.write_text(json.dumps([{"hostname": "a"}, {"hostname": "b"}]))
        records, player = load_hosts_file(str(path))
        assert len(records) == 2
        assert player.skill == 1


# ── Simulated fleet ───────────────────────────────────────────────────


class TestSimulatedFleet:

    def _fleet(self, **kw):
        return SimulatedFleet(
            [make_node("a", max_capacity=1_000), make_node("locked", max_capacity=1_000, rooted=False)],
            binary_costs={HACK: 170}, **kw,
        )

    def test_launch_needs_binary(self):
        f = self._fleet()
        assert f.launch(HACK, "a", 1, "t") == 0
        assert f.deploy(HACK, "a")
        assert f.launch(HACK, "a", 1, "t") == 1

    def test_deploy_refused_on_locked_node(self):
        assert self._fleet().deploy(HACK, "locked") is False

    def test_launch_refused_when_full(self):
        f = self._fleet()
        f.deploy(HACK, "a")
        assert f.launch(HACK, "a", 5, "t") > 0   # 850
        assert f.launch(HACK, "a", 1, "t") == 0  # 1020 > 1000
        assert f.node("a").used_capacity == 850

    def test_refuse_flag(self):
        f = self._fleet()
        f.deploy(HACK, "a")
        f.refuse_launches = True
        assert f.launch(HACK, "a", 1, "t") == 0

    def test_kill_all_frees_memory(self):
        f = self._fleet()
        f.deploy(HACK, "a")
        f.launch(HACK, "a", 2, "t")
        f.launch(HACK, "a", 3, "t")
        assert len(f.processes("a")) == 2
        assert f.kill_all("a")
        assert f.processes("a") == []
        assert f.node("a").used_capacity == 0

    def test_kill_all_unknown_host(self):
        assert self._fleet().kill_all("ghost") is False

    def test_ttl_reaps_processes(self):
        now = [100.0]
        f = self._fleet(process_ttl=10, clock=lambda: now[0])
        f.deploy(HACK, "a")
        f.launch(HACK, "a", 2, "t")
        now[0] = 105.0
        assert len(f.processes()) == 1
        now[0] = 111.0
        assert f.processes() == []
        assert f.node("a").used_capacity == 0

    def test_records_are_copies(self):
        f = self._fleet()
        f.list_nodes()[0].used_capacity = 999
        assert f.node("a").used_capacity == 0

    def test_scan_error(self):
        f = self._fleet()
        f.scan_error = RuntimeError("boom")
        with pytest.raises(RuntimeError):
            f.list_nodes()

    def test_for_config_charges_worker_costs(self, config):
        f = SimulatedFleet.for_config(config, [make_node("a", max_capacity=1_000)])
        f.deploy(HACK, "a")
        assert f.launch(HACK, "a", 2, "t")
        assert f.node("a").used_capacity == 2 * config.hack_cost

    def test_for_config_reads_hosts_file(self, config):
        with open(config.hosts_file, "w") as fh:
            json.dump([{"hostname": "a", "max_gb": 8, "rooted": True}], fh)
        f = SimulatedFleet.for_config(config)
        f.deploy(HACK, "a")
        f.launch(HACK, "a", 1, "t")
        assert f.node("a").used_capacity == config.hack_cost

    def test_remove_node_drops_processes(self):
        f = self._fleet()
        f.deploy(HACK, "a")
        f.launch(HACK, "a", 1, "t")
        f.remove_node("a")
        assert f.node("a") is None
        assert f.processes() == []


# ── SSH fleet ─────────────────────────────────────────────────────────


class _Completed:
    def __init__(self, returncode=0, stdout="", stderr=""):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


FREE_OUTPUT = """              total        used        free      shared  buff/cache   available
Mem:           8192        1024        5000          10        2000        7000
Swap:             0           0           0"""


@pytest.fixture
def ssh_fleet(tmp_path):
    path = tmp_path / "hosts.json"
    path.write_text(json.dumps({"nodes": [
        {"hostname": "box1", "ip": "10.0.0.5", "rooted": True},
    ]}))
    return SshFleet(str(path), binaries_dir=str(tmp_path / "workers"))


class TestSshFleet:

    def test_parse_free(self):
        assert fleet_mod._parse_free_mb(FREE_OUTPUT) == (8192, 1024)

    def test_parse_free_garbage(self):
        with pytest.raises(RuntimeError):
            fleet_mod._parse_free_mb("nope")

    def test_list_nodes_probes_memory(self, ssh_fleet, monkeypatch):
        seen = []

        def fake_run(cmd, **kwargs):
            seen.append(cmd)
            return _Completed(stdout=FREE_OUTPUT)

        monkeypatch.setattr(subprocess, "run", fake_run)
        nodes = ssh_fleet.list_nodes()
        assert nodes[0].max_capacity == 800    # 8 GiB
        assert nodes[0].used_capacity == 100   # 1 GiB
        assert seen[0][-1] == "free -m"
        assert seen[0][-2].endswith("@10.0.0.5")
        assert "BatchMode=yes" in seen[0]

    def test_unreachable_host_comes_back_unrooted(self, ssh_fleet, monkeypatch):
        monkeypatch.setattr(subprocess, "run", lambda cmd, **kw: _Completed(255, "", "no route"))
        node = ssh_fleet.list_nodes()[0]
        assert node.rooted is False
        assert node.max_capacity == 0

    def test_ssh_settings_read_at_construction(self, tmp_path, monkeypatch):
        path = tmp_path / "hosts.json"
        path.write_text(json.dumps([{"hostname": "box1", "ip": "10.0.0.5", "rooted": True}]))
        monkeypatch.setenv("SWARMBATCH_SSH_USER", "ops")
        monkeypatch.setenv("SWARMBATCH_SSH_KEY_PATH", "/keys/ops")
        seen = []

        def fake_run(cmd, **kwargs):
            seen.append(cmd)
            return _Completed(stdout=FREE_OUTPUT)

        monkeypatch.setattr(subprocess, "run", fake_run)
        SshFleet(str(path)).list_nodes()
        assert seen[0][-2] == "ops@10.0.0.5"
        assert seen[0][seen[0].index("-i") + 1] == "/keys/ops"

    def test_explicit_ssh_settings_win(self, ssh_fleet, monkeypatch):
        monkeypatch.setenv("SWARMBATCH_SSH_USER", "ops")
        f = SshFleet(ssh_fleet.hosts_file, ssh_user="deploy")
        assert f.ssh_user == "deploy"

    def test_ssh_timeout_is_rc_124(self, monkeypatch):
        def fake_run(cmd, **kwargs):
            raise subprocess.TimeoutExpired(cmd, kwargs.get("timeout"))

        monkeypatch.setattr(subprocess, "run", fake_run)
        rc, _, err = fleet_mod.ssh_exec("10.0.0.5", "true", timeout=1)
        assert rc == 124
        assert "timed out" in err

    def test_launch_returns_pid(self, ssh_fleet, monkeypatch):
        cmds = []

        def fake_run(cmd, **kwargs):
            cmds.append(cmd[-1])
            return _Completed(stdout="4242")

        monkeypatch.setattr(subprocess, "run", fake_run)
        assert ssh_fleet.launch(HACK, "box1", 7, "n00dles", 1200) == 4242
        assert "--threads 7" in cmds[0]
        assert "n00dles 1200" in cmds[0]
        assert "--marker swarmbatch-worker" in cmds[0]

    def test_launch_failure_is_zero(self, ssh_fleet, monkeypatch):
        monkeypatch.setattr(subprocess, "run", lambda cmd, **kw: _Completed(1, "", "oom"))
        assert ssh_fleet.launch(HACK, "box1", 1, "t", 0) == 0

    def test_launch_unknown_host(self, ssh_fleet):
        assert ssh_fleet.launch(HACK, "ghost", 1) == 0

    def test_unsafe_binary_path_rejected(self, ssh_fleet):
        with pytest.raises(ValueError):
            ssh_fleet.launch("/tmp/x; rm -rf /", "box1", 1)

    def test_has_binary(self, ssh_fleet, monkeypatch):
        monkeypatch.setattr(subprocess, "run", lambda cmd, **kw: _Completed(0))
        assert ssh_fleet.has_binary("box1", HACK)
        monkeypatch.setattr(subprocess, "run", lambda cmd, **kw: _Completed(1))
        assert not ssh_fleet.has_binary("box1", HACK)

    def test_deploy_missing_local_binary(self, ssh_fleet):
        assert ssh_fleet.deploy(HACK, "box1") is False

    def test_deploy_copies_with_scp(self, ssh_fleet, tmp_path, monkeypatch):
        local = tmp_path / "workers" / "hack" / "workers" / "hack.js"
        local.parent.mkdir(parents=True)
        local.write_text("// worker")
        cmds = []

        def fake_run(cmd, **kwargs):
            cmds.append(cmd)
            return _Completed(0)

        monkeypatch.setattr(subprocess, "run", fake_run)
        assert ssh_fleet.deploy(HACK, "box1")
        scp = [c for c in cmds if c[0] == "scp"]
        assert len(scp) == 1
        assert scp[0][-1].endswith(f"@10.0.0.5:{HACK}")

    def test_processes_parses_pgrep(self, ssh_fleet, monkeypatch):
        out = "101 /hack/workers/hack.js --marker swarmbatch-worker\n102 /hack/workers/grow.js --marker swarmbatch-worker"
        monkeypatch.setattr(subprocess, "run", lambda cmd, **kw: _Completed(0, out))
        procs = ssh_fleet.processes("box1")
        assert [p["pid"] for p in procs] == [101, 102]

    def test_kill_all_tolerates_no_match(self, ssh_fleet, monkeypatch):
        monkeypatch.setattr(subprocess, "run", lambda cmd, **kw: _Completed(1))
        assert ssh_fleet.kill_all("box1")

    def test_kill_all_failure(self, ssh_fleet, monkeypatch):
        monkeypatch.setattr(subprocess, "run", lambda cmd, **kw: _Completed(255, "", "refused"))
        assert ssh_fleet.kill_all("box1") is False
