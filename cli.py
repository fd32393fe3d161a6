#!/usr/bin/env python3
# Swarmbatch CLI
# argparse. start, kill, status, plan, nodes.

# Auto-load .env before project modules read their settings
from dotenv import load_dotenv
load_dotenv()

import argparse
import json
import os
import sys
import time

import requests

from config import Config, setup_logging
from fleet import SimulatedFleet, SshFleet
from inventory import NodeInventory, TopologyError
from orchestrator import System, global_kill
from packer import Packer
from planner import BatchPlanner, select_targets

DEFAULT_API_URL = "http://localhost:8000"


def _api_url(args):
    return getattr(args, "api_url", None) or os.environ.get("SWARMBATCH_API_URL", DEFAULT_API_URL)


def _config(args):
    overrides = {}
    if getattr(args, "hosts_file", None):
        overrides["hosts_file"] = args.hosts_file
    return Config.from_env(**overrides)


def _build_fleet(args, config):
    if getattr(args, "simulate", False):
        return SimulatedFleet.for_config(config, process_ttl=getattr(args, "process_ttl", None))
    return SshFleet(config.hosts_file)


def _fail(message):
    print(f"Error: {message}", file=sys.stderr)
    sys.exit(1)


def cmd_start(args):
    """Boot the tick loop and the controller. Optionally serve the API alongside."""
    config = _config(args)
    if not os.path.exists(config.hosts_file):
        _fail(f"hosts file not found: {config.hosts_file}")
    setup_logging(config.log_file, config.log_level)

    system = System(config, _build_fleet(args, config))
    try:
        system.start()
    except ValueError as e:
        _fail(str(e))
    mode = "simulated" if args.simulate else "ssh"
    print(f"Swarmbatch started ({mode}) | hosts: {config.hosts_file} | gap {config.batch_gap_ms}ms")

    if args.serve:
        import uvicorn
        from api import bind_system

        print(f"Serving operator API on {args.bind}:{args.port}")
        uvicorn.run(bind_system(system), host=args.bind, port=args.port)
        system.stop()
        return

    try:
        while system.running:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nStopping...")
    system.stop()


def cmd_kill(args):
    """Global kill: clear the queue and terminate every worker on every node."""
    if args.local:
        config = _config(args)
        report = global_kill(_build_fleet(args, config))
        result = report.to_dict()
    else:
        url = f"{_api_url(args)}/kill"
        try:
            resp = requests.post(url, timeout=30)
            resp.raise_for_status()
        except requests.RequestException as e:
            _fail(f"could not reach Swarmbatch API at {url}: {e}")
        result = resp.json().get("kill", {})

    print(f"Killed {result.get('processes_killed', 0)} worker(s) on {result.get('hosts_cleaned', 0)} host(s)")
    print(f"  queue cleared: {result.get('queue_cleared', 0)} | remaining: {result.get('remaining', 0)}")
    if result.get("host_errors"):
        print(f"  failed hosts: {', '.join(result['host_errors'])}", file=sys.stderr)
        sys.exit(1)


def cmd_status(args):
    """Print the running system's metrics."""
    url = f"{_api_url(args)}/status"
    try:
        resp = requests.get(url, timeout=10)
        resp.raise_for_status()
    except requests.RequestException as e:
        _fail(f"could not reach Swarmbatch API at {url}: {e}")

    status = resp.json().get("status", {})
    if args.json:
        print(json.dumps(status, indent=2))
        return
    sched = status.get("scheduler", {})
    ctrl = status.get("controller", {})
    queue = status.get("queue", {})
    print(f"Running:        {status.get('running')}")
    print(f"Ticks:          {sched.get('ticks', 0)} ({sched.get('fatal_ticks', 0)} fatal)")
    print(f"Placement rate: {sched.get('placement_rate', 0):.1%} | unmet demand: {sched.get('unmet_demand', 0)}")
    print(f"Queue:          {queue.get('depth', 0)}/{queue.get('capacity', 0)} | dropped: {queue.get('dropped', 0)}")
    print(f"Launched:       {ctrl.get('launched', 0)} | rejected: {ctrl.get('rejected', 0)}")
    for reason, n in sorted(ctrl.get("rejections", {}).items()):
        if n:
            print(f"  {reason:>22}: {n}")


def cmd_plan(args):
    """Dry run of one tick: plan and pack, print placements, launch nothing."""
    config = _config(args)
    fleet = _build_fleet(args, config)
    inventory = NodeInventory(fleet, config)
    try:
        snapshot = inventory.refresh()
    except TopologyError as e:
        _fail(f"topology scan failed: {e}")

    player = fleet.player()
    capacity = snapshot.working_capacity()
    planner = BatchPlanner(config)
    targets = select_targets(snapshot.records, player, config.max_targets,
                             exclude={config.home_hostname})
    if not targets:
        print("No targets.")
        return

    requests_ = []
    for t in targets:
        fraction = planner.choose_fraction(t, player, capacity_limit=sum(capacity.values()))
        plan = planner.plan(t, player, fraction=fraction)
        if plan.skipped:
            print(f"  {t.hostname}: skipped ({plan.skip_reason})")
            continue
        print(f"  {t.hostname}: fraction {fraction:.2f} | {plan.total_threads} threads | cost {plan.total_cost}")
        requests_.extend(plan.requests)

    result = Packer().pack(requests_, capacity)
    for p in result.placements:
        r = p.request
        print(f"    [{r.stage.value:>2}] {r.kind.value:>6} x{r.thread_count:<5} -> {p.hostname} (delay {r.delay_ms}ms)")
    for u in result.unplaceable:
        r = u.request
        print(f"    [{r.stage.value:>2}] {r.kind.value:>6} x{r.thread_count:<5} UNPLACEABLE (needs {u.unmet_demand}, largest free {u.largest_free})")
    s = result.summary()
    print(f"Placed {s['placed']}/{s['planned']} ({s['placement_rate']:.0%}) | unmet demand {s['unmet_demand']}")


def cmd_nodes(args):
    """List nodes with capacity (home reserve applied)."""
    config = _config(args)
    inventory = NodeInventory(_build_fleet(args, config), config)
    try:
        snapshot = inventory.refresh()
    except TopologyError as e:
        _fail(f"topology scan failed: {e}")
    if not snapshot.nodes:
        print("No nodes.")
        return
    for n in sorted(snapshot.nodes, key=lambda n: (-n.free_capacity, n.hostname)):
        flag = "rooted" if n.rooted else "locked"
        print(f"  [{flag:>6}] {n.hostname} | {n.free_capacity} free / {n.max_capacity} max | reserved {n.reserved}")
    pools = snapshot.pools()
    print(f"Total free: {pools['total_free']} across {pools['nodes']} usable node(s)")


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="swarmbatch",
        description="Swarmbatch: batch scheduler for a fleet of memory-bounded nodes",
    )
    sub = parser.add_subparsers(dest="command")

    def fleet_args(p):
        p.add_argument("--hosts-file", dest="hosts_file", default=None,
                       help="Hosts file (default: SWARMBATCH_HOSTS_FILE or ./hosts.json)")
        p.add_argument("--simulate", action="store_true", help="Use the in-memory simulated fleet")

    # swarmbatch start
    p_start = sub.add_parser("start", help="Start the tick loop and the controller")
    fleet_args(p_start)
    p_start.add_argument("--process-ttl", dest="process_ttl", type=float, default=30.0,
                         help="Simulated worker lifetime in seconds")
    p_start.add_argument("--serve", action="store_true", help="Also serve the operator API")
    p_start.add_argument("--bind", default="127.0.0.1", help="API bind address")
    p_start.add_argument("--port", type=int, default=8000, help="API port")
    p_start.set_defaults(func=cmd_start)

    # swarmbatch kill
    p_kill = sub.add_parser("kill", help="Global kill: clear the queue, kill every worker")
    fleet_args(p_kill)
    p_kill.add_argument("--api-url", dest="api_url", default=None,
                        help="API base URL (default: SWARMBATCH_API_URL or localhost:8000)")
    p_kill.add_argument("--local", action="store_true",
                        help="Kill directly over the fleet instead of through the API")
    p_kill.set_defaults(func=cmd_kill)

    # swarmbatch status
    p_status = sub.add_parser("status", help="Show metrics from the running system")
    p_status.add_argument("--api-url", dest="api_url", default=None)
    p_status.add_argument("--json", action="store_true", help="Raw JSON")
    p_status.set_defaults(func=cmd_status)

    # swarmbatch plan
    p_plan = sub.add_parser("plan", help="Dry run one tick and print the placements")
    fleet_args(p_plan)
    p_plan.set_defaults(func=cmd_plan)

    # swarmbatch nodes
    p_nodes = sub.add_parser("nodes", help="List nodes and free capacity")
    fleet_args(p_nodes)
    p_nodes.set_defaults(func=cmd_nodes)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)
    args.func(args)


if __name__ == "__main__":
    main()
