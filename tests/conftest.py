"""Shared pytest configuration for the Swarmbatch test suite.

Ensures the project root is on sys.path so test files can import
source modules (planner, packer, controller, etc.) directly, and
provides small fleet builders used across the suite.
"""

import sys
from pathlib import Path

import pytest

# Add project root to sys.path so `import planner`, `from api import app`, etc. work
PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from config import Config  # noqa: E402
from fleet import NodeRecord, PlayerState, SimulatedFleet  # noqa: E402


def make_node(hostname, max_capacity=0, used_capacity=0, rooted=True, **extra):
    return NodeRecord(hostname=hostname, max_capacity=max_capacity,
                      used_capacity=used_capacity, rooted=rooted, **extra)


def make_target(hostname="n00dles", money_available=1_000_000, money_max=1_000_000,
                security=5.0, min_security=5.0, required_skill=1, server_growth=50.0,
                max_capacity=0):
    return NodeRecord(
        hostname=hostname, max_capacity=max_capacity, used_capacity=0, rooted=True,
        money_available=money_available, money_max=money_max, security=security,
        min_security=min_security, required_skill=required_skill, server_growth=server_growth,
    )


@pytest.fixture
def config(tmp_path):
    return Config(
        log_file=str(tmp_path / "swarmbatch.log"),
        hosts_file=str(tmp_path / "hosts.json"),
        enqueue_base_delay=0.0,
        tick_interval=0.05,
        min_tick_sleep=0.01,
        fatal_backoff=0.05,
        controller_poll_ms=5,
    )


@pytest.fixture
def player():
    return PlayerState(skill=100)


@pytest.fixture
def fleet_for(config, player):
    """Build a SimulatedFleet whose worker costs match the config."""

    def _build(records, **kwargs):
        kwargs.setdefault("player", player)
        return SimulatedFleet.for_config(config, records, **kwargs)

    return _build
