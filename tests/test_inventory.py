"""Tests for the node inventory snapshot."""

import pytest

from conftest import make_node
from inventory import Node, NodeInventory, TopologyError


@pytest.fixture
def inventory(config, fleet_for):
    fleet = fleet_for([
        make_node("home", max_capacity=20_000, used_capacity=1_000),
        make_node("a", max_capacity=6_400, used_capacity=400),
        make_node("b", max_capacity=3_200),
        make_node("locked", max_capacity=9_999, rooted=False),
    ])
    return NodeInventory(fleet, config)


class TestNode:

    def test_free_capacity(self):
        assert Node("a", 1000, 300, True).free_capacity == 700

    def test_reserve_never_goes_negative(self):
        assert Node("home", 1000, 300, True, reserved=12_800).free_capacity == 0


class TestSnapshot:

    def test_home_reserve_applied(self, inventory):
        snap = inventory.refresh()
        assert snap.get("home").free_capacity == 20_000 - 1_000 - 12_800

    def test_working_capacity_rooted_only(self, inventory):
        cap = inventory.refresh().working_capacity()
        assert cap == {"home": 6_200, "a": 6_000, "b": 3_200}

    def test_working_capacity_is_a_copy(self, inventory):
        snap = inventory.refresh()
        cap = snap.working_capacity()
        cap["a"] = 0
        assert snap.working_capacity()["a"] == 6_000

    def test_snapshot_does_not_follow_fleet(self, inventory):
        snap = inventory.refresh()
        inventory.fleet.set_used("a", 6_400)
        assert snap.get("a").free_capacity == 6_000
        assert inventory.refresh().get("a").free_capacity == 0

    def test_pools(self, inventory):
        pools = inventory.refresh().pools()
        assert pools["nodes"] == 3
        assert pools["total_free"] == 6_200 + 6_000 + 3_200
        assert pools["largest_free"] == 6_200

    def test_fragmentation(self, inventory):
        inventory.fleet.set_used("b", 3_100)
        frag = inventory.refresh().fragmentation()
        assert frag["wasted"] == 100
        assert frag["fragmented_nodes"] == 1
        assert frag["total_nodes"] == 3

    def test_empty_before_refresh(self, inventory):
        assert inventory.list() == []
        assert inventory.snapshot.working_capacity() == {}


class TestLiveLookup:

    def test_lookup_bypasses_snapshot(self, inventory):
        inventory.refresh()
        inventory.fleet.set_used("b", 3_000)
        assert inventory.free_capacity("b") == 200

    def test_lookup_missing(self, inventory):
        assert inventory.lookup("ghost") is None
        assert inventory.free_capacity("ghost") == 0


class TestTopologyFailure:

    def test_scan_failure_is_topology_error(self, inventory):
        inventory.fleet.scan_error = ConnectionError("scan exploded")
        with pytest.raises(TopologyError, match="scan exploded"):
            inventory.refresh()

    def test_failed_scan_keeps_previous_snapshot(self, inventory):
        before = inventory.refresh()
        inventory.fleet.scan_error = ConnectionError("down")
        with pytest.raises(TopologyError):
            inventory.refresh()
        assert inventory.snapshot is before

    def test_duplicate_hostnames_keep_first(self, config):
        class DupFleet:
            def list_nodes(self):
                return [make_node("a", max_capacity=100), make_node("a", max_capacity=999)]

        snap = NodeInventory(DupFleet(), config).refresh()
        assert len(snap.nodes) == 1
        assert snap.get("a").max_capacity == 100
