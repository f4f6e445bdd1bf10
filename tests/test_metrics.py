import pytest

from bmlb.metrics import AllocatorStats, BGPStats, MetricVec


@pytest.fixture
def vec():
    return MetricVec(subsystem="bgp", name="session_up", help="h", label_name="peer")


def test_full_name(vec):
    assert vec.full_name == "metallb_bgp_session_up"


def test_set_and_get(vec):
    vec.set("a", 7)
    assert vec.get("a") == 7.0


def test_absent_reads_zero(vec):
    assert vec.get("missing") == 0.0
    assert "missing" not in vec


def test_inc_accumulates(vec):
    vec.inc("a")
    vec.inc("a", 2)
    vec.inc("b", 0)
    assert vec.get("a") == 3.0
    assert "b" in vec


def test_delete(vec):
    vec.set("a", 1)
    assert vec.delete("a") is True
    assert "a" not in vec
    assert vec.delete("a") is False


def test_allocator_stats_names():
    stats = AllocatorStats()
    assert stats.pool_capacity.full_name == "metallb_allocator_addresses_total"
    assert stats.pool_active.full_name == "metallb_allocator_addresses_in_use_total"
    assert stats.pool_allocated.full_name == "metallb_allocator_services_allocated_total"


def test_allocator_delete_pool():
    stats = AllocatorStats()
    stats.pool_capacity.set("p", 4)
    stats.pool_active.set("p", 1)
    stats.delete_pool("p")
    assert "p" not in stats.pool_capacity
    assert "p" not in stats.pool_active


def test_bgp_new_session_creates_all_samples():
    stats = BGPStats()
    stats.new_session("peer1")
    for vec in (stats.session_up_gauge, stats.prefixes, stats.pending, stats.updates_sent):
        assert "peer1" in vec
        assert vec.get("peer1") == 0.0


def test_bgp_session_up_down():
    stats = BGPStats()
    stats.advertised_prefixes("p", 5)
    stats.session_up("p")
    assert stats.session_up_gauge.get("p") == 1.0
    assert stats.prefixes.get("p") == 0.0
    stats.session_down("p")
    assert stats.session_up_gauge.get("p") == 0.0


def test_bgp_update_sent_counts():
    stats = BGPStats()
    stats.update_sent("p")
    stats.update_sent("p")
    assert stats.updates_sent.get("p") == 2.0


def test_bgp_prefix_gauges():
    stats = BGPStats()
    stats.pending_prefixes("p", 3)
    assert stats.pending.get("p") == 3.0
    assert stats.prefixes.get("p") == 0.0
    stats.advertised_prefixes("p", 2)
    assert stats.pending.get("p") == 2.0
    assert stats.prefixes.get("p") == 2.0


def test_bgp_delete_session():
    stats = BGPStats()
    stats.new_session("p")
    stats.delete_session("p")
    assert "p" not in stats.session_up_gauge
    assert "p" not in stats.updates_sent