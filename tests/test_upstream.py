import pytest

from upstream_sync.core.errors import PeerPoolError, PoolRebuildFailure
from upstream_sync.models.schemas import Address, GroupConfig, ServerDescriptor
from upstream_sync.services.diff import servers_changed
from upstream_sync.services.peers import build_round_robin
from upstream_sync.services.serverlist import parse_server_list
from upstream_sync.services.upstream import PoolSwapController, UpstreamGroup


def _server(name, *ips, **opts):
    port = int(name.rsplit(":", 1)[1]) if ":" in name else 80
    return ServerDescriptor(name=name, addrs=tuple(Address(host=ip, port=port) for ip in ips), **opts)


A = _server("a.internal:80", "10.0.0.1", "10.0.0.2", weight=2)
B = _server("10.0.0.3:80", "10.0.0.3")
C = _server("10.0.0.4:80", "10.0.0.4", backup=True)


# --- diff --------------------------------------------------------------------

def test_same_set_is_unchanged():
    assert not servers_changed([A, B], [A, B])
    assert not servers_changed([], [])


def test_order_of_servers_and_addresses_does_not_matter():
    reordered = _server("a.internal:80", "10.0.0.2", "10.0.0.1", weight=2)
    assert not servers_changed([A, B], [B, reordered])
    assert not servers_changed([B, reordered], [A, B])


@pytest.mark.parametrize(
    "new",
    [
        [A],
        [A, B, C],
        [A.model_copy(update={"weight": 3}), B],
        [A, B.model_copy(update={"down": True})],
        [A, B.model_copy(update={"max_conns": 5})],
        [A, B.model_copy(update={"backup": True})],
        [_server("a.internal:80", "10.0.0.1", "10.0.0.9", weight=2), B],
        [_server("a.internal:80", "10.0.0.1", weight=2), B],
    ],
)
def test_any_difference_is_a_change_both_ways(new):
    assert servers_changed([A, B], new)
    assert servers_changed(new, [A, B])


# --- pool ----------------------------------------------------------------------

def test_pool_has_one_peer_per_address_and_a_backup_tier():
    pool = build_round_robin("web", [A, B, C], generation=4)
    assert [p.addr.host for p in pool.peers] == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]
    assert [p.addr.host for p in pool.backup] == ["10.0.0.4"]
    assert pool.total_weight == 5
    assert pool.generation == 4


def test_smooth_weighted_round_robin():
    heavy = _server("10.0.0.1:80", "10.0.0.1", weight=3)
    light = _server("10.0.0.2:80", "10.0.0.2")
    pool = build_round_robin("web", [heavy, light])
    picks = [pool.pick().addr.host for _ in range(8)]
    assert picks.count("10.0.0.1") == 6
    assert picks.count("10.0.0.2") == 2
    # smooth: the light peer is not starved for three picks in a row at the start
    assert picks[:4].count("10.0.0.2") == 1
    assert pool.request_count == 8


def test_down_peers_are_skipped_and_backup_used_when_all_down():
    down = _server("10.0.0.1:80", "10.0.0.1", down=True)
    pool = build_round_robin("web", [down, C])
    assert pool.pick().addr.host == "10.0.0.4"


def test_only_backup_servers_cannot_form_a_pool():
    with pytest.raises(PeerPoolError):
        build_round_robin("web", [C])


# --- swap ----------------------------------------------------------------------

def test_apply_swaps_pool_and_bumps_generation():
    group = UpstreamGroup.from_config(GroupConfig(upstream="web", serverlist="web-list"))
    assert group.name == "web-list"
    swap = PoolSwapController()

    assert swap.apply(group, [A, B])
    first = group.pool
    assert group.generation == 1
    assert first.generation == 1
    assert len(first.peers) == 3

    assert swap.apply(group, [A])
    assert group.generation == 2
    assert group.pool is not first
    assert group.servers == (A,)
    # a reader still holding the old pool can keep using it
    assert first.pick() is not None


def test_apply_same_set_twice_is_a_no_op():
    group = UpstreamGroup("web")
    swap = PoolSwapController()
    swap.apply(group, [A, B])
    pool = group.pool

    assert not swap.apply(group, [B, A])
    assert group.pool is pool
    assert group.generation == 1


def test_failed_rebuild_keeps_previous_pool():
    group = UpstreamGroup("web")
    swap = PoolSwapController()
    swap.apply(group, [A, B])
    pool, servers = group.pool, group.servers

    with pytest.raises(PoolRebuildFailure):
        swap.apply(group, [C])
    assert group.pool is pool
    assert group.servers == servers
    assert group.generation == 1


def test_builder_out_of_memory_is_rolled_back():
    def builder(upstream, servers, generation):
        raise MemoryError()

    group = UpstreamGroup("web")
    with pytest.raises(PoolRebuildFailure):
        PoolSwapController(builder).apply(group, [A])
    assert group.pool is None
    assert group.generation == 0


def test_status_and_detail():
    group = UpstreamGroup("web")
    PoolSwapController().apply(group, [B, C])
    group.set_validators('"v2"', 784111777)

    status = group.status()
    assert status.servers == 2
    assert status.etag == '"v2"'
    assert status.last_modified == "Sun, 06 Nov 1994 08:49:37 GMT"

    detail = group.detail()
    assert detail.peers == 1
    assert detail.backup_peers == 1
    assert detail.lines[1].endswith("backup;")

    group.reset_validators()
    assert group.status().etag is None
    assert group.last_modified is None


def test_duplicate_lines_count_towards_the_diff():
    twice = parse_server_list("server 10.0.0.1:80;\nserver 10.0.0.1:80;\n")
    distinct = parse_server_list("server 10.0.0.1:80;\nserver 10.0.0.2:80;\n")
    assert servers_changed(twice, distinct)
    assert servers_changed(distinct, twice)
    assert not servers_changed(twice, list(reversed(twice)))


def test_duplicate_addresses_compare_as_multisets():
    once_each = _server("a.internal:80", "10.0.0.1", "10.0.0.2")
    first_twice = _server("a.internal:80", "10.0.0.1", "10.0.0.1")
    assert not once_each.matches(first_twice)
    assert not first_twice.matches(once_each)


def test_change_away_from_duplicates_is_applied():
    group = UpstreamGroup("web")
    swap = PoolSwapController()
    swap.apply(group, parse_server_list("server 10.0.0.1:80;\nserver 10.0.0.1:80;\n"))

    assert swap.apply(group, parse_server_list("server 10.0.0.1:80;\nserver 10.0.0.2:80;\n"))
    assert sorted(p.addr.host for p in group.pool.peers) == ["10.0.0.1", "10.0.0.2"]
