import pytest

from fleet_backend.errors import BackendUnavailable, NotFound, ValidationError
from fleet_backend.lifecycle import parse_backend
from fleet_backend.models import BackendError, BackendKind, Fault, PeerState, PeerStats


class Counter:
    def __init__(self):
        self.calls = 0

    def __call__(self):
        self.calls += 1


@pytest.mark.parametrize("name", ["alice", "Bob_2", "x" * 50, "a-b"])
def test_valid_names(manager, name):
    assert manager.add_peer(name, "wireguard") == 1


@pytest.mark.parametrize("name", ["", "x" * 51, "bad name", "é", "a/b", None])
def test_invalid_names(manager, name):
    with pytest.raises(ValidationError):
        manager.add_peer(name, "wireguard")


def test_parse_backend():
    assert parse_backend("WireGuard") is BackendKind.WIREGUARD
    assert parse_backend(BackendKind.OPENVPN) is BackendKind.OPENVPN
    with pytest.raises(ValidationError):
        parse_backend("ipsec")


def test_mutations_trigger_reconciliation(manager):
    trigger = Counter()
    manager.set_trigger(trigger)

    pid = manager.add_peer("alice", "wireguard")
    manager.rotate_key(pid)
    manager.revoke_peer(pid)

    assert trigger.calls == 3


def test_add_does_not_wait_for_backend(manager, wg_adapter):
    pid = manager.add_peer("alice", "wireguard")
    assert manager.get_peer_status(pid).state is PeerState.PENDING
    assert wg_adapter.calls == []


def test_revoked_peer_is_not_found_for_management(manager):
    pid = manager.add_peer("alice", "wireguard")
    manager.revoke_peer(pid)

    with pytest.raises(NotFound):
        manager.revoke_peer(pid)
    with pytest.raises(NotFound):
        manager.rotate_key(pid)
    # le statut reste consultable pendant le nettoyage
    assert manager.get_peer_status(pid).removal_pending


def test_rotate_keeps_id_and_address(manager, store):
    pid = manager.add_peer("alice", "wireguard")
    before = store.get(pid)
    manager.rotate_key(pid)
    after = store.get(pid)

    assert after.id == before.id
    assert after.address == before.address
    assert after.key_version == before.key_version + 1


def test_list_peers_hides_revoked_by_default(manager):
    a = manager.add_peer("alice", "wireguard")
    manager.add_peer("bob", "shadowsocks")
    manager.revoke_peer(a)

    assert [p.name for p in manager.list_peers()] == ["bob"]
    assert [p.name for p in manager.list_peers(include_revoked=True)] == ["alice", "bob"]
    assert manager.list_peers(backend="wireguard") == []


@pytest.mark.asyncio
async def test_retry_clears_permanent_fault(manager, reconciler, wg_adapter, store):
    pid = manager.add_peer("alice", "wireguard")
    wg_adapter.apply_failures.append(BackendError.permanent("invalid key"))
    await reconciler.reconcile()
    assert store.get(pid).fault is Fault.PERMANENT

    # une passe de plus ne relance pas le peer
    await reconciler.reconcile()
    assert wg_adapter.calls == [("apply", "wireguard-1-k1")]

    manager.retry_peer(pid)
    await reconciler.reconcile()
    peer = store.get(pid)
    assert peer.state is PeerState.ACTIVE
    assert peer.fault is None


def test_retry_without_fault_is_rejected(manager):
    pid = manager.add_peer("alice", "wireguard")
    with pytest.raises(ValidationError):
        manager.retry_peer(pid)


@pytest.mark.asyncio
async def test_client_config_requires_active_peer(manager, reconciler):
    pid = manager.add_peer("alice", "wireguard")
    with pytest.raises(ValidationError):
        await manager.client_config(pid)

    await reconciler.reconcile()
    assert "10.8.0.2/32" in await manager.client_config(pid)

    png = await manager.client_qr_png(pid)
    assert png.startswith(b"\x89PNG")


@pytest.mark.asyncio
async def test_client_config_of_revoked_peer(manager, reconciler):
    pid = manager.add_peer("alice", "wireguard")
    await reconciler.reconcile()
    manager.revoke_peer(pid)
    with pytest.raises(NotFound):
        await manager.client_config(pid)


@pytest.mark.asyncio
async def test_peer_stats(manager, reconciler, wg_adapter):
    pid = manager.add_peer("alice", "wireguard")
    await reconciler.reconcile()
    wg_adapter.stats = {"wireguard-1-k1": PeerStats("wireguard-1-k1", rx_bytes=10, tx_bytes=5)}

    stats = await manager.peer_stats(pid)
    assert (stats.rx_bytes, stats.tx_bytes) == (10, 5)

    wg_adapter.stats_failure = BackendError.transient("wg0 is down")
    with pytest.raises(BackendUnavailable):
        await manager.peer_stats(pid)

    manager.revoke_peer(pid)
    with pytest.raises(NotFound):
        await manager.peer_stats(pid)


@pytest.mark.asyncio
async def test_fleet_stats_skips_revoked_and_unavailable(manager, reconciler, wg_adapter, ss_adapter):
    alice = manager.add_peer("alice", "wireguard")
    bob = manager.add_peer("bob", "wireguard")
    manager.add_peer("carol", "shadowsocks")
    await reconciler.reconcile()
    manager.revoke_peer(bob)
    ss_adapter.stats_failure = BackendError.transient("outline down")

    rows, unavailable = await manager.fleet_stats()

    assert [status.id for status, _ in rows] == [alice]
    assert unavailable == ["shadowsocks"]
    with pytest.raises(BackendUnavailable):
        await manager.fleet_stats("shadowsocks")
    with pytest.raises(ValidationError):
        await manager.fleet_stats("openvpn")
