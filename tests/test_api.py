import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from fleet_backend.api import build_app
from fleet_backend.backends import BackendRegistry
from fleet_backend.backends.shadowsocks import ShadowsocksAdapter
from fleet_backend.config import EngineConfig, ShadowsocksConfig
from fleet_backend.engine import Engine
from fleet_backend.ipam import AddressPool
from fleet_backend.models import BackendError, BackendKind, PeerState, PeerStats
from fleet_backend.store import IdentityStore


async def _client(engine) -> TestClient:
    client = TestClient(TestServer(build_app(engine, manage_lifecycle=False)))
    await client.start_server()
    return client


@pytest.mark.asyncio
async def test_create_then_status(engine):
    client = await _client(engine)
    try:
        resp = await client.post("/peers", json={"name": "alice", "backendKind": "wireguard"})
        assert resp.status == 201
        peer_id = (await resp.json())["id"]

        resp = await client.get(f"/peers/{peer_id}")
        body = await resp.json()
        assert resp.status == 200
        assert body["state"] == "pending"
        assert body["address"] == "10.8.0.2/32"
        assert body["removalPending"] is False
    finally:
        await client.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("payload,status", [
    ({"name": "bad name!", "backendKind": "wireguard"}, 400),
    ({"name": "alice", "backendKind": "ipsec"}, 400),
    ({"name": "alice", "backendKind": "openvpn"}, 400),
    ({"name": "alice"}, 400),
    ([1, 2], 400),
])
async def test_create_validation(engine, payload, status):
    client = await _client(engine)
    try:
        resp = await client.post("/peers", json=payload)
        assert resp.status == status
        assert (await resp.json())["error"] == "ValidationError"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_duplicate_name_conflicts(engine):
    client = await _client(engine)
    try:
        await client.post("/peers", json={"name": "alice", "backendKind": "wireguard"})
        resp = await client.post("/peers", json={"name": "alice", "backendKind": "shadowsocks"})
        assert resp.status == 409
        assert (await resp.json())["error"] == "DuplicateName"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_pool_exhausted(engine):
    client = await _client(engine)
    try:
        for i in range(10):
            resp = await client.post("/peers", json={"name": f"ss{i}", "backendKind": "shadowsocks"})
            assert resp.status == 201
        resp = await client.post("/peers", json={"name": "ss10", "backendKind": "shadowsocks"})
        assert resp.status == 507
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_revoke_and_rotate(engine):
    client = await _client(engine)
    try:
        peer_id = engine.manager.add_peer("alice", "wireguard")

        resp = await client.post(f"/peers/{peer_id}/rotate")
        assert resp.status == 202
        assert engine.store.get(peer_id).key_version == 2

        resp = await client.delete(f"/peers/{peer_id}")
        assert resp.status == 202
        assert engine.store.get(peer_id).state is PeerState.REVOKED

        # un peer révoqué n'existe plus pour les opérations de gestion
        assert (await client.delete(f"/peers/{peer_id}")).status == 404
        assert (await client.post(f"/peers/{peer_id}/rotate")).status == 404
        status = await (await client.get(f"/peers/{peer_id}")).json()
        assert status["removalPending"] is True
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_unknown_peer(engine):
    client = await _client(engine)
    try:
        assert (await client.get("/peers/42")).status == 404
        assert (await client.delete("/peers/42")).status == 404
        assert (await client.get("/peers/abc")).status == 404
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_reconcile_list_and_client_config(engine):
    client = await _client(engine)
    try:
        peer_id = engine.manager.add_peer("alice", "wireguard")
        engine.manager.add_peer("bob", "shadowsocks")

        resp = await client.post("/reconcile")
        report = await resp.json()
        assert report["applied"] == ["shadowsocks-2-k1", "wireguard-1-k1"]

        resp = await client.get("/peers", params={"backend": "wireguard"})
        peers = (await resp.json())["peers"]
        assert [p["name"] for p in peers] == ["alice"]
        assert peers[0]["state"] == "active"

        resp = await client.get(f"/peers/{peer_id}/config")
        assert resp.status == 200
        assert "Address = 10.8.0.2/32" in await resp.text()

        resp = await client.get(f"/peers/{peer_id}/qr")
        assert resp.content_type == "image/png"
        assert (await resp.read()).startswith(b"\x89PNG")
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_config_of_pending_peer_is_rejected(engine):
    client = await _client(engine)
    try:
        peer_id = engine.manager.add_peer("alice", "wireguard")
        assert (await client.get(f"/peers/{peer_id}/config")).status == 400
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_bearer_token(engine):
    engine.cfg.api.token = "s3cret"
    client = await _client(engine)
    try:
        assert (await client.get("/health")).status == 200
        assert (await client.get("/peers")).status == 401
        resp = await client.get("/peers", headers={"Authorization": "Bearer wrong"})
        assert resp.status == 401
        resp = await client.get("/peers", headers={"Authorization": "Bearer s3cret"})
        assert resp.status == 200
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_health_lists_backends(engine):
    client = await _client(engine)
    try:
        body = await (await client.get("/health")).json()
        assert body["status"] == "OK"
        assert body["backends"] == [BackendKind.SHADOWSOCKS.value, BackendKind.WIREGUARD.value]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_unreachable_backend_is_service_unavailable():
    outline = TestServer(web.Application())
    await outline.start_server()
    url = str(outline.make_url("/SECRET"))
    await outline.close()

    store = IdentityStore.open({BackendKind.SHADOWSOCKS: AddressPool.from_ports("shadowsocks", 20000, 20009)})
    registry = BackendRegistry()
    registry.register(ShadowsocksAdapter(ShadowsocksConfig(api_url=url, timeout=2.0)))
    engine = Engine(EngineConfig(shadowsocks=ShadowsocksConfig(api_url=url)), store, registry)
    pid = store.create("alice", BackendKind.SHADOWSOCKS)
    store.activate(pid, 1, "shadowsocks-1-k1")

    client = await _client(engine)
    try:
        for path in (f"/peers/{pid}/config", f"/peers/{pid}/qr", f"/peers/{pid}/stats"):
            resp = await client.get(path)
            assert resp.status == 503
            assert (await resp.json())["error"] == "BackendUnavailable"

        # vue flotte : le backend injoignable est signalé, pas d'erreur globale
        resp = await client.get("/stats")
        assert resp.status == 200
        assert (await resp.json()) == {"peers": [], "unavailable": ["shadowsocks"]}
        assert (await client.get("/stats", params={"backend": "shadowsocks"})).status == 503
    finally:
        await client.close()
        await registry.close()
        store.close()


@pytest.mark.asyncio
async def test_peer_and_fleet_stats(engine, wg_adapter, ss_adapter):
    client = await _client(engine)
    try:
        alice = engine.manager.add_peer("alice", "wireguard")
        engine.manager.add_peer("bob", "wireguard")
        await engine.reconciler.reconcile()
        wg_adapter.stats = {
            "wireguard-1-k1": PeerStats("wireguard-1-k1", rx_bytes=100, tx_bytes=50, connected=True),
        }

        resp = await client.get(f"/peers/{alice}/stats")
        assert resp.status == 200
        body = await resp.json()
        assert body["transferBytes"] == 150
        assert body["connected"] is True

        ss_adapter.stats_failure = BackendError.transient("outline down")
        resp = await client.get("/stats")
        body = await resp.json()
        assert resp.status == 200
        assert body["unavailable"] == ["shadowsocks"]
        assert [(p["name"], p["stats"]["transferBytes"]) for p in body["peers"]] == [("alice", 150), ("bob", None)]

        resp = await client.get("/stats", params={"backend": "openvpn"})
        assert resp.status == 400
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_stats_of_pending_peer(engine):
    client = await _client(engine)
    try:
        peer_id = engine.manager.add_peer("alice", "wireguard")
        # pas encore appliqué : compteurs vides, pas d'erreur
        body = await (await client.get(f"/peers/{peer_id}/stats")).json()
        assert body["peerRef"] == "wireguard-1-k1"
        assert body["rxBytes"] is None
        assert (await client.get("/peers/99/stats")).status == 404
    finally:
        await client.close()
