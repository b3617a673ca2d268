import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from fleet_backend.backends.shadowsocks import ShadowsocksAdapter
from fleet_backend.config import ShadowsocksConfig
from fleet_backend.errors import BackendUnavailable
from fleet_backend.models import Ack, ActualEntry, BackendError, BackendKind, ErrorKind, Peer


class FakeOutline:
    """API de management Outline réduite aux access keys."""

    def __init__(self):
        self.keys = {}
        self.fail_status = None
        self.omit_url = False
        self.requests = []
        self.transfer = {}

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/SECRET/access-keys", self.list_keys)
        app.router.add_put("/SECRET/access-keys/{id}", self.put_key)
        app.router.add_delete("/SECRET/access-keys/{id}", self.delete_key)
        app.router.add_get("/SECRET/metrics/transfer", self.metrics_transfer)
        return app

    def _failing(self):
        if self.fail_status is not None:
            return web.json_response({"message": "boom"}, status=self.fail_status)
        return None

    async def list_keys(self, request):
        self.requests.append(("GET", None))
        return self._failing() or web.json_response({"accessKeys": list(self.keys.values())})

    async def put_key(self, request):
        key_id = request.match_info["id"]
        body = await request.json()
        self.requests.append(("PUT", body))
        failing = self._failing()
        if failing is not None:
            return failing
        key = {"id": key_id, "name": body["name"], "port": body["port"], "method": body["method"]}
        if not self.omit_url:
            key["accessUrl"] = f"ss://secret@vpn.example.org:{body['port']}/?outline=1"
        self.keys[key_id] = key
        return web.json_response(key, status=201)

    async def delete_key(self, request):
        self.requests.append(("DELETE", None))
        failing = self._failing()
        if failing is not None:
            return failing
        if self.keys.pop(request.match_info["id"], None) is None:
            return web.json_response({"code": "NotFound"}, status=404)
        return web.Response(status=204)


    async def metrics_transfer(self, request):
        self.requests.append(("GET", "/metrics/transfer"))
        return self._failing() or web.json_response({"bytesTransferredByUserId": self.transfer})


def _peer(pid=1, port="20000"):
    return Peer(id=pid, name="alice", backend=BackendKind.SHADOWSOCKS, address=port)


def _adapter(server, **kwargs):
    cfg = ShadowsocksConfig(api_url=str(server.make_url("/SECRET")), timeout=2.0, **kwargs)
    return ShadowsocksAdapter(cfg)


@pytest.mark.asyncio
async def test_apply_creates_access_key_with_peer_ref_as_id():
    outline = FakeOutline()
    async with TestServer(outline.app()) as server:
        adapter = _adapter(server, data_limit_bytes=10_000_000)
        try:
            result = await adapter.apply_peer(_peer())
            assert isinstance(result, Ack)
            assert result.key_material == "shadowsocks-1-k1"

            put = [body for method, body in outline.requests if method == "PUT"]
            assert put == [{
                "name": "alice",
                "method": "chacha20-ietf-poly1305",
                "port": 20000,
                "limit": {"bytes": 10_000_000},
            }]
            assert await adapter.read_actual_state() == {ActualEntry("shadowsocks-1-k1", "20000")}
            assert (await adapter.client_config(_peer())).startswith("ss://")
        finally:
            await adapter.close()


@pytest.mark.asyncio
async def test_apply_is_idempotent():
    outline = FakeOutline()
    async with TestServer(outline.app()) as server:
        adapter = _adapter(server)
        try:
            await adapter.apply_peer(_peer())
            again = await adapter.apply_peer(_peer())
            assert again.detail == "already present"
            assert [m for m, _ in outline.requests].count("PUT") == 1
        finally:
            await adapter.close()


@pytest.mark.asyncio
async def test_foreign_keys_are_not_reported():
    outline = FakeOutline()
    outline.keys["0"] = {"id": "0", "name": "admin", "port": 443, "accessUrl": "ss://x"}
    async with TestServer(outline.app()) as server:
        adapter = _adapter(server)
        try:
            assert await adapter.read_actual_state() == set()
        finally:
            await adapter.close()


@pytest.mark.asyncio
async def test_remove_missing_key_is_success():
    outline = FakeOutline()
    async with TestServer(outline.app()) as server:
        adapter = _adapter(server)
        try:
            await adapter.apply_peer(_peer())
            assert isinstance(await adapter.remove_peer("shadowsocks-1-k1"), Ack)
            absent = await adapter.remove_peer("shadowsocks-1-k1")
            assert absent.detail == "absent"
        finally:
            await adapter.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("status,kind", [
    (500, ErrorKind.TRANSIENT),
    (503, ErrorKind.TRANSIENT),
    (400, ErrorKind.PERMANENT),
    (403, ErrorKind.PERMANENT),
])
async def test_http_errors_are_classified(status, kind):
    outline = FakeOutline()
    outline.fail_status = status
    async with TestServer(outline.app()) as server:
        adapter = _adapter(server)
        try:
            result = await adapter.apply_peer(_peer())
            assert isinstance(result, BackendError)
            assert result.kind is kind
        finally:
            await adapter.close()


@pytest.mark.asyncio
async def test_missing_access_url_is_not_an_ack():
    outline = FakeOutline()
    outline.omit_url = True
    async with TestServer(outline.app()) as server:
        adapter = _adapter(server)
        try:
            result = await adapter.apply_peer(_peer())
            assert isinstance(result, BackendError)
            assert result.kind is ErrorKind.PERMANENT
        finally:
            await adapter.close()


@pytest.mark.asyncio
async def test_unreachable_server_is_transient():
    outline = FakeOutline()
    server = TestServer(outline.app())
    await server.start_server()
    url = str(server.make_url("/SECRET"))
    await server.close()

    adapter = ShadowsocksAdapter(ShadowsocksConfig(api_url=url, timeout=2.0))
    try:
        result = await adapter.read_actual_state()
        assert isinstance(result, BackendError)
        assert result.kind is ErrorKind.TRANSIENT
    finally:
        await adapter.close()


@pytest.mark.asyncio
async def test_client_config_of_unreachable_server_is_unavailable():
    server = TestServer(FakeOutline().app())
    await server.start_server()
    url = str(server.make_url("/SECRET"))
    await server.close()

    adapter = ShadowsocksAdapter(ShadowsocksConfig(api_url=url, timeout=2.0))
    try:
        with pytest.raises(BackendUnavailable):
            await adapter.client_config(_peer())
    finally:
        await adapter.close()


@pytest.mark.asyncio
async def test_read_stats_uses_transfer_metrics():
    outline = FakeOutline()
    async with TestServer(outline.app()) as server:
        adapter = _adapter(server)
        try:
            await adapter.apply_peer(_peer())
            outline.transfer = {"shadowsocks-1-k1": 123456, "0": 99}

            stats = await adapter.read_stats()

            assert set(stats) == {"shadowsocks-1-k1"}
            assert stats["shadowsocks-1-k1"].transfer_bytes == 123456
            assert stats["shadowsocks-1-k1"].to_dict()["rxBytes"] is None

            outline.fail_status = 503
            result = await adapter.read_stats()
            assert isinstance(result, BackendError)
            assert result.kind is ErrorKind.TRANSIENT
        finally:
            await adapter.close()
