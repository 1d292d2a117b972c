import asyncio

from aiohttp.test_utils import TestClient, TestServer

from conftest import ACTOR_A, ACTOR_B, FakeEstimator, FakeSource, swap
from lastbuyer_bot import LastBuyerBot


def run_with_client(cfg, source, clock, scenario):
    async def classify(addr):
        return "v2"

    async def runner():
        bot = LastBuyerBot(cfg, source=source, estimator=FakeEstimator(), classifier=classify, clock=clock)
        await bot.initialize()
        app = await bot.create_api_app()
        async with TestClient(TestServer(app)) as client:
            return await scenario(bot, client)

    return asyncio.run(runner())


def test_status_returns_snapshot(cfg, clock):
    async def scenario(bot, client):
        resp = await client.get("/round/status")
        return resp.status, await resp.json()

    status, body = run_with_client(cfg, FakeSource(height=100), clock, scenario)
    assert status == 200
    assert body["poolType"] == "v2"
    assert body["nowMs"] == int(clock() * 1000)
    assert body["rounds"]["main"]["startBlock"] == "100"
    assert body["rounds"]["main"]["status"] == "active"
    assert body["winners"] == []


def test_sync_runs_reconciliation(cfg, clock):
    source = FakeSource([swap(101, 0, ACTOR_A), swap(102, 1, ACTOR_B)], height=100)

    async def scenario(bot, client):
        source.height = 102
        resp = await client.post("/round/sync")
        return resp.status, await resp.json()

    status, body = run_with_client(cfg, source, clock, scenario)
    assert status == 200
    assert "errors" not in body
    assert body["rounds"]["main"]["buys"] == 2
    assert body["rounds"]["main"]["lastBuyer"] == ACTOR_B
    assert body["rounds"]["main"]["lastScannedBlock"] == "102"
    assert body["swaps"][0]["blockNumber"] == "102"


def test_sync_reports_round_errors(cfg, clock):
    source = FakeSource(height=100)

    async def scenario(bot, client):
        source.height = 104
        source.failing_blocks = {100}
        resp = await client.post("/round/sync")
        return resp.status, await resp.json()

    status, body = run_with_client(cfg, source, clock, scenario)
    assert status == 200
    assert set(body["errors"]) == {"main", "hourly"}
    assert body["rounds"]["main"]["lastScannedBlock"] == "100"


def test_upstream_failure_returns_last_good_snapshot(cfg, clock):
    source = FakeSource([swap(101, 0, ACTOR_A)], height=100)

    async def scenario(bot, client):
        source.height = 101
        await client.post("/round/sync")
        source.height_fails = True
        resp = await client.post("/round/sync")
        return resp.status, await resp.json()

    status, body = run_with_client(cfg, source, clock, scenario)
    assert status == 502
    assert "eth_blockNumber" in body["error"]
    assert body["rounds"]["main"]["buys"] == 1


def test_close_validates_round_id(cfg, clock):
    source = FakeSource(height=100)

    async def scenario(bot, client):
        bad = await client.post("/round/close", json={"id": "weekly"})
        missing = await client.post("/round/close", data="not json")
        return bad.status, await bad.json(), missing.status

    bad_status, bad_body, missing_status = run_with_client(cfg, source, clock, scenario)
    assert bad_status == 400
    assert "Invalid round id" in bad_body["error"]
    assert missing_status == 400
    assert source.calls == []


def test_close_declares_winner_once_due(cfg, clock):
    source = FakeSource([swap(101, 0, ACTOR_A), swap(101, 5, ACTOR_B)], height=100)

    async def scenario(bot, client):
        clock.advance(60)
        source.height = 103
        resp = await client.post("/round/close", json={"id": "main"})
        return resp.status, await resp.json()

    status, body = run_with_client(cfg, source, clock, scenario)
    assert status == 200
    assert body["winners"][0]["wallet"] == ACTOR_B
    assert body["winners"][0]["roundId"] == "main"
    assert body["rounds"]["main"]["startBlock"] == "103"
    assert body["rounds"]["main"]["buys"] == 0
    assert body["rounds"]["hourly"]["lastScannedBlock"] == "100"


def test_health(cfg, clock):
    async def scenario(bot, client):
        resp = await client.get("/health")
        return await resp.json()

    body = run_with_client(cfg, FakeSource(height=100), clock, scenario)
    assert body["ok"] is True
    assert body["initialized"] is True
    assert body["gateBusy"] is False
    assert body["lastBlock"] == "100"


def test_cors_headers_when_configured(cfg, clock):
    cfg.cors_allow_origins = ["https://lastbuyer.example"]

    async def scenario(bot, client):
        resp = await client.get("/round/status", headers={"Origin": "https://lastbuyer.example"})
        other = await client.get("/round/status", headers={"Origin": "https://evil.example"})
        return resp.headers.get("Access-Control-Allow-Origin"), other.headers.get("Access-Control-Allow-Origin")

    allowed, denied = run_with_client(cfg, FakeSource(height=100), clock, scenario)
    assert allowed == "https://lastbuyer.example"
    assert denied is None
