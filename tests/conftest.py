"""
Shared test fixtures for integration tests.

This file provides fixtures that span multiple components,
unlike component-specific fixtures in src/trade_monitor/{component}/tests/conftest.py

Both ends of the pipeline are local aiohttp servers:
    - trades_api: paginated trades endpoint
    - webhook_sink: webhook receiver that records every POST
"""

import asyncio
import math

import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer


def trade_record(trade_id, status="OPEN", **overrides):
    """A trade record as the trades API returns it."""
    record = {
        "id": trade_id,
        "status": status,
        "symbol": "BTCUSDT",
        "direction": "BUY",
        "amount": 10,
        "openPrice": 115000,
        "closePrice": 0,
        "createdAt": "2024-05-01T12:00:00.000Z",
        "isDemo": False,
        "fromBot": True,
        "result": "OPEN",
        "userId": 4242,
        "pnl": 0,
    }
    record.update(overrides)
    return record


class TradesApi:
    """
    Paginated trades endpoint.

    ``records`` is the full trade list, split into pages of ``pageSize``.
    Pages listed in ``slow_pages`` answer after ``slow_delay`` seconds.
    """

    def __init__(self):
        self.records = []
        self.slow_pages = set()
        self.slow_delay = 1.0
        self.fail_all = False
        self.requests = []
        self.server = None

    @property
    def url(self) -> str:
        return str(self.server.make_url("/token/trades"))

    def add(self, trade_id, status="OPEN", **overrides):
        self.records.append(trade_record(trade_id, status, **overrides))

    def set_status(self, trade_id, status):
        for record in self.records:
            if record["id"] == trade_id:
                record["status"] = status

    async def handle(self, request):
        page = int(request.query.get("page", 1))
        page_size = int(request.query.get("pageSize", 1000))
        self.requests.append({"page": page, "headers": dict(request.headers)})

        if self.fail_all:
            return web.json_response({"message": "unavailable"}, status=503)
        if page in self.slow_pages:
            await asyncio.sleep(self.slow_delay)

        start = (page - 1) * page_size
        return web.json_response({
            "data": self.records[start:start + page_size],
            "count": len(self.records),
            "currentPage": page,
            "lastPage": max(math.ceil(len(self.records) / page_size), 1),
        })


class WebhookSink:
    """Webhook receiver; answers ``status`` to every POST."""

    def __init__(self):
        self.status = 200
        self.requests = []
        self.server = None

    @property
    def url(self) -> str:
        return str(self.server.make_url("/hook"))

    @property
    def events(self) -> list:
        return [r["json"] for r in self.requests]

    def trade_ids(self) -> list:
        return [e["data"]["trade"]["id"] for e in self.events]

    async def handle(self, request):
        body = await request.read()
        self.requests.append({
            "headers": dict(request.headers),
            "body": body,
            "json": await request.json(),
        })
        return web.json_response({"ok": self.status < 300}, status=self.status)


@pytest_asyncio.fixture
async def trades_api():
    api = TradesApi()
    app = web.Application()
    app.router.add_get("/token/trades", api.handle)
    api.server = TestServer(app)
    await api.server.start_server()
    yield api
    await api.server.close()


@pytest_asyncio.fixture
async def webhook_sink():
    sink = WebhookSink()
    app = web.Application()
    app.router.add_post("/hook", sink.handle)
    sink.server = TestServer(app)
    await sink.server.start_server()
    yield sink
    await sink.server.close()
