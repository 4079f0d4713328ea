"""
Test fixtures for the notify layer.

The webhook receiver is a local aiohttp server; backoff sleeps are replaced
by an AsyncMock so retry tests run instantly and record their delays.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from trade_monitor.notify.dispatcher import DispatcherConfig, NotificationDispatcher
from trade_monitor.source.models import Trade


class WebhookReceiver:
    """
    Local webhook sink.

    ``responses`` is consumed one status per request; once empty,
    ``default_status`` is used. A status of None makes the handler hang
    longer than any test timeout.
    """

    def __init__(self):
        self.requests = []
        self.responses = []
        self.default_status = 200
        self.server = None

    @property
    def url(self) -> str:
        return str(self.server.make_url("/hook"))

    async def handle(self, request):
        body = await request.read()
        self.requests.append({"headers": dict(request.headers), "body": body})
        status = self.responses.pop(0) if self.responses else self.default_status
        if status is None:
            await asyncio.sleep(1)
            status = 200
        return web.json_response({"received": True}, status=status)


@pytest_asyncio.fixture
async def receiver():
    receiver = WebhookReceiver()
    app = web.Application()
    app.router.add_post("/hook", receiver.handle)
    receiver.server = TestServer(app)
    await receiver.server.start_server()
    yield receiver
    await receiver.server.close()


@pytest.fixture
def fake_sleep():
    return AsyncMock()


@pytest_asyncio.fixture
async def dispatcher(receiver, fake_sleep):
    config = DispatcherConfig(webhook_url=receiver.url, timeout=0.5, max_attempts=3)
    async with NotificationDispatcher(config, _sleep=fake_sleep) as dispatcher:
        yield dispatcher


@pytest_asyncio.fixture
async def signed_dispatcher(receiver, fake_sleep):
    config = DispatcherConfig(webhook_url=receiver.url, secret="s3cret", timeout=0.5)
    async with NotificationDispatcher(config, _sleep=fake_sleep) as dispatcher:
        yield dispatcher


@pytest.fixture
def open_trade():
    return Trade(
        id="T1",
        status="OPEN",
        symbol="BTCUSDT",
        direction="BUY",
        amount=10,
        open_price=115000.5,
        close_price=0,
        created_at="2024-05-01T12:00:00Z",
        is_demo=False,
        from_bot=True,
        result="OPEN",
        user_id=4242,
        pnl=0,
    )
