import json

import httpx
import pytest

from app.dispatchers import HttpEmailDispatcher, HttpRecipientResolver, RedisLowStockAlertDispatcher


class FakeRedis:
    def __init__(self):
        self.published: list[tuple[str, str]] = []

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 1


async def test_low_stock_alert_is_published_to_inventory_events():
    redis = FakeRedis()

    await RedisLowStockAlertDispatcher(redis).send("prod-1", "var-1", 3)

    [(channel, message)] = redis.published
    assert channel == "inventory_events"
    event = json.loads(message)
    assert event["event_type"] == "LowStockDetected"
    assert event["data"]["product_id"] == "prod-1"
    assert event["data"]["variant_id"] == "var-1"
    assert event["data"]["current_stock"] == 3


async def test_email_dispatch_posts_order_and_recipient():
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"success": True})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        dispatcher = HttpEmailDispatcher(client, "https://functions.test/send-order-emails", "s3cret")
        await dispatcher.send("order-1", "cliente@example.com")

    [request] = requests
    assert request.method == "POST"
    assert request.headers["x-internal-secret"] == "s3cret"
    assert json.loads(request.content) == {"orderId": "order-1", "customerEmail": "cliente@example.com"}


async def test_email_dispatch_failure_raises():
    transport = httpx.MockTransport(lambda request: httpx.Response(500))

    async with httpx.AsyncClient(transport=transport) as client:
        dispatcher = HttpEmailDispatcher(client, "https://functions.test/send-order-emails", "s3cret")
        with pytest.raises(httpx.HTTPStatusError):
            await dispatcher.send("order-1", "cliente@example.com")


async def test_recipient_lookup_posts_user_id():
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"email": "conta@example.com"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        resolver = HttpRecipientResolver(client, "https://functions.test/get-user-email", "s3cret")
        email = await resolver.resolve("user-9")

    assert email == "conta@example.com"
    [request] = requests
    assert request.headers["x-internal-secret"] == "s3cret"
    assert json.loads(request.content) == {"userId": "user-9"}


async def test_recipient_lookup_for_unknown_user():
    transport = httpx.MockTransport(lambda request: httpx.Response(404))

    async with httpx.AsyncClient(transport=transport) as client:
        resolver = HttpRecipientResolver(client, "https://functions.test/get-user-email", "s3cret")
        assert await resolver.resolve("ghost") is None
