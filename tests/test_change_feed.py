import json
from types import SimpleNamespace

import pika
import pytest

from storefront.consumers import ChangeFeedConsumer
from storefront.context import QueryCache
from storefront.messaging.producer import ChangeFeedProducer


class FakeChannel:
    def __init__(self, fail=False):
        self.published = []
        self.fail = fail

    def basic_publish(self, exchange, routing_key, body, properties):
        if self.fail:
            raise pika.exceptions.AMQPChannelError("channel closed")
        self.published.append((exchange, routing_key, json.loads(body), properties))


def connected_producer(channel):
    producer = ChangeFeedProducer(host="localhost", exchange_name="events")
    producer.connection = SimpleNamespace(is_closed=False, close=lambda: None)
    producer.channel = channel
    return producer


def test_producer_publishes_row_change():
    channel = FakeChannel()
    producer = connected_producer(channel)

    producer.publish("orders", "INSERT", {"id": "o-1", "user_id": "u-1"})

    exchange, routing_key, body, properties = channel.published[0]
    assert (exchange, routing_key) == ("events", "orders.INSERT")
    assert body == {"table": "orders", "event": "INSERT", "id": "o-1", "user_id": "u-1"}
    assert properties.delivery_mode == 2
    assert properties.content_type == "application/json"


def test_producer_failures_do_not_propagate():
    producer = connected_producer(FakeChannel(fail=True))
    producer.publish("orders", "UPDATE", {"id": "o-1", "user_id": "u-1"})


def test_producer_gives_up_after_bounded_retries(monkeypatch):
    attempts = []

    def refuse(parameters):
        attempts.append(parameters)
        raise pika.exceptions.AMQPConnectionError("refused")

    monkeypatch.setattr(pika, "BlockingConnection", refuse)
    producer = ChangeFeedProducer(host="localhost", retries=3, retry_delay=0)
    with pytest.raises(pika.exceptions.AMQPConnectionError):
        producer.connect()
    assert len(attempts) == 3


def event(routing_key, payload):
    return SimpleNamespace(routing_key=routing_key), json.dumps(payload).encode()


def test_consumer_invalidates_matching_user_entries():
    cache = QueryCache()
    cache.get_or_load(("orders", "u-1"), lambda: ["stale"])
    cache.get_or_load(("orders", "u-2"), lambda: ["other"])
    cache.get_or_load(("cart_items", "u-1", "count"), lambda: 3)

    consumer = ChangeFeedConsumer(cache)
    method, body = event("orders.UPDATE", {"table": "orders", "event": "UPDATE", "id": "o-1", "user_id": "u-1"})
    consumer.callback(None, method, None, body)

    assert ("orders", "u-1") not in cache
    assert ("orders", "u-2") in cache
    assert ("cart_items", "u-1", "count") in cache
    assert cache.get_or_load(("orders", "u-1"), lambda: ["fresh"]) == ["fresh"]


def test_consumer_falls_back_to_routing_key_and_ignores_garbage():
    cache = QueryCache()
    cache.get_or_load(("wishlist_items", "u-1", "count"), lambda: 1)
    consumer = ChangeFeedConsumer(cache)

    consumer.callback(None, SimpleNamespace(routing_key="orders.INSERT"), None, b"not json")
    assert ("wishlist_items", "u-1", "count") in cache

    method, body = event("wishlist_items.DELETE", {"user_id": "u-1"})
    consumer.callback(None, method, None, body)
    assert ("wishlist_items", "u-1", "count") not in cache


def test_cache_invalidate_user():
    cache = QueryCache()
    cache.get_or_load(("orders", "u-1"), list)
    cache.get_or_load(("cart_items", "u-1", "count"), int)
    cache.get_or_load(("orders", "u-2"), list)

    assert cache.invalidate_user("u-1") == 2
    assert ("orders", "u-2") in cache


def test_invalidation_during_load_is_not_lost():
    cache = QueryCache()

    def load_while_order_changes():
        # The change lands after the read but before the result is cached.
        cache.invalidate("orders", "u-1")
        return ["stale"]

    assert cache.get_or_load(("orders", "u-1"), load_while_order_changes) == ["stale"]
    assert ("orders", "u-1") not in cache
    assert cache.get_or_load(("orders", "u-1"), lambda: ["fresh"]) == ["fresh"]
    assert ("orders", "u-1") in cache


def test_publish_does_not_wait_on_an_unreachable_broker(monkeypatch):
    attempts = []
    sleeps = []

    def refuse(parameters):
        attempts.append(parameters)
        raise pika.exceptions.AMQPConnectionError("refused")

    monkeypatch.setattr(pika, "BlockingConnection", refuse)
    monkeypatch.setattr("storefront.messaging.producer.time.sleep", sleeps.append)
    producer = ChangeFeedProducer(host="localhost", retries=5, retry_delay=5, cooldown=30)

    for _ in range(3):
        producer.publish("cart_items", "UPSERT", {"id": "c-1", "user_id": "u-1"})

    assert sleeps == []
    # One attempt, then the cooldown skips the rest.
    assert len(attempts) == 1


def test_publish_reconnects_after_cooldown(monkeypatch):
    attempts = []

    def refuse(parameters):
        attempts.append(parameters)
        raise pika.exceptions.AMQPConnectionError("refused")

    monkeypatch.setattr(pika, "BlockingConnection", refuse)
    producer = ChangeFeedProducer(host="localhost", cooldown=0)

    producer.publish("orders", "INSERT", {"id": "o-1", "user_id": "u-1"})
    producer.publish("orders", "INSERT", {"id": "o-2", "user_id": "u-1"})
    assert len(attempts) == 2
