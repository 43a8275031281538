import json
import logging
import threading
import time

import pika

from .config import EVENTS_EXCHANGE, RABBITMQ_CONNECT_RETRIES, RABBITMQ_HOST

log = logging.getLogger(__name__)

# Tables whose per-user reads are cached and refreshed on change.
WATCHED_TABLES = ("orders", "cart_items", "wishlist_items")


class ChangeFeedConsumer:
    """
    Listens to the change feed and drops the matching cached reads.

    Purely additive: an event never writes anything, it only forces the next
    read of ``(table, user_id)`` to go back to the database.
    """

    def __init__(self, cache, host=RABBITMQ_HOST, exchange_name=EVENTS_EXCHANGE,
                 retries=RABBITMQ_CONNECT_RETRIES, retry_delay=5):
        self.cache = cache
        self.host = host
        self.exchange_name = exchange_name
        self.retries = retries
        self.retry_delay = retry_delay
        self.connection = None
        self.channel = None
        self.queue_name = None

    def connect(self):
        """Connects to RabbitMQ and binds a private queue to the watched tables."""
        attempt = 0
        while True:
            attempt += 1
            try:
                self.connection = pika.BlockingConnection(
                    pika.ConnectionParameters(host=self.host, heartbeat=600, blocked_connection_timeout=300))
                self.channel = self.connection.channel()
                self.channel.exchange_declare(exchange=self.exchange_name, exchange_type="topic", durable=True)

                # Exclusive queue: every process keeps its own cache.
                result = self.channel.queue_declare(queue="", exclusive=True)
                self.queue_name = result.method.queue
                for table in WATCHED_TABLES:
                    self.channel.queue_bind(
                        exchange=self.exchange_name, queue=self.queue_name, routing_key=f"{table}.*"
                    )
                log.info("Change feed consumer connected to RabbitMQ")
                return
            except pika.exceptions.AMQPConnectionError:
                if attempt >= self.retries:
                    raise
                log.warning("RabbitMQ not ready, retrying in %ss...", self.retry_delay)
                time.sleep(self.retry_delay)

    def callback(self, ch, method, properties, body):
        try:
            event = json.loads(body)
        except ValueError:
            log.warning("Discarding malformed change event on '%s'", method.routing_key)
            return

        table = event.get("table") or method.routing_key.split(".", 1)[0]
        user_id = event.get("user_id")
        dropped = self.cache.invalidate(table, user_id)
        log.info(" [x] Change received: %s -> %s (%d cached entries dropped)", method.routing_key, event, dropped)

    def start_listening(self):
        """Starts the consuming loop."""
        try:
            if not self.connection:
                self.connect()
        except pika.exceptions.AMQPConnectionError:
            log.exception("Change feed unavailable; cached reads will only refresh on local writes")
            return

        self.channel.basic_consume(queue=self.queue_name, on_message_callback=self.callback, auto_ack=True)
        log.info(" [*] Change feed consumer waiting for events...")
        self.channel.start_consuming()


def start_consumer_thread(cache):
    """Helper to run the consumer in a background thread."""
    consumer = ChangeFeedConsumer(cache)
    thread = threading.Thread(target=consumer.start_listening, daemon=True)
    thread.start()
    return consumer
