import json
import logging
import threading
import time

import pika

from ..config import EVENTS_EXCHANGE, RABBITMQ_CONNECT_RETRIES, RABBITMQ_HOST

log = logging.getLogger(__name__)


class ChangeFeedProducer:
    """
    Publishes row-level change events to the topic exchange.

    Routing keys are ``<table>.<event>`` (e.g. ``orders.INSERT``); the body
    carries the table, event, row id and owning user id. The connection is
    opened on first publish and reopened if it was lost. Publishing never
    waits on the broker: it makes a single connection attempt, and after a
    failed one it skips events until ``cooldown`` seconds have passed.
    """

    def __init__(self, host=RABBITMQ_HOST, exchange_name=EVENTS_EXCHANGE, exchange_type="topic",
                 retries=RABBITMQ_CONNECT_RETRIES, retry_delay=5, cooldown=30):
        self.host = host
        self.exchange_name = exchange_name
        self.exchange_type = exchange_type
        self.retries = retries
        self.retry_delay = retry_delay
        self.cooldown = cooldown
        self._retry_after = 0.0
        self.connection = None
        self.channel = None
        # BlockingConnection is not thread-safe; requests publish from a threadpool.
        self._lock = threading.Lock()

    def connect(self, retries=None):
        """Establishes a connection to RabbitMQ, retrying a bounded number of times."""
        retries = self.retries if retries is None else retries
        attempt = 0
        while True:
            attempt += 1
            try:
                parameters = pika.ConnectionParameters(
                    host=self.host, heartbeat=600, blocked_connection_timeout=300
                )
                self.connection = pika.BlockingConnection(parameters)
                self.channel = self.connection.channel()
                # Declare the exchange (durable ensures it survives restarts)
                self.channel.exchange_declare(
                    exchange=self.exchange_name,
                    exchange_type=self.exchange_type,
                    durable=True,
                )
                log.info("Connected to RabbitMQ exchange: %s", self.exchange_name)
                return
            except pika.exceptions.AMQPConnectionError:
                if attempt >= retries:
                    raise
                log.warning("RabbitMQ not ready yet, retrying in %ss...", self.retry_delay)
                time.sleep(self.retry_delay)

    def publish(self, table, event, row):
        """
        Publishes one change event.

        Args:
            table (str): The changed table (e.g. 'orders').
            event (str): INSERT, UPDATE, UPSERT or DELETE.
            row (dict): Must hold the row 'id' and owning 'user_id'.
        """
        routing_key = f"{table}.{event}"
        message = {"table": table, "event": event, "id": row.get("id"), "user_id": row.get("user_id")}
        with self._lock:
            if not self.connection or self.connection.is_closed:
                if time.monotonic() < self._retry_after:
                    log.debug("Change feed unavailable, dropping event '%s'", routing_key)
                    return
                try:
                    self.connect(retries=1)
                except pika.exceptions.AMQPError:
                    self._retry_after = time.monotonic() + self.cooldown
                    log.exception("Change feed unavailable, dropping events for %ss", self.cooldown)
                    return
            try:
                self.channel.basic_publish(
                    exchange=self.exchange_name,
                    routing_key=routing_key,
                    body=json.dumps(message),
                    properties=pika.BasicProperties(
                        delivery_mode=2,  # Make message persistent
                        content_type="application/json",
                    ),
                )
                log.info(" [x] Sent event '%s': %s", routing_key, message)
            except pika.exceptions.AMQPError:
                # The write is already committed; subscribers catch up on their next read.
                log.exception("Failed to publish change event '%s'", routing_key)

    def close(self):
        """Closes the connection cleanly."""
        with self._lock:
            if self.connection and not self.connection.is_closed:
                self.connection.close()
