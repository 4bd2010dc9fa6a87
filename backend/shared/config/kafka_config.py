"""
Kafka client configuration for the fulfillment workers

Every worker produces with an idempotent producer and consumes with manual
offset commits: the offset is committed only after the database transaction
for the message has committed, so a crash in between causes redelivery that
the idempotency ledger absorbs.
"""

import uuid
from typing import Any, Dict, Optional

from shared.config.settings import KafkaSettings, get_settings


class KafkaEOSConfig:
    """
    Kafka configuration tuned for at-least-once delivery with idempotent effects

    Key Features:
    - Idempotent producers (broker-side deduplication of producer retries)
    - acks=all durability
    - Manual commit consumers reading committed data only
    """

    @staticmethod
    def _servers(kafka: Optional[KafkaSettings]) -> str:
        return (kafka or get_settings().kafka).kafka_servers

    @staticmethod
    def get_producer_config(
        service_name: str,
        instance_id: Optional[str] = None,
        kafka: Optional[KafkaSettings] = None,
    ) -> Dict[str, Any]:
        """
        Get producer configuration

        Args:
            service_name: Name of the service (e.g., 'purchase-worker')
            instance_id: Instance suffix for client.id
            kafka: Kafka settings (defaults to the global settings)

        Returns:
            Producer configuration dictionary
        """
        if instance_id is None:
            instance_id = str(uuid.uuid4())[:8]

        return {
            'bootstrap.servers': KafkaEOSConfig._servers(kafka),
            'client.id': f'{service_name}-producer-{instance_id}',

            # Durability settings
            'acks': 'all',
            'enable.idempotence': True,
            'max.in.flight.requests.per.connection': 5,

            # Performance optimization
            'compression.type': 'snappy',
            'linger.ms': 10,

            # Error handling
            'delivery.timeout.ms': 120000,
            'request.timeout.ms': 30000,
        }

    @staticmethod
    def get_consumer_config(
        service_name: str,
        group_id: str,
        kafka: Optional[KafkaSettings] = None,
        read_committed: bool = True,
    ) -> Dict[str, Any]:
        """
        Get consumer configuration

        Args:
            service_name: Name of the service
            group_id: Consumer group ID (one per worker type)
            kafka: Kafka settings (defaults to the global settings)
            read_committed: Only read committed messages

        Returns:
            Consumer configuration dictionary
        """
        return {
            'bootstrap.servers': KafkaEOSConfig._servers(kafka),
            'group.id': group_id,
            'client.id': f'{service_name}-consumer',

            # Offsets are committed by the worker after the DB commit
            'enable.auto.commit': False,
            'enable.auto.offset.store': False,
            'auto.offset.reset': 'earliest',

            # Session management
            'session.timeout.ms': 45000,
            'max.poll.interval.ms': 300000,
            'heartbeat.interval.ms': 3000,

            'isolation.level': 'read_committed' if read_committed else 'read_uncommitted',
        }


def create_producer(service_name: str, kafka: Optional[KafkaSettings] = None):
    """
    Create a Kafka producer for a worker

    Returns:
        Configured confluent_kafka.Producer
    """
    from confluent_kafka import Producer

    return Producer(KafkaEOSConfig.get_producer_config(service_name=service_name, kafka=kafka))


def create_consumer(service_name: str, group_id: str, kafka: Optional[KafkaSettings] = None):
    """
    Create a manual-commit Kafka consumer for a worker

    Returns:
        Configured confluent_kafka.Consumer
    """
    from confluent_kafka import Consumer

    return Consumer(KafkaEOSConfig.get_consumer_config(service_name=service_name, group_id=group_id, kafka=kafka))
