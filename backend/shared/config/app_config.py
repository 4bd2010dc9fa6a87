"""
Application Configuration
Static names shared by every fulfillment worker.
"""

from typing import Dict, List


class AppConfig:
    """
    Central registry of topic names, consumer groups, worker names and cache
    key patterns so producers and consumers never drift apart.

    Topic and group *values* used at runtime come from KafkaSettings (env
    overridable); these constants are the defaults and the documentation.
    """

    # ======================
    # Kafka Topics
    # ======================
    PURCHASE_CONFIRMED_TOPIC = "purchase-confirmed"
    PURCHASE_CREATED_TOPIC = "purchase-created"
    TRAINER_ALLOCATED_TOPIC = "trainer-allocated"
    DEAD_LETTER_TOPIC = "dead-letter-queue"

    # Kafka Consumer Groups
    PURCHASE_WORKER_GROUP = "purchase-creation-workers"
    ALLOCATION_WORKER_GROUP = "trainer-allocation-workers"
    SESSION_WORKER_GROUP = "session-scheduling-workers"
    CACHE_WORKER_GROUP = "cache-invalidation-workers"

    # ======================
    # Worker names (DLQ workerName, metrics label, envelope source)
    # ======================
    PURCHASE_WORKER = "purchase-worker"
    ALLOCATION_WORKER = "allocation-worker"
    SESSION_WORKER = "session-worker"
    CACHE_WORKER = "cache-worker"

    EVENT_SCHEMA_VERSION = "1.0"

    # ======================
    # Redis Key Patterns
    # ======================
    @staticmethod
    def get_home_cache_key(student_id: str) -> str:
        """Student home view cache key"""
        return f"home:{student_id}"

    @staticmethod
    def get_learning_cache_key(student_id: str) -> str:
        """Student learning view cache key"""
        return f"learning:{student_id}"

    @classmethod
    def get_student_cache_keys(cls, student_id: str) -> List[str]:
        return [cls.get_home_cache_key(student_id), cls.get_learning_cache_key(student_id)]

    # ======================
    # Postgres advisory lock keys
    # ======================
    @staticmethod
    def get_purchase_lock_key(student_id: str, course_id: str) -> str:
        """Text hashed by hashtext() for the purchase fallback advisory lock"""
        return f"purchase:{student_id}:{course_id}"

    @staticmethod
    def get_session_window_lock_key(allocation_id: str) -> str:
        """Text hashed by hashtext() while an allocation's window is topped up"""
        return f"session-window:{allocation_id}"

    SESSION_SWEEP_LOCK_KEY = "session-worker:top-up-sweep"

    @classmethod
    def get_all_topics(cls) -> List[str]:
        return [
            cls.PURCHASE_CONFIRMED_TOPIC,
            cls.PURCHASE_CREATED_TOPIC,
            cls.TRAINER_ALLOCATED_TOPIC,
            cls.DEAD_LETTER_TOPIC,
        ]

    @classmethod
    def get_config_summary(cls) -> Dict[str, object]:
        return {
            "topics": cls.get_all_topics(),
            "groups": [
                cls.PURCHASE_WORKER_GROUP,
                cls.ALLOCATION_WORKER_GROUP,
                cls.SESSION_WORKER_GROUP,
                cls.CACHE_WORKER_GROUP,
            ],
        }
