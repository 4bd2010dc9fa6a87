"""
Shared services module

Import services by their direct path so a worker only loads (and connects)
what it actually uses:
- shared.services.postgres_store
- shared.services.processed_event_registry
- shared.services.event_bus
- shared.services.dead_letter_publisher
- shared.services.event_worker
"""

__all__ = []
