"""Domain-event backbone: publish/subscribe bus, dead-letter queue and cache invalidation."""

__version__ = "0.1.0"
