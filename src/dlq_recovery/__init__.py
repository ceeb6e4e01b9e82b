"""
Kafka dead-letter queue inspection and recovery.

Locates a single message in a DLQ topic and moves it out safely, either by
republishing it to its original topic or archiving it. The outgoing message
is always acknowledged by the broker before the DLQ offset is committed.
"""

__version__ = "0.1.0"
