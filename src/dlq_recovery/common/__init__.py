"""
Shared infrastructure for dlq_recovery.

Provides:
- Exception hierarchy and error categories
- Structured logging helpers and setup
"""
