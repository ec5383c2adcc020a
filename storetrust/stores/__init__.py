"""Data stores for persistence and caching.

Stores handle:
- PostgreSQL: DB session, store repository, capability probes
- Redis: place lookup caching, dedupe batch locks

No identity/trust logic in stores - that belongs in services.
"""
