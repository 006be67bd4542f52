"""Canonical fact storage.

Provides:
- FactStore: resolves candidates into durable per-user facts and serves lookups
- canonical: maps candidate values onto entity identities
- exceptions: NotFoundError, PersistenceError, EntityConflictError, ValidationWarning
"""
