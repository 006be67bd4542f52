"""Fact persistence.

Provides:
- init_db: open an aiosqlite connection and create the fact schema
- SqliteFactRepository / InMemoryFactRepository: FactBackend implementations
"""
