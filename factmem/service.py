"""Wires settings, logging, the sqlite backend, the store and the prompt generator."""

from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

from factmem.config import Settings
from factmem.database.db import init_db
from factmem.database.repository import SqliteFactRepository
from factmem.facts.store import FactStore
from factmem.logging_config import configure_logging
from factmem.models import FactEntity
from factmem.prompts.fact_prompt import FactAwarePromptGenerator
from factmem.prompts.models import PromptGenerationResult, PromptOptions

logger = logging.getLogger(__name__)


class FactMemoryService:
    def __init__(
        self,
        settings: Settings,
        store: FactStore,
        generator: FactAwarePromptGenerator,
        conn: aiosqlite.Connection | None = None,
    ):
        self.settings = settings
        self.store = store
        self.generator = generator
        self._conn = conn

    @classmethod
    async def create(
        cls, settings: Settings | None = None, *, setup_logging: bool = True
    ) -> FactMemoryService:
        settings = settings or Settings()
        if setup_logging:
            configure_logging(
                level=settings.log_level,
                json_format=settings.log_json,
                log_file=settings.log_file or None,
            )

        if settings.database_path != ":memory:":
            Path(settings.database_path).parent.mkdir(parents=True, exist_ok=True)
        conn = await init_db(settings.database_path)

        store = FactStore(
            SqliteFactRepository(conn),
            cache_max_users=settings.fact_cache_max_users,
            cache_ttl=settings.fact_cache_ttl_seconds,
            extraction_max_chars=settings.extraction_max_chars,
            extraction_confidence=settings.extraction_base_confidence,
        )
        generator = FactAwarePromptGenerator(
            store,
            PromptOptions(
                include_confidence_scores=settings.prompt_include_confidence_scores,
                fetch_timeout=settings.prompt_fetch_timeout,
            ),
        )
        logger.info("Fact memory service ready (db=%s)", settings.database_path)
        return cls(settings, store, generator, conn)

    async def process_message(
        self, user_id: str, text: str, message_id: str | None = None
    ) -> list[FactEntity]:
        return await self.store.ingest_message(user_id, text, message_id)

    async def build_prompt(
        self, user_id: str, base_prompt: str, options: PromptOptions | None = None
    ) -> PromptGenerationResult:
        return await self.generator.generate_system_prompt_with_facts(user_id, base_prompt, options)

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> FactMemoryService:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
