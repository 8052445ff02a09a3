from __future__ import annotations

import os
from collections.abc import Iterator
from typing import Callable

import pytest
from sqlalchemy.engine import Engine

from entity_block_store.db.engine import create_engine, create_session_factory
from entity_block_store.db.schema import create_all, drop_all
from entity_block_store.models.template import PropertyDefinition
from entity_block_store.repositories.entity_repository import EntityRepository
from entity_block_store.repositories.template_repository import TemplateRepository
from entity_block_store.schema.registry import SchemaRegistry
from entity_block_store.startup import ensure_default_templates
from entity_block_store.store import EntityService


@pytest.fixture(scope="session")
def postgres_url() -> str | None:
    """Return the Postgres test URL if provided via env."""
    return os.getenv("POSTGRES_TEST_URL") or os.getenv("DATABASE_URL")


@pytest.fixture
def engine(postgres_url: str | None) -> Iterator[Engine]:
    """Yield an engine targeting Postgres when configured; otherwise SQLite in-memory."""
    engine = create_engine(postgres_url) if postgres_url else create_engine()
    drop_all(engine)
    create_all(engine)
    try:
        yield engine
    finally:
        drop_all(engine)
        engine.dispose()


@pytest.fixture
def session_factory(engine: Engine):
    return create_session_factory(engine)


@pytest.fixture
def template_repository(session_factory) -> TemplateRepository:
    return TemplateRepository(session_factory)


@pytest.fixture
def entity_repository(session_factory) -> EntityRepository:
    return EntityRepository(session_factory)


@pytest.fixture
def registry(template_repository: TemplateRepository) -> SchemaRegistry:
    registry = SchemaRegistry(template_repository)
    template_repository.add_change_listener(registry.invalidate)
    return registry


@pytest.fixture
def default_templates(template_repository: TemplateRepository):
    return ensure_default_templates(template_repository)


@pytest.fixture
def service(entity_repository, registry, default_templates) -> EntityService:
    return EntityService(entity_repository, registry, retry_attempts=2)


@pytest.fixture
def make_property() -> Callable[..., PropertyDefinition]:
    """Build detached property definitions for pure chain tests."""
    counter = iter(range(1, 10_000))

    def _factory(key: str, *, order: int | None = None, dependencies=(), value_type: str = "text"):
        return PropertyDefinition(
            id=next(counter),
            template_id=1,
            key=key,
            type=value_type,
            dependencies=tuple(dependencies),
            execution_order=order,
        )

    return _factory
