"""Minimal demo script: seed templates, create a small hierarchy and print it."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from entity_block_store.config import ConfigError, Settings, configure_logging
from entity_block_store.db.engine import create_engine, create_session_factory
from entity_block_store.db.schema import create_all
from entity_block_store.renderers import EntityMarkdownRenderer
from entity_block_store.repositories.entity_repository import EntityRepository
from entity_block_store.repositories.template_repository import TemplateRepository
from entity_block_store.startup import (
    PROJECT_TEMPLATE_ID,
    TASK_TEMPLATE_ID,
    ensure_default_templates,
)
from entity_block_store.store import create_entity_service

logger = logging.getLogger("demo_entities")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create a demo project with tasks in the entity store.")
    parser.add_argument("--database-url", type=str, default=None, help="SQLAlchemy URL (overrides DATABASE_URL).")
    parser.add_argument("--sqlite-path", type=Path, default=None, help="SQLite file to use instead of memory.")
    parser.add_argument("--project", type=str, default="Demo project", help="Title of the demo project.")
    parser.add_argument("--tasks", type=int, default=3, help="Number of tasks to create.")
    parser.add_argument("--complete", action="store_true", help="Tick every checklist item afterwards.")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    try:
        settings = Settings.from_env()
    except ConfigError as exc:
        raise SystemExit(str(exc)) from exc
    configure_logging(settings.log_level)

    database_url = args.database_url or settings.database_url
    sqlite_path = args.sqlite_path or settings.sqlite_path
    if database_url:
        logger.info("Using database: %s", database_url)
        engine = create_engine(database_url, echo=settings.echo_sql)
    else:
        logger.info("Using database: sqlite://%s", sqlite_path or ":memory:")
        engine = create_engine(sqlite_path=sqlite_path, echo=settings.echo_sql)

    create_all(engine)
    session_factory = create_session_factory(engine)
    templates = TemplateRepository(session_factory)
    ensure_default_templates(templates, user=settings.default_user)
    service = create_entity_service(session_factory, settings, templates=templates)

    project = service.create(PROJECT_TEMPLATE_ID, {"Title": args.project})
    if not project["success"]:
        raise SystemExit(f"Failed to create project: {project['error']}")

    task_ids = []
    for index in range(1, max(0, args.tasks) + 1):
        task = service.create(
            TASK_TEMPLATE_ID,
            {
                "Title": f"Task {index}",
                "Summary": f"Demo task number {index}",
                "Items": "- [ ] draft\n- [ ] review",
            },
            selected_parent_id=project["id"],
        )
        if not task["success"]:
            raise SystemExit(f"Failed to create task {index}: {task['error']}")
        task_ids.append(task["id"])

    if args.complete:
        for task_id in task_ids:
            result = service.update({"id": task_id, "Items": "- [x] draft\n- [x] review"})
            logger.info("Task %s is now %s", task_id, result.get("stage"))

    renderer = EntityMarkdownRenderer()
    entities = EntityRepository(session_factory)
    for entity_id in [project["id"], *task_ids]:
        entity = entities.get_entity(entity_id)
        if entity is None:
            raise SystemExit(f"Failed to load entity {entity_id} from repository.")
        print(renderer.render(entity, template=service.registry.get_template(entity.template_id)))
        print()


if __name__ == "__main__":
    main()
