"""
Insight engine operator CLI.

Usage:
    python -m insight_engine.cli ingest --path reflections.json   # Validate, store and ingest
    python -m insight_engine.cli tick                            # Run the cooldown sweep
    python -m insight_engine.cli list --status promoted          # List insights
    python -m insight_engine.cli stats                           # Counts by status/priority/family
    python -m insight_engine.cli show INSIGHT_ID                 # One insight as JSON
    python -m insight_engine.cli set-status INSIGHT_ID task_created --task-id T-12
    python -m insight_engine.cli orphans                         # Promoted insights without a task
"""

import argparse
import json
import uuid
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from insight_engine.config import configure_logging, get_config
from insight_engine.lifecycle import InsightEngine
from insight_engine.models import INSIGHT_STATUSES, Reflection, ReflectionInput
from insight_engine.queries import get_insight, get_orphaned_insights, insight_stats, list_insights
from insight_engine.storage import InsightStorage, resolve_database_url


def _open_storage(config) -> InsightStorage:
    return InsightStorage(resolve_database_url(config))


def load_reflections(path: Path) -> tuple[list[Reflection], list[str]]:
    """Parse a JSON file holding one reflection or a list of them.

    Returns the valid reflections and one error line per rejected entry.
    Entries without ``id``/``created_at`` get a generated id and the current time.
    """
    with open(path) as f:
        payload = json.load(f)
    items = payload if isinstance(payload, list) else [payload]

    reflections, errors = [], []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            errors.append(f"  [{index}] body: must be a JSON object")
            continue
        try:
            data = ReflectionInput.model_validate(item)
        except ValidationError as e:
            for err in e.errors():
                field = ".".join(str(p) for p in err["loc"]) or "body"
                errors.append(f"  [{index}] {field}: {err['msg']}")
            continue
        reflections.append(
            Reflection(
                id=item.get("id") or f"ref-{uuid.uuid4().hex[:16]}",
                created_at=item.get("created_at") or datetime.now(UTC),
                **data.model_dump(),
            )
        )
    return reflections, errors


def cmd_ingest(args, config):
    """Validate, persist and ingest reflections from a JSON file."""
    path = Path(args.path)
    if not path.is_file():
        print(f"Path not found: {path}")
        return

    reflections, errors = load_reflections(path)
    if errors:
        print(f"Rejected {len(errors)} invalid field(s):")
        for line in errors:
            print(line)

    storage = _open_storage(config)
    engine = InsightEngine(storage, config=config)
    for reflection in reflections:
        storage.insert_reflection(reflection)
        insight = engine.ingest_reflection(reflection)
        print(f"  {reflection.id} → {insight.id} [{insight.status}] {insight.cluster_key} score={insight.score}")
    print(f"Ingested {len(reflections)} reflection(s).")
    storage.close()


def cmd_tick(args, config):
    """Run one cooldown sweep."""
    storage = _open_storage(config)
    result = InsightEngine(storage, config=config).tick_cooldowns()
    print(f"Cooled: {result['cooled']}  Closed: {result['closed']}")
    storage.close()


def cmd_list(args, config):
    """List insights, highest score first."""
    storage = _open_storage(config)
    filters = {
        "status": args.status,
        "priority": args.priority,
        "workflow_stage": args.stage,
        "failure_family": args.family,
        "impacted_unit": args.unit,
    }
    page = list_insights(storage, filters, limit=args.limit, offset=args.offset, config=config)
    print(f"{page['total']} insight(s) match; showing {len(page['insights'])}.")
    for insight in page["insights"]:
        flag = " ↻" if insight.recurring_candidate else ""
        print(
            f"  {insight.priority} {insight.score:>4.1f}  {insight.status:<14} {insight.id}  "
            f"{insight.cluster_key} ({insight.independent_count} author(s)){flag}"
        )
    storage.close()


def cmd_stats(args, config):
    """Display insight counts."""
    storage = _open_storage(config)
    stats = insight_stats(storage)
    print(f"Total insights: {stats['total']}")
    for title, key in (("By status", "by_status"), ("By priority", "by_priority"), ("Top failure families", "by_failure_family")):
        print(f"\n  {title}:")
        for name, count in stats[key].items():
            print(f"    {name:<20} {count}")
    storage.close()


def cmd_show(args, config):
    storage = _open_storage(config)
    insight = get_insight(storage, args.insight_id)
    if insight is None:
        print(f"Insight {args.insight_id} not found.")
    else:
        print(insight.model_dump_json(indent=2))
    storage.close()


def cmd_set_status(args, config):
    """Set an insight's status, optionally linking a task."""
    storage = _open_storage(config)
    engine = InsightEngine(storage, config=config)
    if engine.update_insight_status(args.insight_id, args.status, task_id=args.task_id):
        print(f"Insight {args.insight_id} → {args.status}")
    else:
        print(f"Insight {args.insight_id} not found. Nothing to update.")
    storage.close()


def cmd_orphans(args, config):
    """List promoted insights that have no linked task."""
    storage = _open_storage(config)
    orphans = get_orphaned_insights(storage)
    print(f"{len(orphans)} insight(s) without a task:")
    for insight in orphans:
        print(f"  {insight.priority} {insight.score:>4.1f}  {insight.id}  {insight.title}")
    storage.close()


def main():
    parser = argparse.ArgumentParser(description="Insight engine CLI")
    parser.add_argument("--config", default="config.yaml")
    subparsers = parser.add_subparsers(dest="command")

    ingest_parser = subparsers.add_parser("ingest", help="Ingest reflections from a JSON file")
    ingest_parser.add_argument("--path", required=True, help="JSON file with a reflection or a list")

    subparsers.add_parser("tick", help="Run the cooldown sweep once")

    list_parser = subparsers.add_parser("list", help="List insights")
    list_parser.add_argument("--status", default=None, help="Status filter, or 'all'")
    list_parser.add_argument("--priority", default=None)
    list_parser.add_argument("--stage", default=None)
    list_parser.add_argument("--family", default=None)
    list_parser.add_argument("--unit", default=None)
    list_parser.add_argument("--limit", type=int, default=None)
    list_parser.add_argument("--offset", type=int, default=0)

    subparsers.add_parser("stats", help="Insight counts")

    show_parser = subparsers.add_parser("show", help="Show one insight")
    show_parser.add_argument("insight_id")

    status_parser = subparsers.add_parser("set-status", help="Set insight status")
    status_parser.add_argument("insight_id")
    status_parser.add_argument("status", choices=INSIGHT_STATUSES)
    status_parser.add_argument("--task-id", default=None)

    subparsers.add_parser("orphans", help="Promoted insights without a linked task")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    configure_logging()
    config = get_config(config_path=args.config)

    commands = {
        "ingest": cmd_ingest,
        "tick": cmd_tick,
        "list": cmd_list,
        "stats": cmd_stats,
        "show": cmd_show,
        "set-status": cmd_set_status,
        "orphans": cmd_orphans,
    }

    commands[args.command](args, config)


if __name__ == "__main__":
    main()
