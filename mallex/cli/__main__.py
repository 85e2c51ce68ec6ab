"""
Mallex CLI - Command-line interface for task suggestions.

Usage:
    mallex suggest CATEGORY TEXT [--by ID]
    mallex list [--status S] [--json]
    mallex approve ID [--note N]
    mallex reject ID [--note N]
    mallex edit ID TEXT
    mallex remove ID
    mallex clear-local [--yes]
    mallex sync [--requeue-failed] [--json]
    mallex status [--json]
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from mallex.config import MallexConfig, load_config, moderator_check
from mallex.core import SuggestionEngine
from mallex.core.validation import sanitize_string
from mallex.errors import MallexError
from mallex.storage.http_remote import HttpRemoteStore
from mallex.storage.local import LocalSuggestionStore
from mallex.storage.serializers import suggestion_to_record
from mallex.types import KNOWN_CATEGORIES, Suggestion, SuggestionStatus
from mallex.utils import resolve_identity

# Set up logging
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

_default_engine: Optional[SuggestionEngine] = None
_default_key = None


def build_engine(config: MallexConfig) -> SuggestionEngine:
    """Wire an engine from configuration. Local-only without a backend URL."""
    local = LocalSuggestionStore(db_path=config.db_path)
    remote = None
    if config.backend_url:
        remote = HttpRemoteStore(
            config.backend_url,
            config.auth_token,
            timeout=config.request_timeout,
            poll_interval=config.poll_interval,
        )
    return SuggestionEngine(
        local,
        remote,
        identity=config.identity,
        is_moderator=moderator_check(config),
        retry_policy=config.retry_policy,
    )


def get_default_engine(args) -> SuggestionEngine:
    """Return the process-wide engine, creating it on first use.

    A different ``--identity`` or ``--db`` builds a fresh engine.
    """
    global _default_engine, _default_key
    key = (getattr(args, "identity", None), getattr(args, "db", None))
    if _default_engine is None or key != _default_key:
        config = load_config()
        if key[0]:
            config.identity = sanitize_string(key[0], "identity", 100).strip()
        if key[1]:
            config.db_path = Path(key[1]).expanduser()
        _default_engine = build_engine(config)
        _default_key = key
    return _default_engine


def reset_default_engine() -> None:
    """Forget the cached engine (tests, or after changing configuration)."""
    global _default_engine, _default_key
    _default_engine = None
    _default_key = None


def resolve_suggestion_id(engine: SuggestionEngine, value: str) -> str:
    """Expand a unique id prefix to the full suggestion id."""
    if engine.get(value) is not None:
        return value
    matches = [s.id for s in engine.suggestions if s.id.startswith(value)]
    if not matches:
        raise ValueError(f"No suggestion matches {value!r}")
    if len(matches) > 1:
        raise ValueError(f"Ambiguous id {value!r} matches {len(matches)} suggestions")
    return matches[0]


def _format_suggestion(s: Suggestion) -> str:
    line = f"  [{s.id[:8]}] {s.status.value:<8} {s.category_id:<10} {s.text}"
    if s.created_by:
        line += f"  (by {s.created_by})"
    if s.note:
        line += f"\n             note: {s.note}"
    return line


async def _run_sync(engine: SuggestionEngine):
    try:
        return await engine.sync()
    finally:
        aclose = getattr(engine.remote, "aclose", None)
        if aclose is not None:
            await aclose()


def cmd_suggest(args, engine: SuggestionEngine):
    """Submit a new suggestion."""
    category = sanitize_string(args.category, "category", 100).strip()
    if category not in KNOWN_CATEGORIES:
        print(f"⚠ Unknown category '{category}' (known: {', '.join(sorted(KNOWN_CATEGORIES))})")
    created_by = resolve_identity(args.by or engine.identity)
    suggestion = engine.add_suggestion(category, args.text, created_by=created_by)
    print(f"✓ Suggestion submitted: {suggestion.id[:8]}... ({category})")


def cmd_list(args, engine: SuggestionEngine):
    """List suggestions, optionally filtered by status."""
    if args.status:
        suggestions = engine.by_status(SuggestionStatus(args.status))
    else:
        suggestions = engine.suggestions

    if args.json:
        print(json.dumps([suggestion_to_record(s) for s in suggestions], indent=2))
        return

    if not suggestions:
        print("No suggestions yet.")
        return

    unsynced = engine.unsynced_ids()
    print(f"Suggestions ({len(suggestions)}):")
    print("-" * 50)
    for s in suggestions:
        marker = " *" if s.id in unsynced else ""
        print(_format_suggestion(s) + marker)
    if unsynced:
        print("\n  * not yet synced")


def cmd_decide(args, engine: SuggestionEngine):
    """Approve or reject a pending suggestion."""
    suggestion_id = resolve_suggestion_id(engine, args.id)
    note = sanitize_string(args.note, "note", 500, required=False) if args.note else None
    if args.command == "approve":
        suggestion = engine.approve(suggestion_id, note=note)
    else:
        suggestion = engine.reject(suggestion_id, note=note)
    if suggestion is None:
        print(f"✗ Suggestion {suggestion_id[:8]}... not found")
        sys.exit(1)
    print(f"✓ Suggestion {suggestion_id[:8]}... {suggestion.status.value}")


def cmd_edit(args, engine: SuggestionEngine):
    """Change the text of a pending suggestion."""
    suggestion_id = resolve_suggestion_id(engine, args.id)
    if engine.update_text(suggestion_id, args.text):
        print(f"✓ Suggestion {suggestion_id[:8]}... updated")
    else:
        print(f"✗ Suggestion {suggestion_id[:8]}... is no longer pending")
        sys.exit(1)


def cmd_remove(args, engine: SuggestionEngine):
    """Delete a suggestion."""
    suggestion_id = resolve_suggestion_id(engine, args.id)
    engine.remove(suggestion_id)
    print(f"✓ Suggestion {suggestion_id[:8]}... removed")


def cmd_clear_local(args, engine: SuggestionEngine):
    """Wipe the local mirror (the remote store is untouched)."""
    if not args.yes:
        unsynced = len(engine.unsynced_ids())
        try:
            prompt = "Clear all local suggestions"
            if unsynced:
                prompt += f" and discard {unsynced} unsynced change(s)"
            answer = input(f"{prompt}? [y/N] ")
        except (EOFError, KeyboardInterrupt):
            print("\nAborted.")
            sys.exit(1)
        if answer.strip().lower() not in ("y", "yes"):
            print("Aborted.")
            return
    engine.clear_all_local()
    print("✓ Local suggestions cleared")


def cmd_sync(args, engine: SuggestionEngine):
    """Push queued changes, run promotions and pull remote updates."""
    if args.requeue_failed:
        count = engine.requeue_failed()
        if count and not args.json:
            print(f"Requeued {count} parked change(s)")

    result = asyncio.run(_run_sync(engine))

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        if result.success:
            print(
                f"✓ Synced: {result.pushed} pushed, {result.pulled} pulled, "
                f"{result.promoted} promoted"
            )
        else:
            print(f"⚠ Sync incomplete: {len(result.errors)} error(s)")
            for error in result.errors[:5]:
                print(f"  - {error}")
        for conflict in result.conflicts:
            print(
                f"  ↔ {conflict.record_id[:8]}... local={conflict.local_status} "
                f"remote={conflict.remote_status} ({conflict.resolution})"
            )
    if not result.success:
        sys.exit(1)


def cmd_status(args, engine: SuggestionEngine):
    """Show collection counts and sync state."""
    last_sync = engine.local.get_meta("last_sync_time")
    status = {
        "identity": engine.identity,
        "moderator": engine.is_moderator,
        "remote": engine.remote is not None,
        "total": len(engine),
        "pending": len(engine.pending),
        "approved": len(engine.approved),
        "rejected": len(engine.rejected),
        "unsynced": len(engine.unsynced_ids()),
        "unpromoted": len(engine.unpromoted_ids()),
        "parked": len(engine.failed_changes()),
        "last_sync": last_sync,
    }
    if args.json:
        print(json.dumps(status, indent=2))
        return

    print(f"Suggestion Status for {status['identity'] or 'guest'}")
    print("=" * 40)
    print(f"Moderator:  {'Yes' if status['moderator'] else 'No'}")
    print(f"Remote:     {'configured' if status['remote'] else 'local only'}")
    print(f"Pending:    {status['pending']}")
    print(f"Approved:   {status['approved']}")
    print(f"Rejected:   {status['rejected']}")
    print(f"Unsynced:   {status['unsynced']}")
    if status["unpromoted"]:
        print(f"Promotions: {status['unpromoted']} queued")
    if status["parked"]:
        print(f"Parked:     {status['parked']} (run 'mallex sync --requeue-failed')")
    print(f"Last sync:  {last_sync or 'never'}")


COMMANDS = {
    "suggest": cmd_suggest,
    "list": cmd_list,
    "approve": cmd_decide,
    "reject": cmd_decide,
    "edit": cmd_edit,
    "remove": cmd_remove,
    "clear-local": cmd_clear_local,
    "sync": cmd_sync,
    "status": cmd_status,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mallex",
        description="Community task suggestions with moderation and sync",
    )
    parser.add_argument("--identity", "-i", help="Acting identity (overrides MALLEX_IDENTITY)")
    parser.add_argument("--db", help="Path to the local SQLite mirror")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # suggest
    p_suggest = subparsers.add_parser("suggest", help="Submit a suggestion")
    p_suggest.add_argument("category", help="Task category (e.g. fate, seduce, confess)")
    p_suggest.add_argument("text", help="Suggested task text")
    p_suggest.add_argument("--by", help="Submitter identity (default: acting identity or guest)")

    # list
    p_list = subparsers.add_parser("list", help="List suggestions")
    p_list.add_argument("--status", "-s", choices=[s.value for s in SuggestionStatus])
    p_list.add_argument("--json", "-j", action="store_true")

    # approve / reject
    for name, help_text in (("approve", "Approve a pending suggestion"), ("reject", "Reject a pending suggestion")):
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument("id", help="Suggestion ID (or unique prefix)")
        p.add_argument("--note", "-n", help="Moderator note")

    # edit
    p_edit = subparsers.add_parser("edit", help="Edit the text of a pending suggestion")
    p_edit.add_argument("id", help="Suggestion ID (or unique prefix)")
    p_edit.add_argument("text", help="New text")

    # remove
    p_remove = subparsers.add_parser("remove", help="Delete a suggestion")
    p_remove.add_argument("id", help="Suggestion ID (or unique prefix)")

    # clear-local
    p_clear = subparsers.add_parser("clear-local", help="Clear the local mirror")
    p_clear.add_argument("--yes", "-y", action="store_true", help="Skip confirmation")

    # sync
    p_sync = subparsers.add_parser("sync", help="Synchronise with the remote store")
    p_sync.add_argument(
        "--requeue-failed", action="store_true", help="Retry changes parked after repeated failures"
    )
    p_sync.add_argument("--json", "-j", action="store_true")

    # status
    p_status = subparsers.add_parser("status", help="Show collection and sync status")
    p_status.add_argument("--json", "-j", action="store_true")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger("mallex").setLevel(logging.DEBUG)

    try:
        engine = get_default_engine(args)
    except (ValueError, TypeError, OSError) as e:
        logger.error(f"Failed to initialize Mallex: {e}")
        sys.exit(1)

    # Dispatch with error handling
    try:
        COMMANDS[args.command](args, engine)
    except (MallexError, ValueError) as e:
        print(f"✗ {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
