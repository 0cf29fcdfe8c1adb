"""CLI: context-memory init, presets, config validate, stats, report, context, facts, cleanup, purge."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from pathlib import Path

import yaml

from ..config import load_config, validate_config
from ..presets import get_preset, list_presets
from ..types import ContextMemoryError

CONFIG_OUTPUT = "context-memory.yaml"


def _get_engine(args):
    from ..engine import ContextMemoryEngine

    return ContextMemoryEngine(config_path=args.config)


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, set):
        return sorted(value)
    return str(value)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=_json_default))


def cmd_init(args):
    """Generate a config file from a preset."""
    preset = get_preset(args.preset)
    if preset is None:
        available = ", ".join(p.name for p in list_presets())
        print(f"Unknown preset: {args.preset}", file=sys.stderr)
        if available:
            print(f"Available presets: {available}", file=sys.stderr)
        sys.exit(1)

    try:
        output = preset.write_template(Path.cwd() / CONFIG_OUTPUT, force=args.force)
    except FileExistsError as e:
        print(str(e), file=sys.stderr)
        print("Use --force to overwrite.", file=sys.stderr)
        sys.exit(1)
    print(f"Created {output}")
    print(f"Preset: {preset.name} ({preset.description})")
    print()
    print("Next steps:")
    print("  1. Validate config:   context-memory config validate")
    print("  2. Start MCP server:  context-memory-mcp")
    print("  3. Inspect a chat:    context-memory stats <conversation-id>")


def cmd_presets(args):
    """List or show presets."""
    action = getattr(args, "presets_action", None) or "list"

    if action == "list":
        presets = list_presets()
        if not presets:
            print("No presets registered.")
            return
        print(f"{'Name':<15} {'Description'}")
        print("-" * 60)
        for p in presets:
            print(f"{p.name:<15} {p.description}")

    elif action == "show":
        preset = get_preset(args.preset_name)
        if preset is None:
            available = ", ".join(p.name for p in list_presets())
            print(f"Unknown preset: {args.preset_name}", file=sys.stderr)
            if available:
                print(f"Available: {available}", file=sys.stderr)
            sys.exit(1)
        print(yaml.safe_dump(preset.config_dict, sort_keys=False))


def cmd_config_validate(args):
    """Validate config file."""
    try:
        config = load_config(args.config)
    except (OSError, ValueError, yaml.YAMLError, ContextMemoryError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    errors = validate_config(config)
    if errors:
        print("Config validation errors:")
        for err in errors:
            print(f"  - {err}")
        sys.exit(1)

    print("Config is valid.")
    print(f"  Recent threshold: {config.segmentation.recent_threshold}")
    print(f"  Max context tokens: {config.assembler.max_context_tokens:,}")
    print(f"  Retrieval: {config.retrieval.provider}")
    print(f"  Summarization: {config.summarization.provider or 'extractive'}")
    print(f"  Storage: {config.storage.backend} ({config.storage.sqlite_path})")


def cmd_stats(args):
    """Show per-conversation metrics."""
    with _get_engine(args) as engine:
        try:
            metrics = engine.get_conversation_stats(args.conversation_id)
        except KeyError:
            print(f"Unknown conversation: {args.conversation_id}", file=sys.stderr)
            sys.exit(1)
        cache = engine.get_conversation_cache_stats(args.conversation_id)

    if args.json:
        _print_json({**asdict(metrics), "cache": asdict(cache)})
        return

    print(f"Conversation:  {metrics.conversation_id}")
    print(f"Messages:      {metrics.total_messages:,}")
    print(f"Tokens:        {metrics.total_tokens:,}")
    segments = ", ".join(f"{k}={v}" for k, v in sorted(metrics.segments.items())) or "none"
    print(f"Segments:      {segments}")
    print(f"Key facts:     {metrics.key_facts}")
    print(f"Marked:        {metrics.user_marked}")
    print(f"Compression:   {metrics.average_compression:.2f}x")
    print(f"Retrievals:    {metrics.retrievals} ({metrics.cache_hits} cached)")
    print(f"Tokens saved:  {metrics.tokens_saved:,} (${metrics.cost_savings:.4f})")
    if metrics.last_activity:
        print(f"Last activity: {metrics.last_activity.strftime('%Y-%m-%d %H:%M')}")


def cmd_report(args):
    """Print the markdown analytics report."""
    with _get_engine(args) as engine:
        print(engine.generate_report())


def cmd_context(args):
    """Assemble and display the context window for a conversation."""
    with _get_engine(args) as engine:
        window = engine.get_optimized_context(
            args.conversation_id, query=args.query, max_context_tokens=args.max_tokens,
        )

    if args.json:
        _print_json(window.to_dict())
        return

    print(
        f"Tokens: {window.total_tokens:,}  Compression: {window.compression_ratio:.2f}x"
        f"{'  (cached)' if window.cache_hit else ''}"
    )
    if window.degraded:
        print(f"Degraded: {'; '.join(window.degradation_reasons)}")
    print("=" * 60)
    for msg in window.to_messages():
        print(f"[{msg.role}] {msg.content}")
        print()


def cmd_facts(args):
    """List or add key facts."""
    action = getattr(args, "facts_action", None) or "list"

    with _get_engine(args) as engine:
        if action == "add":
            expires_at = None
            if args.expires_days is not None:
                expires_at = datetime.now(timezone.utc) + timedelta(days=args.expires_days)
            try:
                fact = engine.add_key_fact(
                    args.conversation_id,
                    args.text,
                    fact_type=args.type,
                    expires_at=expires_at,
                    importance=args.importance,
                )
            except ValueError as e:
                print(f"Error: {e}", file=sys.stderr)
                sys.exit(1)
            print(f"Stored {fact.fact_type.value} {fact.fact_id[:8]}: {fact.text}")
            return

        facts = engine.list_key_facts(args.conversation_id, include_expired=args.all)

    if not facts:
        print(f"No key facts for {args.conversation_id}.")
        return
    print(f"{'Type':<12} {'Importance':>10} {'Expires':>12}  Text")
    print("-" * 70)
    for f in facts:
        expires = f.expires_at.strftime("%Y-%m-%d") if f.expires_at else "never"
        print(f"{f.fact_type.value:<12} {f.importance_score:>10.2f} {expires:>12}  {f.text}")


def cmd_cleanup(args):
    """Purge expired cache entries and old analytics."""
    with _get_engine(args) as engine:
        result = engine.cleanup_old_data(args.retention_days)
    print(f"Removed {result['cache_entries_removed']} expired cache entries")
    print(f"Removed {result['analytics_records_removed']} analytics records")


def cmd_purge(args):
    """Delete everything stored for a conversation."""
    if not args.yes:
        print(f"Refusing to purge {args.conversation_id} without --yes", file=sys.stderr)
        sys.exit(1)
    with _get_engine(args) as engine:
        existed = engine.purge_conversation(args.conversation_id)
    if existed:
        print(f"Purged {args.conversation_id}")
    else:
        print(f"No stored data for {args.conversation_id}")


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        prog="context-memory",
        description="Tiered conversation memory and context assembly",
    )
    parser.add_argument("--config", "-c", help="Path to config file")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # init
    init_parser = subparsers.add_parser("init", help="Generate config from a preset")
    init_parser.add_argument("preset", help="Preset name (e.g. 'general')")
    init_parser.add_argument("--force", action="store_true", help="Overwrite existing config")

    # presets
    presets_parser = subparsers.add_parser("presets", help="List or inspect config presets")
    presets_sub = presets_parser.add_subparsers(dest="presets_action")
    presets_sub.add_parser("list", help="List all available presets")
    presets_show_parser = presets_sub.add_parser("show", help="Show a preset's config as YAML")
    presets_show_parser.add_argument("preset_name", help="Preset name to show")

    # config validate
    config_parser = subparsers.add_parser("config", help="Config operations")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("validate", help="Validate config file")

    # stats
    stats_parser = subparsers.add_parser("stats", help="Show conversation metrics")
    stats_parser.add_argument("conversation_id", help="Conversation id")
    stats_parser.add_argument("--json", action="store_true", help="Output JSON")

    # report
    subparsers.add_parser("report", help="Print the analytics report")

    # context
    context_parser = subparsers.add_parser("context", help="Assemble context for a conversation")
    context_parser.add_argument("conversation_id", help="Conversation id")
    context_parser.add_argument("--query", "-q", help="Current query")
    context_parser.add_argument("--max-tokens", type=int, help="Token budget override")
    context_parser.add_argument("--json", action="store_true", help="Output JSON")

    # facts
    facts_parser = subparsers.add_parser("facts", help="List or add key facts")
    facts_sub = facts_parser.add_subparsers(dest="facts_action")
    facts_list_parser = facts_sub.add_parser("list", help="List key facts")
    facts_list_parser.add_argument("conversation_id", help="Conversation id")
    facts_list_parser.add_argument("--all", action="store_true", help="Include expired facts")
    facts_add_parser = facts_sub.add_parser("add", help="Add a key fact")
    facts_add_parser.add_argument("conversation_id", help="Conversation id")
    facts_add_parser.add_argument("text", help="Fact text")
    facts_add_parser.add_argument(
        "--type", default="fact", choices=["fact", "preference", "decision", "goal"],
    )
    facts_add_parser.add_argument("--importance", type=float, default=1.0)
    facts_add_parser.add_argument("--expires-days", type=float, help="Expire after N days")

    # cleanup
    cleanup_parser = subparsers.add_parser("cleanup", help="Purge expired cache and old analytics")
    cleanup_parser.add_argument("--retention-days", type=int, help="Analytics retention override")

    # purge
    purge_parser = subparsers.add_parser("purge", help="Delete all data for a conversation")
    purge_parser.add_argument("conversation_id", help="Conversation id")
    purge_parser.add_argument("--yes", action="store_true", help="Confirm deletion")

    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s %(name)s: %(message)s")

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "init":
        cmd_init(args)
    elif args.command == "presets":
        cmd_presets(args)
    elif args.command == "config":
        if args.config_command == "validate":
            cmd_config_validate(args)
        else:
            config_parser.print_help()
            sys.exit(1)
    elif args.command == "stats":
        cmd_stats(args)
    elif args.command == "report":
        cmd_report(args)
    elif args.command == "context":
        cmd_context(args)
    elif args.command == "facts":
        if not getattr(args, "facts_action", None):
            facts_parser.print_help()
            sys.exit(1)
        cmd_facts(args)
    elif args.command == "cleanup":
        cmd_cleanup(args)
    elif args.command == "purge":
        cmd_purge(args)


if __name__ == "__main__":
    main()
