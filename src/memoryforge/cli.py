"""
Command-line interface for memoryforge.

The conversation lives in a JSON state file (``--state``); every mutating
sub-command loads it, applies the change and writes it back.

Sub-commands
------------
ingest      – Process a JSON array (or JSON-lines file) of messages.
add         – Process a single message.
context     – Print the token-budgeted context of the current thread.
query       – Run a natural-language query.
explain     – Explain why a message was said.
stats       – Print engine statistics.
maintain    – Prune the tree and decay causal links.
reconstruct – Print the engine state recorded as a given version.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from .config import EngineSettings
from .engine import ConversationEngine
from .errors import VersionOutOfRange

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="memoryforge",
        description="Local-first memory engine for long-running conversations.",
    )
    parser.add_argument(
        "--state",
        default="./memoryforge.json",
        metavar="PATH",
        help="JSON file holding the conversation state (default: ./memoryforge.json).",
    )
    parser.add_argument(
        "--conversation",
        default="default",
        metavar="ID",
        help="Conversation id used when the state file does not exist yet.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        metavar="LEVEL",
        help="Logging level (default: MEMORYFORGE_LOG_LEVEL or INFO).",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    # ingest
    p_ingest = sub.add_parser("ingest", help="Process a file of messages.")
    p_ingest.add_argument("file", help="JSON array or JSON-lines file ('-' for stdin).")

    # add
    p_add = sub.add_parser("add", help="Process a single message.")
    p_add.add_argument("content", nargs="?", help="Message text (reads stdin if omitted).")
    p_add.add_argument("--role", default="user", choices=["user", "assistant", "system"])
    p_add.add_argument("--id", default=None, dest="message_id", help="Explicit message id.")
    p_add.add_argument("--previous", default=None, metavar="ID", help="Id of the message this follows.")

    # context
    p_context = sub.add_parser("context", help="Print the current context.")
    p_context.add_argument("--max-nodes", type=int, default=20, metavar="N")
    p_context.add_argument("--max-tokens", type=int, default=2000, metavar="N")
    p_context.add_argument("--json", action="store_true", dest="as_json", help="Output as JSON.")

    # query
    p_query = sub.add_parser("query", help="Run a natural-language query.")
    p_query.add_argument("text", help="Query text.")
    p_query.add_argument("--type", default=None, dest="query_type", help="Force a query type.")
    p_query.add_argument("-n", "--max-results", type=int, default=None, metavar="N")
    p_query.add_argument("--token-limit", type=int, default=None, metavar="N")
    p_query.add_argument("--json", action="store_true", dest="as_json", help="Output as JSON.")

    # explain
    p_explain = sub.add_parser("explain", help="Explain why a message was said.")
    p_explain.add_argument("message_id", help="Message id.")

    # stats
    sub.add_parser("stats", help="Print engine statistics.")

    # maintain
    sub.add_parser("maintain", help="Prune the tree and decay causal links.")

    # reconstruct
    p_reconstruct = sub.add_parser("reconstruct", help="Print a stored version of the state.")
    p_reconstruct.add_argument("version", type=int, help="Version number.")

    return parser


def load_engine(path: Path, conversation_id: str, settings: EngineSettings) -> ConversationEngine:
    """Resume the engine stored at *path*, or start a new one."""
    if path.exists():
        logger.debug("Resuming conversation state from %s", path)
        with path.open(encoding="utf-8") as fh:
            return ConversationEngine.deserialize(json.load(fh), settings)
    return ConversationEngine(conversation_id, settings)


def save_engine(engine: ConversationEngine, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as fh:
        json.dump(engine.serialize(), fh)


def _read_messages(source: str) -> list[dict[str, Any]]:
    text = sys.stdin.read() if source == "-" else Path(source).read_text(encoding="utf-8")
    text = text.strip()
    if not text:
        return []
    if text.startswith("["):
        return json.loads(text)
    return [json.loads(line) for line in text.splitlines() if line.strip()]


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    settings = EngineSettings()
    logging.basicConfig(
        level=(args.log_level or settings.log_level).upper(),
        format=_LOG_FORMAT,
    )

    state_path = Path(args.state)
    engine = load_engine(state_path, args.conversation, settings)

    if args.command == "ingest":
        try:
            messages = _read_messages(args.file)
        except (OSError, json.JSONDecodeError) as exc:
            print(f"Error: could not read messages: {exc}", file=sys.stderr)
            return 1
        processed = skipped = failed = 0
        for message in messages:
            result = engine.process_message(message)
            if not result.success:
                failed += 1
                print(f"Rejected: {'; '.join(result.errors)}", file=sys.stderr)
            elif result.skipped:
                skipped += 1
            else:
                processed += 1
        save_engine(engine, state_path)
        print(f"Processed {processed} message(s), skipped {skipped} duplicate(s), rejected {failed}.")
        return 1 if failed else 0

    elif args.command == "add":
        content = args.content
        if content is None:
            content = sys.stdin.read()
        if not content.strip():
            print("Error: no text provided.", file=sys.stderr)
            return 1
        message: dict[str, Any] = {"role": args.role, "content": content}
        if args.message_id:
            message["id"] = args.message_id
        result = engine.process_message(message, previous_message_id=args.previous)
        if not result.success:
            print(f"Error: {'; '.join(result.errors)}", file=sys.stderr)
            return 1
        save_engine(engine, state_path)
        if result.skipped:
            print(f"Skipped duplicate (fingerprint {result.fingerprint}).")
        else:
            print(f"Added {result.node_id} (fingerprint {result.fingerprint}).")

    elif args.command == "context":
        context = engine.get_context(max_nodes=args.max_nodes, max_tokens=args.max_tokens)
        if not context:
            print("No context yet.")
            return 0
        if args.as_json:
            print(json.dumps(context, indent=2))
        else:
            for entry in context:
                indent = "  " * max(entry["depth"] - 1, 0)
                print(f"{indent}[{entry['role']}] ({entry['importance']:.2f}) {entry['content'][:200]}")

    elif args.command == "query":
        options: dict[str, Any] = {}
        if args.query_type:
            options["query_type"] = args.query_type
        if args.max_results is not None:
            options["max_results"] = args.max_results
        if args.token_limit is not None:
            options["token_limit"] = args.token_limit
        result = engine.query(args.text, **options)
        errors = result["metadata"].get("errors")
        if errors:
            for error in errors:
                print(f"Error: {error}", file=sys.stderr)
            return 1
        if args.as_json:
            print(json.dumps(result, indent=2, default=str))
        else:
            print(engine.format_for_consumption(result))

    elif args.command == "explain":
        print(engine.explain_why(args.message_id))

    elif args.command == "stats":
        print(json.dumps(engine.stats(), indent=2))

    elif args.command == "maintain":
        report = engine.maintain()
        save_engine(engine, state_path)
        print(f"Pruned {len(report['pruned'])} node(s), dropped {report['decayed_edges']} edge(s).")

    elif args.command == "reconstruct":
        try:
            state = engine.reconstruct(args.version)
        except VersionOutOfRange as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1
        print(json.dumps(state, indent=2))

    return 0


if __name__ == "__main__":
    sys.exit(main())
