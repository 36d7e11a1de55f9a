"""
MCP (Model Context Protocol) server for memoryforge.

Exposes per-conversation memory engines as tools so an assistant can feed
its transcript in and pull context, answers and explanations back out.

Run as a stdio server:
    python -m memoryforge.mcp_server

Or via the installed entry-point:
    memoryforge-mcp

Configuration (environment variables):
    MEMORYFORGE_STATE_DIR   - directory holding one JSON state file per
                              conversation (default: ~/.cache/memoryforge)
    MEMORYFORGE_*           - engine settings, see memoryforge.config
"""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from .config import EngineSettings
from .engine import ConversationEngine, EngineRegistry

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Resolve configuration from environment (with sensible defaults)
# ---------------------------------------------------------------------------

_DEFAULT_STATE_DIR = str(Path.home() / ".cache" / "memoryforge")

_STATE_DIR = os.environ.get("MEMORYFORGE_STATE_DIR", _DEFAULT_STATE_DIR)

# Lazy-initialised so settings are read (and models loaded) on first use.
_registry: EngineRegistry | None = None


def _state_path(conversation_id: str) -> Path:
    safe = re.sub(r"[^A-Za-z0-9_.-]", "_", conversation_id)
    return Path(_STATE_DIR) / f"{safe}.json"


def _load_or_create(conversation_id: str, settings: EngineSettings) -> ConversationEngine:
    path = _state_path(conversation_id)
    if path.exists():
        with path.open(encoding="utf-8") as fh:
            return ConversationEngine.deserialize(json.load(fh), settings)
    return ConversationEngine(conversation_id, settings)


def _get_registry() -> EngineRegistry:
    global _registry
    if _registry is None:
        settings = EngineSettings()
        _registry = EngineRegistry(settings, factory=lambda cid: _load_or_create(cid, settings))
    return _registry


def _engine(conversation_id: str) -> ConversationEngine:
    return _get_registry().get(conversation_id)


# ---------------------------------------------------------------------------
# FastMCP server
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "memoryforge",
    instructions=(
        "Structured memory for long conversations. "
        "Call `process_message` for every message of the conversation. "
        "Use `get_context` to recall the current thread within a token budget, "
        "`query_memory` to ask questions about earlier parts of the conversation "
        "and `explain_why` to see what led to a message. "
        "Call `save_conversation` to persist the conversation between sessions."
    ),
)


@mcp.tool()
def process_message(
    conversation_id: str,
    content: str,
    role: str = "user",
    message_id: str | None = None,
    previous_message_id: str | None = None,
) -> str:
    """
    Add a message to a conversation's memory.

    Args:
        conversation_id:     Conversation the message belongs to.
        content:             Message text.
        role:                "user", "assistant" or "system".
        message_id:          Optional explicit id (a uuid is generated otherwise).
        previous_message_id: Optional id of the message this one responds to.

    Returns:
        JSON result with the node id, fingerprint, duplicate flag, causal
        links and any errors.
    """
    message = {"role": role, "content": content}
    if message_id:
        message["id"] = message_id
    result = _engine(conversation_id).process_message(message, previous_message_id)
    return json.dumps(result.to_dict(), indent=2)


@mcp.tool()
def query_memory(
    conversation_id: str,
    query: str,
    max_results: int = 10,
    token_limit: int = 4000,
    as_json: bool = False,
) -> str:
    """
    Answer a natural-language question about the conversation.

    The query is classified (temporal, causal, contextual, image, code or
    summary) and routed to the matching search.

    Args:
        conversation_id: Conversation to search.
        query:           The question.
        max_results:     Maximum number of results (default 10).
        token_limit:     Token budget for contextual answers (default 4000).
        as_json:         Return raw JSON instead of a markdown block.

    Returns:
        Markdown context block, or JSON with ``results`` and ``metadata``.
    """
    engine = _engine(conversation_id)
    result = engine.query(query, max_results=max_results, token_limit=token_limit)
    if as_json:
        return json.dumps(result, indent=2, default=str)
    return engine.format_for_consumption(result)


@mcp.tool()
def get_context(conversation_id: str, max_nodes: int = 20, max_tokens: int = 2000) -> str:
    """
    Return the token-budgeted context of the conversation's current thread.

    Args:
        conversation_id: Conversation to read.
        max_nodes:       Maximum number of messages (default 20).
        max_tokens:      Token budget (default 2000).

    Returns:
        JSON array of messages with role, content, depth, importance and
        timestamp, oldest first.
    """
    context = _engine(conversation_id).get_context(max_nodes=max_nodes, max_tokens=max_tokens)
    if not context:
        return "No context yet."
    return json.dumps(context, indent=2)


@mcp.tool()
def explain_why(conversation_id: str, message_id: str) -> str:
    """
    Explain which earlier messages led to *message_id*.

    Returns:
        One line per causal step, or "No causal history found."
    """
    return _engine(conversation_id).explain_why(message_id)


@mcp.tool()
def engine_stats(conversation_id: str) -> str:
    """
    Return statistics for every subsystem of a conversation's engine.

    Returns:
        JSON object.
    """
    return json.dumps(_engine(conversation_id).stats(), indent=2)


@mcp.tool()
def save_conversation(conversation_id: str) -> str:
    """
    Persist a conversation's memory to the state directory.

    Returns:
        A confirmation message with the file path.
    """
    path = _state_path(conversation_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as fh:
        json.dump(_engine(conversation_id).serialize(), fh)
    logger.info("Saved conversation %s to %s", conversation_id, path)
    return f"Saved conversation {conversation_id} to {path}."


# ---------------------------------------------------------------------------
# Entry-point
# ---------------------------------------------------------------------------


def main() -> None:
    """Run the MCP server over stdio."""
    logging.basicConfig(
        level=EngineSettings().log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
