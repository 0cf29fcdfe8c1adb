"""MCP server exposing context-memory as tools and resources."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict
from datetime import datetime

from mcp.server.fastmcp import FastMCP

from ..types import ConfigurationError

logger = logging.getLogger(__name__)

mcp = FastMCP(
    "context-memory",
    instructions="Tiered conversation memory: store facts, retrieve budgeted context, search history",
)

# Lazy engine singleton
_engine = None


def _get_engine():
    """Get or create the engine singleton."""
    global _engine
    if _engine is None:
        from ..engine import ContextMemoryEngine
        config_path = os.environ.get("CONTEXT_MEMORY_CONFIG")
        engine = ContextMemoryEngine(config_path=config_path)
        try:
            engine.initialize()
        except ConfigurationError as e:
            logger.warning("Retrieval disabled, continuing recency-only: %s", e)
        _engine = engine
    return _engine


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, set):
        return sorted(value)
    return str(value)


def _error(message: str) -> str:
    return json.dumps({"status": "error", "error": message})


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

@mcp.tool()
def store_memory(
    chat_id: str,
    fact_text: str,
    fact_type: str = "fact",
    importance: float = 0.8,
    source_message_id: int | None = None,
) -> str:
    """Store an important fact, preference, decision or goal from the conversation.

    Key facts survive compression and are included in every later context
    window for the conversation.

    Args:
        chat_id: The conversation id.
        fact_text: The fact to remember.
        fact_type: One of "fact", "preference", "decision", "goal".
        importance: Importance score between 0 and 1.
        source_message_id: Ledger id of the message the fact came from, if any.
    """
    engine = _get_engine()
    try:
        fact = engine.add_key_fact(
            chat_id,
            fact_text,
            fact_type=fact_type,
            source_message_id=source_message_id,
            importance=importance,
        )
    except ValueError as e:
        return _error(str(e))
    return json.dumps({
        "status": "stored",
        "fact_id": fact.fact_id,
        "fact_type": fact.fact_type.value,
        "importance": fact.importance_score,
    })


@mcp.tool()
def retrieve_context(chat_id: str, query: str | None = None, max_tokens: int | None = None) -> str:
    """Retrieve the token-budgeted context window for the current turn.

    Args:
        chat_id: The conversation id.
        query: The current user query; drives semantic retrieval of older history.
        max_tokens: Token budget override (defaults to the configured budget).

    Returns:
        JSON with counts, token totals and the full context window.
    """
    engine = _get_engine()
    window = engine.get_optimized_context(chat_id, query=query, max_context_tokens=max_tokens)
    return json.dumps({
        "total_tokens": window.total_tokens,
        "compression_ratio": window.compression_ratio,
        "recent_message_count": len(window.recent_messages),
        "relevant_history_count": len(window.relevant_history),
        "summary_count": len(window.summaries),
        "key_fact_count": len(window.key_facts),
        "degraded": window.degraded,
        "context": window.to_dict(),
    }, default=_json_default)


@mcp.tool()
def mark_important(message_id: int, important: bool = True) -> str:
    """Mark (or unmark) a message as important so it is never dropped from context.

    Args:
        message_id: Ledger id of the message.
        important: True to mark, False to clear the mark.
    """
    engine = _get_engine()
    try:
        meta = engine.mark_message_important(message_id, important)
    except KeyError:
        return _error(f"Unknown message id: {message_id}")
    return json.dumps({
        "status": "marked" if important else "unmarked",
        "message_id": message_id,
        "importance": meta.importance_score,
    })


@mcp.tool()
def summarize_conversation(
    chat_id: str,
    start_message_id: int,
    end_message_id: int,
    summary_type: str = "brief",
) -> str:
    """Summarize a range of messages without changing stored segments.

    Args:
        chat_id: The conversation id.
        start_message_id: Ledger id of the first message in the range.
        end_message_id: Ledger id of the last message in the range.
        summary_type: One of "brief", "detailed", "key_points".
    """
    engine = _get_engine()
    start = engine._store.get_message_metadata(start_message_id)
    end = engine._store.get_message_metadata(end_message_id)
    if start is None or start.conversation_id != chat_id:
        return _error(f"Unknown message id in {chat_id}: {start_message_id}")
    if end is None or end.conversation_id != chat_id:
        return _error(f"Unknown message id in {chat_id}: {end_message_id}")
    try:
        summary = engine.summarize_range(chat_id, start.position, end.position, style=summary_type)
    except ValueError as e:
        return _error(str(e))
    return json.dumps({
        "status": "summarized",
        "summary_type": summary_type,
        "start_position": start.position,
        "end_position": end.position,
        "summary": summary,
    })


@mcp.tool()
def search_memory(chat_id: str, query: str, limit: int = 5, threshold: float = 0.7) -> str:
    """Search indexed messages and segment summaries by similarity.

    Args:
        chat_id: The conversation id.
        query: What to look for.
        limit: Maximum number of results.
        threshold: Minimum similarity between 0 and 1.
    """
    engine = _get_engine()
    results = engine.search_memory(chat_id, query, limit=limit, threshold=threshold)
    return json.dumps({"query": query, "result_count": len(results), "results": results})


@mcp.tool()
def get_conversation_stats(chat_id: str) -> str:
    """Statistics about a conversation: messages, segments, facts, compression, cache use."""
    engine = _get_engine()
    try:
        metrics = engine.get_conversation_stats(chat_id)
    except KeyError:
        return _error(f"Unknown conversation: {chat_id}")
    cache = engine.get_conversation_cache_stats(chat_id)
    return json.dumps({**asdict(metrics), "cache": asdict(cache)}, default=_json_default)


@mcp.tool()
def forget_context(
    chat_id: str,
    older_than_days: float | None = None,
    importance_threshold: float | None = None,
) -> str:
    """Forget old or low-importance context: key facts are deleted and matching
    messages stop appearing in semantic retrieval. User-marked messages are kept.

    Args:
        chat_id: The conversation id.
        older_than_days: Only forget context older than this many days.
        importance_threshold: Only forget context below this importance.
    """
    engine = _get_engine()
    result = engine.forget_context(
        chat_id, older_than_days=older_than_days, importance_threshold=importance_threshold,
    )
    return json.dumps({"status": "forgotten", **result})


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------

@mcp.resource("contextmemory://conversations/{conversation_id}/facts")
def get_conversation_facts(conversation_id: str) -> str:
    """Active key facts for a conversation, highest importance first."""
    engine = _get_engine()
    facts = engine.list_key_facts(conversation_id)
    if not facts:
        return f"No key facts stored for {conversation_id}."
    return "\n".join(
        f"- [{f.fact_type.value}] {f.text} (importance {f.importance_score:.2f})" for f in facts
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def serve():
    """Start the MCP server (stdio transport)."""
    mcp.run()


if __name__ == "__main__":
    serve()
