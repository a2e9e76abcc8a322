#!/usr/bin/env python3
"""
Recall MCP Server - semantic session recall on LanceDB

Indexes conversation transcripts and distilled facts for retrieval:
- FastMCP for the tool surface (stdio)
- LanceDB for chunks, knowledge, memories and per-model embedding tables
- OpenAI / Google Gemini / Ollama embeddings with ordered failover
- BM25 fallback on LanceDB native FTS indexes when vector search is unavailable or thin
- Google Gemini for contextual chunk enrichment
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import threading
from dataclasses import dataclass, replace
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from config import CONFIG, Config, setup_logging
from credentials import Credentials
from embeddings import EmbeddingGenerator, EmbeddingProvider, build_providers
from errors import AllProvidersExhausted, ConfigurationError, DimensionMismatch, NotFound, OversizedInputError
from generation import GeminiGenerator, TextGenerator
from indexer import Indexer
from knowledge import KnowledgeCache
from memories import MemoryLog
from models import (
    OWNER_CHUNK,
    OWNER_KNOWLEDGE,
    OWNER_MEMORY,
    KnowledgeEntry,
    KnowledgeFilter,
    KnowledgePatch,
    SearchOptions,
)
from retrieval import RetrievalOrchestrator
from store import MemoryStore
from utils import parse_timestamp
from vector_store import VectorStore

logger = logging.getLogger("recall.server")

SEARCH_SCOPES = (OWNER_CHUNK, OWNER_KNOWLEDGE, OWNER_MEMORY)

# =============================================================================
# Service Wiring
# =============================================================================


@dataclass(slots=True)
class Services:
    config: Config
    store: MemoryStore
    embeddings: EmbeddingGenerator
    vectors: VectorStore
    indexer: Indexer
    knowledge: KnowledgeCache
    memories: MemoryLog
    retrieval: RetrievalOrchestrator


def build_services(
    config: Config = CONFIG,
    credentials: Credentials | None = None,
    providers: list[EmbeddingProvider] | None = None,
    generator: TextGenerator | None = None,
) -> Services:
    """Wire every component around one store handle."""
    credentials = credentials or Credentials(secrets_dir=config.secrets_dir)
    store = MemoryStore(config.db_path)
    store.init()
    embeddings = EmbeddingGenerator(providers if providers is not None else build_providers(config), credentials)
    vectors = VectorStore(store)
    if generator is None and credentials.has("gemini"):
        generator = GeminiGenerator(config.llm_model, credentials)
    return Services(
        config=config,
        store=store,
        embeddings=embeddings,
        vectors=vectors,
        indexer=Indexer(store, embeddings, vectors, config, generator=generator),
        knowledge=KnowledgeCache(store, embeddings, vectors),
        memories=MemoryLog(store, embeddings, vectors),
        retrieval=RetrievalOrchestrator(store, embeddings, vectors, config),
    )


_lock = threading.RLock()
_services: Services | None = None
_index_task: asyncio.Task | None = None
_cancel_event = threading.Event()


def get_services() -> Services:
    """Get or create the service graph (thread-safe)."""
    global _services
    if _services is None:
        with _lock:
            if _services is None:  # Double-check after acquiring lock
                _services = build_services()
    return _services


def _validate_limit(limit: int) -> str | None:
    if limit <= 0:
        return f"Error: limit must be positive, got {limit}"
    if limit > get_services().config.max_limit:
        return f"Error: limit cannot exceed {get_services().config.max_limit}, got {limit}"
    return None


def _format_entry(entry: KnowledgeEntry, similarity: float | None = None) -> list[str]:
    status = "verified" if entry.verified else "unverified"
    lines = [f"[{entry.id[:8]}] {entry.title} ({entry.source_type}, confidence {entry.confidence:.2f}, {status})"]
    lines.append(f"    {entry.summary}")
    if entry.tags:
        lines.append(f"    Tags: {', '.join(sorted(entry.tags))}")
    if entry.superseded_by:
        lines.append(f"    Superseded by: {entry.superseded_by}")
    if similarity is not None:
        lines.append(f"    Similarity: {similarity:.0%}")
    return lines


# =============================================================================
# FastMCP Server
# =============================================================================

mcp = FastMCP(
    "recall",
    instructions="Semantic session recall: vector search over indexed transcripts with BM25 fallback, "
    "plus a confidence-tracked knowledge cache and a versioned memory log",
)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_scan_all() -> str:
    """Incrementally chunk all new or changed transcripts in the sessions directory."""
    services = get_services()
    result = await asyncio.to_thread(services.indexer.scan_all)
    return "\n".join(
        [
            f"Scanned {result.sources_scanned} sources ({result.sources_unchanged} unchanged)",
            f"Chunks: {result.chunks_created} new, {result.chunks_skipped} unchanged",
            f"Malformed lines skipped: {result.lines_skipped}",
        ]
    )


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_embed_all() -> str:
    """Embed every pending or failed chunk. Safe to run while another run is active."""
    services = get_services()
    try:
        services.embeddings.check_configuration()
    except ConfigurationError as e:
        return f"Error: {e}"
    result = await asyncio.to_thread(services.indexer.embed_all, _cancel_event)
    lines = [
        f"Embedded: {result.embedded}",
        f"Failed: {result.failed}",
        f"Skipped (oversized): {result.skipped_oversized}",
        f"Claimed by another run: {result.lost_claims}",
    ]
    if result.reclaimed:
        lines.append(f"Reclaimed stale claims: {result.reclaimed}")
    if result.cancelled:
        lines.append("Run cancelled; unprocessed chunks returned to pending")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_embed_status() -> str:
    """Chunk counts per embedding status, plus failed and oversized chunks."""
    status = await asyncio.to_thread(get_services().indexer.embed_status)
    lines = ["=== Embedding Status ===", f"Total chunks: {status['total']}"]
    for name, count in status["counts"].items():
        lines.append(f"  {name}: {count}")
    lines.append(f"Enriched: {status['enriched']}")
    lines.append(f"Sources: {status['sources']}")
    if status["backlog"]:
        lines.append("\nBacklog:")
        for row in status["backlog"]:
            lines.append(
                f"  [{row['id'][:8]}] {row['source_id']}#{row['sequence_index']} "
                f"{row['embedding_status']}: {row.get('error') or ''}"
            )
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_enrich_backfill(batch_size: int = 50) -> str:
    """Add LLM-written context to chunks that have none, re-embedding indexed ones.

    Args:
        batch_size: Max chunks to enrich in this call (resumable)
    """
    if batch_size <= 0:
        return f"Error: batch_size must be positive, got {batch_size}"
    result = await asyncio.to_thread(get_services().indexer.enrich_backfill, batch_size)
    return (
        f"Processed {result.processed}: {result.completed} enriched, {result.failed} failed, "
        f"{result.reembedded} re-embedded. Remaining: {result.remaining}"
    )


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_search(
    query: str,
    limit: int = 5,
    threshold: float = 0.5,
    after: str | None = None,
    model: str | None = None,
    scope: str = OWNER_CHUNK,
    before: str | None = None,
    topic: str | None = None,
) -> str:
    """Semantic search with lexical fallback over transcripts, knowledge or memories.

    Args:
        query: What to look for, in natural language
        limit: Max results (default 5, max 50)
        threshold: Minimum cosine similarity for vector hits (default 0.5)
        after: Only records created at or after this ISO timestamp
        model: Embedding model to search (default: first available provider)
        scope: One of chunk, knowledge, memory
        before: Only records created at or before this ISO timestamp
        topic: Only transcript chunks tagged with this topic (chunk scope)
    """
    if not query.strip():
        return "Error: query is required"
    error = _validate_limit(limit)
    if error:
        return error
    if scope not in SEARCH_SCOPES:
        return f"Error: Invalid scope '{scope}'. Valid: {list(SEARCH_SCOPES)}"
    bounds = {}
    for name, value in (("after", after), ("before", before)):
        bounds[name] = parse_timestamp(value) if value else None
        if value and bounds[name] is None:
            return f"Error: Invalid timestamp '{value}'"

    options = SearchOptions(
        model=model,
        limit=limit,
        threshold=threshold,
        after=bounds["after"],
        before=bounds["before"],
        topic=topic or None,
        owner_type=scope,
    )
    try:
        results = await asyncio.to_thread(get_services().retrieval.query, query, options)
    except ValueError as e:
        return f"Error: {e}"
    if not results:
        return f"No results found for '{query}'"

    lines = [f"Found {len(results)} results ({scope}):\n"]
    for i, result in enumerate(results, 1):
        score = f"Similarity: {result.score:.0%}" if result.method == "vector" else f"BM25: {result.score:.2f}"
        flags = "".join(f" [{flag}]" for flag in result.flags)
        lines.append(f"[{i}] {result.owner_id[:8]} | {result.created_at[:19]} | {score}{flags}")
        lines.append(f"    {result.excerpt}")
        lines.append("")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
    }
)
async def memory_add(
    category: str,
    subject: str,
    content: str,
    importance: int = 5,
    source: str = "manual",
) -> str:
    """Record a fact, preference, lesson, todo, person or project note.

    Args:
        category: One of fact, preference, lesson, todo, person, project, other
        subject: Short subject line
        content: The memory itself
        importance: 1 (trivia) to 10 (critical)
        source: Where this came from
    """
    try:
        record = await asyncio.to_thread(
            get_services().memories.add, category, subject, content, importance, source
        )
    except ValueError as e:
        return f"Error: {e}"
    return f"Saved memory (ID: {record.id[:8]}..., {record.category}, importance {record.importance})"


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
    }
)
async def memory_revise(memory_id: str, content: str, importance: int | None = None) -> str:
    """Store a new version of a memory. The previous version is kept.

    Args:
        memory_id: ID of the latest version of the memory
        content: Replacement content
        importance: New importance (keeps the current one if omitted)
    """
    try:
        record = await asyncio.to_thread(get_services().memories.revise, memory_id, content, importance)
    except (NotFound, ValueError) as e:
        return f"Error: {e}"
    return f"Revised memory {memory_id[:8]}... -> version {record.version} (ID: {record.id[:8]}...)"


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
    }
)
async def knowledge_add(
    title: str,
    summary: str,
    source_type: str = "manual",
    tags: list[str] | None = None,
    confidence: float = 1.0,
    source_url: str | None = None,
    expires_at: str | None = None,
    supersedes: str | None = None,
) -> str:
    """Add a distilled fact to the knowledge cache.

    Args:
        title: Short title
        summary: The fact itself
        source_type: Where it came from (manual, session, web, ...)
        tags: Optional tags
        confidence: 0.0 to 1.0
        source_url: Optional reference URL
        expires_at: Optional ISO timestamp after which the fact is stale
        supersedes: ID of an entry this one replaces
    """
    entry = KnowledgeEntry(
        title=title,
        summary=summary,
        source_type=source_type,
        tags=set(tags or []),
        confidence=confidence,
        source_url=source_url,
        expires_at=expires_at,
    )
    knowledge = get_services().knowledge
    try:
        if supersedes:
            entry_id = await asyncio.to_thread(knowledge.supersede, supersedes, entry)
        else:
            entry_id = await asyncio.to_thread(knowledge.add, entry)
    except (NotFound, ValueError) as e:
        return f"Error: {e}"
    suffix = f", supersedes {supersedes[:8]}..." if supersedes else ""
    return f"Added knowledge (ID: {entry_id}{suffix})"


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def knowledge_get(entry_id: str) -> str:
    """Show one knowledge entry.

    Args:
        entry_id: Full entry ID
    """
    try:
        entry = await asyncio.to_thread(get_services().knowledge.get, entry_id)
    except NotFound as e:
        return f"Error: {e}"
    lines = _format_entry(entry)
    if entry.source_url:
        lines.append(f"    Source: {entry.source_url}")
    lines.append(f"    Created: {entry.created_at[:19]} | Updated: {entry.updated_at[:19]}")
    if entry.expires_at:
        lines.append(f"    Expires: {entry.expires_at[:19]}")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def knowledge_list(
    source_type: str | None = None,
    verified: bool | None = None,
    tag: str | None = None,
    min_confidence: float = 0.0,
    include_expired: bool = False,
    limit: int = 20,
) -> str:
    """List knowledge entries, newest first.

    Args:
        source_type: Only entries of this source type
        verified: Only verified (true) or unverified (false) entries
        tag: Only entries carrying this tag
        min_confidence: Minimum confidence
        include_expired: Include entries past their expiry
        limit: Max entries (default 20, max 50)
    """
    error = _validate_limit(limit)
    if error:
        return error
    criteria = KnowledgeFilter(
        source_type=source_type,
        verified=verified,
        tag=tag,
        min_confidence=min_confidence,
        include_expired=include_expired,
        limit=limit,
    )
    entries = await asyncio.to_thread(get_services().knowledge.list, criteria)
    if not entries:
        return "No knowledge entries found"
    lines = [f"{len(entries)} knowledge entries:\n"]
    for entry in entries:
        lines.extend(_format_entry(entry))
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def knowledge_update(
    entry_id: str,
    title: str | None = None,
    summary: str | None = None,
    tags: list[str] | None = None,
    confidence: float | None = None,
    source_type: str | None = None,
    source_url: str | None = None,
    expires_at: str | None = None,
) -> str:
    """Update a knowledge entry. Changing the summary clears verification.

    Args:
        entry_id: Full entry ID
        title: New title (re-embeds)
        summary: New summary (re-embeds, resets verified)
        tags: New tags (replaces existing)
        confidence: New confidence, 0.0 to 1.0
        source_type: New source type
        source_url: New reference URL
        expires_at: New expiry timestamp
    """
    patch = KnowledgePatch(
        title=title,
        summary=summary,
        tags=set(tags) if tags is not None else None,
        confidence=confidence,
        source_type=source_type,
        source_url=source_url,
        expires_at=expires_at,
    )
    try:
        entry = await asyncio.to_thread(get_services().knowledge.update, entry_id, patch)
    except (NotFound, ValueError) as e:
        return f"Error: {e}"
    return "\n".join(["Updated knowledge entry", *_format_entry(entry)])


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def knowledge_verify(entry_id: str, confidence: float | None = None) -> str:
    """Mark a knowledge entry as verified.

    Args:
        entry_id: Full entry ID
        confidence: Optional new confidence; omitted keeps the current value
    """
    try:
        entry = await asyncio.to_thread(get_services().knowledge.verify, entry_id, confidence)
    except (NotFound, ValueError) as e:
        return f"Error: {e}"
    return f"Verified {entry.id[:8]}... (confidence {entry.confidence:.2f})"


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
    }
)
async def knowledge_delete(entry_id: str) -> str:
    """Delete a knowledge entry and its embeddings.

    Args:
        entry_id: Full entry ID
    """
    try:
        await asyncio.to_thread(get_services().knowledge.delete, entry_id)
    except NotFound as e:
        return f"Error: {e}"
    return f"Deleted knowledge entry {entry_id[:8]}..."


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def knowledge_search(query: str, limit: int = 10) -> str:
    """Keyword (BM25) search over knowledge titles and summaries.

    Args:
        query: Keywords
        limit: Max results (default 10, max 50)
    """
    if not query.strip():
        return "Error: query is required"
    error = _validate_limit(limit)
    if error:
        return error
    entries = await asyncio.to_thread(get_services().knowledge.search, query, KnowledgeFilter(limit=limit))
    if not entries:
        return f"No knowledge found for '{query}'"
    lines = [f"Found {len(entries)} entries:\n"]
    for entry in entries:
        lines.extend(_format_entry(entry))
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def knowledge_semantic_search(
    query: str,
    limit: int = 5,
    threshold: float = 0.5,
    model: str | None = None,
) -> str:
    """Semantic search over the knowledge cache.

    Args:
        query: What to look for, in natural language
        limit: Max results (default 5, max 50)
        threshold: Minimum cosine similarity (default 0.5)
        model: Embedding model to search
    """
    if not query.strip():
        return "Error: query is required"
    error = _validate_limit(limit)
    if error:
        return error
    services = get_services()
    options = SearchOptions(model=model, limit=limit, threshold=threshold, owner_type=OWNER_KNOWLEDGE)
    try:
        matches = await asyncio.to_thread(services.knowledge.semantic_search, query, options)
    except (AllProvidersExhausted, OversizedInputError, DimensionMismatch) as e:
        logger.warning("Knowledge vector search unavailable, using lexical search: %s", e)
        entries = await asyncio.to_thread(services.knowledge.search, query, KnowledgeFilter(limit=limit))
        if not entries:
            return f"No knowledge found for '{query}'"
        lines = [f"Found {len(entries)} entries (lexical fallback):\n"]
        for entry in entries:
            lines.extend(_format_entry(entry))
        return "\n".join(lines)
    if not matches:
        return f"No knowledge found for '{query}'"
    lines = [f"Found {len(matches)} entries:\n"]
    for entry, similarity in matches:
        lines.extend(_format_entry(entry, similarity))
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def knowledge_stats() -> str:
    """Knowledge cache statistics - total, verified, embedded, expired, by source."""
    stats = await asyncio.to_thread(get_services().knowledge.stats)
    lines = [
        "=== Knowledge Statistics ===",
        f"Total: {stats['total']}",
        f"Verified: {stats['verified']}",
        f"With embeddings: {stats['with_embeddings']}",
        f"Expired: {stats['expired']}",
        f"Superseded: {stats['superseded']}",
        "",
        "By Source:",
    ]
    for source, count in sorted(stats["by_source"].items()):
        lines.append(f"  {source}: {count}")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_health() -> str:
    """Get system health - providers, embedding models, database size, background indexing."""
    services = get_services()
    config = services.config
    lines = [
        "=== Recall Health Status ===",
        f"\nDatabase: {config.db_path}",
        f"Database size: {services.store.size_kb():.1f} KB",
        f"Sessions directory: {config.sessions_dir}",
        "\nEmbedding providers:",
    ]
    available = {p.name for p in services.embeddings.available_providers()}
    for provider in services.embeddings.providers:
        mark = "✓" if provider.name in available else "✗ no credential"
        lines.append(f"  {mark} {provider.name}: {provider.model} ({provider.dimensions} dims)")
    lines.append("\nStored embedding models:")
    for model in services.vectors.models() or ["(none)"]:
        lines.append(f"  {model}")
    indexed = ", ".join(services.store.fts_indexed()) or "none yet (built on first lexical search)"
    lines.append(f"\nFTS indexes (BM25): {indexed}")
    lines.append(f"\nEnrichment: {'✓ ' + config.llm_model if services.indexer.generator else '✗ no generator'}")
    if _index_task is not None and not _index_task.done():
        lines.append(f"Background indexing: ✓ Active (every {config.index_interval_hours}h)")
    else:
        lines.append("Background indexing: ✗ Not active")
    return "\n".join(lines)


# =============================================================================
# Periodic Indexing
# =============================================================================


def _run_index(services: Services) -> None:
    scan = services.indexer.scan_all()
    result = services.indexer.embed_all(_cancel_event)
    logger.info(
        "Index run: %d new chunks, %d embedded, %d failed",
        scan.chunks_created,
        result.embedded,
        result.failed,
    )


async def _periodic_index(interval_hours: float) -> None:
    """Periodically scan sources and embed new chunks."""
    while True:
        await asyncio.sleep(interval_hours * 3600)
        try:
            await asyncio.to_thread(_run_index, get_services())
        except Exception:
            logger.exception("Periodic index run failed")


# =============================================================================
# Server Entry Point
# =============================================================================


async def run_server() -> None:
    """Run the MCP server with store initialization and background indexing."""
    global _index_task
    services = get_services()
    try:
        services.embeddings.check_configuration()
    except ConfigurationError as e:
        logger.error("%s", e)
    if services.config.index_interval_hours > 0:
        _index_task = asyncio.create_task(_periodic_index(services.config.index_interval_hours))
    logger.info("Server ready")
    try:
        await mcp.run_stdio_async()
    finally:
        _cancel_event.set()
        if _index_task is not None:
            _index_task.cancel()


def _index_once() -> int:
    services = get_services()
    try:
        services.embeddings.check_configuration()
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    _run_index(services)
    return 0


def _print_status() -> int:
    status = get_services().indexer.embed_status()
    print(f"Total chunks: {status['total']}")
    for name, count in status["counts"].items():
        print(f"  {name}: {count}")
    for row in status["backlog"]:
        print(f"  [{row['id'][:8]}] {row['source_id']} {row['embedding_status']}: {row.get('error') or ''}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point."""
    global _services
    parser = argparse.ArgumentParser(prog="recall-mcp", description=__doc__.strip().splitlines()[0])
    parser.add_argument("command", nargs="?", default="serve", choices=("serve", "index", "status"))
    parser.add_argument("--db-path", type=Path, help="LanceDB directory")
    parser.add_argument("--sessions-dir", type=Path, help="Directory of transcripts to index")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    setup_logging(logging.DEBUG if args.verbose else logging.INFO)
    overrides = {}
    if args.db_path:
        overrides["db_path"] = args.db_path
    if args.sessions_dir:
        overrides["sessions_dir"] = args.sessions_dir
    if overrides:
        _services = build_services(replace(CONFIG, **overrides))

    if args.command == "index":
        return _index_once()
    if args.command == "status":
        return _print_status()
    asyncio.run(run_server())
    return 0


if __name__ == "__main__":
    sys.exit(main())
