"""MCP server for the memory engine.

Exposes the engine's operations as MCP tools over stdio. The engine is
built during server startup, so a bad configuration stops the process
before any request is served.
"""

import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, Optional

from mcp.server.fastmcp import FastMCP

from ..config import MemoryEngineConfig, load_env_file
from ..exceptions import ConfigurationError
from ..interfaces import OperationResult
from ..services.memory import MemoryEngine, create_memory_engine

logger = logging.getLogger(__name__)

SERVER_NAME = "memory-engine"

# Global engine instance (initialized at startup)
_memory_engine: Optional[MemoryEngine] = None
_config: Optional[MemoryEngineConfig] = None
_engine_lock = asyncio.Lock()


async def get_memory_engine() -> MemoryEngine:
    """Get or create the memory engine singleton."""
    global _memory_engine, _config

    if _memory_engine is not None:
        return _memory_engine

    async with _engine_lock:
        if _memory_engine is not None:
            return _memory_engine

        if _config is None:
            _config = MemoryEngineConfig.from_env()
        _memory_engine = await create_memory_engine(_config)
        logger.info(
            "Memory engine initialized (storage: %s, embedding: %s)",
            _config.storage.provider.value,
            _config.embedding.provider.value,
        )

    return _memory_engine


async def shutdown_memory_engine() -> None:
    global _memory_engine
    if _memory_engine is not None:
        await _memory_engine.close()
        _memory_engine = None


def _error_fields(result: OperationResult) -> dict[str, Any]:
    return {"error_kind": result.error_kind, "error": result.error}


def build_instructions(config: MemoryEngineConfig) -> str:
    """Server instructions naming the active embedding model."""
    return (
        "This server provides memory storage and retrieval functionality. "
        "Use 'store_memory' to store new memories, 'retrieve_memory' for semantic "
        "search, 'search_by_tag' to find memories by tags, 'get_memory' to fetch "
        "one memory by hash, and 'delete_memory' to remove memories. "
        f"Currently using {config.embedding.provider.value} embedding model "
        f"(size {config.embedding.dimensions})."
    )


@asynccontextmanager
async def _lifespan(server: FastMCP):
    await get_memory_engine()
    try:
        yield {}
    finally:
        await shutdown_memory_engine()


def create_server(config: Optional[MemoryEngineConfig] = None) -> FastMCP:
    """Create and configure the MCP server with all tools."""
    global _config
    if config is not None:
        _config = config
    elif _config is None:
        _config = MemoryEngineConfig.from_env()

    mcp = FastMCP(
        SERVER_NAME,
        instructions=build_instructions(_config),
        lifespan=_lifespan,
    )

    @mcp.tool()
    async def store_memory(
        content: str,
        tags: Optional[list[str]] = None,
        memory_type: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> str:
        """Store a new memory.

        Args:
            content: Memory text to store (required)
            tags: Categorization tags (e.g., ["weather", "facts"])
            memory_type: Free-form category label
            metadata: String-to-string metadata

        Returns:
            JSON with: success, content_hash, message, error_kind, error
        """
        engine = await get_memory_engine()
        result = await engine.store_memory(
            content=content,
            tags=tags,
            memory_type=memory_type,
            metadata=metadata,
        )
        return json.dumps({
            "success": result.success,
            "content_hash": result.content_hash,
            "message": result.message,
            **_error_fields(result),
        })

    @mcp.tool()
    async def retrieve_memory(query: str, n_results: int = 5) -> str:
        """Retrieve memories semantically similar to the query.

        Args:
            query: Natural language search query (required)
            n_results: Maximum number of results (default 5, capped at 100;
                0 returns no results)

        Returns:
            JSON with: success, results (content, content_hash, tags,
            metadata, score), count, error_kind, error
        """
        engine = await get_memory_engine()
        result = await engine.retrieve_memory(query=query, n_results=n_results)
        return json.dumps({
            "success": result.success,
            "query": query,
            "results": [
                {**r.record.to_dict(), "score": round(r.score, 4)}
                for r in result.results
            ],
            "count": len(result.results),
            **_error_fields(result),
        })

    @mcp.tool()
    async def search_by_tag(tags: list[str], match_all: bool = False) -> str:
        """Search memories by tags.

        Args:
            tags: Tags to search for (required, at least one)
            match_all: If True, a memory must carry every tag; otherwise any
                one tag is enough

        Returns:
            JSON with: success, results (matching memories), count, error_kind, error
        """
        engine = await get_memory_engine()
        result = await engine.search_by_tag(tags=tags, match_all=match_all)
        return json.dumps({
            "success": result.success,
            "tags": tags,
            "match_all": match_all,
            "results": [r.to_dict() for r in result.records],
            "count": len(result.records),
            **_error_fields(result),
        })

    @mcp.tool()
    async def get_memory(content_hash: str) -> str:
        """Fetch a single memory by its content hash.

        Args:
            content_hash: Hash returned by store_memory (required)

        Returns:
            JSON with: success, found, memory, error_kind, error
        """
        engine = await get_memory_engine()
        result = await engine.get_memory(content_hash)
        memory = result.records[0].to_dict() if result.records else None
        return json.dumps({
            "success": result.success,
            "found": memory is not None,
            "memory": memory,
            **_error_fields(result),
        })

    @mcp.tool()
    async def delete_memory(content_hash: str) -> str:
        """Delete a memory by its content hash.

        Args:
            content_hash: Hash returned by store_memory (required)

        Returns:
            JSON with: success, deleted (whether a memory existed and was
            removed), message, error_kind, error
        """
        engine = await get_memory_engine()
        result = await engine.delete_memory(content_hash)
        return json.dumps({
            "success": result.success,
            "content_hash": result.content_hash,
            "deleted": result.deleted,
            "message": result.message,
            **_error_fields(result),
        })

    return mcp


def configure_logging(level: str) -> None:
    # stdout is reserved for the MCP protocol
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def _find_configuration_error(error: BaseException) -> Optional[ConfigurationError]:
    """Dig a ConfigurationError out of the exception groups anyio raises."""
    if isinstance(error, ConfigurationError):
        return error
    for inner in getattr(error, "exceptions", ()):
        found = _find_configuration_error(inner)
        if found is not None:
            return found
    return None


def main():
    """Entry point for the MCP server."""
    load_env_file()

    try:
        config = MemoryEngineConfig.from_env()
        config.require_valid()
    except ConfigurationError as e:
        configure_logging("error")
        logger.error("%s", e)
        sys.exit(1)

    configure_logging(config.log_level)
    logger.info("Configuration loaded: %s", json.dumps(config.to_dict()))

    mcp = create_server(config)
    try:
        mcp.run()
    except Exception as e:
        # Lifespan failures surface wrapped in the server's task group
        startup_error = _find_configuration_error(e)
        if startup_error is None:
            raise
        logger.error("Startup failed: %s", startup_error)
        sys.exit(1)


if __name__ == "__main__":
    main()
