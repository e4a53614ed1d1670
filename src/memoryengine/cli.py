"""Memory engine CLI.

Usage:
    memoryengine mcp                # Start the MCP server (stdio)
    memoryengine config             # Print resolved configuration
    memoryengine config --check     # Also build the engine and report status
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from .config import MemoryEngineConfig, load_env_file
from .exceptions import ConfigurationError


def _load_config(args: argparse.Namespace) -> MemoryEngineConfig:
    if getattr(args, "config", None):
        path = Path(args.config).expanduser()
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}")
        return MemoryEngineConfig.from_file(path)
    return MemoryEngineConfig.from_env()


async def _check_engine(config: MemoryEngineConfig) -> dict:
    from .services.memory import create_memory_engine

    engine = await create_memory_engine(config)
    try:
        count = await engine.storage_backend.record_count()
    finally:
        await engine.close()
    return {
        "embedding": engine.embedding_generator.name,
        "dimension": engine.embedding_generator.dimension(),
        "records": count,
    }


def cmd_config(args: argparse.Namespace) -> int:
    """Print the resolved configuration; exit 1 if it is invalid."""
    load_env_file()

    try:
        config = _load_config(args)
    except ConfigurationError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1

    print(json.dumps(config.to_dict(), indent=2))

    errors = config.validate()
    if errors:
        for error in errors:
            print(f"❌ {error}", file=sys.stderr)
        return 1

    if args.check:
        try:
            status = asyncio.run(_check_engine(config))
        except ConfigurationError as e:
            print(f"❌ {e}", file=sys.stderr)
            return 1
        print(
            f"✅ Engine ready: {status['embedding']} embeddings "
            f"({status['dimension']} dims), {status['records']} memories stored"
        )
    else:
        print("✅ Configuration is valid")
    return 0


def cmd_mcp(args: argparse.Namespace) -> None:
    """Start the MCP server (stdio)."""
    from .mcp.server import main as mcp_main
    mcp_main()


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="memoryengine",
        description="Memory engine: semantic memory store for MCP clients",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("mcp", help="Start the MCP server (stdio transport)")

    config_parser = subparsers.add_parser(
        "config", help="Show and validate the resolved configuration"
    )
    config_parser.add_argument("--config", "-c", type=str, default=None,
                               help="YAML config file (default: environment)")
    config_parser.add_argument("--check", action="store_true",
                               help="Build the engine to verify model and backend")

    args = parser.parse_args()

    if args.command == "config":
        sys.exit(cmd_config(args))
    elif args.command == "mcp":
        cmd_mcp(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
