"""Tests for MCP server setup."""

import asyncio
import os

import pytest

mcp = pytest.importorskip("mcp")

from memoryengine.config import EmbeddingConfig, MemoryEngineConfig
from memoryengine.exceptions import ConfigurationError
from memoryengine.mcp import server as mcp_server


@pytest.fixture
def reset_server_state(monkeypatch):
    monkeypatch.setattr(mcp_server, "_memory_engine", None)
    monkeypatch.setattr(mcp_server, "_config", None)


@pytest.mark.asyncio
async def test_get_memory_engine_uses_factory(monkeypatch, reset_server_state):
    dummy = object()
    calls = []

    async def fake_create_memory_engine(config):
        calls.append(config)
        return dummy

    monkeypatch.setattr(mcp_server, "create_memory_engine", fake_create_memory_engine)
    monkeypatch.setattr(
        mcp_server.MemoryEngineConfig, "from_env", classmethod(lambda cls: MemoryEngineConfig())
    )

    engine = await mcp_server.get_memory_engine()
    assert engine is dummy

    # Subsequent calls should return cached instance
    assert await mcp_server.get_memory_engine() is dummy
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_concurrent_first_calls_build_one_engine(monkeypatch, reset_server_state):
    calls = []

    async def slow_create_memory_engine(config):
        calls.append(config)
        await asyncio.sleep(0.01)
        return object()

    monkeypatch.setattr(mcp_server, "create_memory_engine", slow_create_memory_engine)
    monkeypatch.setattr(mcp_server, "_config", MemoryEngineConfig())

    engines = await asyncio.gather(*(mcp_server.get_memory_engine() for _ in range(5)))
    assert len({id(e) for e in engines}) == 1
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_startup_failure_propagates(monkeypatch, reset_server_state):
    bad = MemoryEngineConfig(embedding=EmbeddingConfig(dimensions=0))
    monkeypatch.setattr(mcp_server, "_config", bad)

    with pytest.raises(ConfigurationError):
        await mcp_server.get_memory_engine()


@pytest.mark.asyncio
async def test_create_server_registers_tools(reset_server_state):
    server = mcp_server.create_server(MemoryEngineConfig())
    names = {tool.name for tool in await server.list_tools()}

    expected = {
        "store_memory",
        "retrieve_memory",
        "search_by_tag",
        "get_memory",
        "delete_memory",
    }
    assert expected.issubset(names)


def test_instructions_name_embedding_model():
    config = MemoryEngineConfig(embedding=EmbeddingConfig(dimensions=128))
    instructions = mcp_server.build_instructions(config)
    assert "stub embedding model" in instructions
    assert "size 128" in instructions


class _TaskGroupError(Exception):
    """Stand-in for the exception group anyio raises from a task group."""

    def __init__(self, exceptions):
        super().__init__("unhandled errors in a TaskGroup")
        self.exceptions = exceptions


class TestMain:
    """Startup failures from the server lifespan."""

    @pytest.fixture
    def main_env(self, tmp_path, monkeypatch, reset_server_state):
        monkeypatch.chdir(tmp_path)
        for name in list(os.environ):
            if name.startswith("MCP_MEMORY_"):
                monkeypatch.delenv(name)
        monkeypatch.setattr(mcp_server, "configure_logging", lambda level: None)

    def _patch_run(self, monkeypatch, error):
        class _Server:
            def run(self):
                raise error

        monkeypatch.setattr(mcp_server, "create_server", lambda config: _Server())

    def test_wrapped_configuration_error_exits_cleanly(self, main_env, monkeypatch):
        error = _TaskGroupError([_TaskGroupError([ConfigurationError("Storage backend failed")])])
        self._patch_run(monkeypatch, error)

        with pytest.raises(SystemExit) as exc:
            mcp_server.main()
        assert exc.value.code == 1

    def test_bare_configuration_error_exits_cleanly(self, main_env, monkeypatch):
        self._patch_run(monkeypatch, ConfigurationError("Embedding model failed to load"))

        with pytest.raises(SystemExit) as exc:
            mcp_server.main()
        assert exc.value.code == 1

    def test_other_errors_propagate(self, main_env, monkeypatch):
        self._patch_run(monkeypatch, _TaskGroupError([RuntimeError("boom")]))

        with pytest.raises(_TaskGroupError):
            mcp_server.main()

    def test_find_configuration_error(self):
        inner = ConfigurationError("bad")
        assert mcp_server._find_configuration_error(_TaskGroupError([ValueError(), inner])) is inner
        assert mcp_server._find_configuration_error(RuntimeError()) is None
