"""
Tests for the engine adapter.

Tests:
- Engine exceptions become Err results with prefixed messages
- Execution output becomes output log entries
- Execute timeout

Run tests:
    pytest tests/test_adapter.py -v
"""

import asyncio

import pytest

from fakes import FakeEngine
from lab.adapter import EngineAdapter
from lab.buffers import LogStyle
from lab.engine import BuiltinEngine, ComponentKind
from lab.errors import ConfigError, ExecutionError, TransportError
from lab.result import Err, Ok


class StubNormaliser:
    def __init__(self, result):
        self.result = result
        self.calls = []

    async def normalise(self, config):
        self.calls.append(config)
        return self.result


class TestCatalog:
    def test_catalog_covers_every_kind(self):
        adapter = EngineAdapter(FakeEngine())

        catalog = adapter.catalog()

        assert set(catalog) == set(ComponentKind)
        assert catalog[ComponentKind.RATELIMIT] == ("local",)

    def test_version_comes_from_engine(self):
        assert EngineAdapter(FakeEngine()).version == "fake-1.0"


class TestConfigOperations:
    def test_compile_error_is_prefixed(self):
        engine = FakeEngine()
        engine.compile_error = "line 2: bad"

        result = asyncio.run(EngineAdapter(engine).compile("x"))

        assert isinstance(result, Err)
        assert isinstance(result.error, ConfigError)
        assert str(result.error) == "failed to create pipeline: line 2: bad"

    def test_compile_returns_lints(self):
        result = asyncio.run(EngineAdapter(FakeEngine(lints=["line 1: x"])).compile("x"))

        assert isinstance(result, Ok)
        assert result.value.lints == ["line 1: x"]

    def test_normalise_uses_engine_by_default(self):
        engine = FakeEngine()

        result = asyncio.run(EngineAdapter(engine).normalise("a: 1"))

        assert result == Ok("normalised:\na: 1")
        assert engine.normalise_calls == ["a: 1"]

    def test_normalise_error_is_prefixed(self):
        result = asyncio.run(EngineAdapter(FakeEngine()).normalise("invalid"))

        assert str(result.error) == "failed to normalise config: line 1: invalid config"

    def test_bound_normaliser_replaces_engine(self):
        engine = FakeEngine()
        normaliser = StubNormaliser(Err(TransportError("failed to normalise config: status 400")))

        result = asyncio.run(EngineAdapter(engine, normaliser=normaliser).normalise("a: 1"))

        assert isinstance(result.error, TransportError)
        assert normaliser.calls == ["a: 1"]
        assert engine.normalise_calls == []

    def test_insert_component(self):
        adapter = EngineAdapter(FakeEngine())

        assert adapter.insert_component(ComponentKind.CACHE, "memory", "") == Ok("# cache: memory\n")
        assert adapter.insert_component(ComponentKind.CACHE, "", "") == Ok(None)

        rejected = adapter.insert_component(ComponentKind.CACHE, "redis", "")
        assert str(rejected.error) == "failed to add cache: cache type 'redis' not recognised"


class TestExecute:
    def collect(self, adapter, input_text):
        entries = []
        result = asyncio.run(adapter.execute(input_text, entries.append))
        return result, entries

    def test_parts_and_separators(self):
        result, entries = self.collect(EngineAdapter(FakeEngine()), "a\nb\n\nc")

        assert result == Ok(2)
        assert [e.text for e in entries] == ["A", "B", "", "C", ""]

    def test_logs_precede_parts(self):
        engine = BuiltinEngine()
        config = "pipeline:\n  processors:\n    - type: log\n"
        asyncio.run(engine.compile(config))

        result, entries = self.collect(EngineAdapter(engine), "hi")

        assert result == Ok(1)
        assert [(e.text, e.style) for e in entries] == [
            ("Log: INFO hi", LogStyle.LOG),
            ("hi", LogStyle.NONE),
            ("", LogStyle.NONE),
        ]

    def test_uncompiled_engine_is_execution_error(self):
        result, entries = self.collect(EngineAdapter(BuiltinEngine()), "hi")

        assert isinstance(result.error, ExecutionError)
        assert str(result.error) == "failed to execute: pipeline must be compiled first"
        assert entries == []

    def test_unexpected_engine_exception(self):
        engine = FakeEngine()
        engine.execute_error = RuntimeError("engine crashed")

        result, _ = self.collect(EngineAdapter(engine), "hi")

        assert isinstance(result.error, ExecutionError)
        assert str(result.error) == "failed to execute: engine crashed"

    def test_timeout(self):
        engine = FakeEngine()

        async def go():
            engine.execute_gate = asyncio.Event()
            return await EngineAdapter(engine, execute_timeout=0.01).execute("hi", lambda entry: None)

        result = asyncio.run(go())

        assert str(result.error) == "failed to execute: request timed out"
        assert engine.active == 0

    @pytest.mark.parametrize("failing", [0, 1])
    def test_failed_batch_is_one_error_entry(self, failing):
        engine = FakeEngine()
        engine.batch_errors = {failing: "boom"}

        result, entries = self.collect(EngineAdapter(engine), "a\n\nb")

        assert result == Ok(2)
        errors = [e for e in entries if e.style == LogStyle.ERROR]
        assert [e.text for e in errors] == ["Error: failed to execute: boom"]
        assert len(entries) == 3
