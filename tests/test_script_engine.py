import asyncio
import time

import pytest

from dataflow.errors import ScriptError
from dataflow.script_engine import ScriptEngine


def _run(engine, code, inputs=None, **kwargs):
    return asyncio.run(engine.run(code, inputs, **kwargs))


def test_expression_returns_value(script_engine):
    assert _run(script_engine, "len(items) * 2", {"items": [1, 2, 3]}) == 6


def test_statement_block_returns_result(script_engine):
    code = """
total = 0
for item in items:
    total += item
result = {"total": total, "max": max(items)}
"""
    assert _run(script_engine, code, {"items": [4, 1, 7]}) == {"total": 12, "max": 7}


def test_json_and_math_are_available(script_engine):
    assert _run(script_engine, "json.loads(data)['n'] + math.floor(1.9)", {"data": '{"n": 1}'}) == 2


def test_import_is_blocked(script_engine):
    with pytest.raises(ScriptError):
        _run(script_engine, "import os\nresult = os.getcwd()")


def test_open_is_blocked(script_engine):
    with pytest.raises(ScriptError):
        _run(script_engine, "open('/etc/passwd').read()")


def test_exception_becomes_script_error(script_engine):
    with pytest.raises(ScriptError) as info:
        _run(script_engine, "1 / 0", name="<divide>")
    assert "ZeroDivisionError" in info.value.message
    assert info.value.script_name == "<divide>"


def test_syntax_error(script_engine):
    with pytest.raises(ScriptError):
        _run(script_engine, "result = (")


def test_empty_script(script_engine):
    with pytest.raises(ScriptError):
        _run(script_engine, "   ")


def test_budget_overrun():
    engine = ScriptEngine(timeout_seconds=0.05)
    try:
        with pytest.raises(ScriptError) as info:
            _run(engine, "sum(i * i for i in range(20000000))")
        assert "budget" in info.value.message
    finally:
        engine.shutdown()


def test_event_loop_keeps_running_during_script(script_engine):
    code = """
total = 0
for i in range(3000000):
    total += i
result = total
"""

    async def run():
        ticks = []

        async def heartbeat():
            while True:
                ticks.append(time.perf_counter())
                await asyncio.sleep(0.01)

        beat = asyncio.ensure_future(heartbeat())
        started = time.perf_counter()
        await script_engine.run(code)
        elapsed = time.perf_counter() - started
        beat.cancel()
        gaps = [b - a for a, b in zip(ticks, ticks[1:])]
        return elapsed, ticks, gaps

    elapsed, ticks, gaps = asyncio.run(run())
    assert len(ticks) > 1
    assert max(gaps) < max(0.2, elapsed / 2)
