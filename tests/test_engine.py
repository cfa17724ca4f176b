import asyncio

import pytest

from cue import ScriptEngine, Environment, NotificationCenter, WILL_EXECUTE_COMMAND, DID_END, DID_PAUSE
from cue.cue_commands import Command, CancellableCommand, action, wait


class Recorder:
    def __init__(self):
        self.events = []

    def mark(self, name):
        return action(lambda: self.events.append(name))


class Manual(Command):
    """Completes only when the test calls one of the stored handlers."""
    kind = "manual"

    def __init__(self):
        super().__init__()
        self.handlers = []

    def execute(self):
        self.handlers.append(self.completion_handler)


class Tracked(CancellableCommand):
    kind = "tracked"

    def __init__(self):
        super().__init__()
        self.cancel_count = 0

    def on_cancel(self):
        self.cancel_count += 1


def make_engine(commands, **kwargs):
    calls = []
    kwargs.setdefault("environment", Environment())
    kwargs.setdefault("notifications", NotificationCenter())
    engine = ScriptEngine(commands, completion_handler=lambda: calls.append("done"), **kwargs)
    return engine, calls


async def until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.mark.asyncio
async def test_runs_every_command_once_in_order():
    rec = Recorder()
    engine, calls = make_engine([rec.mark(i) for i in range(5)])
    engine.run()
    status = await asyncio.wait_for(engine.wait(), 2)
    assert status == "completed"
    assert rec.events == [0, 1, 2, 3, 4]
    assert calls == ["done"]
    assert engine.duplicate_completions == 0


@pytest.mark.asyncio
async def test_empty_script_completes_once():
    engine, calls = make_engine([])
    engine.run()
    assert await asyncio.wait_for(engine.wait(), 2) == "completed"
    assert calls == ["done"]


@pytest.mark.asyncio
async def test_commands_do_not_run_inline_with_run():
    rec = Recorder()
    engine, _ = make_engine([rec.mark("a")])
    engine.run()
    assert rec.events == []
    await asyncio.wait_for(engine.wait(), 2)
    assert rec.events == ["a"]


@pytest.mark.asyncio
async def test_cleanup_handler_runs_after_completion_handler():
    order = []
    engine = ScriptEngine([], environment=Environment(), notifications=NotificationCenter(),
                          completion_handler=lambda: order.append("completion"),
                          cleanup_handler=lambda: order.append("cleanup"))
    engine.run()
    await asyncio.wait_for(engine.wait(), 2)
    assert order == ["completion", "cleanup"]


@pytest.mark.asyncio
async def test_engine_is_registered_while_running():
    manual = Manual()
    engine, _ = make_engine([manual])
    run_id = engine.run()
    assert ScriptEngine.get(run_id) is engine
    assert engine in ScriptEngine.running_scripts()
    await until(lambda: manual.handlers)
    manual.handlers[0]()
    await asyncio.wait_for(engine.wait(), 2)
    assert ScriptEngine.get(run_id) is None


@pytest.mark.asyncio
async def test_run_twice_is_an_error():
    engine, _ = make_engine([])
    engine.run()
    with pytest.raises(RuntimeError):
        engine.run()
    await asyncio.wait_for(engine.wait(), 2)


@pytest.mark.asyncio
async def test_cancel_skips_completion_and_cancels_each_command_once():
    rec = Recorder()
    t1, t2, t3 = Tracked(), Tracked(), Tracked()
    long_wait = wait(10)
    cleanups = []
    engine, calls = make_engine([t1, rec.mark("a"), t2, long_wait, t3, rec.mark("b")],
                                cleanup_handler=lambda: cleanups.append(1))
    engine.run()
    await until(lambda: engine.instruction_pointer == 4)
    engine.cancel()
    assert await asyncio.wait_for(engine.wait(), 2) == "cancelled"
    await asyncio.sleep(0.05)

    assert calls == []
    assert rec.events == ["a"]
    assert [t.cancel_count for t in (t1, t2, t3)] == [1, 1, 1]
    assert long_wait.is_cancelled
    assert cleanups == [1]
    assert engine.is_cancelled
    assert ScriptEngine.get(engine.id) is None


@pytest.mark.asyncio
async def test_completion_after_cancel_is_ignored():
    rec = Recorder()
    manual = Manual()
    engine, calls = make_engine([manual, rec.mark("after")])
    engine.run()
    await until(lambda: manual.handlers)
    engine.cancel()
    manual.handlers[0]()
    await asyncio.sleep(0.05)
    assert rec.events == []
    assert calls == []
    assert engine.status == "cancelled"


@pytest.mark.asyncio
async def test_double_completion_is_detected_and_ignored():
    rec = Recorder()
    manual = Manual()
    engine, calls = make_engine([manual, rec.mark("b")])
    engine.run()
    await until(lambda: manual.handlers)
    manual.handlers[0]()
    manual.handlers[0]()
    await asyncio.wait_for(engine.wait(), 2)
    assert rec.events == ["b"]
    assert calls == ["done"]
    assert engine.duplicate_completions == 1


@pytest.mark.asyncio
async def test_cancel_by_run_id_and_cancel_all():
    first, _ = make_engine([wait(10)])
    second, _ = make_engine([wait(10)])
    first_id = first.run()
    second.run()

    assert ScriptEngine.cancel_script(first_id) is True
    assert ScriptEngine.cancel_script(first_id) is False
    assert first.status == "cancelled"
    assert second.status == "running"

    assert ScriptEngine.cancel_all() >= 1
    assert second.status == "cancelled"
    assert ScriptEngine.running_scripts() == []


@pytest.mark.asyncio
async def test_notifications_report_each_step_and_the_end():
    center = NotificationCenter()
    rec = Recorder()
    engine, _ = make_engine([rec.mark("a"), rec.mark("b"), rec.mark("c")], notifications=center)
    seen = []
    ended = []
    center.subscribe(WILL_EXECUTE_COMMAND, lambda n: seen.append((n.info["index"], n.subject.instruction_pointer)))
    center.subscribe(DID_END, lambda n: ended.append(n.info["status"]), subject=engine)
    engine.run()
    await asyncio.wait_for(engine.wait(), 2)
    # Posted before the pointer advances
    assert seen == [(0, 0), (1, 1), (2, 2)]
    assert ended == ["completed"]


@pytest.mark.asyncio
async def test_failing_command_fails_the_run():
    rec = Recorder()

    def boom():
        raise ValueError("boom")

    engine, calls = make_engine([action(boom), rec.mark("after")])
    engine.run()
    assert await asyncio.wait_for(engine.wait(), 2) == "failed"
    assert isinstance(engine.error, ValueError)
    assert rec.events == []
    assert calls == []


@pytest.mark.asyncio
async def test_restart_ignores_the_interrupted_command():
    rec = Recorder()
    manual = Manual()
    engine, calls = make_engine([rec.mark("a"), manual, rec.mark("b")])
    engine.run()
    await until(lambda: len(manual.handlers) == 1)

    engine.restart_at(0)
    await until(lambda: len(manual.handlers) == 2)
    manual.handlers[0]()
    await asyncio.sleep(0.02)
    assert rec.events == ["a", "a"]

    manual.handlers[1]()
    await asyncio.wait_for(engine.wait(), 2)
    assert rec.events == ["a", "a", "b"]
    assert calls == ["done"]


@pytest.mark.asyncio
async def test_pause_holds_waits_until_resume():
    center = NotificationCenter()
    paused = []
    center.subscribe(DID_PAUSE, lambda n: paused.append(n.subject))
    rec = Recorder()
    engine, _ = make_engine([wait(0.01), rec.mark("after")], notifications=center)
    engine.pause()
    assert engine.is_paused
    assert paused == [engine]
    engine.run()
    await asyncio.sleep(0.1)
    assert rec.events == []
    engine.is_paused = False
    await asyncio.wait_for(engine.wait(), 2)
    assert rec.events == ["after"]


@pytest.mark.asyncio
async def test_index_of_finds_first_matching_kind_and_label():
    from cue.cue_commands import label, goto
    engine, _ = make_engine([goto("x"), label("y"), label("x"), label("x")])
    assert engine.index_of("label", "x") == 2
    assert engine.index_of("goto", "x") == 0
    assert engine.index_of("label", "z") is None


@pytest.mark.asyncio
async def test_start_creates_and_runs_an_engine():
    rec = Recorder()
    run_id = ScriptEngine.start([rec.mark("a")], environment=Environment(), notifications=NotificationCenter())
    engine = ScriptEngine.get(run_id)
    assert engine is not None
    assert await asyncio.wait_for(engine.wait(), 2) == "completed"
    assert rec.events == ["a"]
