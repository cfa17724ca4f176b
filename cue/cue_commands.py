"""
Script commands: the command protocol plus the built-in command set.

Every command exposes execute(), a queue (the asyncio loop it runs on), a
one-shot completion_handler and a weak reference to the engine running it.
The engine assigns all three right before calling execute(). A command must
invoke its completion handler exactly once, after its work has finished.

Control-flow commands carry a label and move the engine's instruction
pointer; their targets are found at execution time by scanning the engine's
own command list for the first command with a given (kind, label) pair.
"""
import asyncio
import inspect
import re
import weakref
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

import pystache

from cue.cue_datatypes import dbg
from cue.cue_environment import Environment

CommandBuilder = Callable[[str], Optional['Command']]

# Tasks of commands that are still performing
_active_tasks: set = set()


# ===================================================================
# 1. Command protocol
# ===================================================================

class Command:
    """Base class for all commands.

    Subclasses usually override the coroutine perform(); the base execute()
    runs it as a task on the command's queue and then fires the completion
    handler. Exceptions raised by perform() fail the owning engine.
    """
    kind = "command"
    cancellable = False

    def __init__(self):
        self.queue: Optional[asyncio.AbstractEventLoop] = None
        self.completion_handler: Optional[Callable[[], Any]] = None
        self._engine_ref = None
        # Set by the compiler
        self.line_number: Optional[int] = None

    @property
    def engine(self):
        return self._engine_ref() if self._engine_ref is not None else None

    @engine.setter
    def engine(self, engine):
        self._engine_ref = weakref.ref(engine) if engine is not None else None

    @property
    def environment(self) -> Environment:
        engine = self.engine
        return engine.environment if engine is not None else Environment.shared

    def execute(self):
        # Bind the handler now: a restarted engine may hand us a new one before this task ends
        handler = self.completion_handler
        self._spawn(handler)

    def _spawn(self, handler) -> asyncio.Task:
        task = self.queue.create_task(self._execute_async(handler))
        # The loop only keeps weak references to tasks
        _active_tasks.add(task)
        task.add_done_callback(_active_tasks.discard)
        return task

    async def _execute_async(self, handler):
        try:
            await self.perform()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            engine = self.engine
            if engine is None:
                raise
            engine.fail(e)
            return
        if handler is not None:
            handler()

    async def perform(self):
        return None

    def cancel(self):
        pass

    def arguments(self) -> list:
        """Values shown by the printer after the command kind."""
        return []

    @classmethod
    def command_builders(cls) -> List[CommandBuilder]:
        """Line parsers contributed to the compiler; see ScriptCompiler.register()."""
        return []

    def __repr__(self):
        args = " ".join(repr(a) for a in self.arguments())
        return f"<{self.kind}{' ' + args if args else ''}>"

    # --- helpers for subclasses ---

    def evaluate(self, condition) -> bool:
        """Evaluates a condition: a callable, an environment key naming one, or a plain value."""
        if isinstance(condition, str):
            condition = self.environment.get(condition, False)
        if callable(condition):
            return bool(condition())
        return bool(condition)

    def resolve_action(self, action) -> Optional[Callable]:
        if isinstance(action, str):
            action = self.environment.get(action)
        return action if callable(action) else None

    async def call_action(self, action, *args):
        fn = self.resolve_action(action)
        if fn is None:
            return None
        result = fn(*args)
        if inspect.isawaitable(result):
            result = await result
        return result


class _CancellationState:
    """Mutable cell holding a command's cancellation flag and pending work."""
    def __init__(self):
        self.is_cancelled = False
        self.task: Optional[asyncio.Task] = None
        self.sub_engine = None


class CancellableCommand(Command):
    """A command with side effects that must be undone when its script is cancelled.

    The cancellation flag is reset by the engine before every execute(), so
    one instance can be re-executed (loop bodies, repeated steps).
    """
    cancellable = True

    def __init__(self):
        super().__init__()
        self.state = _CancellationState()

    @property
    def is_cancelled(self) -> bool:
        return self.state.is_cancelled

    def reset_cancellation(self):
        self.state.is_cancelled = False

    def execute(self):
        handler = self.completion_handler
        self.state.task = self._spawn(handler)

    def cancel(self):
        self.state.is_cancelled = True
        task = self.state.task
        if task is not None and not task.done():
            task.cancel()
        self.on_cancel()

    def on_cancel(self):
        pass


def _label_text(label) -> str:
    if isinstance(label, Enum):
        label = label.value
    return str(label)


class LabeledCommand(Command):
    """A command that takes part in label based jumps."""

    def __init__(self, label):
        super().__init__()
        self.label = _label_text(label)

    def index_for(self, kind: str) -> Optional[int]:
        engine = self.engine
        if engine is None:
            return None
        return engine.index_of(kind, self.label)

    def jump_to(self, kind: str, offset: int = 0) -> bool:
        engine = self.engine
        if engine is None:
            return False
        return engine.jump(kind, self.label, offset, source=self)

    def arguments(self) -> list:
        return [self.label]


def _simple_builder(keyword: str, factory):
    pattern = re.compile(rf"^{keyword}\s+(\S+)$")

    def build(line: str):
        m = pattern.match(line)
        return factory(m.group(1)) if m else None
    build.__name__ = f"build_{keyword}"
    return build


# ===================================================================
# 2. Labels and jumps
# ===================================================================

class LabelCommand(LabeledCommand):
    """Marks a goto target. Does nothing when executed."""
    kind = "label"

    @classmethod
    def command_builders(cls):
        return [_simple_builder("label", cls)]


class GotoCommand(LabeledCommand):
    """Continues execution at the first label command with the same label."""
    kind = "goto"

    async def perform(self):
        self.jump_to("label")

    @classmethod
    def command_builders(cls):
        return [_simple_builder("goto", cls)]


class StepCommand(LabeledCommand):
    """Marks the start of a named step; used for progress tracking."""
    kind = "step"

    @classmethod
    def command_builders(cls):
        pattern = re.compile(r"^step\s+(.+)$")

        def build_step(line: str):
            m = pattern.match(line)
            return cls(m.group(1).strip()) if m else None
        return [build_step]


# ===================================================================
# 3. if / then / else / endif
# ===================================================================

class IfCommand(LabeledCommand):
    """Evaluates condition and enters the then- or else-branch with the same label.

    A true condition jumps to 'then'. A false one jumps one past 'else' (the
    'else' marker itself would jump to 'endif'), or to 'endif' when the
    construct has no 'else'.
    """
    kind = "if"

    def __init__(self, condition, label):
        super().__init__(label)
        self.condition = condition

    async def perform(self):
        if self.evaluate(self.condition):
            self.jump_to("then")
        elif self.index_for("else") is not None:
            self.jump_to("else", 1)
        else:
            self.jump_to("endif")

    def arguments(self):
        return [_describe(self.condition), self.label]

    @classmethod
    def command_builders(cls):
        pattern = re.compile(r"^if\s+(\S+)\s+(\S+)$")

        def build_if(line: str):
            m = pattern.match(line)
            return cls(m.group(1), m.group(2)) if m else None
        return [build_if]


class ThenCommand(LabeledCommand):
    kind = "then"

    @classmethod
    def command_builders(cls):
        return [_simple_builder("then", cls)]


class ElseCommand(LabeledCommand):
    """Ends the then-branch: falling through here skips to 'endif'."""
    kind = "else"

    async def perform(self):
        self.jump_to("endif")

    @classmethod
    def command_builders(cls):
        return [_simple_builder("else", cls)]


class EndIfCommand(LabeledCommand):
    kind = "endif"

    @classmethod
    def command_builders(cls):
        return [_simple_builder("endif", cls)]


# ===================================================================
# 4. Loops
# ===================================================================

class WhileCommand(LabeledCommand):
    """Leaves the loop (past 'endwhile') once condition is false."""
    kind = "while"

    def __init__(self, condition, label):
        super().__init__(label)
        self.condition = condition

    async def perform(self):
        if not self.evaluate(self.condition):
            self.jump_to("endwhile", 1)

    def arguments(self):
        return [_describe(self.condition), self.label]

    @classmethod
    def command_builders(cls):
        pattern = re.compile(r"^while\s+(\S+)\s+(\S+)$")

        def build_while(line: str):
            m = pattern.match(line)
            return cls(m.group(1), m.group(2)) if m else None
        return [build_while]


class EndWhileCommand(LabeledCommand):
    """Jumps back to 'while', which re-evaluates its condition."""
    kind = "endwhile"

    async def perform(self):
        self.jump_to("while")

    @classmethod
    def command_builders(cls):
        return [_simple_builder("endwhile", cls)]


def closed_range(bounds) -> Tuple[int, int]:
    """Normalizes (lower, upper) pairs and step-1 ranges to inclusive bounds."""
    if isinstance(bounds, range):
        if bounds.step != 1:
            raise ValueError("for loops only support ranges with step 1")
        return bounds.start, bounds.stop - 1
    if isinstance(bounds, (tuple, list)) and len(bounds) == 2:
        return int(bounds[0]), int(bounds[1])
    raise TypeError("for expects a (lower, upper) pair or a range")


class ForCommand(LabeledCommand):
    """Counts the environment variable named by the label from lower to upper (inclusive).

    Entering the loop stores lower; each later visit increments the counter
    and leaves the loop (past 'endfor') once it exceeds upper. A counter that
    is missing or already exhausted starts the loop afresh.
    """
    kind = "for"

    def __init__(self, bounds, label):
        super().__init__(label)
        self.lower, self.upper = closed_range(bounds)

    async def perform(self):
        env = self.environment
        current = env.get(self.label, kind=int)
        if current is None or current > self.upper:
            env.set(self.label, self.lower)
            if self.lower > self.upper:
                self.jump_to("endfor", 1)
            return
        current += 1
        env.set(self.label, current)
        if current > self.upper:
            self.jump_to("endfor", 1)

    def arguments(self):
        return [self.label, f"{self.lower}...{self.upper}"]

    @classmethod
    def command_builders(cls):
        pattern = re.compile(r"^for\s+(\S+)\s+(-?\d+)\s*\.\.\.?\s*(-?\d+)$")

        def build_for(line: str):
            m = pattern.match(line)
            if not m:
                return None
            return cls((int(m.group(2)), int(m.group(3))), m.group(1))
        return [build_for]


class EndForCommand(LabeledCommand):
    """Jumps back to 'for', which advances the counter."""
    kind = "endfor"

    async def perform(self):
        self.jump_to("for")

    @classmethod
    def command_builders(cls):
        return [_simple_builder("endfor", cls)]


# ===================================================================
# 5. Sub-scripts and script control
# ===================================================================

class RunCommand(CancellableCommand):
    """Runs a list of commands as a subroutine in a child engine.

    The child shares the parent's environment and its completion handler is
    this command's completion handler, so the parent only advances once the
    child has run to its end. Cancelling this command cancels the child.
    """
    kind = "run"

    def __init__(self, commands: Sequence[Command]):
        super().__init__()
        self.commands = list(commands)

    def execute(self):
        from cue.cue_engine import ScriptEngine

        parent = self.engine
        if parent is None:
            return
        sub_engine = ScriptEngine(
            self.commands,
            environment=parent.environment,
            completion_handler=self.completion_handler,
            notifications=parent.notifications,
            strict_labels=parent.strict_labels,
            side_effects=parent.side_effects,
        )
        sub_engine.parent = parent
        self.state.sub_engine = sub_engine
        sub_engine.run(loop=self.queue)

    def on_cancel(self):
        sub_engine = self.state.sub_engine
        if sub_engine is not None:
            sub_engine.cancel()

    def arguments(self):
        return [f"[{len(self.commands)} commands]"]


class ExitCommand(Command):
    """Cancels the running script together with every script that called it."""
    kind = "exit"

    def execute(self):
        # Never completes: the whole chain of engines stops here
        self.queue.call_soon(self._exit)

    def _exit(self):
        engine = self.engine
        if engine is not None:
            engine.root.cancel()

    @classmethod
    def command_builders(cls):
        def build_exit(line: str):
            return cls() if line == "exit" else None
        return [build_exit]


# ===================================================================
# 6. Leaf commands
# ===================================================================

class ActionCommand(Command):
    """Calls a closure (or the closure stored in the environment under a name)."""
    kind = "action"

    def __init__(self, action: Union[Callable, str]):
        super().__init__()
        self.action = action

    async def perform(self):
        await self.call_action(self.action)

    def arguments(self):
        return [_describe(self.action)]

    @classmethod
    def command_builders(cls):
        return [_simple_builder("action", cls)]


class LogCommand(Command):
    """Emits a message as a 'log' side effect.

    The message is a Mustache template rendered against the environment, so
    "i is {{i}}" shows the current loop counter.
    """
    kind = "log"

    def __init__(self, message: str):
        super().__init__()
        self.message = message

    def render(self) -> str:
        renderer = pystache.Renderer(escape=lambda u: u)
        try:
            return renderer.render(self.message, self.environment.snapshot())
        except Exception:
            return self.message

    async def perform(self):
        text = self.render()
        dbg("log:", text)
        event = {"topics": ["log"], "message": text}
        engine = self.engine
        if engine is not None:
            engine.side_effects.append(event)

    def arguments(self):
        return [self.message]

    @classmethod
    def command_builders(cls):
        pattern = re.compile(r"^log\s+(.*)$")

        def build_log(line: str):
            m = pattern.match(line)
            return cls(m.group(1)) if m else None
        return [build_log]


class WaitCommand(CancellableCommand):
    """Waits for a number of seconds.

    If the engine (or a script that called it) is still paused when the delay
    ends, the command holds until it is resumed.
    """
    kind = "wait"

    def __init__(self, delay: float):
        super().__init__()
        self.delay = float(delay)

    async def perform(self):
        await asyncio.sleep(self.delay)
        engine = self.engine
        if engine is not None:
            await engine.wait_while_paused()

    def arguments(self):
        return [self.delay]

    @classmethod
    def command_builders(cls):
        pattern = re.compile(r"^wait\s+(\d+(?:\.\d+)?)\s*(ms|s)?$")

        def build_wait(line: str):
            m = pattern.match(line)
            if not m:
                return None
            value = float(m.group(1))
            if m.group(2) == "ms":
                value /= 1000.0
            return cls(value)
        return [build_wait]


class WaitUntilCommand(CancellableCommand):
    """Polls condition until it is true, or until the optional timeout expires.

    On timeout the timeout handler runs and the script continues.
    """
    kind = "wait-until"

    def __init__(self, condition, timeout: Optional[float] = None,
                 on_timeout: Union[Callable, str, None] = None, poll_interval: float = 0.01):
        super().__init__()
        self.condition = condition
        self.timeout = timeout
        self.on_timeout = on_timeout
        self.poll_interval = poll_interval

    async def perform(self):
        loop = asyncio.get_running_loop()
        started = loop.time()
        while not self.evaluate(self.condition):
            if self.timeout is not None and loop.time() - started >= self.timeout:
                await self.call_action(self.on_timeout)
                return
            await asyncio.sleep(self.poll_interval)

    def arguments(self):
        args = [_describe(self.condition)]
        if self.timeout is not None:
            args.append(self.timeout)
        return args

    @classmethod
    def command_builders(cls):
        pattern = re.compile(r"^wait\s+until\s+(\S+)(?:\s+timeout\s+(\d+(?:\.\d+)?))?$")

        def build_wait_until(line: str):
            m = pattern.match(line)
            if not m:
                return None
            timeout = float(m.group(2)) if m.group(2) else None
            return cls(m.group(1), timeout=timeout)
        return [build_wait_until]


class WaitForNotificationCommand(CancellableCommand):
    """Waits until topic has been posted minimum_count times on a notification center."""
    kind = "wait-for-notification"

    def __init__(self, topic: str, minimum_count: int = 1, timeout: Optional[float] = None,
                 on_timeout: Union[Callable, str, None] = None, notifications=None):
        super().__init__()
        self.topic = topic
        self.minimum_count = minimum_count
        self.timeout = timeout
        self.on_timeout = on_timeout
        self.notifications = notifications

    async def perform(self):
        center = self.notifications
        if center is None:
            engine = self.engine
            if engine is None:
                return
            center = engine.notifications
        arrived = asyncio.Event()
        count = 0

        def observe(_note):
            nonlocal count
            count += 1
            if count >= self.minimum_count:
                arrived.set()

        unsubscribe = center.subscribe(self.topic, observe)
        try:
            try:
                await asyncio.wait_for(arrived.wait(), self.timeout)
            except asyncio.TimeoutError:
                await self.call_action(self.on_timeout)
        finally:
            unsubscribe()

    def arguments(self):
        return [self.topic, self.minimum_count]


# ===================================================================
# 7. Closure based variants
# ===================================================================

class IfClosureCommand(Command):
    """Calls then_action or else_action depending on condition."""
    kind = "if-closure"

    def __init__(self, condition, then_action=None, else_action=None):
        super().__init__()
        self.condition = condition
        self.then_action = then_action
        self.else_action = else_action

    async def perform(self):
        if self.evaluate(self.condition):
            await self.call_action(self.then_action)
        else:
            await self.call_action(self.else_action)

    def arguments(self):
        return [_describe(self.condition)]


class WhileClosureCommand(Command):
    """Calls body repeatedly while condition holds, within a single step."""
    kind = "while-closure"

    def __init__(self, condition, body):
        super().__init__()
        self.condition = condition
        self.body = body

    async def perform(self):
        while self.evaluate(self.condition):
            await self.call_action(self.body)

    def arguments(self):
        return [_describe(self.condition)]


class ForClosureCommand(Command):
    """Calls body(i) for every i in the inclusive range, within a single step."""
    kind = "for-closure"

    def __init__(self, bounds, body):
        super().__init__()
        self.lower, self.upper = closed_range(bounds)
        self.body = body

    async def perform(self):
        for i in range(self.lower, self.upper + 1):
            await self.call_action(self.body, i)

    def arguments(self):
        return [f"{self.lower}...{self.upper}"]


def _describe(value) -> Any:
    if isinstance(value, str) or not callable(value):
        return value
    return getattr(value, "__name__", "<callable>")


# Builder registration order used by ScriptCompiler.standard(); first match wins.
STANDARD_COMMAND_TYPES = [
    LogCommand,
    WaitUntilCommand,
    WaitCommand,
    LabelCommand,
    GotoCommand,
    IfCommand,
    ThenCommand,
    ElseCommand,
    EndIfCommand,
    WhileCommand,
    EndWhileCommand,
    ForCommand,
    EndForCommand,
    ActionCommand,
    StepCommand,
    ExitCommand,
]


# ===================================================================
# 8. Factories
# ===================================================================

def label(name) -> LabelCommand:
    return LabelCommand(name)

def goto(name) -> GotoCommand:
    return GotoCommand(name)

def step(name) -> StepCommand:
    return StepCommand(name)

def if_(condition, label) -> IfCommand:
    return IfCommand(condition, label)

def then(label) -> ThenCommand:
    return ThenCommand(label)

def else_(label) -> ElseCommand:
    return ElseCommand(label)

def endif(label) -> EndIfCommand:
    return EndIfCommand(label)

def while_(condition, label) -> WhileCommand:
    return WhileCommand(condition, label)

def endwhile(label) -> EndWhileCommand:
    return EndWhileCommand(label)

def for_(bounds, label) -> ForCommand:
    return ForCommand(bounds, label)

def endfor(label) -> EndForCommand:
    return EndForCommand(label)

def run(commands: Sequence[Command]) -> RunCommand:
    return RunCommand(commands)

def exit_() -> ExitCommand:
    return ExitCommand()

def action(fn: Union[Callable, str]) -> ActionCommand:
    return ActionCommand(fn)

def log(message: str) -> LogCommand:
    return LogCommand(message)

def wait(seconds: Optional[float] = None, *, milliseconds: Optional[float] = None) -> WaitCommand:
    if milliseconds is not None:
        return WaitCommand(milliseconds / 1000.0)
    return WaitCommand(seconds or 0.0)

def wait_until(condition, timeout: Optional[float] = None, on_timeout=None, poll_interval: float = 0.01) -> WaitUntilCommand:
    return WaitUntilCommand(condition, timeout=timeout, on_timeout=on_timeout, poll_interval=poll_interval)

def wait_for_notification(topic: str, minimum_count: int = 1, timeout: Optional[float] = None,
                          on_timeout=None, notifications=None) -> WaitForNotificationCommand:
    return WaitForNotificationCommand(topic, minimum_count, timeout, on_timeout, notifications)

def if_closure(condition, then_action=None, else_action=None) -> IfClosureCommand:
    return IfClosureCommand(condition, then_action, else_action)

def while_closure(condition, body) -> WhileClosureCommand:
    return WhileClosureCommand(condition, body)

def for_closure(bounds, body) -> ForClosureCommand:
    return ForClosureCommand(bounds, body)
