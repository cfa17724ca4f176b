"""
The cue script engine.

A ScriptEngine executes a list of commands on an asyncio event loop, one
command at a time. Each command signals completion through a one-shot
callback; the engine then schedules the next step on its loop. Commands may
overwrite the instruction pointer to jump (labels, loops, branches).
"""
import asyncio
import uuid
import weakref
from typing import Any, Callable, Dict, List, Optional, Sequence

from cue.cue_datatypes import dbg, LabelNotFound
from cue.cue_environment import Environment
from cue.cue_notifications import (
    NotificationCenter, WILL_EXECUTE_COMMAND, DID_END, DID_PAUSE, DID_RESUME
)


class _Completion:
    """One-shot continuation handed to a dispatched command.

    Calling it schedules the engine's next step on the engine's loop (never
    inline). A second call is ignored and counted on the engine.
    """
    __slots__ = ("_engine_ref", "_generation", "fired")

    def __init__(self, engine: 'ScriptEngine', generation: int):
        self._engine_ref = weakref.ref(engine)
        self._generation = generation
        self.fired = False

    def __call__(self):
        engine = self._engine_ref()
        if engine is None:
            return
        if self.fired:
            engine.duplicate_completions += 1
            dbg("engine", engine.id, "completion fired twice; ignored")
            return
        self.fired = True
        engine._continue(self._generation)


class ScriptEngine:
    """Executes a script (a sequence of commands) step by step."""

    # Keeps running engines alive; nothing else needs to hold a reference.
    _running_scripts: Dict[str, 'ScriptEngine'] = {}

    def __init__(
        self,
        commands: Sequence[Any],
        environment: Optional[Environment] = None,
        completion_handler: Optional[Callable[[], Any]] = None,
        cleanup_handler: Optional[Callable[[], Any]] = None,
        *,
        notifications: Optional[NotificationCenter] = None,
        strict_labels: bool = False,
        side_effects: Optional[List[Dict]] = None,
    ):
        self.commands = tuple(commands)
        self.environment = environment if environment is not None else Environment.shared
        self.completion_handler = completion_handler
        self.cleanup_handler = cleanup_handler
        self.notifications = notifications if notifications is not None else NotificationCenter.default
        self.strict_labels = strict_labels
        # Child engines share the list of their parent
        self.side_effects: List[Dict] = side_effects if side_effects is not None else []

        self.instruction_pointer = 0
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.id = uuid.uuid4().hex
        self.status = "idle"
        self.error: Optional[BaseException] = None
        self.is_cancelled = False
        self.duplicate_completions = 0

        self._parent_ref = None
        self._generation = 0
        self._finished = False
        self._is_paused = False
        self._ended = asyncio.Event()
        self._resumed = asyncio.Event()
        self._resumed.set()

    def __repr__(self):
        return f"<ScriptEngine {self.id[:8]} {self.status} ip={self.instruction_pointer}/{len(self.commands)}>"

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    @property
    def parent(self) -> Optional['ScriptEngine']:
        return self._parent_ref() if self._parent_ref is not None else None

    @parent.setter
    def parent(self, engine: Optional['ScriptEngine']):
        self._parent_ref = weakref.ref(engine) if engine is not None else None

    @property
    def root(self) -> 'ScriptEngine':
        engine = self
        while engine.parent is not None:
            engine = engine.parent
        return engine

    @property
    def is_finished(self) -> bool:
        return self._finished

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    @classmethod
    def start(cls, commands: Sequence[Any], environment: Optional[Environment] = None,
              completion_handler: Optional[Callable[[], Any]] = None,
              loop: Optional[asyncio.AbstractEventLoop] = None, **kwargs) -> str:
        """Creates an engine for commands, runs it and returns its run id."""
        engine = cls(commands, environment=environment, completion_handler=completion_handler, **kwargs)
        return engine.run(loop=loop)

    def run(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> str:
        """Starts execution at the first command on loop (default: the running loop).

        Returns the run id, usable with ScriptEngine.cancel_script().
        """
        if self.status != "idle":
            raise RuntimeError(f"engine {self.id} has already been run")
        if loop is None:
            loop = asyncio.get_running_loop()
        self.loop = loop
        ScriptEngine._running_scripts[self.id] = self
        self.status = "running"
        self.instruction_pointer = 0
        dbg("engine.run", self.id, "commands", len(self.commands))
        self._call_on_loop(self._execute_next, self._generation)
        return self.id

    async def wait(self) -> str:
        """Waits until this run has ended and returns its final status."""
        await self._ended.wait()
        return self.status

    def _call_on_loop(self, fn, *args):
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        if current is self.loop:
            fn(*args)
        else:
            self.loop.call_soon_threadsafe(fn, *args)

    def _continue(self, generation: int):
        loop = self.loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._execute_next, generation)

    def _execute_next(self, generation: int):
        if self._finished or generation != self._generation:
            dbg("engine", self.id, "stale continuation ignored")
            return
        if self.is_cancelled:
            self._finish()
            return

        index = self.instruction_pointer
        if 0 <= index < len(self.commands):
            command = self.commands[index]
            try:
                self.notifications.post(WILL_EXECUTE_COMMAND, self, command=command, index=index)
                # An observer may have stopped or restarted us
                if self._finished or generation != self._generation:
                    return
                self.instruction_pointer = index + 1
                command.engine = self
                command.queue = self.loop
                command.completion_handler = _Completion(self, generation)
                if command.cancellable:
                    command.reset_cancellation()
                dbg("engine", self.id[:8], "execute", index, command)
                command.execute()
            except Exception as e:
                self.fail(e)
        else:
            self.loop.call_soon(self._complete, generation)

    def _complete(self, generation: int):
        if self._finished or self.is_cancelled or generation != self._generation:
            return
        self.status = "completed"
        try:
            if self.completion_handler is not None:
                self.completion_handler()
            if self.cleanup_handler is not None:
                self.cleanup_handler()
        finally:
            self._finish()

    def _finish(self):
        if self._finished:
            return
        self._finished = True
        self._generation += 1
        ScriptEngine._running_scripts.pop(self.id, None)
        self._resumed.set()
        dbg("engine", self.id[:8], "ended", self.status)
        self.notifications.post(DID_END, self, status=self.status)
        self._ended.set()

    # ------------------------------------------------------------------
    # Jumps
    # ------------------------------------------------------------------

    def index_of(self, kind: str, label: str) -> Optional[int]:
        """Returns the index of the first command of kind with label, or None."""
        for index, command in enumerate(self.commands):
            if command.kind == kind and getattr(command, "label", None) == label:
                return index
        return None

    def jump(self, kind: str, label: str, offset: int = 0, source: Any = None) -> bool:
        """Moves the instruction pointer to the (kind, label) command plus offset.

        An unknown target leaves the pointer unchanged. In strict mode it
        fails the run with LabelNotFound instead.
        """
        index = self.index_of(kind, label)
        if index is None:
            source_kind = getattr(source, "kind", None)
            if self.strict_labels:
                self.fail(LabelNotFound(kind, label, source_kind))
            else:
                dbg("engine", self.id[:8], "unresolved label", kind, label, "from", source_kind)
            return False
        self.instruction_pointer = index + offset
        return True

    def restart_at(self, index: int):
        """Cleans up all commands and resumes execution at index.

        The completion of whatever command was in flight is ignored.
        """
        if self._finished or self.status != "running":
            return
        self.cancel_all_commands()
        self.reset_loop_counters(index)
        self.instruction_pointer = index
        self._generation += 1
        self._call_on_loop(self._execute_next, self._generation)

    def reset_loop_counters(self, start: int = 0):
        """Removes the environment counters of 'for' commands from start onwards."""
        for command in self.commands[start:]:
            if command.kind == "for":
                self.environment.remove(command.label)

    # ------------------------------------------------------------------
    # Pausing
    # ------------------------------------------------------------------

    @property
    def is_paused(self) -> bool:
        """True while this engine or any engine that called it is paused."""
        engine = self
        while engine is not None:
            if engine._is_paused:
                return True
            engine = engine.parent
        return False

    @is_paused.setter
    def is_paused(self, paused: bool):
        if paused:
            self.pause()
        else:
            self.resume()

    def pause(self):
        if self._is_paused:
            return
        self._is_paused = True
        self._resumed.clear()
        self.notifications.post(DID_PAUSE, self)

    def resume(self):
        if not self._is_paused:
            return
        self._is_paused = False
        self._resumed.set()
        self.notifications.post(DID_RESUME, self)

    async def wait_while_paused(self):
        engine = self
        while engine is not None:
            if not engine._resumed.is_set():
                await engine._resumed.wait()
                # Another engine in the chain may have been paused meanwhile
                engine = self
                continue
            engine = engine.parent

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self):
        """Stops scheduling further commands and lets every command clean up.

        The completion handler of a cancelled run is never called.
        """
        if self._finished:
            return
        self.cancel_all_commands()
        self.is_cancelled = True
        if self.status in ("idle", "running"):
            self.status = "cancelled"
        try:
            if self.cleanup_handler is not None:
                self.cleanup_handler()
        finally:
            self._finish()

    def cancel_all_commands(self):
        """Calls cancel() once on every cancellable command of this script."""
        seen = set()
        for command in self.commands:
            if not command.cancellable or id(command) in seen:
                continue
            seen.add(id(command))
            command.cancel()

    def fail(self, error: BaseException):
        """Ends the run with error; the parent engine (if any) fails too."""
        if self._finished:
            return
        dbg("engine", self.id[:8], "failed:", repr(error))
        self.error = error
        self.status = "failed"
        self.cancel()
        parent = self.parent
        if parent is not None:
            parent.fail(error)

    @classmethod
    def cancel_script(cls, run_id: str) -> bool:
        engine = cls._running_scripts.get(run_id)
        if engine is None:
            return False
        engine.cancel()
        return True

    @classmethod
    def cancel_all(cls) -> int:
        engines = list(cls._running_scripts.values())
        for engine in engines:
            engine.cancel()
        return len(engines)

    @classmethod
    def running_scripts(cls) -> List['ScriptEngine']:
        return list(cls._running_scripts.values())

    @classmethod
    def get(cls, run_id: str) -> Optional['ScriptEngine']:
        return cls._running_scripts.get(run_id)
