# cue_runtime.py

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Sequence

import yaml

from cue.cue_commands import Command
from cue.cue_compiler import ScriptCompiler
from cue.cue_datatypes import ParseError, LabelNotFound, set_debug
from cue.cue_engine import ScriptEngine
from cue.cue_environment import Environment
from cue.cue_notifications import NotificationCenter

# ===================================================================
# 1. Configuration
# ===================================================================


@dataclass
class ScriptConfig:
    """Runner settings, usually loaded from a YAML file."""
    strict_labels: bool = False
    debug: bool = False
    environment: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Optional[Dict[str, Any]]) -> 'ScriptConfig':
        data = dict(data or {})
        # Accept kebab-case keys as written in YAML files
        data = {str(k).replace('-', '_'): v for k, v in data.items()}
        unknown = set(data) - {'strict_labels', 'debug', 'environment'}
        if unknown:
            raise ValueError(f"unknown config keys: {', '.join(sorted(unknown))}")
        env = data.get('environment') or {}
        if not isinstance(env, dict):
            raise TypeError("config 'environment' must be a mapping")
        return cls(
            strict_labels=bool(data.get('strict_labels', False)),
            debug=bool(data.get('debug', False)),
            environment=dict(env),
        )

    @classmethod
    def from_yaml(cls, text: str) -> 'ScriptConfig':
        return cls.from_mapping(yaml.safe_load(text))

    @classmethod
    def from_file(cls, path) -> 'ScriptConfig':
        return cls.from_yaml(Path(path).read_text(encoding="utf-8"))


# ===================================================================
# 2. Script Execution
# ===================================================================


@dataclass
class ExecutionResult:
    """The structured result of a script run."""
    status: Literal['success', 'cancelled', 'error']
    error_message: Optional[str] = None
    error_line: Optional[int] = None
    side_effects: List[Dict] = field(default_factory=list)
    run_id: Optional[str] = None

    def format_error(self) -> str:
        """Formats the error message with its line number if available."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.error_line is not None and not msg.startswith("Error on line "):
            return f"Error on line {self.error_line}: {msg}"
        return msg

    @property
    def messages(self) -> List[str]:
        return [e.get('message', '') for e in self.side_effects if 'log' in (e.get('topics') or [])]


class ScriptRunner:
    """Compiles and runs cue scripts."""

    def __init__(self, config: Optional[ScriptConfig] = None, environment: Optional[Environment] = None,
                 compiler: Optional[ScriptCompiler] = None, notifications: Optional[NotificationCenter] = None):
        self.config = config or ScriptConfig()
        if self.config.debug:
            set_debug(True)
        self.environment = environment if environment is not None else Environment()
        for key, value in self.config.environment.items():
            self.environment.set(key, value)
        self.compiler = compiler or ScriptCompiler.standard()
        self.notifications = notifications if notifications is not None else NotificationCenter.default
        self.engine: Optional[ScriptEngine] = None

    def _source_context(self, source: str, line: int, radius: int = 2) -> str:
        lines = source.splitlines()
        if not line or line < 1 or line > len(lines):
            return ""
        start = max(1, line - radius)
        end = min(len(lines), line + radius)
        width = len(str(end))
        out = []
        for i in range(start, end + 1):
            prefix = ">" if i == line else " "
            out.append(f"{prefix} {str(i).rjust(width)} | {lines[i - 1]}")
        return "\n".join(out)

    def _format_runtime_error(self, e: BaseException) -> str:
        match e:
            case LabelNotFound() as lnf:
                return f"LabelNotFound: {lnf}"
            case TypeError() | AttributeError():
                return f"TypeError: {e}"
            case _:
                return f"InternalError: {type(e).__name__}: {e}"

    def _failed_line(self, engine: ScriptEngine) -> Optional[int]:
        # The pointer has already moved past the command that was executing
        index = engine.instruction_pointer - 1
        if 0 <= index < len(engine.commands):
            return engine.commands[index].line_number
        return None

    def compile(self, source: str) -> List[Command]:
        return self.compiler.compile(source)

    async def handle_script(self, source_code: str) -> ExecutionResult:
        """The main entry point to compile and execute a script."""
        try:
            commands = self.compile(source_code)
        except ParseError as pe:
            msg = f"ParseError: {pe}"
            context = self._source_context(source_code, pe.line_number)
            if context:
                msg = f"{msg}\n{context}"
            return ExecutionResult(
                status='error',
                error_message=msg,
                error_line=pe.line_number,
                side_effects=[{'topics': ['stderr'], 'message': msg}],
            )
        return await self.run_commands(commands)

    async def run_commands(self, commands: Sequence[Command]) -> ExecutionResult:
        """Runs commands to their end (or cancellation) and reports the outcome."""
        engine = ScriptEngine(
            commands,
            environment=self.environment,
            notifications=self.notifications,
            strict_labels=self.config.strict_labels,
        )
        self.engine = engine
        run_id = engine.run()
        status = await engine.wait()

        if status == 'completed':
            return ExecutionResult(status='success', side_effects=engine.side_effects, run_id=run_id)
        if status == 'failed':
            msg = self._format_runtime_error(engine.error)
            engine.side_effects.append({'topics': ['stderr'], 'message': msg})
            return ExecutionResult(status='error', error_message=msg, error_line=self._failed_line(engine),
                                   side_effects=engine.side_effects, run_id=run_id)
        return ExecutionResult(status='cancelled', side_effects=engine.side_effects, run_id=run_id)

    def cancel(self):
        if self.engine is not None:
            self.engine.cancel()
