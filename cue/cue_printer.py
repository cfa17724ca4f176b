"""
A pretty-printer for scripts, commands and environments.
"""
import collections.abc

from cue.cue_commands import Command, RunCommand
from cue.cue_environment import Environment


class Printer:
    """Formats cue objects into readable listings."""

    def __init__(self, indent_width=2):
        self._indent_char = " " * indent_width
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format an object."""
        handler = self._get_handler(obj)
        return handler(obj, level)

    def _get_handler(self, obj):
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, RunCommand):
            return self._pformat_run
        if isinstance(obj, Command):
            return self._pformat_command
        if isinstance(obj, Environment):
            return self._pformat_environment
        if isinstance(obj, collections.abc.Mapping):
            return self._pformat_dict
        if isinstance(obj, (list, tuple)):
            if obj and all(isinstance(item, Command) for item in obj):
                return self._pformat_script
            return self._pformat_list
        return lambda o, l: repr(o)

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            int: self._pformat_primitive,
            float: self._pformat_primitive,
            bool: self._pformat_bool,
            type(None): self._pformat_none,
        }

    def _pformat_primitive(self, obj, level):
        return str(obj)

    def _pformat_str(self, obj, level):
        return f"'{obj}'"

    def _pformat_bool(self, obj, level):
        return 'true' if obj else 'false'

    def _pformat_none(self, obj, level):
        return 'none'

    def _pformat_command(self, obj, level):
        args = " ".join(self._pformat_argument(a) for a in obj.arguments())
        return f"{obj.kind} {args}" if args else obj.kind

    def _pformat_argument(self, arg):
        # Labels and names print bare, like in script source
        if isinstance(arg, str):
            return arg
        return self.pformat(arg)

    def _pformat_run(self, obj, level):
        body = self._pformat_script(obj.commands, level + 1)
        return f"run\n{body}" if body else "run"

    def _pformat_script(self, commands, level):
        indent = self._indent_char * level
        width = len(str(max(len(commands) - 1, 0)))
        lines = []
        for index, command in enumerate(commands):
            text = self.pformat(command, level)
            first, *rest = text.splitlines() or [""]
            lines.append(f"{indent}{str(index).rjust(width)}  {first}")
            lines.extend(rest)
        return "\n".join(lines)

    def _pformat_environment(self, obj, level):
        return self._pformat_dict(obj.snapshot(), level)

    def _pformat_dict(self, obj, level):
        if not obj:
            return "#{}"
        items = ", ".join(f"{k}: {self._pformat_value(v, level)}" for k, v in obj.items())
        return f"#{{ {items} }}"

    def _pformat_list(self, obj, level):
        return "#[" + ", ".join(self._pformat_value(v, level) for v in obj) + "]"

    def _pformat_value(self, value, level):
        if callable(value) and not isinstance(value, Command):
            return getattr(value, "__name__", "<callable>")
        return self.pformat(value, level)
