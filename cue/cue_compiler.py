"""
Compiles line oriented script source into a list of commands.

The compiler knows no syntax by itself. Command types contribute line
parsers ("builders") via register(); for every source line the builders are
tried in registration order and the first one that returns a command wins.
"""
from typing import Iterable, List, Optional, Type

from cue.cue_commands import Command, CommandBuilder, STANDARD_COMMAND_TYPES
from cue.cue_datatypes import ParseError, dbg


class ScriptCompiler:
    """Turns text into commands using a registry of builders."""

    COMMENT_PREFIXES = ("//", "#")

    def __init__(self, builders: Optional[Iterable[CommandBuilder]] = None):
        self.builders: List[CommandBuilder] = list(builders or [])

    @classmethod
    def standard(cls) -> 'ScriptCompiler':
        """A compiler with the line syntax of every built-in command registered."""
        compiler = cls()
        for command_type in STANDARD_COMMAND_TYPES:
            compiler.register(command_type)
        return compiler

    def register(self, command_type: Type[Command]):
        self.builders.extend(command_type.command_builders())

    def register_builder(self, builder: CommandBuilder):
        self.builders.append(builder)

    def compile(self, source: str) -> List[Command]:
        """Compiles source; raises ParseError for the first line no builder accepts."""
        commands: List[Command] = []
        for number, raw in enumerate(source.split("\n"), start=1):
            text = raw.strip()
            if not text or text.startswith(self.COMMENT_PREFIXES):
                continue
            command = self.build_command(number, text)
            command.line_number = number
            commands.append(command)
        dbg("compiled", len(commands), "commands")
        return commands

    def build_command(self, line_number: int, text: str) -> Command:
        for builder in self.builders:
            command = builder(text)
            if command is not None:
                return command
        raise ParseError(line_number, text)
