from cue.cue_datatypes import CueError, ParseError, LabelNotFound, set_debug
from cue.cue_environment import Environment
from cue.cue_notifications import (
    Notification, NotificationCenter, WILL_EXECUTE_COMMAND, DID_END, DID_PAUSE, DID_RESUME
)
from cue.cue_commands import Command, CancellableCommand, LabeledCommand
from cue.cue_engine import ScriptEngine
from cue.cue_compiler import ScriptCompiler
from cue.cue_steps import StepController
from cue.cue_printer import Printer
from cue.cue_runtime import ScriptRunner, ScriptConfig, ExecutionResult
