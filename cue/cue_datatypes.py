"""
Defines the shared exception types and diagnostics helpers for the cue runtime.
"""

import os
import sys
from typing import Optional

# Set by ScriptConfig / the launcher; CUE_DEBUG in the process environment also enables output.
_debug_enabled = False


def set_debug(enabled: bool = True):
    global _debug_enabled
    _debug_enabled = bool(enabled)


def debug_enabled() -> bool:
    return _debug_enabled or bool(os.environ.get("CUE_DEBUG"))


def dbg(*parts):
    if debug_enabled():
        try:
            print("[DBG]", *parts, file=sys.stderr)
        except Exception:
            pass


class CueError(Exception):
    """Base class for all errors raised by the cue runtime."""
    pass


class ParseError(CueError):
    """Raised by the compiler for the first source line no builder accepts."""
    def __init__(self, line_number: int, text: str):
        super().__init__(f"no command matches line {line_number}: {text!r}")
        self.line_number = line_number
        self.text = text


class LabelNotFound(CueError):
    """Raised (as an engine failure) when strict label resolution finds no target."""
    def __init__(self, kind: str, label: str, source_kind: Optional[str] = None):
        where = f" (from '{source_kind}')" if source_kind else ""
        super().__init__(f"no '{kind}' command with label {label!r}{where}")
        self.kind = kind
        self.label = label
        self.source_kind = source_kind
