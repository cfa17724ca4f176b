"""
The variable store shared by running scripts.
"""

from typing import Any, Dict, Iterator, Optional, Tuple, Type, Union


class Environment:
    """A flat, string-keyed store of untyped values (closures, numbers, strings, ...).

    Absence of a key is never an error: readers get None (or their default).
    A process-wide instance is available as Environment.shared; engines use it
    unless they are given an isolated instance.
    """

    shared: 'Environment'

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self.bindings: Dict[str, Any] = {}
        if initial:
            for key, value in initial.items():
                self.set(key, value)

    def set(self, key: str, value: Any):
        if not isinstance(key, str):
            raise TypeError(f"Environment key must be a str, not {type(key)}")
        self.bindings[key] = value

    def get(self, key: str, default: Any = None, kind: Union[Type, Tuple[Type, ...], None] = None) -> Any:
        """Returns the value for key, or default when missing or not an instance of kind."""
        if key not in self.bindings:
            return default
        value = self.bindings[key]
        if kind is not None and not _matches(value, kind):
            return default
        return value

    def remove(self, key: str):
        self.bindings.pop(key, None)

    def clear(self):
        self.bindings.clear()

    def snapshot(self) -> Dict[str, Any]:
        return dict(self.bindings)

    def __getitem__(self, key: str) -> Any:
        return self.get(key)

    def __setitem__(self, key: str, value: Any):
        self.set(key, value)

    def __delitem__(self, key: str):
        self.remove(key)

    def __contains__(self, key: Any) -> bool:
        return key in self.bindings

    def __iter__(self) -> Iterator[str]:
        return iter(list(self.bindings))

    def __len__(self) -> int:
        return len(self.bindings)

    def keys(self):
        return self.bindings.keys()

    def items(self):
        return self.bindings.items()

    def __repr__(self):
        from cue.cue_printer import Printer
        return Printer().pformat(self)


def _matches(value: Any, kind) -> bool:
    # bool is an int subclass; a counter lookup must not accept True/False
    kinds = kind if isinstance(kind, tuple) else (kind,)
    if isinstance(value, bool) and bool not in kinds:
        return False
    if kinds == (float,) and isinstance(value, int):
        return True
    return isinstance(value, kinds)


Environment.shared = Environment()
