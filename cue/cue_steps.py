"""
Step tracking for scripts that are split into named steps.
"""
from typing import List, Optional

from cue.cue_notifications import WILL_EXECUTE_COMMAND, DID_END


class StepController:
    """Follows an engine through the 'step' markers of its script.

    Provides progress information and lets a user repeat the current step or
    abort the whole script.
    """

    def __init__(self, engine):
        self.engine = engine
        self.labels: List[str] = []
        self.step_index = -1
        self._command_indexes: List[int] = []
        self._step_indexes: List[int] = []
        self._prepare()
        center = engine.notifications
        self._subscriptions = [
            center.subscribe(WILL_EXECUTE_COMMAND, self._will_execute_command, subject=engine),
            center.subscribe(DID_END, self._did_end, subject=engine),
        ]

    def _prepare(self):
        # Map every command index to the step it belongs to
        for index, command in enumerate(self.engine.commands):
            if command.kind == "step":
                self._command_indexes.append(index)
                self.labels.append(command.label)
            self._step_indexes.append(len(self.labels) - 1)

    @property
    def step_count(self) -> int:
        return len(self.labels)

    def _will_execute_command(self, note):
        index = note.info.get("index", self.engine.instruction_pointer)
        if 0 <= index < len(self._step_indexes):
            self.step_index = self._step_indexes[index]

    def _did_end(self, note):
        self.close()

    def close(self):
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions = []

    @property
    def progress_fraction(self) -> float:
        if not self.step_count:
            return 0.0
        return (self.step_index + 1) / self.step_count

    @property
    def current_step_name(self) -> str:
        if 0 <= self.step_index < self.step_count:
            return self.labels[self.step_index]
        return ""

    @property
    def current_step_number(self) -> str:
        return f"{self.step_index + 1}/{self.step_count}"

    def command_index_for_step(self, step_index: int) -> Optional[int]:
        if 0 <= step_index < self.step_count:
            return self._command_indexes[step_index]
        return None

    def repeat_current_step(self) -> bool:
        """Undoes the side effects of running commands and restarts at the current step."""
        index = self.command_index_for_step(self.step_index)
        if index is None:
            return False
        self.engine.restart_at(index)
        return True

    def abort(self):
        self.engine.root.cancel()
        self.close()
