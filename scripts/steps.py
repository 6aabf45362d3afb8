"""Build steps, the state they share, and the runner that sequences them."""

import enum
import logging
from dataclasses import dataclass

from _common import Ui
from driver import Driver, Template

log = logging.getLogger("upcloud-image.steps")


class StepAction(enum.Enum):
    CONTINUE = "continue"
    HALT = "halt"


@dataclass
class BuildState:
    """Everything the steps of one build read and write.

    ``templates`` and ``cleanup_storage_uuids`` stay ``None`` until a step
    records them, so cleanup can tell "nothing recorded" from "recorded empty".
    """

    server_uuid: str
    ui: Ui
    driver: Driver
    templates: list[Template] | None = None
    cleanup_storage_uuids: list[str] | None = None
    error: Exception | None = None


class Step:
    def run(self, state: BuildState) -> StepAction:
        raise NotImplementedError

    def cleanup(self, state: BuildState) -> None:
        pass


def halt(state: BuildState, err: Exception) -> StepAction:
    """Record ``err`` as the build failure and stop the remaining steps."""
    state.error = err
    state.ui.error(str(err))
    return StepAction.HALT


def run_steps(steps: list[Step], state: BuildState) -> Exception | None:
    """Run steps in order, then clean up every started step in reverse.

    Cleanup runs exactly once per started step, whether the build finished,
    halted, raised, or was interrupted. Returns the recorded error, if any.
    """
    started: list[Step] = []
    try:
        for step in steps:
            started.append(step)
            log.debug("running %s", type(step).__name__)
            try:
                action = step.run(state)
            except Exception as e:
                log.exception("%s raised", type(step).__name__)
                halt(state, e)
                break
            if action is StepAction.HALT:
                break
    finally:
        for step in reversed(started):
            try:
                step.cleanup(state)
            except Exception as e:
                state.ui.error(f"cleanup of {type(step).__name__} failed: {e}")
    return state.error


class StepStopServer(Step):
    """Stop the source server so its storage can be cloned and templatized."""

    def run(self, state: BuildState) -> StepAction:
        state.ui.say(f"Stopping server {state.server_uuid!r}...")
        try:
            state.driver.stop_server(state.server_uuid)
        except Exception as e:
            return halt(state, e)
        state.ui.say("Server stopped...")
        return StepAction.CONTINUE
