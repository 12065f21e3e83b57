import pytest

from sandci.dispatch import StepHandlers, match_step
from sandci.errors import UnhandledStepType
from sandci.model import BlockStep, CommandStep, WaitStep


def test_only_the_matching_handler_runs():
    calls = []
    handlers = StepHandlers(
        command=lambda s: calls.append("command") or "ran",
        wait=lambda s: calls.append("wait"),
        block=lambda s: calls.append("block"),
    )
    assert match_step(CommandStep(command=["true"]), handlers) == "ran"
    assert calls == ["command"]


def test_default_handler_catches_the_rest():
    handlers = StepHandlers(command=lambda s: "command", _=lambda s: f"default:{s.kind}")
    assert match_step(WaitStep(), handlers) == "default:wait"
    assert match_step(BlockStep(block="ok"), handlers) == "default:block"


def test_no_handler_raises_with_the_value():
    step = WaitStep()
    with pytest.raises(UnhandledStepType) as exc:
        match_step(step, StepHandlers(command=lambda s: None))
    assert exc.value.value is step


def test_non_step_values_go_to_default_or_fail():
    assert match_step("wait", StepHandlers(_=lambda s: "fallback")) == "fallback"
    with pytest.raises(UnhandledStepType):
        match_step(42, {})


def test_plain_dict_of_handlers_works():
    assert match_step(WaitStep(), {"wait": lambda s: "w"}) == "w"


def test_step_handlers_is_a_plain_dict():
    handlers = StepHandlers({"wait": lambda s: "base"}, wait=lambda s: "override")
    assert StepHandlers.__bases__ == (dict,)
    assert match_step(WaitStep(), handlers) == "override"
    assert dict(handlers).keys() == {"wait"}
