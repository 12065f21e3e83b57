# dispatch.py
# Single dispatch over the Step union. One handler per variant, `_` as fallback.
from __future__ import annotations

from typing import Any, Callable, Dict, Optional, TypeVar

from .errors import UnhandledStepType
from .model import BaseStep

T = TypeVar("T")
Handler = Callable[[Any], T]


class StepHandlers(dict):
    """
    Handlers keyed by step kind.

        StepHandlers(command=run_command, wait=lambda s: None, _=ignore)
    """

    def __init__(self, handlers: Optional[Dict[str, Handler]] = None, **kwargs: Handler):
        super().__init__(handlers or {})
        self.update(kwargs)


def kind_of(value: Any) -> Optional[str]:
    if isinstance(value, BaseStep):
        return value.kind
    return None


def match_step(step: Any, handlers: Dict[str, Handler]) -> Any:
    """
    Call exactly one handler for `step` and return its result.

    Raises UnhandledStepType when neither the variant nor `_` has a handler.
    """
    kind = kind_of(step)
    handler = handlers.get(kind) if kind else None
    if handler is None:
        handler = handlers.get("_")
    if handler is None:
        raise UnhandledStepType(step)
    return handler(step)
