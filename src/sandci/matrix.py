# matrix.py
# Build matrix expansion: one CommandStep with `matrix` -> N concrete steps.
from __future__ import annotations

import itertools
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Union

from .errors import SchemaError
from .model import CommandStep, MatrixConfig

MATRIX_REF = re.compile(r"\{\{\s*matrix(?:\.([a-zA-Z0-9_]+))?\s*\}\}")

Values = Union[str, Dict[str, str]]


def scalar_text(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)


@dataclass(frozen=True)
class MatrixCombination:
    """One point of the matrix. Anonymous matrices carry a plain string."""
    values: Any
    skip: Union[bool, str] = False
    soft_fail: Any = False

    @property
    def suffix(self) -> str:
        if isinstance(self.values, dict):
            return ",".join(f"{k}={v}" for k, v in self.values.items())
        return self.values

    @property
    def skipped(self) -> bool:
        return self.skip is not False and self.skip != ""


def _normalize(values: Any) -> Values:
    if isinstance(values, Mapping):
        return {k: scalar_text(v) for k, v in values.items()}
    return scalar_text(values)


def combinations(matrix: MatrixConfig) -> List[MatrixCombination]:
    """
    Every combination of the setup, in setup order, with adjustments applied.

    An adjustment naming a combination that the setup does not produce adds it,
    unless it only exists to skip that combination.
    """
    if matrix.is_anonymous:
        points: List[Values] = [scalar_text(v) for v in matrix.setup]
    else:
        names = list(matrix.setup)
        points = [
            dict(zip(names, (scalar_text(v) for v in combo)))
            for combo in itertools.product(*(matrix.setup[n] for n in names))
        ]

    result = [MatrixCombination(values=p) for p in points]
    for adj in matrix.adjustments:
        target = _normalize(adj.with_)
        for i, combo in enumerate(result):
            if combo.values == target:
                result[i] = MatrixCombination(values=combo.values, skip=adj.skip, soft_fail=adj.soft_fail)
                break
        else:
            if adj.skip is False:
                result.append(MatrixCombination(values=target, soft_fail=adj.soft_fail))
    return result


def interpolate(text: str, values: Values, *, step: Optional[str] = None) -> str:
    def repl(m: re.Match) -> str:
        dim = m.group(1)
        if dim is None:
            if isinstance(values, dict):
                raise SchemaError([f"{{{{matrix}}}} used with a named matrix; use {{{{matrix.<name>}}}}"], source=step)
            return values
        if not isinstance(values, dict) or dim not in values:
            raise SchemaError([f"unknown matrix dimension {dim!r} in {text!r}"], source=step)
        return values[dim]

    return MATRIX_REF.sub(repl, text)


def expand_step(step: CommandStep) -> List[tuple]:
    """
    Returns [(concrete CommandStep, MatrixCombination), ...].

    The concrete copies have no matrix and no key; callers give them ids.
    Skipped combinations are kept so they can be reported as skipped.
    """
    if step.matrix is None:
        return [(step, None)]

    name = step.name
    out = []
    for combo in combinations(step.matrix):
        v = combo.values
        update: Dict[str, Any] = {
            "matrix": None,
            "key": None,
            "command": [interpolate(c, v, step=name) for c in step.command],
            "env": {k: interpolate(x, v, step=name) for k, x in step.env.items()},
            "agents": {k: interpolate(x, v, step=name) for k, x in step.agents.items()},
        }
        if step.label is not None:
            update["label"] = interpolate(step.label, v, step=name)
        if combo.skip is not False:
            update["skip"] = combo.skip
        if combo.soft_fail is not False:
            update["soft_fail"] = combo.soft_fail
        out.append((step.model_copy(update=update), combo))
    return out
