# dag.py
# Pipeline -> flat list of StepNodes -> dependency graph -> topological levels.
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .conditions import check_expression
from .errors import DependencyError
from .matrix import MatrixCombination, expand_step
from .model import BaseStep, CommandStep, Dependency, GroupStep, Pipeline, WaitStep


@dataclass(frozen=True)
class Edge:
    source: str
    allow_failure: bool = False


@dataclass
class StepNode:
    """
    One schedulable unit. Groups are gone, matrices are expanded.

    `needs` are explicit references by key (still unresolved);
    `barrier` are the implicit edges added by wait steps (already ids);
    `edges` is filled in by build_dag.
    """
    id: str
    step: BaseStep
    needs: List[Dependency] = field(default_factory=list)
    barrier: List[Edge] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)
    allow_dependency_failure: bool = False
    if_exprs: List[str] = field(default_factory=list)
    branch_filters: List[List[str]] = field(default_factory=list)
    group: Optional[str] = None
    matrix: Optional[MatrixCombination] = None

    @property
    def kind(self) -> str:
        return self.step.kind

    @property
    def label(self) -> str:
        return getattr(self.step, "label", None) or self.id


def _step_id(step: BaseStep, position: int) -> str:
    return step.key or f"step-{position}"


class _Flattener:
    def __init__(self) -> None:
        # key -> node ids it stands for (matrix key -> expansions, group key -> children)
        self.aliases: Dict[str, List[str]] = {}
        self.position = 0

    def leaf(self, step: BaseStep, inherited: dict, group: Optional[str]) -> List[StepNode]:
        self.position += 1
        base_id = _step_id(step, self.position)

        common = dict(
            needs=inherited["needs"] + list(step.depends_on),
            allow_dependency_failure=inherited["allow_dependency_failure"] or step.allow_dependency_failure,
            if_exprs=inherited["if_exprs"] + ([step.if_] if step.if_ else []),
            branch_filters=inherited["branch_filters"] + ([list(step.branches)] if step.branches else []),
            group=group,
        )

        if isinstance(step, CommandStep) and step.matrix is not None:
            made = [
                StepNode(id=f"{base_id}[{combo.suffix}]", step=concrete, matrix=combo, **common)
                for concrete, combo in expand_step(step)
            ]
            self.aliases[base_id] = [n.id for n in made]
        else:
            made = [StepNode(id=base_id, step=step, **common)]
        return made

    def segment(self, steps: Sequence[BaseStep], inherited: dict, group: Optional[str]) -> List[StepNode]:
        """Flatten one step list, adding wait barriers inside it."""
        out: List[StepNode] = []
        before: List[StepNode] = []
        barrier: List[Edge] = list(inherited.get("barrier", []))

        for step in steps:
            if isinstance(step, GroupStep):
                self.position += 1
                gid = _step_id(step, self.position)
                child_inherited = dict(
                    needs=inherited["needs"] + list(step.depends_on),
                    allow_dependency_failure=inherited["allow_dependency_failure"] or step.allow_dependency_failure,
                    if_exprs=inherited["if_exprs"] + ([step.if_] if step.if_ else []),
                    branch_filters=inherited["branch_filters"] + ([list(step.branches)] if step.branches else []),
                    barrier=barrier,
                )
                made = self.segment(step.steps, child_inherited, group=step.group or step.label or gid)
                self.aliases[gid] = [n.id for n in made]
            else:
                made = self.leaf(step, inherited, group)
                for n in made:
                    n.barrier = list(barrier)

            if isinstance(step, WaitStep):
                wait = made[0]
                relax = step.continue_on_failure
                wait.barrier = [Edge(n.id, allow_failure=relax) for n in before] + [
                    Edge(e.source, allow_failure=e.allow_failure or relax) for e in barrier
                ]
                barrier = [Edge(wait.id)]
                before = []
            else:
                before.extend(made)
            out.extend(made)
        return out


def flatten(pipeline: Pipeline) -> Tuple[List[StepNode], Dict[str, List[str]]]:
    """
    Returns (nodes in document order, aliases).

    Groups are transparent: their depends_on / allow_dependency_failure / if /
    branches are pushed down onto every child.
    """
    f = _Flattener()
    root = dict(needs=[], allow_dependency_failure=False, if_exprs=[], branch_filters=[], barrier=[])
    nodes = f.segment(pipeline.steps, root, group=None)
    return nodes, f.aliases


def build_dag(
    nodes: List[StepNode],
    aliases: Optional[Dict[str, List[str]]] = None,
) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Resolve every node's references into edges and build the graph.

    Returns:
      adj:   dependency id -> ids that depend on it
      indeg: id -> number of unique dependencies
    """
    aliases = aliases or {}
    ids = [n.id for n in nodes]
    if len(set(ids)) != len(ids):
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        raise DependencyError("duplicate step ids", dupes[0], duplicates=dupes)

    id_set = set(ids)
    adj: Dict[str, Set[str]] = {i: set() for i in ids}
    indeg: Dict[str, int] = {i: 0 for i in ids}

    for node in nodes:
        edges: Dict[str, Edge] = {}
        for e in node.barrier:
            edges[e.source] = e
        for dep in node.needs:
            targets = aliases.get(dep.step) or ([dep.step] if dep.step in id_set else None)
            if targets is None:
                raise DependencyError(
                    f"step '{node.id}' depends on missing step '{dep.step}'",
                    dep.step,
                    referrer=node.id,
                    known=sorted(id_set | set(aliases)),
                )
            for t in targets:
                if t == node.id and dep.step in aliases:
                    continue  # a group child referring to its own group
                prev = edges.get(t)
                # Explicit allow_failure and a tolerant barrier both relax the edge.
                allow = dep.allow_failure or (prev.allow_failure if prev else False)
                edges[t] = Edge(t, allow_failure=allow)
        node.edges = list(edges.values())

        for e in node.edges:
            # Edge dep -> node (dep must run before node)
            if node.id not in adj[e.source]:
                adj[e.source].add(node.id)
                indeg[node.id] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert the DAG into topological "levels".
    Every step of a level only depends on steps of earlier levels.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted([n for n, d in indeg.items() if d == 0]))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted([n for n, d in indeg.items() if d > 0])
        raise DependencyError("dependency cycle", remaining[0], stuck=remaining)

    return levels


@dataclass
class Plan:
    nodes: Dict[str, StepNode]
    adj: Dict[str, Set[str]]
    indeg: Dict[str, int]
    levels: List[List[str]]

    def order(self) -> List[str]:
        return [n for level in self.levels for n in level]

    def dependencies(self, node_id: str) -> List[str]:
        return [e.source for e in self.nodes[node_id].edges]


def plan_pipeline(pipeline: Pipeline) -> Plan:
    nodes, aliases = flatten(pipeline)
    for n in nodes:
        for expr in n.if_exprs:
            check_expression(expr, step=n.id)
    adj, indeg = build_dag(nodes, aliases)
    levels = topo_levels(adj, indeg)
    return Plan(nodes={n.id: n for n in nodes}, adj=adj, indeg=indeg, levels=levels)
