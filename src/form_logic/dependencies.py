from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping

from .formula_engine import (
    MAX_FORMULA_DEPTH,
    MAX_FORMULA_LENGTH,
    EvalError,
    EvalErrorCode,
    FormulaParseError,
    FormulaProgram,
    evaluate_formula,
    extract_dependencies,
    parse_formula,
)
from .models import FieldDefinition, TemplateError

logger = logging.getLogger(__name__)


class IssueKind(str, Enum):
    PARSE_ERROR = "parse_error"
    UNKNOWN_FIELD = "unknown_field"
    CYCLE = "cycle"
    UNRESOLVABLE_DEPENDENCY = "unresolvable_dependency"


_ISSUE_CODES = {
    IssueKind.PARSE_ERROR: EvalErrorCode.PARSE,
    IssueKind.UNKNOWN_FIELD: EvalErrorCode.REF,
    IssueKind.CYCLE: EvalErrorCode.CYCLE,
    IssueKind.UNRESOLVABLE_DEPENDENCY: EvalErrorCode.REF,
}


@dataclass(slots=True, frozen=True)
class FieldIssue:
    field_name: str
    kind: IssueKind
    message: str

    @property
    def error(self) -> EvalError:
        return EvalError(_ISSUE_CODES[self.kind], self.message)


@dataclass(slots=True)
class DependencyGraph:
    """Edges run from a calculated field to every field its formula references."""

    fields: dict[str, FieldDefinition]
    edges: dict[str, frozenset[str]]
    dependents: dict[str, list[str]]
    programs: dict[str, FormulaProgram] = field(default_factory=dict)
    cycles: list[list[str]] = field(default_factory=list)
    issues: dict[str, FieldIssue] = field(default_factory=dict)
    order: list[str] = field(default_factory=list)

    def is_resolvable(self, field_name: str) -> bool:
        return field_name in self.edges and field_name not in self.issues


@dataclass(slots=True)
class RecomputeResult:
    values: dict[str, Any]
    computed: dict[str, float | EvalError]


def detect_cycles(edges: Mapping[str, Iterable[str]]) -> list[list[str]]:
    """Strongly connected components (Tarjan) that contain a cycle.

    Every field on some cycle is reported, including fields whose cycle only
    closes through another cycle's members. Members keep definition order.
    """
    position = {node: rank for rank, node in enumerate(edges)}
    index: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    stack: list[str] = []
    on_stack: set[str] = set()
    cycles: list[list[str]] = []

    def visit(node: str) -> None:
        index[node] = lowlink[node] = len(index)
        stack.append(node)
        on_stack.add(node)
        for neighbour in sorted(edges.get(node, ())):
            if neighbour not in edges:
                continue
            if neighbour not in index:
                visit(neighbour)
                lowlink[node] = min(lowlink[node], lowlink[neighbour])
            elif neighbour in on_stack:
                lowlink[node] = min(lowlink[node], index[neighbour])
        if lowlink[node] != index[node]:
            return
        component: list[str] = []
        while True:
            member = stack.pop()
            on_stack.discard(member)
            component.append(member)
            if member == node:
                break
        if len(component) > 1 or node in edges.get(node, ()):
            cycles.append(sorted(component, key=position.__getitem__))

    for node in edges:
        if node not in index:
            visit(node)
    return sorted(cycles, key=lambda cycle: position[cycle[0]])


def topo_order(graph: DependencyGraph) -> list[str]:
    """Kahn's algorithm over the resolvable calculated fields, in definition order on ties."""
    nodes = [name for name in graph.edges if name not in graph.issues]
    node_set = set(nodes)
    indegree = {name: len(graph.edges[name] & node_set) for name in nodes}
    ready = deque(name for name in nodes if indegree[name] == 0)
    order: list[str] = []
    while ready:
        name = ready.popleft()
        order.append(name)
        for dependent in graph.dependents.get(name, ()):
            if dependent not in node_set:
                continue
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                ready.append(dependent)
    return order


def affected_by(graph: DependencyGraph, changed_field: str) -> set[str]:
    affected: set[str] = set()
    pending = deque([changed_field])
    while pending:
        name = pending.popleft()
        for dependent in graph.dependents.get(name, ()):
            if dependent not in affected:
                affected.add(dependent)
                pending.append(dependent)
    return {name for name in affected if name not in graph.issues}


def build_graph(
    fields: Iterable[FieldDefinition],
    *,
    max_length: int = MAX_FORMULA_LENGTH,
    max_depth: int = MAX_FORMULA_DEPTH,
) -> DependencyGraph:
    by_name: dict[str, FieldDefinition] = {}
    for definition in fields:
        if definition.name in by_name:
            raise TemplateError(f"duplicate field name: {definition.name}")
        by_name[definition.name] = definition

    edges: dict[str, frozenset[str]] = {}
    programs: dict[str, FormulaProgram] = {}
    issues: dict[str, FieldIssue] = {}
    for name, definition in by_name.items():
        if not definition.is_calculated:
            continue
        formula = definition.calculated_config.formula
        try:
            edges[name] = frozenset(extract_dependencies(formula))
            programs[name] = parse_formula(formula, max_length=max_length, max_depth=max_depth)
        except FormulaParseError as exc:
            edges.setdefault(name, frozenset())
            issues[name] = FieldIssue(name, IssueKind.PARSE_ERROR, str(exc))
            continue
        unknown = sorted(edges[name] - by_name.keys())
        if unknown:
            issues[name] = FieldIssue(name, IssueKind.UNKNOWN_FIELD, f"unknown field reference: {', '.join(unknown)}")

    dependents: dict[str, list[str]] = {}
    for name, references in edges.items():
        for reference in sorted(references):
            dependents.setdefault(reference, []).append(name)

    calculated_edges = {name: {ref for ref in references if ref in edges} for name, references in edges.items()}
    cycles = detect_cycles(calculated_edges)
    for cycle in cycles:
        message = f"circular dependency among: {', '.join(cycle)}"
        for member in cycle:
            if member not in issues or issues[member].kind is IssueKind.UNKNOWN_FIELD:
                issues[member] = FieldIssue(member, IssueKind.CYCLE, message)

    pending = deque(issues)
    while pending:
        name = pending.popleft()
        for dependent in dependents.get(name, ()):
            if dependent not in issues:
                issues[dependent] = FieldIssue(
                    dependent, IssueKind.UNRESOLVABLE_DEPENDENCY, f"depends on unresolvable field '{name}'"
                )
                pending.append(dependent)

    graph = DependencyGraph(
        fields=by_name,
        edges=edges,
        dependents=dependents,
        programs=programs,
        cycles=cycles,
        issues=issues,
    )
    graph.order = topo_order(graph)

    for issue in issues.values():
        logger.warning(
            "calculated_field_unresolvable",
            extra={"field_name": issue.field_name, "kind": issue.kind.value, "error": issue.message},
        )
    logger.info(
        "dependency_graph_built",
        extra={
            "field_count": len(by_name),
            "calculated_count": len(edges),
            "cycle_count": len(cycles),
            "order": graph.order,
        },
    )
    return graph


def recompute(
    graph: DependencyGraph,
    values: Mapping[str, Any],
    changed: Iterable[str] | None = None,
) -> RecomputeResult:
    """Fold the topological order over ``values``.

    With ``changed`` only the calculated fields affected by those names are
    evaluated; the others keep whatever ``values`` already holds.
    """
    merged = dict(values)
    computed: dict[str, float | EvalError] = {}
    for name, issue in graph.issues.items():
        merged[name] = computed[name] = issue.error

    targets: set[str] | None = None
    if changed is not None:
        targets = set()
        for name in changed:
            targets |= affected_by(graph, name)

    for name in graph.order:
        if targets is not None and name not in targets:
            continue
        result = evaluate_formula(graph.programs[name], merged)
        merged[name] = computed[name] = result
        logger.debug("calculated_field_evaluated", extra={"field_name": name, "value": str(result)})

    return RecomputeResult(values=merged, computed=computed)
