"""Diff/plan engine.

Compares the declared resource graph with the state record and emits an
ordered list of operations:

- deletes of replaced and removed resources, consumers before producers
  (reverse topological order over declared edges plus the dependencies
  recorded in state, or recorded edges alone where the two conflict)
- creates, updates and no-ops in declared topological order

A removed resource is deleted after the surviving resources that recorded
a dependency on it have been applied. Plan order and each operation's deps
agree.

A replacement is a delete followed by a create of the same logical id.
Planning is pure: it never touches the provider or the state store.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from errors import CyclicDependencyError
from providers.types import get_type
from stack import Resource
from stack_opr.graph import ResourceGraph, order_ids
from stack_opr.resolve import Deferred, resolve_properties, to_display
from stack_opr.state import ResourceState, StateRecord

logger = logging.getLogger(__name__)


class Action(str, Enum):
    CREATE = 'create'
    UPDATE = 'update'
    DELETE = 'delete'
    NOOP = 'noop'


SYMBOLS = {
    Action.CREATE: '+',
    Action.UPDATE: '~',
    Action.DELETE: '-',
    Action.NOOP: ' ',
}


@dataclass(frozen=True)
class PlanOperation:
    """One planned operation.

    Attributes:
        action: create, update, delete or noop
        logical_id: Target resource
        resource_type: Type tag
        resource: Declaration (None for deletes)
        prior: State snapshot (None for creates)
        changed: Changed property names (updates and replacements)
        replace: True for both halves of a replacement
        deps: Keys of operations that must commit first
        properties: Planned property values (Deferred where unknown)
    """
    action: Action
    logical_id: str
    resource_type: str
    resource: Optional[Resource] = None
    prior: Optional[ResourceState] = None
    changed: tuple[str, ...] = ()
    replace: bool = False
    deps: tuple[str, ...] = ()
    properties: Optional[dict] = field(default=None, compare=False, hash=False)

    @property
    def key(self) -> str:
        return f"{self.action.value}:{self.logical_id}"

    def describe(self) -> str:
        """One-line human-readable description."""
        if self.replace:
            verb = 'replace (delete)' if self.action == Action.DELETE else 'replace (create)'
            symbol = '-/+'
        else:
            verb = self.action.value
            symbol = SYMBOLS[self.action]
        line = f"{symbol:>3} {verb} {self.logical_id} ({self.resource_type})"
        if self.changed:
            line += f": {', '.join(self.changed)}"
        if self.action == Action.DELETE and self.prior and self.prior.removal_policy == 'retain':
            line += " [retain: state only]"
        return line

    def __repr__(self) -> str:
        return f"{self.action.value.capitalize()}({self.logical_id})"


@dataclass
class Plan:
    """Ordered operations for one stack.

    Attributes:
        stack_name: Stack identifier
        operations: All operations in execution order (including no-ops)
        state_serial: Serial of the state record the plan was computed from
        destroy: True for a full-teardown plan
    """
    stack_name: str
    operations: list[PlanOperation]
    state_serial: int = 0
    destroy: bool = False

    @property
    def changes(self) -> list[PlanOperation]:
        """Operations other than no-ops."""
        return [op for op in self.operations if op.action != Action.NOOP]

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)

    def get(self, key: str) -> PlanOperation:
        for op in self.operations:
            if op.key == key:
                return op
        raise KeyError(key)

    def summary(self) -> dict[str, int]:
        counts = {a.value: 0 for a in Action}
        replaced = set()
        for op in self.operations:
            if op.replace:
                replaced.add(op.logical_id)
                continue
            counts[op.action.value] += 1
        counts['replace'] = len(replaced)
        return counts

    def render(self, verbose: bool = False) -> str:
        """Human-readable plan."""
        lines = [f"Plan for stack '{self.stack_name}'"
                 f"{' (destroy)' if self.destroy else ''}:"]
        shown = self.operations if verbose else self.changes
        if not shown:
            lines.append("  No changes. Infrastructure matches the declaration.")
        for op in shown:
            lines.append(f"  {op.describe()}")
            if verbose and op.changed and op.properties is not None:
                for name in op.changed:
                    old = op.prior.properties.get(name) if op.prior else None
                    new = to_display(op.properties.get(name))
                    lines.append(f"        {name}: {old!r} -> {new!r}")
        s = self.summary()
        lines.append(
            f"Summary: {s['create']} to create, {s['update']} to update, "
            f"{s['replace']} to replace, {s['delete']} to delete, {s['noop']} unchanged."
        )
        return '\n'.join(lines)

    def to_dict(self) -> dict:
        return {
            'stack': self.stack_name,
            'destroy': self.destroy,
            'state_serial': self.state_serial,
            'summary': self.summary(),
            'operations': [
                {
                    'action': op.action.value,
                    'logical_id': op.logical_id,
                    'type': op.resource_type,
                    'replace': op.replace,
                    'changed': list(op.changed),
                    'deps': list(op.deps),
                }
                for op in self.operations
            ],
        }


def _values_equal(desired: Any, current: Any) -> bool:
    """Deep comparison in which a Deferred placeholder never matches."""
    if isinstance(desired, Deferred):
        return False
    if isinstance(desired, dict):
        if not isinstance(current, dict) or set(desired) != set(current):
            return False
        return all(_values_equal(desired[k], current[k]) for k in desired)
    if isinstance(desired, list):
        if not isinstance(current, list) or len(desired) != len(current):
            return False
        return all(_values_equal(d, c) for d, c in zip(desired, current))
    if isinstance(desired, bool) or isinstance(current, bool):
        return desired is current
    return desired == current


def diff_properties(desired: dict[str, Any], current: dict[str, Any]) -> list[str]:
    """Return sorted names of properties that differ."""
    changed = []
    for name in sorted(set(desired) | set(current)):
        if name not in desired or name not in current:
            changed.append(name)
        elif not _values_equal(desired[name], current[name]):
            changed.append(name)
    return changed


def _delete_order(ids: list[str], state: StateRecord, graph: Optional[ResourceGraph],
                  declared_edges: bool = True) -> tuple[list[str], dict[str, set[str]]]:
    """Order ids for deletion: consumers before producers.

    Edges are the dependencies recorded in state, plus the declared ones when
    declared_edges is set. If the two disagree and form a cycle, the recorded
    edges alone decide. The graph always breaks ties.

    Returns:
        (ordered ids, edges used)
    """
    recorded: dict[str, set[str]] = {}
    for lid in ids:
        prior = state.get(lid)
        recorded[lid] = set(prior.dependencies) if prior else set()

    deps = recorded
    if declared_edges and graph is not None:
        deps = {
            lid: edges | set(graph.dependencies_of(lid)) if lid in graph else edges
            for lid, edges in recorded.items()
        }

    # Tie-break by declared position, then by state order for undeclared ids
    state_ids = list(state.resources)

    def _rank(lid: str) -> tuple:
        if graph is not None and lid in graph:
            return (0, graph.get_node(lid).position)
        return (1, state_ids.index(lid) if lid in state_ids else len(state_ids))

    base = sorted(ids, key=_rank)
    try:
        return list(reversed(order_ids(base, deps))), deps
    except CyclicDependencyError as e:
        if deps is recorded:
            raise
        logger.warning(f"Declared dependencies conflict with state ({e.message}); "
                       f"ordering deletes by recorded dependencies")
        return list(reversed(order_ids(base, recorded))), recorded


def _delete_deps(lid: str, delete_ids: set[str], ids_deps: dict[str, set[str]]) -> tuple[str, ...]:
    """Delete of lid waits for deletes of resources that depend on it."""
    return tuple(sorted(
        f"{Action.DELETE.value}:{other}"
        for other in delete_ids
        if other != lid and lid in ids_deps.get(other, set())
    ))


def _release_deps(lid: str, state: StateRecord,
                  classified: dict[str, tuple]) -> tuple[str, ...]:
    """Delete of a removed resource waits for its surviving consumers to drop it."""
    keys = []
    for other, (action, replace, _, _) in classified.items():
        prior = state.get(other)
        if replace or prior is None or lid not in prior.dependencies:
            continue
        keys.append(f"{action.value}:{other}")
    return tuple(keys)


def _execution_order(operations: list[PlanOperation]) -> list[PlanOperation]:
    """Topologically order operations by deps, keeping list order for ties."""
    by_key = {op.key: op for op in operations}
    keys = order_ids([op.key for op in operations], {op.key: op.deps for op in operations})
    return [by_key[key] for key in keys]


def plan_changes(graph: ResourceGraph, state: StateRecord) -> Plan:
    """Compute the plan that moves state to the declared graph.

    Args:
        graph: Declared resource graph
        state: Previously committed state record

    Returns:
        Plan whose operations are in execution order
    """
    declared_ids = list(graph.logical_ids)
    known_outputs = state.outputs()

    # Pass 1: classify in topological order so producers are decided first
    classified: dict[str, tuple[Action, bool, list[str], dict]] = {}
    for node in graph.create_order():
        resource = node.resource
        lid = resource.logical_id
        prior = state.get(lid)

        if prior is None:
            desired = resolve_properties(resource, known_outputs)
            classified[lid] = (Action.CREATE, False, [], desired)
            continue

        desired = resolve_properties(resource, known_outputs)
        rtype = get_type(resource.type)
        changed = diff_properties(desired, prior.properties)
        replace = prior.resource_type != resource.type or bool(set(changed) & rtype.immutable)
        if replace:
            # Outputs of a replaced resource are unknown until it is recreated
            known_outputs.pop(lid, None)
            if prior.resource_type != resource.type and 'type' not in changed:
                changed = ['type'] + changed
            classified[lid] = (Action.CREATE, True, changed, desired)
        elif changed:
            classified[lid] = (Action.UPDATE, False, changed, desired)
        else:
            classified[lid] = (Action.NOOP, False, [], desired)

    removed = [lid for lid in state.resources if lid not in graph]
    replaced = [lid for lid, (_, rep, _, _) in classified.items() if rep]
    delete_ids, ids_deps = _delete_order(removed + replaced, state, graph)
    delete_set = set(delete_ids)

    def _delete_op(lid: str, released: tuple[str, ...] = ()) -> PlanOperation:
        prior = state.resources[lid]
        is_replace = lid in graph
        return PlanOperation(
            action=Action.DELETE,
            logical_id=lid,
            resource_type=prior.resource_type,
            prior=prior,
            changed=tuple(classified[lid][2]) if is_replace else (),
            replace=is_replace,
            deps=_delete_deps(lid, delete_set, ids_deps) + released,
        )

    applies: list[PlanOperation] = []
    applied_key: dict[str, str] = {}
    for lid in declared_ids:
        node = graph.get_node(lid)
        action, replace, changed, desired = classified[lid]
        deps = [applied_key[d] for d in node.dependencies if d in applied_key]
        if replace:
            deps.append(f"{Action.DELETE.value}:{lid}")
        op = PlanOperation(
            action=action,
            logical_id=lid,
            resource_type=node.type,
            resource=node.resource,
            prior=state.get(lid),
            changed=tuple(changed),
            replace=replace,
            deps=tuple(deps),
            properties=desired,
        )
        applies.append(op)
        applied_key[lid] = op.key

    deletes = [
        _delete_op(lid, _release_deps(lid, state, classified) if lid in removed else ())
        for lid in delete_ids
    ]
    try:
        operations = _execution_order(deletes + applies)
    except CyclicDependencyError as e:
        logger.warning(f"Cannot delete removed resources after their consumers are updated "
                       f"({e.message}); deleting first")
        operations = [_delete_op(lid) for lid in delete_ids] + applies

    plan = Plan(stack_name=graph.stack.name, operations=operations, state_serial=state.serial)
    logger.debug(f"Planned stack '{plan.stack_name}': {plan.summary()}")
    return plan


def plan_destroy(state: StateRecord, graph: Optional[ResourceGraph] = None) -> Plan:
    """Plan deletion of every tracked resource.

    Order follows the dependencies recorded in state, which describe what
    actually exists; the declared graph only breaks ties.

    Args:
        state: Committed state record
        graph: Optional declared graph, used to order independent resources
    """
    delete_ids, ids_deps = _delete_order(list(state.resources), state, graph,
                                         declared_edges=False)
    delete_set = set(delete_ids)

    operations = [
        PlanOperation(
            action=Action.DELETE,
            logical_id=lid,
            resource_type=state.resources[lid].resource_type,
            prior=state.resources[lid],
            deps=_delete_deps(lid, delete_set, ids_deps),
        )
        for lid in delete_ids
    ]
    return Plan(stack_name=state.stack_name, operations=operations,
                state_serial=state.serial, destroy=True)
