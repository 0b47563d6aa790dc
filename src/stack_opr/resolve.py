"""Reference resolution pass.

Maps property trees (LiteralValue | Ref leaves) to plain values. A Ref whose
producer has no known outputs yet resolves to a Deferred placeholder; the
value becomes known only after the producer is applied.
"""

from dataclasses import dataclass
from typing import Any, Mapping

from errors import UnresolvedReferenceError
from stack import LiteralValue, PropertyValue, Ref, Resource


@dataclass(frozen=True)
class Deferred:
    """Placeholder for a value known only after apply."""
    ref: Ref

    def __str__(self) -> str:
        return f"(known after apply: {self.ref})"


def resolve_tree(value: PropertyValue, outputs: Mapping[str, Mapping[str, Any]]) -> Any:
    """Resolve a property tree against known producer outputs."""
    if isinstance(value, LiteralValue):
        return value.value
    if isinstance(value, Ref):
        produced = outputs.get(value.resource)
        if produced is None or value.attribute not in produced:
            return Deferred(value)
        return produced[value.attribute]
    if isinstance(value, dict):
        return {k: resolve_tree(v, outputs) for k, v in value.items()}
    return [resolve_tree(v, outputs) for v in value]


def resolve_properties(resource: Resource,
                       outputs: Mapping[str, Mapping[str, Any]]) -> dict[str, Any]:
    return {name: resolve_tree(value, outputs) for name, value in resource.properties.items()}


def has_deferred(value: Any) -> bool:
    if isinstance(value, Deferred):
        return True
    if isinstance(value, dict):
        return any(has_deferred(v) for v in value.values())
    if isinstance(value, list):
        return any(has_deferred(v) for v in value)
    return False


def require_resolved(resource: Resource,
                     outputs: Mapping[str, Mapping[str, Any]]) -> dict[str, Any]:
    """Resolve all properties, failing if any reference is still unknown.

    Raises:
        UnresolvedReferenceError: If a producer's output is not available
    """
    for ref in resource.references():
        produced = outputs.get(ref.resource)
        if produced is None or ref.attribute not in produced:
            raise UnresolvedReferenceError(
                f"Output {ref} not available (producer not applied)",
                logical_id=resource.logical_id, target=ref.resource, attribute=ref.attribute,
            )
    return resolve_properties(resource, outputs)


def to_display(value: Any) -> Any:
    """Render Deferred placeholders as strings (for plan output)."""
    if isinstance(value, Deferred):
        return str(value)
    if isinstance(value, dict):
        return {k: to_display(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_display(v) for v in value]
    return value
