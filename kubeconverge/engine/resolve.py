"""Reference substitution.

Walks an attribute tree and replaces every Reference/Template with the
concrete value read from the producer's attributes. The walk is synchronous
over already-resolved producer data; ``resolve_descriptor`` is the async
entry point that first awaits the producers' output cells.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from kubeconverge.errors import MissingOutputError
from kubeconverge.models.resources import MISSING, Reference, ResourceDescriptor, Template
from kubeconverge.outputs.cell import OutputCell
from kubeconverge.outputs.paths import get_path


def lookup(ref: Reference, attributes: Any) -> Any:
    found = get_path(attributes, ref.path)
    if found is MISSING:
        if ref.has_default:
            return ref.default
        raise MissingOutputError(ref.resource, ref.path)
    return found


def substitute(value: Any, producers: Mapping[str, Any]) -> Any:
    """Return *value* with references replaced from *producers* (name -> attributes)."""
    match value:
        case Reference():
            return lookup(value, producers[value.resource])
        case Template(refs=refs):
            return value.render([lookup(r, producers[r.resource]) for r in refs])
        case Mapping():
            return {k: substitute(v, producers) for k, v in value.items()}
        case list() | tuple():
            return [substitute(v, producers) for v in value]
        case _:
            return value


async def resolve_descriptor(descriptor: ResourceDescriptor, cells: Mapping[str, OutputCell]) -> ResourceDescriptor:
    """Await every producer this descriptor reads and substitute its references."""
    producers: dict[str, Any] = {}
    for ref in descriptor.references():
        if ref.resource not in producers:
            producers[ref.resource] = await cells[ref.resource]
    return descriptor.with_properties(substitute(descriptor.properties, producers))
