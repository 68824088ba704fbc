"""Resource descriptors and attribute value variants."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any


class _Missing:
    """Sentinel for 'no default given'."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


class ResourceState(StrEnum):
    """Run-time status of a resource within one run."""

    PENDING = "pending"
    PROVISIONING = "provisioning"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    CANCELLED = "cancelled"


class Operation(StrEnum):
    """What the engine did (or plans to do) to a resource."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    SAME = "same"
    DELETE = "delete"
    NONE = "none"


@dataclass(frozen=True, eq=True)
class Reference:
    """Read an output field of another resource.

    ``path`` is a dotted path with optional list indices, e.g.
    ``status.loadBalancer.ingress[0].ip``. An empty path selects the whole
    attribute set.
    """

    resource: str
    path: str = ""
    default: Any = field(default=MISSING, compare=False)

    @property
    def has_default(self) -> bool:
        return self.default is not MISSING

    def describe(self) -> dict[str, Any]:
        out: dict[str, Any] = {"$ref": self.resource, "path": self.path}
        if self.has_default:
            out["default"] = self.default
        return out

    def __str__(self) -> str:
        return f"{self.resource}.{self.path}" if self.path else self.resource


@dataclass(frozen=True)
class Template:
    """String interpolation over references; ``fmt`` uses ``{0}``, ``{1}``..."""

    fmt: str
    refs: tuple[Reference, ...] = ()

    def render(self, values: list[Any]) -> str:
        return self.fmt.format(*values)

    def describe(self) -> dict[str, Any]:
        return {"$template": self.fmt, "refs": [r.describe() for r in self.refs]}


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every Reference embedded anywhere in an attribute tree."""
    match value:
        case Reference():
            yield value
        case Template(refs=refs):
            yield from refs
        case Mapping():
            for item in value.values():
                yield from iter_references(item)
        case list() | tuple():
            for item in value:
                yield from iter_references(item)
        case _:
            return


def describe_value(value: Any) -> Any:
    """Render an attribute tree as JSON-safe data."""
    match value:
        case Reference() | Template():
            return value.describe()
        case Mapping():
            return {str(k): describe_value(v) for k, v in value.items()}
        case list() | tuple():
            return [describe_value(v) for v in value]
        case _:
            return value


@dataclass(frozen=True)
class ResourceDescriptor:
    """Declared, static specification of one resource.

    The engine never mutates a descriptor; reference substitution produces a
    new instance via ``with_properties``.
    """

    name: str
    kind: str
    properties: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()

    def references(self) -> list[Reference]:
        return list(iter_references(self.properties))

    def with_properties(self, properties: dict[str, Any]) -> ResourceDescriptor:
        return replace(self, properties=properties)

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "properties": describe_value(self.properties),
            "depends_on": list(self.depends_on),
        }
