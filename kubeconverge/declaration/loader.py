"""Declaration documents (YAML or JSON) -> Stack.

Document layout::

    name: rebellion
    config:
      istioVersion: "1.21.0"
    resources:
      - name: demo
        kind: kubernetes:core/v1:Namespace
        properties: {...}
        dependsOn: [other]
    exports:
      gatewayIP: {$ref: istio-gateway-lb, path: status.loadBalancer.ingress[0].ip, default: pending}

Inside ``properties`` and ``exports``:

- ``{$ref: name, path: a.b[0], default: x}`` or ``!ref name.a.b[0]`` reads
  an output of another resource.
- ``"${name.a.b}"`` inside a string reads an output too. A string that is
  exactly one placeholder becomes a plain reference (the value keeps its
  type); otherwise it becomes a Template. ``${name.path:-fallback}`` sets
  a default.
- ``${config.key}`` is replaced at load time by the static config value.
  ``KUBECONVERGE_CONFIG_<KEY>`` in the environment overrides it, with the
  key upper-cased and non-alphanumerics turned into ``_``.
- ``$${`` is a literal ``${``.

Resource names may not contain ``.``; the first ``.`` in a reference
expression separates the resource from the path.
"""

from __future__ import annotations

import json
import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import structlog
import yaml

from kubeconverge.errors import DeclarationError
from kubeconverge.models.resources import MISSING, Reference, Template
from kubeconverge.models.stack import Stack
from kubeconverge.outputs.paths import parse_path

_log = structlog.get_logger(component="declaration")

_TOP_LEVEL_KEYS = frozenset({"name", "description", "config", "resources", "exports"})
_RESOURCE_KEYS = frozenset({"name", "kind", "properties", "dependsOn"})
_REF_KEYS = frozenset({"$ref", "path", "default"})
_PLACEHOLDER = re.compile(r"\$\$\{|\$\{([^}]*)\}")
_CONFIG_ENV_PREFIX = "KUBECONVERGE_CONFIG_"


class _DeclarationLoader(yaml.SafeLoader):
    """SafeLoader with the ``!ref`` tag."""


def _construct_ref(loader: yaml.SafeLoader, node: yaml.Node) -> Reference:
    if not isinstance(node, yaml.ScalarNode):
        raise DeclarationError(f"!ref expects a scalar 'name.path', line {node.start_mark.line + 1}")
    return _parse_reference(str(loader.construct_scalar(node)), where=f"line {node.start_mark.line + 1}")


_DeclarationLoader.add_constructor("!ref", _construct_ref)


def config_env_name(key: str) -> str:
    return _CONFIG_ENV_PREFIX + re.sub(r"[^A-Za-z0-9]", "_", key).upper()


def _parse_reference(expr: str, where: str, default: Any = MISSING) -> Reference:
    expr = expr.strip()
    resource, _, path = expr.partition(".")
    if not resource:
        raise DeclarationError(f"Empty reference {expr!r} at {where}")
    try:
        parse_path(path)
    except ValueError as exc:
        raise DeclarationError(f"Invalid reference path {path!r} at {where}: {exc}") from exc
    return Reference(resource, path, default)


class _Converter:
    """Turns raw document values into attribute trees."""

    def __init__(self, config: Mapping[str, Any]) -> None:
        self.config = config

    def convert(self, value: Any, where: str) -> Any:
        match value:
            case Reference():
                return value
            case Mapping() if "$ref" in value:
                return self._explicit_ref(value, where)
            case Mapping():
                return {str(k): self.convert(v, f"{where}.{k}") for k, v in value.items()}
            case list() | tuple():
                return [self.convert(v, f"{where}[{i}]") for i, v in enumerate(value)]
            case str():
                return self._interpolate(value, where)
            case _:
                return value

    def _explicit_ref(self, value: Mapping[str, Any], where: str) -> Reference:
        unknown = set(value) - _REF_KEYS
        if unknown:
            raise DeclarationError(f"Unknown key(s) {sorted(unknown)} in reference at {where}")
        resource = value["$ref"]
        if not isinstance(resource, str) or not resource:
            raise DeclarationError(f"$ref must be a non-empty string at {where}")
        path = value.get("path", "")
        if not isinstance(path, str):
            raise DeclarationError(f"Reference path must be a string at {where}")
        ref = _parse_reference(f"{resource}.{path}" if path else resource, where)
        if "default" in value:
            return Reference(ref.resource, ref.path, value["default"])
        return ref

    def _config_value(self, key: str, where: str) -> Any:
        env_value = os.environ.get(config_env_name(key))
        if env_value is not None:
            return env_value
        if key not in self.config:
            raise DeclarationError(f"Unknown config key {key!r} at {where}")
        return self.config[key]

    def _interpolate(self, text: str, where: str) -> Any:
        if "$" not in text:
            return text
        literal: list[str] = []
        fmt: list[str] = []
        refs: list[Reference] = []
        pos = 0

        def _flush() -> None:
            chunk = "".join(literal)
            fmt.append(chunk.replace("{", "{{").replace("}", "}}"))
            literal.clear()

        matches = list(_PLACEHOLDER.finditer(text))
        for m in matches:
            literal.append(text[pos : m.start()])
            pos = m.end()
            if m.group(0) == "$${":
                literal.append("${")
                continue
            expr = m.group(1).strip()
            if expr.startswith("config."):
                value = self._config_value(expr[len("config.") :], where)
                if len(matches) == 1 and m.start() == 0 and m.end() == len(text):
                    return value
                literal.append(str(value))
                continue
            expr, sep, fallback = expr.partition(":-")
            ref = _parse_reference(expr, where, fallback if sep else MISSING)
            if len(matches) == 1 and m.start() == 0 and m.end() == len(text):
                return ref
            _flush()
            fmt.append("{%d}" % len(refs))
            refs.append(ref)
        literal.append(text[pos:])
        _flush()
        rendered = "".join(fmt)
        if not refs:
            # Only escapes and config values: unescape the braces again.
            return rendered.replace("{{", "{").replace("}}", "}")
        return Template(rendered, tuple(refs))


def parse_declaration(text: str, source: str = "<string>") -> Stack:
    """Parse a declaration document into a Stack."""
    try:
        doc = yaml.load(text, Loader=_DeclarationLoader)  # noqa: S506 - SafeLoader subclass
    except yaml.YAMLError as exc:
        raise DeclarationError(f"{source}: invalid YAML: {exc}") from exc
    if not isinstance(doc, dict):
        raise DeclarationError(f"{source}: document root must be a mapping")

    unknown = set(doc) - _TOP_LEVEL_KEYS
    if unknown:
        raise DeclarationError(f"{source}: unknown top-level key(s) {sorted(unknown)}")
    name = doc.get("name")
    if not isinstance(name, str) or not name:
        raise DeclarationError(f"{source}: 'name' is required")
    config = doc.get("config") or {}
    if not isinstance(config, dict):
        raise DeclarationError(f"{source}: 'config' must be a mapping")
    resources = doc.get("resources") or []
    if not isinstance(resources, list):
        raise DeclarationError(f"{source}: 'resources' must be a list")

    converter = _Converter(config)
    stack = Stack(name)
    for index, raw in enumerate(resources):
        where = f"resources[{index}]"
        if not isinstance(raw, dict):
            raise DeclarationError(f"{source}: {where} must be a mapping")
        unknown = set(raw) - _RESOURCE_KEYS
        if unknown:
            raise DeclarationError(f"{source}: unknown key(s) {sorted(unknown)} in {where}")
        res_name, kind = raw.get("name"), raw.get("kind")
        if not isinstance(res_name, str) or not res_name or "." in res_name:
            raise DeclarationError(f"{source}: {where} needs a 'name' without '.'")
        if not isinstance(kind, str) or not kind:
            raise DeclarationError(f"{source}: {where} ({res_name}) needs a 'kind'")
        properties = raw.get("properties") or {}
        if not isinstance(properties, dict):
            raise DeclarationError(f"{source}: {res_name}.properties must be a mapping")
        depends_on = raw.get("dependsOn") or []
        if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
            raise DeclarationError(f"{source}: {res_name}.dependsOn must be a list of names")
        stack.resource(
            res_name,
            kind,
            converter.convert(properties, f"{res_name}.properties"),
            depends_on=depends_on,
        )

    exports = doc.get("exports") or {}
    if not isinstance(exports, dict):
        raise DeclarationError(f"{source}: 'exports' must be a mapping")
    for export_name, value in exports.items():
        stack.export(str(export_name), converter.convert(value, f"exports.{export_name}"))

    _log.debug("declaration_loaded", source=source, stack=name, resources=len(stack), exports=len(exports))
    return stack


def load_declaration(path: str | Path) -> Stack:
    """Load a declaration file (``.yaml``, ``.yml`` or ``.json``)."""
    file = Path(path)
    if not file.exists():
        raise DeclarationError(f"Declaration file not found: {file}")
    text = file.read_text(encoding="utf-8")
    if file.suffix.lower() == ".json":
        try:
            json.loads(text)
        except json.JSONDecodeError as exc:
            raise DeclarationError(f"{file}: invalid JSON: {exc}") from exc
    return parse_declaration(text, source=str(file))
