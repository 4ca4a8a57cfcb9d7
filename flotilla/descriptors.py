"""Build-graph and deployment descriptor loading.

Both descriptors are YAML (or JSON, which YAML accepts).  The deployment
format follows the familiar compose shape::

    services:
      redis:
        image: redis:7
      backend:
        image: registry.example.com/app/backend:${VERSION}
        depends_on: [redis]
        healthcheck:
          test: ["CMD", "curl", "-f", "http://localhost:8000/health"]
          interval: 10s
          timeout: 5s
          retries: 3
          start_period: 15s

Image references may carry ``${VERSION}``, ``$VERSION`` or
``${VERSION:-default}`` placeholders, rendered at deploy time.
"""

from __future__ import annotations

import re
import shlex
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from flotilla.core.hasher import file_digest
from flotilla.models.builds import BuildGraphDescriptor, BuildStageDefinition
from flotilla.models.services import DeploymentDescriptor, HealthProbe, ServiceSpec


class DescriptorError(ValueError):
    """Raised when a descriptor file cannot be read or is malformed."""


_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}

_VARIABLE = re.compile(
    r"\$\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<default>[^}]*))?\}"
    r"|\$(?P<bare>[A-Za-z_][A-Za-z0-9_]*)"
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def parse_duration(value: Any) -> float:
    """Parse ``10``, ``2.5``, ``"500ms"``, ``"10s"``, ``"1m"`` into seconds."""
    if isinstance(value, bool):
        raise DescriptorError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION.match(str(value))
    if not match:
        raise DescriptorError(f"Invalid duration: {value!r}")
    return float(match.group(1)) * _DURATION_UNITS[match.group(2)]


def render_template(template: str, variables: dict[str, str]) -> str:
    """Substitute ``${NAME}``, ``$NAME`` and ``${NAME:-default}``.

    The default applies when the variable is unset or empty.  Unknown
    variables without a default are left untouched.
    """

    def _replace(match: re.Match[str]) -> str:
        name = match.group("braced") or match.group("bare")
        default = match.group("default")
        if variables.get(name):
            return variables[name]
        if default is not None:
            return default
        if name in variables:
            return variables[name]
        return match.group(0)

    return _VARIABLE.sub(_replace, template)


def render_deployment(
    descriptor: DeploymentDescriptor, variables: dict[str, str]
) -> DeploymentDescriptor:
    """Return a copy of *descriptor* with every image template rendered."""
    return DeploymentDescriptor(
        services=[
            s.model_copy(update={"image": render_template(s.image, variables)})
            for s in descriptor.services
        ]
    )


def _read(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise DescriptorError(f"Cannot read {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise DescriptorError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise DescriptorError(f"{path} must contain a mapping at the top level")
    return raw


def _named_entries(raw: Any, key: str) -> list[tuple[str, dict[str, Any]]]:
    """Accept both ``{name: {...}}`` and ``[{name: ..., ...}]`` shapes."""
    if isinstance(raw, dict):
        return [(str(name), dict(body or {})) for name, body in raw.items()]
    if isinstance(raw, list):
        entries = []
        for item in raw:
            if not isinstance(item, dict) or "name" not in item:
                raise DescriptorError(f"Every entry under '{key}' needs a 'name'")
            body = dict(item)
            entries.append((str(body.pop("name")), body))
        return entries
    raise DescriptorError(f"'{key}' must be a mapping or a list")


def _dependency_list(raw: Any, owner: str) -> list[str]:
    """Normalise ``depends_on``: a name, a list of names or the compose long form."""
    if raw is None:
        return []
    if isinstance(raw, str):
        return [raw]
    if isinstance(raw, dict):
        # compose long form: {redis: {condition: service_healthy}}
        return [str(name) for name in raw]
    if isinstance(raw, list):
        return [str(name) for name in raw]
    raise DescriptorError(f"{owner}: 'depends_on' must be a name or a list of names")


# ---------------------------------------------------------------------------
# Build graph
# ---------------------------------------------------------------------------


def parse_build_graph(data: dict[str, Any], base_dir: Path | None = None) -> BuildGraphDescriptor:
    """Validate a build-graph mapping.

    A stage's ``sources`` (paths relative to *base_dir*) are digested into
    its inputs, so editing a source file changes the stage fingerprint.
    """
    if "stages" not in data:
        raise DescriptorError("Build graph must contain a top-level 'stages' entry")

    stages = []
    for name, body in _named_entries(data["stages"], "stages"):
        inputs = dict(body.get("inputs") or {})
        sources = body.get("sources") or []
        if sources:
            root = Path(base_dir or ".")
            digests = {}
            for source in sources:
                path = root / source
                if not path.is_file():
                    raise DescriptorError(f"Stage {name!r}: source {source!r} not found")
                digests[str(source)] = file_digest(str(path))
            inputs["sources"] = digests
        try:
            stages.append(
                BuildStageDefinition(
                    name=name,
                    depends_on=_dependency_list(body.get("depends_on"), f"Stage {name!r}"),
                    inputs=inputs,
                    target=bool(body.get("target", False)),
                )
            )
        except ValidationError as exc:
            raise DescriptorError(f"Stage {name!r}: {exc}") from exc
    return BuildGraphDescriptor(stages=stages)


def load_build_graph(path: Path) -> BuildGraphDescriptor:
    path = Path(path)
    return parse_build_graph(_read(path), base_dir=path.parent)


# ---------------------------------------------------------------------------
# Deployment
# ---------------------------------------------------------------------------


def _probe_command(test: Any) -> list[str]:
    if isinstance(test, str):
        return ["sh", "-c", test]
    if isinstance(test, list) and test:
        head, rest = str(test[0]), [str(t) for t in test[1:]]
        if head == "CMD":
            return rest
        if head == "CMD-SHELL":
            return ["sh", "-c", " ".join(rest)]
        return [str(t) for t in test]
    raise DescriptorError(f"Unsupported healthcheck test: {test!r}")


def _parse_healthcheck(raw: dict[str, Any]) -> HealthProbe:
    fields: dict[str, Any] = {}
    test = raw.get("test", raw.get("command"))
    if test is not None:
        fields["command"] = _probe_command(test)
    if raw.get("endpoint"):
        fields["endpoint"] = str(raw["endpoint"])
    for key in ("interval", "timeout", "start_period"):
        if key in raw:
            fields[key] = parse_duration(raw[key])
    if "retries" in raw:
        fields["retries"] = raw["retries"]
    return HealthProbe(**fields)


def _parse_environment(raw: Any) -> dict[str, str]:
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return {str(k): "" if v is None else str(v) for k, v in raw.items()}
    if isinstance(raw, list):
        env = {}
        for item in raw:
            key, _, value = str(item).partition("=")
            env[key] = value
        return env
    raise DescriptorError(f"Unsupported environment block: {raw!r}")


def parse_deployment(data: dict[str, Any]) -> DeploymentDescriptor:
    """Validate a deployment mapping into a ``DeploymentDescriptor``."""
    if "services" not in data:
        raise DescriptorError("Deployment must contain a top-level 'services' entry")

    services = []
    for name, body in _named_entries(data["services"], "services"):
        if "image" not in body:
            raise DescriptorError(f"Service {name!r} has no image")
        depends_on = _dependency_list(body.get("depends_on"), f"Service {name!r}")
        command = body.get("command")
        if isinstance(command, str):
            command = shlex.split(command)
        try:
            healthcheck = (
                _parse_healthcheck(body["healthcheck"]) if body.get("healthcheck") else None
            )
            services.append(
                ServiceSpec(
                    name=name,
                    image=str(body["image"]),
                    depends_on=depends_on,
                    healthcheck=healthcheck,
                    environment=_parse_environment(body.get("environment")),
                    command=command,
                )
            )
        except ValidationError as exc:
            raise DescriptorError(f"Service {name!r}: {exc}") from exc
    return DeploymentDescriptor(services=services)


def load_deployment(path: Path) -> DeploymentDescriptor:
    return parse_deployment(_read(Path(path)))
