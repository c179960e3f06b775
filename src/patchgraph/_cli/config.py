"""Configuration loading from pyproject.toml."""

import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any


class ConfigError(Exception):
    """Error in patchgraph configuration."""


@dataclass(slots=True, frozen=True)
class PatchGraphConfig:
    """Settings from ``[tool.patchgraph]``.

    Relative paths are already resolved against ``project_root``, the
    directory holding the pyproject.toml they came from.
    """

    graph: Path | None = None
    state: Path | None = None
    output: Path | None = None
    plugins: tuple[str, ...] = ()
    project_root: Path | None = None


def find_pyproject_toml(start_dir: Path | None = None) -> Path | None:
    """Nearest pyproject.toml in ``start_dir`` (default: the working directory) or above it."""
    start = (start_dir or Path.cwd()).resolve()
    for directory in (start, *start.parents):
        candidate = directory / "pyproject.toml"
        if candidate.is_file():
            return candidate
    return None


def _parse_path(section: dict[str, Any], key: str, project_root: Path) -> Path | None:
    """Read an optional path entry, resolved against the project root."""
    if key not in section:
        return None
    value = section[key]
    if not isinstance(value, str):
        msg = f"Invalid [tool.patchgraph].{key}: expected string path"
        raise ConfigError(msg)
    path = Path(value)
    if not path.is_absolute():
        path = project_root / path
    return path


def _parse_plugins(value: object) -> tuple[str, ...]:
    """Parse the plugins list: module paths, optionally with a ':function' suffix."""
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        msg = "Invalid [tool.patchgraph].plugins: expected a list of module paths"
        raise ConfigError(msg)
    for item in value:
        module_name = item.split(":", 1)[0]
        if not module_name or not all(part.isidentifier() for part in module_name.split(".")):
            msg = f"Invalid plugin '{item}'. Expected format: 'module.path' or 'module.path:function'"
            raise ConfigError(msg)
    return tuple(value)


def load_config(pyproject_path: Path) -> PatchGraphConfig:
    """Read the [tool.patchgraph] table of a pyproject.toml.

    A file without the table gives an empty config rooted next to it.

    Raises:
        ConfigError: On invalid TOML, unknown keys or badly typed values.

    """
    project_root = pyproject_path.parent
    try:
        data = tomllib.loads(pyproject_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        msg = f"Invalid TOML in {pyproject_path}: {e}"
        raise ConfigError(msg) from e

    section = data.get("tool", {}).get("patchgraph", {})
    if not section:
        return PatchGraphConfig(project_root=project_root)

    unknown = sorted(set(section) - {"graph", "state", "output", "plugins"})
    if unknown:
        msg = f"Unknown [tool.patchgraph] keys: {', '.join(unknown)}"
        raise ConfigError(msg)

    return PatchGraphConfig(
        graph=_parse_path(section, "graph", project_root),
        state=_parse_path(section, "state", project_root),
        output=_parse_path(section, "output", project_root),
        plugins=_parse_plugins(section["plugins"]) if "plugins" in section else (),
        project_root=project_root,
    )


def get_config() -> PatchGraphConfig:
    """Config of the project the working directory belongs to; empty outside any project."""
    pyproject_path = find_pyproject_toml()
    return PatchGraphConfig() if pyproject_path is None else load_config(pyproject_path)
