"""Runtime configuration template and loading helpers."""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

from .errors import ConfigurationError

DEFAULT_CONFIG_NAME = "lodpatch.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {
        "name": "sfcgal-lod2",
        "description": "SFCGAL with relaxed validity checks for LOD2 building volumes.",
    },
    "source": {
        "root": "/tmp/SFCGAL",
        "repository": "https://gitlab.com/sfcgal/SFCGAL.git",
        "refs": ["v1.5.2", "v1.5.1", "master"],
    },
    "patch": {
        "rules_file": None,
        "workers": 1,
    },
    "build": {
        "library_name": "SFCGAL",
        "prefix": "/usr",
        "libdir": "lib/x86_64-linux-gnu",
        "build_type": "Release",
        "jobs": None,
        "ldconfig": True,
        "dependency": {
            "name": "CGAL",
            "source_dir": "/tmp/cgal",
            "repository": "https://github.com/CGAL/cgal.git",
            "ref": "v5.6",
        },
        "purge": {
            "roots": ["/usr", "/lib"],
            "pattern": "libSFCGAL*",
        },
        "links": [
            {
                "link": "/usr/lib/libSFCGAL.so.1",
                "target": "/usr/lib/x86_64-linux-gnu/libSFCGAL.so.1",
            },
            {
                "link": "/usr/lib/libSFCGAL.so",
                "target": "/usr/lib/x86_64-linux-gnu/libSFCGAL.so",
            },
        ],
        "expected_artifacts": [
            "/usr/lib/x86_64-linux-gnu/libSFCGAL.so",
            "/usr/lib/x86_64-linux-gnu/libSFCGAL.so.1",
        ],
    },
    "paths": {
        "data": "data",
        "reports": "data/runs",
    },
    "logging": {
        "level": "INFO",
    },
}


def copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def write_config(config_path: Path, config_data: Mapping[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(config_data), handle, sort_keys=False)


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration from disk and return it as a dictionary."""
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigurationError(f"Failed to parse config {config_path}: {error}") from error
    if not isinstance(data, dict):
        raise ConfigurationError("Configuration must be a mapping at the top level.")
    return data


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = config.get(name) or {}
    return value if isinstance(value, Mapping) else {}


def resolve_path(value: str | Path, config_path: Path) -> Path:
    """Resolve ``value`` relative to the configuration file's directory."""
    candidate = Path(value)
    if not candidate.is_absolute():
        candidate = (config_path.parent / candidate).resolve()
    return candidate


def resolve_tree_root(config: Mapping[str, Any], config_path: Path) -> Path:
    root = _section(config, "source").get("root")
    if not isinstance(root, str) or not root.strip():
        raise ConfigurationError("source.root is not configured")
    return resolve_path(root.strip(), config_path)


def resolve_rules_file(config: Mapping[str, Any], config_path: Path) -> Path | None:
    value = _section(config, "patch").get("rules_file")
    if isinstance(value, str) and value.strip():
        return resolve_path(value.strip(), config_path)
    return None


def resolve_reports_dir(config: Mapping[str, Any], config_path: Path) -> Path:
    paths_cfg = _section(config, "paths")
    reports = paths_cfg.get("reports")
    if isinstance(reports, str) and reports.strip():
        return resolve_path(reports.strip(), config_path)
    data = paths_cfg.get("data")
    base = data.strip() if isinstance(data, str) and data.strip() else "data"
    return resolve_path(base, config_path) / "runs"


def configure_logging(config: Mapping[str, Any], override: str | None = None) -> None:
    """Apply the configured log level to the root logger."""
    level_name = override or _section(config, "logging").get("level") or "INFO"
    level = logging.getLevelName(str(level_name).upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger().setLevel(level)


__all__ = [
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "configure_logging",
    "copy_config_template",
    "load_config",
    "resolve_path",
    "resolve_reports_dir",
    "resolve_rules_file",
    "resolve_tree_root",
    "write_config",
]
