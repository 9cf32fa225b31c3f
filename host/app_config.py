# host/app_config.py
"""
Per-project application overrides.

A project directory may contain an app_config.yaml that caps how many jobs
of an app run at once and overrides the CPU/GPU usage the project declared
for its app versions, e.g.

    apps:
      - name: einstein
        max_concurrent: 2
        gpu_versions:
          gpu_usage: 0.5
          cpu_usage: 0.2
    app_versions:
      - app_name: einstein
        plan_class: mt
        avg_ncpus: 4
"""
import logging
import math
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from host.project import GpuUsage
from host.registry import Registry

logger = logging.getLogger(__name__)

APP_CONFIG_FILE_NAME = "app_config.yaml"


class AppConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    max_concurrent: int = 0
    gpu_usage: float = 0.0
    cpu_usage: float = 0.0


@dataclass(frozen=True)
class AppVersionConfig:
    app_name: str
    plan_class: str = ""
    cmdline: str = ""
    avg_ncpus: float = 0.0
    ngpus: float = 0.0


@dataclass(frozen=True)
class AppConfigs:
    apps: Tuple[AppConfig, ...] = ()
    app_versions: Tuple[AppVersionConfig, ...] = ()


def _number(entry: Mapping[str, Any], key: str, default: float = 0.0) -> float:
    value = entry.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value) or value < 0:
        raise AppConfigError(f"{key} must be a non-negative number, got {value!r}")
    return float(value)


def _parse_app(entry: Mapping[str, Any]) -> AppConfig:
    name = entry.get("name")
    if not isinstance(name, str) or not name:
        raise AppConfigError("app entry needs a name")
    max_concurrent = entry.get("max_concurrent", 0)
    if isinstance(max_concurrent, bool) or not isinstance(max_concurrent, int) or max_concurrent < 0:
        raise AppConfigError(f"max_concurrent of {name} must be a non-negative integer")
    gpu_versions = entry.get("gpu_versions") or {}
    if not isinstance(gpu_versions, Mapping):
        raise AppConfigError(f"gpu_versions of {name} must be a mapping")
    return AppConfig(
        name=name,
        max_concurrent=max_concurrent,
        gpu_usage=_number(gpu_versions, "gpu_usage"),
        cpu_usage=_number(gpu_versions, "cpu_usage"),
    )


def _parse_app_version(entry: Mapping[str, Any]) -> AppVersionConfig:
    app_name = entry.get("app_name")
    if not isinstance(app_name, str) or not app_name:
        raise AppConfigError("app_version entry needs an app_name")
    return AppVersionConfig(
        app_name=app_name,
        plan_class=str(entry.get("plan_class") or ""),
        cmdline=str(entry.get("cmdline") or ""),
        avg_ncpus=_number(entry, "avg_ncpus"),
        ngpus=_number(entry, "ngpus"),
    )


def parse_app_config(data: Any, source: str = APP_CONFIG_FILE_NAME) -> AppConfigs:
    """Validate a decoded app config document. Bad entries are skipped."""
    if data is None:
        return AppConfigs()
    if not isinstance(data, Mapping):
        raise AppConfigError(f"{source}: top level must be a mapping")

    apps: List[AppConfig] = []
    versions: List[AppVersionConfig] = []
    for key, value in data.items():
        if key not in ("apps", "app_versions"):
            logger.info(f"Unparsed entry in {source}: {key}")
            continue
        if not isinstance(value, list):
            raise AppConfigError(f"{source}: {key} must be a list")
        parse = _parse_app if key == "apps" else _parse_app_version
        target = apps if key == "apps" else versions
        for entry in value:
            if not isinstance(entry, Mapping):
                logger.warning(f"{source}: skipping malformed {key} entry {entry!r}")
                continue
            try:
                target.append(parse(entry))
            except AppConfigError as e:
                logger.warning(f"{source}: skipping {key} entry: {e}")
    return AppConfigs(apps=tuple(apps), app_versions=tuple(versions))


def load_app_config(path: str) -> Optional[AppConfigs]:
    """Parse an app config file; None when the file does not exist."""
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        return None
    except yaml.YAMLError as e:
        raise AppConfigError(f"Malformed {path}: {e}") from e
    return parse_app_config(data, source=path)


def _known_apps(registry: Registry, project_id: str) -> str:
    return " ".join(sorted({av.app_name for av in registry.app_versions_for(project_id)}))


def apply_app_config(registry: Registry, project_id: str, configs: AppConfigs,
                     show_warnings: bool = True) -> List[str]:
    """Apply overrides to the project's app versions; returns user warnings."""
    warnings = []

    def unknown(name: str) -> None:
        if show_warnings:
            message = (
                f"app config of {project_id} refers to an unknown application '{name}'. "
                f"Known applications: {_known_apps(registry, project_id)}"
            )
            logger.warning(message)
            warnings.append(message)

    for ac in configs.apps:
        versions = registry.app_versions_for(project_id, ac.name)
        if not versions:
            unknown(ac.name)
            continue
        for av in versions:
            av.max_concurrent = ac.max_concurrent
        if not ac.gpu_usage or not ac.cpu_usage:
            continue
        for av in versions:
            if av.gpu_usage is None:
                continue
            av.gpu_usage = GpuUsage(av.gpu_usage.rsc, ac.gpu_usage)
            av.avg_ncpus = ac.cpu_usage

    for avc in configs.app_versions:
        versions = registry.app_versions_for(project_id, avc.app_name)
        if not versions:
            unknown(avc.app_name)
            continue
        for av in versions:
            if av.plan_class != avc.plan_class:
                continue
            if avc.cmdline:
                av.cmdline = avc.cmdline
            if avc.avg_ncpus:
                av.avg_ncpus = avc.avg_ncpus
            if avc.ngpus and av.gpu_usage is not None:
                av.gpu_usage = GpuUsage(av.gpu_usage.rsc, avc.ngpus)
    return warnings


def clear_app_config(registry: Registry, project_id: str) -> None:
    """
    Undo a removed app config. Only max_concurrent can be cleared; usage
    overrides stay until the project sends its app versions again.
    """
    for av in registry.app_versions_for(project_id):
        av.max_concurrent = 0


def check_app_configs(project_dirs: Dict[str, str]) -> Dict[str, Optional[AppConfigs]]:
    """
    Load the app config file of each project directory. Projects without a
    file map to None; projects whose file is malformed are left out.
    """
    found: Dict[str, Optional[AppConfigs]] = {}
    for project_id, directory in sorted(project_dirs.items()):
        path = os.path.join(directory, APP_CONFIG_FILE_NAME)
        try:
            found[project_id] = load_app_config(path)
        except AppConfigError as e:
            logger.error(f"{project_id}: {e}")
            continue
        if found[project_id] is not None:
            logger.info(f"{project_id}: found {APP_CONFIG_FILE_NAME}")
    return found
