# config.py
import logging
import math
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

# -------------------
# Project paths
# -------------------
ROOT_DIR = os.path.dirname(__file__)
LOG_DIR = os.path.join(ROOT_DIR, "logs")

CPU = "cpu"
SECONDS_PER_DAY = 86400.0

# -------------------
# Host defaults
# -------------------
HOST = {
    "ncpus": 4,
}

# -------------------
# GPU classes present on the host
# -------------------
GPU_TYPES = [
    {"name": "nvidia", "count": 1, "exclusion": False},
]

# -------------------
# CPU/GPU scheduler
# -------------------
SCHED = {
    "time_slice": 3600.0,       # a started job keeps running at least this long
    "debt_half_life": 864000.0, # 10 days
    "crash_loop_threshold": 3,
    "tick_interval": 60.0,
}

# -------------------
# Round-robin simulator
# -------------------
SIM = {
    "work_buf_days": 1.0,
    "sim_slice": 600.0,
}

# -------------------
# Work fetch
# -------------------
FETCH = {
    "backoff_base": 60.0,
    "backoff_max": 86400.0,
    "fetch_timeout": 600.0,
    "max_queued_jobs": 1000,
}

# -------------------
# Driver / emulator
# -------------------
DRIVER = {
    "seed": 0,
    "duration": 2 * SECONDS_PER_DAY,
    "num_projects": 2,
    "jobs_per_fetch": 4,
    "runtime_mean": 7200.0,
    "runtime_std": 1800.0,
    "deadline_days": 7.0,
    "fetch_latency": 5.0,
    "staging_delay": 30.0,
    "server_down_prob": 0.1,
    "crash_prob": 0.0,
}


class ConfigError(ValueError):
    """Raised when preferences or the host description are invalid."""


@dataclass(frozen=True)
class Preferences:
    """Read-only scheduling preferences, refreshed between ticks."""
    work_buf_days: float = SIM["work_buf_days"]
    sim_slice: float = SIM["sim_slice"]
    time_slice: float = SCHED["time_slice"]
    debt_half_life: float = SCHED["debt_half_life"]
    crash_loop_threshold: int = SCHED["crash_loop_threshold"]
    tick_interval: float = SCHED["tick_interval"]
    backoff_base: float = FETCH["backoff_base"]
    backoff_max: float = FETCH["backoff_max"]
    fetch_timeout: float = FETCH["fetch_timeout"]
    max_queued_jobs: int = FETCH["max_queued_jobs"]
    use_cpu: bool = True
    use_gpus: Dict[str, bool] = field(default_factory=dict)
    gpu_exclusion: Dict[str, bool] = field(default_factory=dict)

    @property
    def horizon(self) -> float:
        return self.work_buf_days * SECONDS_PER_DAY

    def resource_enabled(self, rsc: str) -> bool:
        if rsc == CPU:
            return self.use_cpu
        return self.use_gpus.get(rsc, True)


def _check_positive(name: str, value: Any, allow_zero: bool = False) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
        raise ConfigError(f"{name} must be a number, got {value!r}")
    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigError(f"{name} must be {'>= 0' if allow_zero else '> 0'}, got {value!r}")


def make_prefs(overrides: Optional[Dict[str, Any]] = None, **kwargs) -> Preferences:
    """
    Build validated Preferences from the module defaults plus overrides.
    Unknown keys are rejected so that typos in a prefs file do not pass silently.
    """
    values = dict(overrides or {})
    values.update(kwargs)
    known = {f.name for f in fields(Preferences)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigError(f"Unknown preference(s): {', '.join(unknown)}")

    prefs = Preferences(**values)

    for name in ("work_buf_days", "sim_slice", "debt_half_life", "tick_interval",
                 "backoff_base", "backoff_max", "fetch_timeout"):
        _check_positive(name, getattr(prefs, name))
    _check_positive("time_slice", prefs.time_slice, allow_zero=True)
    if prefs.backoff_max < prefs.backoff_base:
        raise ConfigError("backoff_max must be >= backoff_base")
    for name in ("crash_loop_threshold", "max_queued_jobs"):
        value = getattr(prefs, name)
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ConfigError(f"{name} must be a positive integer, got {value!r}")
    for name in ("use_gpus", "gpu_exclusion"):
        mapping = getattr(prefs, name)
        if not isinstance(mapping, dict) or not all(isinstance(v, bool) for v in mapping.values()):
            raise ConfigError(f"{name} must map GPU class names to booleans")
    return prefs


def load_prefs(path: str) -> Preferences:
    """Load preferences from a YAML file; a missing file yields the defaults."""
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        logger.info(f"Loaded preferences from {path}")
    except FileNotFoundError:
        logger.warning(f"Preferences file not found: {path}, using defaults")
        return make_prefs()
    except yaml.YAMLError as e:
        logger.error(f"Failed to parse preferences file {path}: {e}")
        raise ConfigError(f"Malformed preferences file {path}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Preferences file {path} must contain a mapping")
    return make_prefs(data)


# -------------------
# Catalog Config Builder
# -------------------
def make_catalog_cfg(*, ncpus: Optional[int] = None, gpu_types: List[Dict] = None) -> Dict:
    gpu_types = gpu_types if gpu_types is not None else GPU_TYPES
    return {
        "ncpus": int(ncpus if ncpus is not None else HOST["ncpus"]),
        "gpus": [
            {
                "name": t["name"],
                "count": int(t.get("count", 0)),
                "exclusion": bool(t.get("exclusion", False)),
            }
            for t in gpu_types
        ],
    }

DEFAULT_CATALOG_CFG = make_catalog_cfg()
