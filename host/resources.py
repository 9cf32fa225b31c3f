# host/resources.py
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from config import CPU, ConfigError, DEFAULT_CATALOG_CFG

EPS = 1e-6


@dataclass(frozen=True)
class GpuClass:
    name: str
    count: int
    # True: fractional jobs of different projects may time-share one instance.
    exclusion: bool = False


@dataclass(frozen=True)
class ResourceCatalog:
    """Processing resources available this tick: CPU cores and GPU classes."""
    ncpus: int
    gpus: Tuple[GpuClass, ...] = ()

    def __post_init__(self):
        if self.ncpus < 1:
            raise ConfigError(f"ncpus must be >= 1, got {self.ncpus}")
        names = [g.name for g in self.gpus]
        if len(set(names)) != len(names):
            raise ConfigError(f"Duplicate GPU class names: {names}")
        for g in self.gpus:
            if g.name == CPU:
                raise ConfigError("A GPU class cannot be named 'cpu'")
            if g.count < 0:
                raise ConfigError(f"GPU class {g.name} has negative count")

    @classmethod
    def from_config(cls, cfg: Optional[Dict] = None) -> "ResourceCatalog":
        cfg = cfg or DEFAULT_CATALOG_CFG
        gpus = tuple(
            GpuClass(
                name=g["name"],
                count=int(g.get("count", 0)),
                exclusion=bool(g.get("exclusion", False)),
            )
            for g in cfg.get("gpus", [])
        )
        return cls(ncpus=int(cfg["ncpus"]), gpus=gpus)

    def resource_classes(self) -> List[str]:
        return [CPU] + [g.name for g in self.gpus]

    def instance_count(self, rsc: str) -> int:
        if rsc == CPU:
            return self.ncpus
        for g in self.gpus:
            if g.name == rsc:
                return g.count
        return 0

    def allows_sharing(self, rsc: str) -> bool:
        if rsc == CPU:
            return True
        for g in self.gpus:
            if g.name == rsc:
                return g.exclusion
        return False

    def with_exclusion(self, gpu_exclusion: Dict[str, bool]) -> "ResourceCatalog":
        """Apply per-class exclusion policy overrides from preferences."""
        if not gpu_exclusion:
            return self
        gpus = tuple(
            GpuClass(g.name, g.count, gpu_exclusion.get(g.name, g.exclusion)) for g in self.gpus
        )
        return ResourceCatalog(ncpus=self.ncpus, gpus=gpus)

    def new_pool(self, rsc: str) -> "InstancePool":
        return InstancePool(rsc, self.instance_count(rsc), self.allows_sharing(rsc))


@dataclass
class InstancePool:
    """
    Per-instance allocation state of one resource class.
    A usage u >= 1 takes floor(u) idle instances; the fractional remainder
    is packed onto one instance whose load stays <= 1.0.
    """
    rsc: str
    count: int
    shareable: bool = True
    used: List[float] = field(default=None)
    owners: List[Set[str]] = field(default=None)

    def __post_init__(self):
        if self.used is None:
            self.used = [0.0] * self.count
        if self.owners is None:
            self.owners = [set() for _ in range(self.count)]

    @property
    def total_used(self) -> float:
        return sum(self.used)

    @property
    def idle_instances(self) -> int:
        return sum(1 for u in self.used if u <= EPS)

    def allocate(self, usage: float, project_id: str) -> Optional[List[Tuple[int, float]]]:
        """Reserve capacity for one job; returns [(instance, share)] or None."""
        placement = self._place(usage, project_id)
        if placement is not None:
            self._commit(placement, project_id)
        return placement

    def _commit(self, placement: List[Tuple[int, float]], project_id: str) -> None:
        for idx, share in placement:
            self.used[idx] += share
            self.owners[idx].add(project_id)

    def _compatible(self, idx: int, project_id: str) -> bool:
        if self.shareable:
            return True
        owners = self.owners[idx]
        return not owners or owners == {project_id}

    def _place(self, usage: float, project_id: str) -> Optional[List[Tuple[int, float]]]:
        if usage <= EPS or usage > self.count + EPS:
            return None
        whole = int(usage + EPS)
        frac = usage - whole
        if frac <= EPS:
            frac = 0.0

        idle = [i for i, u in enumerate(self.used) if u <= EPS]
        if len(idle) < whole:
            return None
        placement = [(i, 1.0) for i in idle[:whole]]
        if not frac:
            return placement

        taken = {i for i, _ in placement}
        # Best fit: the most loaded instance that still has room.
        best = None
        for i, u in enumerate(self.used):
            if i in taken or u + frac > 1.0 + EPS or not self._compatible(i, project_id):
                continue
            if best is None or u > self.used[best]:
                best = i
        if best is None:
            return None
        placement.append((best, frac))
        return placement


def allocate_job(pools: Dict[str, InstancePool], demands: List[Tuple[str, float]], project_id: str) -> bool:
    """
    Reserve every demand of one job, or nothing. Demands on classes without
    a pool (disabled this tick) are not reserved.
    """
    placements = []
    for rsc, usage in demands:
        pool = pools.get(rsc)
        if pool is None:
            continue
        placement = pool._place(usage, project_id)
        if placement is None:
            return False
        placements.append((pool, placement))
    for pool, placement in placements:
        pool._commit(placement, project_id)
    return True
