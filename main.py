from tqdm import tqdm
import argparse
import logging
import os
import random
import numpy as np
from dataclasses import fields

from config import DRIVER, LOG_DIR, HOST, GPU_TYPES, make_catalog_cfg, make_prefs, load_prefs
from host.emulator import EmulatedHost, EmulatedProjectServer
from host.project import Project
from host.resources import ResourceCatalog
from workloads.synthetic import synthetic_projects, split_shares, default_gpu_classes
from workloads.trace_parser import parse_backlog_csv
from metrics.logger import save_tick_log, save_status_snapshot, save_report_log, usage_shares, append_summary
from metrics.plots import cumulative_usage_plot, debt_plot, shortfall_plot

# ------------------------
# Setup helpers
# ------------------------

def build_prefs(args):
    prefs = load_prefs(args.prefs) if args.prefs else make_prefs()
    if args.time_slice is None:
        return prefs
    values = {f.name: getattr(prefs, f.name) for f in fields(prefs)}
    values["time_slice"] = args.time_slice
    return make_prefs(values)


def build_catalog(args):
    gpu_types = [dict(t) for t in GPU_TYPES]
    if args.ngpus is not None:
        for t in gpu_types:
            t["count"] = args.ngpus
    return make_catalog_cfg(ncpus=args.ncpus, gpu_types=gpu_types)


def synthetic_servers(args, catalog_cfg, rng):
    shares = split_shares(args.shares, args.projects)
    servers = []
    for project, versions in synthetic_projects(args.projects, shares, default_gpu_classes(catalog_cfg)):
        servers.append(EmulatedProjectServer(project, versions, rng=rng))
    print(f"[setup] {args.projects} synthetic project(s), shares={shares}")
    return servers


def backlog_servers(path, rng):
    """Projects and jobs from a backlog CSV; their servers hand out no further work."""
    versions, jobs = parse_backlog_csv(path)
    by_project = {}
    for av in versions:
        by_project.setdefault(av.project_id, []).append(av)
    servers = []
    for pid, avs in sorted(by_project.items()):
        project = Project(project_id=pid, name=pid)
        project.resource_classes.update(av.resource_class for av in avs)
        servers.append(EmulatedProjectServer(project, avs, rng=rng, work_available=0))
    print(f"[setup] Loaded {len(jobs)} job(s) of {len(servers)} project(s) from {path}")
    return servers, jobs


# ------------------------
# Summary
# ------------------------

def fairness_summary(tick_log, servers, interval):
    """Largest gap between a project's usage fraction and its share fraction, per class."""
    shares = {pid: s.project.resource_share for pid, s in servers.items()}
    out = {}
    usage = usage_shares(tick_log, interval)
    for rsc, g in usage.groupby("resource_class"):
        total_share = sum(shares[p] for p in g["project_id"])
        if total_share <= 0:
            continue
        expected = np.array([shares[p] / total_share for p in g["project_id"]])
        gap = np.abs(g["usage_frac"].values - expected)
        out[rsc] = float(gap.max()) if len(gap) else 0.0
    return out


def _save_run_outputs(host, prefix, interval, seed):
    os.makedirs(LOG_DIR, exist_ok=True)
    tick_log = save_tick_log(host.tick_log, os.path.join(LOG_DIR, f"{prefix}_ticks.csv"))
    save_status_snapshot(host.client.status(), os.path.join(LOG_DIR, f"{prefix}_final"))
    reports = save_report_log(host.servers, os.path.join(LOG_DIR, f"{prefix}_reported.csv"))

    gaps = fairness_summary(tick_log, host.servers, interval)
    done = reports[reports["state"] == "done"] if not reports.empty else reports
    summary = {
        "run": prefix,
        "seed": seed,
        "duration": host.env.now,
        "jobs_done": len(done),
        "jobs_error": int((reports["state"] == "error").sum()) if not reports.empty else 0,
        "jobs_late": int(done["late"].sum()) if not done.empty else 0,
        "starts": host.starts,
        "preemptions": host.preemptions,
    }
    for rsc, gap in sorted(gaps.items()):
        summary[f"share_gap_{rsc}"] = gap
    append_summary(summary, os.path.join(LOG_DIR, "summary_runs.csv"))

    cumulative_usage_plot(tick_log, interval, LOG_DIR, prefix=prefix)
    debt_plot(tick_log, LOG_DIR, prefix=prefix)
    shortfall_plot(tick_log, LOG_DIR, prefix=prefix)

    print(f"[run] done={summary['jobs_done']} error={summary['jobs_error']} late={summary['jobs_late']} "
          f"starts={summary['starts']} preemptions={summary['preemptions']}")
    for rsc, gap in sorted(gaps.items()):
        print(f"[run] {rsc}: largest usage/share gap {gap:.3f}")
    print(f"[run] Outputs saved under {LOG_DIR} with prefix {prefix}")


# ------------------------
# Entry point
# ------------------------

def main():
    parser = argparse.ArgumentParser(description="Emulate a volunteer computing host and its scheduler.")
    parser.add_argument("--duration", type=float, default=DRIVER["duration"], help="Emulated seconds to run.")
    parser.add_argument("--seed", type=int, default=DRIVER["seed"])
    parser.add_argument("--projects", type=int, default=DRIVER["num_projects"])
    parser.add_argument("--shares", type=str, default=None, help="Comma-separated resource shares, e.g. 100,50")
    parser.add_argument("--ncpus", type=int, default=HOST["ncpus"])
    parser.add_argument("--ngpus", type=int, default=None, help="Instances of each GPU class (0 disables GPUs).")
    parser.add_argument("--prefs", type=str, default=None, help="YAML preferences file.")
    parser.add_argument("--time_slice", type=float, default=None)
    parser.add_argument("--crash_prob", type=float, default=DRIVER["crash_prob"])
    parser.add_argument("--backlog", type=str, default=None, help="CSV of queued jobs to replay instead of synthetic projects.")
    parser.add_argument("--app_config_dir", type=str, default=None,
                        help="Directory with one subdirectory per project holding its app_config.yaml.")
    parser.add_argument("--log_suffix", type=str, default="", help="Suffix for log files to keep them unique.")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    random.seed(args.seed)
    np.random.seed(args.seed)
    rng = random.Random(args.seed)

    prefs = build_prefs(args)
    catalog_cfg = build_catalog(args)
    catalog = ResourceCatalog.from_config(catalog_cfg)
    print(f"[setup] Host: {catalog.ncpus} CPU(s), GPUs={[(g.name, g.count) for g in catalog.gpus]}")

    backlog = []
    if args.backlog:
        servers, backlog = backlog_servers(args.backlog, rng)
    else:
        servers = synthetic_servers(args, catalog_cfg, rng)

    host = EmulatedHost(catalog, prefs, servers, seed=args.seed, crash_prob=args.crash_prob)
    for job in backlog:
        host.client.registry.add_job(job)
    if args.app_config_dir:
        project_dirs = {pid: os.path.join(args.app_config_dir, pid) for pid in host.client.registry.projects}
        for warning in host.client.read_app_configs(project_dirs):
            print(f"[setup] {warning}")

    step = max(prefs.tick_interval, args.duration / 200.0)
    with tqdm(total=int(args.duration), desc="Emulating host", unit="s") as pbar:
        while host.env.now < args.duration:
            before = host.env.now
            host.run(until=min(args.duration, before + step))
            pbar.update(int(host.env.now) - int(before))

    prefix = f"seed{args.seed}{args.log_suffix}"
    _save_run_outputs(host, prefix, prefs.tick_interval, args.seed)


if __name__ == "__main__":
    main()
