import os
os.environ.setdefault("NUMEXPR_MAX_THREADS", "1")

import warnings
warnings.filterwarnings("ignore", category=FutureWarning, module="coffea.*")
warnings.filterwarnings("ignore", category=RuntimeWarning, message="Missing cross-reference", module="coffea.*")
import argparse
import time
import logging
from datetime import datetime, timezone
from contextlib import contextmanager
from pathlib import Path

from hicoffea.period_utils import get_period_details
from hicoffea.cli_utils import (
    list_periods,
    list_tasks,
    load_and_select_fileset,
    load_cuts,
    task_modes,
)

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

EXECUTOR_CHOICES = ["dask", "futures", "iterative"]


def _format_dask_log_entries(entries):
    """Normalize scheduler/worker log payloads into printable lines."""
    if entries is None:
        return []
    if isinstance(entries, str):
        return entries.splitlines()
    if isinstance(entries, list):
        lines = []
        for entry in entries:
            if isinstance(entry, tuple) and len(entry) == 2:
                lines.append(f"[{entry[0]}] {entry[1]}")
            else:
                lines.append(str(entry))
        return lines
    return [str(entries)]


def _dump_dask_diagnostics(client, *, label, out_dir=Path("logs"), max_entries=300):
    """Write scheduler/worker diagnostics to a local file for post-mortem debugging."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    safe_label = "".join(c if (c.isalnum() or c in ("-", "_")) else "_" for c in label)
    out_file = Path(out_dir) / f"{safe_label}_failure_{stamp}.log"
    lines = [f"UTC timestamp: {datetime.now(timezone.utc).isoformat()}"]

    try:
        info = client.scheduler_info()
        workers = info.get("workers", {})
        lines.append(f"Scheduler workers visible at failure: {len(workers)}")
        if workers:
            lines.append("Workers:")
            lines.extend(f"  - {w}" for w in workers.keys())
    except Exception as e:
        lines.append(f"Failed to query scheduler_info: {e!r}")

    try:
        lines.append("")
        lines.append("=== Scheduler Logs ===")
        lines.extend(_format_dask_log_entries(client.get_scheduler_logs(n=max_entries)))
    except Exception as e:
        lines.append(f"Failed to fetch scheduler logs: {e!r}")

    try:
        lines.append("")
        lines.append("=== Worker Logs ===")
        worker_logs = client.get_worker_logs(n=max_entries)
        if isinstance(worker_logs, dict):
            for worker, entries in worker_logs.items():
                lines.append(f"-- {worker} --")
                lines.extend(_format_dask_log_entries(entries))
                lines.append("")
        else:
            lines.extend(_format_dask_log_entries(worker_logs))
    except Exception as e:
        lines.append(f"Failed to fetch worker logs: {e!r}")

    try:
        out_file.parent.mkdir(parents=True, exist_ok=True)
        out_file.write_text("\n".join(lines) + "\n", encoding="utf-8")
        logging.error("Saved Dask failure diagnostics to %s", out_file)
        return out_file
    except OSError:
        logging.exception("Failed to write Dask diagnostics file.")
        return None


def validate_arguments(args):
    """Check CLI argument combinations are valid before running."""
    modes = task_modes(args.task)
    if args.mode is None:
        args.mode = modes[0]
    if args.mode not in modes:
        logging.error(f"Mode '{args.mode}' is not available for task '{args.task}'. Choose from {list(modes)}.")
        raise ValueError("Invalid mode for task.")
    if args.fileset is None:
        raise ValueError("--fileset is required to run a task.")

    if args.max_workers is not None and args.max_workers < 1:
        raise ValueError("--max-workers must be a positive integer")
    if args.threads_per_worker is not None and args.threads_per_worker < 1:
        raise ValueError("--threads-per-worker must be a positive integer")
    if args.chunksize < 1:
        raise ValueError("--chunksize must be a positive integer")
    if args.maxchunks is not None and args.maxchunks < 1:
        raise ValueError("--maxchunks must be a positive integer")
    if args.maxfiles is not None and args.maxfiles < 1:
        raise ValueError("--maxfiles must be a positive integer")
    if args.executor != "dask" and args.threads_per_worker is not None:
        raise ValueError("--threads-per-worker is only valid with the dask executor")


def build_processor(task, mode, cuts, *, seed=None, sqrt_s=13600.0):
    """Instantiate the coffea processor of a task."""
    if task == "jet_recoil":
        from hicoffea.jet_recoil import JetHadronRecoil
        return JetHadronRecoil(mode=mode, cuts=cuts, seed=seed)
    if task == "d0_selector":
        from hicoffea.d0_selector import D0Selector
        return D0Selector(cuts=cuts)
    if task == "resonances":
        from hicoffea.resonances import HigherMassResonances
        return HigherMassResonances(mode=mode, cuts=cuts, seed=seed, sqrt_s=sqrt_s)
    raise ValueError(f"Invalid task '{task}'. Must be one of {list_tasks()}.")


# ---------------------------------------------------------------------------
# Cluster context managers
# ---------------------------------------------------------------------------

@contextmanager
def _local_cluster(*, n_workers, threads_per_worker):
    """Set up a local Dask cluster, yield client, clean up on exit."""
    from dask.distributed import Client, LocalCluster

    cluster = LocalCluster(n_workers=n_workers, threads_per_worker=threads_per_worker)
    client = Client(cluster)
    try:
        yield client
    finally:
        client.close()
        cluster.close()


# ---------------------------------------------------------------------------
# Processing
# ---------------------------------------------------------------------------

def _make_executor(args, client=None):
    from coffea.processor import DaskExecutor, FuturesExecutor, IterativeExecutor

    if args.executor == "dask":
        return DaskExecutor(client=client, compression=None, retries=3)
    if args.executor == "futures":
        return FuturesExecutor(workers=args.max_workers or 4)
    return IterativeExecutor()


def _process_fileset(args, fileset, processor, *, client=None):
    """Preprocess and process a fileset, return histograms."""
    from coffea.nanoevents import NanoAODSchema
    from coffea.processor import Runner

    NanoAODSchema.warn_missing_crossrefs = False
    NanoAODSchema.error_missing_event_ids = False

    run = Runner(
        executor=_make_executor(args, client),
        chunksize=args.chunksize,
        maxchunks=args.maxchunks,
        # Skip bad files to continue processing with remaining files
        skipbadfiles=True,
        align_clusters=False,
        savemetrics=True,
        schema=NanoAODSchema,
    )

    logging.info("***PREPROCESSING***")
    preproc = run.preprocess(fileset=fileset, treename=args.treename)
    logging.info("Preprocessing completed")

    logging.info("***PROCESSING***")
    hists, _ = run(preproc, treename=args.treename, processor_instance=processor)
    logging.info("Processing completed")
    return hists


def build_parser():
    parser = argparse.ArgumentParser(description="Processing script for the heavy-ion coffea tasks.")
    parser.add_argument("task", nargs="?", default=None, type=str, choices=list_tasks(), help="Task to run.")
    parser.add_argument("period", nargs="?", default=None, type=str, choices=list_periods(), help="Data-taking period.")
    optional = parser.add_argument_group("Optional arguments")
    optional.add_argument("--fileset", type=Path, default=None, help="Fileset JSON to process.")
    optional.add_argument("--mode", type=str, default=None, help="Processor mode (default: the task's first mode, e.g. data).")
    optional.add_argument("--config", type=Path, default=None, help="JSON file of cut overrides for the task.")
    optional.add_argument("--seed", type=int, default=None, help="Base seed of the per-chunk random generators.")
    optional.add_argument("--samples", nargs="*", default=None, help="Only process datasets whose metadata.sample is listed.")
    optional.add_argument("--dir", type=str, default=None, help="Create a new output directory.")
    optional.add_argument("--name", type=str, default=None, help="Append the filenames of the output ROOT files.")
    optional.add_argument("--debug", action='store_true', help="Debug mode (don't save histograms)")
    optional.add_argument("--executor", type=str, default="dask", choices=EXECUTOR_CHOICES, help="coffea executor (default: dask on a LocalCluster).")
    optional.add_argument("--max-workers", type=int, default=None, help="Number of workers (dask default: 3, futures default: 4).")
    optional.add_argument("--threads-per-worker", type=int, default=None, help="Threads per Dask worker (LocalCluster threads_per_worker).")
    optional.add_argument("--chunksize", type=int, default=100_000, help="Number of events per processing chunk (default: 100000).")
    optional.add_argument("--maxchunks", type=int, default=None, help="Max chunks per dataset file (default: all). Use 1 for quick testing.")
    optional.add_argument("--maxfiles", type=int, default=None, help="Max files per dataset (default: all). Use 1 for quick testing.")
    optional.add_argument("--treename", type=str, default="Events", help="Name of the input tree (default: Events).")
    optional.add_argument("--list-tasks", action="store_true", help="Print available tasks and exit.")
    optional.add_argument("--list-periods", action="store_true", help="Print available periods and exit.")
    optional.add_argument("--preflight-only", action="store_true", help="Validate fileset schema, selection and cuts, then exit without processing.")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    # Listing helpers should work without positional args.
    if args.list_tasks:
        print("\n".join(list_tasks()))
        return 0

    if args.list_periods:
        print("\n".join(list_periods()))
        return 0

    if not args.task or not args.period:
        parser.error("Missing required arguments: task and period. Use --list-tasks/--list-periods for discovery.")

    validate_arguments(args)
    system, sqrt_s, period = get_period_details(args.period)
    logging.info(f"Running {args.task} ({args.mode}) on {system} {period}")

    cuts = load_cuts(args.task, args.config)
    processor = build_processor(args.task, args.mode, cuts, seed=args.seed, sqrt_s=sqrt_s)

    logging.info(f"Reading files from {args.fileset}")
    fileset = load_and_select_fileset(
        filepath=args.fileset,
        samples=args.samples,
        maxfiles=args.maxfiles,
    )
    n_files = sum(len(ds.get("files", {})) for ds in fileset.values())
    logging.info(
        "Selected %d dataset(s), %d file(s) after filtering.",
        len(fileset), n_files,
    )

    if args.preflight_only:
        logging.info("Preflight-only requested; exiting before processing.")
        return 0

    # --- Process and save ---
    t0 = time.monotonic()

    if args.executor == "dask":
        n_workers = args.max_workers or 3
        with _local_cluster(n_workers=n_workers, threads_per_worker=args.threads_per_worker or 1) as client:
            try:
                hists = _process_fileset(args, fileset, processor, client=client)
            except Exception:
                _dump_dask_diagnostics(
                    client,
                    label=f"run_analysis_{args.task}_{args.period}_local",
                )
                logging.exception("Local processing failed.")
                raise
    else:
        hists = _process_fileset(args, fileset, processor)

    if not args.debug:
        from hicoffea.save_hists import save_histograms
        save_histograms(hists, args)

    exec_time = time.monotonic() - t0
    logging.info(f"Execution took {exec_time/60:.2f} minutes")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
