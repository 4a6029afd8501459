from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from pathlib import Path

from hicoffea.analysis_config import CUTS, D0_SELECTOR_MODES, JET_RECOIL_MODES, RESONANCE_MODES
from hicoffea.period_utils import PERIOD_MAPPING, load_json

logger = logging.getLogger(__name__)

# CLI task name -> (CUTS key, processor modes); the first mode is the default.
TASKS: dict[str, tuple[str, tuple[str, ...]]] = {
    "jet_recoil":  ("jet_recoil",  JET_RECOIL_MODES),
    "d0_selector": ("d0_selector", D0_SELECTOR_MODES),
    "resonances":  ("resonances",  RESONANCE_MODES),
}


def list_tasks() -> list[str]:
    """Return supported task names in the repo's preferred order."""
    return list(TASKS.keys())


def list_periods() -> list[str]:
    """Return supported period strings in the repo's preferred order."""

    # Dict insertion order is intentional here (curated in period_utils).
    return list(PERIOD_MAPPING.keys())


def task_modes(task: str) -> tuple[str, ...]:
    if task not in TASKS:
        raise ValueError(f"Invalid task '{task}'. Must be one of {list_tasks()}.")
    return TASKS[task][1]


def load_cuts(task: str, overrides_path: str | Path | None = None) -> dict:
    """Return the task's default cuts with a JSON file of overrides merged on top.

    Nested dictionaries are merged one level deep, e.g. ``{"cos_theta_frames":
    {"helicity": false}}`` only switches the helicity frame off.
    """
    if task not in TASKS:
        raise ValueError(f"Invalid task '{task}'. Must be one of {list_tasks()}.")
    cuts = copy.deepcopy(CUTS[TASKS[task][0]])
    if overrides_path is None:
        return cuts

    overrides = load_json(str(overrides_path))
    if not isinstance(overrides, Mapping):
        raise ValueError(f"Cut overrides must be a JSON object ({overrides_path}).")

    for key, value in overrides.items():
        if key not in cuts:
            raise ValueError(f"Unknown cut '{key}' for task '{task}' ({overrides_path}).")
        if isinstance(cuts[key], dict) and isinstance(value, Mapping):
            unknown = sorted(set(value) - set(cuts[key]))
            if unknown:
                raise ValueError(f"Unknown keys {unknown} in cut '{key}' for task '{task}' ({overrides_path}).")
            cuts[key].update(value)
        else:
            cuts[key] = value
    logger.info(f"Applied {len(overrides)} cut overrides from {overrides_path}")
    return cuts


def _short_list(items: list[str], *, limit: int = 8) -> str:
    if not items:
        return "(none)"
    if len(items) <= limit:
        return ", ".join(items)
    return ", ".join(items[:limit]) + f", ... (+{len(items) - limit} more)"


def validate_fileset_schema(fileset: object, *, filepath: str | None = None) -> None:
    """Validate that the fileset matches what `bin/run_analysis.py` expects.

    Expected structure:
      {dataset_key: {"files": {path: "O2tree", ...}, "metadata": {...}}, ...}
    """
    where = f" ({filepath})" if filepath else ""

    if not isinstance(fileset, Mapping):
        raise ValueError(f"Fileset must be a JSON object (dict-like){where}.")

    if not fileset:
        raise ValueError(f"Fileset is empty{where}.")

    # Validate a few entries (full validation can be expensive on huge filesets)
    checked = 0
    for ds_key, ds_val in fileset.items():
        checked += 1
        if not isinstance(ds_key, str):
            raise ValueError(f"Fileset dataset key must be a string{where}.")
        if not isinstance(ds_val, Mapping):
            raise ValueError(f"Fileset['{ds_key}'] must be an object{where}.")

        files = ds_val.get("files")
        md = ds_val.get("metadata")
        if not isinstance(files, Mapping):
            raise ValueError(f"Fileset['{ds_key}']['files'] must be an object mapping file→treename{where}.")
        if not isinstance(md, Mapping):
            raise ValueError(f"Fileset['{ds_key}']['metadata'] must be an object{where}.")

        if "sample" not in md:
            raise ValueError(f"Fileset['{ds_key}']['metadata']['sample'] is missing{where}.")

        if checked >= 10:
            break


def filter_by_sample(fileset: Mapping, samples: list[str] | None) -> dict:
    """Keep the datasets whose ``metadata.sample`` is in ``samples`` (all if None)."""
    if not samples:
        return dict(fileset)

    filtered = {
        ds: data
        for ds, data in fileset.items()
        if (data.get("metadata") or {}).get("sample") in samples
    }
    if not filtered:
        available = sorted({(data.get("metadata") or {}).get("sample", "") for data in fileset.values()})
        raise ValueError(
            f"Selection matched 0 datasets for samples {samples}. "
            f"Available sample values (subset): {_short_list(available)}"
        )
    return filtered


def load_and_select_fileset(
    *,
    filepath: Path,
    samples: list[str] | None = None,
    maxfiles: int | None = None,
) -> dict:
    if not filepath.exists():
        raise FileNotFoundError(f"Fileset JSON not found: {filepath}.")

    preprocessed_fileset = load_json(str(filepath))
    validate_fileset_schema(preprocessed_fileset, filepath=str(filepath))

    filtered_fileset = filter_by_sample(preprocessed_fileset, samples)

    if maxfiles is not None:
        from coffea.dataset_tools import max_files
        filtered_fileset = max_files(filtered_fileset, maxfiles)

    return filtered_fileset
