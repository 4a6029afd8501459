import uproot
import logging
from pathlib import Path
from hist import Hist
from coffea.util import save
from hicoffea.period_utils import get_period_details
from typing import Dict

logger = logging.getLogger(__name__)

# ROOT histograms have at most three dimensions
MAX_ROOT_DIM = 3


def _folder_and_hist_names(region, hist_stem: str, category: str = None):
    stem = hist_stem if category is None else f"{hist_stem}_{category}"
    if region is None:
        return "", stem
    return f"{region}", f"{stem}_{region}"


def _sum_cutflow_hists(my_hists, cutflow_keys=("cutflow",)):
    """
    Sum ALL cutflow histograms across datasets, recursively.

    Supports structures like:
      cutflow = {
        "events_check": {"onecut_unweighted": Hist, "cumulative_unweighted": Hist, ...},
        "v0_check":     {...},
      }
    """
    def _merge(dst, src):
        if isinstance(src, Hist):
            if dst is None:
                return src.copy()
            if isinstance(dst, Hist):
                dst += src
                return dst
            raise TypeError("Cutflow key has mixed types (Hist vs dict) across datasets.")
        elif isinstance(src, dict):
            if dst is None or isinstance(dst, Hist):
                dst = {}
            for k, v in src.items():
                dst[k] = _merge(dst.get(k), v)
            return dst
        else:
            return dst

    out = {}
    for dataset_payload in my_hists.values():
        cfmap = None
        for k in cutflow_keys:
            candidate = dataset_payload.get(k)
            if isinstance(candidate, dict):
                cfmap = candidate
                break
        if not isinstance(cfmap, dict):
            continue
        for k, v in cfmap.items():
            out[k] = _merge(out.get(k), v)
    return out


def _save_cutflows(root_file, cutflow_summed: Dict[str, dict], prefix: str):
    """
    Recursively write all cutflow histograms while avoiding duplicate writes.
    If a given path is encountered twice, the second write is skipped to prevent ROOT ;2 cycles.
    """
    seen = set()

    def _recurse(prefix, obj):
        if isinstance(obj, Hist):
            if prefix not in seen:
                root_file[prefix] = obj
                seen.add(prefix)
            return
        if isinstance(obj, dict):
            for name, child in obj.items():
                _recurse(f"{prefix}/{name}", child)

    _recurse(prefix, cutflow_summed)


def _category_axes(h):
    return [ax.name for ax in h.axes if ax.name != "process" and ax.traits.discrete and not ax.traits.ordered]


def split_hists_by_region(summed_hists, *, sum_over_process=True):
    """Slice every histogram into one entry per region and per extra category.

    Returns ``{(region, category, hist_name): Hist}``; ``region`` and
    ``category`` are None for histograms without those axes.
    """
    out = {}
    for hist_name, h in summed_hists.items():
        if sum_over_process and any(ax.name == "process" for ax in h.axes):
            keep = [ax.name for ax in h.axes if ax.name != "process"]
            h = h.project(*keep)

        categories = _category_axes(h)
        extra = [name for name in categories if name != "region"]
        if len(extra) > 1:
            logger.error(f"Histogram '{hist_name}' has more than one category axis besides region: {extra}")
            continue

        regions = list(h.axes["region"]) if "region" in categories else [None]
        values = list(h.axes[extra[0]]) if extra else [None]
        for reg in regions:
            for value in values:
                index = {}
                if reg is not None:
                    index["region"] = reg
                if value is not None:
                    index[extra[0]] = value
                out[(reg, value, hist_name)] = h[index] if index else h
    return out


def output_directory(args):
    system, _sqrt_s, period = get_period_details(args.period)
    working_dir = Path("results")

    if getattr(args, 'dir', None):
        return working_dir / 'rootfiles' / system / period / args.dir
    return working_dir / 'rootfiles' / system / period


def save_histograms(histograms, args):
    """Write summed histograms and cutflows of a run to a ROOT file.

    Histograms with more numeric axes than ROOT supports go to a companion
    ``.coffea`` file next to it.
    """
    output_dir = output_directory(args)
    output_dir.mkdir(parents=True, exist_ok=True)

    if getattr(args, 'name', None):
        filename_prefix = f"{args.task}_{args.name}"
    else:
        filename_prefix = f"{args.task}"
    output_file = output_dir / f"{filename_prefix}_{args.mode}.root"

    summed_hist = sum_hists(histograms)
    split_histograms_dict = split_hists_by_region(summed_hist, sum_over_process=True)
    cutflow_summed = _sum_cutflow_hists(histograms, cutflow_keys=("cutflow",))

    high_dim = {}
    with uproot.recreate(output_file) as root_file:
        for (region, category, hist_name), hist_obj in split_histograms_dict.items():
            folder, hname = _folder_and_hist_names(region, hist_name, category)
            if hist_obj.ndim > MAX_ROOT_DIM:
                high_dim[f"{folder}/{hname}" if folder else hname] = hist_obj
                continue
            root_file[f"/{folder}/{hname}" if folder else f"/{hname}"] = hist_obj

        _save_cutflows(root_file, cutflow_summed, "/cutflow")

    logger.info(f"Histograms saved to {output_file}.")

    if high_dim:
        coffea_file = output_file.with_suffix(".coffea")
        save(high_dim, str(coffea_file))
        logger.info(f"{len(high_dim)} histograms with more than {MAX_ROOT_DIM} axes saved to {coffea_file}.")
    return output_file


def sum_hists(my_hists):
    if not my_hists:
        raise ValueError("No histogram data provided.")

    original_histograms = list(my_hists.values())[0]
    sum_histograms = {
        key: Hist(*original_histograms[key].axes,
            storage=original_histograms[key].storage_type())
        for key in original_histograms
        if isinstance(original_histograms[key], Hist)
    }

    for dataset_info in my_hists.values():
        for key, value in dataset_info.items():
            if isinstance(value, Hist):
                if key in sum_histograms:
                    sum_histograms[key] += value
                else:
                    sum_histograms[key] = value.copy()

    return sum_histograms
