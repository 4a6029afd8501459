"""Event-mixing bookkeeping: (vz, multiplicity) bins and same-bin event pairs."""

import logging

import numpy as np

logger = logging.getLogger(__name__)


def _regular_bin(values, n_bins, low, high):
    values = np.asarray(values, dtype=np.float64)
    idx = np.floor((values - low) / (high - low) * n_bins).astype(np.int64)
    outside = (values < low) | (values >= high) | ~np.isfinite(values)
    return np.where(outside, -1, idx)


def mixing_bin_ids(vz, mult, vz_axis, mult_axis):
    """Return a flat bin id per event, or -1 when the event falls outside either axis.

    ``vz_axis`` and ``mult_axis`` are regular binnings ``(n_bins, low, high)``;
    under- and overflow events are not mixed.
    """
    n_vz = int(vz_axis[0])
    vz_bin = _regular_bin(vz, *vz_axis)
    mult_bin = _regular_bin(mult, *mult_axis)
    bin_ids = mult_bin * n_vz + vz_bin
    return np.where((vz_bin < 0) | (mult_bin < 0), -1, bin_ids)


def self_combinations(bin_ids, depth):
    """Pair each event with the next ``depth`` events of the same bin.

    Events keep their input order inside a bin. Returns ``(first, second)``
    index arrays with ``first < second``, sorted by ``(first, second)``.
    Events with a negative bin id are never paired.
    """
    if depth < 1:
        raise ValueError(f"Mixing depth must be a positive integer, got {depth}.")

    bin_ids = np.asarray(bin_ids, dtype=np.int64)
    keep = np.flatnonzero(bin_ids >= 0)
    order = keep[np.argsort(bin_ids[keep], kind="stable")]
    sorted_bins = bin_ids[order]

    firsts, seconds = [], []
    for offset in range(1, depth + 1):
        if offset >= len(order):
            break
        same_bin = sorted_bins[:-offset] == sorted_bins[offset:]
        firsts.append(order[:-offset][same_bin])
        seconds.append(order[offset:][same_bin])

    if not firsts:
        empty = np.zeros(0, dtype=np.int64)
        return empty, empty.copy()

    first = np.concatenate(firsts)
    second = np.concatenate(seconds)
    sort = np.lexsort((second, first))
    logger.debug("Built %d mixed-event pairs from %d binned events", len(first), len(order))
    return first[sort], second[sort]
