"""Collision, track and run-condition-table selections shared by the tasks."""

import logging

import numpy as np

from hicoffea.analysis_config import RCT_FLAG_BITS, RCT_LABELS

logger = logging.getLogger(__name__)

EVENT_SELECTIONS = ("sel8", "sel7", "none")
TRACK_SELECTIONS = ("globalTracks", "qualityTracks", "none")

# Detectors with a "limited acceptance, MC reproducible" flag.
_LIMITED_ACCEPTANCE = {
    "EMC": "EMCLimAccMCRepr",
    "ITS": "ITSLimAccMCRepr",
    "MCH": "MCHLimAccMCRepr",
    "MFT": "MFTLimAccMCRepr",
    "MID": "MIDLimAccMCRepr",
    "TOF": "TOFLimAccMCRepr",
    "TPC": "TPCLimAccMCRepr",
}


def validate_event_selection(ev_sel):
    if ev_sel not in EVENT_SELECTIONS:
        raise ValueError(f"Invalid event selection '{ev_sel}'. Must be one of {EVENT_SELECTIONS}.")
    return ev_sel


def validate_track_selection(trk_sel):
    if trk_sel not in TRACK_SELECTIONS:
        raise ValueError(f"Invalid track selection '{trk_sel}'. Must be one of {TRACK_SELECTIONS}.")
    return trk_sel


def collision_selection(collision, ev_sel):
    """Boolean per-event mask of the trigger/event-selection predicate."""
    validate_event_selection(ev_sel)
    if ev_sel == "none":
        return np.ones(len(collision), dtype=bool)
    return np.asarray(collision[ev_sel], dtype=bool)


def track_selection(tracks, trk_sel):
    """Boolean (jagged) per-track mask of the track-quality predicate."""
    validate_track_selection(trk_sel)
    if trk_sel == "globalTracks":
        return tracks.isGlobalTrack
    if trk_sel == "qualityTracks":
        return tracks.isQualityTrack
    return tracks.pt == tracks.pt


def rct_mask(label, limited_acceptance_as_bad=True, zdc_check=False):
    """Bitmask of the quality flags that must be clear for ``label``.

    Limited-acceptance flags of the detectors in the label count as bad
    when ``limited_acceptance_as_bad``; ZDC is only checked on request.
    """
    if label not in RCT_LABELS:
        raise ValueError(f"Invalid RCT label '{label}'. Must be one of {sorted(RCT_LABELS)}.")

    flags = list(RCT_LABELS[label])
    if limited_acceptance_as_bad:
        for flag in RCT_LABELS[label]:
            detector = flag[:3]
            if detector in _LIMITED_ACCEPTANCE:
                flags.append(_LIMITED_ACCEPTANCE[detector])
    if zdc_check:
        flags.append("ZDCBad")

    mask = 0
    for flag in set(flags):
        mask |= 1 << RCT_FLAG_BITS[flag]
    return mask


def rct_good(collision, mask):
    """True where none of the bits in ``mask`` are set in ``rctFlags``."""
    flags = np.asarray(collision.rctFlags, dtype=np.int64)
    return (flags & mask) == 0
