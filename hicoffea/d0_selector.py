"""D0 -> pi K candidate selection for the ALICE 3 barrel.

Every candidate gets a record of status flags; a flag is set when the
candidate passes the topological selection, the conjugate-dependent cuts
of its hypothesis and the flag's PID requirement:

    hf_flag                  candidate built under the D0 -> pi K hypothesis
    d0_no_pid                D0 (pi+ K-) passes topology, no PID
    d0_perfect_pid           ... and the MC truth of the prongs is (pi+, K-)
    d0_tof_pid               ... and |n sigma TOF| < max for pi(pos) and K(neg)
    d0_rich_pid              ... and |n sigma RICH| < max for pi(pos) and K(neg)
    d0_tof_plus_rich_pid     ... and TOF (low p) / TOF+RICH (high p) for both
    d0bar_tof_plus_rich_pid  D0bar (pi- K+) passes topology and TOF+RICH PID

Candidates failing the topology or both conjugate selections keep only
``hf_flag``.
"""

import logging

import awkward as ak
import numpy as np
from coffea import processor
from coffea.analysis_tools import PackedSelection

from hicoffea.analysis_config import (
    CUTS, D0_CUT_COLUMNS, HF_FLAG_D0_TO_PI_K,
    MASS_D0, MASS_KAON, MASS_PION, PDG_KAON, PDG_PION,
    SEL_HF_FLAG, SEL_TOPOLOGICAL, SEL_CONJUGATE,
)
from hicoffea.histograms import (
    D0_CUTFLOW_STEPS, D0_STATUS_NAMES, create_d0_hist, cutflow_hists,
)
from hicoffea.kinematics import cos_theta_star_two_body, invariant_mass_two_body

logger = logging.getLogger(__name__)

# n sigma assigned to a track without the detector
NSIGMA_ABSENT = -5000.0

# Decay-length floor: min(p * slope + offset, per-bin cut)
_DECAY_LENGTH_SLOPE = 0.0066
_DECAY_LENGTH_OFFSET = 0.01
_IP_NORMALISED_MIN = 0.5


def find_bin(edges, x):
    """Index of the half-open bin [e_i, e_i+1) holding ``x``; -1 outside."""
    edges = np.asarray(edges, dtype=np.float64)
    x = np.asarray(x, dtype=np.float64)
    idx = np.searchsorted(edges, x, side="right") - 1
    return np.where((x < edges[0]) | (x >= edges[-1]) | np.isnan(x), -1, idx)


def _col(arr, field):
    return np.asarray(ak.to_numpy(arr[field]), dtype=np.float64)


class _CutTable:
    """Per-pt-bin cut lookup; rows outside the binning are flagged invalid."""

    def __init__(self, cuts, pt):
        self.bins = find_bin(cuts["pt_bins"], pt)
        self.valid = self.bins >= 0
        self._rows = np.asarray(cuts["cuts"], dtype=np.float64)[np.where(self.valid, self.bins, 0)]

    def __getitem__(self, name):
        return self._rows[:, D0_CUT_COLUMNS.index(name)]


def _prong_momenta(cand):
    prong0 = tuple(_col(cand, f"{c}Prong0") for c in ("px", "py", "pz"))
    prong1 = tuple(_col(cand, f"{c}Prong1") for c in ("px", "py", "pz"))
    return prong0, prong1


def d0_masses(cand):
    """Invariant masses under the D0 (pi K) and D0bar (K pi) hypotheses."""
    prong0, prong1 = _prong_momenta(cand)
    mass_d0 = invariant_mass_two_body(prong0, prong1, MASS_PION, MASS_KAON)
    mass_d0bar = invariant_mass_two_body(prong0, prong1, MASS_KAON, MASS_PION)
    return np.asarray(mass_d0), np.asarray(mass_d0bar)


def selection_topological(cand, cuts):
    """Conjugate-independent topological cuts on flat candidates."""
    pt = _col(cand, "pt")
    table = _CutTable(cuts, pt)
    decay_length = _col(cand, "decayLength")
    decay_length_min = np.minimum(
        _col(cand, "p") * _DECAY_LENGTH_SLOPE + _DECAY_LENGTH_OFFSET, table["min_decay_length"]
    )

    return (
        table.valid
        & (pt >= cuts["pt_cand_min"])
        & (pt < cuts["pt_cand_max"])
        & ~(_col(cand, "impactParameterProduct") > table["d0d0"])
        & ~(_col(cand, "cpa") < table["cpa"])
        & ~(_col(cand, "cpaXY") < table["cpa_xy"])
        & ~(_col(cand, "decayLengthXYNormalised") < table["norm_decay_length_xy"])
        & ~(np.abs(_col(cand, "impactParameterNormalised0")) < _IP_NORMALISED_MIN)
        & ~(np.abs(_col(cand, "impactParameterNormalised1")) < _IP_NORMALISED_MIN)
        & ~(decay_length * decay_length < decay_length_min * decay_length_min)
        & ~(decay_length > table["decay_length"])
        & ~(_col(cand, "decayLengthXY") > table["decay_length_xy"])
    )


def selection_conjugate(cand, pion, kaon, cuts):
    """Conjugate-dependent cuts with ``pion``/``kaon`` the tracks under that hypothesis.

    The mass and cos(theta*) hypothesis follows the sign of the pion track:
    a positive pion means D0 (prong0 = pi), a negative one D0bar.
    """
    table = _CutTable(cuts, _col(cand, "pt"))
    prong0, prong1 = _prong_momenta(cand)
    pion_positive = _col(pion, "sign") > 0

    mass_d0, mass_d0bar = d0_masses(cand)
    mass = np.where(pion_positive, mass_d0, mass_d0bar)
    cos_star = np.where(
        pion_positive,
        cos_theta_star_two_body(prong0, prong1, MASS_PION, MASS_KAON, MASS_D0, 1),
        cos_theta_star_two_body(prong0, prong1, MASS_KAON, MASS_PION, MASS_D0, 0),
    )

    return (
        table.valid
        & ~(np.abs(mass - MASS_D0) > table["mass"])
        & ~(_col(pion, "pt") < table["pt_pion"])
        & ~(_col(kaon, "pt") < table["pt_kaon"])
        & ~(np.abs(_col(pion, "dcaXY")) > table["d0_pion"])
        & ~(np.abs(_col(kaon, "dcaXY")) > table["d0_kaon"])
        & ~(np.abs(cos_star) > table["cos_theta_star"])
    )


def nsigma(tracks, detector, species):
    """n sigma of ``species`` ("Pi"/"Ka") in ``detector`` ("tof"/"rich"), absent -> -5000."""
    has_detector = np.asarray(ak.to_numpy(tracks["hasTOF" if detector == "tof" else "hasRICH"]), dtype=bool)
    return np.where(has_detector, _col(tracks, f"{detector}NSigma{species}"), NSIGMA_ABSENT)


def tof_plus_rich(tracks, species, cuts):
    """TOF below the species momentum threshold, TOF+RICH in quadrature above it."""
    threshold = cuts["pid_momentum_pion"] if species == "Pi" else cuts["pid_momentum_kaon"]
    p = _col(tracks, "p")
    tof = nsigma(tracks, "tof", species)
    rich = nsigma(tracks, "rich", species)
    has_rich = np.asarray(ak.to_numpy(tracks["hasRICH"]), dtype=bool)
    low_p = (p < threshold) & (np.abs(tof) < cuts["n_sigma_tof_max"])
    high_p = (p > threshold) & has_rich & (np.hypot(rich, tof) < cuts["n_sigma_tof_combined_max"])
    return low_p | high_p


def _mc_pdg(tracks):
    has_mc = np.asarray(ak.to_numpy(tracks["hasMcParticle"]), dtype=bool)
    return np.where(has_mc, np.asarray(ak.to_numpy(tracks["mcPdgCode"]), dtype=np.int64), 0)


def evaluate_candidates(cand, pos, neg, cuts):
    """Flat status flags plus the intermediate masks used for the cutflow.

    ``cand``, ``pos`` and ``neg`` are flat (one entry per candidate) record
    arrays; ``pos``/``neg`` are the prong0/prong1 tracks.
    """
    hf_flag = (np.asarray(ak.to_numpy(cand["hfflag"]), dtype=np.int64) >> HF_FLAG_D0_TO_PI_K) & 1 == 1
    topological = selection_topological(cand, cuts)
    conj_d0 = selection_conjugate(cand, pos, neg, cuts)
    conj_d0bar = selection_conjugate(cand, neg, pos, cuts)

    is_d0 = hf_flag & topological & conj_d0
    is_d0bar = hf_flag & topological & conj_d0bar

    tof_max = cuts["n_sigma_tof_max"]
    rich_max = cuts["n_sigma_rich_max"]
    status = {
        "hf_flag": hf_flag,
        "d0_no_pid": is_d0,
        "d0_perfect_pid": is_d0 & (_mc_pdg(pos) == PDG_PION) & (_mc_pdg(neg) == -PDG_KAON),
        "d0_tof_pid": is_d0
        & (np.abs(nsigma(pos, "tof", "Pi")) < tof_max)
        & (np.abs(nsigma(neg, "tof", "Ka")) < tof_max),
        "d0_rich_pid": is_d0
        & (np.abs(nsigma(pos, "rich", "Pi")) < rich_max)
        & (np.abs(nsigma(neg, "rich", "Ka")) < rich_max),
        "d0_tof_plus_rich_pid": is_d0 & tof_plus_rich(pos, "Pi", cuts) & tof_plus_rich(neg, "Ka", cuts),
        "d0bar_tof_plus_rich_pid": is_d0bar & tof_plus_rich(neg, "Pi", cuts) & tof_plus_rich(pos, "Ka", cuts),
    }
    steps = {
        SEL_HF_FLAG: hf_flag,
        SEL_TOPOLOGICAL: topological,
        SEL_CONJUGATE: conj_d0 | conj_d0bar,
    }
    return status, steps


def _flat_prongs(candidates, tracks):
    pos = tracks[candidates.prong0Index]
    neg = tracks[candidates.prong1Index]
    return ak.flatten(candidates), ak.flatten(pos), ak.flatten(neg)


def select_d0_candidates(candidates, tracks, cuts=None):
    """Per-event (jagged) status records for the 2-prong candidates.

    ``prong0Index``/``prong1Index`` index the event's ``tracks``.
    """
    cuts = CUTS["d0_selector"] if cuts is None else cuts
    cand, pos, neg = _flat_prongs(candidates, tracks)
    status, _steps = evaluate_candidates(cand, pos, neg, cuts)
    flat = ak.zip({name: status[name].astype(np.int8) for name in D0_STATUS_NAMES})
    return ak.unflatten(flat, ak.num(candidates, axis=1))


class D0Selector(processor.ProcessorABC):
    """Coffea processor booking the selected D0 candidates per status flag.

    Output per dataset: ``d0_candidates`` (process, status, mass, pt) and a
    candidate-level ``cutflow``.
    """
    def __init__(self, cuts=None):
        self._cuts = dict(CUTS["d0_selector"] if cuts is None else cuts)
        n_bins = len(self._cuts["pt_bins"]) - 1
        if len(self._cuts["cuts"]) != n_bins:
            raise ValueError(
                f"Invalid D0 cut table: {len(self._cuts['cuts'])} rows for {n_bins} pt bins."
            )
        self.make_output = lambda: {"d0_candidates": create_d0_hist()}

    def process(self, events):
        output = self.make_output()
        metadata = events.metadata
        dataset = metadata.get("sample", "unknown")
        process_name = metadata.get("process", dataset)

        cand, pos, neg = _flat_prongs(events.HfCand2Prong, events.Track)
        status, steps = evaluate_candidates(cand, pos, neg, self._cuts)
        logger.debug(f"{dataset}: {len(cand)} candidates, {int(status['d0_no_pid'].sum())} D0 selected")

        selections = PackedSelection()
        for name in D0_CUTFLOW_STEPS:
            selections.add(name, steps[name])
        output["cutflow"] = {"candidates_check": cutflow_hists(selections, D0_CUTFLOW_STEPS)}

        mass_d0, mass_d0bar = d0_masses(cand)
        pt = _col(cand, "pt")
        for name in D0_STATUS_NAMES:
            mask = status[name]
            mass = mass_d0bar if name.startswith("d0bar") else mass_d0
            output["d0_candidates"].fill(process=process_name, status=name, mass=mass[mask], pt=pt[mask])

        return {dataset: output}

    def postprocess(self, accumulator):
        return accumulator
