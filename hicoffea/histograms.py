"""Histogram definitions, creation, and filling for the hicoffea tasks.

Each spec is: (name, axes, has_region)
  - ``axes`` are keys of the task's axis table ``{axis_name: (bins, label)}``;
    the histogram's numeric axes carry these names, so fills are keyword
    based: ``h.fill(process=..., jet_pt=..., dphi=...)``.
  - ``bins`` is a tuple ``(n, low, high)`` for a regular axis or a list of
    edges for a variable one.
  - ``has_region`` adds a ``region`` StrCategory (e.g. ``tt_sig``/``tt_ref``).

All histograms carry a growing ``process`` category and ``Weight`` storage.
"""

import logging

import awkward as ak
import hist
import numpy as np

from hicoffea.analysis_config import (
    D0_PT_BINS, TWO_PI,
    SEL_HF_FLAG, SEL_TOPOLOGICAL, SEL_CONJUGATE,
)

logger = logging.getLogger(__name__)


# --- Jet-hadron recoil ------------------------------------------------------------

def jet_recoil_axes(cuts):
    """Axis table for the recoil task; jet pt ranges follow ``hist_jet_pt``."""
    hpt = cuts["hist_jet_pt"]
    return {
        "vertex_z":       ((60, -12, 12),               r"$z_{vtx}$ [cm]"),
        "track_pt":       ((hpt, 0, hpt),               r"$p_{T}$ of the track [GeV]"),
        "track_eta":      ((40, -1, 1),                 r"$\eta$ of the track"),
        "track_phi":      ((40, 0, TWO_PI),             r"$\phi$ of the track"),
        "n_trig":         ((2, 0, 2),                   r"Trigger class (0: ref, 1: sig)"),
        "n_tt_ref":       ((10, 0, 10),                 r"Number of reference TT per event"),
        "n_tt_sig":       ((5, 0, 5),                   r"Number of signal TT per event"),
        "jet_pt":         ((hpt, 0, hpt),               r"$p_{T}$ of the jet [GeV]"),
        "jet_pt_corr":    ((hpt + 20, -20, hpt),        r"$p_{T} - \rho A$ of the jet [GeV]"),
        "jet_eta":        ((cuts["jet_eta_bins"], -1, 1),          r"$\eta$ of the jet"),
        "jet_phi":        ((cuts["jet_phi_bins"], 0, TWO_PI),      r"$\phi$ of the jet"),
        "rho_area":       ((cuts["jet_rho_area_bins"], 0, 30),     r"$\rho A$ [GeV]"),
        "dphi":           ((52, 0, np.pi),              r"$|\Delta\phi|$(jet, TT)"),
        "jet_pt_det":     ((hpt, 0, hpt),               r"$p_{T}$ of the detector-level jet [GeV]"),
        "jet_pt_part":    ((hpt, 0, hpt),               r"$p_{T}$ of the particle-level jet [GeV]"),
        "pt_resolution":  ((90, -1, 2),                 r"$(p_{T}^{det} - p_{T}^{part}) / p_{T}^{part}$"),
        "phi_resolution": ((100, -1, 1),                r"$\phi^{det} - \phi^{part}$"),
    }


JET_RECOIL_HIST_SPECS = [
    ("vertex_z",                ("vertex_z",),                                   False),
    ("track_pt_eta_phi",        ("track_pt", "track_eta", "track_phi"),          False),
    ("n_trig",                  ("n_trig",),                                     False),
    ("tt_ref_per_event",        ("n_tt_ref",),                                   False),
    ("tt_sig_per_event",        ("n_tt_sig",),                                   False),
    ("jet_pt_eta_phi_rho_area", ("jet_pt", "jet_eta", "jet_phi", "rho_area"),    False),
    ("dphi_jet_pt_corr",        ("dphi", "jet_pt_corr"),                         True),
    ("dphi_jet_pt",             ("dphi", "jet_pt"),                              True),
    ("dphi_jet_pt_rho_area",    ("dphi", "jet_pt", "rho_area"),                  True),
    ("recoil_jet_pt_corr",      ("jet_pt_corr",),                                True),
    ("recoil_jet_pt",           ("jet_pt",),                                     True),
]

# Particle level: same set with a ``_part`` suffix; particles replace tracks.
JET_RECOIL_PART_HIST_SPECS = [
    ("vertex_z",                ("vertex_z",),                                   False),
    ("part_pt_eta_phi",         ("track_pt", "track_eta", "track_phi"),          False),
] + [
    (f"{name}_part", axes, has_region)
    for name, axes, has_region in JET_RECOIL_HIST_SPECS
    if name not in ("vertex_z", "track_pt_eta_phi")
]

JET_RECOIL_MATCHED_HIST_SPECS = [
    ("jet_pt_det_vs_part", ("jet_pt_det", "jet_pt_part"),     False),
    ("jet_pt_resolution",  ("pt_resolution", "jet_pt_part"),  False),
    ("jet_phi_resolution", ("phi_resolution", "jet_pt_part"), False),
    ("fake_jets_pt",       ("jet_pt_det",),                   False),
    ("missed_jets_pt",     ("jet_pt_part",),                  False),
]


# --- D0 candidate selection -------------------------------------------------------

D0_STATUS_NAMES = [
    "hf_flag",
    "d0_no_pid",
    "d0_perfect_pid",
    "d0_tof_pid",
    "d0_rich_pid",
    "d0_tof_plus_rich_pid",
    "d0bar_tof_plus_rich_pid",
]

D0_AXES = {
    "mass": ((160, 1.46, 2.26), r"$m_{\pi K}$ [GeV]"),
    "pt":   (list(D0_PT_BINS),  r"$p_{T}$ of the D$^{0}$ candidate [GeV]"),
}

D0_HIST_SPECS = [
    ("d0_candidates", ("mass", "pt"), False),
]

D0_CUTFLOW_STEPS = [SEL_HF_FLAG, SEL_TOPOLOGICAL, SEL_CONJUGATE]


def create_d0_hist():
    """(process, status, mass, pt) histogram of the selected candidates."""
    h = (
        hist.Hist.new
        .StrCat([], name="process", label="Process", growth=True)
        .StrCat(D0_STATUS_NAMES, name="status", label="Selection status")
    )
    for axis_name in ("mass", "pt"):
        h = _add_axis(h, axis_name, *D0_AXES[axis_name])
    return h.Weight()


# --- K0S K0S resonances ----------------------------------------------------------

def resonance_axes(cuts):
    """Axis table for the resonance task; analysis binnings come from ``cuts``."""
    ks_mass = tuple(cuts["ks_mass_bins"])
    return {
        "multiplicity":       (list(cuts["mult_bins"]),  r"Multiplicity percentile"),
        "pt":                 (tuple(cuts["pt_bins"]),   r"$p_{T}$ [GeV]"),
        "mass":               (tuple(cuts["mass_bins"]), r"$m_{K^{0}_{S}K^{0}_{S}}$ [GeV]"),
        "cos_theta":          (tuple(cuts["cos_bins"]),  r"cos$\theta^{*}$"),
        "phi":                (tuple(cuts["phi_bins"]),  r"$\phi^{*}$"),
        "vertex_z":           ((60, -15, 15),            r"$z_{vtx}$ [cm]"),
        "mult_percentile":    ((150, 0, 150),            r"Multiplicity percentile"),
        "ks_mass":            (ks_mass,                  r"$m_{\pi\pi}$ [GeV]"),
        "ks_mass_1":          (ks_mass,                  r"$m_{\pi\pi}$ of the first K$^{0}_{S}$ [GeV]"),
        "ks_mass_2":          (ks_mass,                  r"$m_{\pi\pi}$ of the second K$^{0}_{S}$ [GeV]"),
        "ks_mass_wide":       ((100, 0.2, 0.8),          r"$m_{\pi\pi}$ [GeV]"),
        "lambda_mass":        ((100, 0.9, 1.5),          r"$m_{p\pi}$ [GeV]"),
        "dca_v0_daughters":   ((60, -3, 3),              r"DCA between V0 daughters [cm]"),
        "v0_cos_pa":          ((100, 0.96, 1.1),         r"V0 cos(PA)"),
        "v0_lifetime":        ((100, 0, 50),             r"$c\tau$ [cm]"),
        "angular_separation": ((200, 0, 4),              r"$\sqrt{\Delta\eta^{2} + \Delta\phi^{2}}$"),
        "n_ks":               ((15, -0.5, 14.5),         r"Number of selected K$^{0}_{S}$"),
        "inner_p":            (tuple(cuts["pt_bins"]),   r"$p$ at the TPC inner wall [GeV]"),
        "nsigma_pi":          ((100, -5, 5),             r"n$\sigma^{TPC}_{\pi}$"),
        "mc_mass":            (tuple(cuts["mass_bins"]), r"$m$ [GeV]"),
        "rapidity":           ((100, -1, 1),             r"$y$"),
        "eta":                ((150, -1.5, 1.5),         r"$\eta$"),
        "mc_phi":             ((70, 0, 7),               r"$\phi$"),
    }


_POLARIZATION_AXES = ("multiplicity", "pt", "mass", "cos_theta", "phi")

RESONANCE_HIST_SPECS = [
    ("glue_inv_mass_ds",  _POLARIZATION_AXES, False),
    ("glue_inv_mass_rot", _POLARIZATION_AXES, False),
    ("glue_inv_mass_me",  _POLARIZATION_AXES, False),
    ("n_ks_produced",     ("n_ks",),          False),
]

RESONANCE_QA_EVENT_SPECS = [
    ("vertex_z",     ("vertex_z",),        False),
    ("multiplicity", ("mult_percentile",), False),
]

RESONANCE_QA_V0_SPECS = [
    ("mass_k0s_before",         ("ks_mass", "pt"),          False),
    ("mass_k0s_selected",       ("ks_mass", "pt"),          False),
    ("mass_correlation_before", ("ks_mass_1", "ks_mass_2"), False),
    ("dca_v0_daughters",        ("dca_v0_daughters",),      False),
    ("v0_cos_pa",               ("v0_cos_pa",),             False),
    ("v0_lifetime",             ("v0_lifetime",),           False),
    ("angular_separation",      ("angular_separation",),    False),
]

RESONANCE_CORRELATION_SPECS = [
    ("mass_lambda_kshort_before", ("ks_mass_wide", "lambda_mass"), False),
    ("mass_lambda_kshort_after",  ("ks_mass_wide", "lambda_mass"), False),
]

RESONANCE_QA_PID_SPECS = [
    ("nsigma_pos_pion_before", ("inner_p", "nsigma_pi"), False),
    ("nsigma_pos_pion_after",  ("inner_p", "nsigma_pi"), False),
    ("nsigma_neg_pion_before", ("inner_p", "nsigma_pi"), False),
    ("nsigma_neg_pion_after",  ("inner_p", "nsigma_pi"), False),
]

RESONANCE_GEN_SPECS = [
    ("gen_resonance",   ("multiplicity", "pt", "cos_theta"), False),
    ("gen_resonance_2", ("multiplicity", "pt", "cos_theta"), False),
    ("gen_mass",        ("mc_mass",),                        False),
    ("gen_mass_2",      ("mc_mass",),                        False),
    ("gen_rapidity",    ("rapidity",),                       False),
    ("gen_rapidity_2",  ("rapidity",),                       False),
    ("gen_eta",         ("eta",),                            False),
    ("gen_eta_2",       ("eta",),                            False),
    ("gen_phi",         ("mc_phi",),                         False),
    ("gen_phi_2",       ("mc_phi",),                         False),
]

RESONANCE_REC_SPECS = [
    ("rec_resonance_pt1",       ("multiplicity", "pt", "mass", "cos_theta"), False),
    ("rec_resonance_pt2",       ("multiplicity", "pt", "mass", "cos_theta"), False),
    ("rec_rapidity",            ("rapidity",),                               False),
    ("rec_rapidity_2",          ("rapidity",),                               False),
    ("rec_eta",                 ("eta",),                                    False),
    ("rec_eta_2",               ("eta",),                                    False),
    ("rec_phi",                 ("mc_phi",),                                 False),
    ("rec_phi_2",               ("mc_phi",),                                 False),
    ("rec_multiplicity",        ("mult_percentile",),                        False),
    ("mc_mult_after_event_sel", ("mult_percentile",),                        False),
]


def resonance_specs(mode, cuts):
    """Return the booking list for a resonance ``mode`` honouring the QA switches."""
    if mode == "gen":
        return list(RESONANCE_GEN_SPECS)
    if mode == "rec":
        specs = list(RESONANCE_REC_SPECS)
    else:
        specs = list(RESONANCE_HIST_SPECS)
        if cuts["qa_events"]:
            specs += RESONANCE_QA_EVENT_SPECS
    if cuts["qa_v0"]:
        specs += RESONANCE_QA_V0_SPECS
    if cuts["correlation_2d"]:
        specs += RESONANCE_CORRELATION_SPECS
    if cuts["qa_pid"]:
        specs += RESONANCE_QA_PID_SPECS
    return specs


# --- Booking and filling ---------------------------------------------------------

def _add_axis(h, name, bins, label):
    if isinstance(bins, tuple):
        n, low, high = bins
        return h.Reg(int(n), float(low), float(high), name=name, label=label)
    return h.Var([float(edge) for edge in bins], name=name, label=label)


def create_hist(axes, axis_table, region=False):
    """Create a single histogram with the standard categorical axes.

    ``axes`` are names in ``axis_table``; ``region`` adds the analysis-region
    category after ``process``.
    """
    h = hist.Hist.new.StrCat([], name="process", label="Process", growth=True)
    if region:
        h = h.StrCat([], name="region", label="Analysis Region", growth=True)
    for axis_name in axes:
        bins, label = axis_table[axis_name]
        h = _add_axis(h, axis_name, bins, label)
    return h.Weight()


def book_histograms(specs, axis_table):
    """Return ``{name: Hist}`` for a spec table."""
    return {
        name: create_hist(axes, axis_table, region=has_region)
        for name, axes, has_region in specs
    }


def _is_jagged(values):
    return isinstance(values, ak.Array) and values.ndim > 1


def _to_numpy(values):
    if isinstance(values, ak.Array):
        return ak.to_numpy(values)
    return np.asarray(values)


def fill_hist(h, process, values, weight=None, region=None):
    """Fill ``h`` with the columns in ``values`` (axis name -> array).

    Jagged inputs are flattened; per-event arrays (including ``weight``) are
    broadcast to the jagged structure first.
    """
    names = list(values)
    arrays = [values[name] for name in names]
    if weight is not None:
        arrays.append(weight)

    if any(_is_jagged(a) for a in arrays):
        arrays = [ak.flatten(a, axis=None) for a in ak.broadcast_arrays(*arrays)]

    if weight is not None:
        weight = _to_numpy(arrays.pop())

    fill_args = {name: _to_numpy(a) for name, a in zip(names, arrays)}
    fill_args["process"] = process
    if region is not None:
        fill_args["region"] = region
    if weight is not None:
        fill_args["weight"] = weight
    h.fill(**fill_args)


def _relabel_cutflow(h_raw, cut_names):
    """Convert an Integer-axis cutflow histogram to one with StrCategory axis.

    This embeds the cut names as bin labels in the ROOT file.
    """
    h = hist.Hist(
        hist.axis.StrCategory(cut_names, name="cut"),
        storage=h_raw.storage_type(),
    )
    h.view(flow=False)[...] = h_raw.view(flow=False)
    return h


def cutflow_hists(selections, steps, weights=None):
    """Build ``onecut`` / ``cumulative`` cutflows for a cumulative chain of steps.

    Weighted variants are produced only when a coffea ``Weights`` object is
    given; unweighted variants are always produced.
    """
    cut_names = ["no_cuts"] + list(steps)
    cf = selections.cutflow(*steps, weights=weights)

    bucket = {}
    if weights is not None:
        h_onecut_raw, h_cum_raw, _labels = cf.yieldhist(weighted=True)
        bucket["onecut"] = _relabel_cutflow(h_onecut_raw, cut_names)
        bucket["cumulative"] = _relabel_cutflow(h_cum_raw, cut_names)

    h_onecut_unw, h_cum_unw, _labels = cf.yieldhist(weighted=False)
    bucket["onecut_unweighted"] = _relabel_cutflow(h_onecut_unw, cut_names)
    bucket["cumulative_unweighted"] = _relabel_cutflow(h_cum_unw, cut_names)
    return bucket
