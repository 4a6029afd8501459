"""Jet-hadron recoil processor.

High-level flow per chunk:
    1) Select collisions (vertex z, time-frame border, trigger selection).
    2) Decide per event whether it is a signal- or reference-trigger event.
    3) Pick one trigger track (TT) at random among the candidates in the
       event's TT window.
    4) Correlate every jet of the configured radius with the TT in azimuth
       and fill the delta-phi / recoil-jet spectra per trigger class.

Modes:
    - ``data`` / ``mcd`` / ``mcd_weighted``: reconstructed tracks and jets.
    - ``mcp`` / ``mcp_weighted``: charged physical-primary generator particles
      and particle-level jets; no background subtraction (rho*A -> A).
    - ``matched`` / ``matched_weighted``: detector-to-particle jet response,
      fake and missed jets.

Weighted modes take the event weight from ``McCollision.weight`` and reject
jets above ``pthat_max * pTHat``, with pTHat = 10 / weight^(1/exponent).
"""

import logging

import awkward as ak
import numpy as np
from coffea import processor
from coffea.analysis_tools import PackedSelection, Weights

from hicoffea.analysis_config import (
    CUTS, JET_RECOIL_MODES, SEL_VERTEX_Z, SEL_NO_TF_BORDER, SEL_EVENT_SELECTION,
)
from hicoffea.event_selection import (
    collision_selection, track_selection,
    validate_event_selection, validate_track_selection,
)
from hicoffea.histograms import (
    JET_RECOIL_HIST_SPECS, JET_RECOIL_PART_HIST_SPECS, JET_RECOIL_MATCHED_HIST_SPECS,
    book_histograms, cutflow_hists, fill_hist, jet_recoil_axes,
)
from hicoffea.kinematics import chunk_rng, delta_phi

logger = logging.getLogger(__name__)

# Warn-once cache (per worker process) to avoid log spam.
_WARN_ONCE: set[str] = set()


def _as_bool(mask):
    if isinstance(mask, ak.Array):
        mask = ak.to_numpy(mask)
    return np.asarray(mask, dtype=bool)


def pt_hat(weight, exponent):
    """Hard-scattering scale estimated from the generator weight."""
    weight = np.asarray(weight, dtype=np.float64)
    if np.any(weight <= 0):
        raise ValueError("pT-hat needs strictly positive MC event weights.")
    return 10.0 / np.power(weight, 1.0 / exponent)


def choose_trigger(candidate_phi, rng):
    """Pick one TT per event uniformly among the candidates.

    Returns ``(n_tt, phi_tt)``; ``phi_tt`` is 0 where an event has no TT.
    """
    n_tt = ak.to_numpy(ak.num(candidate_phi, axis=1))
    i_trig = np.minimum(np.floor(rng.uniform(size=len(n_tt)) * n_tt), np.maximum(n_tt - 1, 0))
    picked = candidate_phi[ak.local_index(candidate_phi, axis=1) == i_trig.astype(np.int64)]
    phi_tt = ak.to_numpy(ak.fill_none(ak.firsts(picked), 0.0))
    return n_tt, phi_tt


class JetHadronRecoil(processor.ProcessorABC):
    """Coffea processor for TT-triggered recoil-jet correlations.

    Expected ``events.metadata`` keys (typical):
      - ``sample``: dataset identifier string
      - ``process``: histogram process label (defaults to ``sample``)
      - ``filename`` / ``entrystart``: provided by coffea, used to seed the chunk RNG

    Parameters
    - ``mode``: one of ``JET_RECOIL_MODES``.
    - ``cuts``: task configuration (defaults to ``CUTS["jet_recoil"]``).
    - ``seed``: base seed of the per-chunk random generators (None: fresh entropy).
    """
    def __init__(self, mode="data", cuts=None, seed=None):
        if mode not in JET_RECOIL_MODES:
            raise ValueError(f"Invalid mode '{mode}'. Must be one of {JET_RECOIL_MODES}.")
        self._mode = mode
        self._level = mode.split("_")[0]
        self._weighted = mode.endswith("_weighted")
        self._cuts = dict(CUTS["jet_recoil"] if cuts is None else cuts)
        self._seed = seed
        validate_event_selection(self._cuts["ev_sel"])
        validate_track_selection(self._cuts["trk_sel"])

        if self._level == "mcp":
            specs = JET_RECOIL_PART_HIST_SPECS
        elif self._level == "matched":
            specs = JET_RECOIL_MATCHED_HIST_SPECS
        else:
            specs = JET_RECOIL_HIST_SPECS
        axes = jet_recoil_axes(self._cuts)
        self.make_output = lambda: book_histograms(specs, axes)

    @property
    def mode(self):
        return self._mode

    def event_selections(self, events):
        """PackedSelection of the collision-level cuts for this mode."""
        cuts = self._cuts
        selections = PackedSelection()
        if self._level == "mcp":
            selections.add(SEL_VERTEX_Z, _as_bool(np.abs(events.McCollision.posZ) < cuts["vertex_z_cut"]))
            return selections, [SEL_VERTEX_Z]

        collision = events.Collision
        selections.add(SEL_VERTEX_Z, _as_bool(np.abs(collision.posZ) < cuts["vertex_z_cut"]))
        selections.add(SEL_NO_TF_BORDER, _as_bool(collision.noTimeFrameBorder))
        selections.add(SEL_EVENT_SELECTION, collision_selection(collision, cuts["ev_sel"]))
        return selections, [SEL_VERTEX_Z, SEL_NO_TF_BORDER, SEL_EVENT_SELECTION]

    def build_event_weights(self, events):
        """Unit weights, or ``McCollision.weight`` in the weighted modes."""
        weights = Weights(len(events))
        if self._weighted:
            weights.add("mc_weight", np.asarray(ak.to_numpy(events.McCollision.weight), dtype=np.float64))
        else:
            weights.add("unit", np.ones(len(events), dtype=np.float64))
        return weights

    def select_tracks(self, tracks):
        cuts = self._cuts
        mask = (
            (tracks.pt > cuts["trk_pt_min"])
            & (tracks.pt < cuts["trk_pt_max"])
            & (np.abs(tracks.eta) < cuts["trk_eta_cut"])
            & track_selection(tracks, cuts["trk_sel"])
        )
        return tracks[mask]

    def select_jets(self, jets):
        return jets[jets.r == int(round(self._cuts["jet_r"] * 100))]

    def _trigger_candidates(self, tracks, is_sig):
        """Tracks inside the TT window of each event's trigger class."""
        sig_lo, sig_hi = self._cuts["tt_sig"]
        ref_lo, ref_hi = self._cuts["tt_ref"]
        lo = np.where(is_sig, sig_lo, ref_lo)
        hi = np.where(is_sig, sig_hi, ref_hi)
        return tracks[(tracks.pt > lo) & (tracks.pt < hi)]

    def fill_histograms(self, output, process_name, tracks, jets, rho_area, weight, rng, suffix=""):
        """Fill the TT and recoil histograms of one level.

        ``rho_area`` is the per-jet background estimate; the corrected pt is
        ``pt - rho_area`` except at particle level where it equals pt.
        """
        cuts = self._cuts
        n_events = len(weight)
        is_sig = rng.uniform(size=n_events) < cuts["frac_sig"]

        track_hist = "part_pt_eta_phi" if suffix else "track_pt_eta_phi"
        fill_hist(
            output[track_hist], process_name,
            {"track_pt": tracks.pt, "track_eta": tracks.eta, "track_phi": tracks.phi},
            weight=weight,
        )

        n_tt, phi_tt = choose_trigger(self._trigger_candidates(tracks, is_sig).phi, rng)
        has_tt = n_tt > 0

        fill_hist(
            output[f"n_trig{suffix}"], process_name,
            {"n_trig": np.where(is_sig, 1.5, 0.5)[has_tt]},
            weight=weight[has_tt],
        )
        sig_tt = has_tt & is_sig
        ref_tt = has_tt & ~is_sig
        fill_hist(output[f"tt_sig_per_event{suffix}"], process_name, {"n_tt_sig": n_tt[sig_tt]}, weight=weight[sig_tt])
        fill_hist(output[f"tt_ref_per_event{suffix}"], process_name, {"n_tt_ref": n_tt[ref_tt]}, weight=weight[ref_tt])

        fill_hist(
            output[f"jet_pt_eta_phi_rho_area{suffix}"], process_name,
            {"jet_pt": jets.pt, "jet_eta": jets.eta, "jet_phi": jets.phi, "rho_area": rho_area},
            weight=weight,
        )

        jet_pt_corr = jets.pt if suffix else jets.pt - rho_area
        for region, in_class in (("tt_sig", sig_tt), ("tt_ref", ref_tt)):
            jets_r = jets[in_class]
            dphi = delta_phi(jets_r.phi, phi_tt[in_class])
            corr_r = jet_pt_corr[in_class]
            rho_area_r = rho_area[in_class]
            w_r = weight[in_class]

            fill_hist(output[f"dphi_jet_pt_corr{suffix}"], process_name,
                      {"dphi": dphi, "jet_pt_corr": corr_r}, weight=w_r, region=region)
            fill_hist(output[f"dphi_jet_pt{suffix}"], process_name,
                      {"dphi": dphi, "jet_pt": jets_r.pt}, weight=w_r, region=region)
            fill_hist(output[f"dphi_jet_pt_rho_area{suffix}"], process_name,
                      {"dphi": dphi, "jet_pt": jets_r.pt, "rho_area": rho_area_r}, weight=w_r, region=region)

            recoil = dphi > (np.pi - cuts["recoil_region"])
            fill_hist(output[f"recoil_jet_pt_corr{suffix}"], process_name,
                      {"jet_pt_corr": corr_r[recoil]}, weight=w_r, region=region)
            fill_hist(output[f"recoil_jet_pt{suffix}"], process_name,
                      {"jet_pt": jets_r.pt[recoil]}, weight=w_r, region=region)

    def fill_mcp_histograms(self, output, process_name, events, weight, rng):
        """Particle-level variant: charged physical primaries act as tracks."""
        particles = events.McParticle
        particles = particles[(particles.charge != 0) & particles.isPhysicalPrimary]

        jets = self.select_jets(events.PartJet)
        if self._weighted:
            max_pt = self._cuts["pthat_max_mcp"] * pt_hat(weight, self._cuts["pthat_exponent"])
            jets = jets[jets.pt <= max_pt]

        self.fill_histograms(output, process_name, particles, jets, jets.area, weight, rng, suffix="_part")

    def fill_matched_histograms(self, output, process_name, events, weight):
        """Detector-vs-particle jet response, fake and missed jets."""
        det_jets = self.select_jets(events.Jet)
        # matchedJetIndex points into the full PartJet list, so mask rather than slice.
        part_jets = events.PartJet
        part_radius = part_jets.r == int(round(self._cuts["jet_r"] * 100))

        if self._weighted:
            max_pt = self._cuts["pthat_max_mcd"] * pt_hat(weight, self._cuts["pthat_exponent"])
            det_jets = det_jets[det_jets.pt <= max_pt]

        is_matched = det_jets.matchedJetIndex >= 0
        matched_det = det_jets[is_matched]
        matched_part = part_jets[matched_det.matchedJetIndex]

        fill_hist(output["jet_pt_det_vs_part"], process_name,
                  {"jet_pt_det": matched_det.pt, "jet_pt_part": matched_part.pt}, weight=weight)
        fill_hist(output["jet_pt_resolution"], process_name,
                  {"pt_resolution": (matched_det.pt - matched_part.pt) / matched_part.pt,
                   "jet_pt_part": matched_part.pt}, weight=weight)
        fill_hist(output["jet_phi_resolution"], process_name,
                  {"phi_resolution": matched_det.phi - matched_part.phi,
                   "jet_pt_part": matched_part.pt}, weight=weight)
        fill_hist(output["fake_jets_pt"], process_name,
                  {"jet_pt_det": det_jets.pt[~is_matched]}, weight=weight)
        fill_hist(output["missed_jets_pt"], process_name,
                  {"jet_pt_part": part_jets.pt[part_radius & (part_jets.matchedJetIndex < 0)]}, weight=weight)

    def process(self, events):
        """Run the recoil analysis for one chunk and return a dataset-nested output dict."""
        output = self.make_output()
        metadata = events.metadata
        dataset = metadata.get("sample", "unknown")
        process_name = metadata.get("process", dataset)

        selections, steps = self.event_selections(events)
        weights = self.build_event_weights(events)
        output["cutflow"] = {"events_check": cutflow_hists(selections, steps, weights=weights)}

        selected = selections.all(*steps)
        events = events[selected]
        weight = weights.weight()[selected]
        if len(events) == 0:
            key = f"jet_recoil_empty::{dataset}"
            if key not in _WARN_ONCE:
                _WARN_ONCE.add(key)
                logger.warning(f"No events pass the collision selection in a chunk of '{dataset}'.")

        rng = chunk_rng(self._seed, metadata)

        if self._level == "matched":
            self.fill_matched_histograms(output, process_name, events, weight)
        elif self._level == "mcp":
            fill_hist(output["vertex_z"], process_name, {"vertex_z": events.McCollision.posZ}, weight=weight)
            self.fill_mcp_histograms(output, process_name, events, weight, rng)
        else:
            collision = events.Collision
            fill_hist(output["vertex_z"], process_name, {"vertex_z": collision.posZ}, weight=weight)
            tracks = self.select_tracks(events.Track)
            jets = self.select_jets(events.Jet)
            rho_area = collision.rho * jets.area
            self.fill_histograms(output, process_name, tracks, jets, rho_area, weight, rng)

        return {dataset: output}

    def postprocess(self, accumulator):
        return accumulator
