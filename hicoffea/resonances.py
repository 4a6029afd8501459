"""K0S K0S higher-mass resonance processor (f2'(1525), f0(1710), ...).

Modes:
    - ``data``: same-event K0S pairs, rotational background and mixed-event
      pairs, filled in (multiplicity, pt, mass, cos theta*, phi*) histograms.
    - ``gen``: generated resonances decaying into two physical-primary K0S,
      one entry per MC collision.
    - ``rec``: reconstructed K0S pairs matched to the same generated mother.

The polarization frame is the first active one of ``helicity``,
``production``, ``beam`` and ``random``; phi* is always the helicity-frame
azimuth. Mixing happens between events of the same chunk.
"""

import functools
import logging
import operator

import awkward as ak
import numpy as np
from coffea import processor
from coffea.analysis_tools import PackedSelection

from hicoffea.analysis_config import (
    CUTS, MASS_K0S, MASS_LAMBDA, PDG_K0S, RESONANCE_MODES,
    SEL_VERTEX_Z, SEL_NO_TF_BORDER, SEL_SEL8, SEL_RCT, SEL_HAS_MC,
    SEL_V0_DCA_TO_PV, SEL_V0_DCA_V0_TO_PV, SEL_V0_RAPIDITY, SEL_V0_PT,
    SEL_V0_DCA_DAUGHTERS, SEL_V0_COS_PA, SEL_V0_RADIUS, SEL_V0_LIFETIME,
    SEL_V0_COMPETING, SEL_V0_MASS,
    SEL_DAU_ACCEPTANCE, SEL_DAU_TRACK_QUALITY, SEL_DAU_CHARGE, SEL_DAU_ETA, SEL_DAU_PID,
    SEL_MC_VERTEX_Z, SEL_RECO_SELECTED, SEL_MC_PDG, SEL_MC_RAPIDITY,
    SEL_MC_TWO_DAUGHTERS, SEL_MC_KS_DAUGHTERS,
    SEL_PAIR_MC_MATCHED, SEL_PAIR_DAU_MATCHED, SEL_PAIR_DAU_SELECTED, SEL_PAIR_V0_SELECTED,
    SEL_PAIR_K0S, SEL_PAIR_MOTHER_PDG, SEL_PAIR_SAME_MOTHER, SEL_PAIR_GENERATOR,
    SEL_PAIR_MOTHER_RAPIDITY,
)
from hicoffea.event_selection import rct_good, rct_mask
from hicoffea.histograms import (
    book_histograms, cutflow_hists, fill_hist, resonance_axes, resonance_specs,
)
from hicoffea.kinematics import (
    COS_THETA_FRAMES, chunk_rng, cos_theta_star, momentum4d, momentum4d_e,
    phi_0_2pi, polarization_angles, rotate_z,
)
from hicoffea.mixing import mixing_bin_ids, self_combinations

logger = logging.getLogger(__name__)

# Centre of the K0S invariant-mass window
KS_MASS_WINDOW_CENTRE = 0.497

EVENT_STEPS = [SEL_VERTEX_Z, SEL_NO_TF_BORDER, SEL_SEL8, SEL_RCT]
V0_STEPS = [
    SEL_V0_DCA_TO_PV, SEL_V0_DCA_V0_TO_PV, SEL_V0_RAPIDITY, SEL_V0_PT,
    SEL_V0_DCA_DAUGHTERS, SEL_V0_COS_PA, SEL_V0_RADIUS, SEL_V0_LIFETIME,
    SEL_V0_COMPETING, SEL_V0_MASS,
]
DAUGHTER_STEPS = [
    SEL_DAU_ACCEPTANCE, SEL_DAU_TRACK_QUALITY, SEL_DAU_CHARGE, SEL_DAU_ETA, SEL_DAU_PID,
]
GEN_EVENT_STEPS = [SEL_MC_VERTEX_Z, SEL_RECO_SELECTED]
GEN_PARTICLE_STEPS = [SEL_MC_PDG, SEL_MC_RAPIDITY, SEL_MC_TWO_DAUGHTERS, SEL_MC_KS_DAUGHTERS]
REC_EVENT_STEPS = [SEL_HAS_MC, SEL_MC_VERTEX_Z, SEL_SEL8]
REC_PAIR_STEPS = [
    SEL_PAIR_MC_MATCHED, SEL_PAIR_DAU_MATCHED, SEL_PAIR_DAU_SELECTED, SEL_PAIR_V0_SELECTED,
    SEL_PAIR_K0S, SEL_PAIR_MOTHER_PDG, SEL_PAIR_SAME_MOTHER, SEL_PAIR_GENERATOR,
    SEL_PAIR_MOTHER_RAPIDITY,
]


def _np(x, dtype=None):
    arr = ak.to_numpy(x) if isinstance(x, ak.Array) else np.asarray(x)
    return arr if dtype is None else arr.astype(dtype)


def _flat(x, dtype=None):
    return _np(ak.flatten(x, axis=None), dtype)


def _all(masks):
    return functools.reduce(operator.and_, masks)


def _optional(mask, apply):
    return mask if apply else ak.ones_like(mask, dtype=bool)


def active_frame(frames):
    """First enabled cos(theta*) frame, in ``COS_THETA_FRAMES`` order."""
    for frame in COS_THETA_FRAMES:
        if frames.get(frame):
            return frame
    raise ValueError(f"No active cos(theta*) frame in {frames}. Enable one of {COS_THETA_FRAMES}.")


def v0_lifetime(v0, collision):
    """c*tau = L / p * m(K0S), L being the V0 decay distance to the primary vertex."""
    dx = v0.x - collision.posX
    dy = v0.y - collision.posY
    dz = v0.z - collision.posZ
    length = np.sqrt(dx * dx + dy * dy + dz * dz)
    momentum = np.sqrt(v0.px * v0.px + v0.py * v0.py + v0.pz * v0.pz)
    return length / momentum * MASS_K0S


def v0_selection_steps(v0, collision, cuts):
    """Per-V0 masks of the K0S selection chain, in cutflow order."""
    half_window = cuts["ks_width"] * cuts["ks_mass_window_sigma"]
    lambda_window = cuts["competing_lambda_window"]
    competing = (
        (np.abs(v0.mLambda - MASS_LAMBDA) <= lambda_window)
        | (np.abs(v0.mAntiLambda - MASS_LAMBDA) <= lambda_window)
    )
    return {
        SEL_V0_DCA_TO_PV: (np.abs(v0.dcapostopv) > cuts["dca_pos_to_pv"])
        & (np.abs(v0.dcanegtopv) > cuts["dca_neg_to_pv"]),
        SEL_V0_DCA_V0_TO_PV: _optional(np.abs(v0.dcav0topv) <= cuts["dca_v0_to_pv_max"], cuts["apply_dca_v0_to_pv"]),
        SEL_V0_RAPIDITY: np.abs(v0.yK0Short) < cuts["ks_rapidity"],
        SEL_V0_PT: v0.pt >= cuts["v0_pt_min"],
        SEL_V0_DCA_DAUGHTERS: v0.dcaV0daughters <= cuts["dca_v0_daughters_max"],
        SEL_V0_COS_PA: v0.v0cosPA >= cuts["v0_cpa_min"],
        SEL_V0_RADIUS: (v0.v0radius >= cuts["v0_radius_min"]) & (v0.v0radius <= cuts["v0_radius_max"]),
        SEL_V0_LIFETIME: np.abs(v0_lifetime(v0, collision)) <= cuts["v0_lifetime_max"],
        SEL_V0_COMPETING: _optional(~competing, cuts["apply_competing_cut"]),
        SEL_V0_MASS: (v0.mK0Short >= KS_MASS_WINDOW_CENTRE - half_window)
        & (v0.mK0Short <= KS_MASS_WINDOW_CENTRE + half_window),
    }


def daughter_selection_steps(track, charge, cuts):
    """Per-daughter masks for the expected ``charge`` (+1 / -1), in cutflow order."""
    if cuts["global_tracks"]:
        quality = track.isGlobalTrack
    else:
        quality = (
            (track.tpcNClsCrossedRows >= cuts["tpc_crossed_rows"])
            & (track.tpcCrossedRowsOverFindableCls >= cuts["tpc_crossed_rows_over_findable"])
            & (track.tpcNClsFound >= cuts["tpc_ncls_min"])
        )
    if cuts["has_tpc"]:
        quality = quality & track.hasTPC

    return {
        SEL_DAU_ACCEPTANCE: (np.abs(track.eta) < cuts["eta_cut"]) & (track.pt > cuts["pt_cut"]),
        SEL_DAU_TRACK_QUALITY: quality,
        SEL_DAU_CHARGE: track.sign >= 0 if charge > 0 else track.sign <= 0,
        SEL_DAU_ETA: np.abs(track.eta) <= cuts["daughter_eta"],
        SEL_DAU_PID: np.abs(track.tpcNSigmaPi) <= cuts["daughter_nsigma"],
    }


def angular_separation(k1, k2):
    """sqrt(deta^2 + dphi^2) between two V0s, with the raw azimuth difference."""
    deta = k1.eta - k2.eta
    dphi = k1.phi - k2.phi
    return np.sqrt(deta * deta + dphi * dphi)


def daughter_track_ids(tracks, index):
    """Chunk-unique ids of the tracks at ``index`` (``globalIndex`` when stored)."""
    if "globalIndex" in tracks.fields:
        return tracks.globalIndex[index]
    counts = _np(ak.num(tracks, axis=1), np.int64)
    return index + (np.cumsum(counts) - counts)


def _object_cutflow(sources, names):
    """Cutflow over flattened objects; ``sources`` is a list of (steps, keep)."""
    selections = PackedSelection()
    for name in names:
        selections.add(name, np.concatenate([_flat(steps[name][keep], bool) for steps, keep in sources]))
    return cutflow_hists(selections, names)


def _k0s_vectors(records):
    return momentum4d(_flat(records.px), _flat(records.py), _flat(records.pz), MASS_K0S)


class HigherMassResonances(processor.ProcessorABC):
    """Coffea processor for K0S K0S resonances and their spin alignment.

    Parameters
    - ``mode``: one of ``RESONANCE_MODES``.
    - ``cuts``: task configuration (defaults to ``CUTS["resonances"]``).
    - ``seed``: base seed of the per-chunk random generators (rotations, random frame).
    - ``sqrt_s``: collision energy in GeV, defines the beams of the helicity frame.
    """
    def __init__(self, mode="data", cuts=None, seed=None, sqrt_s=13600.0):
        if mode not in RESONANCE_MODES:
            raise ValueError(f"Invalid mode '{mode}'. Must be one of {RESONANCE_MODES}.")
        self._mode = mode
        self._cuts = dict(CUTS["resonances"] if cuts is None else cuts)
        self._seed = seed
        self._sqrt_s = float(sqrt_s)
        self._frame = active_frame(self._cuts["cos_theta_frames"])
        self._rct_mask = 0
        if self._cuts["require_rct"]:
            self._rct_mask = rct_mask(
                self._cuts["rct_label"],
                limited_acceptance_as_bad=self._cuts["rct_limited_acceptance_as_bad"],
                zdc_check=self._cuts["rct_zdc_check"],
            )
        specs = resonance_specs(mode, self._cuts)
        axes = resonance_axes(self._cuts)
        self.make_output = lambda: book_histograms(specs, axes)

    @property
    def frame(self):
        return self._frame

    def multiplicity(self, collision):
        estimator = collision.centFT0M if self._cuts["mult_ft0m"] else collision.centFT0C
        return _np(estimator, np.float64)

    def event_selections(self, collision):
        """PackedSelection of the collision-level cuts (``EVENT_STEPS``)."""
        cuts = self._cuts
        n = len(collision)
        selections = PackedSelection()
        selections.add(SEL_VERTEX_Z, _np(np.abs(collision.posZ) < cuts["cut_vertex_z"], bool))
        if cuts["time_frame_evsel"]:
            borders = _np(collision.noTimeFrameBorder & collision.noITSROFrameBorder, bool)
        else:
            borders = np.ones(n, dtype=bool)
        selections.add(SEL_NO_TF_BORDER, borders)
        selections.add(SEL_SEL8, _np(collision.sel8, bool))
        if cuts["require_rct"]:
            selections.add(SEL_RCT, rct_good(collision, self._rct_mask))
        else:
            selections.add(SEL_RCT, np.ones(n, dtype=bool))
        return selections

    # --- K0S selection --------------------------------------------------------

    def select_k0s(self, output, process_name, events, ev_ok):
        """Evaluate the V0 and daughter selections, filling the selection QA.

        Returns ``(k0s, masks, cutflow)``: ``k0s`` holds every V0 with its
        kinematics and daughter ids, ``masks`` the per-V0 ``in_event``, ``v0``
        and ``daughters`` decisions.
        """
        collision = events.Collision
        v0 = events.V0
        tracks = events.Track
        pos = tracks[v0.posTrackIndex]
        neg = tracks[v0.negTrackIndex]

        in_event = ak.broadcast_arrays(ev_ok, v0.pt)[0]
        v0_steps = v0_selection_steps(v0, collision, self._cuts)
        v0_ok = _all(v0_steps.values())
        pos_steps = daughter_selection_steps(pos, +1, self._cuts)
        neg_steps = daughter_selection_steps(neg, -1, self._cuts)
        daughters_ok = _all(pos_steps.values()) & _all(neg_steps.values())

        self._fill_v0_qa(output, process_name, v0, collision, v0_steps, in_event)
        self._fill_pid_qa(output, process_name, pos, neg, pos_steps, neg_steps, in_event & v0_ok)

        cutflow = {
            "v0_check": _object_cutflow([(v0_steps, in_event)], V0_STEPS),
            "v0_daughters_check": _object_cutflow(
                [(pos_steps, in_event & v0_ok), (neg_steps, in_event & v0_ok)], DAUGHTER_STEPS,
            ),
        }
        k0s = ak.zip({
            "px": v0.px,
            "py": v0.py,
            "pz": v0.pz,
            "eta": v0.eta,
            "phi": v0.phi,
            "mass": v0.mK0Short,
            "pos_id": daughter_track_ids(tracks, v0.posTrackIndex),
            "neg_id": daughter_track_ids(tracks, v0.negTrackIndex),
        })
        masks = {"in_event": in_event, "v0": v0_ok, "daughters": daughters_ok}
        return k0s, masks, cutflow

    def _fill_v0_qa(self, output, process_name, v0, collision, v0_steps, in_event):
        cuts = self._cuts
        if not (cuts["qa_v0"] or cuts["correlation_2d"]):
            return
        prefiltered = in_event & v0_steps[SEL_V0_DCA_TO_PV]
        before_mass = _all([prefiltered] + [v0_steps[name] for name in V0_STEPS if name != SEL_V0_MASS])

        if cuts["correlation_2d"]:
            for hist_name, keep in (("mass_lambda_kshort_before", prefiltered),
                                    ("mass_lambda_kshort_after", before_mass)):
                fill_hist(output[hist_name], process_name,
                          {"ks_mass_wide": v0.mK0Short[keep], "lambda_mass": v0.mLambda[keep]})

        if cuts["qa_v0"]:
            fill_hist(output["mass_k0s_before"], process_name,
                      {"ks_mass": v0.mK0Short[prefiltered], "pt": v0.pt[prefiltered]})
            fill_hist(output["mass_k0s_selected"], process_name,
                      {"ks_mass": v0.mK0Short[before_mass], "pt": v0.pt[before_mass]})
            fill_hist(output["v0_lifetime"], process_name,
                      {"v0_lifetime": v0_lifetime(v0, collision)[prefiltered]})
            fill_hist(output["dca_v0_daughters"], process_name,
                      {"dca_v0_daughters": v0.dcaV0daughters[prefiltered]})
            fill_hist(output["v0_cos_pa"], process_name, {"v0_cos_pa": v0.v0cosPA[prefiltered]})

    def _fill_pid_qa(self, output, process_name, pos, neg, pos_steps, neg_steps, keep):
        if not self._cuts["qa_pid"]:
            return
        for label, track, steps in (("pos", pos, pos_steps), ("neg", neg, neg_steps)):
            for stage, mask in (("before", keep), ("after", keep & _all(steps.values()))):
                selected = track[mask]
                fill_hist(output[f"nsigma_{label}_pion_{stage}"], process_name,
                          {"inner_p": selected.tpcInnerParam, "nsigma_pi": selected.tpcNSigmaPi})

    # --- Pairing ----------------------------------------------------------------

    def same_event_pairs(self, output, process_name, k0s):
        """Valid same-event K0S pairs (i < j) per event."""
        cuts = self._cuts
        pairs = ak.combinations(k0s, 2, fields=["k1", "k2"])
        distinct = (pairs.k1.pos_id != pairs.k2.pos_id) & (pairs.k1.neg_id != pairs.k2.neg_id)
        angle = angular_separation(pairs.k1, pairs.k2)
        if cuts["qa_v0"]:
            fill_hist(output["angular_separation"], process_name, {"angular_separation": angle[distinct]})

        valid = distinct
        if cuts["apply_ang_sep_cut"]:
            valid = valid & (angle <= cuts["ang_sep_cut"])
        if cuts["qa_v0"]:
            fill_hist(output["mass_correlation_before"], process_name,
                      {"ks_mass_1": pairs.k1.mass[valid], "ks_mass_2": pairs.k2.mass[valid]})
        if cuts["select_two_ks_only"]:
            valid = valid & (ak.num(k0s, axis=1) == 2)
        return pairs[valid]

    def mixed_event_pairs(self, collision, k0s, ev_ok, mult):
        """Cross pairs between events of the same (vz, multiplicity) bin.

        Returns the pairs and the multiplicity of each pair's first event.
        """
        cuts = self._cuts
        vz = _np(collision.posZ, np.float64)
        bin_ids = mixing_bin_ids(vz, mult, cuts["mix_vz_bins"], cuts["mix_mult_bins"])
        bin_ids = np.where(np.abs(vz) < cuts["cut_vertex_z"], bin_ids, -1)
        first, second = self_combinations(bin_ids, cuts["n_mixed_events"])
        both_selected = ev_ok[first] & ev_ok[second]
        first, second = first[both_selected], second[both_selected]

        pairs = ak.cartesian({"k1": k0s[first], "k2": k0s[second]}, axis=1)
        distinct = (pairs.k1.pos_id != pairs.k2.pos_id) & (pairs.k1.neg_id != pairs.k2.neg_id)
        pairs = pairs[distinct]
        pair_mult = _flat(ak.broadcast_arrays(mult[first], pairs.k1.px)[0], np.float64)
        return pairs, pair_mult

    def fill_inv_mass(self, output, process_name, d1, d2, mult, rng, mixed=False):
        """Fill the polarization histograms for K0S pairs (flat ``vector`` arrays).

        Same-event pairs also fill ``rotations`` rotational-background entries:
        the helicity frame rotates the first K0S and recomputes cos theta*,
        the other frames rotate the mother and keep the unrotated cos theta*.
        """
        if len(d1) == 0:
            return
        cuts = self._cuts
        y_max = cuts["rapidity_pair"]
        mother = d1 + d2
        cos_theta, phi = polarization_angles(mother, d1, self._frame, rng=rng, sqrt_s=self._sqrt_s)

        in_y = np.abs(mother.rapidity) < y_max
        fill_hist(
            output["glue_inv_mass_me" if mixed else "glue_inv_mass_ds"], process_name,
            {"multiplicity": mult[in_y], "pt": mother.pt[in_y], "mass": mother.mass[in_y],
             "cos_theta": cos_theta[in_y], "phi": phi[in_y]},
        )
        if mixed:
            return

        half_width = np.pi / cuts["rotational_cut"]
        for _ in range(int(cuts["rotations"])):
            theta = rng.uniform(np.pi - half_width, np.pi + half_width, len(mother))
            if self._frame == "helicity":
                d1_rot = rotate_z(d1, theta)
                mother_rot = d1_rot + d2
                cos_rot = cos_theta_star(mother_rot, d1_rot, "helicity")
            else:
                mother_rot = rotate_z(mother, theta)
                cos_rot = cos_theta
            in_y_rot = np.abs(mother_rot.rapidity) < y_max
            fill_hist(
                output["glue_inv_mass_rot"], process_name,
                {"multiplicity": mult[in_y_rot], "pt": mother_rot.pt[in_y_rot],
                 "mass": mother_rot.mass[in_y_rot], "cos_theta": cos_rot[in_y_rot],
                 "phi": phi[in_y_rot]},
            )

    # --- Modes ------------------------------------------------------------------

    def process_data(self, events, output, process_name, rng):
        cuts = self._cuts
        collision = events.Collision
        mult = self.multiplicity(collision)
        selections = self.event_selections(collision)
        ev_ok = selections.all(*EVENT_STEPS)
        cutflow = {"events_check": cutflow_hists(selections, EVENT_STEPS)}

        if cuts["qa_events"]:
            fill_hist(output["vertex_z"], process_name, {"vertex_z": _np(collision.posZ)[ev_ok]})
            fill_hist(output["multiplicity"], process_name, {"mult_percentile": mult[ev_ok]})

        k0s, masks, k0s_cutflow = self.select_k0s(output, process_name, events, ev_ok)
        cutflow.update(k0s_cutflow)
        k0s = k0s[masks["in_event"] & masks["v0"] & masks["daughters"]]
        fill_hist(output["n_ks_produced"], process_name, {"n_ks": _np(ak.num(k0s, axis=1))[ev_ok]})

        pairs = self.same_event_pairs(output, process_name, k0s)
        pair_mult = _flat(ak.broadcast_arrays(mult, pairs.k1.px)[0], np.float64)
        self.fill_inv_mass(output, process_name, _k0s_vectors(pairs.k1), _k0s_vectors(pairs.k2), pair_mult, rng)

        mixed, mixed_mult = self.mixed_event_pairs(collision, k0s, ev_ok, mult)
        self.fill_inv_mass(
            output, process_name, _k0s_vectors(mixed.k1), _k0s_vectors(mixed.k2), mixed_mult, rng, mixed=True,
        )
        logger.debug(f"{len(pair_mult)} same-event and {len(mixed_mult)} mixed-event K0S pairs")
        return cutflow

    def process_gen(self, events, output, process_name):
        """Generated resonances -> K0S K0S, per MC collision."""
        cuts = self._cuts
        vz = _np(events.McCollision.posZ, np.float64)
        collisions = events.Collision

        good = ak.broadcast_arrays(np.abs(vz) <= cuts["cut_vertex_z"], collisions.centFT0M)[0]
        if cuts["time_frame_evsel"]:
            good = good & collisions.noTimeFrameBorder
        if cuts["tvx_evsel"]:
            good = good & collisions.isTriggerTVX
        reco_selected = _np(ak.any(good, axis=1), bool)
        # multiplicity of the last selected reconstructed collision, 0 if none
        mult = _np(ak.fill_none(ak.firsts(collisions.centFT0M[good][:, ::-1]), 0.0), np.float64)

        selections = PackedSelection()
        selections.add(SEL_MC_VERTEX_Z, np.abs(vz) < cuts["cut_vertex_z"])
        selections.add(SEL_RECO_SELECTED, reco_selected)
        cutflow = {"events_check": cutflow_hists(selections, GEN_EVENT_STEPS)}

        accept = reco_selected | bool(cuts["all_gen_collisions"])
        particles = events.McParticle[accept]
        mult = mult[accept]

        counts = _np(ak.num(particles, axis=1), np.int64)
        starts = np.cumsum(counts) - counts
        event_of = np.repeat(np.arange(len(counts)), counts)
        pdg = _flat(particles.pdgCode, np.int64)
        mother_local = _flat(particles.motherIndex, np.int64)
        mother = np.where(mother_local >= 0, mother_local + starts[event_of], -1)
        has_mother = mother >= 0

        good_daughter = _flat(particles.isPhysicalPrimary, bool) & (np.abs(pdg) == PDG_K0S)
        n_daughters = np.bincount(mother[has_mother], minlength=len(pdg))
        n_good = np.bincount(mother[has_mother], minlength=len(pdg), weights=good_daughter[has_mother].astype(np.float64))
        rapidity = _flat(particles.y, np.float64)

        steps = {
            SEL_MC_PDG: np.abs(pdg) == cuts["pdg_codes"][cuts["select_mc_particle"]],
            SEL_MC_RAPIDITY: (np.abs(rapidity) < cuts["rapidity_pair"]) | (not cuts["apply_rapidity_mc"]),
            SEL_MC_TWO_DAUGHTERS: n_daughters == 2,
            SEL_MC_KS_DAUGHTERS: np.rint(n_good) == 2,
        }
        particle_selections = PackedSelection()
        for name in GEN_PARTICLE_STEPS:
            particle_selections.add(name, np.asarray(steps[name], dtype=bool))
        cutflow["particles_check"] = cutflow_hists(particle_selections, GEN_PARTICLE_STEPS)

        resonance = np.flatnonzero(particle_selections.all(*GEN_PARTICLE_STEPS))
        if len(resonance) == 0:
            return cutflow

        # daughters grouped by mother, in index order
        daughters = np.flatnonzero(has_mother)
        daughters = daughters[np.argsort(mother[daughters], kind="stable")]
        first = np.searchsorted(mother[daughters], resonance)
        dau1, dau2 = daughters[first], daughters[first + 1]

        px, py, pz = (_flat(particles[c], np.float64) for c in ("px", "py", "pz"))
        gen_mother = momentum4d_e(px[resonance], py[resonance], pz[resonance],
                                  _flat(particles.e, np.float64)[resonance])
        d1 = momentum4d(px[dau1], py[dau1], pz[dau1], MASS_K0S)
        d2 = momentum4d(px[dau2], py[dau2], pz[dau2], MASS_K0S)
        res_mult = mult[event_of[resonance]]

        fill_hist(output["gen_resonance"], process_name,
                  {"multiplicity": res_mult, "pt": _flat(particles.pt, np.float64)[resonance],
                   "cos_theta": cos_theta_star(gen_mother, d1, "helicity")})
        fill_hist(output["gen_mass"], process_name, {"mc_mass": gen_mother.mass})
        fill_hist(output["gen_rapidity"], process_name, {"rapidity": rapidity[resonance]})
        fill_hist(output["gen_eta"], process_name, {"eta": _flat(particles.eta, np.float64)[resonance]})
        fill_hist(output["gen_phi"], process_name, {"mc_phi": _flat(particles.phi, np.float64)[resonance]})

        pair = d1 + d2
        keep = np.ones(len(pair), dtype=bool)
        if cuts["apply_pair_rapidity_gen"]:
            keep = np.abs(pair.rapidity) < cuts["rapidity_pair"]
        pair, d1, res_mult = pair[keep], d1[keep], res_mult[keep]
        fill_hist(output["gen_resonance_2"], process_name,
                  {"multiplicity": res_mult, "pt": pair.pt, "cos_theta": cos_theta_star(pair, d1, "helicity")})
        fill_hist(output["gen_mass_2"], process_name, {"mc_mass": pair.mass})
        fill_hist(output["gen_rapidity_2"], process_name, {"rapidity": pair.rapidity})
        fill_hist(output["gen_eta_2"], process_name, {"eta": pair.eta})
        fill_hist(output["gen_phi_2"], process_name, {"mc_phi": phi_0_2pi(pair.phi)})
        return cutflow

    def process_rec(self, events, output, process_name):
        """Reconstructed K0S pairs from the same generated resonance."""
        cuts = self._cuts
        collision = events.Collision
        mult = _np(collision.centFT0M, np.float64)
        fill_hist(output["rec_multiplicity"], process_name, {"mult_percentile": mult})

        selections = PackedSelection()
        selections.add(SEL_HAS_MC, _np(collision.hasMcCollision, bool))
        selections.add(SEL_MC_VERTEX_Z, _np(np.abs(collision.mcPosZ) <= cuts["cut_vertex_z"], bool))
        selections.add(SEL_SEL8, _np(collision.sel8, bool))
        ev_ok = selections.all(*REC_EVENT_STEPS)
        cutflow = {"events_checkrec": cutflow_hists(selections, REC_EVENT_STEPS)}
        fill_hist(output["mc_mult_after_event_sel"], process_name, {"mult_percentile": mult[ev_ok]})

        _k0s, masks, k0s_cutflow = self.select_k0s(output, process_name, events, ev_ok)
        cutflow.update(k0s_cutflow)

        v0 = events.V0
        tracks = events.Track
        particles = events.McParticle
        has_mc = v0.mcParticleIndex >= 0
        matched = particles[ak.mask(v0.mcParticleIndex, has_mc)]
        mother_index = ak.fill_none(matched.motherIndex, -1)
        mother = particles[ak.mask(mother_index, mother_index >= 0)]

        candidates = ak.zip({
            "px": v0.px,
            "py": v0.py,
            "pz": v0.pz,
            "has_mc": has_mc,
            "daughters_matched": tracks[v0.posTrackIndex].hasMcParticle & tracks[v0.negTrackIndex].hasMcParticle,
            "daughters_selected": masks["daughters"],
            "v0_selected": masks["v0"],
            "is_k0s": ak.fill_none(np.abs(matched.pdgCode) == PDG_K0S, False),
            "mother_index": mother_index,
            "mother_pdg": ak.fill_none(mother.pdgCode, 0),
            "mother_generator": ak.fill_none(mother.producedByGenerator, False),
            "mother_y": ak.fill_none(mother.y, np.inf),
            "mother_pt": ak.fill_none(mother.pt, 0.0),
            "mother_eta": ak.fill_none(mother.eta, 0.0),
            "mother_phi": ak.fill_none(mother.phi, 0.0),
            "mother_px": ak.fill_none(mother.px, 0.0),
            "mother_py": ak.fill_none(mother.py, 0.0),
            "mother_pz": ak.fill_none(mother.pz, 0.0),
            "mother_e": ak.fill_none(mother.e, 0.0),
        })[ev_ok]

        pairs = ak.combinations(candidates, 2, fields=["v1", "v2"])
        pair_mult = _flat(ak.broadcast_arrays(mult[ev_ok], pairs.v1.px)[0], np.float64)
        v1 = ak.flatten(pairs.v1)
        v2 = ak.flatten(pairs.v2)

        def both(field):
            return _np(v1[field], bool) & _np(v2[field], bool)

        mother_y = _np(v1.mother_y, np.float64)
        steps = {
            SEL_PAIR_MC_MATCHED: both("has_mc"),
            SEL_PAIR_DAU_MATCHED: both("daughters_matched"),
            SEL_PAIR_DAU_SELECTED: both("daughters_selected"),
            SEL_PAIR_V0_SELECTED: both("v0_selected"),
            SEL_PAIR_K0S: both("is_k0s"),
            SEL_PAIR_MOTHER_PDG: _np(v1.mother_pdg) == cuts["pdg_codes"][cuts["select_mc_particle"]],
            SEL_PAIR_SAME_MOTHER: (_np(v1.mother_index) == _np(v2.mother_index)) & (_np(v1.mother_index) >= 0),
            SEL_PAIR_GENERATOR: _np(v1.mother_generator, bool),
            SEL_PAIR_MOTHER_RAPIDITY: (np.abs(mother_y) < cuts["rapidity_pair"]) | (not cuts["apply_rapidity_mc"]),
        }
        pair_selections = PackedSelection()
        for name in REC_PAIR_STEPS:
            pair_selections.add(name, np.asarray(steps[name], dtype=bool))
        cutflow["pairs_checkrec"] = cutflow_hists(pair_selections, REC_PAIR_STEPS)

        keep = pair_selections.all(*REC_PAIR_STEPS)
        v1, v2, pair_mult = v1[keep], v2[keep], pair_mult[keep]
        if len(v1) == 0:
            return cutflow

        d1 = _k0s_vectors(v1)
        d2 = _k0s_vectors(v2)
        gen_mother = momentum4d_e(_np(v1.mother_px), _np(v1.mother_py), _np(v1.mother_pz), _np(v1.mother_e))
        fill_hist(output["rec_resonance_pt1"], process_name,
                  {"multiplicity": pair_mult, "pt": _np(v1.mother_pt), "mass": gen_mother.mass,
                   "cos_theta": cos_theta_star(gen_mother, d1, "helicity")})
        fill_hist(output["rec_rapidity"], process_name, {"rapidity": _np(v1.mother_y)})
        fill_hist(output["rec_phi"], process_name, {"mc_phi": _np(v1.mother_phi)})
        fill_hist(output["rec_eta"], process_name, {"eta": _np(v1.mother_eta)})

        pair = d1 + d2
        in_y = np.ones(len(pair), dtype=bool)
        if cuts["apply_pair_rapidity_rec"]:
            in_y = np.abs(pair.rapidity) < cuts["rapidity_pair"]
        pair, d1, pair_mult = pair[in_y], d1[in_y], pair_mult[in_y]
        fill_hist(output["rec_resonance_pt2"], process_name,
                  {"multiplicity": pair_mult, "pt": pair.pt, "mass": pair.mass,
                   "cos_theta": cos_theta_star(pair, d1, "helicity")})
        fill_hist(output["rec_rapidity_2"], process_name, {"rapidity": pair.rapidity})
        fill_hist(output["rec_phi_2"], process_name, {"mc_phi": phi_0_2pi(pair.phi)})
        fill_hist(output["rec_eta_2"], process_name, {"eta": pair.eta})
        return cutflow

    def process(self, events):
        output = self.make_output()
        metadata = events.metadata
        dataset = metadata.get("sample", "unknown")
        process_name = metadata.get("process", dataset)

        if self._mode == "gen":
            output["cutflow"] = self.process_gen(events, output, process_name)
        elif self._mode == "rec":
            output["cutflow"] = self.process_rec(events, output, process_name)
        else:
            rng = chunk_rng(self._seed, metadata)
            output["cutflow"] = self.process_data(events, output, process_name, rng)

        return {dataset: output}

    def postprocess(self, accumulator):
        return accumulator
