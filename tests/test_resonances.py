"""Tests for hicoffea.resonances: K0S selection, pairing, mixing and the MC modes."""

import copy

import awkward as ak
import numpy as np
import pytest

from hicoffea.analysis_config import CUTS, MASS_K0S
from hicoffea.kinematics import COS_THETA_FRAMES, cos_theta_star, momentum4d, rotate_z
from hicoffea.resonances import (
    RESONANCE_MODES,
    HigherMassResonances,
    active_frame,
    angular_separation,
    daughter_selection_steps,
    daughter_track_ids,
    v0_lifetime,
    v0_selection_steps,
)


# ---------------------------------------------------------------------------
# Helpers to build mock objects
# ---------------------------------------------------------------------------

class MockEvents:
    def __init__(self, metadata=None, **collections):
        self.metadata = metadata or {"sample": "res_sample", "filename": "chunk.root", "entrystart": 0}
        for name, value in collections.items():
            setattr(self, name, value)


def _cuts(**overrides):
    cuts = copy.deepcopy(CUTS["resonances"])
    cuts.update(overrides)
    return cuts


def _rotated(momentum, angle):
    px, py, pz = momentum
    c, s = np.cos(angle), np.sin(angle)
    return (c * px - s * py, s * px + c * py, pz)


def _v0(momentum, pos_index, neg_index, pos_z=0.0, mass=0.497, mc_index=-1):
    px, py, pz = momentum
    pt = float(np.hypot(px, py))
    return {
        "px": px, "py": py, "pz": pz,
        "pt": pt,
        "eta": float(np.arcsinh(pz / pt)),
        "phi": float(np.arctan2(py, px)),
        "x": 1.0, "y": 0.0, "z": pos_z,
        "mK0Short": mass,
        "mLambda": 1.2,
        "mAntiLambda": 1.2,
        "dcapostopv": 0.1,
        "dcanegtopv": 0.1,
        "dcav0topv": 0.1,
        "yK0Short": 0.0,
        "dcaV0daughters": 0.5,
        "v0cosPA": 0.999,
        "v0radius": 2.0,
        "posTrackIndex": pos_index,
        "negTrackIndex": neg_index,
        "mcParticleIndex": mc_index,
    }


def _track(sign, nsigma=0.5, eta=0.1):
    return {
        "sign": sign,
        "pt": 0.5,
        "eta": eta,
        "tpcNClsCrossedRows": 100,
        "tpcCrossedRowsOverFindableCls": 0.9,
        "tpcNClsFound": 100,
        "hasTPC": True,
        "isGlobalTrack": True,
        "tpcNSigmaPi": nsigma,
        "tpcInnerParam": 0.5,
        "hasMcParticle": True,
    }


def _collision(pos_z, cent=20.0):
    return {
        "posX": 0.0, "posY": 0.0, "posZ": pos_z,
        "noTimeFrameBorder": True,
        "noITSROFrameBorder": True,
        "sel8": True,
        "rctFlags": 0,
        "centFT0M": cent,
        "centFT0C": cent,
        "hasMcCollision": True,
        "mcPosZ": pos_z,
    }


K1 = (0.8, 0.0, 0.1)
K2 = (-0.3, 0.6, -0.05)


def _data_events(pos_z=(1.0, 1.2, 1.4, 12.0), extra_bad_v0=False):
    """One K0S pair per event; each event's momenta are rotated by 0.3 rad * event number."""
    collisions, v0s, tracks = [], [], []
    for i, vz in enumerate(pos_z):
        collisions.append(_collision(vz))
        event_v0s = [
            _v0(_rotated(K1, 0.3 * i), 0, 1, pos_z=vz),
            _v0(_rotated(K2, 0.3 * i), 2, 3, pos_z=vz),
        ]
        if extra_bad_v0 and i == 0:
            event_v0s.append(_v0(_rotated(K2, 1.0), 0, 3, pos_z=vz, mass=0.52))
        v0s.append(event_v0s)
        tracks.append([_track(1), _track(-1), _track(1), _track(-1)])
    return MockEvents(
        Collision=ak.Array(collisions),
        V0=ak.Array(v0s),
        Track=ak.Array(tracks),
    )


def _four_vector_sum(*momenta):
    px = sum(m[0] for m in momenta)
    py = sum(m[1] for m in momenta)
    pz = sum(m[2] for m in momenta)
    e = sum(np.sqrt(m[0] ** 2 + m[1] ** 2 + m[2] ** 2 + MASS_K0S**2) for m in momenta)
    return px, py, pz, e


def _mc_particle(pdg, mother, momentum=None, e=None, primary=True, generator=True):
    px, py, pz = momentum if momentum is not None else (0.1, 0.1, 0.1)
    if e is None:
        e = float(np.sqrt(px**2 + py**2 + pz**2 + MASS_K0S**2))
    pt = float(np.hypot(px, py))
    return {
        "pdgCode": pdg,
        "motherIndex": mother,
        "isPhysicalPrimary": primary,
        "producedByGenerator": generator,
        "px": px, "py": py, "pz": pz, "e": e,
        "pt": pt,
        "eta": float(np.arcsinh(pz / pt)),
        "phi": float(np.arctan2(py, px) % (2 * np.pi)),
        "y": float(0.5 * np.log((e + pz) / (e - pz))),
    }


def _resonance_family(second_daughter_pdg=310, second_mother=0):
    px, py, pz, e = _four_vector_sum(K1, K2)
    return [
        _mc_particle(335, -1, (px, py, pz), e=e),
        _mc_particle(310, 0, K1),
        _mc_particle(second_daughter_pdg, second_mother, K2),
    ]


def _hist_sum(output, name, flow=False):
    return output[name].sum(flow=flow).value


def _frame_cuts(frame, **overrides):
    return _cuts(cos_theta_frames={name: name == frame for name in COS_THETA_FRAMES}, **overrides)


# ---------------------------------------------------------------------------
# Selection helpers
# ---------------------------------------------------------------------------

class TestActiveFrame:
    def test_first_enabled_wins(self):
        assert active_frame({"helicity": False, "production": True, "beam": True}) == "production"

    def test_none_enabled(self):
        with pytest.raises(ValueError, match="No active"):
            active_frame({"helicity": False, "beam": False})

    def test_processor_frame(self):
        cuts = _cuts(cos_theta_frames={"helicity": True, "production": False, "beam": True, "random": False})
        assert HigherMassResonances(cuts=cuts).frame == "helicity"


class TestV0Selection:
    def _v0s(self, **fields):
        record = dict(_v0(K1, 0, 1), **fields)
        return ak.Array([record])

    def _collisions(self):
        return ak.Array([_collision(0.0)])

    def test_lifetime(self):
        v0 = ak.Array([dict(_v0((1.0, 0.0, 0.0), 0, 1), x=3.0, y=4.0, z=0.0)])
        assert v0_lifetime(v0, self._collisions())[0] == pytest.approx(5.0 * MASS_K0S)

    def test_good_v0_passes_every_step(self):
        steps = v0_selection_steps(self._v0s(), self._collisions(), _cuts())
        assert all(bool(mask[0]) for mask in steps.values())

    def test_mass_window(self):
        steps = v0_selection_steps(self._v0s(mK0Short=0.52), self._collisions(), _cuts())
        assert not steps["v0_mass_window"][0]
        assert steps["v0_cos_pa"][0]

    def test_competing_cut_optional(self):
        v0s = self._v0s(mLambda=1.1157)
        assert v0_selection_steps(v0s, self._collisions(), _cuts())["v0_competing_lambda"][0]
        steps = v0_selection_steps(v0s, self._collisions(), _cuts(apply_competing_cut=True))
        assert not steps["v0_competing_lambda"][0]

    def test_radius_window(self):
        steps = v0_selection_steps(self._v0s(v0radius=0.2), self._collisions(), _cuts())
        assert not steps["v0_radius"][0]


class TestDaughterSelection:
    def test_charge(self):
        tracks = ak.Array([_track(1), _track(-1)])
        assert daughter_selection_steps(tracks, +1, _cuts())["daughter_charge"].tolist() == [True, False]
        assert daughter_selection_steps(tracks, -1, _cuts())["daughter_charge"].tolist() == [False, True]

    def test_pid(self):
        tracks = ak.Array([_track(1, nsigma=0.5), _track(1, nsigma=6.0)])
        assert daughter_selection_steps(tracks, +1, _cuts())["daughter_tpc_pid"].tolist() == [True, False]

    def test_global_tracks(self):
        tracks = ak.Array([dict(_track(1), isGlobalTrack=False, tpcNClsFound=10)])
        cuts = _cuts(global_tracks=True)
        assert daughter_selection_steps(tracks, +1, cuts)["daughter_track_quality"].tolist() == [False]
        # TPC cluster cuts apply only without the global-track requirement
        assert daughter_selection_steps(tracks, +1, _cuts())["daughter_track_quality"].tolist() == [False]

    def test_has_tpc(self):
        tracks = ak.Array([dict(_track(1), hasTPC=False)])
        assert daughter_selection_steps(tracks, +1, _cuts())["daughter_track_quality"].tolist() == [True]
        assert daughter_selection_steps(tracks, +1, _cuts(has_tpc=True))["daughter_track_quality"].tolist() == [False]


class TestPairHelpers:
    def test_angular_separation(self):
        k1 = ak.Array([{"eta": 0.1, "phi": 0.2}])
        k2 = ak.Array([{"eta": 0.4, "phi": 0.6}])
        assert angular_separation(k1, k2)[0] == pytest.approx(0.5)

    def test_track_ids_from_offsets(self):
        tracks = ak.Array([[{"pt": 1.0}] * 2, [{"pt": 1.0}] * 3])
        index = ak.Array([[1], [0, 2]])
        assert daughter_track_ids(tracks, index).tolist() == [[1], [2, 4]]

    def test_track_ids_from_global_index(self):
        tracks = ak.Array([[{"globalIndex": 10}, {"globalIndex": 11}], [{"globalIndex": 12}]])
        index = ak.Array([[1], [0]])
        assert daughter_track_ids(tracks, index).tolist() == [[11], [12]]


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------

class TestInit:
    def test_invalid_mode(self):
        with pytest.raises(ValueError, match="Invalid mode 'sim'"):
            HigherMassResonances(mode="sim")

    @pytest.mark.parametrize("mode", RESONANCE_MODES)
    def test_modes_book_histograms(self, mode):
        assert HigherMassResonances(mode=mode).make_output()

    def test_no_frame(self):
        cuts = _cuts(cos_theta_frames={"helicity": False, "production": False, "beam": False, "random": False})
        with pytest.raises(ValueError, match="No active"):
            HigherMassResonances(cuts=cuts)


class TestDataMode:
    @pytest.fixture
    def output(self):
        proc = HigherMassResonances(mode="data", seed=11)
        return proc.process(_data_events())["res_sample"]

    def test_event_cutflow(self, output):
        h = output["cutflow"]["events_check"]["cumulative_unweighted"]
        assert h.values().tolist() == [4, 3, 3, 3, 3]

    def test_v0_cutflow(self, output):
        h = output["cutflow"]["v0_check"]["cumulative_unweighted"]
        assert h.values().tolist() == [6] * 11
        daughters = output["cutflow"]["v0_daughters_check"]["cumulative_unweighted"]
        assert daughters.values().tolist() == [12] * 6

    def test_n_ks(self, output):
        h = output["n_ks_produced"]
        assert h.sum().value == pytest.approx(3.0)
        assert h.project("n_ks").values()[2] == pytest.approx(3.0)

    def test_same_event_pairs(self, output):
        assert _hist_sum(output, "glue_inv_mass_ds") == pytest.approx(3.0)

    def test_rotational_background(self, output):
        assert _hist_sum(output, "glue_inv_mass_rot") == pytest.approx(3.0 * CUTS["resonances"]["rotations"])

    def test_mixed_event_pairs(self, output):
        # three events in one mixing bin: 3 event pairs x 2 x 2 K0S
        assert _hist_sum(output, "glue_inv_mass_me") == pytest.approx(12.0)

    def test_pair_mass(self, output):
        h = output["glue_inv_mass_ds"].project("mass")
        px, py, pz, e = _four_vector_sum(K1, K2)
        mass = np.sqrt(e**2 - px**2 - py**2 - pz**2)
        assert h.values()[h.axes["mass"].index(mass)] == pytest.approx(3.0)

    def test_failing_v0_not_paired(self):
        output = HigherMassResonances(seed=11).process(_data_events(extra_bad_v0=True))["res_sample"]
        assert output["cutflow"]["v0_check"]["cumulative_unweighted"].values()[0] == 7
        assert output["cutflow"]["v0_check"]["cumulative_unweighted"].values()[-1] == 6
        assert _hist_sum(output, "glue_inv_mass_ds") == pytest.approx(3.0)

    def test_shared_daughter_rejected(self):
        events = _data_events(pos_z=(1.0,))
        v0 = ak.to_list(events.V0)
        v0[0][1]["posTrackIndex"] = 0
        events.V0 = ak.Array(v0)
        output = HigherMassResonances(seed=11).process(events)["res_sample"]
        assert _hist_sum(output, "glue_inv_mass_ds") == pytest.approx(0.0)

    def test_more_than_two_k0s(self):
        events = _data_events(pos_z=(1.0,))
        v0 = ak.to_list(events.V0)
        tracks = ak.to_list(events.Track)
        v0[0].append(_v0(_rotated(K2, 2.0), 4, 5, pos_z=1.0))
        tracks[0] += [_track(1), _track(-1)]
        events.V0 = ak.Array(v0)
        events.Track = ak.Array(tracks)

        two_only = HigherMassResonances(seed=11).process(events)["res_sample"]
        assert _hist_sum(two_only, "glue_inv_mass_ds") == pytest.approx(0.0)
        every_pair = HigherMassResonances(cuts=_cuts(select_two_ks_only=False), seed=11).process(events)["res_sample"]
        assert _hist_sum(every_pair, "glue_inv_mass_ds") == pytest.approx(3.0)

    def test_mixing_needs_same_bin(self):
        events = _data_events(pos_z=(1.0, -5.0))
        output = HigherMassResonances(seed=11).process(events)["res_sample"]
        assert _hist_sum(output, "glue_inv_mass_me") == pytest.approx(0.0)

    def test_qa_histograms(self):
        cuts = _cuts(qa_events=True, qa_v0=True, qa_pid=True)
        output = HigherMassResonances(cuts=cuts, seed=11).process(_data_events())["res_sample"]
        assert _hist_sum(output, "vertex_z") == pytest.approx(3.0)
        assert _hist_sum(output, "mass_k0s_selected") == pytest.approx(6.0)
        assert _hist_sum(output, "angular_separation") == pytest.approx(3.0)
        assert _hist_sum(output, "nsigma_pos_pion_after") == pytest.approx(6.0)

    def test_reproducible_with_seed(self):
        a = HigherMassResonances(seed=5).process(_data_events())["res_sample"]
        b = HigherMassResonances(seed=5).process(_data_events())["res_sample"]
        assert np.array_equal(a["glue_inv_mass_rot"].values(), b["glue_inv_mass_rot"].values())


class TestFrames:
    @pytest.mark.parametrize("frame", COS_THETA_FRAMES)
    def test_pair_counts_in_every_frame(self, frame):
        proc = HigherMassResonances(mode="data", cuts=_frame_cuts(frame), seed=11)
        assert proc.frame == frame
        output = proc.process(_data_events())["res_sample"]
        assert _hist_sum(output, "glue_inv_mass_ds", flow=True) == pytest.approx(3.0)
        assert _hist_sum(output, "glue_inv_mass_rot", flow=True) == pytest.approx(3.0 * CUTS["resonances"]["rotations"])
        assert _hist_sum(output, "glue_inv_mass_me", flow=True) == pytest.approx(12.0)

    @pytest.mark.parametrize("frame", ["production", "random"])
    def test_rotation_keeps_unrotated_cos_theta(self, frame):
        cuts = _frame_cuts(frame, rotations=1, cos_bins=[200, -1.0, 1.0])
        output = HigherMassResonances(mode="data", cuts=cuts, seed=11).process(_data_events(pos_z=(1.0,)))["res_sample"]
        same_event = output["glue_inv_mass_ds"].project("cos_theta").values(flow=True)
        rotated = output["glue_inv_mass_rot"].project("cos_theta").values(flow=True)
        assert np.array_equal(same_event, rotated)

    def test_helicity_rotation_recomputes_cos_theta(self):
        # rotations by pi (+- a negligible window) flip the first K0S in the transverse plane
        cuts = _frame_cuts("helicity", rotations=1, rotational_cut=1e6, cos_bins=[200, -1.0, 1.0])
        output = HigherMassResonances(mode="data", cuts=cuts, seed=11).process(_data_events(pos_z=(1.0,)))["res_sample"]

        d1 = momentum4d(np.array([K1[0]]), np.array([K1[1]]), np.array([K1[2]]), MASS_K0S)
        d2 = momentum4d(np.array([K2[0]]), np.array([K2[1]]), np.array([K2[2]]), MASS_K0S)
        d1_rot = rotate_z(d1, np.array([np.pi]))
        expected = cos_theta_star(d1 + d2, d1, "helicity")[0]
        expected_rot = cos_theta_star(d1_rot + d2, d1_rot, "helicity")[0]

        same_event = output["glue_inv_mass_ds"].project("cos_theta")
        rotated = output["glue_inv_mass_rot"].project("cos_theta")
        axis = rotated.axes["cos_theta"]
        assert axis.index(expected) != axis.index(expected_rot)
        assert same_event.values()[axis.index(expected)] == pytest.approx(1.0)
        assert rotated.values()[axis.index(expected_rot)] == pytest.approx(1.0)
        assert rotated.sum().value == pytest.approx(1.0)

        mass = output["glue_inv_mass_rot"].project("mass")
        assert mass.values()[mass.axes["mass"].index((d1_rot + d2).mass[0])] == pytest.approx(1.0)


class TestGenMode:
    def _events(self):
        return MockEvents(
            McCollision=ak.Array([{"posZ": 1.0}, {"posZ": 2.0}]),
            Collision=ak.Array([
                [{"centFT0M": 30.0, "noTimeFrameBorder": True, "isTriggerTVX": True}],
                [],
            ]),
            McParticle=ak.Array([
                _resonance_family(),
                _resonance_family(second_daughter_pdg=211),
            ]),
        )

    def test_cutflows(self):
        output = HigherMassResonances(mode="gen").process(self._events())["res_sample"]
        events = output["cutflow"]["events_check"]["cumulative_unweighted"]
        assert events.values().tolist() == [2, 2, 1]
        particles = output["cutflow"]["particles_check"]["cumulative_unweighted"]
        assert particles.values().tolist() == [6, 2, 2, 2, 1]

    def test_resonance_filled(self):
        output = HigherMassResonances(mode="gen").process(self._events())["res_sample"]
        assert _hist_sum(output, "gen_resonance") == pytest.approx(1.0)
        assert _hist_sum(output, "gen_resonance_2") == pytest.approx(1.0)
        px, py, pz, e = _four_vector_sum(K1, K2)
        h = output["gen_mass"].project("mc_mass")
        assert h.values()[h.axes["mc_mass"].index(np.sqrt(e**2 - px**2 - py**2 - pz**2))] == pytest.approx(1.0)

    def test_multiplicity_from_reco_collision(self):
        output = HigherMassResonances(mode="gen").process(self._events())["res_sample"]
        h = output["gen_resonance"].project("multiplicity")
        assert h.values()[h.axes["multiplicity"].index(30.0)] == pytest.approx(1.0)

    def test_only_reconstructed_collisions(self):
        cuts = _cuts(all_gen_collisions=False)
        events = self._events()
        events.Collision = ak.Array([[], [{"centFT0M": 30.0, "noTimeFrameBorder": True, "isTriggerTVX": True}]])
        output = HigherMassResonances(mode="gen", cuts=cuts).process(events)["res_sample"]
        assert _hist_sum(output, "gen_resonance") == pytest.approx(0.0)


class TestRecMode:
    def _events(self, second_mother=0):
        v0s = [_v0(K1, 0, 1, mc_index=1), _v0(K2, 2, 3, mc_index=2)]
        return MockEvents(
            Collision=ak.Array([_collision(1.0, cent=30.0)]),
            V0=ak.Array([v0s]),
            Track=ak.Array([[_track(1), _track(-1), _track(1), _track(-1)]]),
            McParticle=ak.Array([_resonance_family(second_mother=second_mother)]),
        )

    def test_matched_pair(self):
        output = HigherMassResonances(mode="rec").process(self._events())["res_sample"]
        h = output["cutflow"]["pairs_checkrec"]["cumulative_unweighted"]
        assert h.values().tolist() == [1] * 10
        assert _hist_sum(output, "rec_resonance_pt1") == pytest.approx(1.0)
        assert _hist_sum(output, "rec_resonance_pt2") == pytest.approx(1.0)

    def test_event_cutflow(self):
        output = HigherMassResonances(mode="rec").process(self._events())["res_sample"]
        h = output["cutflow"]["events_checkrec"]["cumulative_unweighted"]
        assert h.values().tolist() == [1, 1, 1, 1]
        assert _hist_sum(output, "rec_multiplicity") == pytest.approx(1.0)

    def test_different_mothers_rejected(self):
        output = HigherMassResonances(mode="rec").process(self._events(second_mother=-1))["res_sample"]
        h = output["cutflow"]["pairs_checkrec"]["cumulative_unweighted"]
        assert h.values()[-1] == 0
        assert _hist_sum(output, "rec_resonance_pt1") == pytest.approx(0.0)
