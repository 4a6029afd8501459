"""Lightweight configuration for the hicoffea analysis tasks.

Keep this module dependency-free so it can be shipped to Dask workers cheaply.
"""

import math

# --- Physics constants (GeV) ---------------------------------------------------
MASS_K0S = 0.497611
MASS_LAMBDA = 1.115683
MASS_D0 = 1.86484
MASS_PION = 0.13957039
MASS_KAON = 0.493677
MASS_PROTON = 0.93827208

PDG_K0S = 310
PDG_PION = 211
PDG_KAON = 321

# Bit 0 of HfCand2Prong.hfflag marks the D0 -> pi K decay hypothesis.
HF_FLAG_D0_TO_PI_K = 0

# --- Processor modes (the first one is the default) ----------------------------
JET_RECOIL_MODES = (
    "data", "mcd", "mcd_weighted", "mcp", "mcp_weighted", "matched", "matched_weighted",
)
D0_SELECTOR_MODES = ("data",)
RESONANCE_MODES = ("data", "gen", "rec")

# --- Selection name constants (single source of truth for string keys) ---------
#
# Used for PackedSelection.add() names and cutflow bookkeeping.
SEL_VERTEX_Z = "vertex_z"
SEL_NO_TF_BORDER = "no_time_frame_border"
SEL_EVENT_SELECTION = "event_selection"
SEL_SEL8 = "sel8"
SEL_RCT = "rct_flags"
SEL_HAS_MC = "has_mc_collision"

# Per-V0 selection chain, in the order the cutflow reports it.
SEL_V0_DCA_TO_PV = "v0_dca_daughters_to_pv"
SEL_V0_DCA_V0_TO_PV = "v0_dca_to_pv"
SEL_V0_RAPIDITY = "v0_rapidity"
SEL_V0_PT = "v0_pt"
SEL_V0_DCA_DAUGHTERS = "v0_dca_daughters"
SEL_V0_COS_PA = "v0_cos_pa"
SEL_V0_RADIUS = "v0_radius"
SEL_V0_LIFETIME = "v0_lifetime"
SEL_V0_COMPETING = "v0_competing_lambda"
SEL_V0_MASS = "v0_mass_window"

SEL_DAU_ACCEPTANCE = "daughter_acceptance"
SEL_DAU_TRACK_QUALITY = "daughter_track_quality"
SEL_DAU_CHARGE = "daughter_charge"
SEL_DAU_ETA = "daughter_eta"
SEL_DAU_PID = "daughter_tpc_pid"

# MC generator-level resonance chain
SEL_MC_VERTEX_Z = "mc_vertex_z"
SEL_RECO_SELECTED = "reconstructed_and_selected"
SEL_MC_PDG = "mc_pdg"
SEL_MC_RAPIDITY = "mc_rapidity"
SEL_MC_TWO_DAUGHTERS = "mc_two_daughters"
SEL_MC_KS_DAUGHTERS = "mc_k0s_daughters"

# MC reconstructed K0S K0S pairs, in cutflow order
SEL_PAIR_MC_MATCHED = "pair_mc_matched"
SEL_PAIR_DAU_MATCHED = "pair_daughters_mc_matched"
SEL_PAIR_DAU_SELECTED = "pair_daughters_selected"
SEL_PAIR_V0_SELECTED = "pair_v0_selected"
SEL_PAIR_K0S = "pair_both_k0s"
SEL_PAIR_MOTHER_PDG = "pair_mother_pdg"
SEL_PAIR_SAME_MOTHER = "pair_same_mother"
SEL_PAIR_GENERATOR = "pair_produced_by_generator"
SEL_PAIR_MOTHER_RAPIDITY = "pair_mother_rapidity"

SEL_HF_FLAG = "hf_flag"
SEL_TOPOLOGICAL = "topological"
SEL_CONJUGATE = "conjugate"

# --- Run condition table (RCT) quality flags -------------------------------------
#
# Bit positions of the bad-quality flags packed into Collision.rctFlags.
RCT_FLAG_BITS = {
    "CPVBad": 0,
    "EMCBad": 1,
    "EMCLimAccMCRepr": 2,
    "FDDBad": 3,
    "FT0Bad": 4,
    "FV0Bad": 5,
    "HMPBad": 6,
    "ITSBad": 7,
    "ITSLimAccMCRepr": 8,
    "MCHBad": 9,
    "MCHLimAccMCRepr": 10,
    "MFTBad": 11,
    "MFTLimAccMCRepr": 12,
    "MIDBad": 13,
    "MIDLimAccMCRepr": 14,
    "PHSBad": 15,
    "TOFBad": 16,
    "TOFLimAccMCRepr": 17,
    "TPCBadTracking": 18,
    "TPCBadPID": 19,
    "TPCLimAccMCRepr": 20,
    "TRDBad": 21,
    "ZDCBad": 22,
}

# Flags that must be clear for each quality label.
RCT_LABELS = {
    "CBT": ["FT0Bad", "ITSBad", "TPCBadTracking"],
    "CBT_hadronPID": ["FT0Bad", "ITSBad", "TPCBadTracking", "TPCBadPID", "TOFBad"],
    "CBT_electronPID": ["FT0Bad", "ITSBad", "TPCBadTracking", "TPCBadPID", "TRDBad"],
    "CBT_calo": ["FT0Bad", "ITSBad", "TPCBadTracking", "EMCBad"],
    "CBT_muon": ["FT0Bad", "MCHBad", "MIDBad"],
    "CBT_muon_glo": ["FT0Bad", "ITSBad", "MCHBad", "MFTBad", "MIDBad"],
}

# --- Physics thresholds (single source of truth for analysis cuts) -------------
JET_RECOIL_CUTS = {
    "ev_sel": "sel8",
    "trk_sel": "globalTracks",
    "vertex_z_cut": 10.0,
    "frac_sig": 0.5,
    "trk_pt_min": 0.15,
    "trk_pt_max": 100.0,
    "trk_eta_cut": 0.9,
    "jet_r": 0.4,
    "pthat_exponent": 6.0,
    "pthat_max_mcd": 999.0,
    "pthat_max_mcp": 999.0,
    "tt_ref": [5.0, 7.0],
    "tt_sig": [20.0, 50.0],
    "recoil_region": 0.6,
    "hist_jet_pt": 100,
    # Coarser binning for the 4D jet histogram (dense storage)
    "jet_eta_bins": 20,
    "jet_phi_bins": 20,
    "jet_rho_area_bins": 30,
}

# D0 pt bin edges and the per-bin cut table (ALICE 3 barrel defaults).
D0_PT_BINS = [
    0.0, 0.5, 1.0, 1.5, 2.0, 2.5, 3.0, 3.5, 4.0, 4.5, 5.0, 5.5, 6.0,
    6.5, 7.0, 7.5, 8.0, 9.0, 10.0, 12.0, 16.0, 20.0, 24.0, 36.0, 50.0, 100.0,
]

D0_CUT_COLUMNS = [
    "mass", "dca", "cos_theta_star", "pt_kaon", "pt_pion", "d0_kaon", "d0_pion",
    "d0d0", "cpa", "cpa_xy", "norm_decay_length_xy", "decay_length",
    "decay_length_xy", "min_decay_length",
]

#             m    dca    cos*  ptK  ptPi  d0K  d0pi  d0d0      cpa   cpaXY normDLXY DL  DLXY minDL
D0_CUT_TABLE = [
    [0.400, 0.035, 0.8, 0.5, 0.5, 0.1, 0.1, -0.00005, 0.80, 0.0, 0.0, 10.0, 10.0, 0.06],  # 0   < pt < 0.5
    [0.400, 0.035, 0.8, 0.5, 0.5, 0.1, 0.1, -0.00005, 0.80, 0.0, 0.0, 10.0, 10.0, 0.06],  # 0.5 < pt < 1
    [0.400, 0.030, 0.8, 0.4, 0.4, 0.1, 0.1, -0.00025, 0.80, 0.0, 0.0, 10.0, 10.0, 0.06],  # 1   < pt < 1.5
    [0.400, 0.030, 0.8, 0.4, 0.4, 0.1, 0.1, -0.00025, 0.80, 0.0, 0.0, 10.0, 10.0, 0.06],  # 1.5 < pt < 2
    [0.400, 0.030, 0.8, 0.7, 0.7, 0.1, 0.1, -0.00020, 0.90, 0.0, 0.0, 10.0, 10.0, 0.06],  # 2   < pt < 2.5
    [0.400, 0.030, 0.8, 0.7, 0.7, 0.1, 0.1, -0.00020, 0.90, 0.0, 0.0, 10.0, 10.0, 0.06],  # 2.5 < pt < 3
    [0.400, 0.030, 0.8, 0.7, 0.7, 0.1, 0.1, -0.00012, 0.85, 0.0, 0.0, 10.0, 10.0, 0.06],  # 3   < pt < 3.5
    [0.400, 0.030, 0.8, 0.7, 0.7, 0.1, 0.1, -0.00012, 0.85, 0.0, 0.0, 10.0, 10.0, 0.06],  # 3.5 < pt < 4
    [0.400, 0.030, 0.8, 0.7, 0.7, 0.1, 0.1, -0.00008, 0.85, 0.0, 0.0, 10.0, 10.0, 0.06],  # 4   < pt < 4.5
    [0.400, 0.030, 0.8, 0.7, 0.7, 0.1, 0.1, -0.00008, 0.85, 0.0, 0.0, 10.0, 10.0, 0.06],  # 4.5 < pt < 5
    [0.400, 0.030, 0.8, 0.7, 0.7, 0.1, 0.1, -0.00008, 0.85, 0.0, 0.0, 10.0, 10.0, 0.06],  # 5   < pt < 5.5
    [0.400, 0.030, 0.8, 0.7, 0.7, 0.1, 0.1, -0.00008, 0.85, 0.0, 0.0, 10.0, 10.0, 0.06],  # 5.5 < pt < 6
    [0.400, 0.030, 0.8, 0.7, 0.7, 0.1, 0.1, -0.00008, 0.85, 0.0, 0.0, 10.0, 10.0, 0.06],  # 6   < pt < 6.5
    [0.400, 0.030, 0.8, 0.7, 0.7, 0.1, 0.1, -0.00008, 0.85, 0.0, 0.0, 10.0, 10.0, 0.06],  # 6.5 < pt < 7
    [0.400, 0.030, 0.8, 0.7, 0.7, 0.1, 0.1, -0.00007, 0.85, 0.0, 0.0, 10.0, 10.0, 0.06],  # 7   < pt < 7.5
    [0.400, 0.030, 0.8, 0.7, 0.7, 0.1, 0.1, -0.00007, 0.85, 0.0, 0.0, 10.0, 10.0, 0.06],  # 7.5 < pt < 8
    [0.400, 0.030, 0.9, 0.7, 0.7, 0.1, 0.1, -0.00005, 0.85, 0.0, 0.0, 10.0, 10.0, 0.06],  # 8   < pt < 9
    [0.400, 0.030, 0.9, 0.7, 0.7, 0.1, 0.1, -0.00005, 0.85, 0.0, 0.0, 10.0, 10.0, 0.06],  # 9   < pt < 10
    [0.400, 0.030, 0.9, 0.7, 0.7, 0.1, 0.1, -0.00005, 0.85, 0.0, 0.0, 10.0, 10.0, 0.06],  # 10  < pt < 12
    [0.400, 0.030, 1.0, 0.7, 0.7, 0.1, 0.1, 0.0001, 0.85, 0.0, 0.0, 10.0, 10.0, 0.06],  # 12  < pt < 16
    [0.400, 0.030, 1.0, 0.7, 0.7, 0.1, 0.1, 0.00999999, 0.85, 0.0, 0.0, 10.0, 10.0, 0.06],  # 16  < pt < 20
    [0.400, 0.030, 1.0, 0.7, 0.7, 0.1, 0.1, 0.00999999, 0.85, 0.0, 0.0, 10.0, 10.0, 0.06],  # 20  < pt < 24
    [0.400, 0.030, 1.0, 0.7, 0.7, 0.1, 0.1, 0.00999999, 0.85, 0.0, 0.0, 10.0, 10.0, 0.06],  # 24  < pt < 36
    [0.400, 0.030, 1.0, 0.7, 0.7, 0.1, 0.1, 0.00999999, 0.85, 0.0, 0.0, 10.0, 10.0, 0.06],  # 36  < pt < 50
    [0.400, 0.030, 1.0, 0.6, 0.6, 0.1, 0.1, 0.00999999, 0.80, 0.0, 0.0, 10.0, 10.0, 0.06],  # 50  < pt < 100
]

D0_SELECTOR_CUTS = {
    "pt_cand_min": 0.0,
    "pt_cand_max": 50.0,
    "n_sigma_tof_max": 3.0,
    "n_sigma_rich_max": 3.0,
    "n_sigma_tof_combined_max": 3.0,
    "pid_momentum_pion": 0.6,
    "pid_momentum_kaon": 2.0,
    "pt_bins": D0_PT_BINS,
    "cuts": D0_CUT_TABLE,
}

RESONANCE_CUTS = {
    # Event selection
    "cut_vertex_z": 10.0,
    "eta_cut": 0.8,
    "pt_cut": 0.2,
    "time_frame_evsel": True,
    "require_rct": True,
    "rct_label": "CBT_hadronPID",
    "rct_limited_acceptance_as_bad": True,
    "rct_zdc_check": False,
    "mult_ft0m": True,
    # V0 selection
    "dca_v0_daughters_max": 1.0,
    "dca_pos_to_pv": 0.06,
    "dca_neg_to_pv": 0.06,
    "apply_dca_v0_to_pv": False,
    "dca_v0_to_pv_max": 1.0,
    "v0_pt_min": 0.0,
    "v0_cpa_min": 0.97,
    "v0_radius_min": 0.5,
    "v0_radius_max": 200.0,
    "v0_lifetime_max": 15.0,
    "ks_mass_window_sigma": 4.0,
    "ks_width": 0.005,
    "ks_rapidity": 0.5,
    "apply_competing_cut": False,
    "competing_lambda_window": 0.005,
    # Daughter track selection
    "has_tpc": False,
    "global_tracks": False,
    "tpc_crossed_rows": 70,
    "tpc_crossed_rows_over_findable": 0.8,
    "tpc_ncls_min": 70,
    "daughter_eta": 0.8,
    "daughter_nsigma": 5.0,
    # Pairing
    "apply_ang_sep_cut": False,
    "ang_sep_cut": 0.01,
    "select_two_ks_only": True,
    "cos_theta_frames": {
        "helicity": False,
        "production": False,
        "beam": True,
        "random": False,
    },
    "rotations": 3,
    "rotational_cut": 10,
    "rapidity_pair": 0.5,
    # Event mixing
    "n_mixed_events": 5,
    "mix_vz_bins": [10, -10.0, 10.0],
    "mix_mult_bins": [20, 0.0, 100.0],
    # MC
    "pdg_codes": [10331, 335, 115, 10221, 9030221],
    "select_mc_particle": 1,
    "apply_rapidity_mc": True,
    "apply_pair_rapidity_gen": False,
    "apply_pair_rapidity_rec": False,
    "all_gen_collisions": True,
    "tvx_evsel": True,
    # QA switches
    "qa_v0": False,
    "qa_pid": False,
    "qa_events": False,
    "correlation_2d": True,
    # Binning (dense storage, keep it coarse)
    "mult_bins": [0.0, 5.0, 10.0, 30.0, 50.0, 70.0, 100.0, 110.0, 150.0],
    "pt_bins": [20, 0.0, 20.0],
    "mass_bins": [70, 0.9, 3.0],
    "cos_bins": [10, -1.0, 1.0],
    "phi_bins": [7, 0.0, 7.0],
    "ks_mass_bins": [200, 0.45, 0.55],
}

CUTS = {
    "jet_recoil": JET_RECOIL_CUTS,
    "d0_selector": D0_SELECTOR_CUTS,
    "resonances": RESONANCE_CUTS,
}

TWO_PI = 2.0 * math.pi
