"""Tests for bin/run_analysis.py helpers."""

import json
import os
import sys
from types import SimpleNamespace

import pytest

import coffea.processor as coffea_processor

from hicoffea.d0_selector import D0Selector
from hicoffea.jet_recoil import JetHadronRecoil
from hicoffea.resonances import HigherMassResonances


BIN_DIR = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))),
    "bin",
)
if BIN_DIR not in sys.path:
    sys.path.insert(0, BIN_DIR)

import run_analysis


def _args(**overrides):
    args = SimpleNamespace(
        task="jet_recoil",
        mode=None,
        fileset="fileset.json",
        executor="dask",
        max_workers=None,
        threads_per_worker=None,
        chunksize=100_000,
        maxchunks=None,
        maxfiles=None,
        treename="Events",
    )
    for key, value in overrides.items():
        setattr(args, key, value)
    return args


def _write_fileset(tmp_path):
    path = tmp_path / "fileset.json"
    path.write_text(json.dumps({
        "LHC22o_pass7": {
            "files": {"AO2D_1.root": "Events", "AO2D_2.root": "Events"},
            "metadata": {"sample": "LHC22o", "process": "pp_data"},
        },
    }))
    return path


def test_process_fileset_runner_options(monkeypatch):
    captured = {}

    class FakeIterativeExecutor:
        pass

    class FakeRunner:
        def __init__(self, **kwargs):
            captured.update(kwargs)

        def preprocess(self, fileset, treename):
            captured["preprocess_treename"] = treename
            return {"preprocessed": True}

        def __call__(self, preproc, treename, processor_instance):
            captured["processor"] = processor_instance
            return {"ds": {"h": 1}}, {"chunks": 0}

    monkeypatch.setattr(coffea_processor, "IterativeExecutor", FakeIterativeExecutor)
    monkeypatch.setattr(coffea_processor, "Runner", FakeRunner)

    processor = object()
    hists = run_analysis._process_fileset(
        _args(executor="iterative", chunksize=1000, treename="O2tree"), fileset={}, processor=processor,
    )

    assert hists == {"ds": {"h": 1}}
    assert captured["skipbadfiles"] is True
    assert captured["chunksize"] == 1000
    assert captured["preprocess_treename"] == "O2tree"
    assert captured["processor"] is processor
    assert isinstance(captured["executor"], FakeIterativeExecutor)


def test_make_executor_futures_default_workers(monkeypatch):
    class FakeFuturesExecutor:
        def __init__(self, workers):
            self.workers = workers

    monkeypatch.setattr(coffea_processor, "FuturesExecutor", FakeFuturesExecutor)
    assert run_analysis._make_executor(_args(executor="futures")).workers == 4
    assert run_analysis._make_executor(_args(executor="futures", max_workers=2)).workers == 2


def test_dump_dask_diagnostics_writes_file(tmp_path):
    class FakeClient:
        def scheduler_info(self):
            return {"workers": {"tcp://worker-a:1234": {}, "tcp://worker-b:1234": {}}}

        def get_scheduler_logs(self, n=300):
            return [("info", "scheduler log line")]

        def get_worker_logs(self, n=300):
            return {
                "tcp://worker-a:1234": [("warning", "worker-a log line")],
                "tcp://worker-b:1234": "worker-b raw log",
            }

    out = run_analysis._dump_dask_diagnostics(
        FakeClient(),
        label="unit_test",
        out_dir=tmp_path,
        max_entries=5,
    )
    assert out is not None
    text = out.read_text(encoding="utf-8")
    assert "Scheduler workers visible at failure: 2" in text
    assert "scheduler log line" in text
    assert "worker-a log line" in text
    assert "worker-b raw log" in text


def test_dump_dask_diagnostics_records_client_errors(tmp_path):
    class BrokenClient:
        def scheduler_info(self):
            raise OSError("scheduler gone")

        def get_scheduler_logs(self, n=300):
            raise OSError("scheduler gone")

        def get_worker_logs(self, n=300):
            return None

    out = run_analysis._dump_dask_diagnostics(BrokenClient(), label="broken", out_dir=tmp_path)
    text = out.read_text(encoding="utf-8")
    assert "Failed to query scheduler_info" in text
    assert "Failed to fetch scheduler logs" in text


def test_format_dask_log_entries():
    assert run_analysis._format_dask_log_entries(None) == []
    assert run_analysis._format_dask_log_entries("a\nb") == ["a", "b"]
    assert run_analysis._format_dask_log_entries([("info", "x"), "y"]) == ["[info] x", "y"]


def test_validate_defaults_mode_to_first():
    args = _args(task="resonances")
    run_analysis.validate_arguments(args)
    assert args.mode == "data"


def test_validate_rejects_unknown_mode():
    with pytest.raises(ValueError, match="Invalid mode for task"):
        run_analysis.validate_arguments(_args(task="d0_selector", mode="gen"))


def test_validate_requires_fileset():
    with pytest.raises(ValueError, match="--fileset is required"):
        run_analysis.validate_arguments(_args(fileset=None))


@pytest.mark.parametrize("field", ["max_workers", "chunksize", "maxchunks", "maxfiles"])
def test_validate_rejects_non_positive(field):
    with pytest.raises(ValueError, match="must be a positive integer"):
        run_analysis.validate_arguments(_args(**{field: 0}))


def test_validate_threads_only_with_dask():
    with pytest.raises(ValueError, match="only valid with the dask executor"):
        run_analysis.validate_arguments(_args(executor="futures", threads_per_worker=2))


def test_build_processor_per_task():
    cuts = run_analysis.load_cuts("jet_recoil")
    assert isinstance(run_analysis.build_processor("jet_recoil", "mcp", cuts), JetHadronRecoil)
    assert isinstance(
        run_analysis.build_processor("d0_selector", "data", run_analysis.load_cuts("d0_selector")), D0Selector,
    )
    proc = run_analysis.build_processor(
        "resonances", "gen", run_analysis.load_cuts("resonances"), seed=3, sqrt_s=5360.0,
    )
    assert isinstance(proc, HigherMassResonances)
    assert proc._sqrt_s == 5360.0


def test_build_processor_unknown_task():
    with pytest.raises(ValueError, match="Invalid task"):
        run_analysis.build_processor("v0_qa", "data", {})


def test_main_list_tasks(capsys):
    assert run_analysis.main(["--list-tasks"]) == 0
    assert capsys.readouterr().out.split() == ["jet_recoil", "d0_selector", "resonances"]


def test_main_requires_task_and_period():
    with pytest.raises(SystemExit):
        run_analysis.main([])


def test_main_preflight_only(tmp_path, monkeypatch):
    def _fail(*args, **kwargs):
        raise AssertionError("processing must not run in preflight mode")

    monkeypatch.setattr(run_analysis, "_process_fileset", _fail)
    fileset = _write_fileset(tmp_path)
    assert run_analysis.main(["d0_selector", "ALICE3_pp_14TeV", "--fileset", str(fileset), "--preflight-only"]) == 0


def test_main_runs_and_saves(tmp_path, monkeypatch):
    captured = {}

    def _fake_process(args, fileset, processor, *, client=None):
        captured["processor"] = processor
        captured["datasets"] = list(fileset)
        return {"LHC22o_pass7": {}}

    def _fake_save(hists, args):
        captured["saved"] = (hists, args.mode)
        return tmp_path / "out.root"

    import hicoffea.save_hists as save_hists_mod

    monkeypatch.setattr(run_analysis, "_process_fileset", _fake_process)
    monkeypatch.setattr(save_hists_mod, "save_histograms", _fake_save)
    fileset = _write_fileset(tmp_path)
    argv = ["resonances", "PbPb_5p36TeV", "--fileset", str(fileset), "--executor", "iterative", "--seed", "7"]

    assert run_analysis.main(argv) == 0
    assert isinstance(captured["processor"], HigherMassResonances)
    assert captured["processor"]._sqrt_s == 5360.0
    assert captured["datasets"] == ["LHC22o_pass7"]
    assert captured["saved"][1] == "data"


def test_main_debug_skips_saving(tmp_path, monkeypatch):
    import hicoffea.save_hists as save_hists_mod

    monkeypatch.setattr(run_analysis, "_process_fileset", lambda *a, **k: {})
    monkeypatch.setattr(save_hists_mod, "save_histograms", lambda *a, **k: pytest.fail("should not save"))
    fileset = _write_fileset(tmp_path)
    argv = ["jet_recoil", "pp_13p6TeV", "--fileset", str(fileset), "--executor", "iterative", "--debug"]
    assert run_analysis.main(argv) == 0


def test_main_applies_config(tmp_path, monkeypatch):
    captured = {}

    def _fake_process(args, fileset, processor, *, client=None):
        captured["processor"] = processor
        return {}

    monkeypatch.setattr(run_analysis, "_process_fileset", _fake_process)
    config = tmp_path / "cuts.json"
    config.write_text(json.dumps({"frac_sig": 0.2}))
    fileset = _write_fileset(tmp_path)
    argv = [
        "jet_recoil", "pp_13p6TeV", "--fileset", str(fileset), "--config", str(config),
        "--executor", "iterative", "--debug", "--mode", "mcp_weighted",
    ]
    assert run_analysis.main(argv) == 0
    assert captured["processor"].mode == "mcp_weighted"
    assert captured["processor"]._cuts["frac_sig"] == 0.2
