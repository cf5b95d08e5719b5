"""
Command-line interface smoke tests.
"""

import json

import pytest
import yaml

from tapverif.cli import main


def test_show_config(capsys):
    assert main(["show-config"]) == 0
    shown = yaml.safe_load(capsys.readouterr().out)
    assert shown["protocol"]["ir_width"] == 4
    assert shown["protocol"]["instructions"]["BYPASS"]["code"] == 15


def test_run_basic_as_json(capsys):
    assert main(["run", "--scenario", "basic", "--json"]) == 0
    report = json.loads(capsys.readouterr().out)
    (scenario,) = report["scenarios"]
    assert scenario["name"] == "basic" and scenario["status"] == "passed"
    assert report["summary"]["transactions"] == scenario["transactions"]


def test_run_writes_report_file(tmp_path, capsys):
    out = tmp_path / "report.json"
    assert main(["run", "--scenario", "compliance", "--out", str(out)]) == 0
    assert "PASS" in capsys.readouterr().out
    assert json.loads(out.read_text())["scenarios"][0]["name"] == "compliance"


def test_run_with_injection(tmp_path, capsys):
    profile = tmp_path / "seeded.yaml"
    profile.write_text("injection:\n  seed: 9\n")
    code = main(["--config", str(profile), "run", "--inject-rate", "20", "--json"])
    report = json.loads(capsys.readouterr().out)
    assert [s["name"] for s in report["scenarios"]] == ["error_injection"]
    assert report["summary"]["injection"]["total_injected"] > 0
    assert code == (0 if report["scenarios"][0]["status"] == "passed" else 1)


def test_missing_config_is_exit_code_2(capsys):
    assert main(["--config", "/nonexistent.yaml", "run"]) == 2
    assert "Configuration error" in capsys.readouterr().err


def test_unknown_scenario(capsys):
    with pytest.raises(SystemExit, match="Unknown scenario"):
        main(["run", "--scenario", "nope"])


def test_wave_writes_vcd_and_plot(tmp_path, capsys):
    vcd, png = tmp_path / "tap.vcd", tmp_path / "tap.png"
    assert main(["wave", "--out", str(vcd), "--plot", str(png)]) == 0
    assert vcd.read_text().startswith("$date")
    assert png.exists()
    assert "VCD written" in capsys.readouterr().out


@pytest.mark.parametrize("rate", ["150", "-5"])
def test_out_of_range_inject_rate_is_exit_code_2(rate, capsys):
    assert main(["run", "--inject-rate", rate]) == 2
    assert "Configuration error" in capsys.readouterr().err
