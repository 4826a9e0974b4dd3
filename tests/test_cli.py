"""Tests for the command-line interface."""

import json

import soundfile as sf

from keyscope.cli import main


class TestCLI:
    def test_missing_file(self, tmp_path, capsys):
        assert main([str(tmp_path / "missing.wav")]) == 1
        assert "not found" in capsys.readouterr().err

    def test_prints_summary_and_writes_json(self, tmp_path, capsys, click_track):
        y, sr = click_track
        audio = tmp_path / "clicks.wav"
        sf.write(str(audio), y, sr, subtype="FLOAT")
        out = tmp_path / "result.json"

        code = main([str(audio), "--no-engine", "-o", str(out), "--debug"])

        assert code == 0
        assert "BPM: 120" in capsys.readouterr().out
        with open(out) as f:
            data = json.load(f)
        assert data["bpm"] == 120
        assert data["debug"]["engine"]["status"] == "disabled"

    def test_whole_file_and_bpm_range(self, tmp_path, capsys, click_track):
        y, sr = click_track
        audio = tmp_path / "clicks.wav"
        sf.write(str(audio), y, sr, subtype="FLOAT")
        out = tmp_path / "result.json"

        code = main([
            str(audio), "--no-engine", "--max-seconds", "0",
            "--min-bpm", "100", "--max-bpm", "140", "-o", str(out),
        ])

        assert code == 0
        with open(out) as f:
            data = json.load(f)
        assert data["bpm"] == 120
        assert "debug" not in data
