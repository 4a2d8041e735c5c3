"""Tests for the ACX mastering chain. ffmpeg is replaced by a scripted fake."""

import json
import logging
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from audiobookforge.audio.audio_utils import FFmpegError
from audiobookforge.audio.mastering import (
    MasteringEngine,
    build_analysis_filter,
    build_correction_filter,
    build_deess_filter,
    build_room_tone_filter,
    parse_loudnorm_report,
)
from audiobookforge.config import Settings
from audiobookforge.models import ID3Metadata, LoudnormAnalysis, MasteringOptions


def loudnorm_stderr(input_i="-24.00", input_tp="-6.10", input_lra="7.20", input_thresh="-34.50",
                    target_offset="0.50"):
    report = {
        "input_i": input_i,
        "input_tp": input_tp,
        "input_lra": input_lra,
        "input_thresh": input_thresh,
        "output_i": "-20.01",
        "output_tp": "-3.20",
        "output_lra": "6.80",
        "output_thresh": "-30.40",
        "normalization_type": "dynamic",
        "target_offset": target_offset,
    }
    return (
        "Input #0, mp3, from 'in.mp3':\n"
        "  Duration: 00:00:12.50, start: 0.000000, bitrate: 48 kb/s\n"
        "[Parsed_loudnorm_0 @ 0x55d0c8a0] \n"
        + json.dumps(report, indent=1)
        + "\n[out#0/null @ 0x55d0c8b0] video:0kB audio:2344kB\n"
    )


class FakeFFmpeg:
    """Answers analysis passes from ``reports`` and writes a file for every encode."""

    def __init__(self, reports, fail_on=None):
        self.reports = list(reports)
        self.fail_on = fail_on
        self.calls = []

    def __call__(self, args, timeout=None):
        self.calls.append(list(args))
        if self.fail_on and any(self.fail_on in a for a in args):
            raise FFmpegError("ffmpeg exited with code 1: boom", "boom")
        if args[-3:] == ["-f", "null", "-"]:
            return subprocess.CompletedProcess(args, 0, "", self.reports.pop(0))
        Path(args[-1]).write_bytes(b"ID3audio")
        return subprocess.CompletedProcess(args, 0, "", "")


@pytest.fixture
def engine_settings(tmp_path):
    return Settings(work_dir=tmp_path / "work")


@pytest.fixture
def raw_file(tmp_path):
    path = tmp_path / "raw.mp3"
    path.write_bytes(b"raw audio")
    return path


def _master(engine, raw_file, tmp_path, ffmpeg, metadata=None):
    with patch("audiobookforge.audio.mastering.run_ffmpeg", ffmpeg), \
         patch("audiobookforge.audio.mastering.probe_audio_info", return_value={"duration": 12.5}):
        return engine.master(raw_file, tmp_path / "out" / "chapter.mp3", metadata, job_tag="job1")


class TestParseLoudnormReport:
    def test_report_inside_diagnostics(self):
        analysis = parse_loudnorm_report(loudnorm_stderr())

        assert analysis.input_i == -24.0
        assert analysis.input_tp == -6.1
        assert analysis.input_lra == 7.2
        assert analysis.input_thresh == -34.5
        assert analysis.target_offset == 0.5
        assert analysis.output_i == -20.01

    def test_no_json(self):
        assert parse_loudnorm_report("Press [q] to stop\nsize=N/A time=00:00:12.50\n") is None

    def test_unrelated_json_is_skipped(self):
        stderr = '{"streams": []}\n' + loudnorm_stderr()

        assert parse_loudnorm_report(stderr).input_i == -24.0

    def test_silent_input(self):
        assert parse_loudnorm_report(loudnorm_stderr(input_i="-inf", input_thresh="-inf")) is None

    def test_infinite_offset_becomes_zero(self):
        assert parse_loudnorm_report(loudnorm_stderr(target_offset="inf")).target_offset == 0.0

    def test_missing_field(self):
        assert parse_loudnorm_report('{"input_i": "-24.0"}') is None


class TestFilters:
    def test_analysis_filter(self):
        assert build_analysis_filter(MasteringOptions()) == "loudnorm=I=-20:TP=-3:LRA=11:print_format=json"

    def test_correction_filter_uses_measurements(self):
        analysis = LoudnormAnalysis(input_i=-24.0, input_tp=-6.1, input_lra=7.2, input_thresh=-34.5,
                                    target_offset=0.5)

        result = build_correction_filter(analysis, MasteringOptions())

        assert result.startswith("loudnorm=I=-20:TP=-3:LRA=11:")
        assert "measured_I=-24.0" in result
        assert "measured_TP=-6.1" in result
        assert "measured_LRA=7.2" in result
        assert "measured_thresh=-34.5" in result
        assert "offset=0.5" in result
        assert "linear=true" in result

    def test_room_tone_filter(self):
        assert build_room_tone_filter(MasteringOptions()) == "adelay=1000|1000,apad=pad_dur=3"

    def test_deess_filter(self):
        result = build_deess_filter(MasteringOptions(de_esser_amount=-6.0))

        assert result == "equalizer=f=5500:t=q:w=2:g=-6,equalizer=f=7500:t=q:w=2:g=-6"


class TestMasteringEngine:
    def test_full_chain(self, engine_settings, raw_file, tmp_path, caplog):
        ffmpeg = FakeFFmpeg([loudnorm_stderr(), loudnorm_stderr(input_i="-20.20", input_tp="-3.50")])
        engine = MasteringEngine(settings=engine_settings)

        with caplog.at_level(logging.INFO):
            result = _master(engine, raw_file, tmp_path, ffmpeg)

        assert result.success
        assert result.output_path == tmp_path / "out" / "chapter.mp3"
        assert result.output_path.read_bytes() == b"ID3audio"
        assert result.duration_sec == 12.5
        assert result.analysis.input_i == -24.0
        assert result.verification.input_i == -20.2
        assert len(ffmpeg.calls) == 5
        assert "equalizer=f=5500" in " ".join(ffmpeg.calls[0])
        assert "libmp3lame" in ffmpeg.calls[3]
        assert "Verification PASS" in caplog.text
        assert list(engine.work_dir.iterdir()) == []

    def test_without_de_esser(self, engine_settings, raw_file, tmp_path):
        ffmpeg = FakeFFmpeg([loudnorm_stderr(), loudnorm_stderr(input_i="-20.00", input_tp="-3.10")])
        engine = MasteringEngine(MasteringOptions(de_esser=False), settings=engine_settings)

        result = _master(engine, raw_file, tmp_path, ffmpeg)

        assert result.success
        assert len(ffmpeg.calls) == 4
        assert ffmpeg.calls[0][1] == str(raw_file)

    def test_verification_warning_is_advisory(self, engine_settings, raw_file, tmp_path, caplog):
        ffmpeg = FakeFFmpeg([loudnorm_stderr(), loudnorm_stderr(input_i="-23.00", input_tp="-2.00")])
        engine = MasteringEngine(settings=engine_settings)

        result = _master(engine, raw_file, tmp_path, ffmpeg)

        assert result.success
        assert "Verification WARNING" in caplog.text

    def test_unreadable_verification(self, engine_settings, raw_file, tmp_path, caplog):
        ffmpeg = FakeFFmpeg([loudnorm_stderr(), "no report here"])
        engine = MasteringEngine(settings=engine_settings)

        result = _master(engine, raw_file, tmp_path, ffmpeg)

        assert result.success
        assert result.verification is None
        assert "Verification skipped" in caplog.text

    def test_analysis_without_report_fails(self, engine_settings, raw_file, tmp_path):
        ffmpeg = FakeFFmpeg(["size=N/A time=00:00:12.50"])
        engine = MasteringEngine(settings=engine_settings)

        result = _master(engine, raw_file, tmp_path, ffmpeg)

        assert not result.success
        assert "no usable loudnorm report" in result.error
        assert not (tmp_path / "out" / "chapter.mp3").exists()
        assert list(engine.work_dir.iterdir()) == []

    def test_correction_failure(self, engine_settings, raw_file, tmp_path):
        ffmpeg = FakeFFmpeg([loudnorm_stderr()], fail_on="linear=true")
        engine = MasteringEngine(settings=engine_settings)

        result = _master(engine, raw_file, tmp_path, ffmpeg)

        assert not result.success
        assert result.error.startswith("Loudness correction failed")
        assert list(engine.work_dir.iterdir()) == []

    def test_missing_input(self, engine_settings, tmp_path):
        engine = MasteringEngine(settings=engine_settings)

        result = _master(engine, tmp_path / "nope.mp3", tmp_path, FakeFFmpeg([]))

        assert not result.success
        assert "not found" in result.error

    def test_tags_written(self, engine_settings, raw_file, tmp_path):
        ffmpeg = FakeFFmpeg([loudnorm_stderr(), loudnorm_stderr(input_i="-20.00", input_tp="-3.10")])
        engine = MasteringEngine(settings=engine_settings)
        metadata = ID3Metadata(title="Capítulo 1", album="El libro", track="1/3")

        with patch("audiobookforge.audio.mastering.tag_mp3") as tag:
            result = _master(engine, raw_file, tmp_path, ffmpeg, metadata)

        assert result.success
        toned, output, passed = tag.call_args.args
        assert output == tmp_path / "out" / "chapter.mp3"
        assert passed is metadata
        assert toned.name.endswith("_toned.mp3")

    def test_tagging_failure_keeps_untagged_audio(self, engine_settings, raw_file, tmp_path, caplog):
        ffmpeg = FakeFFmpeg([loudnorm_stderr(), loudnorm_stderr(input_i="-20.00", input_tp="-3.10")])
        engine = MasteringEngine(settings=engine_settings)
        tag = MagicMock(side_effect=FFmpegError("ffmpeg exited with code 1: bad cover"))

        with patch("audiobookforge.audio.mastering.tag_mp3", tag):
            result = _master(engine, raw_file, tmp_path, ffmpeg, ID3Metadata(title="Uno"))

        assert result.success
        assert result.output_path.read_bytes() == b"ID3audio"
        assert "Tagging failed" in caplog.text
