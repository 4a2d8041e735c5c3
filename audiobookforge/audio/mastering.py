"""ACX mastering chain: de-ess, two-pass loudnorm, room tone, verification, tagging.

Each stage is a separate ffmpeg invocation with its own timeout. Intermediate
files are uncompressed WAV so the audio is encoded to MP3 only once, at the
room-tone stage.
"""

import json
import logging
import math
import shutil
import time
from dataclasses import replace
from pathlib import Path
from typing import Optional

from audiobookforge.audio.audio_utils import FFmpegError, probe_audio_info, run_ffmpeg
from audiobookforge.audio.tagging import tag_mp3
from audiobookforge.config import Settings, get_config
from audiobookforge.models import ID3Metadata, LoudnormAnalysis, MasteringOptions, MasteringResult

logger = logging.getLogger(__name__)

# Sibilance sits roughly between 5 and 8 kHz; two narrow cuts cover it.
DEESS_BANDS_HZ = (5500, 7500)


class MasteringError(RuntimeError):
    """A mandatory mastering stage failed."""


def parse_loudnorm_report(stderr: str) -> Optional[LoudnormAnalysis]:
    """Find loudnorm's JSON report inside ffmpeg's diagnostic output.

    Returns None when no usable report is present (no JSON object carrying
    ``input_i``, or a non-finite integrated loudness such as ``-inf`` for
    silent input).
    """
    decoder = json.JSONDecoder()
    report = None
    idx = stderr.find("{")
    while idx != -1:
        try:
            obj, end = decoder.raw_decode(stderr, idx)
        except ValueError:
            idx = stderr.find("{", idx + 1)
            continue
        if isinstance(obj, dict) and "input_i" in obj:
            report = obj
            break
        idx = stderr.find("{", end)

    if report is None:
        return None

    try:
        analysis = LoudnormAnalysis(
            input_i=float(report["input_i"]),
            input_tp=float(report["input_tp"]),
            input_lra=float(report["input_lra"]),
            input_thresh=float(report["input_thresh"]),
            target_offset=float(report.get("target_offset", 0.0)),
            output_i=float(report["output_i"]) if "output_i" in report else None,
            output_tp=float(report["output_tp"]) if "output_tp" in report else None,
            normalization_type=report.get("normalization_type", "dynamic"),
        )
    except (KeyError, TypeError, ValueError):
        return None

    if not all(math.isfinite(v) for v in (analysis.input_i, analysis.input_tp,
                                          analysis.input_lra, analysis.input_thresh)):
        return None
    if not math.isfinite(analysis.target_offset):
        analysis = replace(analysis, target_offset=0.0)
    return analysis


def _target(value: float) -> str:
    return f"{value:g}"


def _measured(value: float) -> str:
    return str(float(value))


def build_deess_filter(options: MasteringOptions) -> str:
    gain = _target(options.de_esser_amount)
    return ",".join(f"equalizer=f={band}:t=q:w=2:g={gain}" for band in DEESS_BANDS_HZ)


def build_analysis_filter(options: MasteringOptions) -> str:
    return (
        f"loudnorm=I={_target(options.target_loudness)}"
        f":TP={_target(options.target_peak)}"
        f":LRA={_target(options.target_lra)}"
        f":print_format=json"
    )


def build_correction_filter(analysis: LoudnormAnalysis, options: MasteringOptions) -> str:
    return ":".join([
        f"loudnorm=I={_target(options.target_loudness)}",
        f"TP={_target(options.target_peak)}",
        f"LRA={_target(options.target_lra)}",
        f"measured_I={_measured(analysis.input_i)}",
        f"measured_TP={_measured(analysis.input_tp)}",
        f"measured_LRA={_measured(analysis.input_lra)}",
        f"measured_thresh={_measured(analysis.input_thresh)}",
        f"offset={_measured(analysis.target_offset)}",
        "linear=true",
        "print_format=summary",
    ])


def build_room_tone_filter(options: MasteringOptions) -> str:
    start = options.silence_start_ms
    return f"adelay={start}|{start},apad=pad_dur={_target(options.silence_end_ms / 1000)}"


class MasteringEngine:
    """Runs the mastering chain for one file at a time; safe to share across threads."""

    def __init__(
        self,
        options: Optional[MasteringOptions] = None,
        settings: Optional[Settings] = None,
        work_dir: Optional[Path] = None,
    ):
        self.options = options or MasteringOptions()
        self.settings = settings or get_config()
        self.work_dir = Path(work_dir or self.settings.work_dir) / "mastering"

    # -- stages ---------------------------------------------------------------

    def _deess(self, source: Path, dest: Path) -> Path:
        if not self.options.de_esser:
            return source
        logger.info("De-essing %s (%s dB)", source.name, _target(self.options.de_esser_amount))
        run_ffmpeg(
            ["-y", "-i", str(source), "-af", build_deess_filter(self.options), "-c:a", "pcm_s16le", str(dest)],
            timeout=self.settings.mastering_timeout,
        )
        return dest

    def analyze(self, source: Path) -> LoudnormAnalysis:
        """Loudness measurement pass. Raises MasteringError if no report can be read."""
        try:
            result = run_ffmpeg(
                ["-i", str(source), "-af", build_analysis_filter(self.options), "-f", "null", "-"],
                timeout=self.settings.mastering_timeout,
            )
        except FFmpegError as e:
            raise MasteringError(f"Loudness analysis failed: {e}") from e

        analysis = parse_loudnorm_report(result.stderr)
        if analysis is None:
            raise MasteringError("Loudness analysis produced no usable loudnorm report")
        return analysis

    def _correct(self, source: Path, dest: Path, analysis: LoudnormAnalysis) -> Path:
        logger.info(
            "Loudness correction: measured I=%s TP=%s LRA=%s",
            analysis.input_i, analysis.input_tp, analysis.input_lra,
        )
        try:
            run_ffmpeg(
                [
                    "-y", "-i", str(source),
                    "-af", build_correction_filter(analysis, self.options),
                    "-ar", str(self.options.sample_rate),
                    "-c:a", "pcm_s16le",
                    str(dest),
                ],
                timeout=self.settings.mastering_timeout,
            )
        except FFmpegError as e:
            raise MasteringError(f"Loudness correction failed: {e}") from e
        return dest

    def _room_tone(self, source: Path, dest: Path) -> Path:
        logger.info(
            "Adding room tone: %dms start, %dms end",
            self.options.silence_start_ms, self.options.silence_end_ms,
        )
        try:
            run_ffmpeg(
                [
                    "-y", "-i", str(source),
                    "-af", build_room_tone_filter(self.options),
                    "-ar", str(self.options.sample_rate),
                    "-codec:a", "libmp3lame",
                    "-b:a", self.options.bitrate,
                    str(dest),
                ],
                timeout=self.settings.mastering_timeout,
            )
        except FFmpegError as e:
            raise MasteringError(f"Adding room tone failed: {e}") from e
        return dest

    def verify(self, path: Path) -> Optional[LoudnormAnalysis]:
        """Advisory check of the final file against the ACX targets. Never raises."""
        try:
            measured = self.analyze(path)
        except MasteringError as e:
            logger.warning("Verification skipped for %s: %s", path.name, e)
            return None

        loudness_ok = abs(measured.input_i - self.options.target_loudness) <= self.options.loudness_tolerance
        peak_ok = measured.input_tp <= self.options.target_peak
        if loudness_ok and peak_ok:
            logger.info(
                "Verification PASS: %s I=%.1f LUFS TP=%.1f dBTP",
                path.name, measured.input_i, measured.input_tp,
            )
        else:
            logger.warning(
                "Verification WARNING: %s I=%.1f LUFS (target %s±%s) TP=%.1f dBTP (ceiling %s)",
                path.name, measured.input_i, _target(self.options.target_loudness),
                _target(self.options.loudness_tolerance), measured.input_tp,
                _target(self.options.target_peak),
            )
        return measured

    # -- chain ----------------------------------------------------------------

    def master(
        self,
        input_path: Path,
        output_path: Path,
        metadata: Optional[ID3Metadata] = None,
        job_tag: str = "master",
    ) -> MasteringResult:
        """Master ``input_path`` into ``output_path``.

        Failures of the mandatory stages are reported in the result rather
        than raised; the caller decides whether to fall back to raw audio.
        """
        input_path = Path(input_path)
        output_path = Path(output_path)
        self.work_dir.mkdir(parents=True, exist_ok=True)
        stem = f"{job_tag}_{int(time.time() * 1000)}"
        deessed = self.work_dir / f"{stem}_deess.wav"
        corrected = self.work_dir / f"{stem}_norm.wav"
        toned = self.work_dir / f"{stem}_toned.mp3"

        try:
            if not input_path.is_file():
                raise MasteringError(f"Input file not found: {input_path}")

            source = self._deess(input_path, deessed)
            logger.info("Pass 1: analyzing loudness of %s", input_path.name)
            analysis = self.analyze(source)
            logger.info("Analysis complete: I=%s LUFS, TP=%s dBTP", analysis.input_i, analysis.input_tp)
            self._correct(source, corrected, analysis)
            self._room_tone(corrected, toned)
            verification = self.verify(toned)

            output_path.parent.mkdir(parents=True, exist_ok=True)
            if metadata is not None:
                try:
                    tag_mp3(toned, output_path, metadata, temp_dir=self.work_dir,
                            timeout=self.settings.mastering_timeout)
                except FFmpegError as e:
                    logger.warning("Tagging failed for %s, keeping untagged audio: %s", output_path.name, e)
                    shutil.copyfile(toned, output_path)
            else:
                shutil.copyfile(toned, output_path)

            duration = None
            try:
                duration = probe_audio_info(output_path, timeout=self.settings.ffmpeg_probe_timeout)["duration"]
            except (FFmpegError, ValueError, KeyError) as e:
                logger.debug("Could not probe duration of %s: %s", output_path, e)

            logger.info("Mastering complete: %s", output_path)
            return MasteringResult(
                success=True,
                output_path=output_path,
                analysis=analysis,
                verification=verification,
                duration_sec=duration,
            )
        except (MasteringError, FFmpegError, OSError) as e:
            logger.error("Mastering failed for %s: %s", input_path.name, e)
            return MasteringResult(success=False, error=str(e))
        finally:
            for temp in (deessed, corrected, toned):
                try:
                    temp.unlink(missing_ok=True)
                except OSError as e:
                    logger.warning("Could not remove temp file %s: %s", temp, e)
