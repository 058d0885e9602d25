"""Typed facade over the ffmpeg / ffprobe binaries.

Every operation spawns one external process and parses its output:

- probe: stream and format metadata (`MediaProbeError` on failure)
- screenshot: single frame still extraction
- convert: supervised transcode with `-progress` parsing and a timeout
- analyze_loudness / normalize_audio: two-pass EBU R128 loudnorm
- generate_waveform: astats peak levels reduced to display peaks
"""
from __future__ import annotations

import json
import logging
import math
import re
import subprocess
import threading
from pathlib import Path
from typing import Callable

from models.media_models import (
    FFmpegProgress,
    LoudnessMeasurements,
    LoudnessOptions,
    ProbeResult,
    StreamInfo,
    WaveformChannel,
    WaveformData,
    WaveformOptions,
)
from utils import media_config
from utils.errors import FFmpegError, LoudnessAnalysisError, MediaProbeError
from utils.waveform import build_waveform

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[FFmpegProgress], None]

OUTPUT_TAIL_LINES = 200
LOUDNORM_REQUIRED_KEYS = ("input_i", "input_lra", "input_tp", "input_thresh", "target_offset")
PEAK_LEVEL_TAG = "lavfi.astats.Overall.Peak_level"

_INT_PROGRESS_KEYS = {
    "frame": "frames",
    "total_size": "total_size",
    "out_time_us": "out_time_us",
    "out_time_ms": "out_time_ms",
    "dup_frames": "dup_frames",
    "drop_frames": "drop_frames",
}
_TEXT_PROGRESS_KEYS = {"bitrate", "out_time", "speed", "progress"}


def _format_command(cmd: list[str]) -> str:
    text = " ".join(cmd)
    if len(text) > 4000:
        return f"{text[:4000]}... [truncated]"
    return text


def _to_float(value) -> float | None:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result):
        return None
    return result


# =============================================================================
# PROBE / SCREENSHOT
# =============================================================================


def probe(path: str | Path) -> ProbeResult:
    cmd = [
        media_config.FFPROBE_BIN,
        "-v",
        "quiet",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        str(path),
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=False)
    except (FileNotFoundError, subprocess.SubprocessError) as exc:
        raise MediaProbeError(f"Failed to run ffprobe: {exc}") from exc

    if result.returncode != 0:
        raise MediaProbeError(
            f"ffprobe failed with code {result.returncode}: {(result.stderr or '').strip()}"
        )

    try:
        payload = json.loads(result.stdout or "")
    except json.JSONDecodeError as exc:
        raise MediaProbeError(f"Failed to parse ffprobe output: {exc}") from exc
    if not isinstance(payload, dict):
        raise MediaProbeError("Failed to parse ffprobe output: not an object")

    fmt = payload.get("format") or {}
    streams = []
    for raw in payload.get("streams") or []:
        streams.append(
            StreamInfo(
                codec_type=raw.get("codec_type"),
                codec_name=raw.get("codec_name"),
                width=raw.get("width"),
                height=raw.get("height"),
                duration=_to_float(raw.get("duration")),
            )
        )

    size = _to_float(fmt.get("size"))
    bit_rate = _to_float(fmt.get("bit_rate"))
    return ProbeResult(
        duration=_to_float(fmt.get("duration")),
        size=int(size) if size is not None else None,
        bit_rate=int(bit_rate) if bit_rate is not None else None,
        format_name=fmt.get("format_name"),
        streams=streams,
    )


def probe_duration(path: str | Path) -> float | None:
    try:
        return probe(path).duration
    except MediaProbeError as exc:
        logger.warning("Could not get duration for progress calculation: %s", exc)
        return None


def screenshot(path: str | Path, timestamp_seconds: float, out_path: str | Path) -> Path:
    cmd = [
        media_config.FFMPEG_BIN,
        "-hide_banner",
        "-i",
        str(path),
        "-ss",
        f"{timestamp_seconds:g}",
        "-vframes",
        "1",
        "-y",
        str(out_path),
    ]
    logger.debug("Screenshot command: %s", _format_command(cmd))
    result = _run_checked(cmd, "ffmpeg screenshot")
    out = Path(out_path)
    if not out.exists():
        raise FFmpegError(
            "ffmpeg screenshot produced no output",
            (result.stderr or "").splitlines()[-40:],
        )
    return out


def _run_checked(cmd: list[str], label: str) -> subprocess.CompletedProcess:
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=False,
            timeout=media_config.FFMPEG_TIMEOUT_SECONDS,
        )
    except subprocess.TimeoutExpired as exc:
        raise FFmpegError(f"{label} timed out after {exc.timeout}s") from exc
    except (FileNotFoundError, subprocess.SubprocessError) as exc:
        raise FFmpegError(f"Failed to spawn {label}: {exc}") from exc

    if result.returncode != 0:
        tail = (result.stderr or "").strip().splitlines()[-40:]
        raise FFmpegError(
            f"{label} failed with code {result.returncode}: " + "\n".join(tail),
            tail,
        )
    return result


# =============================================================================
# PROGRESS
# =============================================================================


def parse_progress_line(line: str) -> dict[str, object]:
    """Parses `key=value` pairs (space separated or one per line)."""
    parsed: dict[str, object] = {}
    if "=" not in line:
        return parsed
    for pair in line.strip().split():
        key, sep, value = pair.partition("=")
        if not sep or not key or not value:
            continue
        if key in _INT_PROGRESS_KEYS:
            try:
                parsed[_INT_PROGRESS_KEYS[key]] = int(value)
            except ValueError:
                continue
        elif key == "fps":
            fps = _to_float(value)
            if fps is not None:
                parsed["fps"] = fps
        elif key in _TEXT_PROGRESS_KEYS:
            parsed[key] = value
    return parsed


def _clock_to_seconds(clock: str) -> float | None:
    parts = clock.split(":")
    if len(parts) != 3:
        return None
    try:
        hours, minutes, seconds = (float(part) for part in parts)
    except ValueError:
        return None
    return hours * 3600 + minutes * 60 + seconds


def calculate_percent(progress: FFmpegProgress, duration: float | None) -> float:
    """Percent of `duration` covered by the reported output time.

    ffmpeg reports `out_time_ms` in microseconds, same as `out_time_us`.
    """
    if not duration or duration <= 0:
        return 0.0

    micros = progress.out_time_us if progress.out_time_us is not None else progress.out_time_ms
    if micros is not None and micros > 0:
        return min(100.0, (micros / 1_000_000) / duration * 100)

    if progress.out_time:
        seconds = _clock_to_seconds(progress.out_time)
        if seconds is not None and seconds > 0:
            return min(100.0, seconds / duration * 100)
    return 0.0


# =============================================================================
# TRANSCODE
# =============================================================================


def convert(
    input_path: str | Path,
    output_path: str | Path,
    *,
    input_options: list[str] | None = None,
    output_options: list[str] | None = None,
    filter_complex: str | None = None,
    duration: float | None = None,
    on_progress: ProgressCallback | None = None,
) -> Path:
    """Runs one supervised ffmpeg transcode.

    `input_options` land before `-i` (input side seek). `filter_complex`
    carries every video filter.
    """
    if duration is None and on_progress is not None:
        duration = probe_duration(input_path)

    cmd = [media_config.FFMPEG_BIN, "-hide_banner", "-nostdin", "-nostats"]
    cmd += list(input_options or [])
    cmd += ["-i", str(input_path)]
    if filter_complex:
        cmd += ["-filter_complex", filter_complex]
    cmd += list(output_options or [])
    cmd += ["-progress", "pipe:1", "-y", str(output_path)]

    logger.info("Executing ffmpeg: %s", _format_command(cmd))
    timeout_seconds = media_config.FFMPEG_TIMEOUT_SECONDS

    try:
        process = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
        )
    except (FileNotFoundError, subprocess.SubprocessError) as exc:
        raise FFmpegError(f"Failed to spawn ffmpeg: {exc}") from exc

    output_tail: list[str] = []
    timed_out = False

    def _kill_process_on_timeout() -> None:
        nonlocal timed_out
        timed_out = True
        process.kill()

    timer = threading.Timer(timeout_seconds, _kill_process_on_timeout)
    timer.daemon = True
    timer.start()

    if process.stdout is None:
        timer.cancel()
        raise FFmpegError("ffmpeg did not provide a stdout stream")

    block: dict[str, object] = {}
    try:
        for line in process.stdout:
            line = line.strip()
            if not line:
                continue
            output_tail.append(line)
            if len(output_tail) > OUTPUT_TAIL_LINES:
                output_tail = output_tail[-OUTPUT_TAIL_LINES:]

            parsed = parse_progress_line(line)
            if not parsed:
                continue
            block.update(parsed)
            # `progress=` closes each block of the -progress stream
            if "progress" in parsed and on_progress is not None:
                progress = FFmpegProgress(**block)
                progress.percent = calculate_percent(progress, duration)
                on_progress(progress)
                block = {}
        process.wait()
    finally:
        timer.cancel()

    if timed_out:
        tail_text = "\n".join(output_tail[-40:])
        raise FFmpegError(
            f"ffmpeg timed out after {timeout_seconds}s. Output tail:\n{tail_text}",
            output_tail[-40:],
        )
    if process.returncode != 0:
        tail_text = "\n".join(output_tail[-40:])
        raise FFmpegError(
            f"ffmpeg conversion failed with code {process.returncode}:\n{tail_text}",
            output_tail[-40:],
        )

    logger.debug("ffmpeg output (tail): %s", "\n".join(output_tail[-20:]))
    if on_progress is not None:
        on_progress(FFmpegProgress(percent=100.0, progress="end"))
    return Path(output_path)


# =============================================================================
# LOUDNESS
# =============================================================================


def _flag(value: bool) -> str:
    return "true" if value else "false"


def _number(value: float) -> str:
    return f"{value:g}"


def analyze_loudness(
    path: str | Path,
    options: LoudnessOptions | None = None,
    *,
    input_options: list[str] | None = None,
) -> LoudnessMeasurements:
    """Pass 1: measures the input with loudnorm's JSON report."""
    options = options or LoudnessOptions.ebu_r128()
    analysis_filter = (
        f"loudnorm=I={_number(options.integrated_loudness)}"
        f":TP={_number(options.true_peak)}"
        f":LRA={_number(options.loudness_range)}"
        f":print_format=json:linear={_flag(options.linear)}"
    )
    cmd = [media_config.FFMPEG_BIN, "-hide_banner", "-nostats"]
    cmd += list(input_options or [])
    cmd += ["-i", str(path), "-af", analysis_filter, "-f", "null", "-"]
    logger.info("Analyzing loudness: %s", _format_command(cmd))

    result = _run_checked(cmd, "Audio analysis")
    return parse_loudnorm_measurements(result.stderr or "")


def parse_loudnorm_measurements(stderr: str) -> LoudnessMeasurements:
    candidates = re.findall(r"\{[\s\S]*?\}", stderr)
    if not candidates:
        raise LoudnessAnalysisError("Could not find loudnorm JSON output")

    # loudnorm prints its report last
    try:
        data = json.loads(candidates[-1])
    except json.JSONDecodeError as exc:
        raise LoudnessAnalysisError(f"Failed to parse loudnorm JSON: {exc}") from exc

    values: dict[str, float] = {}
    for key in LOUDNORM_REQUIRED_KEYS:
        if key not in data or data[key] is None:
            raise LoudnessAnalysisError(f"Missing required measurement: {key}")
        try:
            values[key] = float(data[key])
        except (TypeError, ValueError) as exc:
            raise LoudnessAnalysisError(
                f"Invalid measurement {key}={data[key]!r}"
            ) from exc
    return LoudnessMeasurements(**values)


def build_loudnorm_filter(
    measurements: LoudnessMeasurements, options: LoudnessOptions | None = None
) -> str:
    options = options or LoudnessOptions.ebu_r128()
    return (
        f"loudnorm=I={_number(options.integrated_loudness)}"
        f":TP={_number(options.true_peak)}"
        f":LRA={_number(options.loudness_range)}"
        f":linear={_flag(options.linear)}"
        f":measured_I={_number(measurements.input_i)}"
        f":measured_LRA={_number(measurements.input_lra)}"
        f":measured_TP={_number(measurements.input_tp)}"
        f":measured_thresh={_number(measurements.input_thresh)}"
        f":offset={_number(measurements.target_offset)}"
        f":dual_mono={_flag(options.dual_mono)}"
    )


def normalize_audio(
    input_path: str | Path,
    output_path: str | Path,
    *,
    options: LoudnessOptions | None = None,
    audio_options: list[str] | None = None,
    video_options: list[str] | None = None,
    input_options: list[str] | None = None,
    filter_complex: str | None = None,
    duration: float | None = None,
    on_progress: ProgressCallback | None = None,
) -> Path:
    """Pass 2: re-encodes with loudnorm parameterized by pass-1 measurements."""
    options = options or LoudnessOptions.ebu_r128()
    measurements = analyze_loudness(input_path, options, input_options=input_options)
    logger.info(
        "Loudness measured I=%s LRA=%s TP=%s for %s",
        measurements.input_i,
        measurements.input_lra,
        measurements.input_tp,
        input_path,
    )
    audio_filter = build_loudnorm_filter(measurements, options)
    return convert(
        input_path,
        output_path,
        input_options=input_options,
        output_options=["-af", audio_filter, *(audio_options or []), *(video_options or [])],
        filter_complex=filter_complex,
        duration=duration,
        on_progress=on_progress,
    )


# =============================================================================
# WAVEFORM
# =============================================================================


def _escape_filter_path(path: str) -> str:
    return path.replace("\\", "\\\\").replace(":", "\\:").replace("'", "\\'")


def waveform_filter(path: str, samples_per_chunk: int, channel: WaveformChannel) -> str:
    parts = [f"amovie={_escape_filter_path(path)}", f"aresample={media_config.WAVEFORM_SAMPLE_RATE}"]
    if channel == WaveformChannel.MONO:
        parts.append("pan=mono|c0=0.5*c0+0.5*c1")
    elif channel == WaveformChannel.LEFT:
        parts.append("pan=mono|c0=c0")
    elif channel == WaveformChannel.RIGHT:
        parts.append("pan=mono|c0=c1")
    parts.append(f"asetnsamples={samples_per_chunk}")
    parts.append("astats=metadata=1:reset=1")
    return ",".join(parts)


def generate_waveform(
    path: str | Path,
    options: WaveformOptions | None = None,
    *,
    duration: float | None = None,
) -> WaveformData:
    options = options or WaveformOptions()
    if duration is None:
        duration = probe(path).duration
    if not duration or duration <= 0:
        raise MediaProbeError("Could not determine audio duration")

    raw_samples = max(options.samples * 4, 2000)
    samples_per_chunk = max(1, math.floor(media_config.WAVEFORM_SAMPLE_RATE * duration / raw_samples))

    cmd = [
        media_config.FFPROBE_BIN,
        "-v",
        "error",
        "-f",
        "lavfi",
        "-i",
        waveform_filter(str(path), samples_per_chunk, options.channel),
        "-show_entries",
        f"frame_tags={PEAK_LEVEL_TAG}",
        "-of",
        "json",
    ]
    logger.debug("Waveform command: %s", _format_command(cmd))
    result = _run_checked(cmd, "ffprobe waveform generation")

    try:
        payload = json.loads(result.stdout or "")
    except json.JSONDecodeError as exc:
        raise MediaProbeError(f"Failed to parse waveform output: {exc}") from exc

    levels: list[float] = []
    for frame in payload.get("frames") or []:
        value = _to_float((frame.get("tags") or {}).get(PEAK_LEVEL_TAG))
        if value is not None:
            levels.append(value)
    if not levels:
        raise MediaProbeError("No peak data found in audio file")

    peaks = build_waveform(levels, options.samples)
    return WaveformData(peaks=peaks, duration=duration, sample_rate=len(peaks) / duration)
