from __future__ import annotations

import logging
import math
import shutil
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

from models.media_models import (
    CreatedFiles,
    MediaKind,
    ModificationAction,
    ProcessingResult,
    TrimSpec,
    WaveformChannel,
    WaveformOptions,
)
from utils import ffmpeg_wrapper, image_utils, media_config
from utils.errors import (
    VALIDATION_ERRORS,
    FileProcessingError,
    InvalidModification,
    MediaProbeError,
)
from utils.filter_builder import FilterChainBuilder
from utils.modifications import (
    build_trim_input_options,
    extract_crop,
    extract_trim,
    validate_crop,
    validate_trim,
)

logger = logging.getLogger(__name__)

ProgressListener = Callable[[int], None]


# =============================================================================
# PROGRESS
# =============================================================================


class ProgressReporter:
    """Monotonic 0-100 progress channel for one pipeline run.

    Values are floored to whole percent; anything not above the last
    forwarded value is dropped. Listener calls are serialized.
    """

    def __init__(self) -> None:
        self._listeners: list[ProgressListener] = []
        self._last = -1
        self._lock = threading.Lock()

    def subscribe(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    @property
    def last(self) -> int | None:
        return self._last if self._last >= 0 else None

    def report(self, percent: float) -> None:
        if percent is None or math.isnan(percent):
            return
        value = int(math.floor(min(100.0, max(0.0, percent))))
        with self._lock:
            if value <= self._last:
                return
            self._last = value
            for listener in self._listeners:
                try:
                    listener(value)
                except Exception:
                    logger.exception("Progress listener failed at %s%%", value)

    def span(self, start: float, end: float) -> Callable[[float], None]:
        """Maps a sub-task's 0-100 onto [start, end] of the overall run."""

        def _report(percent: float) -> None:
            self.report(start + (end - start) * percent / 100.0)

        return _report

    def slots(self, count: int, start: float = 0.0, end: float = 100.0) -> ProgressSlots:
        return ProgressSlots(self, count, start, end)


class ProgressSlots:
    """Independent progress slots whose average drives the parent reporter."""

    def __init__(self, reporter: ProgressReporter, count: int, start: float, end: float):
        self._reporter = reporter
        self._values = [0.0] * max(1, count)
        self._report = reporter.span(start, end)
        self._lock = threading.Lock()

    def update(self, index: int, percent: float | None) -> None:
        if percent is None or math.isnan(percent):
            return
        with self._lock:
            if percent <= self._values[index]:
                return
            self._values[index] = min(100.0, percent)
            average = sum(self._values) / len(self._values)
        self._report(average)

    def callback(self, index: int) -> Callable:
        def _on_progress(progress) -> None:
            self.update(index, progress.percent)

        return _on_progress


# =============================================================================
# STAGES
# =============================================================================


def _wrap_stage_error(stage: str, exc: Exception) -> Exception:
    if isinstance(exc, VALIDATION_ERRORS) or isinstance(exc, FileProcessingError):
        return exc
    return FileProcessingError(stage, str(exc))


@contextmanager
def processing_stage(stage: str) -> Iterator[None]:
    try:
        yield
    except Exception as exc:
        wrapped = _wrap_stage_error(stage, exc)
        if wrapped is exc:
            raise
        logger.error("Stage %r failed: %s", stage, exc)
        raise wrapped from exc


def _screenshot_time(duration: float | None) -> float:
    if duration is not None and 0 < duration < 1:
        return duration / 2
    return 1.0


def _even(value: int) -> int:
    return max(2, value - value % 2)


# =============================================================================
# PIPELINES
# =============================================================================


class MediaProcessor:
    """Per-kind pipelines that derive renditions into a scratch directory.

    The `ffmpeg` collaborator defaults to `utils.ffmpeg_wrapper`; every
    external process goes through it.
    """

    def __init__(
        self,
        reporter: ProgressReporter | None = None,
        ffmpeg=ffmpeg_wrapper,
        normalize_audio: bool | None = None,
    ):
        self.reporter = reporter or ProgressReporter()
        self.ffmpeg = ffmpeg
        self.normalize_audio = (
            media_config.AUDIO_NORMALIZATION_ENABLED if normalize_audio is None else normalize_audio
        )
        self._handlers = {
            MediaKind.IMAGE: self.process_image,
            MediaKind.VIDEO: self.process_video,
            MediaKind.GIF: self.process_video,
            MediaKind.AUDIO: self.process_audio,
            MediaKind.PROFILE_PICTURE: self.process_profile_picture,
        }

    def process(
        self,
        kind: MediaKind,
        source_path: str | Path,
        work_dir: str | Path,
        modifications: list[ModificationAction] | None = None,
    ) -> ProcessingResult:
        handler = self._handlers.get(kind)
        if handler is None:
            raise FileProcessingError("pipeline selection", f"Unsupported file type: {kind}")
        logger.info("Processing %s as %s in %s", source_path, kind.value, work_dir)
        if kind in (MediaKind.VIDEO, MediaKind.GIF):
            return handler(Path(source_path), Path(work_dir), kind, modifications or [])
        return handler(Path(source_path), Path(work_dir), modifications or [])

    # ---------------------------------------------------------------- image

    def _apply_image_crop(
        self, source: Path, work_dir: Path, modifications: list[ModificationAction]
    ) -> Path:
        crop = extract_crop(modifications)
        if crop is None:
            return source
        with processing_stage("image crop"):
            width, height = image_utils.image_dimensions(source)
            validate_crop(crop, width, height)
            return image_utils.crop_image(source, work_dir / "cropped.png", crop)

    def process_image(
        self, source: Path, work_dir: Path, modifications: list[ModificationAction]
    ) -> ProcessingResult:
        working = self._apply_image_crop(source, work_dir, modifications)
        self.reporter.report(10)

        # dimensions are read back from the cropped file
        with processing_stage("image metadata"):
            width, height = image_utils.image_dimensions(working)

        compressed = work_dir / "image.jpeg"
        with processing_stage("image compression"):
            image_utils.compress_image(working, compressed)
        self.reporter.report(60)

        thumbnail = work_dir / "thumbnail.jpeg"
        with processing_stage("thumbnail generation"):
            image_utils.create_thumbnail(compressed, thumbnail)
        self.reporter.report(100)

        return ProcessingResult(
            relative_height=round(height / width * 100, 4),
            created_files=CreatedFiles(
                original=str(source),
                compressed={"jpeg": str(compressed)},
                thumbnail={"jpeg": str(thumbnail)},
            ),
        )

    def process_profile_picture(
        self, source: Path, work_dir: Path, modifications: list[ModificationAction]
    ) -> ProcessingResult:
        working = self._apply_image_crop(source, work_dir, modifications)
        self.reporter.report(20)
        with processing_stage("profile picture generation"):
            created = image_utils.create_profile_pictures(working, work_dir)
        self.reporter.report(100)
        return ProcessingResult(
            relative_height=100.0,
            created_files=CreatedFiles(original=str(source), profile=created),
        )

    # ---------------------------------------------------------------- video

    def _resolve_trim(self, modifications: list[ModificationAction], duration: float | None) -> TrimSpec:
        trim = extract_trim(modifications)
        if not trim.needs_trim:
            return trim
        if not duration or duration <= 0:
            raise InvalidModification("Cannot trim media with unknown duration")
        validate_trim(trim, duration)
        return trim

    def _render_mp4(
        self,
        source: Path,
        output: Path,
        *,
        filter_complex: str,
        has_audio: bool,
        input_options: list[str],
        duration: float | None,
        on_progress,
    ) -> None:
        video_options = [
            "-map",
            "[v]",
            *media_config.MP4_VIDEO_OPTIONS,
            *media_config.MP4_RATE_CONTROL_OPTIONS,
        ]
        if not has_audio:
            self.ffmpeg.convert(
                source,
                output,
                input_options=input_options,
                filter_complex=filter_complex,
                output_options=[*video_options, "-an"],
                duration=duration,
                on_progress=on_progress,
            )
            return

        audio_options = ["-map", "0:a:0", *media_config.MP4_AUDIO_OPTIONS]
        if self.normalize_audio:
            self.ffmpeg.normalize_audio(
                source,
                output,
                options=media_config.LOUDNESS_TARGETS,
                audio_options=audio_options,
                video_options=video_options,
                input_options=input_options,
                filter_complex=filter_complex,
                duration=duration,
                on_progress=on_progress,
            )
        else:
            self.ffmpeg.convert(
                source,
                output,
                input_options=input_options,
                filter_complex=filter_complex,
                output_options=[*video_options, *audio_options],
                duration=duration,
                on_progress=on_progress,
            )

    def process_video(
        self,
        source: Path,
        work_dir: Path,
        kind: MediaKind,
        modifications: list[ModificationAction],
    ) -> ProcessingResult:
        with processing_stage("media probe"):
            probe = self.ffmpeg.probe(source)
        duration = probe.duration
        trim = self._resolve_trim(modifications, duration)
        input_options = build_trim_input_options(trim)
        output_duration = trim.trim_duration if trim.needs_trim else duration

        # still frame used only for dimension discovery
        with processing_stage("initial screenshot"):
            frame = self.ffmpeg.screenshot(
                source, _screenshot_time(duration), work_dir / "probe-frame.png"
            )
            width, height = image_utils.image_dimensions(frame)
        self.reporter.report(5)

        crop = extract_crop(modifications)
        out_width, out_height = width, height
        if crop is not None:
            out_width, out_height = validate_crop(crop, width, height)
        output_height = _even(min(out_height, media_config.VIDEO_MAX_HEIGHT))

        mp4_filters = FilterChainBuilder()
        if crop is not None:
            mp4_filters.add_crop(crop, width, height)
        mp4_filters.add_scale(f"?x{output_height}")

        compressed = {"mp4": str(work_dir / "video.mp4")}
        has_audio = kind == MediaKind.VIDEO and probe.has_audio

        renders: list[tuple[str, Callable[[Callable], None]]] = [
            (
                "MP4 video compression",
                lambda on_progress: self._render_mp4(
                    source,
                    Path(compressed["mp4"]),
                    filter_complex=mp4_filters.build_filter_complex("0:v", "v"),
                    has_audio=has_audio,
                    input_options=input_options,
                    duration=output_duration,
                    on_progress=on_progress,
                ),
            )
        ]

        if kind == MediaKind.GIF:
            gif_filters = FilterChainBuilder()
            if crop is not None:
                gif_filters.add_crop(crop, width, height)
            gif_filters.add_gif_optimization(
                min(out_width, media_config.GIF_MAX_WIDTH), media_config.GIF_FPS
            )
            compressed["gif"] = str(work_dir / "video.gif")
            renders.append(
                (
                    "GIF rendering",
                    lambda on_progress: self.ffmpeg.convert(
                        source,
                        Path(compressed["gif"]),
                        input_options=input_options,
                        filter_complex=gif_filters.build_filter_complex(),
                        duration=output_duration,
                        on_progress=on_progress,
                    ),
                )
            )

        self._run_parallel(renders, self.reporter.slots(len(renders), 5, 90))

        # poster comes from the finished rendition so it reflects crop and trim
        with processing_stage("poster screenshot"):
            poster_frame = self.ffmpeg.screenshot(
                Path(compressed["mp4"]),
                _screenshot_time(output_duration),
                work_dir / "poster-frame.png",
            )

        thumbnail = work_dir / "thumbnail.jpeg"
        poster = work_dir / "poster-thumbnail.jpeg"
        with processing_stage("thumbnail generation"):
            image_utils.create_thumbnail(poster_frame, thumbnail)
            image_utils.create_poster_thumbnail(poster_frame, poster, output_height)
            frame_width, frame_height = image_utils.image_dimensions(poster_frame)

        relative_height = round(out_height / out_width * 100, 4)
        measured = round(frame_height / frame_width * 100, 4)
        if abs(measured - relative_height) > relative_height * 0.01:
            logger.warning(
                "Rendered frame ratio %s differs from expected %s for %s",
                measured,
                relative_height,
                source,
            )
        self.reporter.report(100)

        return ProcessingResult(
            relative_height=relative_height,
            created_files=CreatedFiles(
                original=str(source),
                compressed=compressed,
                thumbnail={"jpeg": str(thumbnail)},
                poster_thumbnail={"jpeg": str(poster)},
            ),
        )

    def _run_parallel(self, renders, slots: ProgressSlots) -> None:
        """Runs renders concurrently; the first failure (in completion order) is raised."""
        failures: list[Exception] = []
        with ThreadPoolExecutor(max_workers=len(renders)) as executor:
            futures = {
                executor.submit(render, slots.callback(index)): stage
                for index, (stage, render) in enumerate(renders)
            }
            for future in as_completed(futures):
                stage = futures[future]
                try:
                    future.result()
                except Exception as exc:
                    logger.error("Render %r failed: %s", stage, exc)
                    wrapped = _wrap_stage_error(stage, exc)
                    if wrapped is not exc:
                        wrapped.__cause__ = exc
                    failures.append(wrapped)
        if failures:
            raise failures[0]

    # ---------------------------------------------------------------- audio

    def process_audio(
        self, source: Path, work_dir: Path, modifications: list[ModificationAction]
    ) -> ProcessingResult:
        with processing_stage("media probe"):
            probe = self.ffmpeg.probe(source)
            duration = probe.duration
            if not duration or duration <= 0:
                raise MediaProbeError("Invalid audio file or could not determine duration")

        trim = self._resolve_trim(modifications, duration)
        working = source
        effective_duration = duration
        if trim.needs_trim:
            # astats needs a decoded stream, so the trimmed range is materialized first
            trimmed = work_dir / "trimmed.wav"
            with processing_stage("audio trim"):
                self.ffmpeg.convert(
                    source,
                    trimmed,
                    input_options=build_trim_input_options(trim),
                    output_options=["-vn", "-acodec", "pcm_s16le"],
                    duration=trim.trim_duration,
                )
            working = trimmed
            effective_duration = trim.trim_duration
        self.reporter.report(5)

        samples = min(
            media_config.WAVEFORM_SAMPLES,
            max(1, math.ceil(effective_duration * media_config.WAVEFORM_SAMPLES_PER_SECOND)),
        )
        with processing_stage("waveform generation"):
            waveform = self.ffmpeg.generate_waveform(
                working,
                WaveformOptions(samples=samples, channel=WaveformChannel.MONO),
                duration=effective_duration,
            )
        self.reporter.report(15)

        with processing_stage("waveform thumbnail generation"):
            waveform_thumbnail = self.ffmpeg.generate_waveform(
                working,
                WaveformOptions(
                    samples=media_config.WAVEFORM_THUMBNAIL_SAMPLES,
                    channel=WaveformChannel.MONO,
                ),
                duration=effective_duration,
            )
        self.reporter.report(25)

        compressed = work_dir / "audio.mp3"
        audio_options = ["-vn", *media_config.MP3_AUDIO_OPTIONS]
        on_progress = self._percent_callback(self.reporter.span(25, 95))
        with processing_stage("MP3 audio compression"):
            if self.normalize_audio:
                self.ffmpeg.normalize_audio(
                    working,
                    compressed,
                    options=media_config.LOUDNESS_TARGETS,
                    audio_options=audio_options,
                    duration=effective_duration,
                    on_progress=on_progress,
                )
            else:
                self.ffmpeg.convert(
                    working,
                    compressed,
                    output_options=audio_options,
                    duration=effective_duration,
                    on_progress=on_progress,
                )
        self.reporter.report(100)

        return ProcessingResult(
            relative_height=0.0,
            created_files=CreatedFiles(
                original=str(source),
                compressed={"mp3": str(compressed)},
            ),
            waveform=waveform.peaks,
            waveform_thumbnail=waveform_thumbnail.peaks,
        )

    @staticmethod
    def _percent_callback(report: Callable[[float], None]):
        def _on_progress(progress) -> None:
            if progress.percent is not None:
                report(progress.percent)

        return _on_progress


def run_local(
    kind: MediaKind,
    source_path: str | Path,
    output_dir: str | Path,
    modifications: list[ModificationAction] | None = None,
    reporter: ProgressReporter | None = None,
) -> ProcessingResult:
    """Runs one pipeline outside the catalog and copies results to `output_dir`."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    with tempfile.TemporaryDirectory(prefix="media-local-") as work_dir:
        processor = MediaProcessor(reporter=reporter)
        result = processor.process(kind, source_path, work_dir, modifications)
        files = result.created_files

        def _keep(path: str) -> str:
            if Path(path).parent != Path(work_dir):
                return path
            target = output_dir / Path(path).name
            shutil.copy2(path, target)
            return str(target)

        files.compressed = {ext: _keep(path) for ext, path in files.compressed.items()}
        files.thumbnail = {ext: _keep(path) for ext, path in files.thumbnail.items()}
        if files.poster_thumbnail:
            files.poster_thumbnail = {ext: _keep(p) for ext, p in files.poster_thumbnail.items()}
        files.profile = {variant: _keep(path) for variant, path in files.profile.items()}
    return result
