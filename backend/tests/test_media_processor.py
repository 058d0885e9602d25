"""
Tests for the per-kind processing pipelines.

Image pipelines run for real on Pillow generated files. Video and audio
pipelines run against a fake ffmpeg facade that records every call.
"""

import threading
from pathlib import Path

import pytest
from PIL import Image

from models.media_models import (
    CropRegion,
    FFmpegProgress,
    MediaKind,
    ModificationAction,
    ProbeResult,
    StreamInfo,
    TrimRange,
    VariantKind,
    WaveformData,
)
from operators.media_processor import (
    MediaProcessor,
    ProgressReporter,
    processing_stage,
    run_local,
)
from utils.errors import FFmpegError, FileProcessingError, InvalidModification


# =============================================================================
# FAKES
# =============================================================================


class FakeFFmpeg:
    def __init__(self, width=1920, height=1080, duration=10.0, has_audio=True, fail_on=None):
        self.width = width
        self.height = height
        self.duration = duration
        self.has_audio = has_audio
        self.fail_on = fail_on
        self.output_size = None
        self.calls = []
        self._lock = threading.Lock()

    def _record(self, name, *args, **kwargs):
        with self._lock:
            self.calls.append((name, args, kwargs))

    def calls_named(self, name):
        return [call for call in self.calls if call[0] == name]

    def probe(self, path):
        self._record("probe", path)
        streams = [StreamInfo(codec_type="video", codec_name="h264", width=self.width, height=self.height)]
        if self.has_audio:
            streams.append(StreamInfo(codec_type="audio", codec_name="aac"))
        return ProbeResult(duration=self.duration, format_name="mp4", streams=streams)

    def screenshot(self, path, timestamp, out_path):
        self._record("screenshot", path, timestamp, out_path)
        size = self.output_size if Path(path).suffix == ".mp4" and self.output_size else (self.width, self.height)
        Image.new("RGB", size, color=(0, 80, 0)).save(out_path)
        return Path(out_path)

    def convert(self, input_path, output_path, **kwargs):
        self._record("convert", input_path, output_path, **kwargs)
        if self.fail_on and str(output_path).endswith(self.fail_on):
            raise FFmpegError("encoder exploded", ["encoder exploded"])
        on_progress = kwargs.get("on_progress")
        if on_progress is not None:
            on_progress(FFmpegProgress(percent=50.0, progress="continue"))
            on_progress(FFmpegProgress(percent=100.0, progress="end"))
        Path(output_path).write_bytes(b"encoded")
        return Path(output_path)

    def normalize_audio(self, input_path, output_path, **kwargs):
        self._record("normalize_audio", input_path, output_path, **kwargs)
        Path(output_path).write_bytes(b"normalized")
        return Path(output_path)

    def generate_waveform(self, path, options, duration=None):
        self._record("generate_waveform", path, options, duration=duration)
        peaks = [0.5] * options.samples
        return WaveformData(peaks=peaks, duration=duration, sample_rate=options.samples / duration)


@pytest.fixture
def source_image(tmp_path):
    path = tmp_path / "source.png"
    Image.new("RGB", (2400, 1200), color=(240, 200, 10)).save(path)
    return path


@pytest.fixture
def work_dir(tmp_path):
    path = tmp_path / "work"
    path.mkdir()
    return path


# =============================================================================
# PROGRESS
# =============================================================================


def test_progress_reporter_is_monotonic_and_clamped() -> None:
    reporter = ProgressReporter()
    seen = []
    reporter.subscribe(seen.append)

    for value in [10.7, 5, 10.2, 42, 150, 99]:
        reporter.report(value)

    assert seen == [10, 42, 100]
    assert reporter.last == 100


def test_progress_reporter_survives_failing_listener() -> None:
    reporter = ProgressReporter()
    seen = []

    def _broken(value):
        raise RuntimeError("listener down")

    reporter.subscribe(_broken)
    reporter.subscribe(seen.append)
    reporter.report(30)

    assert seen == [30]


def test_progress_span_and_slots_map_onto_parent_range() -> None:
    reporter = ProgressReporter()
    seen = []
    reporter.subscribe(seen.append)

    reporter.span(20, 60)(50)
    slots = reporter.slots(2, 60, 100)
    slots.update(0, 100)
    slots.update(1, 50)

    assert seen == [40, 80, 90]


def test_processing_stage_labels_failures() -> None:
    with pytest.raises(FileProcessingError, match="^image compression failed: disk full$"):
        with processing_stage("image compression"):
            raise OSError("disk full")

    with pytest.raises(InvalidModification):
        with processing_stage("image crop"):
            raise InvalidModification("too small")


# =============================================================================
# IMAGE
# =============================================================================


def test_process_image_creates_compressed_and_thumbnail(source_image, work_dir) -> None:
    reporter = ProgressReporter()
    result = MediaProcessor(reporter=reporter).process(MediaKind.IMAGE, source_image, work_dir)

    assert result.relative_height == 50.0
    files = result.created_files
    assert files.original == str(source_image)
    with Image.open(files.compressed["jpeg"]) as image:
        assert image.size == (1080, 540)
    with Image.open(files.thumbnail["jpeg"]) as image:
        assert image.size == (600, 300)
    assert reporter.last == 100


def test_process_image_applies_crop(source_image, work_dir) -> None:
    modifications = [ModificationAction(crop=CropRegion(left=400, right=400))]
    result = MediaProcessor().process(MediaKind.IMAGE, source_image, work_dir, modifications)

    assert result.relative_height == 75.0
    with Image.open(result.created_files.compressed["jpeg"]) as image:
        assert image.size == (1080, 810)


def test_process_image_rejects_tiny_crop(source_image, work_dir) -> None:
    modifications = [ModificationAction(crop=CropRegion(top=600, bottom=550))]
    with pytest.raises(InvalidModification):
        MediaProcessor().process(MediaKind.IMAGE, source_image, work_dir, modifications)


def test_process_profile_picture(source_image, work_dir) -> None:
    result = MediaProcessor().process(MediaKind.PROFILE_PICTURE, source_image, work_dir)

    assert result.relative_height == 100.0
    assert set(result.created_files.profile) == {VariantKind.PROFILE_256, VariantKind.PROFILE_64}
    with Image.open(result.created_files.profile[VariantKind.PROFILE_64]) as image:
        assert image.size == (64, 64)


# =============================================================================
# VIDEO
# =============================================================================


def test_process_video_crops_scales_and_keeps_audio(tmp_path, work_dir) -> None:
    ffmpeg = FakeFFmpeg()
    ffmpeg.output_size = (1600, 1080)
    source = tmp_path / "clip.mov"
    source.write_bytes(b"video")
    modifications = [ModificationAction(crop=CropRegion(left=160, right=160))]

    result = MediaProcessor(ffmpeg=ffmpeg, normalize_audio=False).process(
        MediaKind.VIDEO, source, work_dir, modifications
    )

    assert result.relative_height == 67.5
    assert set(result.created_files.compressed) == {"mp4"}
    assert result.created_files.poster_thumbnail == {"jpeg": str(work_dir / "poster-thumbnail.jpeg")}

    (_, _, kwargs), = ffmpeg.calls_named("convert")
    assert kwargs["filter_complex"] == "[0:v]crop=1600:1080:160:0,scale=-2:1080[v]"
    assert "0:a:0" in kwargs["output_options"]
    assert "-an" not in kwargs["output_options"]

    poster_call = ffmpeg.calls_named("screenshot")[-1]
    assert poster_call[1][0] == work_dir / "video.mp4"


def test_process_video_relative_height_follows_crop_arithmetic(tmp_path, work_dir) -> None:
    ffmpeg = FakeFFmpeg()
    ffmpeg.output_size = (1900, 1070)
    source = tmp_path / "clip.mp4"
    source.write_bytes(b"video")
    modifications = [ModificationAction(crop=CropRegion(left=10, top=5, right=10, bottom=5))]

    result = MediaProcessor(ffmpeg=ffmpeg, normalize_audio=False).process(
        MediaKind.VIDEO, source, work_dir, modifications
    )

    assert result.relative_height == 56.3158
    (_, _, kwargs), = ffmpeg.calls_named("convert")
    assert kwargs["filter_complex"].startswith("[0:v]crop=1900:1070:10:5,")


def test_process_video_normalizes_audio_when_enabled(tmp_path, work_dir) -> None:
    ffmpeg = FakeFFmpeg()
    source = tmp_path / "clip.mp4"
    source.write_bytes(b"video")

    MediaProcessor(ffmpeg=ffmpeg, normalize_audio=True).process(MediaKind.VIDEO, source, work_dir)

    assert len(ffmpeg.calls_named("normalize_audio")) == 1
    assert ffmpeg.calls_named("convert") == []


def test_process_video_trims_with_input_seek(tmp_path, work_dir) -> None:
    ffmpeg = FakeFFmpeg(duration=10.0, has_audio=False)
    source = tmp_path / "clip.mp4"
    source.write_bytes(b"video")
    modifications = [ModificationAction(trim=TrimRange(start_time=2, end_time=6))]

    MediaProcessor(ffmpeg=ffmpeg).process(MediaKind.VIDEO, source, work_dir, modifications)

    (_, _, kwargs), = ffmpeg.calls_named("convert")
    assert kwargs["input_options"] == ["-ss", "2", "-t", "4"]
    assert kwargs["duration"] == 4.0
    assert "-an" in kwargs["output_options"]


def test_process_video_rejects_trim_past_end(tmp_path, work_dir) -> None:
    ffmpeg = FakeFFmpeg(duration=5.0)
    source = tmp_path / "clip.mp4"
    source.write_bytes(b"video")
    modifications = [ModificationAction(trim=TrimRange(start_time=2, end_time=9))]

    with pytest.raises(InvalidModification, match="exceeds file duration"):
        MediaProcessor(ffmpeg=ffmpeg).process(MediaKind.VIDEO, source, work_dir, modifications)
    assert ffmpeg.calls_named("convert") == []


def test_process_gif_renders_mp4_and_gif(tmp_path, work_dir) -> None:
    ffmpeg = FakeFFmpeg(width=640, height=480)
    source = tmp_path / "clip.gif"
    source.write_bytes(b"gif")
    reporter = ProgressReporter()
    seen = []
    reporter.subscribe(seen.append)

    result = MediaProcessor(reporter=reporter, ffmpeg=ffmpeg).process(MediaKind.GIF, source, work_dir)

    assert set(result.created_files.compressed) == {"mp4", "gif"}
    converts = {Path(call[1][1]).suffix: call[2] for call in ffmpeg.calls_named("convert")}
    assert "-an" in converts[".mp4"]["output_options"]
    assert converts[".gif"]["filter_complex"] == (
        "[0:v]fps=25,scale=480:-2,split[a][b];[a]palettegen[p];[b][p]paletteuse"
    )
    assert seen == sorted(seen)
    assert seen[-1] == 100


def test_process_gif_reports_failed_render_stage(tmp_path, work_dir) -> None:
    ffmpeg = FakeFFmpeg(width=640, height=480, fail_on=".gif")
    source = tmp_path / "clip.gif"
    source.write_bytes(b"gif")

    with pytest.raises(FileProcessingError, match="GIF rendering failed: encoder exploded"):
        MediaProcessor(ffmpeg=ffmpeg).process(MediaKind.GIF, source, work_dir)


# =============================================================================
# AUDIO
# =============================================================================


def test_process_audio_builds_waveforms_and_mp3(tmp_path, work_dir) -> None:
    ffmpeg = FakeFFmpeg(duration=20.0)
    source = tmp_path / "track.wav"
    source.write_bytes(b"audio")

    result = MediaProcessor(ffmpeg=ffmpeg, normalize_audio=True).process(
        MediaKind.AUDIO, source, work_dir
    )

    assert len(result.waveform) == 80
    assert len(result.waveform_thumbnail) == 12
    assert result.created_files.compressed == {"mp3": str(work_dir / "audio.mp3")}
    (_, args, kwargs), = ffmpeg.calls_named("normalize_audio")
    assert args[0] == source
    assert "libmp3lame" in kwargs["audio_options"]


def test_process_audio_short_clip_uses_fewer_samples(tmp_path, work_dir) -> None:
    ffmpeg = FakeFFmpeg(duration=10.0)
    source = tmp_path / "track.wav"
    source.write_bytes(b"audio")
    modifications = [ModificationAction(trim=TrimRange(start_time=1, end_time=3.5))]

    result = MediaProcessor(ffmpeg=ffmpeg, normalize_audio=False).process(
        MediaKind.AUDIO, source, work_dir, modifications
    )

    # 2.5 s at 8 peaks per second
    assert len(result.waveform) == 20
    trim_call, encode_call = ffmpeg.calls_named("convert")
    assert trim_call[2]["input_options"] == ["-ss", "1", "-t", "2.5"]
    assert encode_call[1][0] == work_dir / "trimmed.wav"


def test_run_local_copies_outputs(source_image, tmp_path) -> None:
    output_dir = tmp_path / "out"
    result = run_local(MediaKind.IMAGE, source_image, output_dir)

    assert Path(result.created_files.compressed["jpeg"]).parent == output_dir
    assert Path(result.created_files.compressed["jpeg"]).exists()
    assert Path(result.created_files.thumbnail["jpeg"]).exists()
