"""ffmpeg recipes for GIF, video and audio endpoints.

Each recipe turns uploads plus form parameters into a JobSpec. Commands are
argument lists; every file name is relative to the job workspace.
"""

from typing import List, Mapping, Sequence

from media_transcoder.core.exceptions import ValidationError
from media_transcoder.engine.common import (
    choice,
    clamp_int,
    extension_of,
    flag,
    parse_float,
    scaled_timeout,
    single,
    stage_as,
)
from media_transcoder.pipeline.models import (
    AllowList,
    ExternalTool,
    InputFile,
    JobSpec,
    OutputSpec,
)

FFMPEG = "ffmpeg"

VIDEO_TYPES = AllowList.of(
    extensions=("mp4", "mov", "avi", "mkv", "webm", "wmv", "flv", "m4v", "3gp", "mpeg", "mpg", "qt"),
    mime_types=(
        "video/mp4", "video/quicktime", "video/x-msvideo", "video/x-matroska", "video/webm",
        "video/x-ms-wmv", "video/x-flv", "video/mpeg", "video/3gpp",
    ),
)
GIF_TYPES = AllowList.of(extensions=("gif",), mime_types=("image/gif",))
MP3_TYPES = AllowList.of(extensions=("mp3",), mime_types=("audio/mpeg", "audio/mp3"))
WAV_TYPES = AllowList.of(extensions=("wav",), mime_types=("audio/wav", "audio/x-wav", "audio/wave"))
MOV_TYPES = AllowList.of(extensions=("mov", "qt"), mime_types=("video/quicktime",))
AUDIO_TYPES = AllowList.of(
    extensions=("mp3", "wav", "ogg", "oga", "aac", "m4a", "flac", "opus", "wma", "aiff", "aif"),
    mime_types=(
        "audio/mpeg", "audio/wav", "audio/x-wav", "audio/ogg", "audio/aac", "audio/mp4",
        "audio/x-m4a", "audio/flac", "audio/opus", "audio/x-ms-wma", "audio/aiff",
    ),
)

CRF_BY_QUALITY = {"high": "18", "medium": "23", "low": "28"}
RESOLUTIONS = {"720p": "1280:720", "480p": "854:480", "360p": "640:360", "1080p": "1920:1080"}
MP3_BITRATES = ("64", "96", "128", "160", "192", "256", "320")
VBR_BY_QUALITY = {"high": "0", "medium": "4", "low": "9"}
VBR_BY_BITRATE = {"320": "0", "256": "2", "192": "4", "128": "6", "96": "8"}
VORBIS_BY_QUALITY = {"high": "6", "medium": "4", "low": "2"}
SAMPLE_RATES = ("8000", "11025", "16000", "22050", "32000", "44100", "48000")

MP4_AUDIO_CODECS = {
    "aac": ["-c:a", "aac", "-b:a", "128k"],
    "mp3": ["-c:a", "libmp3lame", "-b:a", "128k"],
    "copy": ["-c:a", "copy"],
}
LOUDNORM = "loudnorm=I=-16:TP=-1.5:LRA=11"
# strip leading silence, reverse, strip again, reverse back
SILENCE_TRIM = ",".join(
    ["silenceremove=start_periods=1:start_duration=1:start_threshold=-60dB:detection=peak", "aformat=dblp", "areverse"] * 2
)

AUDIO_TARGETS = {
    "mp3": (["-c:a", "libmp3lame", "-b:a", "192k"], "audio/mpeg"),
    "wav": (["-c:a", "pcm_s16le"], "audio/wav"),
    "ogg": (["-c:a", "libvorbis", "-q:a", "5"], "audio/ogg"),
    "aac": (["-c:a", "aac", "-b:a", "192k"], "audio/aac"),
    "m4a": (["-c:a", "aac", "-b:a", "192k"], "audio/mp4"),
    "flac": (["-c:a", "flac"], "audio/flac"),
}


def ffmpeg_argv(*inputs: str) -> List[str]:
    argv = [FFMPEG, "-hide_banner", "-nostdin", "-loglevel", "warning", "-y"]
    for name in inputs:
        argv += ["-i", name]
    return argv


def _job(label, upload, allowed, stages, output, content_type) -> JobSpec:
    return JobSpec(
        inputs=(upload,),
        stages=tuple(stages),
        outputs=(OutputSpec(output, content_type),),
        allowed=allowed,
        label=label,
    )


def palette_stages(source: str, filters: str, output: str, colors: int, timeout: float) -> List[ExternalTool]:
    """Two-pass GIF encode: build an optimal palette, then map frames onto it."""
    palette = "palette.png"
    return [
        ExternalTool(
            name="palettegen",
            argv=tuple(ffmpeg_argv(source) + ["-vf", f"{filters},palettegen=max_colors={colors}", palette]),
            inputs=(source,),
            outputs=(palette,),
            timeout=timeout,
        ),
        ExternalTool(
            name="paletteuse",
            argv=tuple(
                ffmpeg_argv(source, palette)
                + ["-lavfi", f"{filters}[x];[x][1:v]paletteuse=dither=sierra2_4a", "-gifflags", "+transdiff", output]
            ),
            inputs=(source, palette),
            outputs=(output,),
            timeout=timeout,
        ),
    ]


def compress_gif(uploads: Sequence[InputFile], params: Mapping[str, str]) -> JobSpec:
    upload = stage_as(single(uploads), "input.gif")
    fps = clamp_int(params, "fps", 10, 1, 50)
    scale = clamp_int(params, "scale", 100, 10, 100)
    colors = clamp_int(params, "colors", 128, 2, 256)

    scale_expr = f"scale=iw*{scale}/100:ih*{scale}/100:flags=lanczos" if scale != 100 else "scale=iw:ih"
    timeout = scaled_timeout(upload.data, 10, 120)
    stages = palette_stages(upload.name, f"{scale_expr},fps={fps}", "compressed.gif", colors, timeout)
    return _job("compress-gif", upload, GIF_TYPES, stages, "compressed.gif", "image/gif")


def _video_quality_args(params: Mapping[str, str], codec: str = "libx264") -> List[str]:
    quality = choice(params, "quality", "medium", tuple(CRF_BY_QUALITY))
    args = ["-c:v", codec, "-crf", CRF_BY_QUALITY[quality], "-preset", "medium"]

    resolution = choice(params, "resolution", "original", ("original",) + tuple(RESOLUTIONS))
    if resolution != "original":
        # keep aspect ratio and even dimensions for yuv420p
        args += ["-vf", f"scale={RESOLUTIONS[resolution]}:force_original_aspect_ratio=decrease,pad=ceil(iw/2)*2:ceil(ih/2)*2"]

    fps = params.get("fps") or "original"
    if fps != "original":
        args += ["-r", str(clamp_int(params, "fps", 30, 1, 120))]

    bitrate = params.get("bitrate") or "auto"
    if bitrate != "auto":
        kbps = clamp_int({"bitrate": bitrate.lower().rstrip("k")}, "bitrate", 1000, 100, 50000)
        args += ["-b:v", f"{kbps}k", "-maxrate", f"{kbps}k", "-bufsize", f"{kbps * 2}k"]
    return args


def compress_video(uploads: Sequence[InputFile], params: Mapping[str, str]) -> JobSpec:
    source = single(uploads)
    upload = stage_as(source, f"input.{extension_of(source, 'mp4')}")
    argv = (
        ffmpeg_argv(upload.name)
        + _video_quality_args(params)
        + ["-pix_fmt", "yuv420p", "-c:a", "aac", "-b:a", "128k", "-movflags", "+faststart", "compressed.mp4"]
    )
    stage = ExternalTool("encode", tuple(argv), (upload.name,), ("compressed.mp4",), scaled_timeout(upload.data, 10, 300))
    return _job("compress-video", upload, VIDEO_TYPES, [stage], "compressed.mp4", "video/mp4")


def _mp3_args(params: Mapping[str, str], bitrate_key: str = "bitrate", mode_key: str = "encodingMode") -> List[str]:
    bitrate = choice(params, bitrate_key, "128", MP3_BITRATES)
    mode = choice(params, mode_key, "cbr", ("cbr", "vbr", "abr"))
    args = ["-c:a", "libmp3lame"]
    if mode == "cbr":
        args += ["-b:a", f"{bitrate}k", "-joint_stereo", "1"]
    elif mode == "abr":
        args += ["-b:a", f"{bitrate}k", "-abr", "1"]
    elif "quality" in params:
        args += ["-q:a", VBR_BY_QUALITY[choice(params, "quality", "medium", tuple(VBR_BY_QUALITY))]]
    else:
        args += ["-q:a", VBR_BY_BITRATE.get(bitrate, "9")]
    return args


def compress_mp3(uploads: Sequence[InputFile], params: Mapping[str, str]) -> JobSpec:
    upload = stage_as(single(uploads), "input.mp3")
    argv = ffmpeg_argv(upload.name) + _mp3_args(params) + ["-map_metadata", "0", "compressed.mp3"]
    stage = ExternalTool("encode", tuple(argv), (upload.name,), ("compressed.mp3",), scaled_timeout(upload.data, 5, 120))
    return _job("compress-mp3", upload, MP3_TYPES, [stage], "compressed.mp3", "audio/mpeg")


def compress_wav(uploads: Sequence[InputFile], params: Mapping[str, str]) -> JobSpec:
    upload = stage_as(single(uploads), "input.wav")
    mode = choice(params, "compressionType", "downsample", ("downsample", "mp3"))
    argv = ffmpeg_argv(upload.name)
    if mode == "downsample":
        sample_rate = choice(params, "sampleRate", "44100", SAMPLE_RATES)
        bit_depth = choice(params, "bitDepth", "16", ("8", "16"))
        argv += ["-ar", sample_rate, "-ac", "2", "-acodec", "pcm_u8" if bit_depth == "8" else "pcm_s16le"]
        output, content_type = "compressed.wav", "audio/wav"
    else:
        argv += _mp3_args(params, bitrate_key="mp3Bitrate", mode_key="mp3EncodingMode")
        output, content_type = "compressed.mp3", "audio/mpeg"
    stage = ExternalTool("encode", tuple(argv + [output]), (upload.name,), (output,), scaled_timeout(upload.data, 5, 120))
    return _job("compress-wav", upload, WAV_TYPES, [stage], output, content_type)


def video_to_gif(uploads: Sequence[InputFile], params: Mapping[str, str]) -> JobSpec:
    source = single(uploads)
    upload = stage_as(source, f"input.{extension_of(source, 'mp4')}")
    fps = clamp_int(params, "fps", 10, 1, 30)
    width = clamp_int(params, "width", 480, 64, 1920)
    colors = clamp_int(params, "colors", 256, 2, 256)

    filters = f"fps={fps},scale={width}:-1:flags=lanczos"
    start = parse_float(params, "startTime")
    duration = parse_float(params, "duration")
    if start is not None and start < 0:
        raise ValidationError("Start time cannot be negative.")
    if duration is not None and duration <= 0:
        raise ValidationError("Duration must be positive.")
    if start or duration:
        trim = f"trim=start={start or 0:g}" + (f":duration={duration:g}" if duration else "")
        filters = f"{trim},setpts=PTS-STARTPTS,{filters}"

    timeout = scaled_timeout(upload.data, 10, 180)
    stages = palette_stages(upload.name, filters, "output.gif", colors, timeout)
    return _job("video-gif", upload, VIDEO_TYPES, stages, "output.gif", "image/gif")


def gif_to_mp4(uploads: Sequence[InputFile], params: Mapping[str, str]) -> JobSpec:
    upload = stage_as(single(uploads), "input.gif")
    argv = ffmpeg_argv(upload.name) + [
        "-movflags", "faststart",
        "-pix_fmt", "yuv420p",
        "-vf", "scale=trunc(iw/2)*2:trunc(ih/2)*2",
        "output.mp4",
    ]
    stage = ExternalTool("encode", tuple(argv), (upload.name,), ("output.mp4",), scaled_timeout(upload.data, 10, 120))
    return _job("gif-mp4", upload, GIF_TYPES, [stage], "output.mp4", "video/mp4")


def _mp4_job(label: str, upload: InputFile, allowed: AllowList, params: Mapping[str, str]) -> JobSpec:
    video_codec = choice(params, "videoCodec", "h264", ("h264", "h265"))
    audio_codec = choice(params, "audioCodec", "aac", tuple(MP4_AUDIO_CODECS))
    codec = "libx264" if video_codec == "h264" else "libx265"

    argv = ffmpeg_argv(upload.name) + _video_quality_args(params, codec=codec)
    if video_codec == "h265":
        argv += ["-tag:v", "hvc1"]
    argv += MP4_AUDIO_CODECS[audio_codec]
    argv += ["-pix_fmt", "yuv420p", "-movflags", "+faststart", "output.mp4"]
    stage = ExternalTool("encode", tuple(argv), (upload.name,), ("output.mp4",), scaled_timeout(upload.data, 10, 300))
    return _job(label, upload, allowed, [stage], "output.mp4", "video/mp4")


def mov_to_mp4(uploads: Sequence[InputFile], params: Mapping[str, str]) -> JobSpec:
    return _mp4_job("mov-mp4", stage_as(single(uploads), "input.mov"), MOV_TYPES, params)


def video_to_mp4(uploads: Sequence[InputFile], params: Mapping[str, str]) -> JobSpec:
    """Any supported container (AVI, MKV, WebM, WMV ...) re-encoded to H.264/H.265 MP4."""
    source = single(uploads)
    return _mp4_job("video-mp4", stage_as(source, f"input.{extension_of(source, 'bin')}"), VIDEO_TYPES, params)


def video_to_mp3(uploads: Sequence[InputFile], params: Mapping[str, str]) -> JobSpec:
    source = single(uploads)
    upload = stage_as(source, f"input.{extension_of(source, 'mp4')}")
    bitrate = choice(params, "quality", "192", ("320", "256", "192", "128", "96"))
    start = parse_float(params, "startTime", 0.0)
    duration = parse_float(params, "duration")
    if start < 0:
        raise ValidationError("Start time cannot be negative.")
    if duration is not None and duration <= 0:
        raise ValidationError("Duration must be positive.")

    argv = ffmpeg_argv(upload.name)
    if start:
        argv += ["-ss", f"{start:g}"]
    if duration:
        argv += ["-t", f"{duration:g}"]
    if flag(params, "normalize", False):
        argv += ["-af", LOUDNORM]
    argv += ["-vn", "-codec:a", "libmp3lame", "-b:a", f"{bitrate}k", "-joint_stereo", "1", "-f", "mp3", "output.mp3"]
    stage = ExternalTool("extract-audio", tuple(argv), (upload.name,), ("output.mp3",), scaled_timeout(upload.data, 5, 180))
    return _job("video-mp3", upload, VIDEO_TYPES, [stage], "output.mp3", "audio/mpeg")


def _channel_args(params: Mapping[str, str]) -> List[str]:
    args = []
    sample_rate = params.get("sampleRate") or "original"
    if sample_rate != "original":
        args += ["-ar", choice(params, "sampleRate", "44100", SAMPLE_RATES)]
    channels = choice(params, "channels", "original", ("original", "mono", "stereo"))
    if channels != "original":
        args += ["-ac", "1" if channels == "mono" else "2"]
    return args


def _audio_filter_args(params: Mapping[str, str]) -> List[str]:
    filters = []
    if flag(params, "trimSilence", False) or flag(params, "removeSilence", False):
        filters.append(SILENCE_TRIM)
    if flag(params, "normalize", False):
        filters.append(LOUDNORM)
    return ["-af", ",".join(filters)] if filters else []


def mp3_to_ogg(uploads: Sequence[InputFile], params: Mapping[str, str]) -> JobSpec:
    upload = stage_as(single(uploads), "input.mp3")
    quality = choice(params, "quality", "medium", tuple(VORBIS_BY_QUALITY))
    argv = ffmpeg_argv(upload.name) + ["-c:a", "libvorbis", "-q:a", VORBIS_BY_QUALITY[quality]]
    argv += _channel_args(params) + ["-vn", "output.ogg"]
    stage = ExternalTool("encode", tuple(argv), (upload.name,), ("output.ogg",), scaled_timeout(upload.data, 5, 120))
    return _job("mp3-ogg", upload, MP3_TYPES, [stage], "output.ogg", "audio/ogg")


def convert_audio(uploads: Sequence[InputFile], params: Mapping[str, str]) -> JobSpec:
    source = single(uploads)
    upload = stage_as(source, f"input.{extension_of(source, 'bin')}")
    target = choice(params, "target", "mp3", tuple(AUDIO_TARGETS))
    codec_args, content_type = AUDIO_TARGETS[target]
    output = f"output.{target}"
    argv = ffmpeg_argv(upload.name) + ["-vn"] + _audio_filter_args(params) + codec_args + _channel_args(params) + [output]
    stage = ExternalTool("encode", tuple(argv), (upload.name,), (output,), scaled_timeout(upload.data, 5, 120))
    return _job("audio-convert", upload, AUDIO_TYPES, [stage], output, content_type)
