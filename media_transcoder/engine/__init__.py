"""Per-format recipes turning uploads and form parameters into a JobSpec.

Each recipe has the signature ``recipe(uploads, params) -> JobSpec``.
``RECIPES`` maps the URL path under ``/api`` to the recipe serving it.
"""

from media_transcoder.engine import ffmpeg, ghostscript, imaging

RECIPES = {
    "compress/gif": ffmpeg.compress_gif,
    "compress/video": ffmpeg.compress_video,
    "compress/mp3": ffmpeg.compress_mp3,
    "compress/wav": ffmpeg.compress_wav,
    "compress/pdf": ghostscript.compress_pdf,
    "compress/png": imaging.compress_png,
    "compress/jpeg": imaging.compress_jpeg,
    "compress/image": imaging.compress_image,
    "convert/video-gif": ffmpeg.video_to_gif,
    "convert/gif-mp4": ffmpeg.gif_to_mp4,
    "convert/mov-mp4": ffmpeg.mov_to_mp4,
    "convert/video-mp4": ffmpeg.video_to_mp4,
    "convert/video-mp3": ffmpeg.video_to_mp3,
    "convert/mp3-ogg": ffmpeg.mp3_to_ogg,
    "convert/audio": ffmpeg.convert_audio,
    "convert/image": imaging.convert_image,
    "convert/image-to-pdf": imaging.image_to_pdf,
    "convert/image-gif": imaging.image_to_gif,
    "convert/heic-jpg": imaging.heic_to_jpg,
    "convert/heic-png": imaging.heic_to_png,
    "convert/heic-pdf": imaging.heic_to_pdf,
    "convert/pdf-to-images": ghostscript.pdf_to_images,
}

# Recipes that take a ``files`` list instead of a single ``file``
MULTI_UPLOAD = frozenset({"convert/image-to-pdf", "convert/image-gif", "convert/heic-pdf"})

__all__ = ["MULTI_UPLOAD", "RECIPES"]
