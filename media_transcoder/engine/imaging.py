"""Pillow recipes: raster compression, format conversion, HEIC decoding, image-to-PDF/GIF."""

import io
from typing import Mapping, Sequence

from PIL import Image, ImageOps
from pillow_heif import register_heif_opener

from media_transcoder.core.exceptions import ValidationError
from media_transcoder.engine.common import (
    choice,
    clamp_int,
    extension_of,
    flag,
    keep_smaller,
    single,
    stage_as,
)
from media_transcoder.pipeline.models import (
    AllowList,
    InputFile,
    JobSpec,
    LibraryCall,
    OutputSpec,
)

# Teach Image.open to decode HEIC/HEIF containers
register_heif_opener()

IMAGE_ERRORS = (OSError, ValueError, Image.DecompressionBombError)

IMAGE_TYPES = AllowList.of(
    extensions=("jpg", "jpeg", "jfif", "png", "webp", "gif", "bmp", "tif", "tiff"),
    mime_types=("image/jpeg", "image/png", "image/webp", "image/gif", "image/bmp", "image/tiff"),
)
PNG_TYPES = AllowList.of(extensions=("png",), mime_types=("image/png",))
JPEG_TYPES = AllowList.of(extensions=("jpg", "jpeg", "jfif"), mime_types=("image/jpeg", "image/jpg"))
HEIC_TYPES = AllowList.of(
    extensions=("heic", "heif"),
    mime_types=("image/heic", "image/heif", "image/heic-sequence", "image/heif-sequence"),
)

# target -> (Pillow format, extension, content type)
RASTER_FORMATS = {
    "jpg": ("JPEG", "jpg", "image/jpeg"),
    "png": ("PNG", "png", "image/png"),
    "webp": ("WEBP", "webp", "image/webp"),
    "gif": ("GIF", "gif", "image/gif"),
    "bmp": ("BMP", "bmp", "image/bmp"),
    "tiff": ("TIFF", "tiff", "image/tiff"),
}

MAX_IMAGES = 50

# Modes each encoder writes as-is; anything else (CMYK, YCbCr, I;16 ...) is normalised
WRITABLE_MODES = {
    "PNG": ("1", "L", "LA", "P", "RGB", "RGBA"),
    "WEBP": ("RGB", "RGBA"),
    "BMP": ("1", "L", "P", "RGB"),
    "TIFF": ("1", "L", "LA", "P", "RGB", "RGBA", "CMYK"),
}


def _open(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return ImageOps.exif_transpose(image)


def _flatten(image: Image.Image) -> Image.Image:
    """RGB copy with transparency composited onto white (JPEG has no alpha)."""
    if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    return image.convert("RGB")


def _writable(image: Image.Image, fmt: str) -> Image.Image:
    allowed = WRITABLE_MODES.get(fmt)
    if allowed is None or image.mode in allowed:
        return image
    has_alpha = "A" in image.getbands() or "transparency" in image.info
    if has_alpha and "RGBA" in allowed:
        return image.convert("RGBA")
    return _flatten(image)


def encode(image: Image.Image, fmt: str, quality: int = 80) -> bytes:
    image = _writable(image, fmt)
    out = io.BytesIO()
    if fmt == "JPEG":
        _flatten(image).save(out, "JPEG", quality=quality, optimize=True, progressive=True)
    elif fmt == "WEBP":
        image.save(out, "WEBP", quality=quality, method=4)
    elif fmt == "PNG":
        image.save(out, "PNG", optimize=True)
    elif fmt == "GIF":
        _flatten(image).convert("P", palette=Image.Palette.ADAPTIVE).save(out, "GIF", optimize=True)
    else:
        image.save(out, fmt)
    return out.getvalue()


def optimize_png(data: bytes, level: int = 7, palette: bool = True) -> bytes:
    image = _open(data)
    if palette and image.mode != "P":
        image = image.convert("RGBA").quantize(colors=256, method=Image.Quantize.FASTOCTREE)
    out = io.BytesIO()
    image.save(out, "PNG", optimize=True, compress_level=level)
    return out.getvalue()


def reencode_jpeg(data: bytes, quality: int = 80, progressive: bool = True) -> bytes:
    out = io.BytesIO()
    _flatten(_open(data)).save(out, "JPEG", quality=quality, optimize=True, progressive=progressive)
    return out.getvalue()


def resize_and_encode(data: bytes, fmt: str, quality: int = 80, max_width: int = 0, max_height: int = 0) -> bytes:
    image = _open(data)
    if max_width or max_height:
        bounds = (max_width or image.width, max_height or image.height)
        # thumbnail only ever shrinks and keeps the aspect ratio
        image.thumbnail(bounds, Image.Resampling.LANCZOS)
    return encode(image, fmt, quality)


def images_to_pdf(*buffers: bytes) -> bytes:
    pages = [_flatten(_open(data)) for data in buffers]
    out = io.BytesIO()
    pages[0].save(out, "PDF", save_all=True, append_images=pages[1:], resolution=72.0)
    return out.getvalue()


def images_to_gif(*buffers: bytes, delay: int = 500, loop: int = 0) -> bytes:
    frames = [_flatten(_open(data)) for data in buffers]
    width, height = frames[0].size
    frames = [f if f.size == (width, height) else ImageOps.pad(f, (width, height), color=(255, 255, 255)) for f in frames]
    out = io.BytesIO()
    frames[0].save(out, "GIF", save_all=True, append_images=frames[1:], duration=delay, loop=loop, disposal=2)
    return out.getvalue()


def _library_job(label, uploads, allowed, func, options, output, content_type, keep_original_if_smaller=False) -> JobSpec:
    stages = [
        LibraryCall(
            name=label,
            func=func,
            inputs=tuple(u.name for u in uploads),
            outputs=("candidate" if keep_original_if_smaller else output,),
            options=options,
            errors=IMAGE_ERRORS,
        )
    ]
    if keep_original_if_smaller:
        stages.append(LibraryCall("keep-smaller", keep_smaller, (uploads[0].name, "candidate"), (output,)))
    return JobSpec(
        inputs=tuple(uploads),
        stages=tuple(stages),
        outputs=(OutputSpec(output, content_type),),
        allowed=allowed,
        label=label,
    )


def compress_png(uploads: Sequence[InputFile], params: Mapping[str, str]) -> JobSpec:
    upload = stage_as(single(uploads), "input.png")
    options = {"level": clamp_int(params, "level", 7, 0, 9), "palette": flag(params, "palette", True)}
    return _library_job("compress-png", [upload], PNG_TYPES, optimize_png, options, "compressed.png", "image/png", True)


def compress_jpeg(uploads: Sequence[InputFile], params: Mapping[str, str]) -> JobSpec:
    upload = stage_as(single(uploads), "input.jpg")
    options = {"quality": clamp_int(params, "quality", 80, 1, 100), "progressive": flag(params, "progressive", True)}
    return _library_job("compress-jpeg", [upload], JPEG_TYPES, reencode_jpeg, options, "compressed.jpg", "image/jpeg", True)


def compress_image(uploads: Sequence[InputFile], params: Mapping[str, str]) -> JobSpec:
    source = single(uploads)
    upload = stage_as(source, f"input.{extension_of(source, 'img')}")
    target = choice(params, "output", "jpg", ("jpg", "jpeg", "png", "webp"))
    fmt, ext, content_type = RASTER_FORMATS["jpg" if target == "jpeg" else target]
    options = {
        "fmt": fmt,
        "quality": clamp_int(params, "quality", 80, 1, 100),
        "max_width": clamp_int(params, "maxWidth", 0, 0, 20000),
        "max_height": clamp_int(params, "maxHeight", 0, 0, 20000),
    }
    return _library_job("compress-image", [upload], IMAGE_TYPES, resize_and_encode, options, f"compressed.{ext}", content_type)


def convert_image(uploads: Sequence[InputFile], params: Mapping[str, str]) -> JobSpec:
    source = single(uploads)
    upload = stage_as(source, f"input.{extension_of(source, 'img')}")
    target = choice(params, "target", "png", ("jpg", "jpeg") + tuple(t for t in RASTER_FORMATS if t != "jpg"))
    fmt, ext, content_type = RASTER_FORMATS["jpg" if target == "jpeg" else target]
    options = {"fmt": fmt, "quality": clamp_int(params, "quality", 80, 1, 100)}
    return _library_job("convert-image", [upload], IMAGE_TYPES, resize_and_encode, options, f"converted.{ext}", content_type)


def _numbered(uploads: Sequence[InputFile]) -> list:
    if not uploads:
        raise ValidationError("No files uploaded.")
    if len(uploads) > MAX_IMAGES:
        raise ValidationError(f"Too many images ({len(uploads)}); the limit is {MAX_IMAGES}.")
    return [stage_as(u, f"image-{i:03d}.{extension_of(u, 'img')}") for i, u in enumerate(uploads, 1)]


def image_to_pdf(uploads: Sequence[InputFile], params: Mapping[str, str]) -> JobSpec:
    staged = _numbered(uploads)
    return _library_job("image-to-pdf", staged, IMAGE_TYPES, images_to_pdf, {}, "images.pdf", "application/pdf")


def image_to_gif(uploads: Sequence[InputFile], params: Mapping[str, str]) -> JobSpec:
    staged = _numbered(uploads)
    options = {"delay": clamp_int(params, "delay", 500, 20, 10000), "loop": clamp_int(params, "loop", 0, 0, 100)}
    return _library_job("image-gif", staged, IMAGE_TYPES, images_to_gif, options, "animation.gif", "image/gif")


def heic_to_jpg(uploads: Sequence[InputFile], params: Mapping[str, str]) -> JobSpec:
    upload = stage_as(single(uploads), "input.heic")
    options = {"fmt": "JPEG", "quality": clamp_int(params, "quality", 92, 1, 100)}
    return _library_job("heic-jpg", [upload], HEIC_TYPES, resize_and_encode, options, "converted.jpg", "image/jpeg")


def heic_to_png(uploads: Sequence[InputFile], params: Mapping[str, str]) -> JobSpec:
    upload = stage_as(single(uploads), "input.heic")
    return _library_job("heic-png", [upload], HEIC_TYPES, resize_and_encode, {"fmt": "PNG"}, "converted.png", "image/png")


def heic_to_pdf(uploads: Sequence[InputFile], params: Mapping[str, str]) -> JobSpec:
    """One PDF page per uploaded HEIC photo, in upload order."""
    staged = _numbered(uploads)
    return _library_job("heic-pdf", staged, HEIC_TYPES, images_to_pdf, {}, "photos.pdf", "application/pdf")
