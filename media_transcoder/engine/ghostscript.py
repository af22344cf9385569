"""Ghostscript recipes: PDF compression and PDF page rasterization."""

import shutil
from typing import List, Mapping, Optional, Sequence

from media_transcoder.core.exceptions import ValidationError
from media_transcoder.engine.common import (
    choice,
    clamp_int,
    keep_smaller,
    scaled_timeout,
    single,
    stage_as,
)
from media_transcoder.engine.pdf import PDF_ERRORS, count_pages, resave_pdf
from media_transcoder.pipeline.models import (
    AllowList,
    Alternatives,
    ExternalTool,
    InputFile,
    JobSpec,
    LibraryCall,
    OutputSpec,
)

PDF_TYPES = AllowList.of(extensions=("pdf",), mime_types=("application/pdf",))
MAX_RASTER_PAGES = 200


def get_ghostscript_command() -> Optional[str]:
    """Get Ghostscript binary name for current platform."""
    for name in ["gs", "gswin64c", "gswin32c"]:
        if shutil.which(name):
            return name
    return None


def lossless_args() -> List[str]:
    """pdfwrite settings that de-duplicate resources without re-encoding images."""
    return [
        "-sDEVICE=pdfwrite",
        "-dCompatibilityLevel=1.4",
        "-dPDFSETTINGS=/default",
        "-dNOPAUSE",
        "-dBATCH",
        "-dQUIET",
        "-dDownsampleColorImages=false",
        "-dDownsampleGrayImages=false",
        "-dDownsampleMonoImages=false",
        "-dPassThroughJPEGImages=true",
        "-dPassThroughJPXImages=true",
        "-dDetectDuplicateImages=true",
        "-dCompressFonts=true",
        "-dSubsetFonts=true",
    ]


def aggressive_args(dpi: int = 72, jpeg_quality: Optional[int] = None) -> List[str]:
    """pdfwrite settings that downsample and JPEG-encode images (scanned documents)."""
    args = [
        "-sDEVICE=pdfwrite",
        "-dCompatibilityLevel=1.4",
        "-dPDFSETTINGS=/screen",
        "-dNOPAUSE",
        "-dBATCH",
        "-dQUIET",
        # JPEG encoding also converts JPEG2000 images
        "-dAutoFilterColorImages=false",
        "-dColorImageFilter=/DCTEncode",
        "-dAutoFilterGrayImages=false",
        "-dGrayImageFilter=/DCTEncode",
        "-dDownsampleColorImages=true",
        "-dColorImageDownsampleType=/Bicubic",
        f"-dColorImageResolution={dpi}",
        "-dColorImageDownsampleThreshold=1.0",
        "-dDownsampleGrayImages=true",
        "-dGrayImageDownsampleType=/Bicubic",
        f"-dGrayImageResolution={dpi}",
        "-dGrayImageDownsampleThreshold=1.0",
        "-dDownsampleMonoImages=true",
        "-dMonoImageDownsampleType=/Subsample",
        f"-dMonoImageResolution={max(150, dpi)}",
        "-dMonoImageDownsampleThreshold=1.0",
        "-dDetectDuplicateImages=true",
        "-dCompressFonts=true",
        "-dSubsetFonts=true",
        "-dFastWebView=true",
    ]
    if jpeg_quality is not None:
        args.insert(6, f"-dJPEGQ={jpeg_quality}")
    return args


def compress_pdf(uploads: Sequence[InputFile], params: Mapping[str, str]) -> JobSpec:
    """Ghostscript pdfwrite, falling back to a PyPDF2 re-save when gs fails or is missing."""
    upload = stage_as(single(uploads), "input.pdf")
    mode = choice(params, "mode", "aggressive", ("aggressive", "lossless"))
    gs = get_ghostscript_command() or "gs"

    if mode == "lossless":
        gs_args = lossless_args()
        timeout = scaled_timeout(upload.data, 5, 300)
    else:
        dpi = clamp_int(params, "dpi", 72, 36, 300)
        jpeg_quality = clamp_int(params, "jpegQuality", 70, 10, 100) if params.get("jpegQuality") else None
        gs_args = aggressive_args(dpi, jpeg_quality)
        timeout = scaled_timeout(upload.data, 10, 600)

    ghostscript = ExternalTool(
        name="ghostscript",
        argv=tuple([gs] + gs_args + ["-sOutputFile=candidate.pdf", upload.name]),
        inputs=(upload.name,),
        outputs=("candidate.pdf",),
        timeout=timeout,
    )
    resave = LibraryCall(
        name="pypdf2-resave",
        func=resave_pdf,
        inputs=(upload.name,),
        outputs=("candidate.pdf",),
        errors=PDF_ERRORS,
    )
    pick = LibraryCall(
        name="keep-smaller",
        func=keep_smaller,
        inputs=(upload.name, "candidate.pdf"),
        outputs=("compressed.pdf",),
    )
    return JobSpec(
        inputs=(upload,),
        stages=(Alternatives("compress", (ghostscript, resave)), pick),
        outputs=(OutputSpec("compressed.pdf", "application/pdf"),),
        allowed=PDF_TYPES,
        label="compress-pdf",
    )


RASTER_DEVICES = {
    "png": ("png16m", "png", "image/png"),
    "jpg": ("jpeg", "jpg", "image/jpeg"),
}


def pdf_to_images(uploads: Sequence[InputFile], params: Mapping[str, str]) -> JobSpec:
    """Rasterize every page; outputs are declared up front from the page count."""
    upload = stage_as(single(uploads), "input.pdf")
    target = choice(params, "target", "png", ("png", "jpg", "jpeg"))
    device, ext, content_type = RASTER_DEVICES["jpg" if target == "jpeg" else target]
    density = clamp_int(params, "density", 144, 36, 300)

    if not PDF_TYPES.permits(upload.declared_name, upload.mime_type):
        raise ValidationError.not_allowed(upload.declared_name, upload.mime_type)
    pages = min(count_pages(upload.data), MAX_RASTER_PAGES)
    if pages == 0:
        raise ValidationError("PDF has no pages.")
    names = tuple(f"page-{i}.{ext}" for i in range(1, pages + 1))

    argv = [
        get_ghostscript_command() or "gs",
        f"-sDEVICE={device}",
        "-dNOPAUSE",
        "-dBATCH",
        "-dQUIET",
        "-dSAFER",
        f"-r{density}",
        "-dFirstPage=1",
        f"-dLastPage={pages}",
        "-dTextAlphaBits=4",
        "-dGraphicsAlphaBits=4",
    ]
    if device == "jpeg":
        argv.append("-dJPEGQ=85")
    argv += [f"-sOutputFile=page-%d.{ext}", upload.name]

    stage = ExternalTool(
        name="rasterize",
        argv=tuple(argv),
        inputs=(upload.name,),
        outputs=names,
        timeout=scaled_timeout(upload.data, 20, 300),
    )
    return JobSpec(
        inputs=(upload,),
        stages=(stage,),
        outputs=tuple(OutputSpec(n, content_type) for n in names),
        allowed=PDF_TYPES,
        label="pdf-to-images",
    )
