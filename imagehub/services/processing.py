"""
Image Processing Service

Responsibilities:
- Extract metadata from uploaded image bytes
- Resize with fit modes, convert between output formats
- Apply chained transformations (rotate, flip, blur, crop, tint, ...)
- Generate thumbnail sets and web-optimized renditions
- Validate images against upload constraints

Decoding and encoding go through ``ImageCodec``; the processor itself only
works on decoded ``PIL.Image`` objects and never touches Pillow globals.
"""

import io
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Union

from PIL import Image, ImageEnhance, ImageFilter, ImageOps
from pydantic import BaseModel

from imagehub.exceptions import (
    DecodeError,
    InvalidCropError,
    ProcessingError,
    UnsupportedFormatError,
    ValidationError,
)
from imagehub.log import get_logger
from imagehub.models import (
    DEFAULT_THUMBNAIL_SIZES,
    RGBA,
    WHITE,
    CropRegion,
    EncodeOptions,
    FitMode,
    ImageFormat,
    ImageMetadata,
    Kernel,
    OptimizedImage,
    OutputFormat,
    Position,
    ResizeOptions,
    Thumbnail,
    ThumbnailSet,
    ThumbnailSize,
    TransformSpec,
    ValidationConstraints,
    WebOptimizeOptions,
)

logger = get_logger("processing")

# Everything Pillow is known to raise on bad input or a failed encode.
PILLOW_ERRORS = (OSError, ValueError, KeyError, TypeError, SyntaxError, Image.DecompressionBombError)


class ProcessingConfig(BaseModel):
    max_pixels: int = 50_000_000
    thumbnail_sizes: List[ThumbnailSize] = DEFAULT_THUMBNAIL_SIZES
    thumbnail_format: OutputFormat = OutputFormat.WEBP
    background: RGBA = WHITE


# --- encoders ---------------------------------------------------------------

def _flatten(image: Image.Image, background: RGBA = WHITE) -> Image.Image:
    """Drop the alpha band by compositing onto an opaque background."""
    if image.mode in ("RGB", "L"):
        return image
    rgba = image.convert("RGBA")
    canvas = Image.new("RGB", rgba.size, background[:3])
    canvas.paste(rgba, mask=rgba.getchannel("A"))
    return canvas


def _rgb_or_rgba(image: Image.Image, options: EncodeOptions) -> Image.Image:
    if image.mode in ("RGB", "RGBA"):
        return image
    return image.convert("RGBA" if "A" in image.getbands() else "RGB")


def _opaque(image: Image.Image, options: EncodeOptions) -> Image.Image:
    return _flatten(image, options.background)


def _unchanged(image: Image.Image, options: EncodeOptions) -> Image.Image:
    return image


def _tiff_prepare(image: Image.Image, options: EncodeOptions) -> Image.Image:
    return _flatten(image, options.background) if options.compression == "jpeg" else image


TIFF_COMPRESSION = {
    "none": None,
    "jpeg": "jpeg",
    "lzw": "tiff_lzw",
    "deflate": "tiff_adobe_deflate",
    "packbits": "packbits",
}


def _tiff_options(options: EncodeOptions, quality: int) -> dict:
    if options.compression not in TIFF_COMPRESSION:
        raise ValueError(f"Unknown TIFF compression: {options.compression}")
    save = {"compression": TIFF_COMPRESSION[options.compression]}
    if options.compression == "jpeg":
        save["quality"] = quality
    return save


@dataclass(frozen=True)
class EncoderSpec:
    pillow_format: str
    default_quality: int
    prepare: Callable[[Image.Image, EncodeOptions], Image.Image]
    save_options: Callable[[EncodeOptions, int], dict]


ENCODERS: Dict[OutputFormat, EncoderSpec] = {
    OutputFormat.JPEG: EncoderSpec(
        "JPEG", 85, _opaque,
        lambda o, q: {"quality": q, "progressive": o.progressive, "optimize": True},
    ),
    # PNG is lossless in Pillow; quality is accepted but only compression applies.
    OutputFormat.PNG: EncoderSpec(
        "PNG", 90, _unchanged,
        lambda o, q: {"compress_level": o.compression_level},
    ),
    OutputFormat.WEBP: EncoderSpec(
        "WEBP", 85, _rgb_or_rgba,
        lambda o, q: {"quality": q, "method": min(o.effort, 6), "lossless": o.lossless},
    ),
    OutputFormat.AVIF: EncoderSpec(
        "AVIF", 85, _rgb_or_rgba,
        lambda o, q: {"quality": q, "speed": max(0, 10 - o.effort)},
    ),
    OutputFormat.TIFF: EncoderSpec("TIFF", 85, _tiff_prepare, _tiff_options),
}


_MODE_DEPTH = {"1": 1, "I;16": 16, "I;16B": 16, "I;16L": 16, "I": 32, "F": 32}


class ImageCodec:
    """Turns bytes into Pillow images and back."""

    def __init__(self, max_pixels: int = 50_000_000):
        self.max_pixels = max_pixels

    def open(self, data: bytes) -> Image.Image:
        """Read the container header only; pixel data stays undecoded."""
        if not data:
            raise DecodeError("Empty image buffer", "DECODE_IMAGE")
        try:
            image = Image.open(io.BytesIO(data))
        except PILLOW_ERRORS as exc:
            raise DecodeError(
                f"Unrecognized image data: {exc}", "DECODE_IMAGE", {"size": len(data)}
            ) from exc
        width, height = image.size
        if width * height > self.max_pixels:
            raise DecodeError(
                f"Image has {width * height} pixels, limit is {self.max_pixels}",
                "DECODE_IMAGE",
                {"width": width, "height": height},
            )
        return image

    def decode(self, data: bytes) -> Image.Image:
        image = self.open(data)
        try:
            image.load()
        except PILLOW_ERRORS as exc:
            raise DecodeError(
                f"Corrupt image data: {exc}", "DECODE_IMAGE", {"size": len(data)}
            ) from exc
        return _normalize_mode(image)

    def encode(
        self,
        image: Image.Image,
        target: OutputFormat,
        options: Optional[EncodeOptions] = None,
    ) -> bytes:
        options = options or EncodeOptions()
        encoder = ENCODERS[target]
        quality = options.quality if options.quality is not None else encoder.default_quality
        prepared = encoder.prepare(image, options)
        buffer = io.BytesIO()
        prepared.save(buffer, format=encoder.pillow_format, **encoder.save_options(options, quality))
        return buffer.getvalue()

    def encode_source(self, image: Image.Image, source: ImageFormat) -> bytes:
        """Encode back into the format the image was uploaded in."""
        if source is ImageFormat.GIF:
            buffer = io.BytesIO()
            image.save(buffer, format="GIF")
            return buffer.getvalue()
        return self.encode(image, OutputFormat(source.value))


def _normalize_mode(image: Image.Image) -> Image.Image:
    if image.mode in ("RGB", "RGBA", "L", "LA"):
        return image
    has_alpha = "A" in image.getbands() or "transparency" in image.info
    return image.convert("RGBA" if has_alpha else "RGB")


def _fill_color(image: Image.Image, rgba: RGBA):
    if image.mode == "RGBA":
        return tuple(rgba)
    if image.mode == "RGB":
        return tuple(rgba[:3])
    luminance = round(0.299 * rgba[0] + 0.587 * rgba[1] + 0.114 * rgba[2])
    if image.mode == "LA":
        return (luminance, rgba[3])
    return luminance


def _on_colour(image: Image.Image, operation: Callable[[Image.Image], Image.Image]) -> Image.Image:
    """Run ``operation`` on the colour bands, leaving alpha untouched."""
    if image.mode not in ("RGBA", "LA"):
        return operation(image)
    alpha = image.getchannel("A")
    result = operation(image.convert(image.mode[:-1]))
    if result.mode not in ("RGB", "L"):
        result = result.convert("RGB")
    result.putalpha(alpha)
    return result


_KERNELS = {
    Kernel.NEAREST: Image.Resampling.NEAREST,
    Kernel.LINEAR: Image.Resampling.BILINEAR,
    Kernel.CUBIC: Image.Resampling.BICUBIC,
    Kernel.MITCHELL: Image.Resampling.BICUBIC,
    Kernel.LANCZOS2: Image.Resampling.LANCZOS,
    Kernel.LANCZOS3: Image.Resampling.LANCZOS,
}

_CENTERING = {
    Position.CENTER: (0.5, 0.5),
    Position.TOP: (0.5, 0.0),
    Position.RIGHT_TOP: (1.0, 0.0),
    Position.RIGHT: (1.0, 0.5),
    Position.RIGHT_BOTTOM: (1.0, 1.0),
    Position.BOTTOM: (0.5, 1.0),
    Position.LEFT_BOTTOM: (0.0, 1.0),
    Position.LEFT: (0.0, 0.5),
    Position.LEFT_TOP: (0.0, 0.0),
}

_WEB_FORMATS = {
    "webp": (OutputFormat.WEBP, {"effort": 6}),
    "jpeg": (OutputFormat.JPEG, {}),
    "png": (OutputFormat.PNG, {"compression_level": 9}),
    "avif": (OutputFormat.AVIF, {"effort": 6}),
}


@contextmanager
def _processing(operation: str, message: str, **context):
    """Wrap decode/encode failures as ProcessingError with operation context."""
    try:
        yield
    except (DecodeError,) + PILLOW_ERRORS as exc:
        logger.error(f"{operation} failed: {exc} {context}")
        raise ProcessingError(f"{message}: {exc}", operation, context) from exc


class ImageProcessor:
    """
    Image Transform Engine.

    All public methods take and return raw bytes. They are CPU bound and
    synchronous; async callers should run them in a threadpool.
    """

    def __init__(self, config: Optional[ProcessingConfig] = None, codec: Optional[ImageCodec] = None):
        self.config = config or ProcessingConfig()
        self.codec = codec or ImageCodec(self.config.max_pixels)

    # --- metadata / validation ------------------------------------------------

    def extract_metadata(self, data: bytes) -> ImageMetadata:
        image = self.codec.open(data)
        image_format = ImageFormat.from_pillow(image.format)
        if image_format is None:
            raise UnsupportedFormatError(
                f"Unsupported image format: {image.format}",
                "GET_IMAGE_METADATA",
                {"size": len(data)},
            )
        width, height = image.size
        bands = image.getbands()
        has_alpha = "A" in bands or "transparency" in image.info
        if image.mode == "P":
            channels = 4 if has_alpha else 3
        else:
            channels = len(bands)
        dpi = image.info.get("dpi")

        metadata = ImageMetadata(
            format=image_format,
            width=width,
            height=height,
            channels=channels,
            depth=_MODE_DEPTH.get(image.mode, 8),
            has_alpha=has_alpha,
            size=len(data),
            aspect_ratio=round(width / height, 2) if width and height else None,
            is_progressive=bool(image.info.get("progressive") or image.info.get("progression")),
            has_profile=bool(image.info.get("icc_profile")),
            density=round(float(dpi[0])) if dpi else None,
        )
        logger.info(
            f"Image metadata extracted: format={metadata.format.value}, "
            f"dimensions={width}x{height}, size={metadata.size}"
        )
        return metadata

    def validate_image(self, data: bytes, constraints: Optional[ValidationConstraints] = None) -> None:
        """
        Check an image against ``constraints``.

        Every violated constraint is reported in a single ValidationError.
        Data that is not an image at all raises DecodeError.
        """
        constraints = constraints or ValidationConstraints()
        image = self.codec.open(data)
        width, height = image.size
        errors = []

        if width < constraints.min_width:
            errors.append(f"Width must be at least {constraints.min_width}px")
        if constraints.max_width is not None and width > constraints.max_width:
            errors.append(f"Width must not exceed {constraints.max_width}px")
        if height < constraints.min_height:
            errors.append(f"Height must be at least {constraints.min_height}px")
        if constraints.max_height is not None and height > constraints.max_height:
            errors.append(f"Height must not exceed {constraints.max_height}px")

        aspect_ratio = round(width / height, 2) if width and height else None
        if aspect_ratio is not None:
            if constraints.aspect_ratio_min is not None and aspect_ratio < constraints.aspect_ratio_min:
                errors.append(f"Aspect ratio must be at least {constraints.aspect_ratio_min}")
            if constraints.aspect_ratio_max is not None and aspect_ratio > constraints.aspect_ratio_max:
                errors.append(f"Aspect ratio must not exceed {constraints.aspect_ratio_max}")

        image_format = ImageFormat.from_pillow(image.format)
        if image_format is None or image_format not in constraints.allowed_formats:
            errors.append(f"Unsupported image format: {(image.format or 'unknown').lower()}")

        if len(data) > constraints.max_size:
            errors.append(f"Image exceeds maximum size of {constraints.max_size} bytes")

        if errors:
            logger.warning(f"Image validation failed: {errors}")
            raise ValidationError(errors, context={"format": image.format, "size": len(data)})

        logger.debug(f"Image validated: format={image_format.value}, size={len(data)}")

    # --- single operations ----------------------------------------------------

    def resize(self, data: bytes, options: Optional[ResizeOptions] = None) -> bytes:
        options = options or ResizeOptions()
        if not options.width and not options.height:
            return data

        with _processing("RESIZE_IMAGE", "Failed to resize image",
                         width=options.width, height=options.height, fit=options.fit.value):
            source = self.codec.open(data)
            source_format = ImageFormat.from_pillow(source.format) or ImageFormat.PNG
            image = self._resize(self.codec.decode(data), options)
            resized = self.codec.encode_source(image, source_format)

        logger.info(
            f"RESIZE: {len(data)} -> {len(resized)} bytes, "
            f"{options.width or 'auto'}x{options.height or 'auto'} fit={options.fit.value}"
        )
        return resized

    def resolve_output_format(self, target: Union[str, OutputFormat, ImageFormat]) -> OutputFormat:
        value = target.value if isinstance(target, (OutputFormat, ImageFormat)) else str(target).lower()
        if value == "gif":
            logger.warning("GIF output not supported. Converting to PNG instead")
            return OutputFormat.PNG
        if value == "jpg":
            return OutputFormat.JPEG
        try:
            return OutputFormat(value)
        except ValueError:
            raise UnsupportedFormatError(
                f"Unsupported format: {target}", "CONVERT_FORMAT", {"format": str(target)}
            ) from None

    def convert_format(
        self,
        data: bytes,
        target: Union[str, OutputFormat, ImageFormat],
        options: Optional[EncodeOptions] = None,
    ) -> bytes:
        output_format = self.resolve_output_format(target)
        with _processing("CONVERT_FORMAT", "Failed to convert image format", format=output_format.value):
            options = options or self._encode_options()
            converted = self.codec.encode(self.codec.decode(data), output_format, options)

        logger.info(f"FORMAT_CONVERSION to {output_format.value}: {len(data)} -> {len(converted)} bytes")
        return converted

    def apply_transformations(self, data: bytes, spec: TransformSpec) -> bytes:
        self._check_crop(spec.crop)
        with _processing("APPLY_TRANSFORMATIONS", "Failed to apply transformations"):
            source = self.codec.open(data)
            source_format = ImageFormat.from_pillow(source.format) or ImageFormat.PNG
            image = self._transform(self.codec.decode(data), spec)
            transformed = self.codec.encode_source(image, source_format)

        logger.info(
            f"APPLY_TRANSFORMATIONS {sorted(spec.model_dump(exclude_defaults=True))}: "
            f"{len(data)} -> {len(transformed)} bytes"
        )
        return transformed

    def transform_image(self, data: bytes, spec: TransformSpec) -> bytes:
        """Transformations, optional resize and output encoding in one pass."""
        self._check_crop(spec.crop)
        with _processing("TRANSFORM_IMAGE", "Failed to transform image", format=spec.format.value):
            image = self._transform(self.codec.decode(data), spec)
            if spec.width or spec.height:
                image = self._resize(image, ResizeOptions(
                    width=spec.width, height=spec.height, fit=FitMode.INSIDE
                ))
            return self.codec.encode(image, spec.format, self._encode_options(quality=spec.quality))

    def create_thumbnails(
        self,
        data: bytes,
        sizes: Optional[List[ThumbnailSize]] = None,
        format: Union[str, OutputFormat] = None,
    ) -> ThumbnailSet:
        """
        Render every size in ``sizes`` (defaults: small/medium/large).

        Thumbnails are all-or-nothing: if one size fails the whole set fails.
        """
        sizes = sizes or self.config.thumbnail_sizes
        output_format = self.resolve_output_format(format or self.config.thumbnail_format)
        thumbnails: ThumbnailSet = {}

        with _processing("CREATE_THUMBNAILS", "Failed to create thumbnails",
                         sizes=[s.name for s in sizes], format=output_format.value):
            original = self.codec.decode(data)
            for size in sizes:
                resized = self._resize(original, ResizeOptions(
                    width=size.width,
                    height=size.height,
                    fit=size.fit,
                    without_enlargement=size.without_enlargement,
                ))
                encoded = self.codec.encode(resized, output_format, self._encode_options())
                thumbnails[size.name] = Thumbnail(
                    data=encoded,
                    metadata=self.extract_metadata(encoded),
                    width=resized.width,
                    height=resized.height,
                    size=len(encoded),
                    format=output_format,
                )

        logger.info(
            f"CREATE_THUMBNAILS: {len(thumbnails)} thumbnails "
            f"{[f'{s.name}:{s.width}x{s.height}' for s in sizes]} as {output_format.value}"
        )
        return thumbnails

    def optimize_for_web(self, data: bytes, options: Optional[WebOptimizeOptions] = None) -> OptimizedImage:
        options = options or WebOptimizeOptions()
        key = options.format.lower()
        if key not in _WEB_FORMATS:
            raise UnsupportedFormatError(
                f"Unsupported optimization format: {options.format}",
                "OPTIMIZE_FOR_WEB",
                {"format": options.format},
            )
        output_format, encoder_overrides = _WEB_FORMATS[key]

        with _processing("OPTIMIZE_FOR_WEB", "Failed to optimize image for web", format=key):
            image = self.codec.decode(data)
            if image.width > options.max_width or image.height > options.max_height:
                image = self._resize(image, ResizeOptions.model_construct(
                    width=options.max_width,
                    height=options.max_height,
                    fit=FitMode.INSIDE,
                    position=Position.CENTER,
                    background=self.config.background,
                    without_enlargement=True,
                    kernel=Kernel.LANCZOS3,
                ))
            encode_options = self._encode_options(
                quality=options.quality, progressive=options.progressive, **encoder_overrides
            )
            optimized = self.codec.encode(image, output_format, encode_options)

        ratio = round((len(data) - len(optimized)) / len(data), 4)
        logger.info(
            f"OPTIMIZE_FOR_WEB: {len(data)} -> {len(optimized)} bytes "
            f"({ratio * 100:.2f}% saved) as {output_format.value}"
        )
        return OptimizedImage(
            data=optimized,
            format=output_format,
            original_size=len(data),
            optimized_size=len(optimized),
            compression_ratio=ratio,
        )

    def _encode_options(self, **overrides) -> EncodeOptions:
        return EncodeOptions(background=self.config.background, **overrides)

    # --- internals on decoded images -----------------------------------------

    @staticmethod
    def _check_crop(crop: Optional[CropRegion]) -> None:
        if crop is None:
            return
        if crop.x < 0 or crop.y < 0 or crop.width < 1 or crop.height < 1:
            raise InvalidCropError(
                "Invalid crop parameters: x and y must be >= 0, width and height >= 1",
                "APPLY_TRANSFORMATIONS",
                crop.model_dump(),
            )

    def _resize(self, image: Image.Image, options: ResizeOptions) -> Image.Image:
        if not options.width and not options.height:
            return image
        src_w, src_h = image.size
        box_w, box_h = options.width, options.height
        if not box_h:
            box_h = max(1, round(src_h * box_w / src_w))
        elif not box_w:
            box_w = max(1, round(src_w * box_h / src_h))
        if options.without_enlargement:
            box_w, box_h = min(box_w, src_w), min(box_h, src_h)

        resample = _KERNELS[options.kernel]
        centering = _CENTERING[options.position]

        if options.fit is FitMode.COVER:
            return ImageOps.fit(image, (box_w, box_h), method=resample, centering=centering)
        if options.fit is FitMode.CONTAIN:
            return ImageOps.pad(
                image, (box_w, box_h), method=resample,
                color=_fill_color(image, options.background), centering=centering,
            )
        if options.fit is FitMode.FILL:
            return image.resize((box_w, box_h), resample)

        if options.fit is FitMode.INSIDE:
            scale = min(box_w / src_w, box_h / src_h)
        else:
            scale = max(box_w / src_w, box_h / src_h)
        target = (max(1, round(src_w * scale)), max(1, round(src_h * scale)))
        if target == image.size:
            return image
        return image.resize(target, resample)

    def _transform(self, image: Image.Image, spec: TransformSpec) -> Image.Image:
        if spec.rotate:
            image = image.rotate(
                -spec.rotate,
                resample=Image.Resampling.BICUBIC,
                expand=True,
                fillcolor=_fill_color(image, spec.rotate_background),
            )

        if spec.flip:
            image = ImageOps.flip(image)

        if spec.flop:
            image = ImageOps.mirror(image)

        if spec.sharpen:
            unsharp = ImageFilter.UnsharpMask(
                radius=spec.sharpen.sigma,
                percent=int(spec.sharpen.jagged * 100),
                threshold=int(spec.sharpen.flat),
            )
            image = _on_colour(image, lambda im: im.filter(unsharp))

        if spec.blur:
            image = image.filter(ImageFilter.GaussianBlur(spec.blur))

        if spec.modulate:
            image = _on_colour(image, lambda im: _modulate(im, spec))

        if spec.grayscale:
            image = _on_colour(image, ImageOps.grayscale)

        if spec.negate:
            image = _on_colour(image, ImageOps.invert)

        if spec.crop:
            crop = spec.crop
            if crop.x + crop.width > image.width or crop.y + crop.height > image.height:
                raise InvalidCropError(
                    f"Crop area exceeds image bounds {image.width}x{image.height}",
                    "APPLY_TRANSFORMATIONS",
                    crop.model_dump(),
                )
            image = image.crop((crop.x, crop.y, crop.x + crop.width, crop.y + crop.height))

        if spec.tint:
            image = _on_colour(
                image,
                lambda im: ImageOps.colorize(im.convert("L"), black=(0, 0, 0), white=(255, 255, 255), mid=spec.tint),
            )

        return image


def _modulate(image: Image.Image, spec: TransformSpec) -> Image.Image:
    modulate = spec.modulate
    if modulate.brightness is not None:
        image = ImageEnhance.Brightness(image).enhance(modulate.brightness)
    if modulate.saturation is not None and image.mode == "RGB":
        image = ImageEnhance.Color(image).enhance(modulate.saturation)
    if modulate.hue and image.mode == "RGB":
        shift = round(modulate.hue / 360 * 256) % 256
        h, s, v = image.convert("HSV").split()
        h = h.point(lambda p: (p + shift) % 256)
        image = Image.merge("HSV", (h, s, v)).convert("RGB")
    return image
