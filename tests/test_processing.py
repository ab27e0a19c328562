import io
from unittest.mock import MagicMock

import pytest
from PIL import Image, features

from imagehub.exceptions import DecodeError, InvalidCropError, ProcessingError, UnsupportedFormatError
from imagehub.models import (
    CropRegion,
    FitMode,
    ImageFormat,
    OutputFormat,
    ResizeOptions,
    ThumbnailSize,
    TransformSpec,
    WebOptimizeOptions,
)
from imagehub.services.processing import ImageCodec, ImageProcessor, ProcessingConfig


def dimensions(data: bytes):
    with Image.open(io.BytesIO(data)) as image:
        return image.size


def test_extract_metadata(processor, make_image):
    data = make_image(1000, 500, mode="RGBA")
    metadata = processor.extract_metadata(data)

    assert metadata.format is ImageFormat.PNG
    assert (metadata.width, metadata.height) == (1000, 500)
    assert metadata.channels == 4
    assert metadata.depth == 8
    assert metadata.has_alpha is True
    assert metadata.size == len(data)
    assert metadata.aspect_ratio == 2.0


def test_extract_metadata_rounds_aspect_ratio(processor, make_image):
    metadata = processor.extract_metadata(make_image(640, 480, fmt="JPEG"))
    assert metadata.format is ImageFormat.JPEG
    assert metadata.aspect_ratio == 1.33
    assert metadata.has_alpha is False


def test_extract_metadata_rejects_garbage(processor):
    with pytest.raises(DecodeError):
        processor.extract_metadata(b"definitely not an image")


def test_extract_metadata_rejects_unsupported_container(processor, make_image):
    with pytest.raises(UnsupportedFormatError):
        processor.extract_metadata(make_image(100, 100, fmt="BMP"))


def test_resize_cover_gives_exact_box(processor, make_image):
    resized = processor.resize(make_image(1000, 500), ResizeOptions(width=150, height=150, fit=FitMode.COVER))
    assert dimensions(resized) == (150, 150)
    assert processor.extract_metadata(resized).format is ImageFormat.PNG


def test_resize_without_dimensions_returns_input(processor, make_image):
    data = make_image(300, 200)
    assert processor.resize(data, ResizeOptions()) is data


def test_resize_inside_keeps_aspect_ratio(processor, make_image):
    resized = processor.resize(make_image(1000, 500), ResizeOptions(width=200, height=200, fit=FitMode.INSIDE))
    assert dimensions(resized) == (200, 100)


def test_resize_outside_covers_box(processor, make_image):
    resized = processor.resize(make_image(1000, 500), ResizeOptions(width=150, height=150, fit=FitMode.OUTSIDE))
    assert dimensions(resized) == (300, 150)


def test_resize_contain_pads_to_box(processor, make_image):
    resized = processor.resize(make_image(1000, 500), ResizeOptions(width=200, height=200, fit=FitMode.CONTAIN))
    assert dimensions(resized) == (200, 200)


def test_resize_does_not_enlarge_by_default(processor, make_image):
    resized = processor.resize(make_image(100, 80), ResizeOptions(width=300, height=300, fit=FitMode.INSIDE))
    assert dimensions(resized) == (100, 80)


def test_resize_enlarges_when_allowed(processor, make_image):
    options = ResizeOptions(width=300, height=200, fit=FitMode.FILL, without_enlargement=False)
    assert dimensions(processor.resize(make_image(100, 50), options)) == (300, 200)


def test_resize_to_half_width(processor, make_image):
    data = make_image(1001, 601, fmt="JPEG")
    original = processor.extract_metadata(data)

    resized = processor.resize(data, ResizeOptions(width=original.width // 2))
    metadata = processor.extract_metadata(resized)

    assert abs(metadata.width - original.width / 2) <= 1
    assert abs(metadata.height - original.height / 2) <= 1
    assert metadata.format is ImageFormat.JPEG


def test_convert_gif_target_falls_back_to_png(processor, make_image):
    converted = processor.convert_format(make_image(120, 80, fmt="JPEG"), "gif")
    assert processor.extract_metadata(converted).format is ImageFormat.PNG


def test_convert_to_jpeg_drops_alpha(processor, make_image):
    converted = processor.convert_format(make_image(120, 80, mode="RGBA"), OutputFormat.JPEG)
    metadata = processor.extract_metadata(converted)
    assert metadata.format is ImageFormat.JPEG
    assert metadata.has_alpha is False


def test_convert_to_webp_and_tiff(processor, make_image):
    data = make_image(120, 80)
    assert processor.extract_metadata(processor.convert_format(data, "webp")).format is ImageFormat.WEBP
    assert processor.extract_metadata(processor.convert_format(data, "TIFF")).format is ImageFormat.TIFF


def test_convert_unknown_format(processor, make_image):
    with pytest.raises(UnsupportedFormatError):
        processor.convert_format(make_image(50, 50), "bmp")


def test_convert_wraps_decode_failure(processor):
    with pytest.raises(ProcessingError):
        processor.convert_format(b"\x89PNG broken", "png")


def test_rotate_swaps_dimensions(processor, make_image):
    rotated = processor.apply_transformations(make_image(400, 200), TransformSpec(rotate=90))
    assert dimensions(rotated) == (200, 400)


def test_crop_runs_after_rotate(processor, make_image):
    # 300px of height only exists once the image has been rotated
    spec = TransformSpec(rotate=90, crop=CropRegion(x=0, y=0, width=150, height=300))
    assert dimensions(processor.apply_transformations(make_image(400, 200), spec)) == (150, 300)


def test_grayscale_and_negate(processor, make_image):
    data = processor.apply_transformations(make_image(64, 64), TransformSpec(grayscale=True, negate=True))
    assert processor.extract_metadata(data).channels == 1


def test_chained_filters_keep_alpha(processor, make_image):
    spec = TransformSpec(
        flip=True,
        flop=True,
        blur=1.5,
        sharpen={"sigma": 1.0},
        modulate={"brightness": 1.2, "saturation": 0.5, "hue": 90},
        tint=(255, 0, 0),
    )
    data = processor.apply_transformations(make_image(64, 48, mode="RGBA"), spec)
    metadata = processor.extract_metadata(data)
    assert (metadata.width, metadata.height) == (64, 48)
    assert metadata.has_alpha is True


def test_negative_crop_fails_before_codec(make_image):
    codec = MagicMock(wraps=ImageCodec())
    processor = ImageProcessor(codec=codec)

    with pytest.raises(InvalidCropError):
        processor.apply_transformations(
            make_image(100, 100), TransformSpec(crop=CropRegion(x=-1, y=0, width=10, height=10))
        )

    codec.open.assert_not_called()
    codec.decode.assert_not_called()
    codec.encode.assert_not_called()
    codec.encode_source.assert_not_called()


def test_zero_width_crop_is_invalid(processor, make_image):
    with pytest.raises(InvalidCropError):
        processor.apply_transformations(
            make_image(100, 100), TransformSpec(crop=CropRegion(x=0, y=0, width=0, height=10))
        )


def test_crop_outside_image_is_invalid(processor, make_image):
    with pytest.raises(InvalidCropError):
        processor.apply_transformations(
            make_image(100, 100), TransformSpec(crop=CropRegion(x=50, y=50, width=80, height=10))
        )


def test_transform_image_resizes_and_encodes(processor, make_image):
    spec = TransformSpec(width=200, format=OutputFormat.WEBP, quality=70, rotate=180)
    data = processor.transform_image(make_image(800, 400), spec)
    metadata = processor.extract_metadata(data)
    assert metadata.format is ImageFormat.WEBP
    assert (metadata.width, metadata.height) == (200, 100)


def test_default_thumbnails(processor, make_image):
    thumbnails = processor.create_thumbnails(make_image(1200, 900, fmt="JPEG"))

    assert set(thumbnails) == {"small", "medium", "large"}
    bounds = {"small": 150, "medium": 300, "large": 600}
    for label, thumb in thumbnails.items():
        assert thumb.width <= bounds[label] and thumb.height <= bounds[label]
        assert thumb.format is OutputFormat.WEBP
        assert thumb.metadata.format is ImageFormat.WEBP
        assert thumb.size == len(thumb.data)
        assert dimensions(thumb.data) == (thumb.width, thumb.height)
    assert (thumbnails["small"].width, thumbnails["small"].height) == (150, 150)


def test_thumbnails_never_enlarge_small_sources(processor, make_image):
    thumbnails = processor.create_thumbnails(make_image(200, 100))
    assert (thumbnails["large"].width, thumbnails["large"].height) == (200, 100)


def test_custom_thumbnail_sizes(processor, make_image):
    sizes = [ThumbnailSize(name="banner", width=400, height=100)]
    thumbnails = processor.create_thumbnails(make_image(1000, 1000), sizes, "jpeg")
    assert list(thumbnails) == ["banner"]
    assert thumbnails["banner"].metadata.format is ImageFormat.JPEG
    assert (thumbnails["banner"].width, thumbnails["banner"].height) == (400, 100)


class FailingCodec(ImageCodec):
    def __init__(self, fail_after: int):
        super().__init__()
        self.encodes = 0
        self.fail_after = fail_after

    def encode(self, image, target, options=None):
        self.encodes += 1
        if self.encodes > self.fail_after:
            raise OSError("encoder crashed")
        return super().encode(image, target, options)


def test_thumbnails_are_all_or_nothing(make_image):
    processor = ImageProcessor(codec=FailingCodec(fail_after=1))
    with pytest.raises(ProcessingError):
        processor.create_thumbnails(make_image(800, 800))


def test_optimize_for_web_downscales(processor, make_image):
    data = make_image(3000, 1000, fmt="PNG")
    result = processor.optimize_for_web(data, WebOptimizeOptions(format="jpeg", quality=70))

    assert dimensions(result.data) == (1920, 640)
    assert result.format is OutputFormat.JPEG
    assert result.original_size == len(data)
    assert result.optimized_size == len(result.data)
    assert result.compression_ratio == round((len(data) - len(result.data)) / len(data), 4)


def test_optimize_for_web_keeps_small_images(processor, make_image):
    result = processor.optimize_for_web(make_image(640, 480))
    assert dimensions(result.data) == (640, 480)
    assert result.format is OutputFormat.WEBP


def test_optimize_for_web_rejects_tiff(processor, make_image):
    with pytest.raises(UnsupportedFormatError):
        processor.optimize_for_web(make_image(64, 64), WebOptimizeOptions(format="tiff"))


def test_jpeg_flattens_onto_configured_background():
    buffer = io.BytesIO()
    Image.new("RGBA", (32, 32), (255, 255, 255, 0)).save(buffer, format="PNG")
    processor = ImageProcessor(ProcessingConfig(background=(0, 0, 0, 255)))

    converted = processor.convert_format(buffer.getvalue(), OutputFormat.JPEG)

    with Image.open(io.BytesIO(converted)) as image:
        assert max(image.convert("RGB").getpixel((16, 16))) < 10


@pytest.mark.skipif(not features.check("avif"), reason="Pillow built without libavif")
def test_convert_to_avif(processor, make_image):
    converted = processor.convert_format(make_image(120, 80), OutputFormat.AVIF)
    assert Image.open(io.BytesIO(converted)).format == "AVIF"
