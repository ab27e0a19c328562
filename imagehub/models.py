from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field


class ImageFormat(str, Enum):
    JPEG = "jpeg"
    PNG = "png"
    WEBP = "webp"
    GIF = "gif"
    TIFF = "tiff"
    AVIF = "avif"

    @classmethod
    def from_pillow(cls, name: Optional[str]) -> Optional["ImageFormat"]:
        return _PILLOW_FORMATS.get((name or "").upper())

    @property
    def mime_type(self) -> str:
        return f"image/{self.value}"


_PILLOW_FORMATS = {
    "JPEG": ImageFormat.JPEG,
    "MPO": ImageFormat.JPEG,
    "PNG": ImageFormat.PNG,
    "WEBP": ImageFormat.WEBP,
    "GIF": ImageFormat.GIF,
    "TIFF": ImageFormat.TIFF,
    "AVIF": ImageFormat.AVIF,
}


class OutputFormat(str, Enum):
    """Formats the codec can encode to."""
    JPEG = "jpeg"
    PNG = "png"
    WEBP = "webp"
    AVIF = "avif"
    TIFF = "tiff"

    @property
    def mime_type(self) -> str:
        return f"image/{self.value}"


class FitMode(str, Enum):
    COVER = "cover"
    CONTAIN = "contain"
    FILL = "fill"
    INSIDE = "inside"
    OUTSIDE = "outside"


class Position(str, Enum):
    CENTER = "center"
    TOP = "top"
    RIGHT_TOP = "right top"
    RIGHT = "right"
    RIGHT_BOTTOM = "right bottom"
    BOTTOM = "bottom"
    LEFT_BOTTOM = "left bottom"
    LEFT = "left"
    LEFT_TOP = "left top"


class Kernel(str, Enum):
    NEAREST = "nearest"
    LINEAR = "linear"
    CUBIC = "cubic"
    MITCHELL = "mitchell"
    LANCZOS2 = "lanczos2"
    LANCZOS3 = "lanczos3"


RGBA = Tuple[int, int, int, int]
WHITE: RGBA = (255, 255, 255, 255)


class ImageMetadata(BaseModel):
    format: ImageFormat
    width: int
    height: int
    channels: int
    depth: int
    has_alpha: bool
    size: int
    aspect_ratio: Optional[float] = None
    is_progressive: bool = False
    has_profile: bool = False
    density: Optional[int] = None


class ResizeOptions(BaseModel):
    width: Optional[int] = Field(default=None, ge=1, le=5000)
    height: Optional[int] = Field(default=None, ge=1, le=5000)
    fit: FitMode = FitMode.COVER
    position: Position = Position.CENTER
    background: RGBA = WHITE
    without_enlargement: bool = True
    kernel: Kernel = Kernel.LANCZOS3


class EncodeOptions(BaseModel):
    quality: Optional[int] = Field(default=None, ge=1, le=100)
    progressive: bool = True
    compression_level: int = Field(default=6, ge=0, le=9)
    effort: int = Field(default=4, ge=0, le=9)
    lossless: bool = False
    compression: str = "jpeg"
    # Flattening colour for encoders without alpha (jpeg, jpeg-compressed tiff)
    background: RGBA = WHITE


class CropRegion(BaseModel):
    # Bounds are checked by the processor so a bad crop fails as InvalidCropError.
    x: int
    y: int
    width: int
    height: int


class SharpenOptions(BaseModel):
    sigma: float = 1.0
    flat: float = 1.0
    jagged: float = 2.0


class ModulateOptions(BaseModel):
    brightness: Optional[float] = Field(default=None, ge=0)
    saturation: Optional[float] = Field(default=None, ge=0)
    hue: Optional[int] = None


class TransformSpec(BaseModel):
    rotate: Optional[int] = None
    rotate_background: RGBA = WHITE
    flip: bool = False
    flop: bool = False
    sharpen: Optional[SharpenOptions] = None
    blur: Optional[float] = Field(default=None, gt=0, le=1000)
    modulate: Optional[ModulateOptions] = None
    grayscale: bool = False
    negate: bool = False
    crop: Optional[CropRegion] = None
    tint: Optional[Tuple[int, int, int]] = None

    # Output stage, used by transform_image
    width: Optional[int] = Field(default=None, ge=1, le=5000)
    height: Optional[int] = Field(default=None, ge=1, le=5000)
    format: OutputFormat = OutputFormat.JPEG
    quality: int = Field(default=80, ge=1, le=100)


class ThumbnailSize(BaseModel):
    name: str
    width: int = Field(ge=1, le=5000)
    height: int = Field(ge=1, le=5000)
    fit: FitMode = FitMode.COVER
    without_enlargement: bool = True


DEFAULT_THUMBNAIL_SIZES: List[ThumbnailSize] = [
    ThumbnailSize(name="small", width=150, height=150),
    ThumbnailSize(name="medium", width=300, height=300),
    ThumbnailSize(name="large", width=600, height=600),
]


class Thumbnail(BaseModel):
    data: bytes
    metadata: ImageMetadata
    width: int
    height: int
    size: int
    format: OutputFormat


ThumbnailSet = Dict[str, Thumbnail]


class WebOptimizeOptions(BaseModel):
    format: str = "webp"
    quality: int = Field(default=85, ge=1, le=100)
    max_width: int = Field(default=1920, ge=1)
    max_height: int = Field(default=1080, ge=1)
    progressive: bool = True


class OptimizedImage(BaseModel):
    data: bytes
    format: OutputFormat
    original_size: int
    optimized_size: int
    compression_ratio: float


class ValidationConstraints(BaseModel):
    min_width: int = 0
    max_width: Optional[int] = None
    min_height: int = 0
    max_height: Optional[int] = None
    aspect_ratio_min: Optional[float] = None
    aspect_ratio_max: Optional[float] = None
    max_size: int = 10 * 1024 * 1024
    allowed_formats: List[ImageFormat] = list(ImageFormat)


class UploadFileInput(BaseModel):
    data: Optional[bytes] = None
    original_name: str
    mime_type: Optional[str] = None
    metadata: Dict[str, str] = {}
    folder: Optional[str] = None


class UploadResult(BaseModel):
    success: bool = True
    key: str
    filename: str
    original_name: str
    mime_type: str
    size: int
    etag: Optional[str] = None
    url: str
    upload_date: str
    hash: str


class FailedUpload(BaseModel):
    file: str
    error: str
    details: Optional[List[str]] = None


class BatchUploadResult(BaseModel):
    successful: List[UploadResult] = []
    failed: List[FailedUpload] = []
    total_processed: int = 0


class StoredObject(BaseModel):
    key: str
    size: int
    mime_type: Optional[str] = None
    last_modified: Optional[str] = None
    etag: Optional[str] = None
    metadata: Dict[str, str] = {}


class ThumbnailRecord(BaseModel):
    s3_key: str
    url: str
    width: int
    height: int


class ImageRecord(BaseModel):
    id: str
    user_id: Optional[str] = None
    original_name: str
    filename: str
    s3_key: str
    mime_type: str
    size: int
    width: int
    height: int
    format: ImageFormat
    url: str
    thumbnails: Dict[str, ThumbnailRecord] = {}
    created_at: str


class ThumbnailLink(BaseModel):
    size: str
    url: str
    width: int
    height: int


class UploadedImage(BaseModel):
    id: str
    original_name: str
    filename: str
    url: str
    thumbnails: List[ThumbnailLink] = []


class BatchUploadOutcome(BaseModel):
    successful: List[UploadedImage] = []
    failed: List[FailedUpload] = []


class ImageDetail(ImageRecord):
    size_formatted: str
    download_url: Optional[str] = None


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int
    has_next: bool
    has_prev: bool


class ImagePage(BaseModel):
    images: List[ImageRecord]
    pagination: Pagination


class FormatCount(BaseModel):
    format: str
    count: int


class RecentUpload(BaseModel):
    id: str
    original_name: str
    size: int
    created_at: str


class ImageStats(BaseModel):
    total_images: int
    total_size_bytes: int
    total_size_formatted: str
    format_distribution: List[FormatCount]
    recent_uploads: List[RecentUpload]
