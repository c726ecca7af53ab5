import base64
import io
import logging
from typing import Optional

from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel

from .errors import InvalidImage

logger = logging.getLogger(__name__)

# Formats the generation service accepts as inline image data
_PASSTHROUGH_FORMATS = {
    "PNG": "image/png",
    "JPEG": "image/jpeg",
}


class ImagePayload(BaseModel):
    """An image ready to be sent inline: mime type plus base64 data."""
    mime_type: str
    data: str

    @classmethod
    def from_bytes(cls, raw: bytes, mime_type: str) -> "ImagePayload":
        return cls(mime_type=mime_type, data=base64.b64encode(raw).decode("ascii"))

    def to_inline_data(self) -> dict:
        return {"inline_data": {"mime_type": self.mime_type, "data": self.data}}


def _to_png(pil_img: Image.Image) -> bytes:
    # Flatten transparency onto white so the model sees what a reader sees
    if pil_img.mode in ("RGBA", "LA", "P"):
        pil_img = pil_img.convert("RGBA")
        background = Image.new("RGB", pil_img.size, (255, 255, 255))
        background.paste(pil_img, mask=pil_img.split()[-1])
        pil_img = background
    elif pil_img.mode != "RGB":
        pil_img = pil_img.convert("RGB")
    png_buffer = io.BytesIO()
    pil_img.save(png_buffer, format="PNG")
    return png_buffer.getvalue()


def load_image(raw: bytes, filename: Optional[str] = None) -> ImagePayload:
    """Validate an uploaded illustration and normalize it for the generation service."""
    label = f" {filename}" if filename else ""
    if not raw:
        raise InvalidImage(f"Illustration{label} is empty")
    try:
        with Image.open(io.BytesIO(raw)) as pil_img:
            pil_img.load()
            fmt = pil_img.format
            if fmt in _PASSTHROUGH_FORMATS:
                return ImagePayload.from_bytes(raw, _PASSTHROUGH_FORMATS[fmt])
            logger.info(f"Converting {fmt} illustration{label} to PNG")
            return ImagePayload.from_bytes(_to_png(pil_img), "image/png")
    except (UnidentifiedImageError, OSError) as e:
        logger.warning(f"Rejected illustration{label}: {e}")
        raise InvalidImage(f"Uploaded illustration{label} is not a readable image")
