from __future__ import annotations

import io
from typing import Final

import torch
from PIL import Image, ImageOps, UnidentifiedImageError
from torch import Tensor

from .errors import PreprocessError

# ImageNet statistics; torchvision backbones are trained against them
_MEAN: Final[tuple[float, float, float]] = (0.485, 0.456, 0.406)
_STD: Final[tuple[float, float, float]] = (0.229, 0.224, 0.225)
_PREPROCESS_SIGNATURE: Final[str] = "v1/exif+rgb+bilinear{size}+imagenetnorm"


def preprocess_signature() -> str:
    return _PREPROCESS_SIGNATURE


def decode_image(raw: bytes, max_side_px: int | None = None) -> Image.Image:
    """Decode encoded image bytes (PNG, JPEG, TIFF, ...) into a loaded image.

    Pixel data is read eagerly so truncated files fail here instead of later.
    """
    if not raw:
        raise PreprocessError("empty image payload")
    try:
        img = Image.open(io.BytesIO(raw))
        if max_side_px is not None and max(img.size) > max_side_px:
            raise PreprocessError("image dimensions too large")
        img.load()
    except PreprocessError:
        raise
    except UnidentifiedImageError:
        raise PreprocessError("unsupported or corrupt image encoding") from None
    except Image.DecompressionBombError:
        raise PreprocessError("decompression bomb rejected") from None
    except (OSError, SyntaxError, ValueError) as exc:
        raise PreprocessError(f"failed to decode image: {exc}") from None
    return img


def to_tensor(img: Image.Image, input_size: int) -> Tensor:
    """Resize and normalize to a ``(1, 3, input_size, input_size)`` float32 tensor."""
    try:
        rgb = _to_rgb(img)
        resized = rgb.resize((input_size, input_size), resample=Image.Resampling.BILINEAR)
        buf: bytes = resized.tobytes()
        t = torch.frombuffer(bytearray(buf), dtype=torch.uint8)
        t = t.reshape(input_size, input_size, 3).permute(2, 0, 1).to(dtype=torch.float32) / 255.0
        mean = torch.tensor(_MEAN, dtype=torch.float32).reshape(3, 1, 1)
        std = torch.tensor(_STD, dtype=torch.float32).reshape(3, 1, 1)
        return ((t - mean) / std).unsqueeze(0).contiguous()
    except PreprocessError:
        raise
    except (ValueError, OSError, RuntimeError, TypeError) as exc:
        raise PreprocessError(str(exc)) from None


def preprocess_bytes(raw: bytes, input_size: int, max_side_px: int | None = None) -> Tensor:
    return to_tensor(decode_image(raw, max_side_px=max_side_px), input_size)


def _to_rgb(img: Image.Image) -> Image.Image:
    tmp = ImageOps.exif_transpose(img)
    if tmp is None:
        raise PreprocessError("EXIF transpose failed")
    out: Image.Image = tmp
    if out.mode == "P":
        out = out.convert("RGBA")
    if out.mode in ("RGBA", "LA"):
        rgba = out.convert("RGBA")
        bg = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
        out = Image.alpha_composite(bg, rgba)
    if out.mode != "RGB":
        out = out.convert("RGB")
    return out
