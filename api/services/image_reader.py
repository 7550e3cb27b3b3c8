from __future__ import annotations

from pathlib import Path
from typing import Union

import numpy as np
from PIL import Image, UnidentifiedImageError

from api.services.errors import ExposureReadError
from api.services.exposure import ExposureItem
from api.services.image_utils import apply_exif_orientation
from api.services.metadata import average_luminance, exposure_value, read_exif
from api.services.previews import make_thumbnail

SUPPORTED_IMAGE_EXTS = {".jpg", ".jpeg", ".png", ".tif", ".tiff", ".bmp", ".webp"}

_SIXTEEN_BIT_MODES = {"I;16", "I;16B", "I;16L", "I;16N", "I"}


def list_image_files(folder: Path):
	return sorted([p for p in folder.iterdir() if p.is_file() and p.suffix.lower() in SUPPORTED_IMAGE_EXTS])


def _decode(img: Image.Image):
	"""Return (HxWx3 float32 in [0,1], bit depth)."""
	if img.mode in _SIXTEEN_BIT_MODES:
		gray = np.asarray(img).astype(np.float32) / 65535.0
		return np.repeat(np.clip(gray, 0.0, 1.0)[..., np.newaxis], 3, axis=2), 16
	if img.mode != "RGB":
		img = img.convert("RGB")
	return np.asarray(img).astype(np.float32) / 255.0, 8


def read_exposure(path: Union[str, Path]) -> ExposureItem:
	"""
	Decode one bracket member into an ExposureItem with EV and average
	luminance taken from its EXIF data (None when absent).
	"""
	p = Path(path)
	try:
		with Image.open(p) as img:
			img = apply_exif_orientation(img, img.getexif())
			frame, bits = _decode(img)
	except (OSError, UnidentifiedImageError) as e:
		raise ExposureReadError(f"Cannot decode {p}: {e}") from e
	if frame.ndim != 3 or frame.shape[0] == 0 or frame.shape[1] == 0:
		raise ExposureReadError(f"Empty image: {p}")

	exif = read_exif(p)
	lum = average_luminance(exif["exposure_time_s"], exif["fnumber"], exif["iso"])
	return ExposureItem(
		source=str(path),
		frame=np.ascontiguousarray(frame, dtype=np.float32),
		ev=exposure_value(lum),
		average_luminance=lum,
		bit_depth=bits,
		thumbnail=make_thumbnail(frame),
	)
