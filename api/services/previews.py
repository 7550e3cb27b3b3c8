from __future__ import annotations

from pathlib import Path
from typing import Iterable, List

import numpy as np
from PIL import Image

from api.services.exposure import ExposureItem

PREVIEW_MAX_WIDTH = 512


def make_thumbnail(frame: np.ndarray, max_w: int = PREVIEW_MAX_WIDTH) -> np.ndarray:
	"""Downscaled uint8 RGB copy of a raw [0,1] frame."""
	u8 = (np.clip(frame, 0.0, 1.0) * 255.0 + 0.5).astype(np.uint8)
	img = Image.fromarray(u8)
	if img.width > max_w:
		r = max_w / float(img.width)
		img = img.resize((max_w, max(1, int(img.height * r))), Image.LANCZOS)
	return np.asarray(img)


def refresh_preview(item: ExposureItem) -> ExposureItem:
	return item.with_thumbnail(make_thumbnail(item.frame))


def write_previews(items: Iterable[ExposureItem], preview_dir: Path) -> List[str]:
	preview_dir.mkdir(parents=True, exist_ok=True)
	out = []
	for idx, item in enumerate(items):
		thumb = item.thumbnail if item.thumbnail is not None else make_thumbnail(item.frame)
		out_path = preview_dir / f"{idx:02d}_{Path(item.source).stem}.jpg"
		Image.fromarray(thumb).save(out_path, format="JPEG", quality=85, optimize=True)
		out.append(str(out_path))
	return out
