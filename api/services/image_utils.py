from __future__ import annotations
from typing import Tuple
import cv2
import numpy as np
from PIL import ExifTags, Image


def apply_exif_orientation(img: Image.Image, exif) -> Image.Image:
	orientation = None
	if exif:
		tmp = {}
		for tag_id, value in exif.items():
			tag = ExifTags.TAGS.get(tag_id, tag_id)
			tmp[str(tag)] = value
		orientation = tmp.get("Orientation")
	if orientation is None:
		return img
	try:
		o = int(orientation)
	except (TypeError, ValueError):
		return img
	if o == 2:
		return img.transpose(Image.FLIP_LEFT_RIGHT)
	if o == 3:
		return img.rotate(180, expand=True)
	if o == 4:
		return img.transpose(Image.FLIP_TOP_BOTTOM)
	if o == 5:
		return img.transpose(Image.FLIP_LEFT_RIGHT).rotate(90, expand=True)
	if o == 6:
		return img.rotate(270, expand=True)
	if o == 7:
		return img.transpose(Image.FLIP_LEFT_RIGHT).rotate(270, expand=True)
	if o == 8:
		return img.rotate(90, expand=True)
	return img


def srgb_to_linear(arr: np.ndarray) -> np.ndarray:
	a = 0.055
	low = arr <= 0.04045
	high = ~low
	out = np.empty_like(arr, dtype=np.float32)
	out[low] = arr[low] / 12.92
	out[high] = ((arr[high] + a) / (1 + a)) ** 2.4
	return out


def linear_to_srgb(arr: np.ndarray) -> np.ndarray:
	a = 0.055
	low = arr <= 0.0031308
	high = ~low
	out = np.empty_like(arr, dtype=np.float32)
	out[low] = 12.92 * arr[low]
	out[high] = (1 + a) * (arr[high] ** (1 / 2.4)) - a
	return out


def rgb_luminance(rgb: np.ndarray) -> np.ndarray:
	"""Rec.709 luminance of an HxWx3 array."""
	return 0.2126 * rgb[..., 0] + 0.7152 * rgb[..., 1] + 0.0722 * rgb[..., 2]


def shift_frame(arr: np.ndarray, dx: int, dy: int) -> np.ndarray:
	"""
	Translate an image by an integer offset: output(x + dx, y + dy) = input(x, y).
	Uncovered pixels are transparent black. Returns a new array.
	"""
	h, w = arr.shape[:2]
	M = np.array([[1, 0, float(dx)], [0, 1, float(dy)]], dtype=np.float32)
	shifted = cv2.warpAffine(
		np.ascontiguousarray(arr), M, (w, h),
		flags=cv2.INTER_NEAREST, borderMode=cv2.BORDER_CONSTANT, borderValue=0,
	)
	if shifted.ndim < arr.ndim:
		shifted = shifted[..., np.newaxis]
	return shifted.astype(arr.dtype, copy=False)


def crop_frame(arr: np.ndarray, box: Tuple[int, int, int, int]) -> np.ndarray:
	"""Cut (left, top, right, bottom) out of arr; right and bottom are exclusive."""
	left, top, right, bottom = box
	h, w = arr.shape[:2]
	if not (0 <= left < right <= w and 0 <= top < bottom <= h):
		raise ValueError(f"Crop box {box} outside of {w}x{h} frame")
	return arr[top:bottom, left:right].copy()


def to_display_u8(radiance: np.ndarray) -> np.ndarray:
	"""
	Map linear radiance to 8-bit sRGB for quick inspection (scale by the 99th
	percentile, no tone curve).
	"""
	peak = float(np.percentile(radiance, 99.0)) if radiance.size else 0.0
	if peak <= 0.0:
		peak = 1.0
	display = np.clip(linear_to_srgb(np.clip(radiance / peak, 0.0, 1.0)), 0.0, 1.0)
	return (display * 255.0 + 0.5).astype(np.uint8)
