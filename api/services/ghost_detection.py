"""
Patch based ghost detection.

The reference exposure is the one whose hue agrees best with the rest of the
bracket. Every other exposure is brought to the reference exposure level and
position, then compared cell by cell on a coarse grid. A cell whose mean
difference is large compared to the image-wide spread of differences is
marked as ghosted.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np
from PIL import Image

from api.services.errors import InsufficientExposuresError, SizeMismatchError
from api.services.exposure import ExposureItem
from api.services.image_utils import rgb_luminance

logger = logging.getLogger(__name__)

AG_GRID_SIZE = 64
# pixels with a smaller max-min channel spread have no meaningful hue
CHROMA_EPS = 1e-3


@dataclass(frozen=True)
class GhostDetection:
	mask: np.ndarray  # (grid, grid) bool, indexed [row, column]
	reference_index: int
	ghosted_percent: float


def cell_starts(length: int, grid: int) -> np.ndarray:
	cell = length // grid
	if cell == 0:
		raise ValueError(f"Image dimension {length} is smaller than the {grid} cell grid")
	return np.arange(grid) * cell


def cell_index(length: int, grid: int) -> np.ndarray:
	"""Grid cell of every pixel along one axis; the last cell takes the remainder."""
	cell = length // grid
	if cell == 0:
		raise ValueError(f"Image dimension {length} is smaller than the {grid} cell grid")
	return np.minimum(np.arange(length) // cell, grid - 1)


def expand_patches(mask: np.ndarray, width: int, height: int) -> np.ndarray:
	"""Per-pixel boolean mask (height, width) from a patch grid."""
	grid_rows, grid_cols = mask.shape
	rows = cell_index(height, grid_rows)
	cols = cell_index(width, grid_cols)
	return mask[rows[:, np.newaxis], cols[np.newaxis, :]]


def mask_from_image(image) -> np.ndarray:
	"""
	Freehand mask from a painted image: alpha != 0 when the image has an alpha
	channel, otherwise any non-zero pixel.
	"""
	if isinstance(image, Image.Image):
		if image.mode in ("RGBA", "LA"):
			return np.asarray(image.getchannel("A")) != 0
		return np.asarray(image.convert("L")) != 0
	arr = np.asarray(image)
	if arr.ndim == 2:
		return arr != 0
	if arr.ndim == 3 and arr.shape[2] in (2, 4):
		return arr[..., -1] != 0
	if arr.ndim == 3:
		return np.any(arr != 0, axis=2)
	raise ValueError(f"Cannot build a mask from an array of shape {arr.shape}")


def hue_energy(frames: Sequence[np.ndarray]) -> np.ndarray:
	"""
	Mean squared hue deviation of each frame from the per-pixel circular mean
	hue of the stack, over pixels that are chromatic in every frame. With two
	frames the deviations are symmetric and both energies are equal.
	"""
	angles = []
	chromatic = None
	for frame in frames:
		f32 = np.ascontiguousarray(frame, dtype=np.float32)
		hsv = cv2.cvtColor(f32, cv2.COLOR_RGB2HSV)
		angles.append(np.deg2rad(hsv[..., 0].astype(np.float64)))
		spread = f32.max(axis=2) - f32.min(axis=2)
		c = spread > CHROMA_EPS
		chromatic = c if chromatic is None else (chromatic & c)
	stack = np.stack(angles)
	if not chromatic.any():
		return np.zeros(len(frames), dtype=np.float64)
	stack = stack[:, chromatic]
	mean = np.arctan2(np.sin(stack).mean(axis=0), np.cos(stack).mean(axis=0))
	dev = np.mod(stack - mean + math.pi, 2.0 * math.pi) - math.pi
	return np.mean(dev * dev, axis=1)


def _frame_log2_luminance(item: ExposureItem) -> float:
	mean = float(np.mean(rgb_luminance(item.frame)))
	return math.log2(mean) if mean > 0 else 0.0


def log2_luminances(items: Sequence[ExposureItem]) -> List[float]:
	"""
	log2 exposure level of every item, all taken from the same source so the
	differences are meaningful: EXIF average luminance when every item has
	it, else EV when every item has one, else the mean frame luminance.
	"""
	if all(it.has_average_luminance for it in items):
		return [math.log2(it.average_luminance) for it in items]
	if all(it.has_ev for it in items):
		return [float(it.ev) for it in items]
	logger.debug("Exposure metadata incomplete, using frame luminance for every exposure")
	return [_frame_log2_luminance(it) for it in items]


def select_reference(energy: np.ndarray) -> int:
	"""
	Index of the lowest hue energy. Energies equal up to rounding count as a
	tie, and ties go to the lowest index.
	"""
	best = float(np.min(energy))
	tied = np.isclose(energy, best, rtol=1e-9, atol=1e-12)
	return int(np.flatnonzero(tied)[0])


def compensated_difference(reference: np.ndarray, candidate: np.ndarray, delta_ev: float, dx: int, dy: int) -> Tuple[np.ndarray, np.ndarray]:
	"""
	reference(x, y) - 2^delta_ev * candidate(x + dx, y + dy), with the mask of
	pixels whose candidate position falls inside the frame.
	"""
	h, w = reference.shape[:2]
	valid = np.zeros((h, w), dtype=bool)
	y0, y1 = max(0, -dy), min(h, h - dy)
	x0, x1 = max(0, -dx), min(w, w - dx)
	aligned = np.zeros_like(candidate)
	if y0 < y1 and x0 < x1:
		valid[y0:y1, x0:x1] = True
		aligned[y0:y1, x0:x1] = candidate[y0 + dy:y1 + dy, x0 + dx:x1 + dx]
	diff = reference - np.float32(2.0 ** delta_ev) * aligned
	return diff, valid


def channel_deviation(reference: np.ndarray, candidate: np.ndarray, delta_ev: float, dx: int, dy: int) -> np.ndarray:
	"""Per-channel standard deviation of the compensated difference."""
	diff, valid = compensated_difference(reference, candidate, delta_ev, dx, dy)
	return _deviation(diff, valid)


def _deviation(diff: np.ndarray, valid: np.ndarray) -> np.ndarray:
	if not valid.any():
		return np.zeros(diff.shape[2], dtype=np.float64)
	return diff[valid].astype(np.float64).std(axis=0)


class GhostDetector:
	def __init__(self, grid_size: int = AG_GRID_SIZE):
		if grid_size < 1:
			raise ValueError(f"Grid size must be positive, got {grid_size}")
		self.grid_size = grid_size

	def compare_patches(self, diff: np.ndarray, valid: np.ndarray, threshold: float, deviation: np.ndarray) -> np.ndarray:
		"""Cells whose mean absolute difference exceeds threshold * deviation in any channel."""
		h, w = diff.shape[:2]
		rows = cell_starts(h, self.grid_size)
		cols = cell_starts(w, self.grid_size)
		absd = np.abs(diff).astype(np.float64) * valid[..., np.newaxis]
		sums = np.add.reduceat(np.add.reduceat(absd, rows, axis=0), cols, axis=1)
		counts = np.add.reduceat(np.add.reduceat(valid.astype(np.float64), rows, axis=0), cols, axis=1)
		means = sums / np.maximum(counts, 1.0)[..., np.newaxis]
		return (counts > 0) & np.any(means > threshold * deviation, axis=2)

	def detect(self, items: Sequence[ExposureItem], threshold: float, offsets: Optional[Sequence[Tuple[int, int]]] = None) -> GhostDetection:
		size = len(items)
		if size < 2:
			raise InsufficientExposuresError(f"Ghost detection needs at least 2 exposures, got {size}")
		width, height = items[0].width, items[0].height
		if any(it.width != width or it.height != height for it in items):
			raise SizeMismatchError("The images have different size.")
		cell_starts(width, self.grid_size)
		cell_starts(height, self.grid_size)
		offsets: List[Tuple[int, int]] = list(offsets) if offsets is not None else [(0, 0)] * size
		if len(offsets) != size:
			raise ValueError(f"Got {len(offsets)} offsets for {size} exposures")

		energy = hue_energy([it.frame for it in items])
		h0 = select_reference(energy)
		logger.debug("Reference exposure: %d (hue energy %s)", h0, energy.tolist())
		reference = items[h0]

		levels = log2_luminances(items)

		mask = np.zeros((self.grid_size, self.grid_size), dtype=bool)
		for h, item in enumerate(items):
			if h == h0:
				continue
			delta_ev = levels[h0] - levels[h]
			dx = int(offsets[h0][0]) - int(offsets[h][0])
			dy = int(offsets[h0][1]) - int(offsets[h][1])
			diff, valid = compensated_difference(reference.frame, item.frame, delta_ev, dx, dy)
			deviation = _deviation(diff, valid)
			logger.debug("Exposure %d: delta EV %.3f, offset (%d, %d), deviation %s", h, delta_ev, dx, dy, deviation.tolist())
			mask |= self.compare_patches(diff, valid, threshold, deviation)

		percent = float(np.count_nonzero(mask)) / float(mask.size) * 100.0
		logger.debug("Total patches: %.2f%%", percent)
		return GhostDetection(mask=mask, reference_index=h0, ghosted_percent=percent)
