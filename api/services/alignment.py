"""
Median threshold bitmap (MTB) registration of an exposure bracket.

Each exposure is reduced to a pyramid of bitmaps that split its pixels at the
median gray level, which is stable across exposure changes. The translation is
searched coarse to fine: the best shift of one level, doubled, centers the
search window of the next finer level.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from api.services.exposure import ExposureItem
from api.services.image_utils import rgb_luminance

logger = logging.getLogger(__name__)

NO_OVERLAP_COST = 10**12


@dataclass
class ShiftResult:
	dx: int
	dy: int
	level_costs: List[int]
	overlap_ratio: float


@dataclass(frozen=True)
class _MtbLevel:
	bits: np.ndarray  # bool, above the median
	usable: np.ndarray  # bool, far enough from the median to be trusted

	@classmethod
	def from_gray(cls, gray: np.ndarray, exclude_band: float) -> "_MtbLevel":
		median = float(np.median(gray))
		return cls(bits=gray > median, usable=np.abs(gray - median) >= exclude_band)

	@property
	def shape(self) -> Tuple[int, int]:
		return self.bits.shape[:2]

	def mismatch(self, moving: "_MtbLevel", dx: int, dy: int) -> Tuple[int, float]:
		"""
		Usable bits where moving(x, y) disagrees with self(x + dx, y + dy), and
		the share of the frame the two windows overlap on.
		"""
		h, w = self.shape
		rows = h - abs(dy)
		cols = w - abs(dx)
		if rows <= 0 or cols <= 0:
			return NO_OVERLAP_COST, 0.0
		here = (slice(max(0, dy), max(0, dy) + rows), slice(max(0, dx), max(0, dx) + cols))
		there = (slice(max(0, -dy), max(0, -dy) + rows), slice(max(0, -dx), max(0, -dx) + cols))
		differ = np.logical_xor(self.bits[here], moving.bits[there])
		differ &= self.usable[here]
		differ &= moving.usable[there]
		return int(np.count_nonzero(differ)), float(rows * cols) / float(h * w)


def _pyramid(gray: np.ndarray, max_levels: int, min_size: int, exclude_band: float) -> List[_MtbLevel]:
	"""Bitmap levels from finest (index 0) to coarsest."""
	levels: List[_MtbLevel] = []
	g = gray.astype(np.float32)
	while True:
		levels.append(_MtbLevel.from_gray(g, exclude_band))
		if len(levels) >= max_levels or min(g.shape[:2]) // 2 < min_size:
			return levels
		g = cv2.pyrDown(g)


def _best_shift(ref: _MtbLevel, mov: _MtbLevel, center: Tuple[int, int], radius: int) -> Tuple[int, int, int]:
	"""Lowest cost (cost, dx, dy) in the square window around center; row-major order breaks ties."""
	cx, cy = center
	best = (NO_OVERLAP_COST, cx, cy)
	for dy in range(cy - radius, cy + radius + 1):
		for dx in range(cx - radius, cx + radius + 1):
			cost, _ = ref.mismatch(mov, dx, dy)
			if cost < best[0]:
				best = (cost, dx, dy)
	return best


def estimate_translation_mtb(
	ref_gray: np.ndarray,
	mov_gray: np.ndarray,
	max_levels: int = 5,
	base_radius: int = 4,
	exclude_band: float = 0.02,
	min_size: int = 32,
) -> ShiftResult:
	"""
	Integer translation that moves mov_gray onto ref_gray. The coarsest level
	is searched within base_radius pixels; every finer level halves the radius
	down to one pixel around the doubled estimate.
	"""
	ref_levels = _pyramid(ref_gray, max_levels, min_size, exclude_band)
	mov_levels = _pyramid(mov_gray, max_levels, min_size, exclude_band)
	depth = min(len(ref_levels), len(mov_levels))

	dx = dy = 0
	level_costs: List[int] = []
	for step, li in enumerate(range(depth - 1, -1, -1)):
		radius = max(1, base_radius >> step)
		cost, dx, dy = _best_shift(ref_levels[li], mov_levels[li], (2 * dx, 2 * dy), radius)
		level_costs.append(cost)

	_, overlap = ref_levels[0].mismatch(mov_levels[0], dx, dy)
	return ShiftResult(dx=int(dx), dy=int(dy), level_costs=level_costs, overlap_ratio=overlap)


def _normalized_gray(item: ExposureItem) -> np.ndarray:
	return np.clip(rgb_luminance(item.frame), 0.0, 1.0).astype(np.float32)


def compute_offsets(items: Sequence[ExposureItem], reference_index: Optional[int] = None) -> List[Tuple[int, int]]:
	"""
	Per exposure (dx, dy) shift that registers it on the reference exposure
	(the middle one by default). The reference gets (0, 0).
	"""
	if not items:
		return []
	ref_index = len(items) // 2 if reference_index is None else reference_index
	ref_gray = _normalized_gray(items[ref_index])
	offsets: List[Tuple[int, int]] = []
	for idx, item in enumerate(items):
		if idx == ref_index:
			offsets.append((0, 0))
			continue
		shift = estimate_translation_mtb(ref_gray, _normalized_gray(item))
		logger.debug(
			"MTB %s: dx=%d dy=%d costs=%s overlap=%.3f",
			item.source, shift.dx, shift.dy, shift.level_costs, shift.overlap_ratio,
		)
		offsets.append((shift.dx, shift.dy))
	return offsets


def align_store(store, reference_index: Optional[int] = None) -> List[Tuple[int, int]]:
	"""Shift every exposure of an ExposureStore onto the reference and rebuild previews."""
	offsets = compute_offsets(store.items, reference_index)
	store.apply_shifts(offsets)
	store.refresh_previews()
	return offsets
