"""
Gradient domain deghosting.

Each color channel of the ghosted radiance map is moved to log space, its
gradient field is replaced by the reference exposure's gradients inside the
ghosted regions, and a log field matching the blended gradients is recovered
by solving a Poisson equation with Neumann boundaries through a DCT. The
channels are independent until the final offset removal and white balance.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Tuple

import numpy as np
from scipy.fft import dctn, idctn

from api.services.ghost_detection import expand_patches
from api.services.progress import ProgressHelper

logger = logging.getLogger(__name__)

LOG_EPSILON = 1e-6

# progress reported after each channel's Poisson solve and reconstruction
_SOLVE_PROGRESS = (60, 76, 93)
_IRRADIANCE_PROGRESS = (94, 95, 96)


def log_irradiance(channel: np.ndarray) -> np.ndarray:
	return np.log(np.maximum(channel.astype(np.float64), LOG_EPSILON))


def gradient(field: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
	"""Forward differences; zero on the last column (x) and last row (y)."""
	gx = np.zeros_like(field)
	gy = np.zeros_like(field)
	gx[:, :-1] = field[:, 1:] - field[:, :-1]
	gy[:-1, :] = field[1:, :] - field[:-1, :]
	return gx, gy


def blend_gradients(gx: np.ndarray, gy: np.ndarray, good_gx: np.ndarray, good_gy: np.ndarray, pixel_mask: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
	return np.where(pixel_mask, good_gx, gx), np.where(pixel_mask, good_gy, gy)


def divergence(gx: np.ndarray, gy: np.ndarray) -> np.ndarray:
	"""Backward differences, the adjoint of gradient()."""
	div = gx + gy
	div[:, 1:] -= gx[:, :-1]
	div[1:, :] -= gy[:-1, :]
	return div


def solve_poisson_dct(div: np.ndarray, initial: Optional[np.ndarray] = None) -> np.ndarray:
	"""
	Solve lap(u) = div with reflective boundaries. The solution is defined up
	to a constant; it is chosen so that u has the mean of initial (zero mean
	when initial is None).
	"""
	h, w = div.shape
	coeffs = dctn(div, type=2, norm="ortho")
	ky = 2.0 * np.cos(np.pi * np.arange(h) / h) - 2.0
	kx = 2.0 * np.cos(np.pi * np.arange(w) / w) - 2.0
	denom = ky[:, np.newaxis] + kx[np.newaxis, :]
	denom[0, 0] = 1.0
	coeffs = coeffs / denom
	coeffs[0, 0] = 0.0
	u = idctn(coeffs, type=2, norm="ortho")
	if initial is not None:
		u += float(np.mean(initial))
	return u


def irradiance(log_field: np.ndarray) -> np.ndarray:
	return np.exp(log_field).astype(np.float32)


def clamp_to_zero(channels: List[np.ndarray], m: float) -> List[np.ndarray]:
	return [c - np.float32(m) for c in channels]


def gray_world_balance(channels: List[np.ndarray]) -> List[np.ndarray]:
	"""Scale each channel so that all channel means equal their common average."""
	means = [float(np.mean(c)) for c in channels]
	gray = sum(means) / len(means)
	return [c * np.float32(gray / m) if m > 0 else c for c, m in zip(channels, means)]


def _solve_channel(ghosted: np.ndarray, reference: np.ndarray, pixel_mask: np.ndarray) -> np.ndarray:
	log_ghosted = log_irradiance(ghosted)
	gx, gy = gradient(log_ghosted)
	good_gx, good_gy = gradient(log_irradiance(reference))
	bx, by = blend_gradients(gx, gy, good_gx, good_gy, pixel_mask)
	return solve_poisson_dct(divergence(bx, by), log_ghosted)


class DeghostingSolver:
	def __init__(self, max_workers: int = 3):
		self.max_workers = max_workers

	def pixel_mask(self, mask: np.ndarray, width: int, height: int, freehand: bool = False) -> np.ndarray:
		"""
		Per-pixel mask. A freehand mask must already have the frame size; a
		patch grid is expanded over the frame.
		"""
		mask = np.asarray(mask, dtype=bool)
		if mask.ndim != 2:
			raise ValueError(f"Mask must be 2-D, got shape {mask.shape}")
		if freehand:
			if mask.shape != (height, width):
				raise ValueError(f"Freehand mask {mask.shape} does not match the {height}x{width} frame")
			return mask
		return expand_patches(mask, width, height)

	def solve(
		self,
		ghosted: np.ndarray,
		reference: np.ndarray,
		mask: np.ndarray,
		progress: Optional[ProgressHelper] = None,
		freehand: bool = False,
	) -> Optional[np.ndarray]:
		"""
		Deghosted radiance map, or None when progress is canceled. mask is a
		patch grid, or a per-pixel mask when freehand is set. Inputs are never
		modified.
		"""
		if ghosted.shape != reference.shape or ghosted.ndim != 3 or ghosted.shape[2] != 3:
			raise ValueError(f"Ghosted frame {ghosted.shape} and reference {reference.shape} must be matching HxWx3 arrays")
		progress = progress or ProgressHelper()
		height, width = ghosted.shape[:2]
		pixel_mask = self.pixel_mask(mask, width, height, freehand)
		if progress.canceled():
			return None

		pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="deghost")
		try:
			futures = [
				pool.submit(_solve_channel, ghosted[..., c], reference[..., c], pixel_mask)
				for c in range(3)
			]
			log_fields = []
			for c, fut in enumerate(futures):
				log_fields.append(fut.result())
				logger.debug("Poisson solve done for channel %d", c)
				progress.set_value(_SOLVE_PROGRESS[c])
				if progress.canceled():
					return None
		finally:
			pool.shutdown(wait=False, cancel_futures=True)

		channels = []
		for c, field in enumerate(log_fields):
			channels.append(irradiance(field))
			progress.set_value(_IRRADIANCE_PROGRESS[c])
			if progress.canceled():
				return None

		m = min(float(np.min(c)) for c in channels)
		channels = gray_world_balance(clamp_to_zero(channels, m))
		progress.set_value(100)
		return np.stack(channels, axis=2).astype(np.float32)
