from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from api.services.errors import InsufficientExposuresError, SizeMismatchError
from api.services.radiometric import (
	ResponseCurve,
	ResponseType,
	WeightFunction,
	WeightType,
	num_levels,
	quantize,
)

logger = logging.getLogger(__name__)


class FusionOperator(str, Enum):
	DEBEVEC = "debevec"
	ROBERTSON = "robertson"
	ROBERTSON_AUTO = "robertson_auto"


@dataclass(frozen=True)
class FrameEnhanced:
	"""Raw exposure frame together with its relative exposure scale 2^(EV - offset)."""
	frame: np.ndarray
	scale: float
	bit_depth: int


@dataclass(frozen=True)
class FusionOperatorConfig:
	weight_function: WeightType = WeightType.TRIANGULAR
	response_curve: ResponseType = ResponseType.LINEAR
	fusion_operator: FusionOperator = FusionOperator.DEBEVEC
	input_response_file: Optional[str] = None
	output_response_file: Optional[str] = None


PREDEFINED_CONFIGS: Tuple[FusionOperatorConfig, ...] = (
	FusionOperatorConfig(WeightType.TRIANGULAR, ResponseType.LINEAR, FusionOperator.DEBEVEC),
	FusionOperatorConfig(WeightType.TRIANGULAR, ResponseType.GAMMA, FusionOperator.DEBEVEC),
	FusionOperatorConfig(WeightType.PLATEAU, ResponseType.LINEAR, FusionOperator.DEBEVEC),
	FusionOperatorConfig(WeightType.PLATEAU, ResponseType.GAMMA, FusionOperator.DEBEVEC),
	FusionOperatorConfig(WeightType.GAUSSIAN, ResponseType.LINEAR, FusionOperator.DEBEVEC),
	FusionOperatorConfig(WeightType.GAUSSIAN, ResponseType.GAMMA, FusionOperator.DEBEVEC),
)


def _check_frames(frames: Sequence[FrameEnhanced], response: ResponseCurve, weight: WeightFunction) -> None:
	if len(frames) < 2:
		raise InsufficientExposuresError(f"Fusion needs at least 2 exposures, got {len(frames)}")
	shape = frames[0].frame.shape
	for fe in frames[1:]:
		if fe.frame.shape != shape:
			raise SizeMismatchError(f"Exposure of shape {fe.frame.shape} does not match {shape}")
	for fe in frames:
		levels = num_levels(fe.bit_depth)
		if response.levels != levels or weight.table.shape[0] != levels:
			raise ValueError(
				f"Radiometric model has {response.levels} levels, exposure has {levels}"
			)
		if fe.scale <= 0:
			raise ValueError(f"Exposure scale must be positive, got {fe.scale}")


class _FallbackTracker:
	"""
	Keeps, per pixel and channel, the radiance of the sample whose raw value is
	closest to mid-range. Used where every sample has zero weight.
	"""

	def __init__(self, shape):
		self.distance = np.full(shape, np.inf, dtype=np.float32)
		self.radiance = np.zeros(shape, dtype=np.float32)

	def update(self, normalized: np.ndarray, radiance: np.ndarray) -> None:
		dist = np.abs(normalized - 0.5)
		better = dist < self.distance
		self.distance = np.where(better, dist, self.distance)
		self.radiance = np.where(better, radiance, self.radiance)


class DebevecOperator:
	"""Weighted average of linearized, exposure-normalized samples."""

	def compute_fusion(self, response: ResponseCurve, weight: WeightFunction, frames: Sequence[FrameEnhanced]) -> np.ndarray:
		_check_frames(frames, response, weight)
		shape = frames[0].frame.shape
		num = np.zeros(shape, dtype=np.float32)
		den = np.zeros(shape, dtype=np.float32)
		fallback = _FallbackTracker(shape)
		for fe in frames:
			lv = quantize(fe.frame, fe.bit_depth)
			w = weight.lookup(lv)
			rad = response.lookup(lv) / np.float32(fe.scale)
			num += w * rad
			den += w
			fallback.update(lv / float(num_levels(fe.bit_depth) - 1), rad)
		return _resolve(num, den, fallback)


class RobertsonOperator:
	"""Weighted least-squares radiance estimate: sum(w s I) / sum(w s^2)."""

	def _estimate(self, table: np.ndarray, weight: WeightFunction, frames: Sequence[FrameEnhanced], levels: List[np.ndarray]) -> np.ndarray:
		shape = frames[0].frame.shape
		num = np.zeros(shape, dtype=np.float32)
		den = np.zeros(shape, dtype=np.float32)
		fallback = _FallbackTracker(shape)
		for fe, lv in zip(frames, levels):
			w = weight.lookup(lv)
			s = np.float32(fe.scale)
			sample = table[lv, np.arange(3)]
			num += w * s * sample
			den += w * s * s
			fallback.update(lv / float(num_levels(fe.bit_depth) - 1), sample / s)
		return _resolve(num, den, fallback)

	def compute_fusion(self, response: ResponseCurve, weight: WeightFunction, frames: Sequence[FrameEnhanced]) -> np.ndarray:
		_check_frames(frames, response, weight)
		levels = [quantize(fe.frame, fe.bit_depth) for fe in frames]
		return self._estimate(response.table, weight, frames, levels)


class RobertsonAutoOperator(RobertsonOperator):
	"""
	Robertson fusion that also recovers the response curve. Alternates between
	estimating radiance with the current curve and re-estimating every curve
	level as the mean of s * X over the samples recorded at that level. The
	fitted curve replaces the one held by the ResponseCurve.
	"""

	def __init__(self, max_iterations: int = 15, tolerance: float = 1e-3):
		self.max_iterations = max_iterations
		self.tolerance = tolerance

	def _refit(self, table: np.ndarray, radiance: np.ndarray, frames: Sequence[FrameEnhanced], levels: List[np.ndarray]) -> np.ndarray:
		n = table.shape[0]
		fitted = np.empty_like(table)
		mid = n // 2
		for c in range(3):
			sums = np.zeros(n, dtype=np.float64)
			counts = np.zeros(n, dtype=np.float64)
			for fe, lv in zip(frames, levels):
				idx = lv[..., c].ravel()
				sums += np.bincount(idx, weights=(fe.scale * radiance[..., c]).ravel(), minlength=n)
				counts += np.bincount(idx, minlength=n)
			seen = counts > 0
			if not seen.any():
				fitted[:, c] = table[:, c]
				continue
			curve = np.zeros(n, dtype=np.float64)
			curve[seen] = sums[seen] / counts[seen]
			# levels never observed are interpolated from their neighbours
			grid = np.arange(n)
			curve = np.interp(grid, grid[seen], curve[seen])
			curve = np.maximum.accumulate(curve)
			# keep the scale of the starting curve
			if curve[mid] > 0 and table[mid, c] > 0:
				curve *= table[mid, c] / curve[mid]
			fitted[:, c] = curve.astype(np.float32)
		return fitted

	def compute_fusion(self, response: ResponseCurve, weight: WeightFunction, frames: Sequence[FrameEnhanced]) -> np.ndarray:
		_check_frames(frames, response, weight)
		levels = [quantize(fe.frame, fe.bit_depth) for fe in frames]
		table = response.table.copy()
		radiance = self._estimate(table, weight, frames, levels)
		for iteration in range(self.max_iterations):
			fitted = self._refit(table, radiance, frames, levels)
			scale = np.maximum(np.abs(table), 1e-6)
			delta = float(np.max(np.abs(fitted - table) / scale))
			table = fitted
			radiance = self._estimate(table, weight, frames, levels)
			logger.debug("Robertson iteration %d: max relative change %.3g", iteration, delta)
			if delta < self.tolerance:
				break
		response.set_custom(table)
		return radiance


def _resolve(num: np.ndarray, den: np.ndarray, fallback: _FallbackTracker) -> np.ndarray:
	ok = den > 0
	out = np.where(ok, num / np.where(ok, den, 1.0), fallback.radiance)
	return out.astype(np.float32)


@dataclass(frozen=True)
class FusionOperatorSpec:
	"""
	Capability descriptor of a fusion operator. exclusive operators change
	shared state (the response curve) and are never run concurrently.
	"""
	tag: FusionOperator
	factory: Callable[[], object]
	exclusive: bool = False


def build_operator_registry() -> Mapping[FusionOperator, FusionOperatorSpec]:
	specs = [
		FusionOperatorSpec(FusionOperator.DEBEVEC, DebevecOperator),
		FusionOperatorSpec(FusionOperator.ROBERTSON, RobertsonOperator),
		FusionOperatorSpec(FusionOperator.ROBERTSON_AUTO, RobertsonAutoOperator, exclusive=True),
	]
	return MappingProxyType({s.tag: s for s in specs})


class FusionScheduler:
	"""Builds operators from a registry and serializes the exclusive ones."""

	def __init__(self, registry: Mapping[FusionOperator, FusionOperatorSpec]):
		self._registry = registry
		self._locks: Dict[FusionOperator, threading.Lock] = {
			tag: threading.Lock() for tag, spec in registry.items() if spec.exclusive
		}

	def compute_fusion(
		self,
		tag: FusionOperator,
		response: ResponseCurve,
		weight: WeightFunction,
		frames: Sequence[FrameEnhanced],
	) -> np.ndarray:
		tag = FusionOperator(tag)
		try:
			spec = self._registry[tag]
		except KeyError:
			raise ValueError(f"No fusion operator registered for {tag.value}") from None
		operator = spec.factory()
		lock = self._locks.get(tag)
		if lock is None:
			return operator.compute_fusion(response, weight, frames)
		with lock:
			return operator.compute_fusion(response, weight, frames)
