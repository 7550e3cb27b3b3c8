"""
Radiometric model used during fusion: a camera response curve that maps raw
intensity levels to linear radiance, and a weight function that tells how much
a raw level can be trusted. Both are precomputed as lookup tables with one
entry per level of the declared bit depth.
"""
from __future__ import annotations

import logging
import re
from enum import Enum
from pathlib import Path
from typing import Union

import numpy as np

from api.services.errors import ResponseCurveError
from api.services.image_utils import srgb_to_linear

logger = logging.getLogger(__name__)

GAMMA_EXPONENT = 2.2
LOG10_DECADES = 2.0


class ResponseType(str, Enum):
	LINEAR = "linear"
	GAMMA = "gamma"
	LOG10 = "log10"
	SRGB = "srgb"
	CUSTOM = "custom"


class WeightType(str, Enum):
	TRIANGULAR = "triangular"
	PLATEAU = "plateau"
	GAUSSIAN = "gaussian"
	FLAT = "flat"


def num_levels(bit_depth: int) -> int:
	if bit_depth < 1 or bit_depth > 16:
		raise ValueError(f"Unsupported bit depth: {bit_depth}")
	return 1 << bit_depth


def quantize(frame: np.ndarray, bit_depth: int) -> np.ndarray:
	"""Raw values in [0,1] to integer levels in [0, 2^bit_depth - 1]."""
	top = num_levels(bit_depth) - 1
	return np.clip(np.rint(frame * top), 0, top).astype(np.intp)


def _normalized_levels(bit_depth: int) -> np.ndarray:
	return np.linspace(0.0, 1.0, num_levels(bit_depth), dtype=np.float64)


def _analytic_response(kind: ResponseType, bit_depth: int) -> np.ndarray:
	x = _normalized_levels(bit_depth)
	if kind == ResponseType.LINEAR:
		y = x
	elif kind == ResponseType.GAMMA:
		y = x ** GAMMA_EXPONENT
	elif kind == ResponseType.LOG10:
		y = (10.0 ** (LOG10_DECADES * x) - 1.0) / (10.0 ** LOG10_DECADES - 1.0)
	elif kind == ResponseType.SRGB:
		y = srgb_to_linear(x.astype(np.float32)).astype(np.float64)
	else:
		raise ValueError(f"{kind} has no analytic form")
	return np.repeat(y.astype(np.float32)[:, np.newaxis], 3, axis=1)


class ResponseCurve:
	"""Per-channel response lookup table of shape (2^bit_depth, 3)."""

	def __init__(self, kind: ResponseType = ResponseType.LINEAR, bit_depth: int = 8):
		self.kind = ResponseType(kind)
		if self.kind == ResponseType.CUSTOM:
			raise ValueError("Custom response curves are loaded from a file or fitted")
		self.bit_depth = bit_depth
		self.table = _analytic_response(self.kind, bit_depth)

	@property
	def levels(self) -> int:
		return self.table.shape[0]

	def set_type(self, kind: ResponseType) -> None:
		kind = ResponseType(kind)
		if kind == ResponseType.CUSTOM:
			raise ValueError("Use read_from_file() or set_custom() for custom curves")
		self.kind = kind
		self.table = _analytic_response(kind, self.bit_depth)

	def set_bit_depth(self, bit_depth: int) -> None:
		if bit_depth == self.bit_depth:
			return
		if self.kind == ResponseType.CUSTOM:
			raise ResponseCurveError(
				f"Custom response curve has {self.bit_depth} bits, exposures have {bit_depth}"
			)
		self.bit_depth = bit_depth
		self.table = _analytic_response(self.kind, bit_depth)

	def set_custom(self, table: np.ndarray) -> None:
		table = np.asarray(table, dtype=np.float32)
		if table.ndim == 1:
			table = np.repeat(table[:, np.newaxis], 3, axis=1)
		levels = table.shape[0]
		if table.shape[1] != 3 or levels < 2 or levels & (levels - 1):
			raise ValueError(f"Response table must be (2^bits, 3), got {table.shape}")
		self.kind = ResponseType.CUSTOM
		self.bit_depth = levels.bit_length() - 1
		self.table = table.copy()

	def lookup(self, levels: np.ndarray) -> np.ndarray:
		"""Radiance for an HxWx3 array of integer levels."""
		return self.table[levels, np.arange(3)]

	def write_to_file(self, path: Union[str, Path]) -> None:
		header = "\n".join([
			"Camera response curve",
			f"type: {self.kind.value}",
			f"bits: {self.bit_depth}",
			"level R G B",
		])
		data = np.column_stack([np.arange(self.levels, dtype=np.float64), self.table.astype(np.float64)])
		try:
			np.savetxt(str(path), data, fmt=["%d", "%.9g", "%.9g", "%.9g"], header=header)
		except OSError as e:
			raise ResponseCurveError(f"Cannot write response curve {path}: {e}") from e
		logger.debug("Response curve written to %s", path)

	def read_from_file(self, path: Union[str, Path]) -> None:
		try:
			text = Path(path).read_text(encoding="utf-8")
			data = np.loadtxt(text.splitlines(), comments="#", ndmin=2)
		except (OSError, ValueError) as e:
			raise ResponseCurveError(f"Cannot read response curve {path}: {e}") from e
		if data.shape[1] != 4:
			raise ResponseCurveError(f"{path}: expected 4 columns (level R G B), got {data.shape[1]}")
		levels = data.shape[0]
		if levels < 2 or levels & (levels - 1):
			raise ResponseCurveError(f"{path}: {levels} records is not a power of two")
		if not np.array_equal(data[:, 0], np.arange(levels)):
			raise ResponseCurveError(f"{path}: levels must run from 0 to {levels - 1}")
		match = re.search(r"^#\s*bits:\s*(\d+)", text, flags=re.MULTILINE)
		if match and (1 << int(match.group(1))) != levels:
			raise ResponseCurveError(f"{path}: header declares {match.group(1)} bits but has {levels} records")
		self.set_custom(data[:, 1:])
		logger.debug("Response curve read from %s (%d bits)", path, self.bit_depth)


def _weight_table(kind: WeightType, bit_depth: int) -> np.ndarray:
	x = _normalized_levels(bit_depth)
	if kind == WeightType.TRIANGULAR:
		w = 1.0 - np.abs(2.0 * x - 1.0)
	elif kind == WeightType.PLATEAU:
		w = 1.0 - (2.0 * x - 1.0) ** 12
	elif kind == WeightType.GAUSSIAN:
		w = np.exp(-16.0 * (x - 0.5) ** 2)
	elif kind == WeightType.FLAT:
		w = np.ones_like(x)
		# clipped levels carry no information
		w[0] = 0.0
		w[-1] = 0.0
	else:
		raise ValueError(f"Unknown weight function: {kind}")
	return w.astype(np.float32)


class WeightFunction:
	def __init__(self, kind: WeightType = WeightType.TRIANGULAR, bit_depth: int = 8):
		self.kind = WeightType(kind)
		self.bit_depth = bit_depth
		self.table = _weight_table(self.kind, bit_depth)

	def set_type(self, kind: WeightType) -> None:
		self.kind = WeightType(kind)
		self.table = _weight_table(self.kind, self.bit_depth)

	def set_bit_depth(self, bit_depth: int) -> None:
		if bit_depth != self.bit_depth:
			self.bit_depth = bit_depth
			self.table = _weight_table(self.kind, bit_depth)

	def lookup(self, levels: np.ndarray) -> np.ndarray:
		return self.table[levels]
