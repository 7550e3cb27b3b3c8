from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from api.services.alignment import align_store
from api.services.deghosting import DeghostingSolver
from api.services.errors import InsufficientExposuresError, ResponseCurveError, SizeMismatchError
from api.services.exposure_store import ExposureStore, LoadBatch
from api.services.fusion import (
	PREDEFINED_CONFIGS,
	FrameEnhanced,
	FusionOperatorConfig,
	FusionScheduler,
	build_operator_registry,
)
from api.services.ghost_detection import AG_GRID_SIZE, GhostDetection, GhostDetector, mask_from_image
from api.services.progress import ProgressHelper
from api.services.radiometric import ResponseCurve, WeightFunction, quantize

logger = logging.getLogger(__name__)


class HdrCreationManager:
	"""
	Coordinates one HDR creation session: the exposure store, the radiometric
	model, fusion, ghost detection and deghosting.
	"""

	def __init__(
		self,
		store: Optional[ExposureStore] = None,
		grid_size: int = AG_GRID_SIZE,
		scheduler: Optional[FusionScheduler] = None,
		solver: Optional[DeghostingSolver] = None,
	):
		self.store = store if store is not None else ExposureStore()
		self.config: FusionOperatorConfig = PREDEFINED_CONFIGS[0]
		self.response = ResponseCurve(self.config.response_curve)
		self.weight = WeightFunction(self.config.weight_function)
		self.scheduler = scheduler if scheduler is not None else FusionScheduler(build_operator_registry())
		self.detector = GhostDetector(grid_size)
		self.solver = solver if solver is not None else DeghostingSolver()
		self._pending_response_file: Optional[str] = None
		self._patches = np.zeros((grid_size, grid_size), dtype=bool)
		self._good_index = 0
		self._ag_mask: Optional[np.ndarray] = None

	# --- configuration ------------------------------------------------------

	def set_config(self, cfg: FusionOperatorConfig) -> None:
		if cfg.input_response_file:
			self._pending_response_file = cfg.input_response_file
		else:
			self._pending_response_file = None
			self.response.set_type(cfg.response_curve)
		self.weight.set_type(cfg.weight_function)
		self.config = cfg

	def load_files(self, paths: Sequence[str]) -> LoadBatch:
		return self.store.load(paths)

	def _prepare_model(self, bit_depth: int) -> None:
		if self._pending_response_file:
			self.response.read_from_file(self._pending_response_file)
			if self.response.bit_depth != bit_depth:
				raise ResponseCurveError(
					f"Response curve {self._pending_response_file} has {self.response.bit_depth} bits, "
					f"exposures have {bit_depth}"
				)
			self._pending_response_file = None
		else:
			self.response.set_bit_depth(bit_depth)
		self.weight.set_bit_depth(bit_depth)

	def exposure_scales(self) -> List[float]:
		offset = self.store.ev_offset
		return [2.0 ** ((item.ev if item.has_ev else 0.0) - offset) for item in self.store.items]

	# --- fusion -------------------------------------------------------------

	def create_hdr(self) -> np.ndarray:
		items = self.store.items
		if len(items) < 2:
			raise InsufficientExposuresError(f"HDR creation needs at least 2 exposures, got {len(items)}")
		if not self.store.frames_have_same_size():
			raise SizeMismatchError("The images have different size.")
		bps = items[0].bit_depth
		self._prepare_model(bps)
		frames = [
			FrameEnhanced(frame=item.frame, scale=scale, bit_depth=bps)
			for item, scale in zip(items, self.exposure_scales())
		]
		logger.debug("Fusing %d exposures with %s", len(frames), self.config)
		out = self.scheduler.compute_fusion(self.config.fusion_operator, self.response, self.weight, frames)
		if self.config.output_response_file:
			self.response.write_to_file(self.config.output_response_file)
		return out

	def reference_radiance(self, index: int) -> np.ndarray:
		"""Linearized, exposure normalized frame of one exposure."""
		item = self.store[index]
		scale = self.exposure_scales()[index]
		levels = quantize(item.frame, self.response.bit_depth)
		return (self.response.lookup(levels) / np.float32(scale)).astype(np.float32)

	# --- antighosting -------------------------------------------------------

	def compute_patches(self, threshold: float, offsets: Optional[Sequence[Tuple[int, int]]] = None) -> GhostDetection:
		result = self.detector.detect(self.store.items, threshold, offsets)
		self._patches = result.mask.copy()
		self._good_index = result.reference_index
		return result

	def get_ag_data(self) -> Tuple[np.ndarray, int]:
		return self._patches.copy(), self._good_index

	def set_patches(self, patches: np.ndarray) -> None:
		patches = np.asarray(patches, dtype=bool)
		if patches.shape != self._patches.shape:
			raise ValueError(f"Patch grid must be {self._patches.shape}, got {patches.shape}")
		self._patches = patches.copy()

	def set_antighosting_mask(self, mask) -> None:
		self._ag_mask = mask_from_image(mask)

	def do_antighosting(
		self,
		patches: Optional[np.ndarray] = None,
		h0: Optional[int] = None,
		manual: bool = False,
		progress: Optional[ProgressHelper] = None,
	) -> Optional[np.ndarray]:
		"""
		Deghosted radiance map using the patch grid (or the freehand mask when
		manual is set) and exposure h0 as reference. None when canceled.
		"""
		progress = progress or ProgressHelper()
		progress.set_range(0, 100)
		progress.set_value(0)
		if manual:
			if self._ag_mask is None:
				raise ValueError("Manual antighosting requested without a mask")
			mask = self._ag_mask
			if len(self.store) and mask.shape != (self.store[0].height, self.store[0].width):
				raise ValueError(
					f"Freehand mask {mask.shape} does not match the {self.store[0].height}x{self.store[0].width} exposures"
				)
		else:
			mask = self._patches if patches is None else np.asarray(patches, dtype=bool)
		h0 = self._good_index if h0 is None else h0

		ghosted = self.create_hdr()
		progress.set_value(20)
		if progress.canceled():
			return None
		reference = self.reference_radiance(h0)
		return self.solver.solve(ghosted, reference, mask, progress, freehand=manual)

	# --- geometry -----------------------------------------------------------

	def apply_shifts(self, offsets: Sequence[Tuple[int, int]]) -> None:
		self.store.apply_shifts(offsets)
		self.store.refresh_previews()

	def crop_items(self, box: Tuple[int, int, int, int]) -> None:
		self.store.crop(box)
		if self._ag_mask is not None:
			left, top, right, bottom = box
			self._ag_mask = self._ag_mask[top:bottom, left:right].copy()

	def align_with_mtb(self) -> List[Tuple[int, int]]:
		return align_store(self.store)

	def reset(self) -> None:
		self.store.reset()
		self._patches = np.zeros_like(self._patches)
		self._good_index = 0
		self._ag_mask = None

	def close(self) -> None:
		self.store.close()
