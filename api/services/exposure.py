from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np

from api.services.image_utils import crop_frame, shift_frame


@dataclass(frozen=True)
class ExposureItem:
	"""
	One loaded exposure of the bracket.

	frame holds raw (camera encoded) RGB values as float32 in [0,1], HxWx3.
	thumbnail is a small uint8 RGB preview, or None until previews are built.
	Geometric operations return new items; an item is never changed in place.
	"""
	source: str
	frame: np.ndarray = field(repr=False)
	ev: Optional[float] = None
	average_luminance: Optional[float] = None
	bit_depth: int = 8
	thumbnail: Optional[np.ndarray] = field(default=None, repr=False)
	valid: bool = True

	@property
	def width(self) -> int:
		return int(self.frame.shape[1])

	@property
	def height(self) -> int:
		return int(self.frame.shape[0])

	@property
	def has_ev(self) -> bool:
		return self.ev is not None

	@property
	def has_average_luminance(self) -> bool:
		return self.average_luminance is not None and self.average_luminance > 0.0

	def with_ev(self, ev: float) -> "ExposureItem":
		return dataclasses.replace(self, ev=float(ev))

	def with_thumbnail(self, thumbnail: np.ndarray) -> "ExposureItem":
		return dataclasses.replace(self, thumbnail=thumbnail)

	def shifted(self, dx: int, dy: int) -> "ExposureItem":
		thumb = self.thumbnail
		if thumb is not None:
			sx = thumb.shape[1] / float(self.width)
			sy = thumb.shape[0] / float(self.height)
			thumb = shift_frame(thumb, int(round(dx * sx)), int(round(dy * sy)))
		return dataclasses.replace(self, frame=shift_frame(self.frame, dx, dy), thumbnail=thumb)

	def cropped(self, box: Tuple[int, int, int, int]) -> "ExposureItem":
		# thumbnail is stale after a crop; previews are rebuilt by the store
		return dataclasses.replace(self, frame=crop_frame(self.frame, box), thumbnail=None)
