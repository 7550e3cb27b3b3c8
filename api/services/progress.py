from __future__ import annotations

import threading
from typing import Callable, Optional


class ProgressHelper:
	"""
	Progress sink shared between a long computation and whoever watches it.
	The computation calls set_range/set_value and polls canceled(); the
	watcher calls cancel(). callback, when given, receives every new value.
	"""

	def __init__(self, callback: Optional[Callable[[int], None]] = None):
		self._callback = callback
		self._cancel = threading.Event()
		self._lock = threading.Lock()
		self.minimum = 0
		self.maximum = 100
		self.value = 0

	def set_range(self, minimum: int, maximum: int) -> None:
		if maximum < minimum:
			raise ValueError(f"Invalid progress range [{minimum}, {maximum}]")
		with self._lock:
			self.minimum = minimum
			self.maximum = maximum

	def set_value(self, value: int) -> None:
		with self._lock:
			self.value = max(self.minimum, min(self.maximum, int(value)))
			current = self.value
		if self._callback is not None:
			self._callback(current)

	def cancel(self) -> None:
		self._cancel.set()

	def canceled(self) -> bool:
		return self._cancel.is_set()

	@property
	def percent(self) -> float:
		span = self.maximum - self.minimum
		if span == 0:
			return 100.0
		return 100.0 * (self.value - self.minimum) / span
