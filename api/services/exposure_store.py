from __future__ import annotations

import dataclasses
import logging
import queue
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, List, Optional, Sequence, Tuple

from api.services.errors import (
	ExposureLoadError,
	ExposureReadError,
	LoadAbortedError,
	SizeMismatchError,
)
from api.services.exposure import ExposureItem
from api.services.image_reader import read_exposure
from api.services.previews import refresh_preview

logger = logging.getLogger(__name__)

POLL_INTERVAL_S = 0.05

Reader = Callable[[str], ExposureItem]


@dataclass
class LoadReport:
	added: List[str] = field(default_factory=list)
	skipped: List[str] = field(default_factory=list)
	invalid: List[str] = field(default_factory=list)


class LoadBatch:
	"""
	Handle on one asynchronous load request. result() returns the LoadReport
	once the batch is merged, or raises LoadAbortedError, SizeMismatchError or
	ExposureLoadError.
	"""

	def __init__(self, paths: Sequence[str]):
		self.paths = [str(p) for p in paths]
		self._cancel = threading.Event()
		self._future: Optional[Future] = None

	def cancel(self) -> None:
		self._cancel.set()

	def cancelled(self) -> bool:
		return self._cancel.is_set()

	def done(self) -> bool:
		return self._future is not None and self._future.done()

	def result(self, timeout: Optional[float] = None) -> LoadReport:
		return self._future.result(timeout)

	def exception(self, timeout: Optional[float] = None) -> Optional[BaseException]:
		return self._future.exception(timeout)

	def add_done_callback(self, fn: Callable[["LoadBatch"], None]) -> None:
		self._future.add_done_callback(lambda _f: fn(self))


def median_ev(evs: Iterable[Optional[float]]) -> float:
	"""
	EV offset of a bracket: the middle known EV (lower middle for an even
	count), 0 when no exposure has an EV.
	"""
	known = sorted(ev for ev in evs if ev is not None)
	if not known:
		return 0.0
	return float(known[(len(known) + 1) // 2 - 1])


class ExposureStore:
	"""
	Ordered collection of the exposures of one HDR session.

	Load batches are serialized on a single coordinator thread which alone
	merges results into the store; decoding fans out on a worker pool.
	"""

	def __init__(self, reader: Reader = read_exposure, max_workers: Optional[int] = None):
		self._reader = reader
		self._items: List[ExposureItem] = []
		self._ev_offset = 0.0
		self._lock = threading.RLock()
		self._pending: List[LoadBatch] = []
		self._workers = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="exposure-loader")
		self._coordinator = ThreadPoolExecutor(max_workers=1, thread_name_prefix="exposure-store")

	# --- container protocol -------------------------------------------------

	def __len__(self) -> int:
		return len(self._items)

	def __getitem__(self, idx: int) -> ExposureItem:
		return self._items[idx]

	def __iter__(self) -> Iterator[ExposureItem]:
		return iter(list(self._items))

	def __enter__(self) -> "ExposureStore":
		return self

	def __exit__(self, *exc) -> None:
		self.close()

	@property
	def items(self) -> Tuple[ExposureItem, ...]:
		return tuple(self._items)

	@property
	def ev_offset(self) -> float:
		return self._ev_offset

	# --- loading ------------------------------------------------------------

	def load(self, paths: Sequence[str]) -> LoadBatch:
		batch = LoadBatch(paths)
		with self._lock:
			self._pending.append(batch)
			batch._future = self._coordinator.submit(self._run_batch, batch)
		batch.add_done_callback(self._forget)
		return batch

	def _forget(self, batch: LoadBatch) -> None:
		with self._lock:
			if batch in self._pending:
				self._pending.remove(batch)

	def _schedule(self, batch: LoadBatch) -> Tuple[List[str], List[str]]:
		with self._lock:
			loaded = {item.source for item in self._items}
		scheduled: List[str] = []
		skipped: List[str] = []
		for path in batch.paths:
			logger.debug("Checking %s", path)
			if path in loaded or path in scheduled:
				logger.debug("%s has already been loaded", path)
				skipped.append(path)
			else:
				logger.debug("Schedule loading for %s", path)
				scheduled.append(path)
		return scheduled, skipped

	def _run_batch(self, batch: LoadBatch) -> LoadReport:
		if batch.cancelled():
			raise LoadAbortedError("Load aborted before it started")
		scheduled, skipped = self._schedule(batch)
		report = LoadReport(skipped=skipped)

		arrivals: "queue.Queue[Future]" = queue.Queue()
		futures = {}
		for path in scheduled:
			fut = self._workers.submit(self._reader, path)
			futures[fut] = path
			fut.add_done_callback(arrivals.put)

		arrived: List[ExposureItem] = []
		remaining = len(futures)
		while remaining:
			if batch.cancelled():
				for fut in futures:
					fut.cancel()
				logger.info("Aborting load of %d files", len(futures))
				raise LoadAbortedError("Loading was aborted")
			try:
				fut = arrivals.get(timeout=POLL_INTERVAL_S)
			except queue.Empty:
				continue
			remaining -= 1
			path = futures[fut]
			try:
				item = fut.result()
			except ExposureReadError as e:
				logger.warning("Dropping %s: %s", path, e)
				report.invalid.append(path)
				continue
			except Exception as e:
				for other in futures:
					other.cancel()
				raise ExposureLoadError(f"Error loading {path}: {e}") from e
			if not item.valid:
				logger.warning("Dropping invalid exposure %s", path)
				report.invalid.append(path)
				continue
			if item.source != path:
				item = dataclasses.replace(item, source=path)
			arrived.append(item)

		# a cancel racing the last arrival still wins over the merge
		if batch.cancelled():
			logger.info("Load aborted after %d files arrived", len(arrived))
			raise LoadAbortedError("Loading was aborted")

		logger.debug("Data loaded, moving %d exposures to the store", len(arrived))
		with self._lock:
			self._items.extend(arrived)
			self._refresh_ev_offset()
			if not self.frames_have_same_size():
				self._items.clear()
				self._refresh_ev_offset()
				raise SizeMismatchError("The images have different size.")
		report.added = [item.source for item in arrived]
		return report

	# --- bookkeeping --------------------------------------------------------

	def _refresh_ev_offset(self) -> None:
		self._ev_offset = median_ev(item.ev for item in self._items)
		logger.debug("EV offset = %s", self._ev_offset)

	def frames_have_same_size(self) -> bool:
		if not self._items:
			return True
		w, h = self._items[0].width, self._items[0].height
		return all(item.width == w and item.height == h for item in self._items[1:])

	def remove(self, idx: int) -> None:
		with self._lock:
			del self._items[idx]
			self._refresh_ev_offset()

	def set_ev(self, idx: int, ev: float) -> None:
		with self._lock:
			self._items[idx] = self._items[idx].with_ev(ev)
			self._refresh_ev_offset()

	def exposure_values(self) -> List[Optional[float]]:
		return [item.ev for item in self._items]

	def files_without_exif(self) -> List[str]:
		return [item.source for item in self._items if not item.has_average_luminance]

	def num_files_without_exif(self) -> int:
		return len(self.files_without_exif())

	def clear(self) -> None:
		with self._lock:
			self._items.clear()
			self._refresh_ev_offset()

	def reset(self) -> None:
		"""Abort any in-flight load batch and drop every exposure."""
		with self._lock:
			pending = list(self._pending)
		for batch in pending:
			batch.cancel()
		if pending:
			logger.debug("Aborting %d pending load batches", len(pending))
			wait([b._future for b in pending])
		self.clear()

	def close(self) -> None:
		self.reset()
		self._coordinator.shutdown(wait=True)
		self._workers.shutdown(wait=True)

	# --- geometric transforms -----------------------------------------------

	def apply_shifts(self, offsets: Sequence[Tuple[int, int]]) -> None:
		with self._lock:
			if len(offsets) != len(self._items):
				raise ValueError(f"Got {len(offsets)} offsets for {len(self._items)} exposures")
			self._items = [
				item if (dx, dy) == (0, 0) else item.shifted(dx, dy)
				for item, (dx, dy) in zip(self._items, offsets)
			]

	def crop(self, box: Tuple[int, int, int, int]) -> None:
		with self._lock:
			self._items = [item.cropped(box) for item in self._items]
		self.refresh_previews()

	def refresh_previews(self) -> None:
		with self._lock:
			current = list(self._items)
		refreshed = list(self._workers.map(refresh_preview, current))
		with self._lock:
			self._items = refreshed
