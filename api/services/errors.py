"""
Errors raised while building an HDR image from a bracket.
"""


class HdrError(Exception):
	"""Base class for every HDR creation failure."""


class ExposureReadError(HdrError):
	"""A single exposure could not be decoded (missing file, unsupported format)."""


class ExposureLoadError(HdrError):
	"""A load batch failed as a whole and was discarded."""


class LoadAbortedError(ExposureLoadError):
	"""A load batch was cancelled before it was merged."""


class SizeMismatchError(HdrError):
	"""The exposures do not share the same width and height."""


class ResponseCurveError(HdrError):
	"""A response curve file could not be read or written."""


class InsufficientExposuresError(HdrError):
	"""Fusion and ghost detection need at least two exposures."""
