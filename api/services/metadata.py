from __future__ import annotations

import json
import logging
import math
import struct
from pathlib import Path
from typing import Any, Dict, List, Optional

from PIL import Image
import piexif

from api.services.image_utils import apply_exif_orientation

logger = logging.getLogger(__name__)

# Reflected-light meter calibration constant for t * ISO / N^2
LUMINANCE_CALIBRATION = 12.07488


def _rational_to_float(x: Any) -> Optional[float]:
	if x is None:
		return None
	if isinstance(x, tuple) and len(x) == 2:
		num, den = x
		if not den:
			return None
		return float(num) / float(den)
	try:
		return float(x)
	except (TypeError, ValueError):
		return None


def _apex_to_time(apex: Optional[float]) -> Optional[float]:
	return 2.0 ** (-apex) if apex is not None else None


def _apex_to_fnumber(apex: Optional[float]) -> Optional[float]:
	return math.sqrt(2.0) ** apex if apex is not None else None


def _bytes_to_str(v: Any) -> Optional[str]:
	if v is None:
		return None
	if isinstance(v, bytes):
		return v.decode("utf-8", errors="ignore")
	return str(v)


def _to_int_safe(v: Any) -> Optional[int]:
	if v is None:
		return None
	if isinstance(v, int):
		return v
	if isinstance(v, (list, tuple)) and v:
		v = v[0]
	if isinstance(v, bytes):
		v = v.decode("utf-8", errors="ignore").strip()
	try:
		return int(v)
	except (TypeError, ValueError):
		return None


def average_luminance(exposure_time_s: Optional[float], fnumber: Optional[float], iso: Optional[int]) -> Optional[float]:
	"""
	Relative scene exposure t * ISO / (N^2 * K). Doubling the exposure time or
	the ISO doubles the value; None when any of the three fields is missing.
	"""
	if not exposure_time_s or not fnumber or not iso:
		return None
	if exposure_time_s <= 0 or fnumber <= 0 or iso <= 0:
		return None
	return exposure_time_s * iso / (fnumber * fnumber * LUMINANCE_CALIBRATION)


def exposure_value(avg_lum: Optional[float]) -> Optional[float]:
	if avg_lum is None or avg_lum <= 0:
		return None
	return math.log2(avg_lum)


def read_exif(path: Path) -> Dict[str, Any]:
	"""
	Exposure related EXIF fields of one file. Missing or unreadable EXIF gives
	None values rather than an error.
	"""
	info: Dict[str, Any] = {
		"exposure_time_s": None,
		"fnumber": None,
		"iso": None,
		"orientation": None,
		"datetime_original": None,
	}
	try:
		ex = piexif.load(str(path))
	except (piexif.InvalidImageDataError, ValueError, struct.error) as e:
		logger.debug("No EXIF data in %s: %s", path, e)
		return info
	exif = ex.get("Exif", {})
	zeroth = ex.get("0th", {})
	# exposure time
	exp = _rational_to_float(exif.get(piexif.ExifIFD.ExposureTime))
	if exp is None:
		exp = _apex_to_time(_rational_to_float(exif.get(piexif.ExifIFD.ShutterSpeedValue)))
	info["exposure_time_s"] = exp
	# f-number
	fnum = _rational_to_float(exif.get(piexif.ExifIFD.FNumber))
	if fnum is None:
		fnum = _apex_to_fnumber(_rational_to_float(exif.get(piexif.ExifIFD.ApertureValue)))
	info["fnumber"] = fnum
	info["iso"] = _to_int_safe(exif.get(piexif.ExifIFD.ISOSpeedRatings))
	info["orientation"] = zeroth.get(piexif.ImageIFD.Orientation)
	dt = exif.get(piexif.ExifIFD.DateTimeOriginal)
	if not dt:
		dt = zeroth.get(piexif.ImageIFD.DateTime)
	info["datetime_original"] = _bytes_to_str(dt)
	return info


def extract_metadata(saved_paths: List[Path]) -> Dict[str, Any]:
	"""
	Per file geometry and exposure data. A file Pillow cannot open gets a
	record with an "error" entry instead of failing the whole set.
	"""
	records: List[Dict[str, Any]] = []
	for p in saved_paths:
		try:
			with Image.open(p) as img:
				img = apply_exif_orientation(img, img.getexif())
				info: Dict[str, Any] = {
					"filename": p.name,
					"width": img.width,
					"height": img.height,
					"mode": img.mode,
				}
		except OSError as e:
			logger.warning("Cannot read metadata of %s: %s", p, e)
			records.append({"filename": p.name, "error": str(e)})
			continue
		info.update(read_exif(p))
		lum = average_luminance(info["exposure_time_s"], info["fnumber"], info["iso"])
		info["average_luminance"] = lum
		info["ev"] = exposure_value(lum)
		records.append(info)
	return {"images": records}


def write_metadata_json(metadata: Dict[str, Any], out_path: Path) -> str:
	out_path.parent.mkdir(parents=True, exist_ok=True)
	with out_path.open("w", encoding="utf-8") as f:
		json.dump(metadata, f, indent=2)
	return str(out_path)
