from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List

import cv2
import numpy as np
from PIL import Image

from api.services.fusion import FusionOperatorConfig
from api.services.hdr_creation import HdrCreationManager
from api.services.image_utils import to_display_u8
from api.services.metadata import extract_metadata, write_metadata_json
from api.services.previews import write_previews
from api.services.progress import ProgressHelper
from api.services.status_store import update_status, write_status

logger = logging.getLogger(__name__)

INPUT_ROOT = Path("api/input")
OUTPUT_ROOT = Path("api/output")


def write_radiance(frame: np.ndarray, out_dir: Path, stem: str) -> Dict[str, str]:
	"""Save a radiance map as Radiance .hdr, raw .npy and an sRGB preview PNG."""
	out_dir.mkdir(parents=True, exist_ok=True)
	hdr_path = out_dir / f"{stem}.hdr"
	if not cv2.imwrite(str(hdr_path), cv2.cvtColor(frame.astype(np.float32), cv2.COLOR_RGB2BGR)):
		raise OSError(f"OpenCV could not write {hdr_path}")
	npy_path = out_dir / f"{stem}.npy"
	np.save(str(npy_path), frame.astype(np.float32))
	png_path = out_dir / f"{stem}_preview.png"
	Image.fromarray(to_display_u8(frame)).save(png_path, format="PNG", optimize=True)
	return {"hdr": str(hdr_path), "npy": str(npy_path), "preview": str(png_path)}


def write_mask(mask: np.ndarray, path: Path) -> str:
	path.parent.mkdir(parents=True, exist_ok=True)
	Image.fromarray(mask.astype(np.uint8) * 255).save(path, format="PNG")
	return str(path)


def run_hdr_job(
	job_id: str,
	files_meta: List[Dict[str, Any]],
	config: FusionOperatorConfig,
	antighosting: bool = False,
	threshold: float = 3.0,
	align: bool = False,
) -> None:
	try:
		# 1) Save originals to api/input/<job_id>/
		update_status(job_id, status="saving", step="Save Images")
		in_dir = INPUT_ROOT / job_id
		in_dir.mkdir(parents=True, exist_ok=True)
		saved = []
		for fm in files_meta:
			p = in_dir / Path(fm["filename"]).name
			with p.open("wb") as f:
				f.write(fm["data"])
			saved.append(p)

		# 2) Metadata
		update_status(job_id, status="metadata", step="Extract Metadata")
		metadata_path = write_metadata_json(extract_metadata(saved), in_dir / "metadata.json")

		out_dir = OUTPUT_ROOT / job_id
		manager = HdrCreationManager()
		try:
			manager.set_config(config)

			# 3) Load exposures
			update_status(job_id, status="loading", step="Load Exposures", metadata=metadata_path)
			report = manager.load_files([str(p) for p in saved]).result()
			update_status(
				job_id,
				status="loaded",
				step="Load Exposures",
				loaded=report.added,
				invalid=report.invalid,
				files_without_exif=manager.store.files_without_exif(),
				ev_offset=manager.store.ev_offset,
			)

			# 4) Optional MTB alignment
			offsets = None
			if align:
				update_status(job_id, status="aligning", step="Align Images (MTB)")
				offsets = manager.align_with_mtb()
			previews = write_previews(manager.store.items, out_dir / "previews")

			# 5) Fusion
			update_status(job_id, status="fusing", step="HDR Fusion", offsets=offsets, previews=previews)
			result: Dict[str, Any] = {"hdr": write_radiance(manager.create_hdr(), out_dir, "hdr")}

			# 6) Antighosting
			if antighosting:
				update_status(job_id, status="detecting_ghosts", step="Detect Ghosts")
				detection = manager.compute_patches(threshold)
				result["ghost_mask"] = write_mask(detection.mask, out_dir / "ghost_mask.png")
				result["reference_index"] = detection.reference_index
				result["ghosted_percent"] = detection.ghosted_percent
				update_status(job_id, status="deghosting", step="Deghost", **result)
				progress = ProgressHelper(callback=lambda v: update_status(job_id, progress=v))
				deghosted = manager.do_antighosting(detection.mask, detection.reference_index, progress=progress)
				if deghosted is None:
					update_status(job_id, status="canceled", step="Deghost")
					return
				result["deghosted"] = write_radiance(deghosted, out_dir, "deghosted")
		finally:
			manager.close()

		# 7) Complete
		update_status(job_id, status="completed", step="Done", **result)
	except Exception as e:
		logger.exception("HDR job %s failed", job_id)
		write_status(job_id, {"job_id": job_id, "status": "error", "error": str(e)})
