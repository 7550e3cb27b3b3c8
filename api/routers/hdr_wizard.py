from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import List

from fastapi import APIRouter, BackgroundTasks, File, Form, HTTPException, UploadFile

from api.services.fusion import PREDEFINED_CONFIGS, FusionOperator, FusionOperatorConfig
from api.services.hdr_job import run_hdr_job
from api.services.radiometric import ResponseType, WeightType
from api.services.status_store import read_status, write_status


router = APIRouter(prefix="/hdr", tags=["hdr"])


def _slugify(text: str) -> str:
	return "".join(ch if (ch.isalnum() or ch in ("-", "_")) else "-" for ch in text).strip("-_").lower()


def _config_dict(cfg: FusionOperatorConfig) -> dict:
	return {
		"weight_function": cfg.weight_function.value,
		"response_curve": cfg.response_curve.value,
		"fusion_operator": cfg.fusion_operator.value,
	}


@router.get("/configs", summary="Predefined fusion configurations")
def configs():
	return [_config_dict(c) for c in PREDEFINED_CONFIGS]


@router.post("/upload", summary="Upload a bracket and build the HDR image in the background")
async def upload(
	background_tasks: BackgroundTasks,
	files: List[UploadFile] = File(...),
	weight_function: WeightType = Form(WeightType.TRIANGULAR),
	response_curve: ResponseType = Form(ResponseType.LINEAR),
	fusion_operator: FusionOperator = Form(FusionOperator.DEBEVEC),
	antighosting: bool = Form(False),
	threshold: float = Form(3.0),
	align: bool = Form(False),
):
	if len(files) < 2:
		raise HTTPException(status_code=422, detail="Upload at least two exposures")
	if response_curve == ResponseType.CUSTOM:
		raise HTTPException(status_code=422, detail="Custom response curves are not accepted over HTTP")
	files_meta = []
	for f in files:
		data = await f.read()
		files_meta.append({"filename": f.filename or "image.jpg", "data": data})
	filenames = [m["filename"] for m in files_meta]
	# Human-readable job_id: "<first_filename_stem>_<ddmmyyyyHHMMSS>"
	first_stem = _slugify(Path(filenames[0]).stem) or "job"
	job_id = f"{first_stem}_{datetime.now().strftime('%d%m%Y%H%M%S')}"
	config = FusionOperatorConfig(weight_function, response_curve, fusion_operator)
	write_status(job_id, {"job_id": job_id, "status": "queued", "step": "Queued", "config": _config_dict(config)})
	background_tasks.add_task(run_hdr_job, job_id, files_meta, config, antighosting, threshold, align)
	return {
		"job_id": job_id,
		"status": "queued",
		"num_files": len(files_meta),
		"filenames": filenames,
		"status_endpoint": f"/hdr/status/{job_id}",
		"result_endpoint": f"/hdr/result/{job_id}",
	}


@router.get("/status/{job_id}", summary="Get job status")
def status(job_id: str):
	return read_status(job_id)


@router.get("/result/{job_id}", summary="Get job results")
def result(job_id: str):
	data = read_status(job_id)
	if data.get("status") != "completed":
		return {"job_id": job_id, "status": data.get("status"), "message": "not completed yet"}
	return {
		"job_id": job_id,
		"metadata": data.get("metadata"),
		"loaded": data.get("loaded", []),
		"invalid": data.get("invalid", []),
		"files_without_exif": data.get("files_without_exif", []),
		"ev_offset": data.get("ev_offset"),
		"previews": data.get("previews", []),
		"hdr": data.get("hdr"),
		"ghost_mask": data.get("ghost_mask"),
		"reference_index": data.get("reference_index"),
		"ghosted_percent": data.get("ghosted_percent"),
		"deghosted": data.get("deghosted"),
	}
