from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Dict

JOBS_DIR = Path("jobs")

_lock = threading.Lock()


def _status_path(job_id: str) -> Path:
	return JOBS_DIR / f"{job_id}.json"


def write_status(job_id: str, data: Dict[str, Any]) -> None:
	JOBS_DIR.mkdir(parents=True, exist_ok=True)
	with _lock, _status_path(job_id).open("w", encoding="utf-8") as f:
		json.dump(data, f, indent=2)


def read_status(job_id: str) -> Dict[str, Any]:
	status_path = _status_path(job_id)
	if not status_path.exists():
		return {"job_id": job_id, "status": "unknown"}
	with _lock, status_path.open("r", encoding="utf-8") as f:
		return json.load(f)


def update_status(job_id: str, **fields: Any) -> Dict[str, Any]:
	"""Merge fields into the stored status of job_id and return the result."""
	data = read_status(job_id)
	data.update(fields)
	data["job_id"] = job_id
	write_status(job_id, data)
	return data
