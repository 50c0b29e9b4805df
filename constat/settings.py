from __future__ import annotations

import os
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]

APP_ENV = (os.environ.get("APP_ENV") or os.environ.get("CONSTAT_ENV") or "development").strip().lower()
ALLOW_SQLITE = os.environ.get("ALLOW_SQLITE", "").strip().lower() in {"1", "true", "yes"}

DATA_DIR = Path(os.environ.get("CONSTAT_DATA_DIR", str(REPO_ROOT / "data"))).resolve()
ARTIFACTS_DIR = Path(os.environ.get("ARTIFACTS_DIR", str(REPO_ROOT / "artifacts"))).resolve()

# Optional S3 mirror for uploaded plans and generated reports
S3_BUCKET = os.environ.get("CONSTAT_BUCKET", "").strip()
S3_ARTIFACT_PREFIX = os.environ.get("CONSTAT_ARTIFACT_PREFIX", "").strip()

PLAN_MAX_BYTES = int(os.environ.get("PLAN_MAX_BYTES", str(10 * 1024 * 1024)))
PLAN_ALLOWED_TYPES = {
    "application/pdf": "pdf",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
}
PLAN_ALLOWED_SUFFIXES = {".pdf": "pdf", ".jpg": "jpg", ".jpeg": "jpeg", ".png": "png"}

CURRENCY = os.environ.get("CONSTAT_CURRENCY", "MAD")

CORS_ORIGINS = [
    origin.strip()
    for origin in (os.environ.get("CORS_ORIGINS") or "*").split(",")
    if origin.strip()
]
