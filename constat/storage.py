from __future__ import annotations

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from constat import settings

log = logging.getLogger("uvicorn.error")

ARTIFACTS_DIR: Path = settings.ARTIFACTS_DIR
S3_BUCKET = settings.S3_BUCKET
S3_ARTIFACT_PREFIX = settings.S3_ARTIFACT_PREFIX
_S3_CLIENT = None

PLAN_BASENAME = "plan-de-masse"


class ArtifactError(ValueError):
    """Raised for rejected uploads and unsafe artifact paths."""


def _root() -> Path:
    root = Path(ARTIFACTS_DIR).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _get_s3_client_cached():
    global _S3_CLIENT
    if not S3_BUCKET:
        return None
    if _S3_CLIENT is None:
        try:
            _S3_CLIENT = boto3.client("s3")
        except (BotoCoreError, ClientError):
            log.exception("Failed to initialise S3 client for artifacts")
            _S3_CLIENT = None
    return _S3_CLIENT


def _artifact_s3_key_from_relative(relative_path: str) -> Optional[str]:
    trimmed = (relative_path or "").strip().lstrip("/\\")
    if not trimmed:
        return None
    if S3_ARTIFACT_PREFIX:
        return f"{S3_ARTIFACT_PREFIX.rstrip('/')}/{trimmed}"
    return trimmed


def _persist_artifact(relative_path: str, full_path: Path, *, content_type: Optional[str] = None) -> Dict[str, Optional[str]]:
    url = f"/artifacts/{relative_path}"
    s3_key = None
    client = _get_s3_client_cached()
    if client:
        key = _artifact_s3_key_from_relative(relative_path)
        if key:
            extra_args = {"ContentType": content_type} if content_type else None
            try:
                client.upload_file(str(full_path), S3_BUCKET, key, ExtraArgs=extra_args)
                s3_key = key
            except (BotoCoreError, ClientError):
                log.exception("Failed to upload artifact to S3 key=%s", key)
    return {"url": url, "path": relative_path, "s3_key": s3_key}


def safe_path(relative: str) -> Path:
    root = _root()
    full = (root / (relative or "").lstrip("/\\")).resolve()
    if full != root and root not in full.parents:
        log.warning("artifact blocked path=%s base=%s", full, root)
        raise ArtifactError("Invalid artifact path")
    return full


def resolve_artifact(relative: str) -> Path:
    """Local path of an artifact, fetched from S3 when only the mirror has it."""
    full = safe_path(relative)
    if full.exists():
        return full
    client = _get_s3_client_cached()
    key = _artifact_s3_key_from_relative(relative)
    if client and key:
        full.parent.mkdir(parents=True, exist_ok=True)
        try:
            client.download_file(S3_BUCKET, key, str(full))
        except (BotoCoreError, ClientError):
            log.exception("Failed to download artifact from S3 key=%s", key)
    if not full.exists():
        raise FileNotFoundError(relative)
    return full


def delete_artifact(relative: Optional[str]) -> None:
    if not relative:
        return
    full = safe_path(relative)
    if full.exists():
        full.unlink()
    client = _get_s3_client_cached()
    key = _artifact_s3_key_from_relative(relative)
    if client and key:
        try:
            client.delete_object(Bucket=S3_BUCKET, Key=key)
        except (BotoCoreError, ClientError):
            log.exception("Failed to delete artifact from S3 key=%s", key)


# ---------------------------------------------------------------------------
# Plan de masse
# ---------------------------------------------------------------------------


def plan_extension(filename: Optional[str], content_type: Optional[str]) -> str:
    suffix = Path(filename or "").suffix.lower()
    if suffix in settings.PLAN_ALLOWED_SUFFIXES:
        return settings.PLAN_ALLOWED_SUFFIXES[suffix]
    ctype = (content_type or "").split(";")[0].strip().lower()
    if ctype in settings.PLAN_ALLOWED_TYPES:
        return settings.PLAN_ALLOWED_TYPES[ctype]
    raise ArtifactError("Plan de masse must be a PDF, JPEG or PNG file")


def check_plan_size(size: int) -> None:
    if size > settings.PLAN_MAX_BYTES:
        limit_mb = settings.PLAN_MAX_BYTES / (1024 * 1024)
        raise ArtifactError(f"Plan de masse exceeds the {limit_mb:g} MB limit")


def save_plan(mission_id: str, *, filename: str, content_type: Optional[str], data: bytes) -> Dict[str, object]:
    if not data:
        raise ArtifactError("Uploaded file is empty")
    check_plan_size(len(data))
    ext = plan_extension(filename, content_type)
    folder = safe_path(f"missions/{mission_id}")
    folder.mkdir(parents=True, exist_ok=True)
    for existing in folder.glob(f"{PLAN_BASENAME}.*"):
        existing.unlink()
    relative = f"missions/{mission_id}/{PLAN_BASENAME}.{ext}"
    full = safe_path(relative)
    full.write_bytes(data)
    stored = _persist_artifact(relative, full, content_type=content_type)
    return {
        "url": stored["url"],
        "path": relative,
        "filename": Path(filename or full.name).name,
        "size": len(data),
    }


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


def slugify(value: str, default: str = "mission") -> str:
    cleaned = re.sub(r"[^a-z0-9]+", "-", (value or "").lower()).strip("-")
    return cleaned or default


def report_relative_path(mission_id: str, title: str, *, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.utcnow()).strftime("%Y%m%dT%H%M%S")
    return f"missions/{mission_id}/reports/rapport_{slugify(title)}_{stamp}.pdf"


def store_report(relative: str, full_path: Path) -> Dict[str, Optional[str]]:
    return _persist_artifact(relative, full_path, content_type="application/pdf")
