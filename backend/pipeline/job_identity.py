"""
Job identity and the Dropbox layout derived from it.

Originals and previews live under a per-job folder; paid finals live under a
separate ``/final`` tree. Older deployments stored originals directly under
``/uploads/``, so the final-path rule handles both layouts.
"""

import re
import secrets
import time

RENDERS_PREFIX = "/renders"
FINAL_PREFIX = "/final"
LEGACY_UPLOADS_PREFIX = "/uploads/"

_DUPLICATE_SLASHES = re.compile(r"/{2,}")


def new_job_id() -> str:
    """Timestamp-derived job id with a random suffix against same-millisecond collisions."""
    return f"job_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


def job_folder(job_id: str) -> str:
    return f"{RENDERS_PREFIX}/{job_id}"


def original_path(job_id: str) -> str:
    return f"{job_folder(job_id)}/original.jpg"


def preview_path(job_id: str) -> str:
    return f"{job_folder(job_id)}/preview.jpg"


def variation_final_path(job_id: str) -> str:
    """Target of the render-variation finalize flow."""
    return f"{job_folder(job_id)}/final.jpg"


def final_path(source_path: str) -> str:
    """
    Derive where the paid, unwatermarked asset is stored.

    /uploads/job_1.jpg              -> /final/job_1.jpg
    /renders/job_1/original.jpg     -> /final/renders/job_1/original.jpg
    """
    if source_path.startswith(LEGACY_UPLOADS_PREFIX):
        return FINAL_PREFIX + "/" + source_path[len(LEGACY_UPLOADS_PREFIX):]

    normalized = source_path if source_path.startswith("/") else f"/{source_path}"
    return _DUPLICATE_SLASHES.sub("/", f"{FINAL_PREFIX}{normalized}")


def parent_folder(path: str) -> str:
    """Folder part of ``path``; empty for root-level files."""
    return path[: path.rfind("/")] if "/" in path else ""
