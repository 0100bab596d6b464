"""Queue operations behind the HTTP routes"""
import logging
from typing import List, Optional

from pydantic import AnyUrl, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from database import Job, get_all_jobs, get_job_by_id, insert_job
from exceptions import NotFoundError, ValidationError
from models import JobState

logger = logging.getLogger(__name__)

_url_adapter = TypeAdapter(AnyUrl)

def validate_url(url) -> str:
    """Return ``url`` unchanged if it parses as an absolute URL"""
    if url is None or (isinstance(url, str) and not url.strip()):
        raise ValidationError("URL parameter is required")
    if not isinstance(url, str):
        raise ValidationError("Invalid URL format")
    try:
        _url_adapter.validate_python(url)
    except PydanticValidationError:
        raise ValidationError("Invalid URL format")
    return url

def enqueue(db: Session, url, worker=None) -> int:
    """Validate and queue a URL, then wake the worker"""
    url = validate_url(url)
    job_id = insert_job(db, url)
    if worker is not None:
        worker.notify()
    return job_id

def list_all(db: Session, state: Optional[JobState] = None) -> List[Job]:
    return get_all_jobs(db, state=state)

# Largest id a 64-bit INTEGER column can hold
MAX_JOB_ID = 2 ** 63 - 1

def parse_job_id(raw: str) -> int:
    """Parse a path id; only ASCII digits, unlike int() which also takes "5_0" or "+5"."""
    if not (raw.isascii() and raw.isdigit()):
        raise ValidationError("Invalid job id")
    return int(raw)

def get_by_id(db: Session, job_id: int) -> Job:
    if not 0 < job_id <= MAX_JOB_ID:
        # Never stored, and out of range for the database driver
        raise NotFoundError(job_id)
    job = get_job_by_id(db, job_id)
    if job is None:
        raise NotFoundError(job_id)
    return job
