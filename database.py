from sqlalchemy import create_engine, inspect, text, Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from datetime import datetime
from typing import Generator, List, Optional
from config import settings
from exceptions import InvalidTransitionError, StoreError
from models import JobState, TRANSITIONS
import logging

logger = logging.getLogger(__name__)

def build_engine(database_url: str):
    """Create an engine; SQLite connections are shared across threads"""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(
        database_url,
        connect_args=connect_args,
        pool_pre_ping=True,
        pool_recycle=3600,
        echo=False
    )

engine = build_engine(settings.database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

class Job(Base):
    __tablename__ = 'jobs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    url = Column(Text, nullable=False)
    state = Column(String(16), default=JobState.WAITING.value, nullable=False, index=True)
    requested_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    success = Column(Boolean, nullable=True, default=False)
    error = Column(Text, nullable=True)

# Columns added after the first release; older tables get them on startup
DIAGNOSTIC_COLUMNS = {
    "error": "TEXT",
    "success": "BOOLEAN DEFAULT FALSE",
}

def get_db() -> Generator[Session, None, None]:
    """Database session dependency"""
    db = SessionLocal()
    try:
        yield db
    except SQLAlchemyError as e:
        logger.error(f"Database error: {e}")
        db.rollback()
        raise
    finally:
        db.close()

def create_tables(bind=None):
    """Create all tables and provision the diagnostic columns.

    Raises StoreError when either step fails; callers at startup let it
    propagate so the process does not run without the columns.
    """
    bind = bind or engine
    try:
        Base.metadata.create_all(bind=bind)
        logger.info("Database tables created successfully")
    except SQLAlchemyError as e:
        logger.error(f"Error creating tables: {e}")
        raise StoreError(f"Could not create tables: {e}") from e
    ensure_diagnostic_columns(bind)

def ensure_diagnostic_columns(bind=None):
    """Add the error/success columns to a jobs table created without them"""
    bind = bind or engine
    try:
        existing = {col["name"] for col in inspect(bind).get_columns(Job.__tablename__)}
        missing = [name for name in DIAGNOSTIC_COLUMNS if name not in existing]
        if not missing:
            return
        with bind.begin() as conn:
            for name in missing:
                conn.execute(text(
                    f"ALTER TABLE {Job.__tablename__} ADD COLUMN {name} {DIAGNOSTIC_COLUMNS[name]}"
                ))
                logger.info(f"Added missing column jobs.{name}")
    except SQLAlchemyError as e:
        logger.critical(f"Could not provision diagnostic columns: {e}")
        raise StoreError(f"Could not provision diagnostic columns: {e}") from e

def insert_job(db: Session, url: str, requested_at: Optional[datetime] = None) -> int:
    """Append a Waiting job and return its id"""
    job = Job(
        url=url,
        state=JobState.WAITING.value,
        requested_at=requested_at or datetime.utcnow(),
        success=False,
    )
    try:
        db.add(job)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error inserting job for {url}: {e}")
        raise StoreError(f"Could not insert job: {e}") from e
    logger.info(f"Job {job.id} queued for URL: {url}")
    return job.id

def claim_next_waiting(db: Session) -> Optional[Job]:
    """Oldest Waiting job, or None.

    The row is locked (where the backend supports it) until the caller
    commits the Running transition in the same session.
    """
    try:
        return (
            db.query(Job)
            .filter(Job.state == JobState.WAITING.value)
            .order_by(Job.id.asc())
            .with_for_update(skip_locked=True)
            .first()
        )
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreError(f"Could not query waiting jobs: {e}") from e

def update_job_state(db: Session, job_id: int, state: JobState, **fields) -> Job:
    """Move a job one step forward and stamp the given fields atomically"""
    for key in fields:
        if not hasattr(Job, key) or key in ("id", "url", "state", "requested_at"):
            raise ValueError(f"Field {key} cannot be updated")

    try:
        job = db.query(Job).filter(Job.id == job_id).first()
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreError(f"Could not load job {job_id}: {e}") from e
    if job is None:
        db.rollback()
        raise StoreError(f"Job {job_id} not found for state update")

    current = JobState(job.state)
    if TRANSITIONS.get(current) != state:
        db.rollback()
        raise InvalidTransitionError(job_id, current.value, state.value)

    job.state = state.value
    for key, value in fields.items():
        setattr(job, key, value)

    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error updating job {job_id}: {e}")
        raise StoreError(f"Could not update job {job_id}: {e}") from e
    logger.info(f"Job {job_id} state updated to {state.value}")
    return job

def mark_running(db: Session, job_id: int, started_at: Optional[datetime] = None) -> Job:
    return update_job_state(db, job_id, JobState.RUNNING,
                            started_at=started_at or datetime.utcnow())

def mark_executed(db: Session, job_id: int, success: bool, error: Optional[str] = None,
                  finished_at: Optional[datetime] = None) -> Job:
    return update_job_state(
        db,
        job_id,
        JobState.EXECUTED,
        finished_at=finished_at or datetime.utcnow(),
        success=success,
        error=None if success else error,
    )

def fail_interrupted_jobs(db: Session, reason: str) -> List[int]:
    """Finish jobs a previous process left Running"""
    try:
        stale = (
            db.query(Job)
            .filter(Job.state == JobState.RUNNING.value)
            .order_by(Job.id.asc())
            .all()
        )
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreError(f"Could not query running jobs: {e}") from e

    recovered = []
    for job in stale:
        mark_executed(db, job.id, success=False, error=reason)
        logger.warning(f"Job {job.id} was interrupted and marked as failed")
        recovered.append(job.id)
    return recovered

def get_all_jobs(db: Session, state: Optional[JobState] = None) -> List[Job]:
    """All jobs, newest first"""
    try:
        query = db.query(Job)
        if state is not None:
            query = query.filter(Job.state == state.value)
        return query.order_by(Job.id.desc()).all()
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreError(f"Could not list jobs: {e}") from e

def get_job_by_id(db: Session, job_id: int) -> Optional[Job]:
    """Get job by ID"""
    try:
        return db.query(Job).filter(Job.id == job_id).first()
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreError(f"Could not load job {job_id}: {e}") from e

def count_jobs(db: Session) -> int:
    try:
        return db.query(Job).count()
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreError(f"Could not count jobs: {e}") from e
