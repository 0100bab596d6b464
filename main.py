from fastapi import FastAPI, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session
from typing import Optional
import uuid
import logging
from contextlib import asynccontextmanager
from loguru import logger as profile_logger

# Local imports
from config import settings
from database import get_db, create_tables, SessionLocal
from exceptions import NotFoundError, StoreError, ValidationError
from models import EnqueueResponse, JobOut, JobResponse, JobState, QueueResponse, RunPdfRequest
from health import health_router
from monitoring import setup_monitoring
from utils.browser import PageExecutor
from worker import SequentialWorker
import queue_api

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(settings.log_file),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    # Startup; a store failure here aborts the process
    try:
        create_tables()
    except StoreError as e:
        logger.critical(f"Startup error: {e}")
        raise

    sink_id = profile_logger.add(
        settings.worker_log_file, rotation="1 week", retention="4 weeks", level="INFO"
    )

    executor = getattr(app.state, "executor", None) or PageExecutor()
    worker = SequentialWorker(executor, SessionLocal, poll_interval=settings.poll_interval)
    app.state.worker = worker
    worker.recover_interrupted()
    worker.start()
    logger.info("Application started successfully")

    yield

    # Shutdown
    await worker.stop()
    profile_logger.remove(sink_id)
    logger.info("Application shutting down")

app = FastAPI(
    title="Page Execution Queue",
    description="Queue URLs and execute them one at a time in a headless browser",
    version=API_VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

setup_monitoring(app)

app.include_router(health_router, prefix="/health", tags=["health"])

def get_worker(request: Request) -> Optional[SequentialWorker]:
    return getattr(request.app.state, "worker", None)

def failure(status_code: int, error: str, details: Optional[str] = None) -> JSONResponse:
    content = {"success": False, "error": error}
    if details is not None:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)

@app.exception_handler(ValidationError)
async def validation_exception_handler(request: Request, exc: ValidationError):
    return failure(400, str(exc))

@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.info(f"Rejected request body on {request.url.path}: {exc.errors()}")
    return failure(400, "Invalid request body")

@app.exception_handler(NotFoundError)
async def not_found_exception_handler(request: Request, exc: NotFoundError):
    return failure(404, "Job not found")

@app.exception_handler(StoreError)
async def store_exception_handler(request: Request, exc: StoreError):
    logger.error(f"Store error on {request.url}: {exc}")
    return failure(500, "Job store unavailable", str(exc))

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    error_id = str(uuid.uuid4())
    logger.error(f"Global exception on {request.url} ({error_id}): {exc}", exc_info=True)
    return failure(500, "Internal server error", error_id)

@app.get("/")
def api_info():
    """API information"""
    return {
        "name": "Page Execution Queue",
        "version": API_VERSION,
        "endpoints": {
            "POST /runPdf": 'Queue a URL for execution. Body: { "url": "http://example.com" }',
            "GET /queue": "List all jobs, newest first. Optional ?state=Waiting|Running|Executed",
            "GET /job/{id}": "Get a single job",
            "GET /health": "Health check endpoint",
        }
    }

@app.post("/runPdf", status_code=202, response_model=EnqueueResponse)
async def run_pdf(
    payload: Optional[RunPdfRequest] = None,
    db: Session = Depends(get_db),
    worker: Optional[SequentialWorker] = Depends(get_worker),
):
    """Queue a URL for headless execution"""
    url = payload.url if payload is not None else None
    job_id = queue_api.enqueue(db, url, worker=worker)
    return EnqueueResponse(
        job_id=job_id,
        message="URL queued for execution",
        url=url,
    )

@app.get("/queue", response_model=QueueResponse)
def list_queue(state: Optional[str] = None, db: Session = Depends(get_db)):
    """List jobs, newest first"""
    state_filter = None
    if state is not None:
        try:
            state_filter = JobState(state)
        except ValueError:
            raise ValidationError(f"Unknown state: {state}")

    jobs = queue_api.list_all(db, state=state_filter)
    return QueueResponse(jobs=[JobOut.model_validate(job) for job in jobs])

@app.get("/job/{job_id}", response_model=JobResponse)
def get_job(job_id: str, db: Session = Depends(get_db)):
    """Get a single job"""
    job = queue_api.get_by_id(db, queue_api.parse_job_id(job_id))
    return JobResponse(job=JobOut.model_validate(job))

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
