from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session
from database import get_db
from config import settings
import psutil
import os
from datetime import datetime

health_router = APIRouter()

@health_router.get("")
def health_check():
    """Basic health check"""
    return {"status": "ok"}

@health_router.get("/detailed")
def detailed_health_check(request: Request, db: Session = Depends(get_db)):
    """Detailed health check with dependencies"""
    health_status = {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "checks": {}
    }

    # Database check
    try:
        db.execute(text("SELECT 1"))
        health_status["checks"]["database"] = {"status": "healthy"}
    except Exception as e:
        health_status["checks"]["database"] = {
            "status": "unhealthy",
            "error": str(e)
        }
        health_status["status"] = "unhealthy"

    # Worker loop
    worker = getattr(request.app.state, "worker", None)
    if worker is not None and worker.is_running:
        health_status["checks"]["worker"] = {"status": "healthy"}
    else:
        health_status["checks"]["worker"] = {"status": "unhealthy", "error": "worker loop not running"}
        health_status["status"] = "unhealthy"

    # System resources
    try:
        cpu_percent = psutil.cpu_percent(interval=None)
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage('/')

        health_status["checks"]["system"] = {
            "status": "healthy",
            "cpu_percent": cpu_percent,
            "memory_percent": memory.percent,
            "disk_percent": disk.percent
        }

        if cpu_percent > 90 or memory.percent > 90 or disk.percent > 90:
            health_status["checks"]["system"]["status"] = "warning"

    except Exception as e:
        health_status["checks"]["system"] = {
            "status": "unhealthy",
            "error": str(e)
        }

    # Download staging directory must be writable
    try:
        download_dir = settings.download_dir
        os.makedirs(download_dir, exist_ok=True)

        test_file = os.path.join(download_dir, ".health_check")
        with open(test_file, "w") as f:
            f.write("health check")
        os.remove(test_file)

        health_status["checks"]["filesystem"] = {"status": "healthy"}

    except Exception as e:
        health_status["checks"]["filesystem"] = {
            "status": "unhealthy",
            "error": str(e)
        }
        health_status["status"] = "unhealthy"

    if health_status["status"] == "unhealthy":
        return JSONResponse(status_code=503, content=health_status)

    return health_status

@health_router.get("/ready")
def readiness_check(request: Request, db: Session = Depends(get_db)):
    """Readiness check: store reachable and worker loop running"""
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        return JSONResponse(status_code=503, content={"status": "not ready", "error": str(e)})

    worker = getattr(request.app.state, "worker", None)
    if worker is None or not worker.is_running:
        return JSONResponse(status_code=503, content={"status": "not ready", "error": "worker loop not running"})

    return {"status": "ready"}

@health_router.get("/live")
def liveness_check():
    """Liveness check"""
    return {"status": "alive"}
