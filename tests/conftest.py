import asyncio
import os
import tempfile

# Point the application at scratch locations before anything imports config
_tmp_dir = tempfile.mkdtemp(prefix="page-queue-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_tmp_dir, 'jobs.db')}"
os.environ["DOWNLOAD_DIR"] = os.path.join(_tmp_dir, "downloads")
os.environ["LOG_FILE"] = os.path.join(_tmp_dir, "app.log")
os.environ["WORKER_LOG_FILE"] = os.path.join(_tmp_dir, "worker_profile.log")
os.environ["POLL_INTERVAL"] = "0.05"

import pytest

from database import Base, SessionLocal, engine
from models import ExecutionResult


class FakeExecutor:
    """Stands in for the browser; records the URLs it was asked to run"""

    def __init__(self, result=None, delay=0.0, error=None):
        self.result = result or ExecutionResult.ok()
        self.delay = delay
        self.error = error
        self.calls = []

    async def execute(self, url):
        self.calls.append(url)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


class GatedExecutor:
    """Blocks each execution until release() is called"""

    def __init__(self):
        self.calls = []
        self.started = None
        self.gate = None

    async def execute(self, url):
        if self.gate is None:
            self.gate = asyncio.Event()
            self.started = asyncio.Event()
        self.calls.append(url)
        self.started.set()
        await self.gate.wait()
        return ExecutionResult.ok()

    def release(self):
        self.gate.set()


@pytest.fixture
def clean_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(clean_db):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
