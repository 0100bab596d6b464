from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

class JobState(str, Enum):
    WAITING = "Waiting"
    RUNNING = "Running"
    EXECUTED = "Executed"

# Allowed forward transitions; Executed is terminal
TRANSITIONS = {
    JobState.WAITING: JobState.RUNNING,
    JobState.RUNNING: JobState.EXECUTED,
}

@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    diagnostics: Optional[str] = None

    @classmethod
    def ok(cls) -> "ExecutionResult":
        return cls(success=True)

    @classmethod
    def failed(cls, diagnostics: str) -> "ExecutionResult":
        return cls(success=False, diagnostics=diagnostics)

# Request/Response models
class RunPdfRequest(BaseModel):
    url: Optional[str] = None

    model_config = ConfigDict(
        json_schema_extra={"example": {"url": "https://example.com"}}
    )

class JobOut(BaseModel):
    id: int
    url: str
    state: JobState
    requested_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    success: bool = False
    error: Optional[str] = None

    model_config = ConfigDict(
        from_attributes=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")

class EnqueueResponse(BaseModel):
    success: bool = True
    job_id: int
    message: str
    url: str

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

class QueueResponse(BaseModel):
    success: bool = True
    jobs: List[JobOut]

class JobResponse(BaseModel):
    success: bool = True
    job: JobOut
