"""Job record data model for generation jobs."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field
import uuid


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

# Forward-only status graph; terminal states have no outgoing edges.
ALLOWED_TRANSITIONS = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

# Fields fixed at creation time.
IMMUTABLE_FIELDS = frozenset({"id", "user_id", "type", "model_id", "prompt", "created_at"})


def utcnow() -> datetime:
    return datetime.utcnow()


class JobType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class Job(BaseModel):
    """Tracks the lifecycle of one requested generation."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    workspace_id: Optional[str] = None
    status: JobStatus = JobStatus.PROCESSING
    type: JobType
    model_id: str
    prompt: str = ""
    external_job_id: str = ""
    options: Dict[str, Any] = Field(default_factory=dict)
    result_url: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    # Optimistic concurrency token, bumped by the store on every write
    version: int = 0

    # Poller single-flight lease
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_api(self) -> Dict[str, Any]:
        """Serialize in the camelCase shape the web client reads."""
        return {
            "id": self.id,
            "userId": self.user_id,
            "workspaceId": self.workspace_id,
            "status": self.status.value,
            "type": self.type.value,
            "modelId": self.model_id,
            "prompt": self.prompt,
            "runpodJobId": self.external_job_id,
            "options": self.options,
            "resultUrl": self.result_url,
            "error": self.error,
            "createdAt": self.created_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }
