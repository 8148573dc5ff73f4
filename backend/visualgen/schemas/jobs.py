from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, model_validator

from visualgen.core.config import BATCH_WORKERS, MAX_BATCH_WORKERS
from visualgen.core.errors import InvalidTransitionError
from visualgen.schemas.visuals import ALL_VISUAL_TYPES, VisualType
from visualgen.utils.time import utc_now


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}

JOB_TRANSITIONS: Dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
    JobStatus.CANCELLED: set(),
}


class ItemStage(str, Enum):
    CONTENT_PENDING = "content_pending"
    CONTENT_DONE = "content_done"
    IMAGE_PENDING = "image_pending"
    IMAGE_DONE = "image_done"
    PERSIST_PENDING = "persist_pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


STAGE_ORDER = [
    ItemStage.CONTENT_PENDING,
    ItemStage.CONTENT_DONE,
    ItemStage.IMAGE_PENDING,
    ItemStage.IMAGE_DONE,
    ItemStage.PERSIST_PENDING,
    ItemStage.SUCCEEDED,
]
TERMINAL_STAGES = {ItemStage.SUCCEEDED, ItemStage.FAILED}

ItemKey = Tuple[str, VisualType]


class Artifact(BaseModel):
    image_url: str
    storage_key: str
    prompt: str
    caption_en: str
    caption_ko: str


class JobItem(BaseModel):
    word_id: str
    visual_type: VisualType
    stage: ItemStage = ItemStage.CONTENT_PENDING
    artifact: Optional[Artifact] = None
    error: Optional[str] = None
    fallback_used: bool = False
    retries: int = 0
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    @model_validator(mode="after")
    def _check_outcome(self) -> "JobItem":
        if (self.artifact is not None) != (self.stage == ItemStage.SUCCEEDED):
            raise ValueError("artifact must be set exactly when the item succeeded")
        if (self.error is not None) != (self.stage == ItemStage.FAILED):
            raise ValueError("error must be set exactly when the item failed")
        return self

    @property
    def key(self) -> ItemKey:
        return (self.word_id, self.visual_type)

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def advance(
        self,
        stage: ItemStage,
        artifact: Optional[Artifact] = None,
        error: Optional[str] = None,
        **fields: Any,
    ) -> "JobItem":
        """Return a copy moved forward to ``stage``.

        Stages only move forward one step at a time; ``failed`` is reachable
        from any non-terminal stage and ``succeeded`` only from
        ``persist_pending``. Terminal items never change.
        """
        if self.is_terminal:
            raise InvalidTransitionError(
                f"item {self.word_id}/{self.visual_type.value} is already {self.stage.value}"
            )
        if stage != ItemStage.FAILED:
            current = STAGE_ORDER.index(self.stage)
            if STAGE_ORDER.index(stage) != current + 1:
                raise InvalidTransitionError(
                    f"cannot move item from {self.stage.value} to {stage.value}"
                )
        data = self.model_dump()
        data.update(fields)
        data["stage"] = stage
        data["artifact"] = artifact
        data["error"] = error
        if stage in TERMINAL_STAGES:
            data["finished_at"] = utc_now()
        return JobItem.model_validate(data)


class BatchOptions(BaseModel):
    concurrency: int = Field(default=BATCH_WORKERS, ge=1, le=MAX_BATCH_WORKERS)
    skip_existing: bool = True
    scope: str = Field(default="default", min_length=1)


class Job(BaseModel):
    job_id: str
    status: JobStatus = JobStatus.PENDING
    items: List[JobItem] = Field(default_factory=list)
    options: BatchOptions = Field(default_factory=BatchOptions)
    stop_requested: bool = False
    error: Optional[str] = None
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def succeeded(self) -> int:
        return sum(1 for item in self.items if item.stage == ItemStage.SUCCEEDED)

    @property
    def failed(self) -> int:
        return sum(1 for item in self.items if item.stage == ItemStage.FAILED)

    @property
    def processed(self) -> int:
        return self.succeeded + self.failed

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, status: JobStatus) -> None:
        if status not in JOB_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"job {self.job_id} cannot move from {self.status.value} to {status.value}"
            )
        now = utc_now()
        self.status = status
        self.updated_at = now
        if status == JobStatus.PROCESSING:
            self.started_at = now
        if status in TERMINAL_STATUSES:
            self.completed_at = now

    def index_of(self, word_id: str, visual_type: VisualType) -> Optional[int]:
        for index, item in enumerate(self.items):
            if item.key == (word_id, visual_type):
                return index
        return None


class BatchCreate(BaseModel):
    word_ids: List[str] = Field(default_factory=list)
    visual_types: List[VisualType] = Field(
        default_factory=lambda: list(ALL_VISUAL_TYPES)
    )
    options: BatchOptions = Field(default_factory=BatchOptions)


class BatchAccepted(BaseModel):
    job_id: str
    status: JobStatus
    total_items: int
    estimated_seconds: int


class ItemRef(BaseModel):
    word_id: str
    visual_type: VisualType
    stage: ItemStage


class ItemResult(BaseModel):
    word_id: str
    visual_type: VisualType
    stage: ItemStage
    error: Optional[str] = None
    artifact: Optional[Artifact] = None
    fallback_used: bool = False
    retries: int = 0


class JobSnapshot(BaseModel):
    job_id: str
    status: JobStatus
    total: int
    processed: int
    succeeded: int
    failed: int
    currently_processing: List[ItemRef] = Field(default_factory=list)
    per_item_results: List[ItemResult] = Field(default_factory=list)
    stop_requested: bool = False
    error: Optional[str] = None
    created_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


class JobSummary(BaseModel):
    job_id: str
    status: JobStatus
    scope: str
    total: int
    processed: int
    succeeded: int
    failed: int
    created_at: str
    completed_at: Optional[str] = None
    duration_seconds: Optional[int] = None


class StopResponse(BaseModel):
    job_id: str
    status: JobStatus
    stop_requested: bool


class JobEvent(BaseModel):
    created_at: str
    level: str
    message: str
    meta: Optional[Dict[str, Any]] = None
