from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

TaskStatus = Literal["pending", "processing", "completed", "failed", "cancelled"]
ClassificationMethod = Literal[
    "exact_match",
    "learned_pattern",
    "rule_match",
    "ai_classification",
    "no_libraries",
]
PatternType = Literal["genre", "keyword", "rating", "year_range", "clarification_pattern"]
BatchStatus = Literal[
    "pending",
    "validating",
    "validated",
    "validation_failed",
    "executing",
    "paused",
    "completed",
    "cancelled",
]
BatchItemStatus = Literal[
    "pending",
    "validated",
    "invalid",
    "executing",
    "completed",
    "failed",
    "skipped",
    "cancelled",
]


class Task(BaseModel):
    id: int
    task_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: TaskStatus
    priority: int = 0
    attempts: int = 0
    max_attempts: int = 5
    next_retry_at: str
    source: str | None = None
    created_at: str
    started_at: str | None = None
    completed_at: str | None = None
    error_message: str | None = None


class MediaMetadata(BaseModel):
    external_id: str
    media_type: str
    title: str | None = None
    original_title: str | None = None
    year: int | None = None
    overview: str | None = None
    genres: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)
    certification: str | None = None
    rating: float | None = None
    popularity: float | None = None
    original_language: str | None = None
    tvdb_id: int | None = None
    clarifications: Dict[str, str] = Field(default_factory=dict)
    error: str | None = None


class Library(BaseModel):
    id: int
    name: str
    media_type: str
    enabled: bool = True
    priority: int = 0
    description: str | None = None


class LibraryMapping(BaseModel):
    library_id: int
    arr_type: Literal["radarr", "sonarr"]
    base_url: str
    api_key: str = ""
    root_folder_path: str
    quality_profile_id: int
    monitored: bool = True
    search_on_add: bool = True


class ClassificationRecord(BaseModel):
    id: int
    external_id: str
    media_type: str
    title: str | None = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    library_id: int | None = None
    library_name: str | None = None
    confidence: int = 0
    method: ClassificationMethod
    reason: str | None = None
    status: str = "classified"
    created_at: str
    updated_at: str | None = None


class Correction(BaseModel):
    id: int
    classification_id: int
    original_library_id: int | None = None
    corrected_library_id: int
    corrected_by: str | None = None
    created_at: str


class LearnedPattern(BaseModel):
    id: int | None = None
    pattern_type: PatternType
    pattern_key: str
    pattern_value: str
    library_id: int
    confidence_score: float
    occurrence_count: int = 1
    last_seen: str | None = None


class Batch(BaseModel):
    id: int
    status: BatchStatus
    total_items: int = 0
    completed_items: int = 0
    failed_items: int = 0
    skipped_items: int = 0
    paused_at_item: int | None = None
    pause_on_error: bool = True
    created_by: str | None = None
    error_message: str | None = None
    created_at: str
    started_at: str | None = None
    completed_at: str | None = None


class BatchItem(BaseModel):
    id: int
    batch_id: int
    classification_id: int
    target_library_id: int
    status: BatchItemStatus
    validation_result: Optional[Dict[str, Any]] = None
    execution_result: Optional[Dict[str, Any]] = None
    error_message: str | None = None
    execution_order: int
    title: str | None = None
    media_type: str | None = None
    current_library_name: str | None = None
    target_library_name: str | None = None
