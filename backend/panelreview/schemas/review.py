from __future__ import annotations

from datetime import datetime
from typing import Literal, get_args

from pydantic import BaseModel, ConfigDict, Field

ReviewMode = Literal["auto", "hitl"]
ReviewStatus = Literal["pending", "approved", "needs_work", "rejected", "human_review"]
ReviewAction = Literal["approve", "regenerate", "inpaint", "adjust_prompt", "human_review"]
ReviewSource = Literal["ai", "human", "escalation"]
IssueType = Literal["missing_element", "wrong_composition", "wrong_character", "wrong_action", "quality", "other"]
IssueSeverity = Literal["critical", "major", "minor"]

ISSUE_TYPES: tuple[str, ...] = get_args(IssueType)
ISSUE_SEVERITIES: tuple[str, ...] = get_args(IssueSeverity)
DECISION_ACTIONS: tuple[str, ...] = ("approve", "reject", "regenerate")

MAX_PROMPT_LENGTH = 20000
MAX_FEEDBACK_LENGTH = 10000
MAX_HINTS_LENGTH = 5000


class ReviewConfig(BaseModel):
    """审核策略（运行期可修改）"""

    mode: ReviewMode = "auto"
    max_iterations: int = Field(default=3, ge=1)
    min_acceptance_score: float = Field(default=0.7, ge=0.0, le=1.0)
    auto_approve_above: float = Field(default=0.9, ge=0.0, le=1.0)
    pause_for_human_below: float = Field(default=0.5, ge=0.0, le=1.0)


class ReviewConfigUpdate(BaseModel):
    """部分更新；未提供的字段保持不变（范围校验在合并后统一进行）"""

    mode: str | None = None
    max_iterations: int | None = None
    min_acceptance_score: float | None = None
    auto_approve_above: float | None = None
    pause_for_human_below: float | None = None


class ReviewIssue(BaseModel):
    type: IssueType = "other"
    severity: IssueSeverity = "major"
    description: str = ""
    suggested_fix: str | None = None


class ImageAnalysis(BaseModel):
    adherence_score: float = Field(ge=0.0, le=1.0)
    found_elements: list[str] = Field(default_factory=list)
    missing_elements: list[str] = Field(default_factory=list)
    issues: list[ReviewIssue] = Field(default_factory=list)
    quality_notes: str | None = None
    raw_response: str | None = None


class PanelContext(BaseModel):
    description: str | None = None
    character_names: list[str] | None = None
    mood: str | None = None
    camera_angle: str | None = None
    narrative_context: str | None = None


class ReviewResult(BaseModel):
    review_id: int
    image_id: int
    panel_id: int
    score: float
    status: ReviewStatus
    issues: list[ReviewIssue]
    recommendation: ReviewAction
    iteration: int
    reviewed_by: ReviewSource = "ai"
    human_feedback: str | None = None


class ImageReviewRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    generated_image_id: int
    panel_id: int
    score: float
    status: str
    issues: list[ReviewIssue]
    recommendation: str
    iteration: int
    previous_review_id: int | None
    reviewed_by: str
    human_feedback: str | None
    regeneration_hints: str | None
    created_at: datetime


class ReviewHistoryRead(BaseModel):
    id: int
    reviews: list[ImageReviewRead]
    count: int


class ReviewImageRequest(BaseModel):
    prompt: str | None = Field(default=None, max_length=MAX_PROMPT_LENGTH)
    context: PanelContext | None = None


class HumanDecision(BaseModel):
    # action 在服务层校验，以便返回专用的 INVALID_DECISION 错误
    action: str
    feedback: str | None = Field(default=None, max_length=MAX_FEEDBACK_LENGTH)
    regeneration_hints: str | None = Field(default=None, max_length=MAX_HINTS_LENGTH)


class ReviewQueueItem(BaseModel):
    review_id: int
    image_id: int
    panel_id: int
    storyboard_id: int | None
    image_path: str
    thumbnail_path: str | None
    prompt: str
    ai_score: float
    ai_issues: list[ReviewIssue]
    ai_recommendation: str
    iteration: int
    created_at: datetime


class BatchReviewOptions(BaseModel):
    only_pending: bool = False
    limit: int | None = Field(default=None, ge=1)
    concurrency: int | None = Field(default=None, ge=1, le=10)


class BatchReviewError(BaseModel):
    panel_id: int
    error: str
    code: str | None = None


class BatchReviewResult(BaseModel):
    storyboard_id: int
    total: int = 0
    approved: int = 0
    needs_work: int = 0
    rejected: int = 0
    pending_human: int = 0
    results: dict[int, ReviewResult] = Field(default_factory=dict)
    errors: list[BatchReviewError] = Field(default_factory=list)


class AutoReviewResult(BaseModel):
    panel_id: int
    final_image_id: int | None
    iterations: list[ReviewResult]
    total_iterations: int
    accepted: bool
    reason: str

