from datetime import datetime, UTC
from typing import Any, Optional

from sqlalchemy import JSON, Column, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class ImageReview(SQLModel, table=True):
    """图片审核记录（只追加，不修改）"""

    __table_args__ = (UniqueConstraint("generated_image_id", "iteration", name="uq_imagereview_image_iteration"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    generated_image_id: int = Field(foreign_key="generatedimage.id", index=True)
    panel_id: int = Field(foreign_key="panel.id", index=True)

    score: float = Field(ge=0.0, le=1.0)
    status: str = Field(index=True)  # approved|needs_work|rejected|human_review
    issues: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    recommendation: str  # approve|regenerate|inpaint|adjust_prompt|human_review

    # 同一张图片从 1 开始连续递增
    iteration: int = Field(default=1, index=True)
    previous_review_id: Optional[int] = Field(default=None, foreign_key="imagereview.id")

    reviewed_by: str = Field(default="ai")  # ai|human|escalation
    human_feedback: Optional[str] = Field(default=None, sa_column=Column(Text))
    regeneration_hints: Optional[str] = Field(default=None, sa_column=Column(Text))

    created_at: datetime = Field(default_factory=utcnow, index=True)
