from datetime import datetime, UTC
from typing import Optional, List

from sqlalchemy import JSON, Column
from sqlmodel import Field, Relationship, SQLModel


def utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class Storyboard(SQLModel, table=True):
    """分镜板"""

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    panels: List["Panel"] = Relationship(
        back_populates="storyboard",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )


class Panel(SQLModel, table=True):
    """分镜格"""

    id: Optional[int] = Field(default=None, primary_key=True)
    storyboard_id: int = Field(foreign_key="storyboard.id", index=True)
    position: int = Field(index=True)
    description: Optional[str] = None
    mood: Optional[str] = None
    camera_angle: Optional[str] = None
    narrative_context: Optional[str] = None
    character_names: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    storyboard: Optional[Storyboard] = Relationship(back_populates="panels")
    images: List["GeneratedImage"] = Relationship(
        back_populates="panel",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )


class GeneratedImage(SQLModel, table=True):
    """生成图片（由外部生成流程写入，审核只回写 review_status）"""

    id: Optional[int] = Field(default=None, primary_key=True)
    panel_id: int = Field(foreign_key="panel.id", index=True)
    local_path: str
    prompt: str
    seed: Optional[int] = None
    thumbnail_path: Optional[str] = None
    is_selected: bool = Field(default=False, index=True)
    review_status: str = Field(default="pending", index=True)  # pending|approved|needs_work|rejected|human_review
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    panel: Optional[Panel] = Relationship(back_populates="images")
