from __future__ import annotations

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from panelreview.models.review import ImageReview
from panelreview.models.storyboard import GeneratedImage, Panel


class ReviewHistoryStore:
    """审核历史（只追加）。

    「最新一次审核」始终通过查询得到，不单独维护指针。
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(self, review: ImageReview) -> ImageReview:
        self.session.add(review)
        await self.session.flush()
        return review

    async def count_for_image(self, image_id: int) -> int:
        res = await self.session.execute(
            select(func.count()).select_from(ImageReview).where(ImageReview.generated_image_id == image_id)
        )
        return int(res.scalar_one())

    async def get_image_history(self, image_id: int) -> list[ImageReview]:
        res = await self.session.execute(
            select(ImageReview)
            .where(ImageReview.generated_image_id == image_id)
            .order_by(ImageReview.iteration.desc())
        )
        return list(res.scalars().all())

    async def get_panel_history(self, panel_id: int) -> list[ImageReview]:
        res = await self.session.execute(
            select(ImageReview)
            .where(ImageReview.panel_id == panel_id)
            .order_by(ImageReview.created_at.desc(), ImageReview.id.desc())
        )
        return list(res.scalars().all())

    async def get_latest_review(self, image_id: int) -> ImageReview | None:
        res = await self.session.execute(
            select(ImageReview)
            .where(ImageReview.generated_image_id == image_id)
            .order_by(ImageReview.iteration.desc())
            .limit(1)
        )
        return res.scalars().first()

    async def latest_ai_review(self, image_id: int) -> ImageReview | None:
        res = await self.session.execute(
            select(ImageReview)
            .where(ImageReview.generated_image_id == image_id)
            .where(ImageReview.reviewed_by == "ai")
            .order_by(ImageReview.iteration.desc())
            .limit(1)
        )
        return res.scalars().first()

    async def human_review_queue(
        self, limit: int = 50, offset: int = 0
    ) -> list[tuple[ImageReview, GeneratedImage, Panel]]:
        """最新一次审核状态为 human_review 的图片，按审核时间倒序"""
        latest = (
            select(
                ImageReview.generated_image_id.label("image_id"),
                func.max(ImageReview.iteration).label("max_iteration"),
            )
            .group_by(ImageReview.generated_image_id)
            .subquery()
        )
        res = await self.session.execute(
            select(ImageReview, GeneratedImage, Panel)
            .join(
                latest,
                and_(
                    ImageReview.generated_image_id == latest.c.image_id,
                    ImageReview.iteration == latest.c.max_iteration,
                ),
            )
            .join(GeneratedImage, GeneratedImage.id == ImageReview.generated_image_id)
            .join(Panel, Panel.id == GeneratedImage.panel_id)
            .where(ImageReview.status == "human_review")
            .order_by(ImageReview.created_at.desc(), ImageReview.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return [(row[0], row[1], row[2]) for row in res.all()]
