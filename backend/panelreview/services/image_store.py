from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from panelreview.models.storyboard import GeneratedImage, Panel
from panelreview.utils import utcnow


class ImageStore:
    """生成图片 / 分镜格的读取，以及 review_status 回写。

    写操作只 flush，由调用方在同一事务中统一提交。
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_image(self, image_id: int) -> GeneratedImage | None:
        return await self.session.get(GeneratedImage, image_id)

    async def get_panel(self, panel_id: int) -> Panel | None:
        return await self.session.get(Panel, panel_id)

    async def list_panel_images(self, panel_id: int) -> list[GeneratedImage]:
        """按创建时间倒序"""
        res = await self.session.execute(
            select(GeneratedImage)
            .where(GeneratedImage.panel_id == panel_id)
            .order_by(GeneratedImage.created_at.desc(), GeneratedImage.id.desc())
        )
        return list(res.scalars().all())

    async def representative_image(self, panel_id: int) -> GeneratedImage | None:
        """已选中的图片优先，否则取最新生成的一张"""
        images = await self.list_panel_images(panel_id)
        if not images:
            return None
        return next((img for img in images if img.is_selected), images[0])

    async def list_storyboard_panels(self, storyboard_id: int) -> list[Panel]:
        res = await self.session.execute(
            select(Panel)
            .where(Panel.storyboard_id == storyboard_id)
            .order_by(Panel.position.asc(), Panel.id.asc())
        )
        return list(res.scalars().all())

    async def set_review_status(self, image: GeneratedImage, status: str) -> None:
        image.review_status = status
        image.updated_at = utcnow()
        self.session.add(image)
        await self.session.flush()

    async def select_image(self, image_id: int) -> GeneratedImage | None:
        """将图片标记为所在分镜格的选中图，同一分镜格的其他图片取消选中"""
        image = await self.get_image(image_id)
        if image is None:
            return None
        for other in await self.list_panel_images(image.panel_id):
            other.is_selected = other.id == image.id
            self.session.add(other)
        await self.session.flush()
        return image

    async def approved_panel_ids(self, storyboard_id: int) -> set[int]:
        """分镜板中已有通过审核图片的分镜格"""
        res = await self.session.execute(
            select(GeneratedImage.panel_id)
            .join(Panel, Panel.id == GeneratedImage.panel_id)
            .where(Panel.storyboard_id == storyboard_id)
            .where(GeneratedImage.review_status == "approved")
        )
        return set(res.scalars().all())
