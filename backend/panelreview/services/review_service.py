"""图片审核编排：单图 / 分镜格 / 分镜板批量审核，以及人工审核（HITL）入口。

数据流：
    ReviewService → AnalysisGateway → 视觉提供商
                  → review_engine（分析结果 + 配置快照 + 历史次数）
                  → ReviewHistoryStore（追加）→ ImageStore（回写 review_status）

每个操作使用独立的数据库会话，因此不同图片的审核可以并发执行；
同一图片的「统计次数 → 追加记录」在 ImageLockRegistry 的锁内完成。
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from panelreview.exceptions import (
    AppException,
    InvalidDecisionError,
    InvalidInputError,
    NoImagesError,
    NoPriorReviewError,
    NotFoundError,
)
from panelreview.models.review import ImageReview
from panelreview.models.storyboard import GeneratedImage, Panel
from panelreview.schemas.review import (
    DECISION_ACTIONS,
    AutoReviewResult,
    BatchReviewError,
    BatchReviewOptions,
    BatchReviewResult,
    HumanDecision,
    ImageReviewRead,
    PanelContext,
    ReviewAction,
    ReviewIssue,
    ReviewQueueItem,
    ReviewResult,
    ReviewStatus,
)
from panelreview.services import review_engine
from panelreview.services.analysis import AnalysisGateway
from panelreview.services.image_store import ImageStore
from panelreview.services.locks import ImageLockRegistry
from panelreview.services.review_config import ReviewConfigStore
from panelreview.services.review_history import ReviewHistoryStore

logger = logging.getLogger(__name__)

# 人工决定 → (状态, 建议动作)
_DECISION_OUTCOMES: dict[str, tuple[ReviewStatus, ReviewAction]] = {
    "approve": ("approved", "approve"),
    "reject": ("rejected", "human_review"),
    "regenerate": ("needs_work", "regenerate"),
}

_BATCH_COUNTERS = {
    "approved": "approved",
    "needs_work": "needs_work",
    "rejected": "rejected",
    "human_review": "pending_human",
}


class PanelRegenerator(Protocol):
    """由宿主应用提供的重绘能力：返回新生成图片的 ID"""

    async def regenerate(self, panel_id: int, image_id: int, hints: list[str]) -> int: ...


def _to_result(review: ImageReview) -> ReviewResult:
    return ReviewResult(
        review_id=review.id,
        image_id=review.generated_image_id,
        panel_id=review.panel_id,
        score=review.score,
        status=review.status,
        issues=[ReviewIssue.model_validate(issue) for issue in review.issues or []],
        recommendation=review.recommendation,
        iteration=review.iteration,
        reviewed_by=review.reviewed_by,
        human_feedback=review.human_feedback,
    )


def _panel_context(panel: Panel | None) -> PanelContext | None:
    if panel is None:
        return None
    return PanelContext(
        description=panel.description,
        character_names=list(panel.character_names or []) or None,
        mood=panel.mood,
        camera_angle=panel.camera_angle,
        narrative_context=panel.narrative_context,
    )


class ReviewService:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        gateway: AnalysisGateway,
        config: ReviewConfigStore | None = None,
        *,
        locks: ImageLockRegistry | None = None,
        batch_concurrency: int = 3,
    ):
        self._session_maker = session_maker
        self.gateway = gateway
        self.config = config or ReviewConfigStore()
        self.locks = locks or ImageLockRegistry()
        self.batch_concurrency = max(1, batch_concurrency)

    # ------------------------------------------------------------------
    # 审核入口
    # ------------------------------------------------------------------

    async def review_image(
        self,
        image_id: int,
        prompt_override: str | None = None,
        context: PanelContext | None = None,
    ) -> ReviewResult:
        """审核单张图片。

        分析失败（AnalysisFailedError）原样抛出，不会写入任何记录。
        """
        config = self.config.get()

        async with self._session_maker() as session:
            images = ImageStore(session)
            image = await images.get_image(image_id)
            if image is None:
                raise NotFoundError("Image", image_id)
            prompt = prompt_override or image.prompt
            if context is None:
                context = _panel_context(await images.get_panel(image.panel_id))
            image_path = image.local_path

        # 网络调用期间不持有会话和锁
        analysis = await self.gateway.analyze(image_path, prompt, context, image_id=image_id)

        def build(latest: ImageReview | None, iteration: int) -> dict[str, Any]:
            status, recommendation = review_engine.evaluate(
                analysis.adherence_score, analysis.issues, iteration, config
            )
            return {
                "score": analysis.adherence_score,
                "status": status,
                "issues": [issue.model_dump() for issue in analysis.issues],
                "recommendation": recommendation,
                "reviewed_by": "ai",
            }

        review = await self._append_review(image_id, build)
        logger.info(
            "Reviewed image %s (panel %s): iteration=%d score=%.2f status=%s recommendation=%s",
            review.generated_image_id,
            review.panel_id,
            review.iteration,
            review.score,
            review.status,
            review.recommendation,
        )
        return _to_result(review)

    async def review_panel(self, panel_id: int) -> ReviewResult:
        """审核分镜格的代表图（选中图优先，否则最新一张）"""
        image = await self._representative_image(panel_id)
        return await self.review_image(image.id)

    async def review_storyboard(
        self,
        storyboard_id: int,
        options: BatchReviewOptions | None = None,
    ) -> BatchReviewResult:
        """批量审核分镜板下所有分镜格。

        单个分镜格失败只记录在 errors 中，不会中断整批。
        分镜板不存在或为空时返回空结果。
        """
        options = options or BatchReviewOptions()

        async with self._session_maker() as session:
            images = ImageStore(session)
            panel_ids = [p.id for p in await images.list_storyboard_panels(storyboard_id)]
            if options.only_pending and panel_ids:
                approved = await images.approved_panel_ids(storyboard_id)
                panel_ids = [pid for pid in panel_ids if pid not in approved]

        if options.limit is not None:
            panel_ids = panel_ids[: options.limit]

        semaphore = asyncio.Semaphore(options.concurrency or self.batch_concurrency)

        async def process(panel_id: int) -> tuple[int, ReviewResult | None, BatchReviewError | None]:
            async with semaphore:
                try:
                    return panel_id, await self.review_panel(panel_id), None
                except AppException as exc:
                    logger.warning("Batch review: panel %s failed: %s", panel_id, exc.message)
                    return panel_id, None, BatchReviewError(panel_id=panel_id, error=exc.message, code=exc.code)
                except Exception as exc:
                    logger.exception("Batch review: unexpected error on panel %s", panel_id)
                    return panel_id, None, BatchReviewError(panel_id=panel_id, error=str(exc) or type(exc).__name__)

        outcomes = await asyncio.gather(*(process(pid) for pid in panel_ids))

        result = BatchReviewResult(storyboard_id=storyboard_id, total=len(panel_ids))
        for panel_id, review, error in outcomes:
            if error is not None:
                result.errors.append(error)
                continue
            result.results[panel_id] = review
            counter = _BATCH_COUNTERS.get(review.status)
            if counter:
                setattr(result, counter, getattr(result, counter) + 1)

        logger.info(
            "Storyboard %s reviewed: total=%d approved=%d needs_work=%d rejected=%d pending_human=%d errors=%d",
            storyboard_id,
            result.total,
            result.approved,
            result.needs_work,
            result.rejected,
            result.pending_human,
            len(result.errors),
        )
        return result

    async def review_until_accepted(self, panel_id: int, regenerator: PanelRegenerator) -> AutoReviewResult:
        """审核 → 重绘循环，直到通过、转人工、被拒绝或达到迭代上限"""
        config = self.config.get()
        iterations: list[ReviewResult] = []
        final_image_id: int | None = None
        accepted = False
        reason = ""

        for attempt in range(1, config.max_iterations + 1):
            image = await self._representative_image(panel_id)
            final_image_id = image.id

            review = await self.review_image(image.id)
            iterations.append(review)

            if review.status == "approved":
                accepted = True
                reason = f"Image accepted with score {review.score:.2f}"
                break
            if review.status == "human_review":
                reason = f"Submitted for human review (score: {review.score:.2f})"
                break
            if review.status == "rejected":
                reason = "Image rejected: " + "; ".join(i.description for i in review.issues if i.description)
                break
            if attempt >= config.max_iterations:
                reason = f"Max iterations ({config.max_iterations}) reached without acceptance"
                break

            hints = review_engine.build_regeneration_hints(review.issues)
            try:
                new_image_id = await regenerator.regenerate(panel_id, image.id, hints)
            except Exception as exc:
                logger.warning("Regeneration failed for panel %s: %s", panel_id, exc, exc_info=True)
                reason = f"Regeneration failed: {exc}"
                break

            async with self._session_maker() as session:
                selected = await ImageStore(session).select_image(new_image_id)
                if selected is None or selected.panel_id != panel_id:
                    reason = f"Regeneration returned unknown image: {new_image_id}"
                    break
                await session.commit()
            logger.info("Panel %s regenerated: image %s -> %s", panel_id, image.id, new_image_id)

        return AutoReviewResult(
            panel_id=panel_id,
            final_image_id=final_image_id,
            iterations=iterations,
            total_iterations=len(iterations),
            accepted=accepted,
            reason=reason,
        )

    # ------------------------------------------------------------------
    # 人工审核（HITL）
    # ------------------------------------------------------------------

    async def record_human_decision(self, image_id: int, decision: HumanDecision) -> ReviewResult:
        """记录人工决定，覆盖图片状态，保留最近一次 AI 分数"""
        if decision.action not in DECISION_ACTIONS:
            raise InvalidDecisionError(decision.action)
        status, recommendation = _DECISION_OUTCOMES[decision.action]

        async def load_ai_review(history: ReviewHistoryStore) -> ImageReview:
            ai_review = await history.latest_ai_review(image_id)
            if ai_review is None:
                raise NoPriorReviewError(image_id)
            return ai_review

        def build(latest: ImageReview | None, iteration: int, ai_review: ImageReview) -> dict[str, Any]:
            return {
                "score": ai_review.score,
                "status": status,
                "issues": list(ai_review.issues or []),
                "recommendation": recommendation,
                "reviewed_by": "human",
                "human_feedback": decision.feedback,
                "regeneration_hints": decision.regeneration_hints,
            }

        review = await self._append_review(image_id, build, prerequisite=load_ai_review)
        logger.info("Human decision on image %s: %s -> %s", image_id, decision.action, status)
        return _to_result(review)

    async def submit_for_human_review(self, image_id: int, result: ReviewResult) -> ReviewResult:
        """显式转人工（不受 mode 限制），追加一条 escalation 记录"""
        if result.image_id != image_id:
            raise InvalidInputError(
                f"Review result belongs to image {result.image_id}, not {image_id}",
                details={"image_id": image_id, "result_image_id": result.image_id},
            )

        def build(latest: ImageReview | None, iteration: int) -> dict[str, Any]:
            return {
                "score": result.score,
                "status": "human_review",
                "issues": [issue.model_dump() for issue in result.issues],
                "recommendation": "human_review",
                "reviewed_by": "escalation",
            }

        review = await self._append_review(image_id, build)
        logger.info("Image %s escalated to human review (score %.2f)", image_id, review.score)
        return _to_result(review)

    async def escalate_latest(self, image_id: int) -> ReviewResult:
        """把图片最近一次审核结果提交人工审核"""
        latest = await self.get_latest_review(image_id)
        if latest is None:
            raise NoPriorReviewError(image_id)
        return await self.submit_for_human_review(
            image_id,
            ReviewResult(
                review_id=latest.id,
                image_id=latest.generated_image_id,
                panel_id=latest.panel_id,
                score=latest.score,
                status=latest.status,
                issues=latest.issues,
                recommendation=latest.recommendation,
                iteration=latest.iteration,
                reviewed_by=latest.reviewed_by,
            ),
        )

    async def get_human_review_queue(self, limit: int = 50, offset: int = 0) -> list[ReviewQueueItem]:
        if limit < 1 or offset < 0:
            raise InvalidInputError(
                "limit must be >= 1 and offset must be >= 0",
                details={"limit": limit, "offset": offset},
            )
        async with self._session_maker() as session:
            rows = await ReviewHistoryStore(session).human_review_queue(limit=limit, offset=offset)

        return [
            ReviewQueueItem(
                review_id=review.id,
                image_id=image.id,
                panel_id=image.panel_id,
                storyboard_id=panel.storyboard_id,
                image_path=image.local_path,
                thumbnail_path=image.thumbnail_path,
                prompt=image.prompt,
                ai_score=review.score,
                ai_issues=[ReviewIssue.model_validate(issue) for issue in review.issues or []],
                ai_recommendation=review.recommendation,
                iteration=review.iteration,
                created_at=review.created_at,
            )
            for review, image, panel in rows
        ]

    # ------------------------------------------------------------------
    # 历史查询
    # ------------------------------------------------------------------

    async def get_image_history(self, image_id: int) -> list[ImageReviewRead]:
        async with self._session_maker() as session:
            reviews = await ReviewHistoryStore(session).get_image_history(image_id)
        return [ImageReviewRead.model_validate(r) for r in reviews]

    async def get_panel_history(self, panel_id: int) -> list[ImageReviewRead]:
        async with self._session_maker() as session:
            reviews = await ReviewHistoryStore(session).get_panel_history(panel_id)
        return [ImageReviewRead.model_validate(r) for r in reviews]

    async def get_latest_review(self, image_id: int) -> ImageReviewRead | None:
        """从未审核过时返回 None"""
        async with self._session_maker() as session:
            review = await ReviewHistoryStore(session).get_latest_review(image_id)
        return ImageReviewRead.model_validate(review) if review is not None else None

    # ------------------------------------------------------------------
    # 内部工具
    # ------------------------------------------------------------------

    async def _representative_image(self, panel_id: int) -> GeneratedImage:
        async with self._session_maker() as session:
            images = ImageStore(session)
            if await images.get_panel(panel_id) is None:
                raise NotFoundError("Panel", panel_id)
            image = await images.representative_image(panel_id)
        if image is None:
            raise NoImagesError(panel_id)
        return image

    async def _append_review(self, image_id: int, build, *, prerequisite=None) -> ImageReview:
        """在图片锁内追加一条审核记录，并在同一事务中回写图片状态。

        build(latest, iteration[, prerequisite_result]) 返回新记录的字段。
        """
        async with self.locks.hold(image_id):
            async with self._session_maker() as session:
                images = ImageStore(session)
                history = ReviewHistoryStore(session)

                image = await images.get_image(image_id)
                if image is None:
                    raise NotFoundError("Image", image_id)

                extra = [await prerequisite(history)] if prerequisite is not None else []
                latest = await history.get_latest_review(image_id)
                iteration = await history.count_for_image(image_id) + 1

                review = ImageReview(
                    generated_image_id=image_id,
                    panel_id=image.panel_id,
                    iteration=iteration,
                    previous_review_id=latest.id if latest else None,
                    **build(latest, iteration, *extra),
                )
                await history.append(review)
                await images.set_review_status(image, review.status)
                await session.commit()
                await session.refresh(review)
                return review
