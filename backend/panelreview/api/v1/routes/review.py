from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query

from panelreview.api.deps import RegeneratorDep, ReviewServiceDep
from panelreview.exceptions import RegeneratorNotConfiguredError
from panelreview.schemas.review import (
    AutoReviewResult,
    BatchReviewOptions,
    BatchReviewResult,
    HumanDecision,
    ImageReviewRead,
    ReviewConfig,
    ReviewConfigUpdate,
    ReviewHistoryRead,
    ReviewImageRequest,
    ReviewQueueItem,
    ReviewResult,
)
from panelreview.services.review_service import PanelRegenerator, ReviewService

router = APIRouter()


# ============================================
# 审核
# ============================================


@router.post("/image/{image_id}", response_model=ReviewResult)
async def review_image(
    image_id: int,
    payload: ReviewImageRequest | None = None,
    service: ReviewService = ReviewServiceDep,
):
    payload = payload or ReviewImageRequest()
    return await service.review_image(image_id, payload.prompt, payload.context)


@router.get("/image/{image_id}/latest", response_model=ImageReviewRead)
async def get_latest_review(image_id: int, service: ReviewService = ReviewServiceDep):
    review = await service.get_latest_review(image_id)
    if review is None:
        raise HTTPException(status_code=404, detail="No review found for this image")
    return review


@router.post("/panel/{panel_id}", response_model=ReviewResult)
async def review_panel(panel_id: int, service: ReviewService = ReviewServiceDep):
    return await service.review_panel(panel_id)


@router.post("/panel/{panel_id}/until-accepted", response_model=AutoReviewResult)
async def review_panel_until_accepted(
    panel_id: int,
    service: ReviewService = ReviewServiceDep,
    regenerator: PanelRegenerator | None = RegeneratorDep,
):
    if regenerator is None:
        raise RegeneratorNotConfiguredError()
    return await service.review_until_accepted(panel_id, regenerator)


@router.post("/storyboard/{storyboard_id}", response_model=BatchReviewResult)
async def review_storyboard(
    storyboard_id: int,
    payload: BatchReviewOptions | None = None,
    service: ReviewService = ReviewServiceDep,
):
    return await service.review_storyboard(storyboard_id, payload)


# ============================================
# 人工审核队列（路由参数统一使用图片 ID）
# ============================================


@router.get("/queue", response_model=list[ReviewQueueItem])
async def get_queue(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    service: ReviewService = ReviewServiceDep,
):
    return await service.get_human_review_queue(limit=limit, offset=offset)


@router.post("/queue/{image_id}/decision", response_model=ReviewResult)
async def record_decision(
    image_id: int,
    payload: HumanDecision,
    service: ReviewService = ReviewServiceDep,
):
    return await service.record_human_decision(image_id, payload)


@router.post("/queue/{image_id}/escalate", response_model=ReviewResult)
async def escalate(image_id: int, service: ReviewService = ReviewServiceDep):
    return await service.escalate_latest(image_id)


# ============================================
# 历史
# ============================================


@router.get("/history/image/{image_id}", response_model=ReviewHistoryRead)
async def get_image_history(image_id: int, service: ReviewService = ReviewServiceDep):
    reviews = await service.get_image_history(image_id)
    return ReviewHistoryRead(id=image_id, reviews=reviews, count=len(reviews))


@router.get("/history/panel/{panel_id}", response_model=ReviewHistoryRead)
async def get_panel_history(panel_id: int, service: ReviewService = ReviewServiceDep):
    reviews = await service.get_panel_history(panel_id)
    return ReviewHistoryRead(id=panel_id, reviews=reviews, count=len(reviews))


# ============================================
# 配置
# ============================================


@router.get("/config", response_model=ReviewConfig)
async def get_config(service: ReviewService = ReviewServiceDep):
    return service.config.get()


@router.put("/config", response_model=ReviewConfig)
async def update_config(payload: ReviewConfigUpdate, service: ReviewService = ReviewServiceDep):
    return service.config.set(payload)
