from __future__ import annotations

from fastapi import Depends, Request

from panelreview.services.review_service import PanelRegenerator, ReviewService


async def get_review_service(request: Request) -> ReviewService:
    return request.app.state.review_service


async def get_panel_regenerator(request: Request) -> PanelRegenerator | None:
    return getattr(request.app.state, "panel_regenerator", None)


ReviewServiceDep = Depends(get_review_service)
RegeneratorDep = Depends(get_panel_regenerator)
