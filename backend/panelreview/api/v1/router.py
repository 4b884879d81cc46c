from fastapi import APIRouter

from panelreview.api.v1.routes.review import router as review_router

api_router = APIRouter()
api_router.include_router(review_router, prefix="/review", tags=["review"])
