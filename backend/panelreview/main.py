from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from panelreview.api.v1.router import api_router
from panelreview.config import Settings, get_settings
from panelreview.db.session import async_session_maker, init_db
from panelreview.exceptions import AppException
from panelreview.services.analysis import AnalysisGateway
from panelreview.services.review_config import ReviewConfigStore
from panelreview.services.review_service import PanelRegenerator, ReviewService
from panelreview.services.vision import create_vision_provider

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    await init_db()
    yield


def build_review_service(settings: Settings) -> ReviewService:
    return ReviewService(
        async_session_maker,
        AnalysisGateway(create_vision_provider(settings)),
        ReviewConfigStore(settings.review_defaults()),
        batch_concurrency=settings.review_batch_concurrency,
    )


def create_app(
    settings: Settings | None = None,
    *,
    review_service: ReviewService | None = None,
    panel_regenerator: PanelRegenerator | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # 审核服务由宿主注入；重绘能力可选（未配置时自动审核循环接口返回 501）
    app.state.review_service = review_service or build_review_service(settings)
    app.state.panel_regenerator = panel_regenerator

    app.include_router(api_router, prefix=settings.api_v1_prefix)

    # 全局异常处理器
    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException):
        """处理自定义应用异常"""
        logger.error(
            f"AppException: {exc.code} - {exc.message}",
            extra={
                "code": exc.code,
                "status_code": exc.status_code,
                "details": exc.details,
                "path": request.url.path,
                "method": request.method,
            },
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": {
                    "code": exc.code,
                    "message": exc.message,
                    "details": exc.details,
                }
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """处理未捕获的异常"""
        logger.exception(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
            },
        )
        # 开发环境返回详细错误，生产环境只返回友好消息
        details = {"error": str(exc)} if settings.environment == "dev" else {}
        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "code": "INTERNAL_ERROR",
                    "message": "Internal server error, please retry later",
                    "details": details,
                }
            },
        )

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


def run() -> None:
    import uvicorn

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("panelreview.main:app", host="0.0.0.0", port=8000, log_level=settings.log_level.lower())


app = create_app()


if __name__ == "__main__":
    run()
