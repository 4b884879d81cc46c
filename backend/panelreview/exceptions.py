"""应用异常定义。

所有业务异常都继承 AppException，由 main.py 中的全局处理器统一转换为
{"error": {"code", "message", "details"}} 响应。
"""
from __future__ import annotations

from typing import Any


class AppException(Exception):
    code: str = "APP_ERROR"
    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}


class NotFoundError(AppException):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, entity: str, entity_id: int | str) -> None:
        super().__init__(
            f"{entity} not found: {entity_id}",
            details={"entity": entity, "id": entity_id},
        )
        self.entity = entity
        self.entity_id = entity_id


class NoImagesError(AppException):
    code = "NO_IMAGES"
    status_code = 400

    def __init__(self, panel_id: int) -> None:
        super().__init__(f"No images found for panel: {panel_id}", details={"panel_id": panel_id})
        self.panel_id = panel_id


class AnalysisFailedError(AppException):
    """视觉分析失败（服务不可达、超时、返回内容无法解析）。

    不会被转换成任何默认分数，调用方必须显式处理。
    """

    code = "ANALYSIS_FAILED"
    status_code = 502

    def __init__(self, reason: str, *, image_id: int | None = None) -> None:
        prefix = f"Vision analysis failed for image {image_id}" if image_id is not None else "Vision analysis failed"
        super().__init__(f"{prefix}: {reason}", details={"image_id": image_id, "reason": reason})
        self.image_id = image_id
        self.reason = reason


class InvalidInputError(AppException):
    code = "INVALID_INPUT"
    status_code = 400


class InvalidDecisionError(InvalidInputError):
    code = "INVALID_DECISION"

    def __init__(self, action: Any) -> None:
        super().__init__(
            f"Invalid decision action: {action!r} (expected approve|reject|regenerate)",
            details={"action": action},
        )
        self.action = action


class NoPriorReviewError(AppException):
    code = "NO_PRIOR_REVIEW"
    status_code = 409

    def __init__(self, image_id: int) -> None:
        super().__init__(
            f"Image {image_id} has no automated review to override",
            details={"image_id": image_id},
        )
        self.image_id = image_id


class RegeneratorNotConfiguredError(AppException):
    code = "REGENERATOR_NOT_CONFIGURED"
    status_code = 501

    def __init__(self) -> None:
        super().__init__("No panel regenerator is configured for this deployment")
