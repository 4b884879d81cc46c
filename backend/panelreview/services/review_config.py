from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from panelreview.exceptions import InvalidInputError
from panelreview.schemas.review import ReviewConfig, ReviewConfigUpdate

logger = logging.getLogger(__name__)


class ReviewConfigStore:
    """审核策略的持有者。

    - get() 返回副本，调用方修改不会影响内部状态
    - set() 合并部分字段，整体校验通过后才生效；校验失败时保持原配置不变
    - 修改只影响之后的审核，不会回溯已有记录
    """

    def __init__(self, initial: ReviewConfig | dict[str, Any] | None = None) -> None:
        if initial is None:
            initial = ReviewConfig()
        elif isinstance(initial, dict):
            initial = self._validate(initial)
        self._config = initial.model_copy(deep=True)

    @staticmethod
    def _validate(data: dict[str, Any]) -> ReviewConfig:
        try:
            return ReviewConfig.model_validate(data)
        except ValidationError as exc:
            errors = [
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in exc.errors()
            ]
            raise InvalidInputError(
                "Invalid review configuration",
                details={"errors": errors},
            ) from exc

    def get(self) -> ReviewConfig:
        return self._config.model_copy(deep=True)

    def set(self, partial: ReviewConfigUpdate | dict[str, Any]) -> ReviewConfig:
        if isinstance(partial, ReviewConfigUpdate):
            changes = partial.model_dump(exclude_none=True)
        else:
            changes = {k: v for k, v in partial.items() if v is not None}

        unknown = set(changes) - set(ReviewConfig.model_fields)
        if unknown:
            raise InvalidInputError(
                f"Unknown review configuration fields: {', '.join(sorted(unknown))}",
                details={"fields": sorted(unknown)},
            )

        merged = self._validate({**self._config.model_dump(), **changes})
        self._config = merged
        logger.info("Review configuration updated: %s", changes)
        return self.get()
