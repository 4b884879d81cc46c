"""分析网关：封装视觉提供商调用，并在边界处完成一次性归一化。

提供商的输出视为不可信的自由文本：
- 分数被夹到 [0, 1]；缺失或非数字的分数视为分析失败
- 未知的 issue type 归为 other，未知 severity 归为 major
- 调用失败与解析失败都以 AnalysisFailedError 上报，绝不伪造分数
"""
from __future__ import annotations

import logging
import math
from typing import Any

from panelreview.exceptions import AnalysisFailedError
from panelreview.prompts.vision import ANALYSIS_PROMPT, CONTEXT_SECTION
from panelreview.schemas.review import ISSUE_SEVERITIES, ISSUE_TYPES, ImageAnalysis, PanelContext, ReviewIssue
from panelreview.services.vision import VisionProvider, VisionProviderError
from panelreview.utils import extract_json

logger = logging.getLogger(__name__)

_NOT_SPECIFIED = "Not specified"


def build_analysis_prompt(prompt: str, context: PanelContext | None = None) -> str:
    context_section = ""
    if context is not None:
        context_section = CONTEXT_SECTION.format(
            description=context.description or _NOT_SPECIFIED,
            characters=", ".join(context.character_names or []) or _NOT_SPECIFIED,
            mood=context.mood or _NOT_SPECIFIED,
            camera_angle=context.camera_angle or _NOT_SPECIFIED,
            narrative_context=context.narrative_context or _NOT_SPECIFIED,
        )
    return ANALYSIS_PROMPT.format(prompt=prompt, context_section=context_section)


def _first(data: dict[str, Any], *keys: str) -> Any:
    # 兼容 camelCase / snake_case 两种键名
    for key in keys:
        if key in data:
            return data[key]
    return None


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def _optional_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def normalize_issues(raw: Any) -> list[ReviewIssue]:
    if not isinstance(raw, list):
        return []

    issues: list[ReviewIssue] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        issue_type = item.get("type")
        severity = item.get("severity")
        description = item.get("description")
        issues.append(
            ReviewIssue(
                type=issue_type if issue_type in ISSUE_TYPES else "other",
                severity=severity if severity in ISSUE_SEVERITIES else "major",
                description=description.strip() if isinstance(description, str) else "",
                suggested_fix=_optional_str(_first(item, "suggestedFix", "suggested_fix")),
            )
        )
    return issues


def parse_analysis(raw_response: str) -> ImageAnalysis:
    """把视觉模型的原始文本解析为 ImageAnalysis，失败时抛出 ValueError。"""
    data = extract_json(raw_response)

    raw_score = _first(data, "adherenceScore", "adherence_score", "score")
    if isinstance(raw_score, bool):
        raise ValueError(f"adherenceScore is not numeric: {raw_score!r}")
    try:
        score = float(raw_score)
    except (TypeError, ValueError):
        raise ValueError(f"adherenceScore is not numeric: {raw_score!r}") from None
    if math.isnan(score):
        raise ValueError("adherenceScore is NaN")

    return ImageAnalysis(
        adherence_score=min(1.0, max(0.0, score)),
        found_elements=_string_list(_first(data, "foundElements", "found_elements")),
        missing_elements=_string_list(_first(data, "missingElements", "missing_elements")),
        issues=normalize_issues(data.get("issues")),
        quality_notes=_optional_str(_first(data, "qualityNotes", "quality_notes")),
        raw_response=raw_response,
    )


class AnalysisGateway:
    def __init__(self, provider: VisionProvider):
        self.provider = provider

    async def analyze(
        self,
        image_path: str,
        prompt: str,
        context: PanelContext | None = None,
        *,
        image_id: int | None = None,
    ) -> ImageAnalysis:
        analysis_prompt = build_analysis_prompt(prompt, context)

        try:
            raw = await self.provider.complete(image_path=image_path, prompt=analysis_prompt)
        except VisionProviderError as exc:
            logger.warning("Vision provider %s failed for image %s: %s", self.provider.name, image_id, exc)
            raise AnalysisFailedError(str(exc), image_id=image_id) from exc

        try:
            analysis = parse_analysis(raw)
        except ValueError as exc:
            logger.warning("Unparseable vision analysis for image %s: %s", image_id, exc)
            raise AnalysisFailedError(f"unparseable analysis: {exc}", image_id=image_id) from exc

        logger.info(
            "Analyzed image %s: score=%.2f issues=%d",
            image_id,
            analysis.adherence_score,
            len(analysis.issues),
        )
        return analysis
