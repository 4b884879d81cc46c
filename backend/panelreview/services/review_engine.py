"""审核决策引擎：分数 + 配置 + 迭代次数 → 状态与建议动作。

纯函数，无 I/O。
"""
from __future__ import annotations

from collections.abc import Sequence

from panelreview.schemas.review import ReviewAction, ReviewConfig, ReviewIssue, ReviewStatus

# 固定的低分下限，独立于可配置阈值
REJECT_FLOOR = 0.3


def determine_status(score: float, config: ReviewConfig) -> ReviewStatus:
    """按顺序匹配，命中即返回。"""
    if score >= config.auto_approve_above:
        return "approved"
    if score >= config.min_acceptance_score:
        return "approved"
    if config.mode == "hitl" and score < config.pause_for_human_below:
        return "human_review"
    if score < REJECT_FLOOR:
        return "rejected"
    return "needs_work"


def determine_recommendation(
    status: ReviewStatus,
    issues: Sequence[ReviewIssue],
    iteration: int,
    config: ReviewConfig,
) -> ReviewAction:
    """iteration 为本次审核的序号（从 1 开始）。"""
    if iteration >= config.max_iterations:
        return "human_review"
    if status == "approved":
        return "approve"
    if any(issue.type == "missing_element" for issue in issues):
        return "regenerate"
    # 纯画质问题走局部重绘
    if issues and all(issue.type == "quality" for issue in issues):
        return "inpaint"
    return "regenerate"


def evaluate(
    score: float,
    issues: Sequence[ReviewIssue],
    iteration: int,
    config: ReviewConfig,
) -> tuple[ReviewStatus, ReviewAction]:
    status = determine_status(score, config)
    return status, determine_recommendation(status, issues, iteration, config)


def build_regeneration_hints(issues: Sequence[ReviewIssue]) -> list[str]:
    """根据问题列表生成重绘提示：先是模型给出的修复建议，再是缺失元素。"""
    hints = [issue.suggested_fix for issue in issues if issue.suggested_fix]
    hints.extend(f"Add: {issue.description}" for issue in issues if issue.type == "missing_element")
    return hints
