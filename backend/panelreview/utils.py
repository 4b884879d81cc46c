"""通用工具函数。"""
from __future__ import annotations

import json
import re
from datetime import datetime, UTC

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def utcnow() -> datetime:
    """返回当前 UTC 时间（无时区信息，兼容 TIMESTAMP WITHOUT TIME ZONE）。"""
    return datetime.now(UTC).replace(tzinfo=None)


def extract_json(text: str) -> dict:
    """从视觉模型响应中提取 JSON 对象。

    支持 markdown 代码块、前后夹杂说明文字、尾随逗号以及被截断的 JSON。
    找不到可解析的对象时抛出 ValueError，由调用方决定如何上报。
    """
    text = (text or "").strip()

    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1).strip()

    try:
        data = json.loads(text)
        if isinstance(data, dict):
            return data
    except json.JSONDecodeError:
        pass

    start = text.find("{")
    if start == -1:
        raise ValueError("响应中未找到 JSON 对象")

    end = text.rfind("}")
    candidate = text[start : end + 1] if end > start else text[start:]

    for fix in (lambda x: x, _strip_trailing_commas, _close_open_brackets):
        try:
            data = json.loads(fix(candidate))
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data

    raise ValueError(f"无法解析响应中的 JSON: {candidate[:200]}...")


def _strip_trailing_commas(text: str) -> str:
    text = re.sub(r",\s*]", "]", text)
    return re.sub(r",\s*}", "}", text)


def _close_open_brackets(text: str) -> str:
    """补全被截断 JSON 的字符串与括号。"""
    stack: list[str] = []
    in_string = False
    escaped = False

    for char in text:
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char in "{[":
            stack.append("}" if char == "{" else "]")
        elif char in "}]" and stack:
            stack.pop()

    if in_string:
        text += '"'
    return _strip_trailing_commas(text + "".join(reversed(stack)))
