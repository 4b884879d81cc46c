from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Note: do not hardcode env_file here; tests instantiate Settings() directly and
    # should not implicitly read the repo's .env. Runtime uses get_settings().
    model_config = SettingsConfigDict(extra="ignore")

    app_name: str = "panelreview-backend"
    environment: str = Field(default="dev", description="dev|staging|prod")
    log_level: str = Field(default="INFO", description="Uvicorn log level")

    api_v1_prefix: str = "/api/v1"
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    # 数据库（默认 SQLite，生产可切换 postgresql+asyncpg）
    database_url: str = Field(default="sqlite+aiosqlite:///./panelreview.db")
    db_echo: bool = False

    # ============================================
    # 视觉分析服务
    # ============================================
    vision_provider: Literal["ollama", "claude"] = Field(
        default="ollama",
        description="首选视觉分析提供商：ollama（本地/RunPod）或 claude",
    )
    ollama_base_url: str = Field(
        default="http://localhost:11434",
        description="Ollama 服务地址",
    )
    ollama_vision_model: str = Field(
        default="llava",
        description="Ollama 视觉模型，例如 llava / llava-llama3 / bakllava",
    )
    anthropic_api_key: str | None = None
    anthropic_auth_token: str | None = Field(
        default=None,
        description="中转站 Token",
    )
    anthropic_base_url: str | None = Field(
        default=None,
        description="Anthropic 中转站/代理地址",
    )
    anthropic_vision_model: str = Field(
        default="claude-sonnet-4-20250514",
        description="Claude 视觉分析模型",
    )
    vision_max_retries: int = Field(
        default=2,
        ge=0,
        description="单次分析请求在传输层的重试次数（仅 408/429/5xx/超时）；审核流程本身不自动重试",
    )

    # ============================================
    # 审核策略默认值（运行时可通过 /review/config 修改）
    # ============================================
    review_mode: Literal["auto", "hitl"] = "auto"
    review_max_iterations: int = Field(default=3, ge=1)
    review_min_acceptance_score: float = Field(default=0.7, ge=0.0, le=1.0)
    review_auto_approve_above: float = Field(default=0.9, ge=0.0, le=1.0)
    review_pause_for_human_below: float = Field(default=0.5, ge=0.0, le=1.0)
    review_batch_concurrency: int = Field(
        default=3,
        ge=1,
        description="分镜批量审核时的并发上限",
    )

    request_timeout_s: float = 120.0

    def anthropic_credentials(self) -> str | None:
        return self.anthropic_api_key or self.anthropic_auth_token

    def anthropic_headers(self) -> dict[str, str]:
        """兼容一些中转站使用 Bearer Token 的鉴权方式"""
        headers: dict[str, str] = {}
        if self.anthropic_auth_token:
            headers["Authorization"] = f"Bearer {self.anthropic_auth_token}"
        return headers

    def review_defaults(self) -> dict[str, Any]:
        """审核配置初始值"""
        return {
            "mode": self.review_mode,
            "max_iterations": self.review_max_iterations,
            "min_acceptance_score": self.review_min_acceptance_score,
            "auto_approve_above": self.review_auto_approve_above,
            "pause_for_human_below": self.review_pause_for_human_below,
        }


@lru_cache
def get_settings() -> Settings:
    return Settings(_env_file=".env", _env_file_encoding="utf-8")
