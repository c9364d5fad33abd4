import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

_ENV_KEYS = {
    "gemini": ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
    "openai": ("OPENAI_API_KEY", "DASHSCOPE_API_KEY", "DEEPSEEK_API_KEY"),
}


class LLMConfig(BaseModel):
    provider: Literal["gemini", "openai"] = Field(default="gemini")
    model: str = Field(default="gemini-2.5-pro")
    api_key: str = Field(default="")
    base_url: Optional[str] = Field(default=None)
    temperature: float = Field(default=0.7, ge=0, le=2)
    max_output_tokens: int = Field(default=8192, gt=0)
    timeout_seconds: float = Field(default=180.0, gt=0)
    thinking: bool = Field(default=False)

    def resolved_api_key(self) -> str:
        if self.api_key:
            return self.api_key
        for name in _ENV_KEYS[self.provider]:
            if os.environ.get(name):
                return os.environ[name]
        return ""


class PipelineConfig(BaseModel):
    pacing_interval: int = Field(default=5, gt=0)
    max_stage_retries: int = Field(default=1, ge=0)
    scene_tail_chars: int = Field(default=1500, gt=0)
    rolling_summary_window: Optional[int] = Field(default=None, gt=0)
    min_scene_words: int = Field(default=150, ge=0)
    summary_max_words: int = Field(default=200, gt=0)
    approve_threshold: int = Field(default=8, ge=1, le=10)
    rewrite_threshold: int = Field(default=5, ge=1, le=10)
    completion_min_ratio: float = Field(default=0.25, ge=0, le=1)
    repair_max_attempts: int = Field(default=50, gt=0)
    vocabulary_window: int = Field(default=2, gt=0)
    min_patch_chars: int = Field(default=20, gt=0)

    @field_validator("rewrite_threshold")
    @classmethod
    def _rewrite_below_approve(cls, v, info):
        approve = info.data.get("approve_threshold", 8)
        if v > approve:
            raise ValueError("rewrite_threshold must not exceed approve_threshold")
        return v


class StorageConfig(BaseModel):
    root: Path = Field(default=Path("projects"))


class Config(BaseModel):
    llm: LLMConfig = Field(default_factory=LLMConfig)
    writer_llm: Optional[LLMConfig] = Field(default=None)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    log_level: str = Field(default="INFO")
    log_file: Optional[Path] = Field(default=None)

    @classmethod
    def from_yaml(cls, path: Path) -> "Config":
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    def to_yaml(self, path: Path):
        with open(path, "w") as f:
            yaml.dump(self.model_dump(mode="json"), f, default_flow_style=False)
