"""Model clients: one request in, text plus token usage out."""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from loguru import logger

from .config import LLMConfig
from .exceptions import ModelCallError


@dataclass
class TokenUsage:
    input: int = 0
    output: int = 0
    thinking: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input=self.input + other.input,
            output=self.output + other.output,
            thinking=self.thinking + other.thinking,
        )


@dataclass
class ModelOptions:
    temperature: float | None = None
    max_output_tokens: int | None = None
    thinking: bool | None = None


@dataclass
class ModelResponse:
    text: str
    usage: TokenUsage
    model: str = ""


class ModelClient(ABC):
    """A single request to an LLM provider."""

    model: str = ""

    @abstractmethod
    def generate(
        self, system: str, prompt: str, options: ModelOptions | None = None
    ) -> ModelResponse:
        ...


class GeminiClient(ModelClient):
    """Gemini via the google-genai SDK."""

    THINKING_BUDGET = 8192

    def __init__(self, config: LLMConfig):
        self.config = config
        self.model = config.model
        self._client = None

    def _get_client(self):
        if self._client is None:
            from google import genai
            from google.genai import types

            self._client = genai.Client(
                api_key=self.config.resolved_api_key(),
                http_options=types.HttpOptions(
                    timeout=int(self.config.timeout_seconds * 1000)
                ),
            )
        return self._client

    def generate(
        self, system: str, prompt: str, options: ModelOptions | None = None
    ) -> ModelResponse:
        from google.genai import types

        options = options or ModelOptions()
        thinking = self.config.thinking if options.thinking is None else options.thinking
        gen_config = types.GenerateContentConfig(
            system_instruction=system,
            temperature=_pick(options.temperature, self.config.temperature),
            max_output_tokens=_pick(options.max_output_tokens, self.config.max_output_tokens),
            thinking_config=types.ThinkingConfig(
                thinking_budget=self.THINKING_BUDGET if thinking else 0,
            ),
        )
        try:
            response = self._get_client().models.generate_content(
                model=self.model, contents=prompt, config=gen_config,
            )
        except Exception as e:
            raise ModelCallError(f"Gemini request failed: {e}") from e

        text = ""
        candidates = response.candidates or []
        if candidates and candidates[0].content and candidates[0].content.parts:
            for part in candidates[0].content.parts:
                if part.text and not getattr(part, "thought", False):
                    text += part.text
        if not text.strip():
            raise ModelCallError("Gemini returned an empty response")

        meta = response.usage_metadata
        usage = TokenUsage(
            input=(meta.prompt_token_count or 0) if meta else 0,
            output=(meta.candidates_token_count or 0) if meta else 0,
            thinking=(meta.thoughts_token_count or 0) if meta else 0,
        )
        return ModelResponse(text=text, usage=usage, model=self.model)


class OpenAICompatibleClient(ModelClient):
    """Any OpenAI-compatible endpoint (DashScope/Qwen, DeepSeek, OpenAI)."""

    def __init__(self, config: LLMConfig):
        self.config = config
        self.model = config.model
        self._client = None

    def _get_client(self):
        if self._client is None:
            from openai import OpenAI

            kwargs = {
                "api_key": self.config.resolved_api_key(),
                "timeout": self.config.timeout_seconds,
                "max_retries": 0,
            }
            if self.config.base_url:
                kwargs["base_url"] = self.config.base_url
            self._client = OpenAI(**kwargs)
        return self._client

    def generate(
        self, system: str, prompt: str, options: ModelOptions | None = None
    ) -> ModelResponse:
        options = options or ModelOptions()
        try:
            response = self._get_client().chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                temperature=_pick(options.temperature, self.config.temperature),
                max_tokens=_pick(options.max_output_tokens, self.config.max_output_tokens),
            )
        except Exception as e:
            raise ModelCallError(f"{self.model} request failed: {e}") from e

        if not response.choices or not response.choices[0].message.content:
            raise ModelCallError(f"{self.model} returned an empty response")
        text = response.choices[0].message.content

        usage = TokenUsage()
        if response.usage:
            details = getattr(response.usage, "completion_tokens_details", None)
            usage = TokenUsage(
                input=response.usage.prompt_tokens or 0,
                output=response.usage.completion_tokens or 0,
                thinking=(getattr(details, "reasoning_tokens", 0) or 0) if details else 0,
            )
        return ModelResponse(text=text, usage=usage, model=self.model)


def build_client(config: LLMConfig) -> ModelClient:
    logger.debug(f"Building {config.provider} client for {config.model}")
    if config.provider == "gemini":
        return GeminiClient(config)
    return OpenAICompatibleClient(config)


def _pick(value, default):
    return default if value is None else value
