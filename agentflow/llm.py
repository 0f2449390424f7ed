import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

import aiohttp

from .config import Settings
from .errors import ConfigurationError, TransportError
from .models import ChatMessage, LLMConfig, LLMResponse, Usage
from .sessions import read_body, session_scope

logger = logging.getLogger("llm")


@dataclass(frozen=True)
class LLMProvider:
    name: str
    base_url: str
    api_key: str
    default_model: str


# USD per 1M tokens (input, output)
MODEL_RATES: Dict[str, tuple] = {
    "meta-llama/llama-3.1-405b-instruct": (0.6, 0.6),
    "Meta-Llama-3.1-405B-Instruct": (0.6, 0.6),
    "anthropic/claude-3-opus": (15.0, 75.0),
    "openai/gpt-4": (30.0, 60.0),
}
DEFAULT_RATE = (0.6, 0.6)


def calculate_llm_cost(usage: Usage, model: str) -> float:
    rate_in, rate_out = MODEL_RATES.get(model, DEFAULT_RATE)
    return usage.prompt_tokens / 1_000_000 * rate_in + usage.completion_tokens / 1_000_000 * rate_out


def providers_from_settings(settings: Settings) -> Dict[str, LLMProvider]:
    return {
        "openrouter": LLMProvider(
            name="OpenRouter",
            base_url=settings.openrouter_base_url,
            api_key=settings.openrouter_api_key,
            default_model="meta-llama/llama-3.1-405b-instruct",
        ),
        "sambanova": LLMProvider(
            name="SambaNova",
            base_url=settings.sambanova_base_url,
            api_key=settings.sambanova_api_key,
            default_model="Meta-Llama-3.1-405B-Instruct",
        ),
    }


class LLMClient:
    """Chat-completions client for an OpenAI-compatible provider."""

    def __init__(
        self,
        settings: Settings,
        provider: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        provider_name = provider or settings.llm_provider
        resolved = providers_from_settings(settings).get(provider_name)
        if resolved is None or not resolved.api_key:
            raise ConfigurationError(
                f"LLM provider {provider_name} is not configured. Set its API key in the environment or .env"
            )
        self.provider = resolved
        self.referer = settings.app_url
        self.timeout = settings.http_timeout
        self._session = session

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.provider.api_key}",
            "Content-Type": "application/json",
        }
        if self.provider.name == "OpenRouter":
            headers["HTTP-Referer"] = self.referer
            headers["X-Title"] = "Agent Platform"
        return headers

    def build_payload(self, messages: Sequence[Union[ChatMessage, Dict[str, Any]]], config: LLMConfig) -> Dict[str, Any]:
        wire: List[Dict[str, Any]] = []
        for msg in messages:
            m = msg if isinstance(msg, ChatMessage) else ChatMessage.model_validate(msg)
            entry = {"role": m.role, "content": m.content}
            if m.name:
                entry["name"] = m.name
            wire.append(entry)

        payload: Dict[str, Any] = {
            "model": config.model or self.provider.default_model,
            "messages": wire,
            "temperature": config.temperature,
            "max_tokens": config.max_tokens,
            "top_p": config.top_p,
            "frequency_penalty": config.frequency_penalty,
            "presence_penalty": config.presence_penalty,
        }
        if config.stop:
            payload["stop"] = config.stop
        return payload

    async def chat(
        self,
        messages: Sequence[Union[ChatMessage, Dict[str, Any]]],
        config: Optional[LLMConfig] = None,
    ) -> LLMResponse:
        """Send one chat completion request. Any failure raises TransportError."""
        payload = self.build_payload(messages, config or LLMConfig())
        url = f"{self.provider.base_url.rstrip('/')}/chat/completions"

        try:
            async with session_scope(self._session, self.timeout) as session:
                async with session.post(url, json=payload, headers=self._headers()) as resp:
                    data = await read_body(resp)
                    status = resp.status
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.error("LLM request to %s failed: %s", self.provider.name, e)
            raise TransportError(f"Failed to get LLM response: {e}") from e

        if not 200 <= status < 300:
            logger.error("LLM API error %s: %s", status, data)
            detail = None
            if isinstance(data, dict) and isinstance(data.get("error"), dict):
                detail = data["error"].get("message")
            raise TransportError(
                f"Failed to get LLM response: {detail or f'HTTP {status}'}", status=status, payload=data
            )

        try:
            choice = data["choices"][0]
            message = choice["message"]
        except (TypeError, KeyError, IndexError) as e:
            raise TransportError("Failed to get LLM response: malformed completion payload", status=status, payload=data) from e

        usage = Usage.model_validate(data.get("usage") or {})
        model = payload["model"]
        return LLMResponse(
            content=message.get("content") or "",
            tool_calls=message.get("tool_calls"),
            finish_reason=choice.get("finish_reason"),
            usage=usage,
            model=model,
            cost=calculate_llm_cost(usage, model),
        )

    async def generate_code(self, prompt: str, language: str = "python", context: Optional[str] = None) -> str:
        system = (
            f"You are an expert {language} programmer. Generate clean, well-documented code based on the user's request.\n\n"
            + (f"Context: {context}\n\n" if context else "")
            + "Respond with ONLY the code, no explanations or markdown formatting."
        )
        response = await self.chat(
            [ChatMessage(role="system", content=system), ChatMessage(role="user", content=prompt)],
            LLMConfig(temperature=0.2, max_tokens=4096),
        )
        return response.content
