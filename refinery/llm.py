from openai import AsyncOpenAI
import logging
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


def _field(obj: Any, name: str) -> Any:
    return obj.get(name) if isinstance(obj, dict) else getattr(obj, name, None)


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    # Content-block form: plain strings or {"text": ...} / {"content": ...} parts.
    parts: list[str] = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict):
            text = block.get("text") or block.get("content")
            if isinstance(text, str) and text.strip():
                parts.append(text)
    return "\n".join(p for p in parts if p).strip()


def extract_chat_content(response_obj: Any) -> str:
    """Text of the first choice of a chat completion, object or dict form."""
    choices = _field(response_obj, "choices")
    if not isinstance(choices, list) or not choices:
        return ""
    return _content_text(_field(_field(choices[0], "message"), "content"))


@dataclass
class Endpoint:
    provider: str
    base_url: str
    model: str
    client: AsyncOpenAI


class LLMClient:
    """
    Chat-completion client over an ordered list of OpenAI-compatible routes.

    Each request tries the routes in order and returns the first success. `routes` is
    kept as given so the host can tell whether new settings need a new client.
    """

    def __init__(self, routes: list[dict], *, temperature: float = 0.0):
        self.routes = [dict(r) for r in routes]
        self.temperature = float(temperature)
        self.endpoints: list[Endpoint] = []
        for route in self.routes:
            if not (route.get("api_key") and route.get("base_url") and route.get("model")):
                continue
            self.endpoints.append(
                Endpoint(
                    provider=str(route.get("provider") or "custom"),
                    base_url=route["base_url"],
                    model=route["model"],
                    client=AsyncOpenAI(
                        api_key=route["api_key"],
                        base_url=route["base_url"],
                        default_headers=route.get("api_extra_headers") or {},
                    ),
                )
            )
        if not self.endpoints:
            raise ValueError("LLMClient requires at least one route with an API key.")
        self._active = 0

    @property
    def model(self) -> str:
        return self.endpoints[self._active].model

    @property
    def base_url(self) -> str:
        return self.endpoints[self._active].base_url

    async def chat_create(self, **kwargs):
        failures: list[str] = []
        for idx, ep in enumerate(self.endpoints):
            try:
                resp = await ep.client.chat.completions.create(**{**kwargs, "model": ep.model})
            except Exception as e:
                failures.append(f"#{idx + 1} {ep.provider} {ep.base_url} ({ep.model}): {e}")
                if idx + 1 < len(self.endpoints):
                    logger.warning("LLM route #%s (%s) failed, trying the next one: %s", idx + 1, ep.base_url, e)
                continue
            if idx != self._active:
                logger.warning("LLM failover: now using route #%s (%s %s)", idx + 1, ep.provider, ep.base_url)
                self._active = idx
            return resp
        raise RuntimeError("All configured LLM APIs failed. " + " | ".join(failures))

    async def complete(self, system_prompt: str, user_prompt: str, max_tokens: int | None = None) -> str | None:
        """
        Single-turn completion. Returns the response text, or None when the model
        produced nothing usable. Route failures propagate as RuntimeError.
        """
        req = {
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "stream": False,
            "temperature": self.temperature,
        }
        if max_tokens:
            req["max_tokens"] = int(max_tokens)

        text = extract_chat_content(await self.chat_create(**req)).strip()
        if not text:
            logger.debug("LLM returned empty content (model=%s)", self.model)
            return None
        return text
