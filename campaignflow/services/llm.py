from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Sequence

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_ollama import ChatOllama
from tenacity import AsyncRetrying, stop_after_attempt, wait_random_exponential

from ..core.config import LLMSettings, Settings
from ..core.logging import get_logger

logger = get_logger(name=__name__)


def _build_base_url(host: str, port: int) -> str:
    base = host.rstrip("/")
    if ":" in base.rsplit("/", maxsplit=1)[-1]:
        return base
    return f"{base}:{port}"


def _messages_from_text(
    prompt: str,
    system_prompt: str | None = None,
) -> Sequence[BaseMessage]:
    messages: list[BaseMessage] = []
    if system_prompt:
        messages.append(SystemMessage(content=system_prompt))
    messages.append(HumanMessage(content=prompt))
    return messages


@dataclass
class LLMService:
    """LangChain chat client used as the payload repair executor."""

    settings: LLMSettings
    _client: Any
    model: str
    default_system_prompt: str = "You repair structured data. Respond with JSON only."
    _client_cache: ClassVar[dict[str, Any]] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        model: str | None = None,
        client: Any | None = None,
    ) -> "LLMService":
        llm = settings.llm
        model_name = model or llm.model
        if client is None:
            cache_key = f"{llm.host}:{llm.port}:{model_name}"
            cached = cls._client_cache.get(cache_key)
            if cached is None:
                cached = ChatOllama(
                    model=model_name,
                    base_url=_build_base_url(llm.host, llm.port),
                    temperature=llm.temperature,
                )
                cls._client_cache[cache_key] = cached
            client = cached
        return cls(settings=llm, _client=client, model=model_name)

    async def generate(self, prompt: str, *, system_prompt: str | None = None) -> str:
        """Generate a completion, retrying transient client failures with backoff."""
        messages = _messages_from_text(prompt, system_prompt or self.default_system_prompt)
        settings = self.settings
        wait_strategy = wait_random_exponential(
            multiplier=settings.retry_backoff_seconds,
            max=settings.retry_max_backoff_seconds,
        )
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(settings.max_retries + 1),
            wait=wait_strategy,
            reraise=True,
        ):
            with attempt:
                number = attempt.retry_state.attempt_number
                if number > 1:
                    logger.warning("llm_generation_retry", attempt=number, model=self.model)
                result = await self._client.ainvoke(messages)
        return _extract_content(result)


def _extract_content(result: Any) -> str:
    if isinstance(result, AIMessage) or hasattr(result, "content"):
        content = result.content
        if isinstance(content, list):
            return " ".join(str(item) for item in content)
        return str(content)
    return str(result)
