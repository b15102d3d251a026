# reasoning.py
# Reasoning capability used by the planner.
#
# The runtime only depends on the Reasoner protocol. OpenAIReasoner talks to
# any OpenAI-compatible endpoint (OpenRouter by default); ScriptedReasoner
# replays canned responses for tests and offline demos.

import asyncio
from typing import Protocol

from openai import AsyncOpenAI
from pydantic import BaseModel, Field

from agent_runtime.config import DEFAULT_BASE_URL, DEFAULT_MODEL
from agent_runtime.errors import PlanningFailed


class GenerateOptions(BaseModel):
    temperature: float = 0.3
    max_tokens: int = 1000
    system: str | None = None


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ReasoningResponse(BaseModel):
    content: str
    usage: TokenUsage = Field(default_factory=TokenUsage)
    finish_reason: str | None = None


class Reasoner(Protocol):
    async def generate(self, prompt: str, options: GenerateOptions) -> ReasoningResponse: ...

    async def chat(self, messages: list[dict], options: GenerateOptions) -> ReasoningResponse: ...


# ---------------------------------------------------------------------------
# OpenAI-compatible endpoint
# ---------------------------------------------------------------------------


class OpenAIReasoner:
    """
    Reasoner backed by the OpenAI SDK.

    Example:
        reasoner = OpenAIReasoner(
            model="anthropic/claude-3.5-haiku",
            api_key=os.getenv("OPENROUTER_API_KEY"),
        )
    """

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        api_key: str | None = None,
        base_url: str = DEFAULT_BASE_URL,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._model = model
        self._client = client or AsyncOpenAI(base_url=base_url, api_key=api_key)

    @property
    def model(self) -> str:
        return self._model

    async def generate(self, prompt: str, options: GenerateOptions) -> ReasoningResponse:
        messages: list[dict] = []
        if options.system:
            messages.append({"role": "system", "content": options.system})
        messages.append({"role": "user", "content": prompt})
        return await self.chat(messages, options)

    async def chat(self, messages: list[dict], options: GenerateOptions) -> ReasoningResponse:
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=messages,
                temperature=options.temperature,
                max_tokens=options.max_tokens,
            )
        except Exception as exc:
            raise PlanningFailed(f"Reasoning call to {self._model} failed: {exc}") from exc

        if not response.choices:
            raise PlanningFailed(f"Reasoning call to {self._model} returned no choices.")

        choice = response.choices[0]
        usage = TokenUsage()
        if response.usage is not None:
            usage = TokenUsage(
                prompt_tokens=response.usage.prompt_tokens or 0,
                completion_tokens=response.usage.completion_tokens or 0,
                total_tokens=response.usage.total_tokens or 0,
            )
        return ReasoningResponse(
            content=(choice.message.content or "").strip(),
            usage=usage,
            finish_reason=choice.finish_reason,
        )


# ---------------------------------------------------------------------------
# Scripted responses
# ---------------------------------------------------------------------------


class ScriptedReasoner:
    """
    Replays responses in order; the last one repeats once the script runs out.

    A script item that is an exception instance is raised instead of returned.
    `delay` simulates latency, in seconds.
    """

    def __init__(self, responses: list, delay: float = 0.0) -> None:
        if not responses:
            raise ValueError("ScriptedReasoner needs at least one response.")
        self._responses = list(responses)
        self._delay = delay
        self.prompts: list[str] = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def generate(self, prompt: str, options: GenerateOptions) -> ReasoningResponse:
        self.prompts.append(prompt)
        if self._delay:
            await asyncio.sleep(self._delay)

        index = min(len(self.prompts) - 1, len(self._responses) - 1)
        item = self._responses[index]
        if isinstance(item, BaseException):
            raise item
        return ReasoningResponse(content=str(item), finish_reason="stop")

    async def chat(self, messages: list[dict], options: GenerateOptions) -> ReasoningResponse:
        prompt = "\n\n".join(str(m.get("content", "")) for m in messages)
        return await self.generate(prompt, options)
