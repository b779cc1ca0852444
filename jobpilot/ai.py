"""Text generation and embeddings through an OpenAI-compatible API."""
from __future__ import annotations

from typing import Any

from openai import OpenAI

from jobpilot.cancellation import CancelToken
from jobpilot.config import get_env
from jobpilot.log import get_logger
from jobpilot.retry import NETWORK_POLICY, RetryPolicy

log = get_logger(__name__)

LANGUAGE_NAMES: dict[str, str] = {
    "en": "English",
    "tr": "Turkish",
    "de": "German",
    "fr": "French",
    "es": "Spanish",
}


class TextGenerator:
    """``generate(prompt, language)`` and ``embed(text)`` for the pipeline.

    Both calls run under the network retry policy; anything still failing
    after that propagates to the caller, which decides whether it is fatal.
    Backoff waits honour the optional cancel token.
    """

    def __init__(
        self,
        client: OpenAI | None = None,
        *,
        model: str = "gpt-4o-mini",
        embedding_model: str = "text-embedding-3-small",
        embedding_dimensions: int = 768,
        max_tokens: int = 1024,
        temperature: float = 0.2,
        policy: RetryPolicy = NETWORK_POLICY,
    ) -> None:
        self._client = client
        self.model = model
        self.embedding_model = embedding_model
        self.embedding_dimensions = embedding_dimensions
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.policy = policy

    @classmethod
    def from_settings(cls, ai_settings: dict[str, Any]) -> "TextGenerator":
        base_url = get_env("AI_BASE_URL") or None
        client = OpenAI(api_key=get_env("AI_API_KEY") or get_env("OPENAI_API_KEY"), base_url=base_url)
        return cls(
            client,
            model=ai_settings.get("model", "gpt-4o-mini"),
            embedding_model=ai_settings.get("embedding_model", "text-embedding-3-small"),
            embedding_dimensions=int(ai_settings.get("embedding_dimensions", 768)),
            max_tokens=int(ai_settings.get("max_tokens", 1024)),
            temperature=float(ai_settings.get("temperature", 0.2)),
        )

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(api_key=get_env("AI_API_KEY") or get_env("OPENAI_API_KEY"))
        return self._client

    def _chat(self, messages: list[dict]) -> str:
        r = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )
        return (r.choices[0].message.content or "").strip()

    def generate(self, prompt: str, language: str = "en", cancel: CancelToken | None = None) -> str:
        lang = LANGUAGE_NAMES.get(language.lower(), language)
        messages = [
            {"role": "system", "content": f"Respond in {lang}."},
            {"role": "user", "content": prompt},
        ]
        text = self.policy.call(self._chat, messages, cancel=cancel)
        if not text:
            raise ValueError("Text generation returned an empty response")
        return text

    def _embed(self, text: str) -> list[float]:
        r = self.client.embeddings.create(
            model=self.embedding_model,
            input=text,
            dimensions=self.embedding_dimensions,
        )
        return list(r.data[0].embedding)

    def embed(self, text: str, cancel: CancelToken | None = None) -> list[float]:
        vector = self.policy.call(self._embed, text, cancel=cancel)
        if len(vector) != self.embedding_dimensions:
            raise ValueError(
                f"Embedding has {len(vector)} dimensions, expected {self.embedding_dimensions}"
            )
        log.debug("Generated embedding with %d dimensions", len(vector))
        return vector
