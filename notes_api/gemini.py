import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from .models import ChatAdapter

logger = logging.getLogger(__name__)

QUOTA_ERRORS = (google_exceptions.ResourceExhausted, google_exceptions.TooManyRequests)
GENERATION_CONFIG = {
    "temperature": 0.4,
    "top_k": 32,
    "top_p": 0.95,
    "max_output_tokens": 1024,
}
PROBE_PROMPT = "Hello, what is your name?"
NO_KEYS = "No Gemini API keys configured."
ALL_EXHAUSTED = "Gemini quota is exhausted for all keys. Please try again later."


class GeminiKeyExhausted(Exception):
    pass


class GeminiKeyPool:
    """Hands out one active API key and moves on when it runs out of quota.

    The active key is never one flagged as exhausted. Once every key is
    flagged the flags are cleared and the pool starts over from key #0.
    """

    def __init__(self, keys: list[str]):
        self._keys = [key.strip() for key in keys if key.strip()]
        self._exhausted: set[int] = set()
        self._active = 0
        self._lock = asyncio.Lock()

    def has_keys(self) -> bool:
        return bool(self._keys)

    def key_count(self) -> int:
        return len(self._keys)

    def exhausted_count(self) -> int:
        return len(self._exhausted)

    async def pick_key(self) -> str:
        async with self._lock:
            if not self._keys:
                raise GeminiKeyExhausted(NO_KEYS)
            return self._keys[self._active]

    async def mark_exhausted(self, key: str) -> bool:
        """Flag ``key`` as out of quota; True once every key is exhausted."""
        async with self._lock:
            if key not in self._keys:
                return False
            index = self._keys.index(key)
            self._exhausted.add(index)
            total = len(self._keys)
            if len(self._exhausted) == total:
                logger.warning("All %d Gemini keys exhausted, starting over from key #0", total)
                self._exhausted.clear()
                self._active = 0
                return True
            if index == self._active:
                self._active = next(
                    candidate
                    for candidate in ((index + step) % total for step in range(1, total))
                    if candidate not in self._exhausted
                )
                logger.info(
                    "Gemini key #%d exhausted (%d/%d), rotating to key #%d",
                    index,
                    len(self._exhausted),
                    total,
                    self._active,
                )
            return False


class GeminiAdapter(ChatAdapter):
    name = "gemini"

    def __init__(self, keys: list[str], model: str):
        self._pool = GeminiKeyPool(keys)
        self._model = model
        self._configure_lock = threading.Lock()

    async def reply(self, message: str, notes: str, request_id: str) -> str:  # noqa: ARG002
        return await self.generate(build_prompt(message, notes), GENERATION_CONFIG)

    async def probe(self) -> str:
        # plain model defaults, no tuned generation config
        return await self.generate(PROBE_PROMPT)

    async def generate(self, prompt: str, generation_config: dict | None = None) -> str:
        async def call(key: str) -> str:
            return await asyncio.to_thread(self._generate_text, key, prompt, generation_config)

        return await self._with_key(call)

    async def _with_key(self, func: Callable[[str], Awaitable[str]]) -> str:
        if not self._pool.has_keys():
            raise GeminiKeyExhausted(NO_KEYS)
        tried = 0
        while tried < self._pool.key_count():
            key = await self._pool.pick_key()
            try:
                return await func(key)
            except QUOTA_ERRORS as err:
                if await self._pool.mark_exhausted(key):
                    raise GeminiKeyExhausted(ALL_EXHAUSTED) from err
                tried += 1
        raise GeminiKeyExhausted(ALL_EXHAUSTED)

    def _generate_text(self, key: str, prompt: str, generation_config: dict | None = None) -> str:
        model = self._build_model(key, generation_config)
        response = model.generate_content(prompt)
        text = _extract_text(response)
        if text:
            return text
        raise RuntimeError("Gemini returned empty response.")

    def _build_model(self, key: str, generation_config: dict | None = None):
        with self._configure_lock:
            genai.configure(api_key=key)
            if generation_config is None:
                return genai.GenerativeModel(self._model)
            return genai.GenerativeModel(self._model, generation_config=generation_config)


def build_prompt(message: str, notes: str) -> str:
    return (
        "You are a helpful AI assistant for a note-taking app. Help the user with their notes.\n"
        "Be concise but helpful. Respond to queries about their notes with relevant information.\n"
        "\n"
        "When formatting your responses, please follow these guidelines:\n"
        "- Use markdown formatting for better readability\n"
        "- Use headings (# Heading) for section titles\n"
        "- Use bullet points (* item) or numbered lists (1. item) when listing items\n"
        "- Use **bold** for emphasis on important points\n"
        "- Use `code` formatting for any technical terms or code references\n"
        "- Structure longer responses with clear sections\n"
        "- For note summaries, highlight key points in **bold**\n"
        "\n"
        f"User's question: {message}\n"
        "\n"
        "User's notes:\n"
        f"{notes}\n"
    )


def _extract_text(response) -> str | None:
    text = getattr(response, "text", None)
    if text:
        return text
    candidates = getattr(response, "candidates", None)
    if not candidates:
        return None
    content = getattr(candidates[0], "content", None)
    parts = getattr(content, "parts", None) if content else None
    if not parts:
        return None
    collected = [value for part in parts if (value := getattr(part, "text", None))]
    return "".join(collected) if collected else None
