import uuid
from typing import Any

from .settings import Settings

NO_NOTES = "No notes available"


class ChatAdapter:
    name = "base"

    async def reply(self, message: str, notes: str, request_id: str) -> str:
        raise NotImplementedError

    async def probe(self) -> str:
        raise NotImplementedError


class MockAdapter(ChatAdapter):
    name = "mock"

    async def reply(self, message: str, notes: str, request_id: str) -> str:  # noqa: ARG002
        context = "none" if notes == NO_NOTES else f"{len(notes)} chars"
        return f"**Echo:** {normalize(message)}\n\n* notes in context: {context}"

    async def probe(self) -> str:
        return "I am the offline mock assistant."


def build_adapter(settings: Settings) -> ChatAdapter:
    backend = settings.model_backend.strip().lower()
    if backend == "gemini":
        from .gemini import GeminiAdapter

        return GeminiAdapter(settings.gemini_api_keys, settings.gemini_model)
    return MockAdapter()


def normalize(text: str) -> str:
    return " ".join(text.split()).strip()


def render_notes(notes: Any) -> str:
    """Flatten the client's notes payload into the prompt's notes section.

    Accepts a preformatted string or a list of note objects with
    ``title``/``content`` keys.
    """
    if not notes:
        return NO_NOTES
    if isinstance(notes, str):
        return notes.strip() or NO_NOTES
    if not isinstance(notes, list):
        raise ValueError("notes must be a string or a list")
    blocks = []
    for note in notes:
        if isinstance(note, str):
            blocks.append(note.strip())
            continue
        if not isinstance(note, dict):
            raise ValueError("each note must be a string or an object")
        title = str(note.get("title") or "Untitled").strip()
        content = str(note.get("content") or "").strip()
        blocks.append(f"## {title}\n{content}" if content else f"## {title}")
    rendered = "\n\n".join(block for block in blocks if block)
    return rendered or NO_NOTES


def request_id() -> str:
    return uuid.uuid4().hex
