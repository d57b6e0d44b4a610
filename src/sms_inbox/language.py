from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import Any, Final, Protocol

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from .config import Settings
from .errors import TranslationFailed

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGE: Final[str] = "en"

LANGUAGE_CODE_RE = re.compile(r"^[a-z]{2}$")

LANGUAGE_NAMES: Final[dict[str, str]] = {
    "en": "English",
    "es": "Spanish",
    "so": "Somali",
    "ar": "Arabic",
    "fr": "French",
    "de": "German",
    "zh": "Chinese",
    "hi": "Hindi",
    "pt": "Portuguese",
    "ru": "Russian",
    "ja": "Japanese",
    "ko": "Korean",
    "vi": "Vietnamese",
    "th": "Thai",
    "tr": "Turkish",
    "pl": "Polish",
    "it": "Italian",
    "nl": "Dutch",
    "sv": "Swedish",
    "da": "Danish",
    "no": "Norwegian",
    "fi": "Finnish",
}

DETECTION_SYSTEM_PROMPT: Final[str] = (
    "Detect the language of the user's text message and respond with ONLY the "
    'ISO 639-1 language code (e.g. "en" for English, "es" for Spanish, '
    '"so" for Somali, "ar" for Arabic). No punctuation, no explanation.'
)

TRANSLATION_SYSTEM_PROMPT: Final[str] = (
    "You are a professional translator for a volunteer-run community text line. "
    "Translate the user's message accurately and faithfully, without adding, removing, "
    "or interpreting information. Maintain the sender's tone and level of formality. "
    "Respond with ONLY the translated text, no explanations or additional context."
)


class ChatModel(Protocol):
    def invoke(self, input: list[BaseMessage]) -> Any: ...


def build_translation_model(settings: Settings) -> ChatOpenAI:
    """
    Create the ChatOpenAI model used for detection and translation.

    Relies on the OPENAI_API_KEY environment variable. The timeout is the
    per-call deadline; hitting it is an ordinary failure of that call.
    """
    return ChatOpenAI(
        model=settings.translation_model,
        temperature=0.0,
        max_tokens=1000,  # type: ignore[call-arg]
        timeout=settings.translation_timeout_seconds,
        max_retries=1,
    )


class LazyChatModel:
    """Build the underlying model on first use so startup never needs API credentials."""

    def __init__(self, factory: Callable[[], ChatModel]) -> None:
        self._factory = factory
        self._model: ChatModel | None = None

    def invoke(self, input: list[BaseMessage]) -> Any:
        if self._model is None:
            self._model = self._factory()
        return self._model.invoke(input)


def _response_text(response: Any) -> str:
    """Pull plain text out of a chat response (string or content blocks)."""
    content: str | list[Any] = response.content
    if isinstance(content, str):
        return content.strip()
    parts: list[str] = []
    for block in content:
        if isinstance(block, dict) and "text" in block:
            parts.append(str(block["text"]))
        elif isinstance(block, str):
            parts.append(block)
    return "".join(parts).strip()


def language_name(code: str) -> str:
    return LANGUAGE_NAMES.get(code, code)


class TranslationAdapter:
    """
    Language detection and translation over a chat model.

    Detection never raises: any failure degrades to English. Translation
    failures raise ``TranslationFailed`` so each caller picks its own policy.
    """

    def __init__(self, model: ChatModel) -> None:
        self.model = model

    def detect_with_reason(self, text: str) -> tuple[str, str | None]:
        """Return ``(language, failure_reason)``; the reason is None on success."""
        messages: list[BaseMessage] = [
            SystemMessage(content=DETECTION_SYSTEM_PROMPT),
            HumanMessage(content=text),
        ]
        try:
            raw = _response_text(self.model.invoke(messages))
        except Exception as e:  # any model/transport failure degrades to English
            logger.warning(f"Language detection failed: {e}")
            return DEFAULT_LANGUAGE, f"Language detection failed: {e}"

        code = raw.strip().strip("\"'.").lower()
        if not LANGUAGE_CODE_RE.match(code):
            logger.warning(f"Unrecognised language code from model: {raw!r}")
            return DEFAULT_LANGUAGE, f"Unrecognised language code: {raw[:32]!r}"
        return code, None

    def detect(self, text: str) -> str:
        return self.detect_with_reason(text)[0]

    def translate(self, text: str, source: str, target: str) -> str:
        """
        Translate ``text`` from ``source`` to ``target``.

        If source == target, returns the text unchanged without calling the model.
        """
        if source == target:
            return text

        direction_instruction = (
            f"Translate from {language_name(source)} into {language_name(target)}."
        )
        messages: list[BaseMessage] = [
            SystemMessage(content=TRANSLATION_SYSTEM_PROMPT + " " + direction_instruction),
            HumanMessage(content=text),
        ]
        try:
            translated = _response_text(self.model.invoke(messages))
        except Exception as e:
            logger.error(f"Translation {source}->{target} failed: {e}")
            raise TranslationFailed(f"Translation failed: {e}") from e

        if not translated:
            logger.error(f"Translation {source}->{target} returned no text")
            raise TranslationFailed("Translation returned no text")
        return translated
