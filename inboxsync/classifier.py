"""Classification engine adapter backed by an OpenAI-compatible chat model."""

from __future__ import annotations

import json
import re

import structlog
from openai import AsyncOpenAI

from inboxsync_schema import Classification, ClassificationLabel, Message

from .config import ClassifierConfig
from .exceptions import ClassificationError
from .interfaces import Classifier

logger = structlog.get_logger()

SYSTEM_PROMPT = (
    "You are an email categorization assistant. Analyze emails and categorize them "
    "into one of these categories: Interested, Meeting Booked, Not Interested, Spam, "
    "Out of Office. Provide your reasoning and confidence level."
)

_JSON_RE = re.compile(r"\{.*\}", re.DOTALL)
_LABEL_RE = re.compile(
    "|".join(re.escape(label.value) for label in ClassificationLabel),
    re.IGNORECASE,
)
_PERCENT_RE = re.compile(r"(\d{1,3}(?:\.\d+)?)\s*%")

_LABELS_BY_NAME = {label.value.lower(): label for label in ClassificationLabel}


def build_prompt(message: Message, body_chars: int = 1000) -> str:
    body = message.body[:body_chars]
    return (
        "Analyze this email and categorize it into one of these categories:\n"
        "- Interested: Shows genuine interest in your product/service\n"
        "- Meeting Booked: Contains meeting scheduling or appointment booking\n"
        "- Not Interested: Explicitly declines or shows no interest\n"
        "- Spam: Unwanted promotional content or suspicious emails\n"
        "- Out of Office: Automated out-of-office replies\n"
        "\n"
        "Email Details:\n"
        f"From: {message.sender}\n"
        f"To: {', '.join(message.to)}\n"
        f"Subject: {message.subject}\n"
        f"Body: {body}\n"
        "\n"
        "Respond in this exact JSON format:\n"
        '{"category": "one of the categories above", '
        '"confidence": "number between 0-100", '
        '"reasoning": "brief explanation of your decision"}'
    )


def parse_classification(content: str) -> Classification:
    """Parse a model reply into a :class:`Classification`.

    Prefers the JSON object in the reply; falls back to the first label
    name and ``NN%`` found in free text.  Raises
    :class:`ClassificationError` when no known label can be found.
    """
    match = _JSON_RE.search(content)
    if match:
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            label = _LABELS_BY_NAME.get(str(data.get("category", "")).strip().lower())
            if label is not None:
                return Classification(
                    label=label,
                    confidence=_clamp(data.get("confidence")),
                    rationale=_optional_str(data.get("reasoning")),
                )

    label_match = _LABEL_RE.search(content)
    if label_match is None:
        raise ClassificationError(f"no known category in response: {content[:200]!r}")

    percent = _PERCENT_RE.search(content)
    return Classification(
        label=_LABELS_BY_NAME[label_match.group(0).lower()],
        confidence=_clamp(percent.group(1) if percent else 50),
        rationale="Parsed from unstructured response",
    )


def _clamp(value: object) -> float:
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0
    if number != number:  # NaN
        return 0.0
    return min(100.0, max(0.0, number))


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class OpenAIClassifier(Classifier):
    """Classify messages with a chat completion.

    Without an API key the classifier is unavailable and every call
    returns ``None``.
    """

    def __init__(self, config: ClassifierConfig, client: AsyncOpenAI | None = None) -> None:
        self._config = config
        self._client = client

    @property
    def available(self) -> bool:
        return self._client is not None

    async def start(self) -> None:
        if self._client is not None:
            return
        if self._config.api_key is None:
            logger.warning("classifier_disabled", reason="missing_api_key")
            return
        self._client = AsyncOpenAI(
            api_key=self._config.api_key.get_secret_value(),
            base_url=self._config.base_url,
            # The pipeline owns retries and timeouts
            max_retries=0,
        )
        logger.info("classifier_started", model=self._config.model)

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
            logger.info("classifier_stopped")

    async def classify(self, message: Message) -> Classification | None:
        if self._client is None:
            return None

        response = await self._client.chat.completions.create(
            model=self._config.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(message, self._config.body_chars)},
            ],
            max_tokens=self._config.max_tokens,
            temperature=self._config.temperature,
        )
        if not response.choices or not response.choices[0].message.content:
            raise ClassificationError("empty response from classifier")
        return parse_classification(response.choices[0].message.content)
