from __future__ import annotations

import logging
from dataclasses import dataclass

from openai import AsyncOpenAI, OpenAIError

from appeal_portal.config import settings
from appeal_portal.db.enums import AiFlag
from appeal_portal.db.models import Appeal

logger = logging.getLogger(__name__)

INSIGHT_UNAVAILABLE_TEXT = "AI insight is currently unavailable."

INSIGHT_SYSTEM_PROMPT = (
    "You are a senior community admin. Identify lies or genuine regret. "
    "Provide a 2-sentence verdict."
)

CLASSIFY_SYSTEM_PROMPT = (
    "You triage ban appeals for a game community. Reply with exactly one word: "
    "'spam' if the appeal is low-effort, abusive or not a real appeal, otherwise 'clean'."
)


@dataclass(slots=True)
class AppealInsight:
    text: str
    available: bool


def build_appeal_prompt(appeal: Appeal) -> str:
    return (
        "Analyze this ban appeal for honesty and remorse. Be direct.\n\n"
        f"Username: {appeal.username}\n"
        f"Reason: {appeal.reason}\n"
        f"Explanation: {appeal.explanation}"
    )


def parse_ai_flag(raw: str | None) -> AiFlag | None:
    if not raw:
        return None
    word = raw.strip().strip(".!'\"").lower()
    if word == AiFlag.SPAM:
        return AiFlag.SPAM
    if word == AiFlag.CLEAN:
        return AiFlag.CLEAN
    return None


class AppealInsightService:
    """Advisory assessments of appeals backed by a hosted chat-completion model.

    Every failure degrades to an "unavailable" result; nothing here raises into
    the lifecycle manager.
    """

    def __init__(
        self,
        client: AsyncOpenAI | None,
        *,
        model: str,
        max_tokens: int = 200,
    ) -> None:
        self._client = client
        self._model = model
        self._max_tokens = max(max_tokens, 16)

    @classmethod
    def from_settings(cls) -> AppealInsightService:
        client = None
        api_key = settings.openai_api_key.strip()
        if api_key:
            client = AsyncOpenAI(api_key=api_key, timeout=settings.insight_timeout_seconds)
        else:
            logger.warning("AI insight disabled (no OPENAI_API_KEY configured)")
        return cls(client, model=settings.insight_model, max_tokens=settings.insight_max_tokens)

    @property
    def enabled(self) -> bool:
        return self._client is not None

    async def _complete(self, system_prompt: str, user_prompt: str, *, max_tokens: int) -> str | None:
        if self._client is None:
            return None
        response = await self._client.chat.completions.create(
            model=self._model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            max_tokens=max_tokens,
            temperature=0.3,
        )
        if response.choices and response.choices[0].message:
            generated = response.choices[0].message.content
            if generated:
                return generated.strip()
        return None

    async def assess(self, appeal: Appeal) -> AppealInsight:
        try:
            text = await self._complete(
                INSIGHT_SYSTEM_PROMPT,
                build_appeal_prompt(appeal),
                max_tokens=self._max_tokens,
            )
        except (OpenAIError, TimeoutError) as exc:
            logger.warning("appeal_insight_failed appeal_id=%s error=%s", appeal.id, exc)
            return AppealInsight(text=INSIGHT_UNAVAILABLE_TEXT, available=False)

        if not text:
            return AppealInsight(text=INSIGHT_UNAVAILABLE_TEXT, available=False)
        return AppealInsight(text=text, available=True)

    async def classify(self, appeal: Appeal) -> AiFlag | None:
        try:
            text = await self._complete(CLASSIFY_SYSTEM_PROMPT, build_appeal_prompt(appeal), max_tokens=4)
        except (OpenAIError, TimeoutError) as exc:
            logger.warning("appeal_classify_failed appeal_id=%s error=%s", appeal.id, exc)
            return None
        return parse_ai_flag(text)
