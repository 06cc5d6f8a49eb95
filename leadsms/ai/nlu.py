from __future__ import annotations

import json
from typing import Any, Optional

from openai import OpenAI

from leadsms.config import settings
from leadsms.runtime import get_logger
from leadsms.schema import NLU_INTENTS, UNKNOWN_INTENT, Stage

logger = get_logger(__name__)

SYSTEM_PROMPT = (
    'You are a classifier. Output STRICT JSON with keys "intent" and "slots".\n'
    "Allowed intents:\n"
    + "".join(f"- {name}\n" for name in NLU_INTENTS)
    + "\nRules:\n"
    '- If message includes new photos, prefer "ack_photos".\n'
    '- If user asks for scheduling options, intent="options".\n'
    '- If asking about price/cost, intent="price_question".\n'
    '- If epoxy mentioned, intent="epoxy".\n'
    '- If says thanks, intent="thanks".\n'
    '- If "stop", "unsubscribe", "remove me", intent="unsubscribe".\n'
    '- Else "unknown".\n'
    "No commentary. JSON only."
)


class OpenAIIntentClassifier:
    """Closed-set intent labels from a chat completion in JSON mode. Never raises."""

    def __init__(self, client: Optional[Any] = None, model: Optional[str] = None) -> None:
        s = settings()
        self.model = model or s.OPENAI_CLASSIFIER_MODEL
        if client is not None:
            self.client = client
        elif s.OPENAI_API_KEY:
            self.client = OpenAI(api_key=s.OPENAI_API_KEY, timeout=s.OPENAI_TIMEOUT)
        else:
            self.client = None

    def classify(self, text: str, stage: Optional[Stage] = None) -> str:
        if self.client is None:
            return UNKNOWN_INTENT

        stage_label = stage.value if stage else "unknown"
        try:
            resp = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": f"Stage: {stage_label}\nMessage: {text or ''}"},
                ],
                response_format={"type": "json_object"},
                temperature=0,
            )
            raw = (resp.choices[0].message.content if resp and resp.choices else None) or ""
            parsed = json.loads(raw)
        except Exception as exc:
            logger.warning("Intent classification failed: %s", exc)
            return UNKNOWN_INTENT

        intent = parsed.get("intent") if isinstance(parsed, dict) else None
        if not isinstance(intent, str) or intent not in NLU_INTENTS:
            return UNKNOWN_INTENT
        return intent
