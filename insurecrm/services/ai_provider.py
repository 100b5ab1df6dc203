"""
AI completion provider (OpenAI)

Wraps chat completions for insurance customer service. Provider failures are
mapped to ``AIProviderError`` with a neutral customer-facing message; raw
provider errors never reach the customer.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

import openai
from openai import AsyncOpenAI

from insurecrm.core.config import get_settings

logger = logging.getLogger(__name__)

HISTORY_WINDOW = 6

FALLBACK_CUSTOMER_MESSAGE = (
    "I apologize, but I cannot process your request right now. "
    "Let me connect you with a human agent."
)

BASE_SYSTEM_PROMPT = """You are a helpful customer service assistant for an insurance agency.
Answer questions about insurance quotes, policies, claims and billing clearly and politely.
Keep answers short (2-4 sentences) and never invent policy numbers, prices or coverage details.
If you do not know the answer, or the customer asks for a person, say that you will connect them with an agent."""


class AIErrorKind(str, Enum):
    QUOTA = "quota"
    RATE_LIMIT = "rate_limit"
    INVALID_KEY = "invalid_key"
    UNAVAILABLE = "unavailable"
    NOT_CONFIGURED = "not_configured"
    UNKNOWN = "unknown"


class AIProviderError(Exception):
    def __init__(self, kind: AIErrorKind, detail: str = ""):
        super().__init__(f"AI provider error ({kind.value}): {detail}")
        self.kind = kind
        self.detail = detail

    @property
    def customer_message(self) -> str:
        return FALLBACK_CUSTOMER_MESSAGE


@dataclass
class AICompletion:
    text: str
    confidence: float
    finish_reason: Optional[str]
    intent: str


INTENT_KEYWORDS = {
    "get_quote": ["quote", "price", "cost", "how much", "premium", "rate"],
    "file_claim": ["claim", "accident", "damage", "stolen", "file a claim"],
    "policy_inquiry": ["policy", "coverage", "covered", "deductible", "renew"],
    "billing_inquiry": ["bill", "billing", "payment", "invoice", "charge", "pay"],
    "greeting": ["hello", "hi", "hey", "good morning", "good afternoon", "good evening"],
}


def detect_intent(message: str) -> str:
    text = (message or "").lower()
    for intent, keywords in INTENT_KEYWORDS.items():
        if any(keyword in text for keyword in keywords):
            return intent
    return "general_inquiry"


def score_confidence(text: str, finish_reason: Optional[str]) -> float:
    """Heuristic: a complete, substantive answer scores highest"""
    if finish_reason == "stop" and len(text or "") > 50:
        return 0.8
    if finish_reason == "length":
        return 0.6
    return 0.4


def build_system_prompt(knowledge_base: Optional[str] = None) -> str:
    if not knowledge_base:
        return BASE_SYSTEM_PROMPT
    return (
        f"{BASE_SYSTEM_PROMPT}\n\n"
        f"Use the following company knowledge base when it is relevant:\n{knowledge_base}"
    )


def _map_error(error: Exception) -> AIProviderError:
    if isinstance(error, openai.RateLimitError):
        code = getattr(error, "code", None)
        if code == "insufficient_quota" or "quota" in str(error).lower():
            return AIProviderError(AIErrorKind.QUOTA, str(error))
        return AIProviderError(AIErrorKind.RATE_LIMIT, str(error))
    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return AIProviderError(AIErrorKind.INVALID_KEY, str(error))
    if isinstance(error, (openai.APIConnectionError, openai.InternalServerError)):
        return AIProviderError(AIErrorKind.UNAVAILABLE, str(error))
    return AIProviderError(AIErrorKind.UNKNOWN, str(error))


class OpenAIProvider:
    def __init__(self, api_key: Optional[str] = None, client: Optional[AsyncOpenAI] = None):
        self.settings = get_settings()
        api_key = api_key or self.settings.openai_api_key
        if client is not None:
            self.client = client
        elif api_key:
            self.client = AsyncOpenAI(api_key=api_key, timeout=self.settings.openai_timeout)
        else:
            self.client = None
            logger.warning("OpenAI API key not configured - AI replies will escalate to agents")

    async def complete(
        self,
        user_message: str,
        history: Optional[List[Dict[str, str]]] = None,
        knowledge_base: Optional[str] = None,
    ) -> AICompletion:
        """
        Args:
            user_message: The customer's latest message
            history: Prior turns, oldest first, as {"role", "content"} dicts
            knowledge_base: Tenant reference text for the system prompt

        Raises:
            AIProviderError: provider unavailable, misconfigured or out of quota
        """
        if self.client is None:
            raise AIProviderError(AIErrorKind.NOT_CONFIGURED, "no API key")

        messages = [{"role": "system", "content": build_system_prompt(knowledge_base)}]
        messages.extend((history or [])[-HISTORY_WINDOW:])
        messages.append({"role": "user", "content": user_message})

        try:
            response = await self.client.chat.completions.create(
                model=self.settings.openai_model,
                messages=messages,
                temperature=self.settings.openai_temperature,
                max_tokens=self.settings.openai_max_tokens,
            )
        except openai.OpenAIError as e:
            mapped = _map_error(e)
            logger.error(f"OpenAI completion failed: {mapped}")
            raise mapped from e

        choice = response.choices[0]
        text = (choice.message.content or "").strip()
        finish_reason = choice.finish_reason

        return AICompletion(
            text=text,
            confidence=score_confidence(text, finish_reason),
            finish_reason=finish_reason,
            intent=detect_intent(user_message),
        )
