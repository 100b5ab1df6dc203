"""
Escalation classifier

Two independent signals decide whether a conversation goes to a human:
the customer's message matches the escalation lexicon, or the AI's reply
sounds uncertain (uncertainty lexicon or a confidence below the threshold).
"""
import re
from dataclasses import dataclass, field
from typing import List, Optional

CONFIDENCE_THRESHOLD = 0.5

ESCALATION_KEYWORDS = [
    "complaint", "angry", "frustrated", "cancel", "refund", "billing", "payment",
    "dispute", "legal", "lawyer", "sue", "claim denied", "supervisor", "manager",
    "human", "agent", "speak to someone", "not satisfied", "terrible", "awful",
    "scam", "fraud",
]

UNCERTAINTY_PHRASES = [
    "i don't know", "i'm not sure", "i cannot", "i'm unable",
    "let me connect you", "speak with an agent",
]


def _word_pattern(phrase: str) -> re.Pattern:
    return re.compile(r"\b" + re.escape(phrase) + r"\b")


# Whole words only: "sue" must not match "issue"
ESCALATION_PATTERNS = [(keyword, _word_pattern(keyword)) for keyword in ESCALATION_KEYWORDS]
UNCERTAINTY_PATTERNS = [_word_pattern(phrase) for phrase in UNCERTAINTY_PHRASES]


@dataclass
class EscalationDecision:
    should_escalate: bool
    reasons: List[str] = field(default_factory=list)
    matched_keywords: List[str] = field(default_factory=list)

    @property
    def reason(self) -> Optional[str]:
        return "; ".join(self.reasons) if self.reasons else None


class EscalationClassifier:
    def __init__(self, threshold: float = CONFIDENCE_THRESHOLD):
        self.threshold = threshold

    def customer_keywords(self, message: str) -> List[str]:
        text = (message or "").lower()
        return [keyword for keyword, pattern in ESCALATION_PATTERNS if pattern.search(text)]

    def reply_is_uncertain(self, reply: str) -> bool:
        text = (reply or "").lower()
        return any(pattern.search(text) for pattern in UNCERTAINTY_PATTERNS)

    def classify(self, customer_message: str, ai_reply: str, confidence: float) -> EscalationDecision:
        decision = EscalationDecision(should_escalate=False)

        matched = self.customer_keywords(customer_message)
        if matched:
            decision.should_escalate = True
            decision.matched_keywords = matched
            decision.reasons.append(f"customer requested escalation ({', '.join(matched)})")

        if self.reply_is_uncertain(ai_reply):
            decision.should_escalate = True
            decision.reasons.append("AI reply expressed uncertainty")
        elif confidence < self.threshold:
            decision.should_escalate = True
            decision.reasons.append(f"AI confidence {confidence:.2f} below {self.threshold}")

        return decision
