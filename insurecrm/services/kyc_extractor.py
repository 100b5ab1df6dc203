"""
KYC extraction

Best-effort parsing of a customer's name, email and phone number out of free
text ("My name is Jane Doe, email jane@example.com, phone 555-123-4567").
"""
import re
from dataclasses import dataclass
from typing import Optional

from insurecrm.utils.phone import normalize_phone


@dataclass
class ExtractedIdentity:
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    @property
    def has_personal_info(self) -> bool:
        return bool(self.name or self.email or self.phone)

    def merge(self, other: "ExtractedIdentity") -> "ExtractedIdentity":
        """Fill gaps from ``other`` without overwriting what is already known"""
        return ExtractedIdentity(
            name=self.name or other.name,
            email=self.email or other.email,
            phone=self.phone or other.phone,
        )


class KYCExtractor:
    EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
    # 7+ digits allowing spaces, dots, dashes, parentheses and a leading +
    PHONE_PATTERN = re.compile(r"(?<!\w)(\+?\d[\d\s().-]{5,}\d)(?!\w)")
    NAME_PATTERNS = [
        re.compile(r"\bmy name is\s+([A-Za-z][A-Za-z'-]*(?:\s+[A-Za-z][A-Za-z'-]*){0,2})", re.IGNORECASE),
        re.compile(r"\bname\s*[:=]\s*([A-Za-z][A-Za-z'-]*(?:\s+[A-Za-z][A-Za-z'-]*){0,2})", re.IGNORECASE),
        re.compile(r"\b(?:i am|i'm|this is)\s+([A-Z][a-z'-]+(?:\s+[A-Z][a-z'-]+){0,2})"),
    ]
    # Words that end a captured name ("my name is Jane and ...")
    NAME_STOPWORDS = {"and", "email", "phone", "my", "from", "here", "with", "number"}

    def extract_email(self, text: str) -> Optional[str]:
        match = self.EMAIL_PATTERN.search(text or "")
        return match.group(0).lower() if match else None

    def extract_phone(self, text: str) -> Optional[str]:
        # Skip digits that belong to an email address
        text = self.EMAIL_PATTERN.sub(" ", text or "")
        for match in self.PHONE_PATTERN.finditer(text):
            digits = normalize_phone(match.group(1))
            if digits and len(digits) >= 7:
                return digits
        return None

    def extract_name(self, text: str) -> Optional[str]:
        for pattern in self.NAME_PATTERNS:
            match = pattern.search(text or "")
            if not match:
                continue
            words = []
            for word in match.group(1).split():
                if word.lower() in self.NAME_STOPWORDS:
                    break
                words.append(word)
            if words:
                return " ".join(word.capitalize() for word in words)
        return None

    def extract(self, text: str) -> ExtractedIdentity:
        return ExtractedIdentity(
            name=self.extract_name(text),
            email=self.extract_email(text),
            phone=self.extract_phone(text),
        )
