import re
from typing import Optional

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """Digits only, as WhatsApp reports sender ids ("+1 (555) 010-2030" -> "15550102030")"""
    if not phone:
        return None
    digits = _NON_DIGITS.sub("", phone)
    return digits or None
