"""
Display helpers for the connection screen.
"""
import re
from typing import Optional


def format_phone_number(phone: Optional[str]) -> Optional[str]:
    """
    Format a WhatsApp number for display.

    Brazilian numbers (13 digits starting with 55) become
    `+55 (DD) XXXXX-XXXX`; other numbers with 10+ digits become
    `+CC REST`. Anything shorter is returned unchanged.
    """
    if not phone:
        return None

    cleaned = re.sub(r"\D", "", phone)

    if len(cleaned) == 13 and cleaned.startswith("55"):
        return f"+55 ({cleaned[2:4]}) {cleaned[4:9]}-{cleaned[9:]}"

    if len(cleaned) >= 10:
        return f"+{cleaned[:2]} {cleaned[2:]}"

    return phone
