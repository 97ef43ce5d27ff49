import html
from typing import Optional

import bleach


def clean_text(value: Optional[str]) -> str:
    """Strip markup from free text (client names, descriptions, notes).

    - Removes NULL bytes
    - Strips HTML tags using bleach.clean(..., strip=True)
    - Trims whitespace
    """
    if value is None:
        return ""
    val = value.replace("\x00", "")
    # bleach escapes bare & and <; the API returns JSON so undo the escaping
    val = html.unescape(bleach.clean(val, tags=[], strip=True))
    return val.strip()


def like_pattern(value: Optional[str]) -> str:
    """Substring LIKE pattern for the cleaned search text, matched literally (escape char is a backslash)."""
    val = clean_text(value)
    if not val:
        return ""
    val = val.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{val}%"
