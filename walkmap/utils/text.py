import re
import unicodedata
from typing import Optional
from urllib.parse import urlparse

MAX_TEXT_LENGTH = 512

_CONTROL_CHARS = re.compile(r"[\u0000-\u0008\u000B\u000C\u000E-\u001F\u007F]")
_ZERO_WIDTH = re.compile(r"[\u200B-\u200D\uFEFF]")


def clean_text(value) -> str:
    """NFKC-normalize free text, drop control/zero-width chars, collapse whitespace and cap length."""
    if value is None:
        return ''
    txt = unicodedata.normalize('NFKC', str(value))
    txt = _CONTROL_CHARS.sub('', txt)
    txt = _ZERO_WIDTH.sub('', txt)
    txt = re.sub(r"\s+", " ", txt).strip()
    return txt[:MAX_TEXT_LENGTH]


def clean_url(value) -> Optional[str]:
    """Return the cleaned URL when it is http(s), else None."""
    txt = clean_text(value)
    if not txt:
        return None
    parsed = urlparse(txt)
    if parsed.scheme in ('http', 'https') and parsed.netloc:
        return txt
    return None
