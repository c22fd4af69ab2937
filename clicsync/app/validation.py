from __future__ import annotations

from typing import Annotated, Any, Optional

from pydantic import BeforeValidator, StringConstraints


def _to_stripped_str(v):
    if v is None:
        return v
    return str(v).strip()


def parse_since_version(raw: Optional[str]) -> Optional[int]:
    """`sinceVersion` query value; anything non-numeric means "send everything"."""
    text = (raw or "").strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        try:
            return int(float(text))
        except ValueError:
            return None


# Terminal ids are opaque strings chosen by the terminal (e.g. TERM-1712345678901-ab12c).
TerminalId = Annotated[
    str,
    BeforeValidator(_to_stripped_str),
    StringConstraints(min_length=1, max_length=128),
]

# Error payloads from terminals are free-form (string or structured object).
ErrorDetail = Annotated[Any, BeforeValidator(lambda v: v if isinstance(v, (dict, list)) or v is None else str(v))]
