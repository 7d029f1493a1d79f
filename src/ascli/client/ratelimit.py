"""Parsing of the ``X-Rate-Limit`` response header.

App Store Connect reports quota state on every response, e.g.::

    X-Rate-Limit: user-hour-lim:3500;user-hour-rem:3499;

Each window appears as a ``<window>-lim`` / ``<window>-rem`` pair.
:func:`parse_rate_limit_header` is best effort: malformed tokens are skipped
one by one and nothing here ever raises, so a strange header can never block
a request.
"""

from __future__ import annotations

import re
from typing import Optional

from ascli.models import RateLimitInfo, RateLimitWindow

RATE_LIMIT_HEADER = "X-Rate-Limit"

_LIMIT_SUFFIX = "-lim"
_REMAINING_SUFFIX = "-rem"
_SEPARATORS = re.compile(r"[;,\n]")


def parse_rate_limit_header(value: Optional[str]) -> Optional[RateLimitInfo]:
    """Parse a rate-limit header value.

    Tokens are separated by ``;``, ``,`` or newlines and written as
    ``key:value`` or ``key=value``.

    Args:
        value: The raw header value (may be ``None``).

    Returns:
        The parsed windows, or ``None`` when the header is absent or holds
        no recognisable window.
    """
    raw = (value or "").strip()
    if not raw:
        return None

    windows: dict[str, RateLimitWindow] = {}
    for token in _SEPARATORS.split(raw):
        token = token.strip()
        if not token:
            continue
        sep = "=" if "=" in token and ":" not in token else ":"
        key, found, val = token.partition(sep)
        key, val = key.strip(), val.strip()
        if not found or not key or not val:
            continue
        # Plain ASCII digits only; int() also takes "3_500", "+5" and other scripts.
        digits = val[1:] if val.startswith("-") else val
        if not (digits.isascii() and digits.isdigit()):
            continue
        number = int(val)

        if key.endswith(_LIMIT_SUFFIX):
            window = windows.setdefault(key[: -len(_LIMIT_SUFFIX)], RateLimitWindow())
            window.limit = number
        elif key.endswith(_REMAINING_SUFFIX):
            window = windows.setdefault(key[: -len(_REMAINING_SUFFIX)], RateLimitWindow())
            window.remaining = number

    if not windows:
        return None
    return RateLimitInfo(windows=windows, raw=raw)
