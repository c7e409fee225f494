"""
src/songforge/cookies.py

Raw cookie strings ("a=1; b=2") <-> requests cookie jars.

Session credentials are stored as a single raw cookie string per
provider/account (see SessionStore) and loaded into the client's
requests.Session jar on start.
"""

from __future__ import annotations

from typing import List, Tuple
from urllib.parse import quote

from requests.cookies import RequestsCookieJar

from songforge.errors import ProviderError


def parse_cookies(raw: str) -> List[Tuple[str, str]]:
    out: List[Tuple[str, str]] = []
    for part in (raw or "").split(";"):
        part = part.strip()
        if not part:
            continue
        if "=" not in part:
            raise ProviderError(f"invalid cookie: {part!r}")
        name, value = part.split("=", 1)
        if '"' in value:
            value = quote(value, safe="")
        out.append((name.strip(), value.strip()))
    return out


def _matches(cookie_domain: str, domain: str) -> bool:
    d = (cookie_domain or "").lstrip(".")
    host = domain.lstrip(".")
    return not d or host == d or host.endswith("." + d)


def load_cookies(jar: RequestsCookieJar, raw: str, domain: str) -> int:
    pairs = parse_cookies(raw)
    for name, value in pairs:
        jar.set(name, value, domain=domain, path="/")
    return len(pairs)


def dump_cookies(jar: RequestsCookieJar, domain: str) -> str:
    return "; ".join(f"{c.name}={c.value}" for c in jar if _matches(c.domain, domain))


def chunk_cookie(prefix: str, value: str, size: int = 3180) -> List[Tuple[str, str]]:
    """Split a long value into prefix.0, prefix.1, ... cookies of at most `size` chars."""
    if size < 1:
        raise ValueError("size must be >= 1")
    return [(f"{prefix}.{i}", value[off:off + size]) for i, off in enumerate(range(0, len(value), size))]


def join_chunks(jar: RequestsCookieJar, prefix: str, domain: str) -> str:
    chunks = []
    for c in jar:
        if not _matches(c.domain, domain) or not c.name.startswith(prefix + "."):
            continue
        suffix = c.name[len(prefix) + 1:]
        if suffix.isdigit():
            chunks.append((int(suffix), c.value or ""))
    return "".join(v for _, v in sorted(chunks))
