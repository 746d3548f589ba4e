from __future__ import annotations

import re
from urllib.parse import urlparse


def is_valid_url(url: str) -> bool:
    """Basic URL validation."""
    try:
        result = urlparse(url)
        return all([result.scheme in ("http", "https"), result.netloc])
    except ValueError:
        return False


def extract_domain(url: str) -> str:
    """Lowercase host of a URL, or an empty string."""
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def site_name_from_url(url: str) -> str | None:
    host = extract_domain(url)
    if not host:
        return None
    return host[4:] if host.startswith("www.") else host


def host_matches(host: str, domains: list[str]) -> bool:
    """True when host equals or is a subdomain of any entry in domains."""
    host = host.lower().rstrip(".")
    for domain in domains:
        domain = domain.lower().strip().lstrip(".")
        if domain and (host == domain or host.endswith("." + domain)):
            return True
    return False


def clean_url_for_scoring(url: str) -> str:
    """Domain + path with separators replaced by spaces, for lexical ranking."""
    if not url:
        return ""
    parsed = urlparse(url)
    cleaned = f"{parsed.netloc or ''} {parsed.path or ''}".lower()
    cleaned = re.sub(r"[/\-_.]", " ", cleaned)
    return re.sub(r"\s+", " ", cleaned).strip()
