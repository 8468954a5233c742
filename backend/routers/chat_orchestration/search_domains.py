"""
Search Domain Tracker - distinct source domains seen during one request.

Walks search tool payloads for URLs, reduces them to domains and remembers
which have already been reported. One tracker per Streaming Engine
instance; state is never shared between requests.
"""

import json
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Set
from urllib.parse import urlparse

# Keys that may hold nested search results in provider payloads
_NESTED_KEYS = ("results", "action", "actions", "output", "data", "metadata", "sources", "content", "annotations")


def _safe_json(value: str) -> Any:
    text = value.strip()
    if not text or text[0] not in "[{":
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


def collect_urls(payload: Any) -> List[str]:
    """Collect URLs from a search tool payload in document order.

    Args:
        payload: Dicts/lists/JSON strings as emitted by the provider

    Returns:
        URLs found under `url`/`link` keys, including inside JSON-encoded text
    """
    urls: List[str] = []
    queue = deque([payload] if payload else [])
    while queue:
        item = queue.popleft()
        if not item:
            continue
        if isinstance(item, list):
            queue.extend(item)
        elif isinstance(item, dict):
            candidate = item.get("url") if isinstance(item.get("url"), str) else item.get("link")
            if isinstance(candidate, str):
                urls.append(candidate)
            for key in _NESTED_KEYS:
                if item.get(key):
                    queue.append(item[key])
            if isinstance(item.get("text"), str):
                parsed = _safe_json(item["text"])
                if parsed is not None:
                    queue.append(parsed)
        elif isinstance(item, str):
            parsed = _safe_json(item)
            if parsed is not None:
                queue.append(parsed)
    return urls


def domain_from_url(url: str) -> Optional[str]:
    """Host of a URL, lowercased and without a leading `www.`."""
    if not url or not isinstance(url, str):
        return None
    candidate = url.strip()
    if "://" not in candidate:
        candidate = f"https://{candidate}"
    try:
        host = urlparse(candidate).hostname
    except ValueError:
        return None
    if not host or "." not in host:
        return None
    host = host.lower()
    if host.startswith("www."):
        host = host[4:]
    return host


@dataclass
class SearchDomainTracker:
    """First-seen ordered set of source domains for a single request."""

    domains: List[str] = field(default_factory=list)
    _seen: Set[str] = field(default_factory=set, repr=False)

    def add(self, value: str) -> Optional[str]:
        """Record a domain or URL.

        Returns:
            The domain if it had not been seen before, else None
        """
        domain = domain_from_url(value)
        if domain is None or domain in self._seen:
            return None
        self._seen.add(domain)
        self.domains.append(domain)
        return domain

    def add_many(self, values: Iterable[str]) -> List[str]:
        """Record several domains/URLs; returns the new ones in order."""
        new = []
        for value in values:
            domain = self.add(value)
            if domain:
                new.append(domain)
        return new

    def add_from_payload(self, payload: Any) -> List[str]:
        """Record every URL in a tool payload; returns the new domains in order."""
        return self.add_many(collect_urls(payload))

    def __len__(self) -> int:
        return len(self.domains)
