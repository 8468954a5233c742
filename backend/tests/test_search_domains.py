"""
Tests for the search domain tracker.
"""

import json

from routers.chat_orchestration.search_domains import SearchDomainTracker, collect_urls, domain_from_url


class TestDomainFromUrl:
    """Test URL to domain reduction."""

    def test_strips_www_and_lowercases(self):
        assert domain_from_url("https://WWW.Example.COM/path?q=1") == "example.com"

    def test_bare_host(self):
        """A host without a scheme is still parsed."""
        assert domain_from_url("docs.python.org/3/") == "docs.python.org"

    def test_rejects_junk(self):
        """Empty, non-string and dotless values are not domains."""
        assert domain_from_url("") is None
        assert domain_from_url(None) is None
        assert domain_from_url("localhost") is None


class TestCollectUrls:
    """Test payload walking."""

    def test_nested_sources_in_order(self):
        """URLs under results and action.sources are all found, breadth first."""
        payload = {
            "action": {"query": "q", "sources": [{"url": "https://a.com/1"}, {"url": "https://b.com/2"}]},
            "results": [{"link": "https://c.com"}],
        }
        assert collect_urls(payload) == ["https://c.com", "https://a.com/1", "https://b.com/2"]

    def test_json_encoded_text(self):
        """URLs inside JSON-encoded text content are found too."""
        payload = {"content": [{"type": "text", "text": json.dumps([{"url": "https://d.com/x"}])}]}
        assert collect_urls(payload) == ["https://d.com/x"]

    def test_plain_text_ignored(self):
        assert collect_urls({"text": "see https://e.com"}) == []
        assert collect_urls(None) == []


class TestTracker:
    """Test first-seen ordering."""

    def test_each_domain_reported_once(self):
        """Repeated domains are only new the first time."""
        tracker = SearchDomainTracker()
        assert tracker.add("https://www.a.com/x") == "a.com"
        assert tracker.add("https://a.com/y") is None
        assert tracker.add_many(["https://b.com", "https://a.com", "https://c.com"]) == ["b.com", "c.com"]
        assert tracker.domains == ["a.com", "b.com", "c.com"]
        assert len(tracker) == 3

    def test_payload(self):
        """add_from_payload reports only new domains."""
        tracker = SearchDomainTracker()
        tracker.add("https://a.com")
        new = tracker.add_from_payload({"sources": [{"url": "https://a.com/1"}, {"url": "https://z.org"}]})
        assert new == ["z.org"]

    def test_trackers_are_independent(self):
        """State never leaks between trackers."""
        first = SearchDomainTracker()
        first.add("https://a.com")
        assert SearchDomainTracker().domains == []
