"""
Options and origin helpers
"""

import pytest

from eventsource import EventSourceOptions, origin_of


class TestOriginOf:
    @pytest.mark.parametrize(
        "url, origin",
        [
            ("http://test.local/stream?x=1", "http://test.local"),
            ("https://example.com:8443/a", "https://example.com:8443"),
            ("http://example.com:80/a", "http://example.com"),
            ("http://[::1]:8080/stream", "http://[::1]:8080"),
            ("https://[2001:db8::1]/stream", "https://[2001:db8::1]"),
        ],
    )
    def test_origin(self, url, origin):
        assert origin_of(url) == origin


class TestOptionsMerged:
    def test_alias_and_field_names(self):
        options = EventSourceOptions(headers={"X-A": "1"})
        merged = options.merged(reconnectInterval=5, with_credentials=True)
        assert merged.reconnect_interval == 5
        assert merged.with_credentials is True
        assert merged.headers == {"X-A": "1"}
        assert options.reconnect_interval == 1000

    def test_validates(self):
        with pytest.raises(ValueError):
            EventSourceOptions().merged(reconnect_interval=-5)

    def test_none_header_values_accepted(self):
        options = EventSourceOptions(headers={"X-None": None})
        assert options.headers == {"X-None": None}
