"""
Tests for composite lock key helpers.
"""

import pytest

from utils.keys import make_composite_key, parse_composite_key

FULL_ID = "67c5d2141338aa0e8d1f6b3c2a9e4f5d67c5d2141338aa0e8d1f6b3c2a9e4f5d"


@pytest.mark.unit
class TestMakeCompositeKey:

    def test_normalizes_to_short_id(self):
        assert make_composite_key("portainer-1", "2", FULL_ID) == "portainer-1:2:67c5d2141338"

    def test_short_id_accepted(self):
        assert make_composite_key("local", "1", "67c5d2141338") == "local:1:67c5d2141338"

    def test_int_endpoint(self):
        assert make_composite_key("local", 1, FULL_ID) == "local:1:67c5d2141338"

    @pytest.mark.parametrize("gateway,endpoint,container_id", [
        ("", "1", FULL_ID),
        ("local", "", FULL_ID),
        ("local", None, FULL_ID),
        ("local", "1", ""),
        ("local", "1", "abc123"),
    ])
    def test_invalid_parts(self, gateway, endpoint, container_id):
        with pytest.raises(ValueError):
            make_composite_key(gateway, endpoint, container_id)


@pytest.mark.unit
class TestParseCompositeKey:

    def test_round_trip_with_url_gateway(self):
        key = make_composite_key("https://portainer:9443", "2", FULL_ID)
        assert parse_composite_key(key) == ("https://portainer:9443", "2", "67c5d2141338")

    @pytest.mark.parametrize("key", [
        "",
        "67c5d2141338",
        "local:67c5d2141338",
        ":1:67c5d2141338",
        "local::67c5d2141338",
        "local:1:abc",
    ])
    def test_invalid_keys(self, key):
        with pytest.raises(ValueError):
            parse_composite_key(key)
