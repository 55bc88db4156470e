"""Tests for auth.py — token extraction and verification."""

from __future__ import annotations

from auth import TokenVerifier, extract_token


class TestExtractToken:
    def test_bearer_header(self):
        assert extract_token({"authorization": "Bearer abc"}, {}) == "abc"

    def test_header_case_insensitive_scheme(self):
        assert extract_token({"authorization": "bearer abc"}, {}) == "abc"

    def test_query_param(self):
        assert extract_token({}, {"token": "xyz"}) == "xyz"

    def test_header_preferred_over_query(self):
        assert extract_token({"authorization": "Bearer abc"}, {"token": "xyz"}) == "abc"

    def test_non_bearer_header_falls_back_to_query(self):
        assert extract_token({"authorization": "Basic Zm9v"}, {"token": "xyz"}) == "xyz"

    def test_missing(self):
        assert extract_token({}, {}) == ""


class TestTokenVerifier:
    def test_valid_key(self, session_factory, api_key):
        assert TokenVerifier(session_factory).verify(api_key.key) == api_key.user_id

    def test_unknown_key(self, session_factory, api_key):
        assert TokenVerifier(session_factory).verify("not-a-key") is None

    def test_empty_token(self, session_factory):
        assert TokenVerifier(session_factory).verify("") is None
