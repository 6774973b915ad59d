"""
Tests — Action token codec.

Covers sign/verify round trips, expiry boundaries, tampering and the
uniform rejection of malformed input.
"""
import base64
import json
import pytest

from checkins.errors import ConfigurationError
from checkins.tokens import (
    DEFAULT_TTL_SECONDS, PREVIEW_TTL_SECONDS, TokenCodec, _b64encode,
    get_token_codec, reset_token_codec,
)
from models.schemas import ResponseValue

T0 = 1_700_000_000


class Clock:
    def __init__(self, t: float = T0):
        self.t = t

    def __call__(self) -> float:
        return self.t


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def codec(clock):
    return TokenCodec("s3cret", clock=clock)


class TestSignVerify:
    @pytest.mark.parametrize("day", [3, 7, 14])
    @pytest.mark.parametrize("value", ["better", "same", "worse"])
    def test_round_trip(self, codec, day, value):
        payload = codec.verify(codec.sign("subj-1", day, value))
        assert payload is not None
        assert payload.subject_id == "subj-1"
        assert payload.day == day
        assert payload.value == ResponseValue(value)
        assert payload.exp == T0 + DEFAULT_TTL_SECONDS

    def test_format_is_two_unpadded_segments(self, codec):
        token = codec.sign("subj-1", 3, "same")
        body, sig = token.split(".")
        assert "=" not in token
        assert set(token) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_.")
        decoded = json.loads(base64.urlsafe_b64decode(body + "=" * (-len(body) % 4)))
        assert decoded == {"subject_id": "subj-1", "day": 3, "value": "same",
                           "exp": T0 + DEFAULT_TTL_SECONDS}

    def test_valid_until_just_before_expiry(self, codec, clock):
        token = codec.sign("subj-1", 7, "better", ttl_seconds=60)
        clock.t = T0 + 59
        assert codec.verify(token) is not None

    def test_rejected_at_expiry(self, codec, clock):
        token = codec.sign("subj-1", 7, "better", ttl_seconds=60)
        clock.t = T0 + 60
        assert codec.verify(token) is None

    def test_rejected_after_expiry(self, codec, clock):
        token = codec.sign("subj-1", 7, "better", ttl_seconds=PREVIEW_TTL_SECONDS)
        clock.t = T0 + PREVIEW_TTL_SECONDS + 1
        assert codec.verify(token) is None

    def test_other_secret_rejects(self, codec, clock):
        other = TokenCodec("different", clock=clock)
        assert other.verify(codec.sign("subj-1", 3, "same")) is None

    def test_rejects_invalid_value_on_sign(self, codec):
        with pytest.raises(ValueError):
            codec.sign("subj-1", 3, "excellent")


class TestTampering:
    def test_every_single_character_mutation_rejected(self, codec):
        token = codec.sign("subj-42", 14, "worse")
        alphabet = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_."
        for i, original in enumerate(token):
            for replacement in (alphabet[(alphabet.index(original) + 1) % len(alphabet)], "!"):
                mutated = token[:i] + replacement + token[i + 1:]
                assert mutated != token
                assert codec.verify(mutated) is None, f"mutation at {i} accepted"

    def test_truncated_token_rejected(self, codec):
        token = codec.sign("subj-1", 3, "same")
        assert codec.verify(token[:-1]) is None
        assert codec.verify(token[1:]) is None

    def test_resigned_payload_with_bad_day_rejected(self, clock):
        codec = TokenCodec("s3cret", clock=clock)
        body = _b64encode(json.dumps({"subject_id": "s", "day": 5, "value": "same",
                                      "exp": T0 + 100}).encode())
        token = f"{body}.{codec._signature(body)}"
        assert codec.verify(token) is None

    def test_resigned_payload_with_bad_value_rejected(self, clock):
        codec = TokenCodec("s3cret", clock=clock)
        body = _b64encode(json.dumps({"subject_id": "s", "day": 3, "value": "great",
                                      "exp": T0 + 100}).encode())
        assert codec.verify(f"{body}.{codec._signature(body)}") is None

    def test_resigned_non_object_payload_rejected(self, clock):
        codec = TokenCodec("s3cret", clock=clock)
        body = _b64encode(b"[1, 2, 3]")
        assert codec.verify(f"{body}.{codec._signature(body)}") is None

    def test_resigned_payload_missing_fields_rejected(self, clock):
        codec = TokenCodec("s3cret", clock=clock)
        body = _b64encode(json.dumps({"subject_id": "s", "day": 3}).encode())
        assert codec.verify(f"{body}.{codec._signature(body)}") is None


class TestMalformed:
    @pytest.mark.parametrize("token", [
        None, 123, "", "no-dot", "a.b.c", ".sig", "body.", "ü.ü",
    ])
    def test_malformed_rejected(self, codec, token):
        assert codec.verify(token) is None


class TestConfiguration:
    def test_missing_secret_is_fatal(self):
        with pytest.raises(ConfigurationError):
            TokenCodec("")

    def test_get_token_codec_uses_settings(self, monkeypatch):
        from config import settings as settings_module
        from config.settings import CheckinConfig, Settings

        reset_token_codec()
        monkeypatch.setattr(settings_module, "_settings",
                            Settings(checkins=CheckinConfig(token_secret="from-settings")))
        try:
            codec = get_token_codec()
            assert codec is get_token_codec()
            assert codec.verify(codec.sign("s", 3, "same")) is not None
        finally:
            reset_token_codec()

    def test_get_token_codec_without_secret_raises(self, monkeypatch):
        from config import settings as settings_module
        from config.settings import Settings

        reset_token_codec()
        monkeypatch.setattr(settings_module, "_settings", Settings())
        with pytest.raises(ConfigurationError):
            get_token_codec()
        reset_token_codec()
