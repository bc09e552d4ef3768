"""
tests.test_crypto
~~~~~~~~~~~~~~~~~

AES-256-GCM 信封与密封文本的单元测试。
"""
from __future__ import annotations

import base64
import json

import pytest

from shadowrooms.core.crypto import ALGORITHM, TranscriptCipher, is_sealed, parse_key
from shadowrooms.core.errors import ErrorReason, IntegrityError

KEY = bytes(range(32))


def _flip_first_byte(b64: str) -> str:
    raw = bytearray(base64.b64decode(b64))
    raw[0] ^= 0x01
    return base64.b64encode(bytes(raw)).decode("ascii")


class TestParseKey:
    """测试密钥解析。"""

    def test_hex_key(self) -> None:
        assert parse_key(KEY.hex()) == KEY

    def test_base64_key(self) -> None:
        assert parse_key(base64.b64encode(KEY).decode()) == KEY

    @pytest.mark.parametrize("value", ["abcd", base64.b64encode(b"short").decode(), "not base64 !!"])
    def test_rejects_wrong_length_or_format(self, value: str) -> None:
        with pytest.raises(ValueError):
            parse_key(value)

    def test_from_config_without_key(self) -> None:
        assert TranscriptCipher.from_config(None) is None
        assert TranscriptCipher.from_config("") is None


class TestEnvelope:
    """测试归档信封的加解密与篡改检测。"""

    def test_round_trip(self) -> None:
        cipher = TranscriptCipher(KEY)
        plaintext = '{"text":"hi"}\n{"text":"hello"}\n'.encode()

        envelope = cipher.encrypt(plaintext)

        assert envelope["algorithm"] == ALGORITHM
        assert len(base64.b64decode(envelope["nonce"])) == 12
        assert len(base64.b64decode(envelope["authTag"])) == 16
        assert cipher.decrypt(envelope) == plaintext

    def test_fresh_nonce_per_encryption(self) -> None:
        cipher = TranscriptCipher(KEY)
        first = cipher.encrypt(b"same")
        second = cipher.encrypt(b"same")
        assert first["nonce"] != second["nonce"]
        assert first["ciphertext"] != second["ciphertext"]

    @pytest.mark.parametrize("field", ["ciphertext", "authTag", "nonce"])
    def test_single_byte_tamper_fails(self, field: str) -> None:
        cipher = TranscriptCipher(KEY)
        envelope = cipher.encrypt(b"a transcript worth protecting")
        envelope[field] = _flip_first_byte(envelope[field])

        with pytest.raises(IntegrityError) as exc:
            cipher.decrypt(envelope)
        assert exc.value.reason is ErrorReason.INTEGRITY_CHECK_FAILED

    def test_wrong_key_fails(self) -> None:
        envelope = TranscriptCipher(KEY).encrypt(b"secret")
        with pytest.raises(IntegrityError):
            TranscriptCipher(bytes(32)).decrypt(envelope)

    def test_malformed_envelope(self) -> None:
        cipher = TranscriptCipher(KEY)
        with pytest.raises(IntegrityError):
            cipher.decrypt({"nonce": "AAAA"})
        with pytest.raises(IntegrityError):
            cipher.decrypt_text("not json")
        with pytest.raises(IntegrityError):
            cipher.decrypt_text("[1, 2, 3]")

    def test_text_envelope_is_single_json_object(self) -> None:
        cipher = TranscriptCipher(KEY)
        payload = cipher.encrypt_to_text(b"line\n")
        assert "\n" not in payload
        assert set(json.loads(payload)) >= {"nonce", "authTag", "ciphertext"}
        assert cipher.decrypt_text(payload.encode()) == b"line\n"


class TestSealedText:
    """测试消息落库时使用的密封文本。"""

    def test_seal_and_open(self) -> None:
        cipher = TranscriptCipher(KEY)
        sealed = cipher.seal_text("你好 hi")
        assert is_sealed(sealed)
        assert "hi" not in sealed
        assert cipher.open_text(sealed) == "你好 hi"

    def test_plaintext_passes_through(self) -> None:
        assert TranscriptCipher(KEY).open_text("legacy plaintext") == "legacy plaintext"

    def test_tampered_sealed_text(self) -> None:
        cipher = TranscriptCipher(KEY)
        sealed = cipher.seal_text("hello")
        prefix, body = sealed[:7], sealed[7:]
        raw = bytearray(base64.b64decode(body))
        raw[-1] ^= 0xFF
        with pytest.raises(IntegrityError):
            cipher.open_text(prefix + base64.b64encode(bytes(raw)).decode())
