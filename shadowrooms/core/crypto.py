"""
shadowrooms.core.crypto
~~~~~~~~~~~~~~~~~~~~~~~

归档与消息的认证加密（AES-256-GCM，基于 ``cryptography``）。

两种输出格式:
  - **信封**（归档文件）: ``{"v", "algorithm", "nonce", "authTag", "ciphertext"}``，
    三个二进制字段均为 base64。
  - **密封文本**（消息落库）: ``enc:v1:`` + base64(nonce | tag | ciphertext)。

每次加密都使用新的 12 字节随机 nonce，16 字节认证标签与密文一起保存。
认证失败一律抛出 ``IntegrityError``，绝不返回被篡改的明文。
"""
from __future__ import annotations

import base64
import binascii
import json
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from shadowrooms.core.errors import IntegrityError

ALGORITHM: str = "AES-256-GCM"
ENVELOPE_VERSION: int = 1
SEALED_PREFIX: str = "enc:v1:"

_KEY_BYTES: int = 32
_NONCE_BYTES: int = 12
_TAG_BYTES: int = 16


def parse_key(value: str) -> bytes:
    """解析配置中的密钥：64 位十六进制或 base64 编码的 32 字节。

    Raises:
        ValueError: 格式错误或长度不是 32 字节。
    """
    raw: bytes | None = None
    text = value.strip()
    if len(text) == _KEY_BYTES * 2:
        try:
            raw = bytes.fromhex(text)
        except ValueError:
            raw = None
    if raw is None:
        try:
            raw = base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError("ENCRYPTION_KEY 必须是 hex 或 base64 编码") from e
    if len(raw) != _KEY_BYTES:
        raise ValueError(f"ENCRYPTION_KEY 必须是 {_KEY_BYTES} 字节，当前为 {len(raw)} 字节")
    return raw


class TranscriptCipher:
    """AES-256-GCM 加解密器。

    Attributes:
        algorithm: 算法名，写入信封与归档元数据。
    """

    algorithm: str = ALGORITHM

    def __init__(self, key: bytes) -> None:
        if len(key) != _KEY_BYTES:
            raise ValueError(f"密钥长度必须为 {_KEY_BYTES} 字节")
        self._aead = AESGCM(key)

    @classmethod
    def from_config(cls, value: str | None) -> TranscriptCipher | None:
        """根据配置构造加解密器；未配置密钥时返回 ``None``（明文模式）。"""
        if not value:
            return None
        return cls(parse_key(value))

    # ── 底层原语 ──────────────────────────────────────────────────────

    def _encrypt(self, plaintext: bytes) -> tuple[bytes, bytes, bytes]:
        nonce = os.urandom(_NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext, None)
        # cryptography 把 tag 追加在密文末尾
        return nonce, sealed[-_TAG_BYTES:], sealed[:-_TAG_BYTES]

    def _decrypt(self, nonce: bytes, tag: bytes, ciphertext: bytes) -> bytes:
        if len(nonce) != _NONCE_BYTES or len(tag) != _TAG_BYTES:
            raise IntegrityError(message="nonce 或认证标签长度不正确")
        try:
            return self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as e:
            raise IntegrityError(message="认证标签校验失败") from e

    # ── 信封（归档文件） ──────────────────────────────────────────────

    def encrypt(self, plaintext: bytes) -> dict[str, Any]:
        """加密并返回信封字典。"""
        nonce, tag, ciphertext = self._encrypt(plaintext)
        return {
            "v": ENVELOPE_VERSION,
            "algorithm": self.algorithm,
            "nonce": base64.b64encode(nonce).decode("ascii"),
            "authTag": base64.b64encode(tag).decode("ascii"),
            "ciphertext": base64.b64encode(ciphertext).decode("ascii"),
        }

    def decrypt(self, envelope: dict[str, Any]) -> bytes:
        """校验并解密信封。

        Raises:
            IntegrityError: 信封格式错误或认证失败。
        """
        try:
            nonce = base64.b64decode(envelope["nonce"], validate=True)
            tag = base64.b64decode(envelope["authTag"], validate=True)
            ciphertext = base64.b64decode(envelope["ciphertext"], validate=True)
        except (KeyError, TypeError, binascii.Error, ValueError) as e:
            raise IntegrityError(message="归档信封格式错误") from e
        return self._decrypt(nonce, tag, ciphertext)

    def encrypt_to_text(self, plaintext: bytes) -> str:
        """加密并序列化为单行 JSON 信封。"""
        return json.dumps(self.encrypt(plaintext), separators=(",", ":"))

    def decrypt_text(self, payload: str | bytes) -> bytes:
        """``encrypt_to_text`` 的逆操作。"""
        try:
            envelope = json.loads(payload)
        except (TypeError, ValueError) as e:
            raise IntegrityError(message="归档信封不是合法 JSON") from e
        if not isinstance(envelope, dict):
            raise IntegrityError(message="归档信封格式错误")
        return self.decrypt(envelope)

    # ── 密封文本（消息落库） ──────────────────────────────────────────

    def seal_text(self, text: str) -> str:
        """加密单条文本，返回带前缀的紧凑字符串。"""
        nonce, tag, ciphertext = self._encrypt(text.encode("utf-8"))
        return SEALED_PREFIX + base64.b64encode(nonce + tag + ciphertext).decode("ascii")

    def open_text(self, sealed: str) -> str:
        """解密 ``seal_text`` 的输出；没有前缀的文本视为明文原样返回。

        Raises:
            IntegrityError: 密文损坏或认证失败。
        """
        if not is_sealed(sealed):
            return sealed
        try:
            raw = base64.b64decode(sealed[len(SEALED_PREFIX):], validate=True)
        except (binascii.Error, ValueError) as e:
            raise IntegrityError(message="密封文本格式错误") from e
        nonce = raw[:_NONCE_BYTES]
        tag = raw[_NONCE_BYTES:_NONCE_BYTES + _TAG_BYTES]
        ciphertext = raw[_NONCE_BYTES + _TAG_BYTES:]
        return self._decrypt(nonce, tag, ciphertext).decode("utf-8")


def is_sealed(value: str) -> bool:
    """是否为 ``seal_text`` 生成的密封文本。"""
    return value.startswith(SEALED_PREFIX)
