"""
Secure Cookie Codec
===================

Serializes pydantic models into tamper-proof cookies.

Encoding pipeline:
    model -> JSON -> [AES-GCM encryption] -> itsdangerous timed signature

- The signature (HMAC-SHA256, cookie name as salt) detects any modification
  and carries a timestamp, so cookies older than ``max_age`` are rejected.
- Encryption is optional; with an encryption key the payload is unreadable
  to the client. The cookie name is bound as associated data, so a value
  cannot be moved from one cookie to another.
"""

import base64
import hashlib
import json
import logging
import os
import secrets
from typing import Optional, Type, TypeVar

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from fastapi import Request, Response
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from pydantic import BaseModel, ValidationError

from ..exceptions import CookieError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

# Browsers drop cookies larger than this.
MAX_COOKIE_LENGTH = 4096

NONCE_SIZE = 12


def generate_key(length: int = 32) -> bytes:
    """Generate a random key for signing or encryption."""
    return secrets.token_bytes(length)


class SecureCookieStore:
    """
    Reads, writes and deletes signed (and optionally encrypted) cookies.

    ``get`` returns None when the cookie is absent and raises CookieError
    when it is present but unusable; callers treat both as "no value".
    """

    def __init__(
        self,
        hash_key: bytes,
        encrypt_key: Optional[bytes] = None,
        max_age: int = 86400 * 30,
        secure: bool = True,
        same_site: str = "lax",
        path: str = "/",
    ):
        """
        Initialize the cookie store.

        Args:
            hash_key: Signing key (32 or 64 bytes)
            encrypt_key: Optional AES key (16, 24 or 32 bytes)
            max_age: Maximum cookie age in seconds, enforced on read
            secure: Set the Secure attribute on written cookies
            same_site: SameSite attribute of written cookies
            path: Path attribute of written cookies
        """
        if len(hash_key) not in (32, 64):
            raise ValueError("hash key has invalid key length. a length of 32 or 64 is required")
        if encrypt_key is not None and len(encrypt_key) not in (16, 24, 32):
            raise ValueError("encryption key has invalid key length. a length of 16, 24 or 32 is required")

        self._serializer = URLSafeTimedSerializer(
            hash_key,
            signer_kwargs={"digest_method": hashlib.sha256},
        )
        self._aead = AESGCM(encrypt_key) if encrypt_key else None
        self.max_age = max_age
        self.secure = secure
        self.same_site = same_site
        self.path = path

    # =========================================================================
    # Encoding
    # =========================================================================

    def dumps(self, name: str, value: BaseModel) -> str:
        """
        Encode a model into a cookie value.

        Raises:
            CookieError: If the encoded value exceeds the cookie size limit
        """
        payload = value.model_dump(mode="json")

        if self._aead is not None:
            nonce = os.urandom(NONCE_SIZE)
            plaintext = json.dumps(payload, separators=(",", ":")).encode("utf-8")
            ciphertext = self._aead.encrypt(nonce, plaintext, name.encode("utf-8"))
            payload = base64.urlsafe_b64encode(nonce + ciphertext).decode("ascii")

        encoded = self._serializer.dumps(payload, salt=name)
        if len(encoded) > MAX_COOKIE_LENGTH:
            raise CookieError(
                f"cookie {name} too large: {len(encoded)} bytes (limit {MAX_COOKIE_LENGTH})"
            )
        return encoded

    def loads(self, name: str, raw: str, model: Type[ModelT]) -> ModelT:
        """
        Decode and verify a cookie value.

        Raises:
            CookieError: If the signature is invalid or expired, decryption
                        fails, or the payload does not match the model
        """
        try:
            payload = self._serializer.loads(raw, salt=name, max_age=self.max_age)
        except SignatureExpired as e:
            raise CookieError(f"cookie {name} expired") from e
        except BadSignature as e:
            raise CookieError(f"cookie {name} has an invalid signature") from e

        if self._aead is not None:
            if not isinstance(payload, str):
                raise CookieError(f"cookie {name} is not encrypted")
            try:
                blob = base64.urlsafe_b64decode(payload.encode("ascii"))
                plaintext = self._aead.decrypt(
                    blob[:NONCE_SIZE], blob[NONCE_SIZE:], name.encode("utf-8")
                )
                payload = json.loads(plaintext)
            except (InvalidTag, ValueError) as e:
                raise CookieError(f"cookie {name} could not be decrypted") from e

        try:
            return model.model_validate(payload)
        except ValidationError as e:
            raise CookieError(f"cookie {name} has an invalid payload") from e

    # =========================================================================
    # Request / Response Helpers
    # =========================================================================

    def get(self, request: Request, name: str, model: Type[ModelT]) -> Optional[ModelT]:
        """
        Read a cookie from the request.

        Returns:
            Decoded model, or None if the cookie is not present

        Raises:
            CookieError: If the cookie is present but invalid
        """
        raw = request.cookies.get(name)
        if not raw:
            return None
        return self.loads(name, raw, model)

    def write(self, response: Response, name: str, raw: str) -> None:
        """Attach an already encoded cookie value to the response."""
        response.set_cookie(
            name,
            raw,
            max_age=self.max_age,
            path=self.path,
            secure=self.secure,
            httponly=True,
            samesite=self.same_site,
        )

    def set(self, response: Response, name: str, value: BaseModel) -> None:
        """
        Encode a model and set it as cookie on the response.

        Raises:
            CookieError: If the value cannot be encoded
        """
        self.write(response, name, self.dumps(name, value))

    def delete(self, response: Response, name: str) -> None:
        response.delete_cookie(
            name,
            path=self.path,
            secure=self.secure,
            httponly=True,
            samesite=self.same_site,
        )


__all__ = [
    "SecureCookieStore",
    "generate_key",
    "MAX_COOKIE_LENGTH",
]
