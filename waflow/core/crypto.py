# waflow/core/crypto.py
"""
Request/response envelope for the WhatsApp Flows data endpoint.

Inbound:  RSA-OAEP(SHA-256) wrapped AES key + AES-GCM body (tag = last 16 bytes).
Outbound: AES-GCM with the same key and the request IV bit-inverted; no IV is sent.
"""
import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from waflow.core.errors import (
    AuthenticationError,
    ConfigurationError,
    DecryptionError,
    KeyUnwrapError,
)

log = logging.getLogger("waflow.crypto")

GCM_TAG_LENGTH = 16


@dataclass
class DecryptedRequest:
    payload: Dict[str, Any]
    aes_key: bytes
    iv: bytes


def _b64decode(value: str, what: str) -> bytes:
    if not isinstance(value, str) or not value:
        raise DecryptionError(f"Missing {what}")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptionError(f"Malformed base64 in {what}: {e}")


def load_private_key(pem: Optional[str], passphrase: Optional[str] = None) -> RSAPrivateKey:
    """Parse the PEM private key; missing or unusable keys are a configuration error."""
    if not pem or not pem.strip():
        raise ConfigurationError("WhatsApp Flows private key is not configured")

    pem = pem.replace("\\n", "\n").strip()
    try:
        key = serialization.load_pem_private_key(
            pem.encode("utf-8"),
            password=passphrase.encode("utf-8") if passphrase else None,
        )
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"Invalid WhatsApp Flows private key: {e}")

    if not isinstance(key, RSAPrivateKey):
        raise ConfigurationError("WhatsApp Flows private key must be an RSA key")
    return key


def unwrap_key(wrapped_key_b64: str, private_key: Optional[RSAPrivateKey]) -> bytes:
    """Recover the per-request AES key."""
    if private_key is None:
        raise ConfigurationError("WhatsApp Flows private key is not configured")

    try:
        wrapped = _b64decode(wrapped_key_b64, "encrypted_aes_key")
    except DecryptionError as e:
        raise KeyUnwrapError(e.message)

    try:
        return private_key.decrypt(
            wrapped,
            padding.OAEP(
                mgf=padding.MGF1(algorithm=hashes.SHA256()),
                algorithm=hashes.SHA256(),
                label=None,
            ),
        )
    except ValueError as e:
        raise KeyUnwrapError(f"Failed to unwrap AES key: {e}")


def open_envelope(ciphertext_b64: str, aes_key: bytes, iv_b64: str) -> bytes:
    """Decrypt an AES-GCM body whose last 16 bytes are the authentication tag."""
    data = _b64decode(ciphertext_b64, "encrypted_flow_data")
    iv = _b64decode(iv_b64, "initial_vector")

    if len(data) < GCM_TAG_LENGTH:
        raise DecryptionError("Encrypted payload is shorter than the GCM tag")

    try:
        # AESGCM expects ciphertext || tag, which is the wire layout
        return AESGCM(aes_key).decrypt(iv, data, None)
    except InvalidTag:
        raise AuthenticationError("Encrypted payload failed authentication")
    except ValueError as e:
        raise DecryptionError(f"Failed to decrypt payload: {e}")


def invert_iv(iv: bytes) -> bytes:
    """Flip every bit of the IV; applying it twice gives the original back."""
    return bytes(b ^ 0xFF for b in iv)


def seal_envelope(obj: Any, aes_key: bytes, request_iv: bytes) -> str:
    """Encrypt a response object with the request key and the inverted IV."""
    plaintext = json.dumps(obj, separators=(",", ":")).encode("utf-8")
    sealed = AESGCM(aes_key).encrypt(invert_iv(request_iv), plaintext, None)
    return base64.b64encode(sealed).decode("ascii")


def decrypt_request(body: Dict[str, Any], private_key: Optional[RSAPrivateKey]) -> DecryptedRequest:
    """Open a full encrypted request body and parse its JSON payload."""
    aes_key = unwrap_key(body.get("encrypted_aes_key"), private_key)
    iv = _b64decode(body.get("initial_vector"), "initial_vector")
    plaintext = open_envelope(body.get("encrypted_flow_data"), aes_key, body.get("initial_vector"))

    try:
        payload = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecryptionError(f"Decrypted payload is not JSON: {e}")

    if not isinstance(payload, dict):
        raise DecryptionError("Decrypted payload must be a JSON object")

    log.debug(f"🔓 Decrypted flow request: action={payload.get('action')}")
    return DecryptedRequest(payload=payload, aes_key=aes_key, iv=iv)
