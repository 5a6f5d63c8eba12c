"""Passkey signing port and WebAuthn signature encoding.

The WebAuthn ceremony itself happens outside this library (browser or
platform authenticator). This module defines the port the pipeline calls,
bounds it with a human-interaction timeout, and encodes a captured
assertion into the signature layout the account contract verifies.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Tuple, Type

from eth_abi import encode

from ..exceptions import (
    CredentialNotFound,
    SecurityContextInvalid,
    SigningError,
    SigningTimeout,
    UserCancelled,
    ValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_SIGNING_TIMEOUT_SECONDS = 60.0


class SignerGateway(ABC):
    """Port for producing a passkey signature over a user operation hash."""

    @abstractmethod
    async def sign(self, user_op_hash: str, credential_ref: str) -> str:
        """Return the 0x-prefixed signature for ``user_op_hash``.

        Raises a SigningError subclass on failure. Never retried by callers.
        """


async def sign_with_timeout(
    signer: SignerGateway,
    user_op_hash: str,
    credential_ref: str,
    timeout_seconds: float = DEFAULT_SIGNING_TIMEOUT_SECONDS,
) -> str:
    try:
        return await asyncio.wait_for(signer.sign(user_op_hash, credential_ref), timeout_seconds)
    except asyncio.TimeoutError as e:
        raise SigningTimeout(
            f"No passkey signature within {timeout_seconds:.0f}s",
            details={"user_op_hash": user_op_hash},
        ) from e


@dataclass(frozen=True)
class WebAuthnAssertion:
    """Fields of a WebAuthn assertion response, already base64-decoded."""

    authenticator_data: bytes
    client_data_json: str
    signature_der: bytes
    user_handle: str = ""

    @property
    def challenge_index(self) -> int:
        return self.client_data_json.find('"challenge"')

    @property
    def type_index(self) -> int:
        return self.client_data_json.find('"type"')


def parse_der_signature(der: bytes) -> Tuple[int, int]:
    """Split a DER-encoded ECDSA signature into (r, s)."""
    def fail(reason: str) -> ValidationError:
        return ValidationError(f"Invalid DER signature: {reason}", field="signature")

    if len(der) < 8 or der[0] != 0x30:
        raise fail("missing sequence tag")
    if der[1] > len(der) - 2:
        raise fail("length exceeds data")

    offset = 2
    values = []
    for name in ("r", "s"):
        if offset + 2 > len(der) or der[offset] != 0x02:
            raise fail(f"missing integer tag for {name}")
        length = der[offset + 1]
        offset += 2
        if offset + length > len(der):
            raise fail(f"truncated {name}")
        values.append(int.from_bytes(der[offset:offset + length], "big"))
        offset += length
    return values[0], values[1]


def encode_webauthn_signature(assertion: WebAuthnAssertion) -> str:
    """ABI-encode an assertion as (bytes, string, uint256, uint256, string, uint256, uint256)."""
    r, s = parse_der_signature(assertion.signature_der)
    if assertion.challenge_index < 0 or assertion.type_index < 0:
        raise ValidationError("clientDataJSON lacks challenge or type", field="client_data_json")
    encoded = encode(
        ["bytes", "string", "uint256", "uint256", "string", "uint256", "uint256"],
        [
            assertion.authenticator_data,
            assertion.client_data_json,
            assertion.challenge_index,
            assertion.type_index,
            assertion.user_handle,
            r,
            s,
        ],
    )
    return "0x" + encoded.hex()


# WebAuthn DOMException names reported by the ceremony
CEREMONY_ERROR_NAMES: Dict[str, Tuple[Type[SigningError], str]] = {
    "NotAllowedError": (UserCancelled, "User cancelled the passkey authentication"),
    "AbortError": (UserCancelled, "User cancelled the passkey authentication"),
    "InvalidStateError": (CredentialNotFound, "No passkey found for this account"),
    "SecurityError": (
        SecurityContextInvalid,
        "Passkeys require a secure origin (HTTPS)",
    ),
}


def signing_error_from_ceremony(error: Exception) -> SigningError:
    name = getattr(error, "name", None) or type(error).__name__
    mapped = CEREMONY_ERROR_NAMES.get(name)
    if mapped:
        exc_class, message = mapped
        return exc_class(message, details={"ceremony_error": name})
    return SigningError(f"Failed to sign with passkey: {error}", details={"ceremony_error": name})


Ceremony = Callable[[str, str], Awaitable[WebAuthnAssertion]]


class AssertionSigner(SignerGateway):
    """
    SignerGateway backed by an injected WebAuthn ceremony.

    The ceremony receives the challenge (user operation hash without 0x)
    and the credential id, and returns the captured assertion.
    """

    def __init__(self, ceremony: Ceremony):
        self._ceremony = ceremony

    async def sign(self, user_op_hash: str, credential_ref: str) -> str:
        challenge = user_op_hash[2:] if user_op_hash.startswith("0x") else user_op_hash
        try:
            assertion = await self._ceremony(challenge, credential_ref)
        except SigningError:
            raise
        except Exception as e:
            raise signing_error_from_ceremony(e) from e
        logger.info(f"Passkey assertion received for credential {credential_ref[:8]}...")
        return encode_webauthn_signature(assertion)
