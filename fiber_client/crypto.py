# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Cryptographic primitives for the Fiber SDK.

Provides:
- Canonical JSON serialization (RFC 8785 / JCS)
- DataUpdate envelope (domain separation + explicit length)
- secp256k1 ECDSA signing and verification
- Key management (generation, hex/PEM/file/env loading) and DAG addresses
- Multi-party signing (batch_sign, co_sign, merge_signed)

Signing protocol (must match the ledger's validator byte for byte):
    1. canonical = canonicalize(value)
    2. envelope  = PREFIX + len(b64) + "\\n" + b64, where b64 = base64(canonical)
    3. hash_hex  = sha256(envelope).hexdigest()
    4. digest    = sha512(hash_hex as ASCII bytes)[:32]
    5. signature = ECDSA-secp256k1(digest), DER, low-S
"""

import base64
import hashlib
import math
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

import base58
import jcs
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    Prehashed,
    decode_dss_signature,
    encode_dss_signature,
)

from .messages import Message
from .types import (
    CanonicalizationError,
    Proof,
    Signed,
    SigningError,
    VerificationResult,
)


# =============================================================================
# Canonical JSON
# =============================================================================

JsonValue = dict | list | tuple | str | int | float | bool | None


def _check_json_value(value: Any, path: str, active: set[int]) -> None:
    """
    Reject anything RFC 8785 cannot represent before handing it to jcs.

    Raises:
        CanonicalizationError: On unsupported types, non-string keys,
            non-finite numbers or cyclic references
    """
    if value is None or isinstance(value, (str, bool, int)):
        return

    if isinstance(value, float):
        if not math.isfinite(value):
            raise CanonicalizationError(f"Non-finite number at {path}: {value}")
        return

    if isinstance(value, (dict, list, tuple)):
        marker = id(value)
        if marker in active:
            raise CanonicalizationError(f"Cyclic reference at {path}")
        active.add(marker)
        try:
            if isinstance(value, dict):
                for key, item in value.items():
                    if not isinstance(key, str):
                        raise CanonicalizationError(
                            f"Object keys must be strings, got {type(key).__name__} at {path}"
                        )
                    _check_json_value(item, f"{path}.{key}", active)
            else:
                for index, item in enumerate(value):
                    _check_json_value(item, f"{path}[{index}]", active)
        finally:
            active.discard(marker)
        return

    raise CanonicalizationError(
        f"Unsupported type for canonical JSON at {path}: {type(value).__name__}"
    )


def canonicalize(value: JsonValue) -> bytes:
    """
    Serialize a value to canonical JSON (RFC 8785).

    Rules:
    - Object keys sorted by UTF-16 code units
    - Numbers in shortest round-trippable form (1.0 -> 1, 1e21 -> 1e+21)
    - No whitespace
    - Minimal string escaping, UTF-8 output

    Two co-signers building the same payload independently must get the same
    bytes, otherwise multi-signature verification breaks.

    Args:
        value: JSON-representable value

    Returns:
        Canonical JSON as UTF-8 bytes

    Raises:
        CanonicalizationError: If value is not JSON-representable

    Example:
        >>> canonicalize({"b": 2, "a": 1})
        b'{"a":1,"b":2}'
    """
    _check_json_value(value, "$", set())
    return jcs.canonicalize(value)


# =============================================================================
# Envelope and digests
# =============================================================================

# Versioned domain-separation prefix prepended to every DataUpdate
DATA_UPDATE_PREFIX = "\x19Constellation Signed Data:\n"


def _as_value(message: Any) -> Any:
    if isinstance(message, Message):
        return message.to_dict()
    return message


def encode_data_update(message: Any) -> bytes:
    """
    Wrap the canonical form of a message in the DataUpdate envelope.

    Format: PREFIX || decimal length of base64 || "\\n" || base64(canonical)
    """
    encoded = base64.b64encode(canonicalize(_as_value(message))).decode("ascii")
    return f"{DATA_UPDATE_PREFIX}{len(encoded)}\n{encoded}".encode("utf-8")


def to_bytes(message: Any, data_update: bool = True) -> bytes:
    """Bytes that get hashed for signing (envelope or bare canonical JSON)."""
    if data_update:
        return encode_data_update(message)
    return canonicalize(_as_value(message))


def hash_message(message: Any, data_update: bool = True) -> str:
    """SHA-256 hex of the signing bytes of a message."""
    return hashlib.sha256(to_bytes(message, data_update)).hexdigest()


def compute_digest(message: Any, data_update: bool = True) -> bytes:
    """
    32-byte prehash that is actually signed.

    The SHA-256 hex string is treated as ASCII bytes (not hex-decoded),
    SHA-512 hashed and truncated to the curve size.
    """
    hash_hex = hash_message(message, data_update)
    return hashlib.sha512(hash_hex.encode("ascii")).digest()[:32]


# =============================================================================
# secp256k1 keys and addresses
# =============================================================================

SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

# DER SubjectPublicKeyInfo header for an uncompressed secp256k1 point
PKCS_PREFIX = "3056301006072a8648ce3d020106052b8104000a034200"

_ECDSA = ec.ECDSA(Prehashed(hashes.SHA256()))


def is_valid_private_key(private_key: str) -> bool:
    """True if private_key is a 64-character hex string."""
    if not isinstance(private_key, str) or len(private_key) != 64:
        return False
    try:
        bytes.fromhex(private_key)
    except ValueError:
        return False
    return True


def is_valid_public_key(public_key: str) -> bool:
    """True if public_key is 128 hex chars (id form) or 130 hex chars (04-prefixed)."""
    if not isinstance(public_key, str) or len(public_key) not in (128, 130):
        return False
    try:
        bytes.fromhex(public_key)
    except ValueError:
        return False
    return True


def _full_public_key(public_key: str) -> str:
    if len(public_key) == 128:
        return "04" + public_key
    return public_key


def address_from_public_key(public_key: str) -> str:
    """
    Derive the DAG address of a public key.

    address = "DAG" || parity || last 36 chars of base58(sha256(SPKI(pubkey)))
    where parity is the sum of the decimal digits in that tail, mod 9.
    """
    spki = bytes.fromhex(PKCS_PREFIX + _full_public_key(public_key))
    encoded = base58.b58encode(hashlib.sha256(spki).digest()).decode("ascii")
    tail = encoded[-36:]
    parity = sum(int(ch) for ch in tail if ch.isdigit()) % 9
    return f"DAG{parity}{tail}"


@dataclass
class KeyPair:
    """
    secp256k1 key pair.

    The address is always derived from the public key, never stored.
    """
    _private_key: ec.EllipticCurvePrivateKey
    created_at: str

    @classmethod
    def generate(cls) -> "KeyPair":
        """Generate a new random key pair."""
        return cls(
            _private_key=ec.generate_private_key(ec.SECP256K1()),
            created_at=datetime.now(timezone.utc).isoformat(),
        )

    @classmethod
    def from_private_key(cls, private_key: str) -> "KeyPair":
        """
        Load a key pair from a 64-character hex private scalar.

        Raises:
            SigningError: If the hex is malformed or the scalar is out of range
        """
        if not is_valid_private_key(private_key):
            raise SigningError("Private key must be a 64-character hex string")

        scalar = int(private_key, 16)
        if not 0 < scalar < SECP256K1_N:
            raise SigningError("Private key scalar is outside the secp256k1 group order")

        return cls(
            _private_key=ec.derive_private_key(scalar, ec.SECP256K1()),
            created_at=datetime.now(timezone.utc).isoformat(),
        )

    @classmethod
    def from_pem(cls, pem_data: bytes) -> "KeyPair":
        """Load a key pair from a PEM-encoded secp256k1 private key."""
        try:
            private_key = serialization.load_pem_private_key(pem_data, password=None)
        except ValueError as e:
            raise SigningError(f"Invalid PEM private key: {e}") from e

        if not isinstance(private_key, ec.EllipticCurvePrivateKey) or not isinstance(
            private_key.curve, ec.SECP256K1
        ):
            raise SigningError("PEM does not contain a secp256k1 private key")

        return cls(
            _private_key=private_key,
            created_at=datetime.now(timezone.utc).isoformat(),
        )

    @classmethod
    def from_env(cls, env_var: str = "FIBER_SIGNING_KEY") -> "KeyPair":
        """
        Load a key pair from an environment variable.

        Supports hex (64 chars) or PEM.

        Raises:
            SigningError: If the variable is not set or the format is invalid
        """
        key_data = os.environ.get(env_var)
        if not key_data:
            raise SigningError(
                f"Environment variable {env_var} not set. "
                f"Set it to a 64-char hex private key or a PEM private key."
            )

        key_data = key_data.strip()
        if key_data.startswith("-----BEGIN"):
            return cls.from_pem(key_data.encode("utf-8"))
        return cls.from_private_key(key_data)

    @classmethod
    def from_file(cls, path: str | Path) -> "KeyPair":
        """
        Load a key pair from a file (PEM, raw 32 bytes, or 64-char hex).

        Raises:
            FileNotFoundError: If the file doesn't exist
            SigningError: If the key format is invalid
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Key file not found: {path}")

        content = path.read_bytes()
        if content.startswith(b"-----BEGIN"):
            return cls.from_pem(content)
        if len(content) == 32:
            return cls.from_private_key(content.hex())
        try:
            return cls.from_private_key(content.decode("utf-8").strip())
        except UnicodeDecodeError as e:
            raise SigningError(f"Invalid key file {path}: {e}") from e

    def save_to_file(self, path: str | Path, key_format: str = "hex") -> Path:
        """Save the private key as "hex", "pem" or "raw"."""
        path = Path(path)

        if key_format == "hex":
            content = self.private_key_hex.encode("utf-8")
        elif key_format == "pem":
            content = self.to_pem()
        elif key_format == "raw":
            content = bytes.fromhex(self.private_key_hex)
        else:
            raise ValueError(f"Unknown format: {key_format}. Use 'hex', 'pem', or 'raw'.")

        path.write_bytes(content)
        return path

    @property
    def private_key_hex(self) -> str:
        return format(self._private_key.private_numbers().private_value, "064x")

    @property
    def public_key_hex(self) -> str:
        """Uncompressed public point, hex with the 04 prefix (130 chars)."""
        return self._private_key.public_key().public_bytes(
            encoding=serialization.Encoding.X962,
            format=serialization.PublicFormat.UncompressedPoint,
        ).hex()

    @property
    def id(self) -> str:
        """Signer id used in proofs: public key hex without the 04 prefix."""
        return self.public_key_hex[2:]

    @property
    def address(self) -> str:
        return address_from_public_key(self.public_key_hex)

    def sign_digest(self, digest: bytes) -> str:
        """Sign a 32-byte prehash; returns low-S DER signature hex."""
        signature = self._private_key.sign(digest, _ECDSA)
        return normalize_signature_to_low_s(signature.hex())

    def to_pem(self) -> bytes:
        return self._private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )


def _coerce_key(key: "KeyPair | str") -> KeyPair:
    if isinstance(key, KeyPair):
        return key
    if isinstance(key, str):
        return KeyPair.from_private_key(key)
    raise SigningError(f"Expected KeyPair or hex private key, got {type(key).__name__}")


def normalize_signature_to_low_s(signature_hex: str) -> str:
    """
    Rewrite a DER signature to use s <= n/2.

    High-S signatures are mathematically valid but rejected by strict
    verifiers. Non-DER input is returned unchanged.
    """
    try:
        r, s = decode_dss_signature(bytes.fromhex(signature_hex))
    except ValueError:
        return signature_hex

    if s <= SECP256K1_N // 2:
        return signature_hex
    return encode_dss_signature(r, SECP256K1_N - s).hex()


# =============================================================================
# Signing and verification
# =============================================================================

def sign(message: Any, key: "KeyPair | str", data_update: bool = True) -> Proof:
    """
    Sign a message.

    Args:
        message: Message dataclass or JSON-representable value
        key: KeyPair or 64-char hex private key
        data_update: Wrap in the DataUpdate envelope (required for ledger submission)

    Returns:
        Proof with the signer's public key id and the signature

    Raises:
        CanonicalizationError: If the message is not JSON-representable
        SigningError: If the key is invalid
    """
    key_pair = _coerce_key(key)
    digest = compute_digest(message, data_update)
    return Proof(id=key_pair.id, signature=key_pair.sign_digest(digest))


def verify(message: Any, proof: Proof, data_update: bool = True) -> bool:
    """
    Verify one proof against a message.

    Never raises: malformed keys, signatures or messages yield False.
    """
    try:
        public_key = ec.EllipticCurvePublicKey.from_encoded_point(
            ec.SECP256K1(), bytes.fromhex(_full_public_key(proof.id))
        )
        signature = bytes.fromhex(normalize_signature_to_low_s(proof.signature))
        public_key.verify(signature, compute_digest(message, data_update), _ECDSA)
        return True
    except (InvalidSignature, ValueError, TypeError, AttributeError):
        return False


def batch_sign(
    message: Any,
    keys: Iterable["KeyPair | str"],
    data_update: bool = True,
) -> Signed:
    """
    Sign a message with several keys over the identical digest.

    Returns:
        Signed value with one proof per key, in key order
    """
    value = _as_value(message)
    digest = compute_digest(value, data_update)
    proofs = []
    for key in keys:
        key_pair = _coerce_key(key)
        proofs.append(Proof(id=key_pair.id, signature=key_pair.sign_digest(digest)))
    if not proofs:
        raise SigningError("batch_sign requires at least one key")
    return Signed(value=value, proofs=proofs)


def co_sign(signed: Signed, key: "KeyPair | str", data_update: bool = True) -> Signed:
    """Return a copy of signed with one more proof appended (no-op if already signed by key)."""
    key_pair = _coerce_key(key)
    if key_pair.id in signed.signer_ids:
        return Signed(value=signed.value, proofs=list(signed.proofs))
    proof = sign(signed.value, key_pair, data_update)
    return Signed(value=signed.value, proofs=[*signed.proofs, proof])


def merge_signed(first: Signed, second: Signed) -> Signed:
    """
    Merge proofs produced independently by concurrent co-signers.

    Raises:
        ValueError: If the two values do not canonicalize identically
    """
    if canonicalize(first.value) != canonicalize(second.value):
        raise ValueError("Cannot merge proofs over different messages")

    proofs = list(first.proofs)
    seen = {p.id for p in proofs}
    for proof in second.proofs:
        if proof.id not in seen:
            proofs.append(proof)
            seen.add(proof.id)
    return Signed(value=first.value, proofs=proofs)


def verify_signed(signed: Signed, data_update: bool = True) -> VerificationResult:
    """
    Verify every proof, reporting partial success instead of stopping at the first failure.
    """
    valid: list[Proof] = []
    invalid: list[Proof] = []
    for proof in signed.proofs:
        if verify(signed.value, proof, data_update):
            valid.append(proof)
        else:
            invalid.append(proof)

    return VerificationResult(
        is_valid=bool(valid) and not invalid,
        valid_proofs=valid,
        invalid_proofs=invalid,
    )
