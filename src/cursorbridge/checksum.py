"""Credential normalization and the x-cursor-checksum generator."""

import base64
import hashlib
import logging
import random
import re
import time
from typing import Callable, Optional

from .errors import InvalidCredentialError

logger = logging.getLogger(__name__)

# A compound credential looks like "<prefix>::<secret>", sometimes URL-escaped.
_SEPARATOR = re.compile(r"::|%3A%3A", re.IGNORECASE)
_BEARER = re.compile(r"^\s*bearer(?:\s+|$)", re.IGNORECASE)

# Timestamps are bucketed to 10**6 milliseconds before obfuscation.
TIMESTAMP_BUCKET_MS = 1_000_000
OBFUSCATION_SEED = 165


def normalize_credential(credential: Optional[str]) -> str:
    """
    Reduce a credential to the usable secret.

    "abc::secret", "abc%3A%3Asecret" and "secret" all yield "secret".

    Raises:
        InvalidCredentialError: if nothing usable remains, or the secret
            contains characters that cannot go into an HTTP header
    """
    if credential is None:
        raise InvalidCredentialError()

    token = _SEPARATOR.split(credential.strip())[-1].strip()
    if not token:
        raise InvalidCredentialError()
    if not token.isascii() or not token.isprintable() or any(c.isspace() for c in token):
        raise InvalidCredentialError("Malformed credential")
    return token


def select_credential(authorization: Optional[str], rng: random.Random = None) -> str:
    """
    Pick one credential out of a comma separated bearer value.

    The choice is uniform and independent across calls.
    """
    if not authorization:
        raise InvalidCredentialError()

    keys = [key.strip() for key in _BEARER.sub("", authorization).split(",")]
    keys = [key for key in keys if key]
    if not keys:
        raise InvalidCredentialError()

    chooser = rng if rng is not None else random
    return normalize_credential(chooser.choice(keys))


def _hashed_hex(token: str, salt: str) -> str:
    return hashlib.sha256((token + salt).encode("utf-8")).hexdigest()


def _timestamp_bytes(bucket: int) -> bytearray:
    """Six bytes: the low 16 bits of `bucket`, then its low 32 bits, big-endian."""
    return bytearray(
        [
            (bucket >> 8) & 255,
            bucket & 255,
            (bucket >> 24) & 255,
            (bucket >> 16) & 255,
            (bucket >> 8) & 255,
            bucket & 255,
        ]
    )


def _obfuscate(data: bytearray) -> bytearray:
    previous = OBFUSCATION_SEED
    for i in range(len(data)):
        data[i] = ((data[i] ^ previous) + i) % 256
        previous = data[i]
    return data


def checksum(credential: str, timestamp: Optional[int] = None) -> str:
    """
    Compute the checksum for `credential`.

    Args:
        credential: Raw or compound credential, normalized before hashing
        timestamp: Bucketed timestamp (milliseconds // 10**6). Defaults to now.

    Returns:
        8 base64 characters, the 64-hex machine id, "/", the 64-hex mac machine id
    """
    token = normalize_credential(credential)
    if timestamp is None:
        timestamp = int(time.time() * 1000) // TIMESTAMP_BUCKET_MS

    prefix = _obfuscate(_timestamp_bytes(timestamp))
    encoded = base64.b64encode(bytes(prefix)).decode("ascii")

    machine_id = _hashed_hex(token, "machineId")
    mac_machine_id = _hashed_hex(token, "macMachineId")
    return f"{encoded}{machine_id}/{mac_machine_id}"


class ChecksumGenerator:
    """Checksum generator bound to a clock (seconds since the epoch)."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock

    def generate(self, credential: str) -> str:
        bucket = int(self.clock() * 1000) // TIMESTAMP_BUCKET_MS
        return checksum(credential, timestamp=bucket)


def resolve_checksum(
    credential: str,
    header_value: Optional[str],
    configured: Optional[str],
    generator: ChecksumGenerator,
) -> str:
    """A checksum supplied by the caller wins over configuration, which wins over generation."""
    if header_value:
        return header_value
    if configured:
        return configured
    value = generator.generate(credential)
    logger.debug(f"Generated checksum {value[:8]}...")
    return value
