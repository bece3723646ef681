"""Cache key rendering.

Keys are opaque byte strings computed by the build system. External
commands receive them as lowercase hexadecimal text in CACHE_KEY.
"""

from __future__ import annotations

import binascii

CACHE_KEY_VARIABLE = "CACHE_KEY"


def encode_key(key: bytes) -> str:
    """Render a raw key as fixed-width lowercase hex.

    Example:
        >>> encode_key(b"\\x00\\xab")
        '00ab'
    """
    return binascii.hexlify(bytes(key)).decode("ascii")


def decode_key(text: str) -> bytes:
    """Parse hex text back into a raw key.

    Raises:
        ValueError: If text is empty or not valid hexadecimal.
    """
    text = text.strip()
    if not text:
        raise ValueError("cache key must not be empty")
    try:
        return binascii.unhexlify(text)
    except (binascii.Error, ValueError) as exc:
        msg = f"cache key is not valid hexadecimal: {text!r}"
        raise ValueError(msg) from exc


def key_environment(key: bytes, base: dict[str, str] | None = None) -> dict[str, str]:
    """Build the environment for one command invocation.

    Args:
        key: Raw cache key.
        base: Environment to extend. Not modified.

    Returns:
        A new mapping containing base plus CACHE_KEY.
    """
    env = dict(base or {})
    env[CACHE_KEY_VARIABLE] = encode_key(key)
    return env
