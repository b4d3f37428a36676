"""
Payload decoding for force readings.

Load-cell firmware varies in how it encodes a sample. Payloads are sniffed
with an ordered chain of interpretations and the first one that fits wins:

    1. ASCII/UTF-8 decimal text, e.g. b"12.34\\n"
    2. little-endian IEEE-754 float32 (first 4 bytes)
    3. little-endian signed int16 (first 2 bytes)

The order is part of the contract. Any buffer of 4 or more bytes that is not
numeric text decodes as float32, including NaN and infinity.
"""

import re
import struct
from typing import Callable, Optional, Tuple

# Plain ASCII decimal literal, optional sign and exponent
_DECIMAL_RE = re.compile(r"[+-]?(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")


class DecodeError(ValueError):
    """Raised when a payload matches none of the known encodings."""


def decode_text(data: bytes) -> Optional[float]:
    """Interpret the whole buffer as numeric text"""
    try:
        text = bytes(data).decode("utf-8").strip()
    except UnicodeDecodeError:
        return None
    if not _DECIMAL_RE.fullmatch(text):
        return None
    return float(text)


def decode_float32(data: bytes) -> Optional[float]:
    """Interpret the first 4 bytes as a little-endian float32"""
    if len(data) < 4:
        return None
    return struct.unpack("<f", bytes(data[:4]))[0]


def decode_int16(data: bytes) -> Optional[float]:
    """Interpret the first 2 bytes as a little-endian signed int16"""
    if len(data) < 2:
        return None
    return float(struct.unpack("<h", bytes(data[:2]))[0])


DECODERS: Tuple[Tuple[str, Callable[[bytes], Optional[float]]], ...] = (
    ("text", decode_text),
    ("float32", decode_float32),
    ("int16", decode_int16),
)


def decode(data: bytes) -> float:
    """
    Decode a raw characteristic value into a force reading.

    Args:
        data: Raw bytes received from the peripheral

    Returns:
        The decoded reading in the peripheral's own unit

    Raises:
        DecodeError: If the buffer is shorter than 2 bytes and not numeric text
    """
    for _name, decoder in DECODERS:
        value = decoder(data)
        if value is not None:
            return value
    raise DecodeError(f"Unrecognized payload: {bytes(data).hex() or '<empty>'}")


def detect_format(data: bytes) -> Optional[str]:
    """Name of the encoding `decode` would use, or None if unrecognized."""
    for name, decoder in DECODERS:
        if decoder(data) is not None:
            return name
    return None
