"""Decoding of NDEF well-known text records as read from a tag."""
from __future__ import annotations

from typing import Iterable, Union

_UTF16_FLAG = 0x80
_LANGUAGE_LENGTH_MASK = 0x3F

RecordPayload = Union[bytes, bytearray, Iterable[int]]


def _as_bytes(payload: RecordPayload) -> bytes:
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    return bytes(int(value) & 0xFF for value in payload)


def language_code(payload: RecordPayload) -> str:
    data = _as_bytes(payload)
    if not data:
        raise ValueError("empty NDEF text record")
    length = data[0] & _LANGUAGE_LENGTH_MASK
    if len(data) < 1 + length:
        raise ValueError("truncated NDEF text record")
    return data[1:1 + length].decode("ascii")


def decode_text_record(payload: RecordPayload) -> str:
    """Return the text of a text record payload.

    The payload starts with a status byte (bit 7 selects UTF-16, the low six
    bits give the language code length) followed by the language code. For
    the usual two letter code that prefix is three bytes long.
    """
    data = _as_bytes(payload)
    if not data:
        raise ValueError("empty NDEF text record")
    status = data[0]
    start = 1 + (status & _LANGUAGE_LENGTH_MASK)
    if start > len(data):
        raise ValueError("truncated NDEF text record")
    text = data[start:]
    if not status & _UTF16_FLAG:
        return text.decode("utf-8")
    # Without a byte order mark UTF-16 text is big-endian.
    if text[:2] in (b"\xfe\xff", b"\xff\xfe"):
        return text.decode("utf-16")
    return text.decode("utf-16-be")


def encode_text_record(text: str, language: str = "en") -> bytes:
    """Build a UTF-8 text record payload; handy for simulated tags."""
    lang = language.encode("ascii")
    if len(lang) > _LANGUAGE_LENGTH_MASK:
        raise ValueError("language code too long")
    return bytes([len(lang)]) + lang + text.encode("utf-8")


__all__ = ["decode_text_record", "encode_text_record", "language_code"]
