"""Reversible binary <-> text encoding for audio payloads.

The text form is a ``data:`` URL (``data:<mime>;base64,<payload>``), which is
what session documents carry when a chunk could not be uploaded. ``decode``
also accepts bare base64 so callers may store just the payload.

Encoding and decoding of large buffers is offloaded with ``asyncio.to_thread``
by the ``*_async`` variants so the event loop stays responsive.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import re
from typing import Optional

from vidfeedback.config import DEFAULT_AUDIO_MIME
from vidfeedback.errors import SerializationError

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[^,]*?)(?P<b64>;base64)?,(?P<payload>.*)$", re.DOTALL)


def is_data_url(text: object) -> bool:
    return isinstance(text, str) and text.startswith("data:")


def parse_data_url(text: str) -> tuple[str, str]:
    """Split a data URL into ``(mime_type, base64_payload)``.

    The MIME type defaults to ``audio/webm`` when the header omits it.

    Raises:
        SerializationError: the text is not a base64 data URL.
    """
    match = _DATA_URL_RE.match(text)
    if match is None:
        raise SerializationError("not a data URL (expected 'data:<mime>;base64,<payload>')")
    if match.group("b64") is None:
        raise SerializationError("data URL is not base64-encoded")
    mime = match.group("mime") or DEFAULT_AUDIO_MIME
    return mime, match.group("payload")


class BlobCodec:
    """Base64 data-URL codec. ``decode(encode(b, m), m) == b`` for every ``b``."""

    def encode(self, data: bytes, mime_type: str = DEFAULT_AUDIO_MIME) -> str:
        payload = base64.b64encode(bytes(data)).decode("ascii")
        return f"data:{mime_type};base64,{payload}"

    def decode(self, text: str, mime_type: Optional[str] = None) -> bytes:
        """Return the bytes carried by ``text``.

        ``mime_type`` is accepted for symmetry with ``encode``; the payload of a
        data URL is decoded regardless of the MIME type in its header.
        """
        payload = parse_data_url(text)[1] if is_data_url(text) else text
        try:
            return base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise SerializationError(f"invalid base64 payload: {exc}") from exc

    def encode_verified(self, data: bytes, mime_type: str, chunk_index: Optional[int] = None) -> str:
        """Encode and check the round trip before the text is trusted for storage."""
        text = self.encode(data, mime_type)
        if self.decode(text, mime_type) != bytes(data):
            raise SerializationError(
                f"decoded {mime_type} payload differs from the {len(data)} source bytes",
                chunk_index=chunk_index,
            )
        return text

    async def encode_async(self, data: bytes, mime_type: str = DEFAULT_AUDIO_MIME) -> str:
        return await asyncio.to_thread(self.encode, data, mime_type)

    async def decode_async(self, text: str, mime_type: Optional[str] = None) -> bytes:
        return await asyncio.to_thread(self.decode, text, mime_type)


default_codec = BlobCodec()


def encode(data: bytes, mime_type: str = DEFAULT_AUDIO_MIME) -> str:
    return default_codec.encode(data, mime_type)


def decode(text: str, mime_type: Optional[str] = None) -> bytes:
    return default_codec.decode(text, mime_type)
