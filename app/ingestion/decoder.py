"""Tagged-variant decoding of a backend ``output`` map.

Each model declares an ``OutputLayout``; ``decode_output`` turns the untyped map
into exactly one variant, evaluated in this precedence order:

1. ``VolumeMedia``  inline or path key holding a value under ``volume_prefix``
2. ``InlineMedia``  primary inline key holding base64
3. ``InlineMedia``  legacy inline key (``legacy=True``)
4. ``RemoteMedia``  URL key, or any recognised key whose value starts with http
5. ``VolumeMedia``  network-volume path key
6. ``UnknownShape`` nothing recognised

Step 1 only applies to layouts that set ``volume_prefix``.
"""

import base64
import binascii
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

from app.errors import IngestionError
from app.models.base import OutputLayout

_DATA_URI = re.compile(r"^data:[^;,]*;base64,", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class InlineMedia:
    key: str
    data: str
    legacy: bool = False


@dataclass(frozen=True)
class RemoteMedia:
    key: str
    url: str


@dataclass(frozen=True)
class VolumeMedia:
    key: str
    path: str


@dataclass(frozen=True)
class UnknownShape:
    keys: Tuple[str, ...]


ResultSource = Union[InlineMedia, RemoteMedia, VolumeMedia, UnknownShape]


def _is_url(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("http")


def _is_inline(value: Any, min_length: int) -> bool:
    return isinstance(value, str) and len(value) > min_length and not value.startswith("http")


def decode_output(output: Optional[Dict[str, Any]], layout: OutputLayout) -> ResultSource:
    output = output or {}

    if layout.volume_prefix:
        for key in layout.inline_keys + layout.path_keys:
            value = output.get(key)
            if isinstance(value, str) and value.startswith(layout.volume_prefix):
                return VolumeMedia(key=key, path=value)

    for key in layout.inline_keys:
        if _is_inline(output.get(key), layout.min_inline_length):
            return InlineMedia(key=key, data=output[key])

    for key in layout.legacy_inline_keys:
        if _is_inline(output.get(key), layout.min_inline_length):
            return InlineMedia(key=key, data=output[key], legacy=True)

    for key in layout.url_keys + layout.inline_keys + layout.legacy_inline_keys:
        if _is_url(output.get(key)):
            return RemoteMedia(key=key, url=output[key])

    for key in layout.path_keys:
        value = output.get(key)
        if isinstance(value, str) and value.strip():
            return VolumeMedia(key=key, path=value.strip())

    return UnknownShape(keys=tuple(sorted(output)))


def describe(source: ResultSource) -> str:
    """Short tag for metadata, e.g. ``inline:image`` or ``unknown``."""
    if isinstance(source, InlineMedia):
        return f"{'legacy' if source.legacy else 'inline'}:{source.key}"
    if isinstance(source, RemoteMedia):
        return f"url:{source.key}"
    if isinstance(source, VolumeMedia):
        return f"volume:{source.key}"
    return "unknown"


def decode_base64(data: str) -> bytes:
    """Decode a base64 payload, tolerating data-URI prefixes, whitespace and missing padding."""
    text = _WHITESPACE.sub("", _DATA_URI.sub("", data, count=1))
    text += "=" * (-len(text) % 4)
    try:
        decoded = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise IngestionError(f"Invalid base64 payload: {exc}") from exc
    if not decoded:
        raise IngestionError("Base64 payload decoded to zero bytes")
    return decoded
