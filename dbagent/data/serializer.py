"""
DB Agent - Data Serializer Module

Serializers turn a spool envelope into the bytes stored on disk and POSTed
to the API as-is.
"""

import gzip
import json
from typing import Any

from ..errors import ConfigError
from ..proto import AgentJSONEncoder

GZIP_MAGIC = b"\x1f\x8b"


class JsonSerializer:
    encoding = ""
    file_type = "json"

    def to_bytes(self, data: Any) -> bytes:
        return json.dumps(data, cls=AgentJSONEncoder, sort_keys=True,
                          separators=(',', ':')).encode('utf-8')

    def from_bytes(self, raw: bytes) -> Any:
        return json.loads(raw.decode('utf-8'))


class JsonGzipSerializer(JsonSerializer):
    """JSON compressed with gzip; mtime is fixed so output is deterministic"""
    encoding = "gzip"
    file_type = "gz"

    def to_bytes(self, data: Any) -> bytes:
        return gzip.compress(super().to_bytes(data), mtime=0)

    def from_bytes(self, raw: bytes) -> Any:
        return super().from_bytes(gzip.decompress(raw))


def make_serializer(encoding: str) -> JsonSerializer:
    """Serializer for a data.conf encoding ("" or "gzip")

    Raises:
        ConfigError: If the encoding is unknown
    """
    if encoding == "":
        return JsonSerializer()
    if encoding == "gzip":
        return JsonGzipSerializer()
    raise ConfigError(f"Unknown encoding: {encoding}")


def is_gzip(raw: bytes) -> bool:
    return raw[:2] == GZIP_MAGIC


def decode(raw: bytes) -> Any:
    """Decode a spool entry written by either serializer"""
    if is_gzip(raw):
        return JsonGzipSerializer().from_bytes(raw)
    return JsonSerializer().from_bytes(raw)
