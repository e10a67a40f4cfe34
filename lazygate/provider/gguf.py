"""
Quantization level detection for GGUF weights.

The authoritative source is the `general.file_type` key in the file's
embedded key/value metadata, which sits at the start of the file. Only a
prefix of the file is fetched, so when the header is truncated before the
key appears (or the file is not GGUF at all) detection falls back to the
quantization tag conventionally embedded in the file name.

Header layout (little endian, GGUF v2+):

    magic "GGUF" | version u32 | tensor_count u64 | kv_count u64 |
    kv_count x (key: u64 len + utf-8 | value_type u32 | value)
"""

from __future__ import annotations

import re
import struct
from typing import Dict, Optional

from lazygate.logging_config import logger


GGUF_MAGIC = b"GGUF"
FILE_TYPE_KEY = "general.file_type"

_TYPE_STRING = 8
_TYPE_ARRAY = 9
_SCALAR_FORMATS: Dict[int, str] = {
    0: "<B",  # uint8
    1: "<b",  # int8
    2: "<H",  # uint16
    3: "<h",  # int16
    4: "<I",  # uint32
    5: "<i",  # int32
    6: "<f",  # float32
    7: "<?",  # bool
    10: "<Q",  # uint64
    11: "<q",  # int64
    12: "<d",  # float64
}

# llama.cpp `llama_ftype` values.
FILE_TYPE_NAMES: Dict[int, str] = {
    0: "F32",
    1: "F16",
    2: "Q4_0",
    3: "Q4_1",
    7: "Q8_0",
    8: "Q5_0",
    9: "Q5_1",
    10: "Q2_K",
    11: "Q3_K_S",
    12: "Q3_K_M",
    13: "Q3_K_L",
    14: "Q4_K_S",
    15: "Q4_K_M",
    16: "Q5_K_S",
    17: "Q5_K_M",
    18: "Q6_K",
    19: "IQ2_XXS",
    20: "IQ2_XS",
    21: "Q2_K_S",
    22: "IQ3_XS",
    23: "IQ3_XXS",
    24: "IQ1_S",
    25: "IQ4_NL",
    26: "IQ3_S",
    27: "IQ3_M",
    28: "IQ2_S",
    29: "IQ2_M",
    30: "IQ4_XS",
    31: "IQ1_M",
    32: "BF16",
    36: "TQ1_0",
    37: "TQ2_0",
}

_FILENAME_QUANT_RE = re.compile(
    r"(?<![A-Za-z0-9])"
    r"(IQ\d_[A-Z]+|Q\d_K_[SML]|Q\d_K|Q\d_\d|TQ\d_\d|BF16|F16|F32)"
    r"(?![A-Za-z0-9])",
    re.IGNORECASE,
)


class GGUFHeaderError(ValueError):
    """The bytes are not a readable GGUF header."""


class _Truncated(GGUFHeaderError):
    pass


class _HeaderReader:
    def __init__(self, data: bytes) -> None:
        self._data = data
        self._offset = 0

    def take(self, size: int) -> bytes:
        end = self._offset + size
        if end > len(self._data):
            raise _Truncated(f"header ends at byte {len(self._data)}")
        chunk = self._data[self._offset:end]
        self._offset = end
        return chunk

    def unpack(self, fmt: str):
        return struct.unpack(fmt, self.take(struct.calcsize(fmt)))[0]

    def string(self) -> str:
        length = self.unpack("<Q")
        return self.take(length).decode("utf-8", errors="replace")

    def value(self, value_type: int):
        if value_type in _SCALAR_FORMATS:
            return self.unpack(_SCALAR_FORMATS[value_type])
        if value_type == _TYPE_STRING:
            return self.string()
        self.skip(value_type)
        return None

    def skip(self, value_type: int) -> None:
        if value_type in _SCALAR_FORMATS:
            self.take(struct.calcsize(_SCALAR_FORMATS[value_type]))
        elif value_type == _TYPE_STRING:
            self.take(self.unpack("<Q"))
        elif value_type == _TYPE_ARRAY:
            item_type = self.unpack("<I")
            count = self.unpack("<Q")
            if item_type in _SCALAR_FORMATS:
                self.take(count * struct.calcsize(_SCALAR_FORMATS[item_type]))
            else:
                for _ in range(count):
                    self.skip(item_type)
        else:
            raise GGUFHeaderError(f"unknown metadata value type {value_type}")


def read_file_type(header: bytes) -> Optional[int]:
    """
    Return the `general.file_type` value from a GGUF header prefix.

    None means the key was not reached within the supplied bytes (or is
    absent). Raises GGUFHeaderError for data that is not GGUF.
    """
    reader = _HeaderReader(header)
    try:
        if reader.take(4) != GGUF_MAGIC:
            raise GGUFHeaderError("missing GGUF magic")
        version = reader.unpack("<I")
        if version < 2:
            raise GGUFHeaderError(f"unsupported GGUF version {version}")
        reader.unpack("<Q")  # tensor count
        kv_count = reader.unpack("<Q")
        for _ in range(kv_count):
            key = reader.string()
            value_type = reader.unpack("<I")
            if key == FILE_TYPE_KEY:
                value = reader.value(value_type)
                return value if isinstance(value, int) and not isinstance(value, bool) else None
            reader.skip(value_type)
    except _Truncated:
        return None
    return None


def quant_level_from_filename(file_path: str) -> str:
    name = file_path.rsplit("/", 1)[-1]
    matches = _FILENAME_QUANT_RE.findall(name)
    # The quant tag is conventionally the last one before the extension.
    return matches[-1].upper() if matches else ""


def detect_quant_level(header: Optional[bytes], file_path: str) -> str:
    """
    Quantization level for a weights file, "" when it cannot be determined.
    """
    if header:
        try:
            file_type = read_file_type(header)
        except GGUFHeaderError as exc:
            logger.warning("gguf: unreadable metadata in %s: %s", file_path, exc)
        else:
            if file_type is not None:
                name = FILE_TYPE_NAMES.get(file_type)
                if name:
                    return name
                logger.info(
                    "gguf: unknown file_type %d in %s; using file name", file_type, file_path
                )
    return quant_level_from_filename(file_path)


__all__ = [
    "FILE_TYPE_NAMES",
    "GGUFHeaderError",
    "detect_quant_level",
    "quant_level_from_filename",
    "read_file_type",
]
