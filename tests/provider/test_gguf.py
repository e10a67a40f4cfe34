import struct

import pytest

from lazygate.provider.gguf import (
    GGUFHeaderError,
    detect_quant_level,
    quant_level_from_filename,
    read_file_type,
)


def _string(value: str) -> bytes:
    raw = value.encode("utf-8")
    return struct.pack("<Q", len(raw)) + raw


def _header(*kvs: bytes, version: int = 3) -> bytes:
    return (
        b"GGUF"
        + struct.pack("<I", version)
        + struct.pack("<Q", 291)
        + struct.pack("<Q", len(kvs))
        + b"".join(kvs)
    )


def _kv_string(key: str, value: str) -> bytes:
    return _string(key) + struct.pack("<I", 8) + _string(value)


def _kv_u32(key: str, value: int) -> bytes:
    return _string(key) + struct.pack("<I", 4) + struct.pack("<I", value)


def _kv_string_array(key: str, values: list[str]) -> bytes:
    return (
        _string(key)
        + struct.pack("<I", 9)
        + struct.pack("<I", 8)
        + struct.pack("<Q", len(values))
        + b"".join(_string(v) for v in values)
    )


def _kv_f32_array(key: str, values: list[float]) -> bytes:
    return (
        _string(key)
        + struct.pack("<I", 9)
        + struct.pack("<I", 6)
        + struct.pack("<Q", len(values))
        + b"".join(struct.pack("<f", v) for v in values)
    )


def test_read_file_type_skips_preceding_metadata():
    header = _header(
        _kv_string("general.architecture", "qwen2"),
        _kv_string_array("tokenizer.ggml.tokens", ["<s>", "</s>", "hello"]),
        _kv_f32_array("tokenizer.ggml.scores", [0.0, -1.5, 2.25]),
        _kv_u32("general.file_type", 15),
    )
    assert read_file_type(header) == 15


def test_read_file_type_truncated_header_returns_none():
    header = _header(
        _kv_string("general.architecture", "llama"),
        _kv_u32("general.file_type", 18),
    )
    assert read_file_type(header[:-6]) is None


def test_read_file_type_missing_key_returns_none():
    assert read_file_type(_header(_kv_string("general.name", "x"))) is None


def test_read_file_type_rejects_non_gguf():
    with pytest.raises(GGUFHeaderError):
        read_file_type(b"<!DOCTYPE html><html>")


def test_detect_prefers_embedded_metadata_over_file_name():
    header = _header(_kv_u32("general.file_type", 18))
    # The file name claims Q4_K_M but the metadata says Q6_K.
    assert detect_quant_level(header, "model-Q4_K_M.gguf") == "Q6_K"


def test_detect_falls_back_to_file_name():
    assert detect_quant_level(None, "dir/Qwen2.5-7B-Instruct-Q5_K_M.gguf") == "Q5_K_M"
    assert detect_quant_level(b"not gguf at all", "model.IQ4_XS.gguf") == "IQ4_XS"
    assert detect_quant_level(_header(_kv_u32("general.file_type", 999)), "m-q8_0.gguf") == "Q8_0"


@pytest.mark.parametrize(
    "name, expected",
    [
        ("Llama-3.2-3B-Instruct-Q4_K_M.gguf", "Q4_K_M"),
        ("qwen2.5-7b-instruct-q6_k.gguf", "Q6_K"),
        ("Phi-3-mini-4k-instruct-fp16.gguf", ""),
        ("Mistral-7B-Instruct-v0.3.F16.gguf", "F16"),
        ("gemma-2-9b-it-IQ3_XXS.gguf", "IQ3_XXS"),
        ("model.gguf", ""),
    ],
)
def test_quant_level_from_filename(name, expected):
    assert quant_level_from_filename(name) == expected
