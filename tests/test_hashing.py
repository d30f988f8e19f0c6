import pytest

from ofuton.hashing import blake3_digest, blake3_hex


def test_empty_input_matches_reference():
    assert blake3_hex(b"") == "af1349b9f5f9a1a6a0404dea36dcc9499bcb25c9adc112b7cc9a93cae41f3262"


def test_abc_matches_reference():
    assert blake3_hex(b"abc") == "6437b3ac38465133ffb63b75273a8db548c558465d79db03fd359c6cd5bd9d85"


def test_hex_matches_digest():
    data = b"/bucket/some/object.png"
    assert blake3_digest(data).hex() == blake3_hex(data)


def test_string_is_hashed_as_utf8():
    assert blake3_hex("/bucket/ファイル") == blake3_hex("/bucket/ファイル".encode("utf-8"))


@pytest.mark.parametrize("size", [0, 1, 63, 64, 65, 1023, 1024, 1025, 2048, 3073, 5000])
def test_digest_length_is_fixed(size):
    data = bytes(i % 251 for i in range(size))
    assert len(blake3_digest(data)) == 32


def test_deterministic_and_sensitive_to_input():
    data = bytes(i % 251 for i in range(4097))
    assert blake3_hex(data) == blake3_hex(data)
    assert blake3_hex(data) != blake3_hex(data[:-1])
    assert blake3_hex(data[:1024]) != blake3_hex(data[:1025])


def test_distinct_chunk_counts_give_distinct_digests():
    digests = {blake3_hex(b"x" * n) for n in (1024, 2048, 3072, 4096)}
    assert len(digests) == 4