"""BLAKE3 hashing, used to derive internal file names from object paths."""

from __future__ import annotations

import struct
from dataclasses import dataclass

_MASK = 0xFFFFFFFF
_CHUNK_LEN = 1024
_BLOCK_LEN = 64

_CHUNK_START = 1
_CHUNK_END = 2
_PARENT = 4
_ROOT = 8

_IV = (
    0x6A09E667,
    0xBB67AE85,
    0x3C6EF372,
    0xA54FF53A,
    0x510E527F,
    0x9B05688C,
    0x1F83D9AB,
    0x5BE0CD19,
)

_PERMUTATION = (2, 6, 3, 10, 7, 0, 4, 13, 1, 11, 12, 5, 9, 14, 15, 8)


def _rotr(value: int, shift: int) -> int:
    return ((value >> shift) | (value << (32 - shift))) & _MASK


def _g(s: list[int], a: int, b: int, c: int, d: int, mx: int, my: int) -> None:
    s[a] = (s[a] + s[b] + mx) & _MASK
    s[d] = _rotr(s[d] ^ s[a], 16)
    s[c] = (s[c] + s[d]) & _MASK
    s[b] = _rotr(s[b] ^ s[c], 12)
    s[a] = (s[a] + s[b] + my) & _MASK
    s[d] = _rotr(s[d] ^ s[a], 8)
    s[c] = (s[c] + s[d]) & _MASK
    s[b] = _rotr(s[b] ^ s[c], 7)


def _round(s: list[int], m: tuple[int, ...]) -> None:
    _g(s, 0, 4, 8, 12, m[0], m[1])
    _g(s, 1, 5, 9, 13, m[2], m[3])
    _g(s, 2, 6, 10, 14, m[4], m[5])
    _g(s, 3, 7, 11, 15, m[6], m[7])
    _g(s, 0, 5, 10, 15, m[8], m[9])
    _g(s, 1, 6, 11, 12, m[10], m[11])
    _g(s, 2, 7, 8, 13, m[12], m[13])
    _g(s, 3, 4, 9, 14, m[14], m[15])


def _compress(
    cv: tuple[int, ...], words: tuple[int, ...], counter: int, block_len: int, flags: int
) -> list[int]:
    state = [*cv, *_IV[:4], counter & _MASK, (counter >> 32) & _MASK, block_len, flags]
    message = words
    for number in range(7):
        _round(state, message)
        if number < 6:
            message = tuple(message[p] for p in _PERMUTATION)
    low = [x ^ y for x, y in zip(state[:8], state[8:])]
    high = [x ^ y for x, y in zip(state[8:], cv)]
    return low + high


def _words(block: bytes) -> tuple[int, ...]:
    return struct.unpack("<16I", bytes(block).ljust(_BLOCK_LEN, b"\0"))


@dataclass(frozen=True)
class _Output:
    cv: tuple[int, ...]
    words: tuple[int, ...]
    counter: int
    block_len: int
    flags: int

    def chaining_value(self) -> tuple[int, ...]:
        return tuple(_compress(self.cv, self.words, self.counter, self.block_len, self.flags)[:8])

    def root_bytes(self) -> bytes:
        out = _compress(self.cv, self.words, 0, self.block_len, self.flags | _ROOT)
        return struct.pack("<8I", *out[:8])


def _chunk_output(chunk: memoryview, counter: int) -> _Output:
    blocks = [chunk[start : start + _BLOCK_LEN] for start in range(0, len(chunk), _BLOCK_LEN)]
    if not blocks:
        blocks = [memoryview(b"")]
    cv = _IV
    for position, block in enumerate(blocks[:-1]):
        flags = _CHUNK_START if position == 0 else 0
        cv = tuple(_compress(cv, _words(block), counter, _BLOCK_LEN, flags)[:8])
    last = blocks[-1]
    flags = _CHUNK_END | (_CHUNK_START if len(blocks) == 1 else 0)
    return _Output(cv, _words(last), counter, len(last), flags)


def _tree_output(data: memoryview, chunk_offset: int) -> _Output:
    chunks = max(1, -(-len(data) // _CHUNK_LEN))
    if chunks == 1:
        return _chunk_output(data, chunk_offset)
    left_chunks = 1 << ((chunks - 1).bit_length() - 1)
    split = left_chunks * _CHUNK_LEN
    left = _tree_output(data[:split], chunk_offset).chaining_value()
    right = _tree_output(data[split:], chunk_offset + left_chunks).chaining_value()
    return _Output(_IV, (*left, *right), 0, _BLOCK_LEN, _PARENT)


def blake3_digest(data: bytes | str) -> bytes:
    """Return the 32-byte BLAKE3 digest of ``data`` (strings are UTF-8 encoded)."""
    raw = data.encode("utf-8") if isinstance(data, str) else bytes(data)
    return _tree_output(memoryview(raw), 0).root_bytes()


def blake3_hex(data: bytes | str) -> str:
    """Return the BLAKE3 digest of ``data`` as lower-case hex."""
    return blake3_digest(data).hex()