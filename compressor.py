"""
LZ Packing Module

Splits the input into literals and matches (hash chain match finder,
greedy/lazy parse) and writes the result as a upkr stream through the
adaptive rANS encoder.
"""

from typing import List, Tuple, Optional, Dict
from collections import defaultdict

from rans_coder import (
    RansEncoder,
    CONTEXT_IS_MATCH,
    CONTEXT_HAS_OFFSET,
    CONTEXT_OFFSET,
    CONTEXT_LENGTH,
    LENGTH_CODE_BITS,
)
from unpacker import unpack_bytes


MAX_OFFSET = 1 << 20
MIN_MATCH = 2
MAX_LENGTH = 1 << 16
# two byte matches are only taken within this distance
SHORT_MATCH_MAX_OFFSET = 1 << 12
DEFAULT_LEVEL = 6
MAX_LEVEL = 9
LAZY_LEVEL = 4


class TokenType:
    LITERAL = 0
    MATCH = 1


class Token:
    def __init__(self, token_type: int, length: int = 0, distance: int = 0, literal: int = 0):
        self.type = token_type
        self.length = length
        self.distance = distance
        self.literal = literal

    def __repr__(self):
        if self.type == TokenType.LITERAL:
            return f"LITERAL({self.literal:02x})"
        else:
            return f"MATCH(len={self.length}, dist={self.distance})"

    def __eq__(self, other):
        if not isinstance(other, Token):
            return False
        return (self.type == other.type and
                self.length == other.length and
                self.distance == other.distance and
                self.literal == other.literal)


def normalize_level(level) -> int:
    """Clamps a compression level into 0..9, non-numbers give the default"""
    try:
        preset = int(level)
    except (TypeError, ValueError):
        preset = DEFAULT_LEVEL
    if preset < 0:
        preset = 0
    if preset > MAX_LEVEL:
        preset = MAX_LEVEL
    return preset


class MatchFinder:
    def __init__(self, data: bytes, max_chain: int, max_offset: int = MAX_OFFSET):
        self.data = data
        self.max_chain = max_chain
        self.max_offset = max_offset
        self.hash_chains: Dict[int, List[int]] = defaultdict(list)
        self.next_insert = 0

    def _key(self, pos: int) -> int:
        return self.data[pos] | (self.data[pos + 1] << 8)

    def _insert_until(self, pos: int):
        end = min(pos, len(self.data) - 1)
        while self.next_insert < end:
            self.hash_chains[self._key(self.next_insert)].append(self.next_insert)
            self.next_insert += 1

    def match_length(self, pos: int, distance: int, limit: int) -> int:
        src = pos - distance
        length = 0
        while length < limit and self.data[src + length] == self.data[pos + length]:
            length += 1
        return length

    def find_best_match(self, pos: int) -> Optional[Tuple[int, int]]:
        if pos + MIN_MATCH > len(self.data):
            return None

        self._insert_until(pos)
        candidates = self.hash_chains.get(self._key(pos))
        if not candidates:
            return None

        window_start = pos - self.max_offset
        limit = min(MAX_LENGTH, len(self.data) - pos)

        best_length = MIN_MATCH - 1
        best_distance = 0
        checked = 0

        for candidate_pos in reversed(candidates):
            if candidate_pos < window_start or checked >= self.max_chain:
                break
            checked += 1

            distance = pos - candidate_pos
            match_length = self.match_length(pos, distance, limit)
            if match_length == MIN_MATCH and distance > SHORT_MATCH_MAX_OFFSET:
                continue

            if match_length > best_length:
                best_length = match_length
                best_distance = distance

                if best_length == limit:
                    break

        if best_length >= MIN_MATCH:
            return (best_length, best_distance)
        return None


class LZParser:
    def __init__(self, level: int = DEFAULT_LEVEL):
        self.level = normalize_level(level)
        self.max_chain = 4 << self.level
        self.lazy = self.level >= LAZY_LEVEL

    def _best_match(self, finder: MatchFinder, pos: int,
                    prev_was_match: bool, offset: int) -> Optional[Tuple[int, int]]:
        best = finder.find_best_match(pos)

        # the last offset can only be reused right after a literal
        if not prev_was_match and 0 < offset <= pos:
            limit = min(MAX_LENGTH, len(finder.data) - pos)
            rep_length = finder.match_length(pos, offset, limit)
            if rep_length >= MIN_MATCH and (best is None or rep_length + 1 >= best[0]):
                return (rep_length, offset)

        return best

    def parse(self, data: bytes) -> List[Token]:
        tokens: List[Token] = []
        if not data:
            return tokens

        finder = MatchFinder(data, self.max_chain)
        pos = 0
        prev_was_match = False
        offset = 0

        while pos < len(data):
            match = self._best_match(finder, pos, prev_was_match, offset)

            if match and self.lazy and pos + 1 < len(data):
                next_match = self._best_match(finder, pos + 1, False, offset)
                if next_match and next_match[0] > match[0] + 1:
                    match = None

            if match is None:
                tokens.append(Token(TokenType.LITERAL, literal=data[pos]))
                pos += 1
                prev_was_match = False
            else:
                length, distance = match
                tokens.append(Token(TokenType.MATCH, length=length, distance=distance))
                pos += length
                offset = distance
                prev_was_match = True

        return tokens


def encode_length(encoder: RansEncoder, context_index: int, value: int):
    """Inverse of unpacker.decode_length"""
    if value < 1 or value.bit_length() > LENGTH_CODE_BITS:
        raise ValueError(f"value {value} does not fit a {LENGTH_CODE_BITS}-bit length code")

    for bit_pos in range(value.bit_length() - 1):
        encoder.encode_bit(context_index, 1)
        encoder.encode_bit(context_index + 1, (value >> bit_pos) & 1)
        context_index += 2
    encoder.encode_bit(context_index, 0)


def encode_literal(encoder: RansEncoder, byte: int):
    node = 1
    for bit_pos in range(7, -1, -1):
        bit = (byte >> bit_pos) & 1
        encoder.encode_bit(node, bit)
        node = (node << 1) | bit


class TokenEncoder:
    @staticmethod
    def encode_tokens(tokens: List[Token]) -> bytes:
        encoder = RansEncoder()
        prev_was_match = False
        offset = 0

        for token in tokens:
            if token.type == TokenType.LITERAL:
                encoder.encode_bit(CONTEXT_IS_MATCH, 0)
                encode_literal(encoder, token.literal & 0xFF)
                prev_was_match = False

            else:
                if token.distance < 1:
                    raise ValueError(f"invalid match distance {token.distance}")

                encoder.encode_bit(CONTEXT_IS_MATCH, 1)
                if prev_was_match:
                    encode_length(encoder, CONTEXT_OFFSET, token.distance + 1)
                elif token.distance == offset:
                    encoder.encode_bit(CONTEXT_HAS_OFFSET, 0)
                else:
                    encoder.encode_bit(CONTEXT_HAS_OFFSET, 1)
                    encode_length(encoder, CONTEXT_OFFSET, token.distance + 1)
                offset = token.distance

                encode_length(encoder, CONTEXT_LENGTH, token.length)
                prev_was_match = True

        # end of stream: a match with offset 0
        encoder.encode_bit(CONTEXT_IS_MATCH, 1)
        if not prev_was_match:
            encoder.encode_bit(CONTEXT_HAS_OFFSET, 1)
        encode_length(encoder, CONTEXT_OFFSET, 1)

        return encoder.finish()


def compress_data(data: bytes, level: int = DEFAULT_LEVEL) -> bytes:
    tokens = LZParser(level).parse(data)
    return TokenEncoder.encode_tokens(tokens)


def decompress_data(compressed: bytes, size: int) -> bytes:
    return unpack_bytes(compressed, size)


class CompressionStats:
    def __init__(self, tokens: List[Token], original_size: int, compressed_size: int):
        self.tokens = tokens
        self.original_size = original_size
        self.compressed_size = compressed_size

        self.literal_count = sum(1 for t in tokens if t.type == TokenType.LITERAL)
        self.match_count = sum(1 for t in tokens if t.type == TokenType.MATCH)

        self.total_match_length = sum(
            t.length for t in tokens if t.type == TokenType.MATCH
        )

        self.compression_ratio = (
            self.compressed_size / original_size * 100
            if original_size > 0 else 0
        )

    def print_stats(self, file=None):
        print(f"Packing Statistics:", file=file)
        print(f"  Original size:       {self.original_size} bytes", file=file)
        print(f"  Literals:            {self.literal_count}", file=file)
        print(f"  Matches:             {self.match_count}", file=file)
        print(f"  Total match length:  {self.total_match_length}", file=file)
        if self.match_count > 0:
            print(f"  Avg match length:    {self.total_match_length / self.match_count:.1f}", file=file)
        print(f"  Packed size:         {self.compressed_size} bytes ({self.compression_ratio:.1f}%)", file=file)
