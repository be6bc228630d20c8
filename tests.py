"""
Unit tests for the rANS coder and the upkr unpacker
"""

import random
import unittest

from errors import (
    UnpackError,
    TruncatedInputError,
    OutputOverflowError,
    InvalidCodeError,
)
from rans_coder import (
    RansDecoder,
    RansEncoder,
    NUM_CONTEXTS,
    CONTEXT_IS_MATCH,
    CONTEXT_HAS_OFFSET,
    CONTEXT_OFFSET,
    CONTEXT_LENGTH,
)
from unpacker import decode_length, decode_literal, unpack, unpack_from_decoder, unpack_bytes
from compressor import (
    Token,
    TokenType,
    TokenEncoder,
    compress_data,
    decompress_data,
    encode_length,
    encode_literal,
)


class RecordingDecoder(RansDecoder):
    """Remembers (context, bit, probability after update) for every decoded bit"""

    def __init__(self, data: bytes):
        super().__init__(data)
        self.records = []

    def decode_bit(self, context_index: int) -> int:
        bit = super().decode_bit(context_index)
        self.records.append((context_index, bit, self.probs[context_index]))
        return bit


class BoundsCheckingDecoder(RansDecoder):
    """Fails as soon as an updated probability leaves 1..255"""

    def decode_bit(self, context_index: int) -> int:
        bit = super().decode_bit(context_index)
        prob = self.probs[context_index]
        if not 1 <= prob <= 255:
            raise AssertionError(f"probability {prob} out of bounds at context {context_index}")
        return bit


def literal(byte) -> Token:
    if isinstance(byte, str):
        byte = ord(byte)
    return Token(TokenType.LITERAL, literal=byte)


def match(distance: int, length: int) -> Token:
    return Token(TokenType.MATCH, length=length, distance=distance)


class TestRansDecoder(unittest.TestCase):
    """Tests for the bit decoder"""

    def test_initial_probabilities(self):
        """All contexts start at 128"""
        decoder = RansDecoder(b'')
        self.assertEqual(len(decoder.probs), NUM_CONTEXTS)
        self.assertEqual(NUM_CONTEXTS, 385)
        self.assertTrue(all(p == 128 for p in decoder.probs))

    def test_decode_one_bit(self):
        """Renormalization reads two bytes, then a 1 is decoded"""
        decoder = RansDecoder(b'\x10\x00\xff')
        bit = decoder.decode_bit(0)

        self.assertEqual(bit, 1)
        self.assertEqual(decoder.pos, 2)
        self.assertEqual(decoder.state, 128 * 16)
        self.assertEqual(decoder.probs[0], 136)

    def test_decode_zero_bit(self):
        """Low byte >= probability decodes a 0"""
        decoder = RansDecoder(b'\x10\x80')
        bit = decoder.decode_bit(3)

        self.assertEqual(bit, 0)
        self.assertEqual(decoder.state, 128 * 16 + 128 - 128)
        self.assertEqual(decoder.probs[3], 120)
        self.assertTrue(decoder.is_finished())

    def test_truncated_input(self):
        """Running out of bytes during renormalization raises"""
        with self.assertRaises(TruncatedInputError):
            RansDecoder(b'').decode_bit(0)

        with self.assertRaises(TruncatedInputError):
            RansDecoder(b'\x20').decode_bit(0)

    def test_errors_are_value_errors(self):
        """The hardened errors share ValueError as base"""
        for error in (TruncatedInputError, OutputOverflowError, InvalidCodeError):
            self.assertTrue(issubclass(error, UnpackError))
            self.assertTrue(issubclass(error, ValueError))


class TestRansEncoder(unittest.TestCase):
    """Tests for the encoder side"""

    def test_probability_saturation(self):
        """Probabilities stop at 1 and 255"""
        encoder = RansEncoder()
        encoder.probs[5] = 255
        encoder.encode_bit(5, 1)
        self.assertEqual(encoder.probs[5], 255)

        encoder.probs[7] = 1
        encoder.encode_bit(7, 0)
        self.assertEqual(encoder.probs[7], 1)

    def test_random_bits_roundtrip(self):
        """Decoder returns the encoded bits and consumes the whole stream"""
        rng = random.Random(1234)
        decisions = []
        for _ in range(5000):
            context = rng.randrange(NUM_CONTEXTS)
            # skew some contexts so probabilities drift toward the edges
            if context % 3 == 0:
                bit = 1 if rng.random() < 0.97 else 0
            elif context % 3 == 1:
                bit = 1 if rng.random() < 0.03 else 0
            else:
                bit = rng.randrange(2)
            decisions.append((context, bit))

        encoder = RansEncoder()
        for context, bit in decisions:
            encoder.encode_bit(context, bit)
        stream = encoder.finish()

        decoder = RansDecoder(stream)
        decoded = [decoder.decode_bit(context) for context, _ in decisions]

        self.assertEqual(decoded, [bit for _, bit in decisions])
        self.assertEqual(decoder.probs, encoder.probs)
        self.assertTrue(decoder.is_finished())

    def test_skewed_bits_are_cheap(self):
        """A long run of predictable bits costs only a few bytes"""
        encoder = RansEncoder()
        for _ in range(1000):
            encoder.encode_bit(0, 0)
        stream = encoder.finish()

        self.assertLess(len(stream), 30)

        decoder = RansDecoder(stream)
        self.assertEqual([decoder.decode_bit(0) for _ in range(1000)], [0] * 1000)


class TestLengthCode(unittest.TestCase):
    """Tests for the variable length integer code"""

    def test_minimal_length(self):
        """A single 0 continue bit decodes to 1"""
        encoder = RansEncoder()
        encoder.encode_bit(CONTEXT_LENGTH, 0)
        decoder = RansDecoder(encoder.finish())

        self.assertEqual(decode_length(decoder, CONTEXT_LENGTH), 1)
        self.assertTrue(decoder.is_finished())

    def test_length_values(self):
        """Values up to 32 bits survive encode/decode"""
        values = [1, 2, 3, 7, 8, 255, 256, 1000, 65537, 2 ** 31, 2 ** 32 - 1]

        encoder = RansEncoder()
        for value in values:
            encode_length(encoder, CONTEXT_OFFSET, value)
        decoder = RansDecoder(encoder.finish())

        self.assertEqual([decode_length(decoder, CONTEXT_OFFSET) for _ in values], values)

    def test_length_uses_position_contexts(self):
        """Each bit position has its own context pair"""
        encoder = RansEncoder()
        encode_length(encoder, CONTEXT_LENGTH, 0b1101)
        decoder = RecordingDecoder(encoder.finish())

        self.assertEqual(decode_length(decoder, CONTEXT_LENGTH), 0b1101)
        contexts = [(context, bit) for context, bit, _ in decoder.records]
        self.assertEqual(contexts, [
            (321, 1), (322, 1),
            (323, 1), (324, 0),
            (325, 1), (326, 1),
            (327, 0),
        ])

    def test_encode_rejects_out_of_range(self):
        """Values below 1 or above 32 bits cannot be coded"""
        encoder = RansEncoder()
        with self.assertRaises(ValueError):
            encode_length(encoder, CONTEXT_LENGTH, 0)
        with self.assertRaises(ValueError):
            encode_length(encoder, CONTEXT_LENGTH, 2 ** 32)

    def test_decode_rejects_overlong_code(self):
        """A 33rd bit position is an invalid code"""
        encoder = RansEncoder()
        for bit_pos in range(32):
            encoder.encode_bit(CONTEXT_OFFSET + 2 * bit_pos, 1)
            encoder.encode_bit(CONTEXT_OFFSET + 2 * bit_pos + 1, 0)
        decoder = RansDecoder(encoder.finish())

        with self.assertRaises(InvalidCodeError):
            decode_length(decoder, CONTEXT_OFFSET)


class TestLiteralDecoder(unittest.TestCase):
    """Tests for the literal bit trie"""

    def test_all_bytes_bijective(self):
        """256 different codes decode to 256 different bytes"""
        decoded = set()
        for byte in range(256):
            encoder = RansEncoder()
            encode_literal(encoder, byte)
            result = decode_literal(RansDecoder(encoder.finish()))
            self.assertEqual(result, byte)
            decoded.add(result)

        self.assertEqual(decoded, set(range(256)))

    def test_trie_contexts(self):
        """Node ids are the accumulated high bits below a leading 1"""
        encoder = RansEncoder()
        encode_literal(encoder, 0b10110001)
        decoder = RecordingDecoder(encoder.finish())

        self.assertEqual(decode_literal(decoder), 0b10110001)
        contexts = [context for context, _, _ in decoder.records]
        self.assertEqual(contexts, [1, 0b11, 0b110, 0b1101, 0b11011, 0b110110, 0b1101100, 0b11011000])

    def test_sequence_of_literals(self):
        """Adapted contexts keep decoding correctly"""
        data = bytes(range(256)) + bytes(reversed(range(256)))
        encoder = RansEncoder()
        for byte in data:
            encode_literal(encoder, byte)
        decoder = RansDecoder(encoder.finish())

        self.assertEqual(bytes(decode_literal(decoder) for _ in data), data)


class TestUnpack(unittest.TestCase):
    """Tests for the literal/match control loop"""

    def test_empty_stream(self):
        """The terminator alone produces no output"""
        stream = TokenEncoder.encode_tokens([])
        self.assertEqual(unpack(bytearray(0), stream), 0)

    def test_literals_only(self):
        """Plain literals are copied through"""
        stream = TokenEncoder.encode_tokens([literal(c) for c in 'upkr'])
        destination = bytearray(4)

        self.assertEqual(unpack(destination, stream), 4)
        self.assertEqual(bytes(destination), b'upkr')

    def test_overlapping_copy(self):
        """offset 1, length 5 after 0xAB expands to six 0xAB"""
        stream = TokenEncoder.encode_tokens([literal(0xAB), match(1, 5)])
        destination = bytearray(6)

        self.assertEqual(unpack(destination, stream), 6)
        self.assertEqual(bytes(destination), b'\xab' * 6)

    def test_repeat_offset_reuse(self):
        """A match without a new offset reuses the most recent offset"""
        tokens = [
            literal('a'), literal('b'), literal('c'), match(3, 3),
            literal('d'), match(2, 2),
            literal('e'), match(2, 2),
        ]
        stream = TokenEncoder.encode_tokens(tokens)
        decoder = RecordingDecoder(stream)
        destination = bytearray(12)

        self.assertEqual(unpack_from_decoder(destination, decoder), 12)
        self.assertEqual(bytes(destination), b'abcabcdcdede')

        flags = [bit for context, bit, _ in decoder.records if context == CONTEXT_HAS_OFFSET]
        # new offset 3, new offset 2, reused 2; the terminator follows a match
        self.assertEqual(flags, [1, 1, 0])

    def test_match_after_match_has_no_offset_flag(self):
        """The has-offset flag is only read after a literal"""
        tokens = [literal('a'), literal('b'), match(2, 2), match(1, 3)]
        stream = TokenEncoder.encode_tokens(tokens)
        decoder = RecordingDecoder(stream)
        destination = bytearray(7)

        self.assertEqual(unpack_from_decoder(destination, decoder), 7)
        self.assertEqual(bytes(destination), b'ababbbb')

        flag_reads = [context for context, _, _ in decoder.records if context == CONTEXT_HAS_OFFSET]
        self.assertEqual(len(flag_reads), 1)

    def test_terminator_stops_immediately(self):
        """Offset 0 ends decoding before any length is read"""
        stream = TokenEncoder.encode_tokens([literal('a')]) + b'\xff' * 8
        decoder = RecordingDecoder(stream)
        destination = bytearray(10)

        self.assertEqual(unpack_from_decoder(destination, decoder), 1)
        self.assertEqual(bytes(destination), b'a' + b'\x00' * 9)

        contexts = [context for context, _, _ in decoder.records]
        self.assertEqual(contexts[-1], CONTEXT_OFFSET)
        self.assertNotIn(CONTEXT_LENGTH, contexts)
        self.assertEqual(decoder.records[-1][1], 0)

    def test_output_overflow_literal(self):
        """Literals past the destination end raise"""
        stream = TokenEncoder.encode_tokens([literal(c) for c in 'hello'])
        with self.assertRaises(OutputOverflowError):
            unpack(bytearray(3), stream)

    def test_output_overflow_match(self):
        """Matches past the destination end raise"""
        stream = TokenEncoder.encode_tokens([literal('a'), match(1, 10)])
        with self.assertRaises(OutputOverflowError):
            unpack(bytearray(5), stream)

    def test_offset_before_start(self):
        """A match reaching before the first output byte is invalid"""
        stream = TokenEncoder.encode_tokens([literal('a'), match(5, 2)])
        with self.assertRaises(InvalidCodeError):
            unpack(bytearray(16), stream)

    def test_repeat_offset_without_previous_match(self):
        """Reusing an offset before any match is invalid"""
        encoder = RansEncoder()
        encoder.encode_bit(CONTEXT_IS_MATCH, 0)
        encode_literal(encoder, ord('a'))
        encoder.encode_bit(CONTEXT_IS_MATCH, 1)
        encoder.encode_bit(CONTEXT_HAS_OFFSET, 0)
        encode_length(encoder, CONTEXT_LENGTH, 2)

        with self.assertRaises(InvalidCodeError):
            unpack(bytearray(16), encoder.finish())

    def test_truncated_stream(self):
        """An empty or one-byte stream cannot be unpacked"""
        with self.assertRaises(TruncatedInputError):
            unpack(bytearray(10), b'')
        with self.assertRaises(TruncatedInputError):
            unpack(bytearray(10), b'\x20')

    def test_unpack_into_memoryview(self):
        """Any writable buffer works as destination"""
        data = b'memoryview memoryview memoryview'
        stream = compress_data(data)
        buffer = bytearray(len(data) + 8)

        size = unpack(memoryview(buffer), stream)
        self.assertEqual(size, len(data))
        self.assertEqual(bytes(buffer[:size]), data)

    def test_unpack_bytes_truncates(self):
        """unpack_bytes returns only the written bytes"""
        data = b'abcabcabc'
        self.assertEqual(unpack_bytes(compress_data(data), 100), data)

    def test_unpack_from_decoder(self):
        """A caller-built decoder reads the same stream as unpack"""
        data = b'decoder decoder decoder'
        stream = compress_data(data)
        decoder = RecordingDecoder(stream)
        destination = bytearray(len(data))

        self.assertEqual(unpack_from_decoder(destination, decoder), len(data))
        self.assertEqual(bytes(destination), data)
        self.assertTrue(decoder.is_finished())
        self.assertEqual(unpack_bytes(stream, len(data)), data)


class TestProperties(unittest.TestCase):
    """Properties over many generated streams"""

    def test_roundtrip(self):
        """Packed payloads unpack to the exact original bytes"""
        rng = random.Random(42)
        samples = [
            b'',
            b'A',
            b'AAAAAAAAAA',
            b'Hello World! Hello World!',
            b'X' * 10000,
            bytes(rng.randrange(256) for _ in range(2000)),
            b'the quick brown fox jumps over the lazy dog. ' * 50,
            bytes(range(256)) * 4,
        ]
        for level in (0, 3, 6, 9):
            for data in samples:
                packed = compress_data(data, level)
                self.assertEqual(decompress_data(packed, len(data)), data)

    def test_determinism(self):
        """Two decodes of the same stream follow the same probability trajectory"""
        data = b'determinism: same input, same output. ' * 20
        stream = compress_data(data)

        first = RecordingDecoder(stream)
        second = RecordingDecoder(stream)
        out_first = bytearray(len(data))
        out_second = bytearray(len(data))

        unpack_from_decoder(out_first, first)
        unpack_from_decoder(out_second, second)

        self.assertEqual(out_first, out_second)
        self.assertEqual(first.records, second.records)
        self.assertEqual(first.probs, second.probs)

    def test_probability_bounds(self):
        """Probabilities stay within 1..255 across many streams"""
        rng = random.Random(7)
        for _ in range(150):
            alphabet = rng.choice([b'ab', b'abc ', bytes(range(256)), b'\x00\xff'])
            size = rng.randrange(0, 400)
            data = bytes(rng.choice(alphabet) for _ in range(size))
            stream = compress_data(data, rng.randrange(0, 4))

            decoder = BoundsCheckingDecoder(stream)
            destination = bytearray(size)
            self.assertEqual(unpack_from_decoder(destination, decoder), size)
            self.assertEqual(bytes(destination), data)
            self.assertTrue(all(1 <= p <= 255 for p in decoder.probs))


def run_tests():
    """Runs all tests"""
    unittest.main(verbosity=2)


if __name__ == '__main__':
    run_tests()
