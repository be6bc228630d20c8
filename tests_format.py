"""
Tests for the packer, the frame format and the command line tool
"""

import io
import os
import struct
import sys
import tempfile
import unittest
from unittest import mock
from contextlib import redirect_stdout, redirect_stderr

from compressor import (
    LZParser,
    MatchFinder,
    Token,
    TokenType,
    CompressionStats,
    compress_data,
    normalize_level,
    DEFAULT_LEVEL,
)
from errors import OutputOverflowError
from format import (
    FrameHeader,
    FRAME_MAGIC,
    HEADER_SIZE,
    calculate_crc32,
    verify_integrity,
    compress_upkr,
    decompress_upkr,
)
from main import FilePacker, main


class TerminalOutput(io.TextIOWrapper):
    def isatty(self):
        return True


class TestLZParser(unittest.TestCase):
    """Tests for the LZ parse"""

    def test_repeated_pattern(self):
        """A repeated pattern becomes three literals and one match"""
        for level in (0, 6):
            tokens = LZParser(level).parse(b'abcabcabc')
            self.assertEqual(tokens, [
                Token(TokenType.LITERAL, literal=ord('a')),
                Token(TokenType.LITERAL, literal=ord('b')),
                Token(TokenType.LITERAL, literal=ord('c')),
                Token(TokenType.MATCH, length=6, distance=3),
            ])

    def test_empty_data(self):
        """No data, no tokens"""
        self.assertEqual(LZParser().parse(b''), [])

    def test_tokens_cover_input(self):
        """Token lengths add up to the input size"""
        data = b'Lorem ipsum dolor sit amet, lorem ipsum dolor sit amet.' * 5
        tokens = LZParser(9).parse(data)
        covered = sum(1 if t.type == TokenType.LITERAL else t.length for t in tokens)
        self.assertEqual(covered, len(data))

    def test_level_normalization(self):
        """Levels are clamped into 0..9"""
        self.assertEqual(normalize_level(-3), 0)
        self.assertEqual(normalize_level(42), 9)
        self.assertEqual(normalize_level('7'), 7)
        self.assertEqual(normalize_level(None), DEFAULT_LEVEL)
        self.assertEqual(LZParser(100).level, 9)

    def test_compression_ratio(self):
        """Repetitive data shrinks"""
        data = b'AAAA' * 1000
        self.assertLess(len(compress_data(data)), 40)

    def test_token_repr(self):
        self.assertEqual(repr(Token(TokenType.LITERAL, literal=0x41)), 'LITERAL(41)')
        self.assertEqual(repr(Token(TokenType.MATCH, length=4, distance=2)), 'MATCH(len=4, dist=2)')

    def test_repeat_offset_preferred(self):
        """After a literal the previous offset wins over a one byte longer new match"""
        data = b'efghQ' + b'abcdefgh' + b'abcXefghQ'

        # the finder alone would pick the older, longer copy of 'efghQ'
        finder = MatchFinder(data, max_chain=16)
        self.assertEqual(finder.find_best_match(17), (5, 17))

        tokens = LZParser(0).parse(data)
        self.assertEqual(tokens[9:], [
            Token(TokenType.MATCH, length=4, distance=9),
            Token(TokenType.MATCH, length=3, distance=8),
            Token(TokenType.LITERAL, literal=ord('X')),
            Token(TokenType.MATCH, length=4, distance=8),
            Token(TokenType.LITERAL, literal=ord('Q')),
        ])

    def test_repeat_offset_in_records(self):
        """Fixed-width records with one changed byte reuse the record distance"""
        data = b'abcdefgh' + b'abcXefgh' + b'abcdeYgh'
        tokens = LZParser(0).parse(data)

        reused = [
            token for previous, token in zip(tokens, tokens[1:])
            if previous.type == TokenType.LITERAL and token.type == TokenType.MATCH
            and token.distance == 8
        ]
        self.assertTrue(reused)

    def test_lazy_matching(self):
        """From level 4 a short match is dropped for a longer one a byte later"""
        data = b'bcdefg' + b'ab-' + b'abcdefg'

        greedy = LZParser(0).parse(data)
        self.assertEqual(greedy[9:], [
            Token(TokenType.MATCH, length=2, distance=3),
            Token(TokenType.MATCH, length=5, distance=10),
        ])

        for level in (4, 9):
            lazy = LZParser(level).parse(data)
            self.assertEqual(lazy[9:], [
                Token(TokenType.LITERAL, literal=ord('a')),
                Token(TokenType.MATCH, length=6, distance=10),
            ])


class TestCompressionStats(unittest.TestCase):
    def test_counts(self):
        tokens = LZParser(0).parse(b'abcabcabc')
        stats = CompressionStats(tokens, 9, 6)

        self.assertEqual(stats.literal_count, 3)
        self.assertEqual(stats.match_count, 1)
        self.assertEqual(stats.total_match_length, 6)

        output = io.StringIO()
        with redirect_stdout(output):
            stats.print_stats()
        self.assertIn('Matches:             1', output.getvalue())


class TestFrameFormat(unittest.TestCase):
    """Tests for the frame around a stream"""

    def test_header_roundtrip(self):
        """Serialized headers read back unchanged"""
        header = FrameHeader(original_size=123456, crc32=0xDEADBEEF)
        data = header.serialize()

        self.assertEqual(len(data), HEADER_SIZE)
        self.assertTrue(data.startswith(FRAME_MAGIC))
        self.assertEqual(FrameHeader.deserialize(data), header)

    def test_invalid_magic(self):
        data = b'ABCD' + FrameHeader().serialize()[4:]
        with self.assertRaises(ValueError):
            FrameHeader.deserialize(data)

    def test_unsupported_version(self):
        data = bytearray(FrameHeader().serialize())
        data[4] = 99
        with self.assertRaises(ValueError):
            FrameHeader.deserialize(bytes(data))

    def test_short_header(self):
        with self.assertRaises(ValueError):
            FrameHeader.deserialize(FRAME_MAGIC)

    def test_verify_integrity(self):
        data = b'integrity'
        header = FrameHeader(original_size=len(data), crc32=calculate_crc32(data))

        self.assertTrue(verify_integrity(header, data))
        self.assertFalse(verify_integrity(header, b'integritY'))
        self.assertFalse(verify_integrity(header, data + b'!'))

    def test_compress_decompress_roundtrip(self):
        """Framed data unpacks to the original"""
        for data in (b'', b'A', b'Test data for compression', 'Привет мир! Привет мир!'.encode('utf-8')):
            packed = compress_upkr(data)
            self.assertTrue(packed.startswith(FRAME_MAGIC))
            self.assertEqual(decompress_upkr(packed), data)

    def test_frame_fields(self):
        data = b'frame fields' * 10
        header = FrameHeader.deserialize(compress_upkr(data, level=9))

        self.assertEqual(header.original_size, len(data))
        self.assertEqual(header.crc32, calculate_crc32(data))

    def test_crc_mismatch(self):
        """A damaged CRC is reported"""
        packed = bytearray(compress_upkr(b'crc check crc check'))
        struct.pack_into('<I', packed, 16, 0)

        with self.assertRaises(ValueError):
            decompress_upkr(bytes(packed))

    def test_size_too_small(self):
        """A frame announcing fewer bytes than the stream holds overflows"""
        packed = bytearray(compress_upkr(b'0123456789'))
        struct.pack_into('<Q', packed, 8, 4)

        with self.assertRaises(OutputOverflowError):
            decompress_upkr(bytes(packed))

    def test_size_too_large(self):
        """A frame announcing more bytes than the stream holds is rejected"""
        packed = bytearray(compress_upkr(b'0123456789'))
        struct.pack_into('<Q', packed, 8, 20)

        with self.assertRaises(ValueError):
            decompress_upkr(bytes(packed))

    def test_size_beyond_address_space(self):
        """A header size no buffer can hold is a frame error"""
        packed = bytearray(compress_upkr(b'0123456789'))
        struct.pack_into('<Q', packed, 8, 2 ** 64 - 1)

        with self.assertRaisesRegex(ValueError, 'Invalid original size'):
            FrameHeader.deserialize(bytes(packed))
        with self.assertRaises(ValueError):
            decompress_upkr(bytes(packed))


class TestFilePacker(unittest.TestCase):
    """Tests for file packing and the CLI"""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.temp_path = self.temp_dir.name
        self.packer = FilePacker(level=6)

    def tearDown(self):
        self.temp_dir.cleanup()

    def _write(self, name: str, data: bytes) -> str:
        path = os.path.join(self.temp_path, name)
        with open(path, 'wb') as f:
            f.write(data)
        return path

    def _read(self, path: str) -> bytes:
        with open(path, 'rb') as f:
            return f.read()

    def test_pack_unpack_file(self):
        """Framed files unpack to the original content"""
        data = b'Hello, world!\n' * 100
        source = self._write('source.txt', data)
        packed = os.path.join(self.temp_path, 'source.upk')
        restored = os.path.join(self.temp_path, 'out', 'source.txt')

        with redirect_stdout(io.StringIO()):
            packed_size = self.packer.pack_file(source, packed)
            self.packer.unpack_file(packed, restored)

        self.assertLess(packed_size, len(data))
        self.assertEqual(self._read(restored), data)

    def test_raw_stream(self):
        """Raw streams need the destination size"""
        data = b'raw stream raw stream raw stream'
        source = self._write('raw.bin', data)
        packed = os.path.join(self.temp_path, 'raw.upk')
        restored = os.path.join(self.temp_path, 'raw.out')

        with redirect_stdout(io.StringIO()):
            self.packer.pack_file(source, packed, raw=True)
            self.assertFalse(self._read(packed).startswith(FRAME_MAGIC))

            with self.assertRaises(ValueError):
                self.packer.unpack_file(packed, restored, raw=True)

            self.packer.unpack_file(packed, restored, raw=True, size=1024)

        self.assertEqual(self._read(restored), data)

    def test_incompressible_warning(self):
        """Output that is not smaller than the input is reported"""
        source = self._write('tiny.bin', b'\x01')
        output = io.StringIO()

        with redirect_stdout(output):
            self.packer.pack_file(source, os.path.join(self.temp_path, 'tiny.upk'))

        self.assertIn('Warning', output.getvalue())

    def test_show_info(self):
        data = b'info ' * 50
        source = self._write('info.txt', data)
        packed = os.path.join(self.temp_path, 'info.upk')
        output = io.StringIO()

        with redirect_stdout(output):
            self.packer.pack_file(source, packed)
            header = self.packer.show_info(packed)

        self.assertEqual(header.original_size, len(data))
        self.assertIn(f'{calculate_crc32(data):08x}', output.getvalue())

    def test_cli_roundtrip(self):
        """pack and unpack through main()"""
        data = bytes(range(256)) * 8
        source = self._write('cli.bin', data)
        packed = os.path.join(self.temp_path, 'cli.upk')
        restored = os.path.join(self.temp_path, 'cli.out')

        with redirect_stdout(io.StringIO()):
            main(['pack', source, '-o', packed, '-l', '9', '-v'])
            main(['unpack', packed, '-o', restored])
            main(['info', packed])

        self.assertEqual(self._read(restored), data)

    def test_cli_error_exit(self):
        """Errors are printed to stderr with exit status 1"""
        errors = io.StringIO()

        with redirect_stdout(io.StringIO()), redirect_stderr(errors):
            with self.assertRaises(SystemExit) as cm:
                main(['unpack', os.path.join(self.temp_path, 'missing.upk'), '-o', 'x'])

        self.assertEqual(cm.exception.code, 1)
        self.assertIn('Error:', errors.getvalue())

    def test_cli_stdin_stdout(self):
        """'-' or no path uses stdin and stdout, messages go to stderr"""
        data = b'piped through stdio ' * 40
        messages = io.StringIO()

        packed_out = io.TextIOWrapper(io.BytesIO())
        with mock.patch.object(sys, 'stdin', io.TextIOWrapper(io.BytesIO(data))), \
                mock.patch.object(sys, 'stdout', packed_out), redirect_stderr(messages):
            main(['pack', '-', '-v'])
        packed = packed_out.buffer.getvalue()

        self.assertTrue(packed.startswith(FRAME_MAGIC))
        self.assertIn('Packing <stdio>', messages.getvalue())

        unpacked_out = io.TextIOWrapper(io.BytesIO())
        with mock.patch.object(sys, 'stdin', io.TextIOWrapper(io.BytesIO(packed))), \
                mock.patch.object(sys, 'stdout', unpacked_out), redirect_stderr(io.StringIO()):
            main(['unpack'])

        self.assertEqual(unpacked_out.buffer.getvalue(), data)

    def test_cli_refuses_terminal_output(self):
        """Binary output is not written to a terminal"""
        source = self._write('tty.bin', b'terminal ' * 20)
        terminal = TerminalOutput(io.BytesIO())
        errors = io.StringIO()

        with mock.patch.object(sys, 'stdout', terminal), redirect_stderr(errors):
            with self.assertRaises(SystemExit) as cm:
                main(['pack', source])

        self.assertEqual(cm.exception.code, 1)
        self.assertIn('terminal', errors.getvalue())
        self.assertEqual(terminal.buffer.getvalue(), b'')

    def test_level_help_mentions_reference_default(self):
        """The -l help states the default and the reference packer's default"""
        output = io.StringIO()

        with redirect_stdout(output):
            with self.assertRaises(SystemExit):
                main(['pack', '-h'])

        help_text = ' '.join(output.getvalue().split())
        self.assertIn(f'default={DEFAULT_LEVEL}', help_text)
        self.assertIn('the reference upkr packer defaults to 9', help_text)


if __name__ == '__main__':
    unittest.main(verbosity=2)
