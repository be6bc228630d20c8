"""
CLI for packing and unpacking files with the upkr format
"""

import argparse
import os
import sys
from pathlib import Path

from compressor import LZParser, TokenEncoder, CompressionStats, DEFAULT_LEVEL
from format import (
    FrameHeader,
    HEADER_SIZE,
    calculate_crc32,
    decompress_upkr,
)
from unpacker import unpack_bytes


STDIO_PATH = '-'


def display_name(path: str) -> str:
    return '<stdio>' if path == STDIO_PATH else Path(path).name


def read_input(path: str) -> bytes:
    """Reads a file, or stdin for '-'"""
    if path == STDIO_PATH:
        return sys.stdin.buffer.read()
    with open(path, 'rb') as f:
        return f.read()


def write_output(path: str, data: bytes) -> None:
    """Writes a file, or stdout for '-' unless stdout is a terminal"""
    if path == STDIO_PATH:
        if sys.stdout.isatty():
            raise ValueError("stdout is a terminal, cannot write binary output")
        sys.stdout.buffer.write(data)
        sys.stdout.buffer.flush()
        return

    output_dir = os.path.dirname(path)
    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
    with open(path, 'wb') as f:
        f.write(data)


class FilePacker:
    """Packs and unpacks single files"""

    def __init__(self, level: int = DEFAULT_LEVEL, verbose: bool = False):
        self.level = level
        self.verbose = verbose

    @staticmethod
    def _messages(output_path: str):
        # progress goes to stderr when stdout carries the data
        return sys.stderr if output_path == STDIO_PATH else sys.stdout

    def pack_file(self, input_path: str, output_path: str, raw: bool = False) -> int:
        """Packs a file, returns the size of the written output"""
        data = read_input(input_path)
        log = self._messages(output_path)

        print(f"Packing {display_name(input_path)}...", end=" ", file=log)

        tokens = LZParser(self.level).parse(data)
        stream = TokenEncoder.encode_tokens(tokens)

        if raw:
            output = stream
        else:
            header = FrameHeader(original_size=len(data), crc32=calculate_crc32(data))
            output = header.serialize() + stream

        write_output(output_path, output)

        ratio = (len(output) / len(data) * 100) if data else 0
        print(f"OK ({len(data)} -> {len(output)} bytes, {ratio:.1f}%)", file=log)

        if len(output) >= len(data):
            print(f"Warning: packing did not reduce the size of {display_name(input_path)}", file=log)

        if self.verbose:
            CompressionStats(tokens, len(data), len(output)).print_stats(file=log)

        return len(output)

    def unpack_file(self, input_path: str, output_path: str,
                    raw: bool = False, size: int = 0) -> int:
        """Unpacks a file, returns the number of bytes written"""
        packed = read_input(input_path)
        log = self._messages(output_path)

        print(f"Unpacking {display_name(input_path)}...", end=" ", file=log)

        if raw:
            if size <= 0:
                raise ValueError("raw streams need the unpacked size (--size)")
            data = unpack_bytes(packed, size)
        else:
            data = decompress_upkr(packed)

        write_output(output_path, data)

        print(f"OK ({len(data)} bytes)", file=log)
        return len(data)

    def show_info(self, input_path: str) -> FrameHeader:
        """Prints the frame header of a packed file"""
        packed = read_input(input_path)

        header = FrameHeader.deserialize(packed)
        stream_size = len(packed) - HEADER_SIZE
        ratio = (len(packed) / header.original_size * 100) if header.original_size > 0 else 0

        print(f"File:            {display_name(input_path)}")
        print(f"Version:         {header.version}")
        print(f"Original size:   {header.original_size} bytes")
        print(f"Stream size:     {stream_size} bytes")
        print(f"CRC32:           {header.crc32:08x}")
        print(f"Ratio:           {ratio:.1f}%")
        return header


def main(argv=None):
    parser = argparse.ArgumentParser(
        description='upkr packer - adaptive rANS + LZ compression for small payloads',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py pack asset.bin -o asset.upk -l 9
  python main.py unpack asset.upk -o asset.bin
  python main.py pack asset.bin -o asset.raw --raw
  python main.py unpack asset.raw -o asset.bin --raw --size 4096
  python main.py info asset.upk
  cat asset.bin | python main.py pack > asset.upk
        """
    )
    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # Command: pack
    pack_parser = subparsers.add_parser('pack', help='Pack a file')
    pack_parser.add_argument('input', nargs='?', default=STDIO_PATH,
                             help='File to pack ("-" or omitted: stdin)')
    pack_parser.add_argument('-o', '--output', default=STDIO_PATH,
                             help='Output file ("-" or omitted: stdout)')
    pack_parser.add_argument('-l', '--level', type=int, default=DEFAULT_LEVEL,
                             help=f'Compression level (0-9, default={DEFAULT_LEVEL}; '
                                  'the reference upkr packer defaults to 9)')
    pack_parser.add_argument('--raw', action='store_true',
                             help='Write the bare stream without a frame header')
    pack_parser.add_argument('-v', '--verbose', action='store_true',
                             help='Print packing statistics')

    # Command: unpack
    unpack_parser = subparsers.add_parser('unpack', help='Unpack a file')
    unpack_parser.add_argument('input', nargs='?', default=STDIO_PATH,
                               help='Packed file ("-" or omitted: stdin)')
    unpack_parser.add_argument('-o', '--output', default=STDIO_PATH,
                               help='Output file ("-" or omitted: stdout)')
    unpack_parser.add_argument('--raw', action='store_true',
                               help='Input is a bare stream without a frame header')
    unpack_parser.add_argument('--size', type=int, default=0,
                               help='Destination size for --raw streams')

    # Command: info
    info_parser = subparsers.add_parser('info', help='Show the frame header of a packed file')
    info_parser.add_argument('input', nargs='?', default=STDIO_PATH,
                             help='Packed file ("-" or omitted: stdin)')

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return

    try:
        packer = FilePacker(
            level=getattr(args, 'level', DEFAULT_LEVEL),
            verbose=getattr(args, 'verbose', False),
        )

        if args.command == 'pack':
            packer.pack_file(args.input, args.output, raw=args.raw)

        elif args.command == 'unpack':
            packer.unpack_file(args.input, args.output, raw=args.raw, size=args.size)

        elif args.command == 'info':
            packer.show_info(args.input)

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
