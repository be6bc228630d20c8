"""
Defines the frame around a packed stream and the framed pack/unpack helpers.

The raw stream carries no size, so the frame stores the original size
(the destination capacity) and a CRC-32 of the unpacked data.
"""

import struct
import sys
import io
import zlib
from dataclasses import dataclass

from compressor import compress_data, DEFAULT_LEVEL
from unpacker import unpack


FRAME_MAGIC = b'UPKR'
FRAME_VERSION = 1
HEADER_SIZE = 20


@dataclass
class FrameHeader:
    original_size: int = 0
    crc32: int = 0
    version: int = FRAME_VERSION

    def serialize(self) -> bytes:
        output = io.BytesIO()
        output.write(FRAME_MAGIC)
        output.write(struct.pack('B', self.version))
        output.write(b'\x00' * 3)
        output.write(struct.pack('<Q', self.original_size))
        output.write(struct.pack('<I', self.crc32))
        return output.getvalue()

    @staticmethod
    def deserialize(data: bytes) -> 'FrameHeader':
        if len(data) < HEADER_SIZE:
            raise ValueError("Invalid frame header")

        if data[:4] != FRAME_MAGIC:
            raise ValueError("Invalid frame magic")

        version = data[4]
        if version != FRAME_VERSION:
            raise ValueError(f"Unsupported version: {version}")

        original_size = struct.unpack_from('<Q', data, 8)[0]
        if original_size > sys.maxsize:
            raise ValueError("Invalid original size")
        crc32 = struct.unpack_from('<I', data, 16)[0]

        return FrameHeader(original_size=original_size, crc32=crc32, version=version)


def calculate_crc32(data: bytes) -> int:
    return zlib.crc32(data) & 0xffffffff


def verify_integrity(header: FrameHeader, decompressed_data: bytes) -> bool:
    if len(decompressed_data) != header.original_size:
        return False

    calculated_crc = calculate_crc32(decompressed_data)
    return calculated_crc == header.crc32


def compress_upkr(data: bytes, level: int = DEFAULT_LEVEL) -> bytes:
    """Packs data into a frame: header + upkr stream"""
    header = FrameHeader(original_size=len(data), crc32=calculate_crc32(data))
    return header.serialize() + compress_data(data, level)


def decompress_upkr(data: bytes) -> bytes:
    """Unpacks a frame produced by `compress_upkr`"""
    header = FrameHeader.deserialize(data)

    destination = bytearray(header.original_size)
    size = unpack(destination, memoryview(data)[HEADER_SIZE:])

    if size != header.original_size:
        raise ValueError(
            f"Size mismatch: expected {header.original_size} bytes, got {size}"
        )
    if not verify_integrity(header, destination):
        raise ValueError("CRC32 mismatch")

    return bytes(destination)
