"""
unpacker.py

Decoder for the upkr stream: an LZ literal/match stream where every
decision goes through the adaptive rANS bit decoder.
"""

from errors import InvalidCodeError, OutputOverflowError
from rans_coder import (
    RansDecoder,
    CONTEXT_IS_MATCH,
    CONTEXT_HAS_OFFSET,
    CONTEXT_OFFSET,
    CONTEXT_LENGTH,
    LENGTH_CODE_BITS,
)


def decode_length(decoder: RansDecoder, context_index: int) -> int:
    """Decodes an Elias-gamma style number >= 1.

    Each bit position has its own (continue, value) context pair; the top
    bit of the result is implicit.
    """
    length = 0
    bit_pos = 0
    while decoder.decode_bit(context_index):
        length |= decoder.decode_bit(context_index + 1) << bit_pos
        bit_pos += 1
        context_index += 2
        if bit_pos == LENGTH_CODE_BITS:
            raise InvalidCodeError(
                f"length code longer than {LENGTH_CODE_BITS} bits at byte {decoder.pos}"
            )
    return length | (1 << bit_pos)


def decode_literal(decoder: RansDecoder) -> int:
    # node holds the bits read so far below a leading 1, so it is also the
    # context index; the leading 1 ends up at bit 8 and is dropped
    node = 1
    while node < 256:
        node = (node << 1) + decoder.decode_bit(node)
    return node & 0xFF


def unpack(destination: bytearray, compressed: bytes) -> int:
    """Unpacks `compressed` into `destination`, returns the number of bytes written.

    `destination` must be writable and large enough for the whole payload,
    otherwise OutputOverflowError is raised.
    """
    return unpack_from_decoder(destination, RansDecoder(compressed))


def unpack_from_decoder(destination: bytearray, decoder: RansDecoder) -> int:
    """Like unpack, but reads through `decoder`, which must not have decoded any bit yet"""
    capacity = len(destination)
    write_pos = 0
    prev_was_match = False
    offset = 0

    while True:
        if decoder.decode_bit(CONTEXT_IS_MATCH):
            # a match right after a match always carries a new offset
            if prev_was_match or decoder.decode_bit(CONTEXT_HAS_OFFSET):
                offset = decode_length(decoder, CONTEXT_OFFSET) - 1
                if offset == 0:
                    # offset 0 marks the end of the stream
                    break

            length = decode_length(decoder, CONTEXT_LENGTH)

            if offset == 0 or offset > write_pos:
                raise InvalidCodeError(
                    f"match offset {offset} out of range at output position {write_pos}"
                )
            if write_pos + length > capacity:
                raise OutputOverflowError(
                    f"match of {length} bytes at position {write_pos} exceeds "
                    f"destination size {capacity}"
                )

            # byte by byte: source and destination may overlap
            for _ in range(length):
                destination[write_pos] = destination[write_pos - offset]
                write_pos += 1

            prev_was_match = True
        else:
            byte = decode_literal(decoder)
            if write_pos >= capacity:
                raise OutputOverflowError(
                    f"literal at position {write_pos} exceeds destination size {capacity}"
                )
            destination[write_pos] = byte
            write_pos += 1
            prev_was_match = False

    return write_pos


def unpack_bytes(compressed: bytes, max_size: int) -> bytes:
    """Unpacks into a fresh buffer of `max_size` bytes and returns what was written"""
    destination = bytearray(max_size)
    size = unpack(destination, compressed)
    return bytes(destination[:size])
