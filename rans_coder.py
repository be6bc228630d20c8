"""
rans_coder.py

Adaptive binary rANS coder: one bit at a time, 8-bit probabilities,
one probability per context index.
"""

from typing import List, Tuple

from errors import TruncatedInputError


# Context layout shared by the decoder and the packer
CONTEXT_IS_MATCH = 0
CONTEXT_LITERAL = 1           # 1..255, literal trie nodes
CONTEXT_HAS_OFFSET = 256
CONTEXT_OFFSET = 257          # 257..320
CONTEXT_LENGTH = 257 + 64     # 321..384
LENGTH_CODE_BITS = 32
NUM_CONTEXTS = 1 + 255 + 1 + 2 * LENGTH_CODE_BITS + 2 * LENGTH_CODE_BITS


class RansDecoder:
    """rANS decoder for adaptively modelled bits"""

    STATE_LOW = 1 << 12       # 4096
    PROB_ONE = 1 << 8         # 256
    PROB_INIT = 128
    ADAPT_SHIFT = 4

    def __init__(self, data: bytes, pos: int = 0):
        self.data = data
        self.pos = pos
        self.state = 0
        # all contexts start at 128 = equal chance of 0 and 1
        self.probs = [self.PROB_INIT] * NUM_CONTEXTS

    def _read_byte(self) -> int:
        """Reads the next byte of the compressed stream"""
        if self.pos >= len(self.data):
            raise TruncatedInputError(
                f"compressed stream truncated at byte {self.pos}"
            )
        byte = self.data[self.pos]
        self.pos += 1
        return byte

    def decode_bit(self, context_index: int) -> int:
        """Decodes one bit against the probability of `context_index`"""
        # shift in whole bytes until the state is >= 4096
        while self.state < self.STATE_LOW:
            self.state = (self.state << 8) | self._read_byte()

        prob = self.probs[context_index]
        low = self.state & 0xFF

        if low < prob:
            bit = 1
            self.state = prob * (self.state >> 8) + low
            prob += (self.PROB_ONE - prob + 8) >> self.ADAPT_SHIFT
        else:
            bit = 0
            self.state = (self.PROB_ONE - prob) * (self.state >> 8) + low - prob
            prob -= (prob + 8) >> self.ADAPT_SHIFT

        self.probs[context_index] = prob
        return bit

    def is_finished(self) -> bool:
        """True if every byte of the input has been consumed"""
        return self.pos >= len(self.data)


class RansEncoder:
    """rANS encoder, the inverse of RansDecoder.

    rANS is last-in first-out: bits are modelled in decode order as they
    arrive, and the actual encoding runs backwards in finish().
    """

    STATE_LOW = RansDecoder.STATE_LOW
    PROB_ONE = RansDecoder.PROB_ONE
    PROB_INIT = RansDecoder.PROB_INIT
    ADAPT_SHIFT = RansDecoder.ADAPT_SHIFT

    def __init__(self):
        self.probs = [self.PROB_INIT] * NUM_CONTEXTS
        self.decisions: List[Tuple[int, int]] = []

    def encode_bit(self, context_index: int, bit: int) -> None:
        """Records one bit and adapts the context exactly as the decoder will"""
        prob = self.probs[context_index]
        self.decisions.append((prob, bit))

        if bit:
            prob += (self.PROB_ONE - prob + 8) >> self.ADAPT_SHIFT
        else:
            prob -= (prob + 8) >> self.ADAPT_SHIFT
        self.probs[context_index] = prob

    def finish(self) -> bytes:
        """Encodes all recorded bits and returns the stream"""
        output = bytearray()
        # valid end state for any frequency, needs no trailing byte
        state = self.STATE_LOW - 1

        for prob, bit in reversed(self.decisions):
            if bit:
                start, freq = 0, prob
            else:
                start, freq = prob, self.PROB_ONE - prob

            # the decoder reads this byte back when its state drops below 4096
            if state >= self.STATE_LOW * freq:
                output.append(state & 0xFF)
                state >>= 8

            state = ((state // freq) << 8) + (state % freq) + start

        # initial decoder state, read big-endian from state 0
        while state > 0:
            output.append(state & 0xFF)
            state >>= 8

        output.reverse()
        return bytes(output)
