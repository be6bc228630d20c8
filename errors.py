"""
Errors raised while unpacking a malformed stream.

All of them are ValueError subclasses, so callers that only care about
"bad data" can keep catching ValueError.
"""


class UnpackError(ValueError):
    """Base class for unpack failures"""


class TruncatedInputError(UnpackError):
    """The compressed stream ended while the decoder needed another byte"""


class OutputOverflowError(UnpackError):
    """The decoded data does not fit into the destination buffer"""


class InvalidCodeError(UnpackError):
    """A length/offset code that the format cannot represent"""
