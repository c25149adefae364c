"""

    greeter.web.codec
    ~~~~~~~~~~~~~~~~~

    Conversion between str and wire bytes.

"""

from greeter.exceptions import CodecError

_DEFAULT_ENCODING = 'utf8'
# Request line and header bytes are latin-1 on the wire.
_HEADER_ENCODING = 'latin-1'


def encode(chunk, encoding=_DEFAULT_ENCODING):
    """Returns `bytes` of response chunk.
    `None` is empty and `int` is written in decimal.

    """
    if chunk is None:
        return b''
    if isinstance(chunk, int):
        chunk = str(chunk)

    if isinstance(chunk, (bytes, bytearray)):
        return bytes(chunk)
    if isinstance(chunk, str):
        return chunk.encode(encoding)
    raise CodecError('Cannot encode `%s`' % type(chunk).__name__)


def to_str(bytes_, encoding=_HEADER_ENCODING):
    if isinstance(bytes_, str):
        return bytes_
    if isinstance(bytes_, bytes):
        return bytes_.decode(encoding)
    raise CodecError('Cannot decode `%s`' % type(bytes_).__name__)
