"""

    greeter.web.httpmodels
    ~~~~~~~~~~~~~~~~~~~~~~

    Provides models for http request handling.

"""

import codecs
from email.utils import formatdate
from urllib.parse import urlsplit

from greeter import __version__
from greeter.web.stream import SocketStream
from greeter.datastructures import CaseInsensitiveDict
from greeter.web.codec import encode, to_str


class HTTPStatusCode():
    """Class for HTTP status code enum"""
    # Public access fields.
    OK = 200
    BAD_REQUEST = 400
    NOT_FOUND = 404
    METHOD_NOT_ALLOWED = 405
    INTERNAL_SERVER_ERROR = 500
    NOT_IMPLEMENTED = 501

    _reasons = {
        OK: 'OK',
        BAD_REQUEST: 'Bad Request',
        NOT_FOUND: 'Not Found',
        METHOD_NOT_ALLOWED: 'Method Not Allowed',
        INTERNAL_SERVER_ERROR: 'Internal Server Error',
        NOT_IMPLEMENTED: 'Not Implemented',
    }

    @staticmethod
    def reason(status_code):
        return HTTPStatusCode._reasons.get(status_code, 'Unknown')


def error_body(status_code):
    """Plain text body of error responses greeter generates itself.

        >>> error_body(HTTPStatusCode.BAD_REQUEST)
        '400 Bad Request\\n'

    """
    if status_code == HTTPStatusCode.NOT_FOUND:
        return '404 page not found\n'
    return '%d %s\n' % (status_code, HTTPStatusCode.reason(status_code))


class HTTPMethod():
    """Class for HTTP methods enum"""
    # Public access fields.
    GET = 'get'
    POST = 'post'
    PUT = 'put'
    HEAD = 'head'
    DELETE = 'delete'
    OPTIONS = 'options'
    PATCH = 'patch'
    TRACE = 'trace'
    CONNECT = 'connect'

    @staticmethod
    def all():
        return [
            HTTPMethod.GET, HTTPMethod.POST, HTTPMethod.PUT,
            HTTPMethod.HEAD, HTTPMethod.DELETE, HTTPMethod.OPTIONS,
            HTTPMethod.PATCH, HTTPMethod.TRACE, HTTPMethod.CONNECT
            ]


class HTTPVersion():
    HTTP_1_0 = 'HTTP/1.0'
    HTTP_1_1 = 'HTTP/1.1'

    @staticmethod
    def all():
        return [HTTPVersion.HTTP_1_0, HTTPVersion.HTTP_1_1]


TEXT_PLAIN = 'text/plain; charset=utf-8'
TEXT_HTML = 'text/html; charset=utf-8'
APPLICATION_JSON = 'application/json'
OCTET_STREAM = 'application/octet-stream'

_SNIFF_LENGTH = 512
_HTML_MARKERS = (b'<!doctype html', b'<html', b'<head', b'<body')
# Bytes which never appear in text content.
_BINARY_BYTES = frozenset(
    list(range(0x00, 0x09)) + [0x0b] +
    list(range(0x0e, 0x1b)) + list(range(0x1c, 0x20)))


def sniff_content_type(body):
    """Guess `Content-Type` of response `body` when handler did not set it.

        >>> sniff_content_type(b'Hello World')
        'text/plain; charset=utf-8'
        >>> sniff_content_type(b'  <html><body></body></html>')
        'text/html; charset=utf-8'

    """
    head = body[:_SNIFF_LENGTH]
    stripped = head.lstrip(b'\t\n\x0c\r ').lower()
    for marker in _HTML_MARKERS:
        if stripped.startswith(marker):
            return TEXT_HTML

    if any(byte in _BINARY_BYTES for byte in head):
        return OCTET_STREAM
    try:
        # `head` may end in the middle of multibyte character.
        codecs.getincrementaldecoder('utf-8')().decode(head, final=False)
    except UnicodeDecodeError:
        return OCTET_STREAM
    return TEXT_PLAIN


class HTTPHeaders(CaseInsensitiveDict):
    """Header fields of one message"""

    def append(self, name, value):
        """Join with value already present, as repeated lines are"""
        if name in self:
            value = '%s, %s' % (self[name], value)
        self[name] = value


class HTTPRequestHeader(HTTPHeaders):
    @property
    def content_length(self):
        """Declared body length, 0 when absent.
        Raises `ValueError` on malformed value.

        """
        value = self.get('Content-Length')
        if value is None:
            return 0
        if not value.strip().isdigit():
            raise ValueError('Invalid Content-Length %r' % value)
        return int(value)

    @property
    def transfer_encoding(self):
        return self._token('Transfer-Encoding')

    @property
    def connection(self):
        return self._token('Connection')

    @property
    def expect(self):
        return self._token('Expect')

    def _token(self, name):
        return self.get(name, '').strip().lower()


class HTTPResponseHeader(HTTPHeaders):
    """Starts with `Server`, which survives `reset`"""
    def __init__(self, data=None):
        super(HTTPResponseHeader, self).__init__()
        self.reset()
        self.update(data or {})

    def reset(self):
        self.clear()
        self['Server'] = 'greeter/' + __version__


class HTTPRequest(object):
    """Parsed request. `method` is lowercase."""
    def __init__(
            self, url=None, method=None, headers=None,
            body=None, version=None):
        self.url = url
        self.method = method.lower() if isinstance(method, str) else method
        self.headers = headers or HTTPRequestHeader()
        self.body = body
        self.version = version

    @property
    def path(self):
        return urlsplit(self.url).path

    @property
    def keep_alive(self):
        """Whether connection persists after this request is served"""
        connection = self.headers.connection
        if self.version == HTTPVersion.HTTP_1_1:
            return connection != 'close'
        return connection == 'keep-alive'

    def __repr__(self):
        return '<HTTPRequest [%s %s]>' % (self.method, self.url)


class HTTPResponse(object):
    """Response about to be written. `raw` fills in framing headers."""
    def __init__(
            self, request=None, headers=None,
            status_code=HTTPStatusCode.OK, body=b''):
        self.request = request
        self.headers = HTTPResponseHeader(headers)
        self.status_code = status_code
        self.body = encode(body)

    @property
    def status_line(self):
        version = HTTPVersion.HTTP_1_1
        if self.request is not None and \
                self.request.version == HTTPVersion.HTTP_1_0:
            version = HTTPVersion.HTTP_1_0
        return '%s %d %s' % (
            version, self.status_code,
            HTTPStatusCode.reason(self.status_code))

    def raw(self):
        """Status line, headers and body as `bytes`.
        Body is left out for `HEAD`, its length is not.

        """
        if self.body and 'Content-Type' not in self.headers:
            self.headers['Content-Type'] = sniff_content_type(self.body)
        self.headers['Date'] = formatdate(usegmt=True)
        self.headers['Content-Length'] = str(len(self.body))

        lines = [encode(self.status_line)]
        lines.extend(
            encode('%s: %s' % field) for field in self.headers.items())
        head = b'\r\n'.join(lines) + b'\r\n\r\n'
        if self.request is not None and \
                self.request.method == HTTPMethod.HEAD:
            return head
        return head + self.body

    def __repr__(self):
        return '<HTTPResponse [%s]>' % (self.status_code)


class HTTPConnection(object):
    """Response side of one client connection"""
    def __init__(self, stream, address):
        self._stream = stream
        self._address = address
        self._close_callback = None
        self._finish_callback = None
        self._stream.set_close_callback(self._run_close_callback)

    @property
    def stream(self):
        return self._stream

    @property
    def address(self):
        return self._address

    @property
    def closed(self):
        return self._stream.closed

    def open(self, close_callback=None, finish_callback=None):
        """@param close_callback: run once when connection is closed.
        @param finish_callback: run with `keep_alive` flag whenever
            a response is completely written.

        """
        self._close_callback = close_callback
        self._finish_callback = finish_callback

    def write(self, chunk, callback=None):
        self._stream.write(chunk, callback)

    def finish(self, chunk, keep_alive=False):
        """Write whole response and notify that request is served"""
        def _on_write():
            if self._finish_callback is not None:
                self._finish_callback(keep_alive)
            else:
                self.close()
        self._stream.write(chunk, _on_write)

    def close(self):
        self._stream.close()

    def _run_close_callback(self):
        self._finish_callback = None
        callback, self._close_callback = self._close_callback, None
        if callback is not None:
            callback()

    def __repr__(self):
        return '<HTTPConnection [%s]>' % (self.address[0])


class HTTPHandler(object):
    """Serves HTTP/1.x requests of one connection in order.
    Head is read up to the blank line, then the body by `Content-Length`
    or chunked framing, then the app reacts. Once the response is
    written, a kept-alive connection goes on with its next request.

    """
    def __init__(self, socket_, address, app=None, reactor=None):
        self._conn = HTTPConnection(
            SocketStream(socket_, reactor=reactor), address)
        self._app = app
        self._request = None
        self._body_chunks = []

    def serve_request(self):
        """Start serving requests arriving on this connection"""
        self._conn.open(
            close_callback=self._conn_close_callback,
            finish_callback=self._finish_request)
        self._read_request()

    def _read_request(self):
        self._request = None
        self._body_chunks = []
        self._conn.stream.read_until(b'\r\n\r\n', self._parse_header)

    def _conn_close_callback(self):
        self._request = None
        self._body_chunks = []

    def _finish_request(self, keep_alive):
        if not keep_alive:
            self._conn.close()
        elif not self._conn.closed:
            # Next request starts on a fresh stack.
            self._conn.stream.reactor.attach_callback(self._serve_next)

    def _serve_next(self):
        if not self._conn.closed:
            self._read_request()

    def _parse_header(self, chunk):
        try:
            self._request = self._parse_request_head(chunk)
            headers = self._request.headers
            transfer_encoding = headers.transfer_encoding
            content_length = headers.content_length
        except ValueError:
            self._send_error(HTTPStatusCode.BAD_REQUEST)
            return

        if transfer_encoding:
            if transfer_encoding != 'chunked':
                self._send_error(HTTPStatusCode.NOT_IMPLEMENTED)
                return
            self._continue_if_expected()
            self._read_chunk_size()
        elif content_length:
            self._continue_if_expected()
            self._conn.stream.read_bytes(content_length, self._parse_body)
        else:
            self._request.body = b''
            self._handle_request()

    def _parse_request_head(self, chunk):
        """Parse request line and header lines.
        Raises `ValueError` on malformed head.

        """
        # Ignore empty lines preceding request line.
        lines = to_str(chunk.lstrip(b'\r\n')).split('\r\n')
        meta = lines[0].split(' ')
        if len(meta) != 3 or not all(meta):
            raise ValueError('Invalid request line %r' % lines[0])
        method, url, version = meta
        if version not in HTTPVersion.all():
            raise ValueError('Unsupported HTTP version %r' % version)

        headers = HTTPRequestHeader()
        for line in lines[1:]:
            name, separator, value = line.partition(':')
            if not separator or not name or name != name.strip():
                raise ValueError('Invalid header line %r' % line)
            headers.append(name, value.strip())

        return HTTPRequest(
            url=url, method=method, version=version, headers=headers)

    def _continue_if_expected(self):
        if self._request.headers.expect == '100-continue' and \
                self._request.version == HTTPVersion.HTTP_1_1:
            self._conn.write(b'HTTP/1.1 100 Continue\r\n\r\n')

    def _parse_body(self, chunk):
        self._request.body = chunk
        self._handle_request()

    def _read_chunk_size(self):
        self._conn.stream.read_until(b'\r\n', self._parse_chunk_size)

    def _parse_chunk_size(self, chunk):
        try:
            size = int(to_str(chunk).split(';', 1)[0].strip(), 16)
            if size < 0:
                raise ValueError('Negative chunk size')
        except ValueError:
            self._send_error(HTTPStatusCode.BAD_REQUEST)
            return

        if size == 0:
            self._conn.stream.read_until(b'\r\n', self._parse_trailer)
        else:
            # Chunk data is followed by CRLF.
            self._conn.stream.read_bytes(size + 2, self._parse_chunk_data)

    def _parse_chunk_data(self, chunk):
        if not chunk.endswith(b'\r\n'):
            self._send_error(HTTPStatusCode.BAD_REQUEST)
            return
        self._body_chunks.append(chunk[:-2])
        self._read_chunk_size()

    def _parse_trailer(self, chunk):
        if chunk:
            # Trailer fields are discarded.
            self._conn.stream.read_until(b'\r\n', self._parse_trailer)
            return
        self._request.body = b''.join(self._body_chunks)
        self._body_chunks = []
        self._handle_request()

    def _send_error(self, status_code):
        """Reply error status for unparsable request and close connection"""
        response = HTTPResponse(
            status_code=status_code, body=error_body(status_code),
            headers={
                'Content-Type': TEXT_PLAIN,
                'X-Content-Type-Options': 'nosniff',
                'Connection': 'close'})
        self._request = None
        self._conn.finish(response.raw(), keep_alive=False)

    def _handle_request(self):
        if self._app is None:
            self._send_error(HTTPStatusCode.NOT_IMPLEMENTED)
            return
        self._app.react(self._conn, self._request)

    def __repr__(self):
        return '<HTTPHandler [%s]>' % (self._conn.address[0])
