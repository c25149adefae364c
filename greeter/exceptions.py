"""

    greeter.exceptions
    ~~~~~~~~~~~~~~~~~~

    Exceptions

"""


import errno

# errno values a non-blocking socket reports for "try again" and for
# "peer is gone".
EWOULDBLOCK = (errno.EWOULDBLOCK, errno.EAGAIN)
ECONNRESET = (errno.ECONNRESET, errno.ECONNABORTED, errno.EPIPE)


class GreeterException(Exception):
    """Base exception class for ``greeter``"""
    pass


class SocketError(GreeterException):
    """Listening socket could not be created"""
    pass


class BindError(SocketError):
    """Listening socket could not be bound.
    Keeps `errno` of the underlying `OSError` so that caller can tell
    `EADDRINUSE` from `EACCES`.

    """
    def __init__(self, address, port, error):
        self.address = address
        self.port = port
        self.errno = error.errno
        self.strerror = error.strerror
        super(BindError, self).__init__(
            'Cannot bind %s:%s: %s' % (address, port, error))


class DriverError(GreeterException):
    """Fd registration refused by driver"""
    pass


class ReactorError(GreeterException):
    pass


class StreamError(GreeterException):
    pass


class ApplicationError(GreeterException):
    """Invalid route, handler or resource usage"""
    pass


class HTTPError(GreeterException):
    """Raised by handlers to answer with error status"""
    def __init__(self, status_code, headers=None):
        self.status_code = status_code
        self.headers = headers or {}
        super(HTTPError, self).__init__(status_code)


class CodecError(GreeterException):
    pass
