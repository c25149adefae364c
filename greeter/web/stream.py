"""

    greeter.web.stream
    ~~~~~~~~~~~~~~~~~~

    Non-blocking socket stream with callback based reads and writes.

"""

import socket
import traceback
from greeter.reactor import Reactor
from greeter.driver import PollEvents
from greeter.log import greeter_logger
from greeter.datastructures import FlexibleDeque
from greeter.exceptions import StreamError, EWOULDBLOCK, ECONNRESET


class SocketStream(object):
    """Wraps a connected non-blocking socket.

    One read may be pending at a time. `read_until` and `read_bytes`
    run their callback as soon as buffered input satisfies them: right
    away when it already does, otherwise from the reactor. Written
    chunks are queued and flushed as the socket accepts them.

    End of input from peer is remembered rather than acted on, so input
    buffered before it still feeds later reads and responses can still
    be written. The stream closes itself only when a pending read can
    never complete.

    """
    _write_chunk_size = 128 * 1024

    def __init__(self, socket_, reactor=None, chunk_size=4096):
        if not isinstance(socket_, socket.socket):
            raise StreamError(
                'SocketStream can only be initialized with `socket.socket`')
        self.socket = socket_
        self._reactor = reactor or Reactor.instance()
        self._read_chunk_size = chunk_size
        self._closed = False
        self._eof = False

        self._read_buffer = FlexibleDeque()
        self._read_buffer_bytes = 0
        self._write_buffer = FlexibleDeque()

        # Condition of pending read. One of them is set while reading.
        self._bytes_to_read = None
        self._delimiter = None
        self._include_delimiter = False

        self._read_callback = None
        self._write_callback = None
        self._close_callback = None

        # `PollEvents` observed on reactor, None while detached.
        self._observed = None

    @property
    def reactor(self):
        return self._reactor

    @property
    def closed(self):
        return self._closed

    @property
    def reading(self):
        return self._read_callback is not None

    def fileno(self):
        return self.socket.fileno()

    def set_close_callback(self, callback):
        """Callback run once when this stream is closed by either side"""
        self._close_callback = callback

    def close(self):
        if self._closed:
            return
        self._closed = True
        if self._observed is not None:
            self._observed = None
            self._reactor.remove_handler(self.fileno())
        self.socket.close()
        self._read_buffer.clear()
        self._read_buffer_bytes = 0
        self._write_buffer.clear()
        self._read_callback = self._write_callback = None
        callback, self._close_callback = self._close_callback, None
        if callback is not None:
            callback()

    def read_until(self, delimiter, callback, include=False):
        """Run `callback(chunk)` with input preceding first `delimiter`.
        Delimiter is consumed in any case and kept in `chunk` with
        `include`.

        """
        if not isinstance(delimiter, bytes) or not delimiter:
            raise StreamError('`read_until` needs non-empty `bytes`')
        self._start_read(callback)
        self._delimiter = delimiter
        self._include_delimiter = include
        self._process_read()

    def read_bytes(self, bytes_to_read, callback):
        """Run `callback(chunk)` with exactly `bytes_to_read` bytes"""
        if not isinstance(bytes_to_read, int) or bytes_to_read < 0:
            raise StreamError('`read_bytes` can only accept positive `int`')
        self._start_read(callback)
        self._bytes_to_read = bytes_to_read
        self._process_read()

    def write(self, chunk, callback=None):
        """Queue `chunk`. `callback()` runs once everything queued so far
        has reached the socket.

        """
        if not isinstance(chunk, (bytes, bytearray)):
            raise StreamError('Can write only chunk of `bytes`')
        if self._closed:
            raise StreamError('Stream is already closed')
        if callback is not None:
            self._write_callback = callback
        for i in range(0, len(chunk), self._write_chunk_size):
            self._write_buffer.append(
                bytes(chunk[i:i + self._write_chunk_size]))
        self._flush()

    def event_handler(self, fd, event_mask):
        """Handler attached to reactor for this socket"""
        if event_mask & PollEvents.READ:
            self._guard(self._process_read)
        if not self._closed and event_mask & PollEvents.WRITE:
            self._guard(self._flush)
        if not self._closed and event_mask & PollEvents.ERROR:
            self.close()

    def _start_read(self, callback):
        if self._closed:
            raise StreamError('Stream is already closed')
        if self.reading:
            raise StreamError('Stream is already reading')
        if not callable(callback):
            raise StreamError('Stream callback is not callable')
        self._read_callback = callback

    def _process_read(self):
        while not self._eof and self._fill_read_buffer():
            pass
        if self._closed or self._consume():
            return

        if not self._eof:
            self._observe(PollEvents.READ)
        elif self.reading:
            # Nothing more will arrive to satisfy it.
            self.close()
        else:
            self._ignore(PollEvents.READ)

    def _fill_read_buffer(self):
        """Move one chunk from socket to buffer. Returns its size."""
        try:
            chunk = self.socket.recv(self._read_chunk_size)
        except OSError as e:
            if e.errno not in EWOULDBLOCK:
                self.close()
            return 0
        if not chunk:
            self._eof = True
            return 0
        self._read_buffer.append(chunk)
        self._read_buffer_bytes += len(chunk)
        return len(chunk)

    def _consume(self):
        """Feed buffered input to pending read.
        Returns True when its callback has run.

        """
        if self._bytes_to_read is not None:
            if self._read_buffer_bytes < self._bytes_to_read:
                return False
            size, self._bytes_to_read = self._bytes_to_read, None
            chunk = self._pop_chunk(size)
        elif self._delimiter is not None:
            if not self._read_buffer:
                return False
            self._read_buffer.gather(self._read_buffer_bytes)
            pos = self._read_buffer[0].find(self._delimiter)
            if pos == -1:
                return False
            delimiter, self._delimiter = self._delimiter, None
            chunk = self._pop_chunk(pos + len(delimiter))
            if not self._include_delimiter:
                chunk = chunk[:pos]
        else:
            return False

        callback, self._read_callback = self._read_callback, None
        self._run_callback(callback, chunk)
        return True

    def _pop_chunk(self, size):
        if size == 0:
            return b''
        self._read_buffer_bytes -= size
        return self._read_buffer.throw(size)

    def _flush(self):
        while self._write_buffer:
            try:
                sent = self.socket.send(self._write_buffer[0])
            except OSError as e:
                if e.errno in EWOULDBLOCK:
                    break
                if e.errno in ECONNRESET:
                    self.close()
                    return
                raise StreamError(e)
            if not sent:
                break
            self._write_buffer.throw(sent)

        if self._write_buffer:
            self._observe(PollEvents.WRITE)
            return
        self._ignore(PollEvents.WRITE)
        callback, self._write_callback = self._write_callback, None
        if callback is not None:
            self._run_callback(callback)

    def _run_callback(self, callback, *args):
        try:
            callback(*args)
        except Exception:
            self.close()
            raise

    def _guard(self, process):
        try:
            process()
        except Exception:
            greeter_logger.error(traceback.format_exc())
            self.close()

    def _observe(self, event):
        if self._closed:
            return
        if self._observed is None:
            self._observed = event | PollEvents.ERROR
            self._reactor.attach_handler(
                self.fileno(), self._observed, self.event_handler)
        elif not self._observed & event:
            self._observed |= event
            self._reactor.update_handler(self.fileno(), self._observed)

    def _ignore(self, event):
        if self._closed or self._observed is None:
            return
        if self._observed & event:
            self._observed &= ~event
            self._reactor.update_handler(self.fileno(), self._observed)
