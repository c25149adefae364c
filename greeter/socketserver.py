"""

    greeter.socketserver
    ~~~~~~~~~~~~~~~~~~~~

    Listening TCP sockets served by the reactor.

"""


import errno
import socket
from greeter.reactor import Reactor
from greeter.driver import PollEvents
from greeter.exceptions import SocketError, BindError, EWOULDBLOCK


class TCPServer(object):
    """Accepts connections on the reactor and hands each one, already
    non-blocking, to `_event_handler(conn, address)`, which subclasses
    implement.

    """
    backlog_size = 128

    def __init__(self, reactor=None):
        """@param reactor: loop serving this server.
            `Reactor.instance()` when not given.

        """
        self.reactor = reactor
        self._sockets = []

    @property
    def addresses(self):
        """(address, port) pairs actually bound, useful with port 0"""
        return [socket_.getsockname()[:2] for socket_ in self._sockets]

    def listen(self, address, port):
        """Bind `address:port` and start accepting on the reactor.
        Raises `BindError` when the OS refuses the address.

        """
        socket_ = self._bind_socket(address, port)
        self._sockets.append(socket_)
        if self.reactor is None:
            self.reactor = Reactor.instance()
        self.reactor.attach_handler(
            socket_.fileno(), PollEvents.READ, self._accept_handler(socket_))

    def run_simple(self, address, port):
        """Listen and block in the reactor until it is stopped"""
        self.listen(address, port)
        self.reactor.run()

    def close(self):
        for socket_ in self._sockets:
            self.reactor.remove_handler(socket_.fileno())
            socket_.close()
        self._sockets = []

    def _bind_socket(self, address, port):
        try:
            socket_ = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        except OSError as e:
            raise SocketError('Cannot create socket: %s' % e)
        socket_.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        socket_.setblocking(False)
        try:
            socket_.bind((address, port))
            socket_.listen(self.backlog_size)
        except OSError as e:
            socket_.close()
            raise BindError(address, port, e)
        return socket_

    def _accept_handler(self, socket_):
        def _accept(fd, event_mask):
            # One event may stand for many queued connections.
            while True:
                try:
                    conn, address = socket_.accept()
                except OSError as e:
                    if e.errno in EWOULDBLOCK:
                        return
                    if e.errno == errno.ECONNABORTED:
                        continue
                    raise
                conn.setblocking(False)
                self._event_handler(conn, address)
        return _accept

    def _event_handler(self, conn, address):
        raise NotImplementedError
