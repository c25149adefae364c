"""

    greeter.web.httpserver
    ~~~~~~~~~~~~~~~~~~~~~~

    TCP server speaking HTTP to a `WebApp`.

"""

from greeter.socketserver import TCPServer
from greeter.web.httpmodels import HTTPHandler


class HTTPServer(TCPServer):
    """Every accepted connection is served by its own `HTTPHandler`"""
    def __init__(self, app=None, reactor=None):
        self._app = app
        super(HTTPServer, self).__init__(reactor=reactor)

    def _event_handler(self, conn, address):
        handler = HTTPHandler(
            conn, address, app=self._app, reactor=self.reactor)
        handler.serve_request()
