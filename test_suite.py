#!/usr/bin/python

"""Tests for greeter"""

import io
import os
import errno
import json
import socket
import logging
import threading
import unittest
import http.client
from unittest import mock
from concurrent.futures import ThreadPoolExecutor

from greeter.log import greeter_logger, ACCESS_LOGGER
from greeter.reactor import Reactor
from greeter.driver import pick, PollEvents, Select, BaseDriver
from greeter.exceptions import ApplicationError, BindError, StreamError
from greeter.datastructures import FlexibleDeque, CaseInsensitiveDict
from greeter.hello import create_app, hello, main
from greeter.web.app import WebApp, Path, Resource, path
from greeter.web.codec import encode, to_str
from greeter.web.httpmodels import (
    HTTPHandler, HTTPRequest, HTTPRequestHeader, HTTPResponse,
    sniff_content_type)
from greeter.web.httpserver import HTTPServer
from greeter.web.stream import SocketStream


def split_response(raw):
    """Returns (status line, headers dict, body) of raw response"""
    head, _, body = raw.partition(b'\r\n\r\n')
    lines = to_str(head).split('\r\n')
    headers = CaseInsensitiveDict(
        dict(line.split(': ', 1) for line in lines[1:]))
    return lines[0], headers, body


class FakeConnection(object):
    """Connection recording responses instead of writing to socket"""
    closed = False

    def __init__(self):
        self.responses = []

    def finish(self, chunk, keep_alive=False):
        self.responses.append((chunk, keep_alive))


def make_request(method='GET', url='/hello', version='HTTP/1.1', **headers):
    return HTTPRequest(
        url=url, method=method, version=version, body=b'',
        headers=HTTPRequestHeader(headers))


class DatastructuresTestCase(unittest.TestCase):
    def test_flexible_deque_gather(self):
        q = FlexibleDeque([b'y', b'-', b'combinator', b'...'])

        q.gather(12)
        assert q == FlexibleDeque([b'y-combinator', b'...'])

        q.gather(13)
        assert q == FlexibleDeque([b'y-combinator.', b'..'])

        q.gather(30)
        assert q == FlexibleDeque([b'y-combinator...'])

        q = FlexibleDeque()
        q.gather(5)
        assert q == FlexibleDeque()

    def test_flexible_deque_throw(self):
        q = FlexibleDeque([b'Hello', b' ', b'World'])
        assert q.throw(7) == b'Hello W'
        assert q == FlexibleDeque([b'orld'])

    def test_caseinsensitive_dict(self):
        # Test case-insensitive comparison.
        dict_ = CaseInsensitiveDict()
        dict_['club'] = 'octagon'
        assert dict_.get('CLUB') == dict_.get('ClUb')

        # Test `get` method works.
        v = dict_.get('daft', 'punk')
        assert v == 'punk'

        v = dict_.get('CLub')
        assert v == 'octagon'

        # Original key is kept for iteration.
        dict_['Content-Type'] = 'text/plain'
        assert 'content-type' in dict_
        assert list(dict_) == ['club', 'Content-Type']


class CodecTestCase(unittest.TestCase):
    def test_encode(self):
        assert encode('Hello World') == b'Hello World'
        assert encode(b'raw') == b'raw'
        assert encode(11) == b'11'
        assert encode(None) == b''

    def test_to_str(self):
        assert to_str(b'GET') == 'GET'
        assert to_str('already') == 'already'


class DriverTestCase(unittest.TestCase):
    def setUp(self):
        self.reader, self.writer = socket.socketpair()

    def tearDown(self):
        self.reader.close()
        self.writer.close()

    def test_pick(self):
        assert isinstance(pick(), BaseDriver)

    def test_select_reports_readable_fd(self):
        driver = Select()
        driver.register(self.reader.fileno(), PollEvents.READ)
        assert list(driver.poll(0)) == []

        self.writer.send(b'x')
        events = dict(driver.poll(1))
        assert events[self.reader.fileno()] & PollEvents.READ

    def test_picked_driver_reports_readable_fd(self):
        driver = pick()
        driver.register(self.reader.fileno(), PollEvents.READ)
        self.writer.send(b'x')
        events = dict(driver.poll(1))
        assert events[self.reader.fileno()] & PollEvents.READ

        driver.unregister(self.reader.fileno())
        assert self.reader.fileno() not in dict(driver.poll(0))
        driver.close()


class ReactorTestCase(unittest.TestCase):
    def setUp(self):
        self.reactor = Reactor()

    def tearDown(self):
        self.reactor.close()

    def test_stop_from_another_thread(self):
        thread = threading.Thread(target=self.reactor.run)
        thread.daemon = True
        thread.start()

        self.reactor.stop()
        thread.join(5)
        assert not thread.is_alive()

    def test_handler_error_does_not_kill_loop(self):
        reader, writer = socket.socketpair()
        calls = []

        def handler(fd, event_mask):
            calls.append(fd)
            reader.recv(16)
            self.reactor.stop()
            raise RuntimeError('boom')

        self.reactor.attach_handler(
            reader.fileno(), PollEvents.READ, handler)
        writer.send(b'x')
        with mock.patch('greeter.reactor.greeter_logger') as logger:
            self.reactor.run()

        assert calls == [reader.fileno()]
        assert logger.error.called
        self.reactor.remove_handler(reader.fileno())
        reader.close()
        writer.close()


class StreamTestCase(unittest.TestCase):
    """Tests for modules in web.stream"""
    def setUp(self):
        self.reactor = Reactor()
        self.local, self.remote = socket.socketpair()
        self.local.setblocking(False)
        self.stream = SocketStream(self.local, reactor=self.reactor)

    def tearDown(self):
        self.stream.close()
        self.remote.close()
        self.reactor.close()

    def test_socket_read_until(self):
        chunks = []
        self.remote.sendall(b'first\r\nsecond\r\n')
        self.stream.read_until(b'\r\n', chunks.append)
        self.stream.read_until(b'\r\n', chunks.append, include=True)
        assert chunks == [b'first', b'second\r\n']

    def test_socket_read_bytes(self):
        chunks = []
        self.stream.read_bytes(5, chunks.append)
        # Nothing to read yet, so stream waits in reactor.
        assert chunks == []
        assert self.stream.reading

        self.remote.sendall(b'Hello World')
        self.stream.event_handler(self.stream.fileno(), PollEvents.READ)
        assert chunks == [b'Hello']

    def test_reading_twice_is_refused(self):
        self.stream.read_bytes(5, lambda chunk: None)
        with self.assertRaises(StreamError):
            self.stream.read_bytes(5, lambda chunk: None)

    def test_write_runs_callback(self):
        done = []
        self.stream.write(b'Hello World', lambda: done.append(True))
        assert done == [True]
        assert self.remote.recv(64) == b'Hello World'

    def test_peer_close_runs_close_callback(self):
        closed = []
        self.stream.set_close_callback(lambda: closed.append(True))
        self.stream.read_bytes(5, lambda chunk: None)
        self.remote.close()
        self.stream.event_handler(self.stream.fileno(), PollEvents.READ)
        assert self.stream.closed
        assert closed == [True]

    def test_input_buffered_before_peer_shutdown(self):
        chunks = []
        self.remote.sendall(b'first\r\nsecond\r\n')
        self.remote.shutdown(socket.SHUT_WR)

        self.stream.read_until(b'\r\n', chunks.append)
        self.stream.read_until(b'\r\n', chunks.append)
        assert chunks == [b'first', b'second']
        assert not self.stream.closed

        # Stream still writes after peer stopped sending.
        self.stream.write(b'bye')
        assert self.remote.recv(64) == b'bye'

        # Nothing is left to satisfy another read.
        self.stream.read_until(b'\r\n', chunks.append)
        assert self.stream.closed
        assert chunks == [b'first', b'second']


class HTTPModelsTestCase(unittest.TestCase):
    def test_sniff_content_type(self):
        assert sniff_content_type(b'Hello World') == \
            'text/plain; charset=utf-8'
        assert sniff_content_type(b'\n <!DOCTYPE html><p>') == \
            'text/html; charset=utf-8'
        assert sniff_content_type(b'\x00\x01\x02') == \
            'application/octet-stream'
        assert sniff_content_type(b'\xff\xfe') == 'application/octet-stream'

    def test_request_path_ignores_query(self):
        assert make_request(url='/hello?name=world').path == '/hello'

    def test_request_keep_alive(self):
        assert make_request().keep_alive
        assert not make_request(Connection='close').keep_alive
        assert not make_request(version='HTTP/1.0').keep_alive
        assert make_request(
            version='HTTP/1.0', Connection='Keep-Alive').keep_alive

    def test_invalid_content_length(self):
        headers = HTTPRequestHeader({'Content-Length': '-1'})
        with self.assertRaises(ValueError):
            headers.content_length

    def test_response_raw(self):
        response = HTTPResponse(request=make_request(), body='Hello World')
        status, headers, body = split_response(response.raw())
        assert status == 'HTTP/1.1 200 OK'
        assert headers['Content-Length'] == '11'
        assert headers['Content-Type'] == 'text/plain; charset=utf-8'
        assert 'Date' in headers
        assert body == b'Hello World'

    def test_head_response_has_no_body(self):
        response = HTTPResponse(
            request=make_request(method='HEAD'), body='Hello World')
        status, headers, body = split_response(response.raw())
        assert headers['Content-Length'] == '11'
        assert body == b''

    def test_parse_request_head(self):
        reactor = Reactor()
        local, remote = socket.socketpair()
        handler = HTTPHandler(local, ('127.0.0.1', 0), reactor=reactor)

        request = handler._parse_request_head(
            b'POST /hello?x=1 HTTP/1.1\r\nHost: localhost\r\n'
            b'Accept: text/plain\r\naccept: text/html')
        assert request.method == 'post'
        assert request.path == '/hello'
        assert request.headers.get('Host') == 'localhost'
        assert request.headers.get('Accept') == 'text/plain, text/html'

        for head in (b'GET /hello', b'GET /hello HTTP/2.0',
                     b'GET /hello HTTP/1.1\r\nbroken header'):
            with self.assertRaises(ValueError):
                handler._parse_request_head(head)

        local.close()
        remote.close()
        reactor.close()


class AppTestCase(unittest.TestCase):
    def react(self, app, request):
        conn = FakeConnection()
        app.react(conn, request)
        assert len(conn.responses) == 1
        raw, keep_alive = conn.responses[0]
        return split_response(raw) + (keep_alive,)

    def test_hello(self):
        assert hello(None) == 'Hello World'

    def test_hello_any_method(self):
        app = create_app()
        for method in ('GET', 'POST', 'PUT', 'DELETE', 'PATCH', 'FOO'):
            status, headers, body, keep_alive = \
                self.react(app, make_request(method=method))
            assert status == 'HTTP/1.1 200 OK'
            assert body == b'Hello World'
            assert keep_alive

    def test_not_found(self):
        app = create_app()
        for url in ('/', '/hello/', '/Hello', '/missing'):
            status, headers, body, _ = self.react(app, make_request(url=url))
            assert status == 'HTTP/1.1 404 Not Found'
            assert body == b'404 page not found\n'
            assert headers['X-Content-Type-Options'] == 'nosniff'

    def test_method_not_allowed(self):
        app = WebApp([path(hello, route='/hello', methods=['get'])])
        status, headers, body, _ = \
            self.react(app, make_request(method='POST'))
        assert status == 'HTTP/1.1 405 Method Not Allowed'
        assert headers['Allow'] == 'GET'
        assert body == b'405 Method Not Allowed\n'

    def test_resource_class(self):
        class HelloResource(Resource):
            def initialize(self):
                self.greeting = 'Hello'

            def handle_get(self):
                self.set_header('X-Method', self.request.method)
                self.write(self.greeting)
                self.write(b' World')

        app = WebApp([path(HelloResource, route='/resource')])
        status, headers, body, _ = \
            self.react(app, make_request(url='/resource'))
        assert status == 'HTTP/1.1 200 OK'
        assert headers['X-Method'] == 'get'
        assert body == b'Hello World'

        status, headers, body, _ = \
            self.react(app, make_request(method='DELETE', url='/resource'))
        assert status == 'HTTP/1.1 405 Method Not Allowed'
        assert headers['Allow'] == 'GET'

    def test_handler_error(self):
        def broken(request):
            raise KeyError('boom')

        app = WebApp([path(broken, route='/broken')])
        with mock.patch('greeter.web.app.greeter_logger') as logger:
            status, headers, body, _ = \
                self.react(app, make_request(url='/broken'))
        assert status == 'HTTP/1.1 500 Internal Server Error'
        assert body == b'500 Internal Server Error\n'
        assert logger.error.called

    def test_json_response(self):
        app = WebApp([path(lambda request: {'greeting': 'Hello World'},
                           route='/json')])
        status, headers, body, _ = \
            self.react(app, make_request(url='/json'))
        assert headers['Content-Type'] == 'application/json'
        assert json.loads(to_str(body)) == {'greeting': 'Hello World'}

    def test_connection_close(self):
        status, headers, body, keep_alive = self.react(
            create_app(), make_request(Connection='close'))
        assert headers['Connection'] == 'close'
        assert not keep_alive

    def test_invalid_registrations(self):
        with self.assertRaises(ApplicationError):
            Path(hello, route='hello')
        with self.assertRaises(ApplicationError):
            Path(hello, route='/hello', methods=['fetch'])
        with self.assertRaises(ApplicationError):
            Path(object, route='/hello')
        with self.assertRaises(ApplicationError):
            WebApp([path(hello, route='/hello'), path(hello, route='/hello')])


class LogTestCase(unittest.TestCase):
    def test_access_lines_are_dropped_by_default(self):
        access = logging.getLogger(ACCESS_LOGGER)
        assert not access.propagate
        assert all(isinstance(handler, logging.NullHandler)
                   for handler in access.handlers)

    def test_attach_access_stream(self):
        stream = io.StringIO()
        handler = greeter_logger.attach_access_stream(stream)
        try:
            app = create_app()
            app.react(FakeConnection(), make_request(url='/hello?a=1'))
            app.react(
                FakeConnection(), make_request(method='POST', url='/missing'))
        finally:
            logging.getLogger(ACCESS_LOGGER).removeHandler(handler)
        lines = stream.getvalue().splitlines()
        assert len(lines) == 2
        assert lines[0].endswith(']: GET /hello?a=1 200')
        assert lines[1].endswith(']: POST /missing 404')


class HelloMainTestCase(unittest.TestCase):
    def test_startup_message(self):
        with mock.patch.object(HTTPServer, 'run_simple') as run_simple, \
                mock.patch('sys.stdout', new_callable=io.StringIO) as out:
            main()
        assert out.getvalue() == \
            'Server is running on http://localhost:8080/hello\n'
        run_simple.assert_called_once_with('0.0.0.0', 8080)

    def test_bind_failure_exits(self):
        error = BindError(
            '0.0.0.0', 8080,
            OSError(errno.EADDRINUSE, 'Address already in use'))
        with mock.patch.object(HTTPServer, 'run_simple',
                               side_effect=error), \
                mock.patch('sys.stdout', new_callable=io.StringIO), \
                mock.patch('greeter.hello.greeter_logger') as logger:
            with self.assertRaises(SystemExit) as context:
                main()
        assert context.exception.code == 1
        assert 'Address already in use' in logger.error.call_args[0][0]

    def test_port_in_use_exits(self):
        occupant = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            occupant.bind(('0.0.0.0', 0))
            occupant.listen(1)
            port = occupant.getsockname()[1]
            stdout = io.StringIO()
            with mock.patch('greeter.hello.PORT', port), \
                    mock.patch('sys.stdout', stdout), \
                    mock.patch('greeter.hello.greeter_logger') as logger:
                with self.assertRaises(SystemExit) as context:
                    main()
        finally:
            occupant.close()
        assert context.exception.code == 1
        assert stdout.getvalue() == \
            'Server is running on http://localhost:%d/hello\n' % port
        message = logger.error.call_args[0][0]
        assert str(port) in message
        assert os.strerror(errno.EADDRINUSE) in message


class HTTPServerTestCase(unittest.TestCase):
    """Runs real server on ephemeral port with private reactor"""
    def setUp(self):
        self.reactor = Reactor()
        self.server = HTTPServer(app=create_app(), reactor=self.reactor)
        self.server.listen('127.0.0.1', 0)
        self.port = self.server.addresses[0][1]
        self.thread = threading.Thread(target=self.reactor.run)
        self.thread.daemon = True
        self.thread.start()

    def tearDown(self):
        self.reactor.stop()
        self.thread.join(5)
        self.server.close()
        self.reactor.close()

    def request(self, method, url, body=None, headers=None):
        conn = http.client.HTTPConnection('127.0.0.1', self.port, timeout=5)
        try:
            conn.request(method, url, body=body, headers=headers or {})
            response = conn.getresponse()
            return response.status, response.read(), response
        finally:
            conn.close()

    def raw_request(self, data, shutdown=False):
        """Send raw bytes and read until server closes connection.
        With `shutdown`, client stops sending right after `data`.

        """
        sock = socket.create_connection(('127.0.0.1', self.port), timeout=5)
        try:
            sock.sendall(data)
            if shutdown:
                sock.shutdown(socket.SHUT_WR)
            chunks = []
            while True:
                chunk = sock.recv(4096)
                if not chunk:
                    break
                chunks.append(chunk)
            return b''.join(chunks)
        finally:
            sock.close()

    def test_get_hello(self):
        status, body, response = self.request('GET', '/hello')
        assert status == 200
        assert body == b'Hello World'
        assert response.getheader('Content-Type') == \
            'text/plain; charset=utf-8'
        assert response.getheader('Content-Length') == '11'

    def test_post_hello(self):
        status, body, _ = self.request('POST', '/hello', body=b'name=world')
        assert status == 200
        assert body == b'Hello World'

    def test_any_method(self):
        for method in ('PUT', 'DELETE', 'PATCH', 'OPTIONS'):
            status, body, _ = self.request(method, '/hello')
            assert status == 200
            assert body == b'Hello World'

    def test_head(self):
        status, body, response = self.request('HEAD', '/hello')
        assert status == 200
        assert body == b''
        assert response.getheader('Content-Length') == '11'

    def test_missing(self):
        for url in ('/', '/hello/', '/Hello', '/missing'):
            status, body, _ = self.request('GET', url)
            assert status == 404
            assert body == b'404 page not found\n'

    def test_concurrent_requests(self):
        with ThreadPoolExecutor(max_workers=100) as executor:
            results = list(executor.map(
                lambda _: self.request('GET', '/hello')[:2], range(100)))
        assert results == [(200, b'Hello World')] * 100

    def test_keep_alive(self):
        conn = http.client.HTTPConnection('127.0.0.1', self.port, timeout=5)
        try:
            conn.request('GET', '/hello')
            assert conn.getresponse().read() == b'Hello World'
            sock = conn.sock

            conn.request('GET', '/hello')
            assert conn.getresponse().read() == b'Hello World'
            assert conn.sock is sock
        finally:
            conn.close()

    def test_pipelined_requests(self):
        raw = self.raw_request(
            b'GET /hello HTTP/1.1\r\nHost: localhost\r\n\r\n'
            b'GET /missing HTTP/1.1\r\nHost: localhost\r\n\r\n'
            b'GET /hello HTTP/1.1\r\nHost: localhost\r\n'
            b'Connection: close\r\n\r\n')
        assert raw.count(b'HTTP/1.1 200 OK') == 2
        assert raw.count(b'HTTP/1.1 404 Not Found') == 1
        assert raw.endswith(b'Hello World')

    def test_long_pipeline(self):
        raw = self.raw_request(
            b'GET /hello HTTP/1.1\r\nHost: localhost\r\n\r\n' * 199 +
            b'GET /hello HTTP/1.1\r\nConnection: close\r\n\r\n')
        assert raw.count(b'HTTP/1.1 200 OK') == 200
        assert raw.count(b'\r\n\r\nHello World') == 200

    def test_half_closed_client(self):
        for version in (b'HTTP/1.0', b'HTTP/1.1'):
            raw = self.raw_request(
                b'GET /hello ' + version + b'\r\n\r\n', shutdown=True)
            assert raw.startswith(version + b' 200 OK\r\n')
            assert raw.endswith(b'\r\n\r\nHello World')

    def test_half_closed_pipeline(self):
        raw = self.raw_request(
            b'POST /hello HTTP/1.1\r\nContent-Length: 4\r\n\r\nping'
            b'GET /missing HTTP/1.1\r\n\r\n'
            b'GET /hello HTTP/1.1\r\n\r\n', shutdown=True)
        assert raw.count(b'HTTP/1.1 200 OK') == 2
        assert raw.count(b'HTTP/1.1 404 Not Found') == 1
        assert raw.endswith(b'Hello World')

    def test_http_1_0_closes_connection(self):
        raw = self.raw_request(b'GET /hello HTTP/1.0\r\n\r\n')
        assert raw.startswith(b'HTTP/1.0 200 OK\r\n')
        assert raw.endswith(b'\r\n\r\nHello World')

    def test_chunked_body(self):
        raw = self.raw_request(
            b'POST /hello HTTP/1.1\r\nHost: localhost\r\n'
            b'Transfer-Encoding: chunked\r\n\r\n'
            b'5\r\nHello\r\n6;ext=1\r\n World\r\n0\r\nX-Trailer: 1\r\n\r\n'
            b'GET /hello HTTP/1.1\r\nConnection: close\r\n\r\n')
        assert raw.count(b'HTTP/1.1 200 OK') == 2

    def test_expect_continue(self):
        interim = b'HTTP/1.1 100 Continue\r\n\r\n'
        sock = socket.create_connection(('127.0.0.1', self.port), timeout=5)
        try:
            sock.sendall(
                b'POST /hello HTTP/1.1\r\nContent-Length: 5\r\n'
                b'Expect: 100-continue\r\nConnection: close\r\n\r\n')
            received = b''
            while len(received) < len(interim):
                received += sock.recv(len(interim) - len(received))
            assert received == interim

            sock.sendall(b'hello')
            chunks = []
            while True:
                chunk = sock.recv(4096)
                if not chunk:
                    break
                chunks.append(chunk)
        finally:
            sock.close()
        raw = b''.join(chunks)
        assert raw.startswith(b'HTTP/1.1 200 OK\r\n')
        assert raw.endswith(b'Hello World')

    def test_bad_request(self):
        raw = self.raw_request(b'NONSENSE\r\n\r\n')
        status, headers, body = split_response(raw)
        assert status == 'HTTP/1.1 400 Bad Request'
        assert headers['Connection'] == 'close'
        assert body == b'400 Bad Request\n'

    def test_second_bind_fails(self):
        other = HTTPServer(app=create_app(), reactor=self.reactor)
        with self.assertRaises(BindError) as context:
            other.listen('127.0.0.1', self.port)
        assert context.exception.errno == errno.EADDRINUSE

        # First server keeps serving.
        status, body, _ = self.request('GET', '/hello')
        assert status == 200
        assert body == b'Hello World'


if __name__ == '__main__':
    unittest.main()
