"""

    greeter.web.app
    ~~~~~~~~~~~~~~~

    Routes requests to handlers and turns what they produce into
    responses.

"""

import json
import traceback
from greeter.log import greeter_logger
from greeter.web.codec import encode
from greeter.web.httpmodels import (
    HTTPRequest, HTTPResponse, HTTPMethod, HTTPVersion, HTTPStatusCode,
    HTTPResponseHeader, TEXT_PLAIN, APPLICATION_JSON, error_body)
from greeter.exceptions import ApplicationError, HTTPError


def path(handler, route, methods=None):
    """Shorthand for `Path`, reads well inside `WebApp([...])`"""
    return Path(handler, route, methods=methods)


class WebApp(object):
    """Dispatches each request to the `Path` whose route equals the
    request path exactly. Anything else is answered with 404.

        def hello(request):
            return 'Hello World'

        class Echo(Resource):
            def handle_post(self):
                self.write(self.request.body)

        app = WebApp([
            path(hello, route='/hello'),
            path(Echo, route='/echo'),
            ])
        HTTPServer(app=app).run_simple('0.0.0.0', 8080)

    """
    def __init__(self, urls=None):
        self._dispatcher = PathDispatcher(urls or [])

    def react(self, conn, request):
        if not isinstance(request, HTTPRequest):
            raise ApplicationError('Can only react to `HTTPRequest`')

        path_ = self._dispatcher.lookup(request.path)
        if path_ is None:
            FunctionResource(self._not_found).react(conn, request)
        else:
            path_.follow(conn, request)

    def _not_found(self, request):
        raise HTTPError(HTTPStatusCode.NOT_FOUND)


class PathDispatcher(object):
    """Route -> `Path` table. Lookup is exact and case-sensitive."""
    def __init__(self, urls):
        self._paths = {}
        try:
            for path_ in urls:
                self.add(path_)
        except TypeError:
            raise ApplicationError('Form should be `List` of `Path`.')

    def add(self, path_):
        if not isinstance(path_, Path):
            raise ApplicationError('Can only dispatch to `Path`')
        if path_.route in self._paths:
            raise ApplicationError(
                "Route '%s' is already registered" % path_.route)
        self._paths[path_.route] = path_

    def lookup(self, url):
        return self._paths.get(url)


class Path(object):
    """Route bound to its handler.

    @param handler: callable taking request and returning body,
        or `Resource` subclass.
    @param route: exact request path, starting with '/'.
    @param methods: allowed methods. Every method when omitted.

    """
    def __init__(self, handler, route, methods=None):
        if isinstance(handler, type):
            if not issubclass(handler, Resource):
                raise ApplicationError(
                    'Handler class should inherit `Resource`')
        elif not callable(handler):
            raise ApplicationError(
                'Handler should be callable or `Resource` class')
        if not isinstance(route, str) or not route.startswith('/'):
            raise ApplicationError("Route should start with '/': %r" % route)

        self.handler = handler
        self.route = route
        self.methods = [self._validate_method(m) for m in methods or []]

    def follow(self, conn, request):
        """Serve `request` with a resource made for it alone"""
        if isinstance(self.handler, type):
            resource = self.handler(methods=self.methods)
        else:
            resource = FunctionResource(self.handler, methods=self.methods)
        resource.react(conn, request)

    @staticmethod
    def _validate_method(method):
        method = method.lower()
        if method not in HTTPMethod.all():
            raise ApplicationError("Unsupported HTTP method '%s'" % method)
        return method

    def __repr__(self):
        return '<Path [%s]>' % (self.route)


class Resource(object):
    """Answers exactly one request, then is thrown away.

    Subclasses serve a method by defining `handle_<method>`, which
    builds the response with `set_status`, `set_header` and `write`.
    Response goes out when the handler returns, or earlier if it calls
    `finish` itself. Other methods get 405 with `Allow` listing the
    defined ones. `HTTPError` raised by handler becomes its status, any
    other exception is logged and becomes 500.

    """
    def __init__(self, methods=None):
        self._methods = methods or []
        self._conn = None
        self._request = None
        self._response = None
        self._status_code = HTTPStatusCode.OK
        self._headers = HTTPResponseHeader()
        self._body = []
        self._finished = False
        self.initialize()

    def initialize(self):
        """Hook run at the end of construction"""
        pass

    @property
    def request(self):
        return self._request

    def react(self, conn, request):
        self._conn = conn
        self._request = request
        try:
            if self._methods and request.method not in self._methods:
                self._raise_not_allowed(self._methods)
            self._dispatch(request)
            if not self._finished:
                self.finish()
        except HTTPError as e:
            self._send_error(e.status_code, e.headers)
        except Exception:
            greeter_logger.error(traceback.format_exc())
            self._send_error(HTTPStatusCode.INTERNAL_SERVER_ERROR)

    def set_status(self, status_code):
        self._status_code = status_code

    def set_header(self, key, value):
        self._headers[key] = value

    def write(self, chunk):
        """Append to response body. `dict` is sent as JSON."""
        if isinstance(chunk, dict):
            chunk = json.dumps(chunk)
            self._headers['Content-Type'] = APPLICATION_JSON
        chunk = encode(chunk)
        if chunk:
            self._body.append(chunk)

    def finish(self):
        if self._finished:
            raise ApplicationError('Resource is already finished')
        self._finished = True
        conn, self._conn = self._conn, None
        if conn.closed:
            # Client left while handler ran.
            return

        keep_alive = self._request.keep_alive
        self._response = self._build_response(keep_alive)
        self._log_access()
        conn.finish(self._response.raw(), keep_alive=keep_alive)

    def _dispatch(self, request):
        handler = getattr(self, 'handle_' + request.method, None)
        if handler is None:
            self._raise_not_allowed()
        handler()

    def _build_response(self, keep_alive):
        if not keep_alive:
            self._headers['Connection'] = 'close'
        elif self._request.version == HTTPVersion.HTTP_1_0:
            self._headers['Connection'] = 'keep-alive'
        return HTTPResponse(
            request=self._request, headers=self._headers,
            status_code=self._status_code, body=b''.join(self._body))

    def _send_error(self, status_code, headers=None):
        if self._finished:
            # Response already went out.
            return
        self._body = []
        self._headers.reset()
        self._headers.update(headers or {})
        self._headers['Content-Type'] = TEXT_PLAIN
        self._headers['X-Content-Type-Options'] = 'nosniff'
        self.set_status(status_code)
        self.write(error_body(status_code))
        self.finish()

    def _raise_not_allowed(self, methods=None):
        if not methods:
            methods = [
                method for method in HTTPMethod.all()
                if hasattr(self, 'handle_' + method)]
        raise HTTPError(
            HTTPStatusCode.METHOD_NOT_ALLOWED,
            headers={'Allow': ', '.join(m.upper() for m in methods)})

    def _log_access(self):
        greeter_logger.access(
            self._request.method, self._request.url,
            self._response.status_code)


class FunctionResource(Resource):
    """Serves every allowed method by writing `function(request)`"""
    def __init__(self, function, methods=None):
        self._function = function
        super(FunctionResource, self).__init__(methods=methods)

    def _dispatch(self, request):
        self.write(self._function(request))
