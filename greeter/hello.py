"""

    greeter.hello
    ~~~~~~~~~~~~~

    Server greeting the world on `/hello`.

"""

import sys

from greeter.exceptions import BindError
from greeter.log import greeter_logger
from greeter.web.app import WebApp, path
from greeter.web.httpserver import HTTPServer

HOST = '0.0.0.0'
PORT = 8080
ROUTE = '/hello'
GREETING = 'Hello World'


def hello(request):
    return GREETING


def create_app():
    # Any method is served, like `/hello` registered without `methods`.
    return WebApp([path(hello, route=ROUTE)])


def main():
    server = HTTPServer(app=create_app())

    print('Server is running on http://localhost:%d%s' % (PORT, ROUTE))
    sys.stdout.flush()
    try:
        server.run_simple(HOST, PORT)
    except BindError as e:
        greeter_logger.error(str(e))
        sys.exit(1)


if __name__ == '__main__':
    main()
