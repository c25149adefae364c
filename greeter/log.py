"""

    greeter.log
    ~~~~~~~~~~~

    Error and access logging.

    Errors reach stderr. Access lines are dropped unless a stream is
    attached with `attach_access_stream`, so a running server prints
    nothing but its startup line.

"""

import logging

ERROR_LOGGER = 'greeter'
ACCESS_LOGGER = 'greeter.access'

_FORMAT = '[%(asctime)s]: %(message)s'
_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class ServerLogger(object):
    """Pair of `logging` loggers shared by reactor, streams and apps."""

    def __init__(self):
        self._error_logger = logging.getLogger(ERROR_LOGGER)
        self._access_logger = logging.getLogger(ACCESS_LOGGER)
        self._access_logger.setLevel(logging.INFO)
        # Access lines stay out of error handlers.
        self._access_logger.propagate = False
        self._access_logger.addHandler(logging.NullHandler())
        self._attach(
            self._error_logger, logging.StreamHandler(), logging.ERROR)

    def attach_access_stream(self, stream=None):
        """Start writing `METHOD target STATUS` per served request
        to `stream` (stderr when omitted). Returns the new handler.

        """
        return self._attach(
            self._access_logger, logging.StreamHandler(stream), logging.INFO)

    def error(self, msg):
        self._error_logger.error(msg)

    def access(self, method, url, status_code):
        self._access_logger.info('%s %s %s', method.upper(), url, status_code)

    def _attach(self, logger, handler, level):
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(_FORMAT, _DATE_FORMAT))
        logger.addHandler(handler)
        return handler

greeter_logger = ServerLogger()
