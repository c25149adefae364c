"""

    greeter.reactor
    ~~~~~~~~~~~~~~~

    Single-threaded event loop. Readiness events from a driver are
    dispatched to per-fd handlers, and callbacks queued from any thread
    run between polls.

"""

import socket
import threading
import traceback

from greeter.driver import pick, PollEvents
from greeter.log import greeter_logger
from greeter.exceptions import ReactorError, EWOULDBLOCK


class PollReactor(object):
    """Handlers are called as `handler(fd, event_mask)`.
    A handler or callback raising is logged and the loop goes on.

    """
    # Queued callbacks wake the poll through `Heartbeat`, so nothing
    # waits on this timeout.
    _DEFAULT_POLL_TIMEOUT = 3600.0
    _instance = None
    _instance_lock = threading.Lock()

    def __init__(self, driver=None):
        self._driver = driver or pick()
        self._handlers = {}
        # Events polled but not dispatched yet in this iteration.
        self._pending = {}
        self._callbacks = []
        self._callback_lock = threading.Lock()
        self._running = False
        self._heartbeat = Heartbeat()
        self.attach_handler(
            self._heartbeat.fileno(), PollEvents.READ, self._heartbeat.drain)

    @classmethod
    def instance(cls):
        """Process-wide reactor used when none is given explicitly"""
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def attach_handler(self, fd, event_mask, handler):
        if fd in self._handlers:
            raise ReactorError('Fd %d already has a handler' % fd)
        self._driver.register(fd, event_mask)
        self._handlers[fd] = handler

    def update_handler(self, fd, event_mask):
        self._driver.modify(fd, event_mask)

    def remove_handler(self, fd):
        """Forget `fd`, dropping an event already polled for it."""
        self._handlers.pop(fd, None)
        self._pending.pop(fd, None)
        try:
            self._driver.unregister(fd)
        except (OSError, KeyError, ValueError):
            # Owner closed fd first.
            pass

    def attach_callback(self, callback):
        """Run `callback()` on the loop's next iteration. Thread-safe."""
        with self._callback_lock:
            self._callbacks.append(callback)
        self._heartbeat.beat()

    def run(self, poll_timeout=_DEFAULT_POLL_TIMEOUT):
        """Block dispatching events until `stop` is called"""
        self._running = True
        while self._running:
            self._run_callbacks()
            if not self._running:
                break
            with self._callback_lock:
                timeout = 0 if self._callbacks else poll_timeout

            self._pending.update(self._driver.poll(timeout))
            while self._pending:
                fd, event_mask = self._pending.popitem()
                handler = self._handlers.get(fd)
                if handler is not None:
                    self._guard(handler, fd, event_mask)

    def stop(self):
        """Leave `run`. May be called from another thread."""
        def _stop():
            self._running = False
        self.attach_callback(_stop)

    def close(self):
        """Release driver and heartbeat. Can't be run afterwards."""
        self.remove_handler(self._heartbeat.fileno())
        self._heartbeat.close()
        self._driver.close()

    def _run_callbacks(self):
        with self._callback_lock:
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._guard(callback)

    def _guard(self, function, *args):
        try:
            function(*args)
        except Exception:
            greeter_logger.error(traceback.format_exc())

Reactor = PollReactor


class Heartbeat(object):
    """Socket pair whose reading end sits in the reactor.
    A byte sent by `beat` makes a blocked poll return at once.

    """
    def __init__(self):
        self._reader, self._writer = socket.socketpair()
        self._reader.setblocking(False)
        self._writer.setblocking(False)

    def fileno(self):
        return self._reader.fileno()

    def beat(self):
        try:
            self._writer.send(b'\0')
        except OSError as e:
            # Full buffer wakes the reactor anyway.
            if e.errno not in EWOULDBLOCK:
                raise

    def drain(self, fd, event_mask):
        try:
            while self._reader.recv(1024):
                pass
        except OSError as e:
            if e.errno not in EWOULDBLOCK:
                raise

    def close(self):
        self._writer.close()
        self._reader.close()
