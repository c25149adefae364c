"""

    greeter.driver
    ~~~~~~~~~~~~~~

    Readiness notification backends for the reactor.

    Every driver takes `PollEvents` masks and `poll(timeout)` returns a
    list of (fd, mask) pairs, `timeout` being seconds or None to block.

"""

import select
from greeter.exceptions import DriverError


class PollEvents:
    """Equal to `select.POLLIN`, `POLLOUT`, `POLLERR` and to their
    `epoll` twins, so `Epoll` passes masks through untouched.

    """
    READ = 0x001
    WRITE = 0x004
    ERROR = 0x008
    ALL = READ | WRITE | ERROR


def pick():
    """Returns the most scalable driver of this platform"""
    if hasattr(select, 'epoll'):
        return Epoll()
    if hasattr(select, 'kqueue'):
        return Kqueue()
    return Select()


class BaseDriver(object):
    """Interface of `select.epoll` every driver follows"""

    def register(self, fd, event_mask):
        raise NotImplementedError

    def modify(self, fd, event_mask):
        raise NotImplementedError

    def unregister(self, fd):
        raise NotImplementedError

    def poll(self, poll_timeout):
        raise NotImplementedError

    def close(self):
        pass

    @staticmethod
    def _merge(pairs):
        """Fold (fd, mask) pairs into one mask per fd"""
        merged = {}
        for fd, event_mask in pairs:
            merged[fd] = merged.get(fd, 0) | event_mask
        return list(merged.items())


class Select(BaseDriver):
    """`select(2)`. Available everywhere, used when nothing better is."""

    def __init__(self):
        self._masks = {}

    def register(self, fd, event_mask):
        if fd in self._masks:
            raise DriverError('Fd %d already registered' % fd)
        if not event_mask & PollEvents.ALL:
            raise DriverError('Cannot register undefined event')
        self._masks[fd] = event_mask

    def modify(self, fd, event_mask):
        self.unregister(fd)
        self.register(fd, event_mask)

    def unregister(self, fd):
        self._masks.pop(fd, None)

    def poll(self, poll_timeout):
        readable, writable, broken = select.select(
            self._watching(PollEvents.READ),
            self._watching(PollEvents.WRITE),
            self._watching(PollEvents.ERROR), poll_timeout)
        return self._merge(
            [(fd, PollEvents.READ) for fd in readable] +
            [(fd, PollEvents.WRITE) for fd in writable] +
            [(fd, PollEvents.ERROR) for fd in broken])

    def _watching(self, event):
        return [fd for fd, mask in self._masks.items() if mask & event]


class Epoll(BaseDriver):
    """`epoll(7)` on Linux. Hang up is reported as `ERROR`."""

    def __init__(self):
        self._epoll = select.epoll()

    def register(self, fd, event_mask):
        self._epoll.register(fd, event_mask)

    def modify(self, fd, event_mask):
        self._epoll.modify(fd, event_mask)

    def unregister(self, fd):
        self._epoll.unregister(fd)

    def poll(self, poll_timeout):
        if poll_timeout is None:
            poll_timeout = -1
        return [
            (fd, self._translate(event_mask))
            for fd, event_mask in self._epoll.poll(poll_timeout)]

    def close(self):
        self._epoll.close()

    def _translate(self, event_mask):
        if event_mask & select.EPOLLHUP:
            event_mask |= PollEvents.ERROR
        return event_mask & PollEvents.ALL


class Kqueue(BaseDriver):
    """`kqueue(2)` on BSD and macOS.
    Read and write readiness are separate filters there, so masks are
    split on the way in and merged on the way out.

    """
    _MAX_EVENTS = 1024

    def __init__(self):
        self._kqueue = select.kqueue()
        self._masks = {}

    def register(self, fd, event_mask):
        if fd in self._masks:
            raise DriverError('Fd %d already registered' % fd)
        self._control(fd, event_mask, select.KQ_EV_ADD)
        self._masks[fd] = event_mask

    def modify(self, fd, event_mask):
        self.unregister(fd)
        self.register(fd, event_mask)

    def unregister(self, fd):
        self._control(fd, self._masks.pop(fd, 0), select.KQ_EV_DELETE)

    def poll(self, poll_timeout):
        pairs = []
        for kevent in self._kqueue.control(
                None, self._MAX_EVENTS, poll_timeout):
            if kevent.flags & select.KQ_EV_ERROR:
                pairs.append((kevent.ident, PollEvents.ERROR))
            elif kevent.filter == select.KQ_FILTER_READ:
                pairs.append((kevent.ident, PollEvents.READ))
            elif kevent.flags & select.KQ_EV_EOF:
                # Peer stopped reading, writes would fail.
                pairs.append((kevent.ident, PollEvents.ERROR))
            else:
                pairs.append((kevent.ident, PollEvents.WRITE))
        return self._merge(pairs)

    def close(self):
        self._kqueue.close()

    def _control(self, fd, event_mask, flags):
        filters = []
        if event_mask & PollEvents.READ:
            filters.append(select.KQ_FILTER_READ)
        if event_mask & PollEvents.WRITE:
            filters.append(select.KQ_FILTER_WRITE)
        if filters:
            self._kqueue.control(
                [select.kevent(fd, filter=filter_, flags=flags)
                 for filter_ in filters], 0)
