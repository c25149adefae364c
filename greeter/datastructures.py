"""

    greeter.datastructures
    ~~~~~~~~~~~~~~~~~~~~~~

    Byte buffers and header mapping.

"""

import collections
import collections.abc


class FlexibleDeque(collections.deque):
    """Deque of `bytes` chunks which can be re-cut at any byte offset,
    used for stream buffers.

    """

    def gather(self, chunk_size):
        """Merge leading chunks until first chunk is `chunk_size` bytes,
        or holds everything when there is less.

            >>> q = FlexibleDeque([b'y', b'-', b'combinator', b'...'])
            >>> q.gather(12)
            >>> q
            FlexibleDeque([b'y-combinator', b'...'])

        """
        if not self or len(self[0]) == chunk_size:
            return
        taken = []
        size = 0
        while self and size < chunk_size:
            data = self.popleft()
            taken.append(data)
            size += len(data)
        if size > chunk_size:
            last = taken.pop()
            cut = len(last) - (size - chunk_size)
            taken.append(last[:cut])
            self.appendleft(last[cut:])
        self.appendleft(b''.join(taken))

    def throw(self, chunk_size):
        """Remove and return first `chunk_size` bytes"""
        self.gather(chunk_size)
        return self.popleft()

    def __repr__(self):
        return '%s(%r)' % (self.__class__.__name__, list(self))


class CaseInsensitiveDict(collections.abc.MutableMapping):
    """Mapping of `str` keys compared without case.
    Iteration yields keys spelled as they were last assigned.

        >>> dict_ = CaseInsensitiveDict()
        >>> dict_['club'] = 'octagon'
        >>> dict_.get('CLUB')
        'octagon'

    """
    def __init__(self, data=None):
        # lowered key -> (key, value)
        self._store = {}
        self.update(data or {})

    def __getitem__(self, key):
        return self._store[key.lower()][1]

    def __setitem__(self, key, value):
        self._store[key.lower()] = (key, value)

    def __delitem__(self, key):
        del self._store[key.lower()]

    def __iter__(self):
        return (key for key, _ in self._store.values())

    def __len__(self):
        return len(self._store)

    def __repr__(self):
        return '%s(%r)' % (self.__class__.__name__, dict(self.items()))
