import logging
from collections import namedtuple

from evtxdecode.errors import OffsetOutOfBounds, StructureError


logger = logging.getLogger(__name__)


NAME_HEADER_SIZE = 8
NUM_SHARED_NAMES = 64


NameEntry = namedtuple('NameEntry', ['next_offset', 'hash', 'name', 'length'])


def read_name_entry(span, offset):
    """
    Parse the name entry at the given chunk offset.

    Layout: next_offset (dword), hash (word), char_count (word), then
      char_count UTF-16LE code units and a two byte terminator.

    Args:
      span (evtxdecode.binary.ByteSpan): the chunk buffer.
      offset (int): chunk-relative offset of the name entry.

    Returns:
      NameEntry: the parsed entry; `length` is the total number of bytes
        the entry occupies, including header and terminator.

    Raises:
      OffsetOutOfBounds: if the header or body would overrun the chunk,
        or the entry declares an empty name.
    """
    next_offset, hash_, char_count = span.unpack_struct("<IHH", offset)
    if char_count == 0:
        raise OffsetOutOfBounds("empty name entry at 0x%x" % (offset))

    length = NAME_HEADER_SIZE + (char_count * 2) + 2
    span.check(offset, length)
    name = span.unpack_wstring(offset + NAME_HEADER_SIZE, char_count)
    return NameEntry(next_offset, hash_, name, length)


class NameCache(object):
    """
    Chunk-scoped registry of name offsets that have already been materialized.

    An offset present in the cache means the name body at that offset has
      been read once in this chunk. The resolved string is kept alongside so
      later references by offset don't re-read the buffer.
    """

    def __init__(self):
        super(NameCache, self).__init__()
        self._names = {}

    def __len__(self):
        return len(self._names)

    def __contains__(self, offset):
        return offset in self._names

    def is_cached(self, offset):
        return offset in self._names

    def add(self, offset, name=None):
        # first registration wins
        if offset not in self._names:
            self._names[offset] = name

    def get(self, offset):
        return self._names.get(offset)

    def clear(self):
        self._names.clear()


def resolve_name(span, cache, name_offset, cursor):
    """
    Resolve a name reference found in a token stream.

    When the cursor immediately after the reference field equals the
      name offset, the name body is stored inline right here: parse it,
      register it, and report its length so the caller can step over it.
    Otherwise the body lives elsewhere in the chunk and nothing is
      consumed at this position.

    Args:
      span (evtxdecode.binary.ByteSpan): the chunk buffer.
      cache (NameCache): the chunk's name cache.
      name_offset (int): the chunk-relative offset read from the token.
      cursor (int): chunk-relative position just after the offset field.

    Returns:
      tuple[str, int]: the name and the number of inline bytes consumed.
    """
    if cursor == name_offset:
        entry = read_name_entry(span, name_offset)
        if not cache.is_cached(name_offset):
            logger.debug("0x%x: inline name %r", name_offset, entry.name)
        cache.add(name_offset, entry.name)
        return entry.name, entry.length

    name = cache.get(name_offset)
    if name is None:
        name = read_name_entry(span, name_offset).name
        cache.add(name_offset, name)
    return name, 0


def iter_chunk_names(span, header):
    """
    Walk the chunk's shared name table, following hash chains.

    Args:
      span (evtxdecode.binary.ByteSpan): the chunk buffer.
      header (evtxdecode.chunks.ChunkHeader): the parsed chunk header.

    Returns:
      iterable[tuple[int, int, NameEntry]]: (slot index, offset, entry);
        the slot index is None for entries reached through `next_offset`.
    """
    seen = set([])
    for index, offset in enumerate(header.name_offsets):
        slot = index
        while offset != 0 and offset not in seen:
            seen.add(offset)
            try:
                entry = read_name_entry(span, offset)
            except OffsetOutOfBounds as e:
                logger.warning("bad shared name entry at 0x%x: %s", offset, str(e))
                break
            yield slot, offset, entry
            slot = None
            offset = entry.next_offset


class ElementNameStack(object):
    """
    LIFO of open element names.
    """

    def __init__(self):
        super(ElementNameStack, self).__init__()
        self._names = []

    def __len__(self):
        return len(self._names)

    def push(self, name):
        self._names.append(name)

    def pop(self):
        if not self._names:
            raise StructureError("element close without matching open")
        return self._names.pop()

    def peek(self):
        if not self._names:
            return None
        return self._names[-1]
