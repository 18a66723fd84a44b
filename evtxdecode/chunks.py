import logging
from collections import namedtuple

import evtxdecode.utils
from evtxdecode.binary import ByteSpan
from evtxdecode.binxml import MAX_RECURSION_DEPTH, BinXmlDecoder
from evtxdecode.errors import OffsetOutOfBounds, ParseError, RecordTooSmall, SignatureMismatch
from evtxdecode.names import NUM_SHARED_NAMES, NameCache
from evtxdecode.templates import NUM_SHARED_TEMPLATES
from evtxdecode.xmltree import XmlTree


logger = logging.getLogger(__name__)


EVTX_FILE_MAGIC = b"ElfFile\x00"
EVTX_CHUNK_MAGIC = b"ElfChnk\x00"
EVTX_RECORD_MAGIC = 0x00002a2a
FILE_HEADER_SIZE = 0x80
FIRST_CHUNK_OFFSET = 0x1000
CHUNK_SIZE = 0x10000
CHUNK_HEADER_SIZE = 0x200
RECORD_HEADER_SIZE = 0x18
# the record ends with a copy of its size
RECORD_TRAILER_SIZE = 0x4

FILE_FLAG_DIRTY = 0x1
FILE_FLAG_FULL = 0x2


def align8(value):
    return (value + 7) & ~7


class FileHeader(namedtuple('FileHeader',
                            ['first_chunk_number', 'last_chunk_number', 'next_record_id',
                             'header_size', 'minor_version', 'major_version',
                             'header_block_size', 'chunk_count', 'flags', 'checksum'])):
    __slots__ = ()

    def get_flags_text(self):
        """
        @rtype: str
        @return: one of `clean`, `dirty`, `full` or `unknown`.
        """
        if self.flags == 0:
            return "clean"
        elif self.flags == FILE_FLAG_DIRTY:
            return "dirty"
        elif self.flags == FILE_FLAG_FULL:
            return "full"
        else:
            return "unknown"


def parse_file_header(buf):
    """
    Parse the header at the start of an EVTX file.

    Args:
      buf (buffer): the file contents.

    Returns:
      FileHeader: the parsed header.

    Raises:
      SignatureMismatch: if the data does not start with the file magic.
      OffsetOutOfBounds: if the data is too short for a header.
    """
    span = ByteSpan(buf[:FILE_HEADER_SIZE])
    fields = span.unpack_struct("<8sQQQIHHHH76sII", 0)
    if fields[0] != EVTX_FILE_MAGIC:
        raise SignatureMismatch("bad file signature: %r" % (fields[0]))
    return FileHeader(*(fields[1:9] + fields[10:]))


class ChunkHeader(namedtuple('ChunkHeader',
                             ['first_record_number', 'last_record_number',
                              'first_record_id', 'last_record_id',
                              'header_size', 'last_record_offset', 'free_space_offset',
                              'data_checksum', 'flags', 'header_checksum',
                              'name_offsets', 'template_offsets'])):
    """
    The 512 byte header at the start of every chunk.

    Checksums are parsed but not verified.
    """
    __slots__ = ()

    @property
    def record_count(self):
        return self.last_record_id - self.first_record_id + 1


def parse_chunk_header(span):
    """
    Parse the chunk header at the start of the given chunk buffer.

    @type span: evtxdecode.binary.ByteSpan
    @rtype: ChunkHeader
    @raises SignatureMismatch: if the chunk magic is wrong.
    """
    fields = span.unpack_struct("<8sQQQQIIII64sII", 0)
    if fields[0] != EVTX_CHUNK_MAGIC:
        raise SignatureMismatch("bad chunk signature: %r" % (fields[0]))

    name_offsets = span.unpack_struct("<%dI" % (NUM_SHARED_NAMES), 0x80)
    template_offsets = span.unpack_struct("<%dI" % (NUM_SHARED_TEMPLATES), 0x180)
    return ChunkHeader(*(fields[1:9] + fields[10:] + (name_offsets, template_offsets)))


class RecordHeader(namedtuple('RecordHeader', ['offset', 'size', 'record_id', 'timestamp'])):
    """
    A record header at a chunk-relative offset.
    """
    __slots__ = ()

    @property
    def binxml_offset(self):
        return self.offset + RECORD_HEADER_SIZE

    @property
    def binxml_size(self):
        return self.size - RECORD_HEADER_SIZE - RECORD_TRAILER_SIZE

    @property
    def end(self):
        return self.offset + self.size


def parse_record_header(span, offset):
    """
    Parse the record header at the given chunk offset.

    Raises:
      SignatureMismatch: if the record magic is wrong.
      RecordTooSmall: if the declared size leaves no room for BinXML.
      OffsetOutOfBounds: if the header overruns the chunk.
    """
    magic, size, record_id, timestamp = span.unpack_struct("<IIQQ", offset)
    if magic != EVTX_RECORD_MAGIC:
        raise SignatureMismatch("bad record signature at 0x%x: 0x%08x" % (offset, magic))

    if size <= RECORD_HEADER_SIZE + RECORD_TRAILER_SIZE:
        raise RecordTooSmall("record at 0x%x declares size 0x%x" % (offset, size))

    return RecordHeader(offset, size, record_id, timestamp)


class DecodedRecord(namedtuple('DecodedRecord',
                               ['offset', 'record_id', 'timestamp', 'tree', 'error', 'chunk_offset'])):
    """
    The result of decoding one record.

    `offset` is relative to the chunk at file offset `chunk_offset`.
    `tree` holds whatever was decoded before `error`, if any, was raised.
    """
    __slots__ = ()

    @property
    def eid(self):
        return evtxdecode.utils.get_eid(self.tree)

    def is_complete(self):
        return self.error is None


class Chunk(object):
    """
    One 64KiB chunk and its records.

    Args:
      buf (buffer): the file contents.
      offset (int): file offset of the chunk.

    Raises:
      SignatureMismatch: if the chunk magic is wrong.
    """

    def __init__(self, buf, offset=0):
        super(Chunk, self).__init__()
        self.offset = offset
        self.span = ByteSpan(buf[offset:offset + CHUNK_SIZE])
        self.header = parse_chunk_header(self.span)
        self.names = NameCache()

    def __repr__(self):
        return "Chunk(offset=0x%x)" % (self.offset)

    def record_headers(self):
        """
        Generate the headers of the records in this chunk, in order.

        The scan stops at the first record with a bad signature or size,
          since the position of the following record cannot be trusted.

        Returns:
          iterable[RecordHeader]: the record headers.
        """
        header = self.header
        if header.first_record_id == 0:
            logger.debug("chunk at 0x%x has no records", self.offset)
            return

        limit = min(header.free_space_offset, len(self.span))
        offset = CHUNK_HEADER_SIZE
        for _ in range(header.record_count):
            if offset >= limit:
                break

            try:
                record = parse_record_header(self.span, offset)
            except (SignatureMismatch, RecordTooSmall, OffsetOutOfBounds) as e:
                logger.info("stopping scan of chunk at 0x%x: %s", self.offset, str(e))
                break

            yield record
            offset += align8(record.size)

    def decode_record(self, record, max_depth=MAX_RECURSION_DEPTH):
        """
        Decode one record into an XmlTree.

        Decode failures are logged and attached to the result, along
          with whatever part of the tree was built before the failure.

        Args:
          record (RecordHeader): the record to decode.
          max_depth (int): maximum template/embedded BinXML nesting.

        Returns:
          DecodedRecord: the decoded record.
        """
        tree = XmlTree()
        error = None

        try:
            timestamp = evtxdecode.utils.filetime_to_iso(record.timestamp)
        except ValueError as e:
            logger.debug("record at 0x%x: %s", record.offset, str(e))
            timestamp = None

        decoder = BinXmlDecoder(self.span, self.names, tree, max_depth=max_depth)
        try:
            decoder.decode(record.binxml_offset, record.binxml_size)
        except ParseError as e:
            logger.info("failed to decode record at 0x%x: %s", self.offset + record.offset, str(e))
            error = e

        if record.end <= len(self.span):
            size_copy = self.span.unpack_dword(record.end - RECORD_TRAILER_SIZE)
            if size_copy != record.size:
                logger.debug("record at 0x%x: size copy 0x%x differs from size 0x%x",
                             record.offset, size_copy, record.size)

        return DecodedRecord(record.offset, record.record_id, timestamp, tree, error, self.offset)

    def records(self, max_depth=MAX_RECURSION_DEPTH):
        """
        Decode the records of this chunk, in order.

        The chunk's name cache is cleared before the first and after the
          last record.

        Returns:
          iterable[DecodedRecord]: the decoded records.
        """
        self.names.clear()
        try:
            for record in self.record_headers():
                yield self.decode_record(record, max_depth=max_depth)
        finally:
            self.names.clear()


def _is_empty(buf, offset):
    return bytes(buf[offset:offset + CHUNK_SIZE]).count(b"\x00") == CHUNK_SIZE


def iter_chunks(buf):
    """
    Generate the chunks of an EVTX file.

    Chunks with a bad signature are skipped; chunks sit at fixed offsets,
      so the ones after it can still be read.

    Args:
      buf (buffer): the file contents.

    Returns:
      iterable[Chunk]: the chunks, in file order.

    Raises:
      SignatureMismatch: if the file header is invalid.
    """
    header = parse_file_header(buf)
    for i in range(header.chunk_count):
        offset = FIRST_CHUNK_OFFSET + (i * CHUNK_SIZE)
        if offset + CHUNK_SIZE > len(buf):
            logger.warning("chunk %d at 0x%x extends past the end of the file", i, offset)
            break

        try:
            chunk = Chunk(buf, offset)
        except SignatureMismatch as e:
            if _is_empty(buf, offset):
                logger.debug("skipping empty chunk %d at 0x%x", i, offset)
            else:
                logger.warning("skipping chunk %d at 0x%x: %s", i, offset, str(e))
            continue

        yield chunk
