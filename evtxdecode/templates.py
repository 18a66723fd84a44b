import logging
from collections import namedtuple

from evtxdecode.errors import OffsetOutOfBounds


logger = logging.getLogger(__name__)


TEMPLATE_HEADER_SIZE = 0x18
NUM_SHARED_TEMPLATES = 32


class TemplateDefinition(namedtuple('TemplateDefinition',
                                    ['offset', 'next_offset', 'template_id', 'guid', 'data_size'])):
    """
    A template definition header found at `offset` in a chunk.

    The BinXML body of the template follows the 24 byte header and is
      `data_size` bytes long.
    """
    __slots__ = ()

    @property
    def body_offset(self):
        return self.offset + TEMPLATE_HEADER_SIZE

    @property
    def body_end(self):
        return self.body_offset + self.data_size

    def get_id(self):
        """
        @rtype: str
        @return: a short printable identifier, eg. `0x00001234-0x1a0`.
        """
        return "0x%08x-0x%x" % (self.template_id, self.offset)


def read_template_definition(span, offset):
    """
    Parse the template definition header at the given chunk offset.

    Args:
      span (evtxdecode.binary.ByteSpan): the chunk buffer.
      offset (int): chunk-relative offset of the definition header.

    Returns:
      TemplateDefinition: the parsed header.

    Raises:
      OffsetOutOfBounds: if the header or the body it describes
        overruns the chunk.
    """
    next_offset, template_id, guid, data_size = span.unpack_struct("<II12sI", offset)
    template = TemplateDefinition(offset, next_offset, template_id, guid, data_size)
    span.check(template.body_offset, data_size)
    return template


def iter_chunk_templates(span, header):
    """
    Walk the chunk's shared template table, following `next_offset` chains.

    Args:
      span (evtxdecode.binary.ByteSpan): the chunk buffer.
      header (evtxdecode.chunks.ChunkHeader): the parsed chunk header.

    Returns:
      iterable[tuple[int, int, TemplateDefinition]]: (slot index, offset,
        definition); the slot index is None for chained definitions.
    """
    seen = set([])
    for index, offset in enumerate(header.template_offsets):
        slot = index
        while offset != 0 and offset not in seen:
            seen.add(offset)
            try:
                template = read_template_definition(span, offset)
            except OffsetOutOfBounds as e:
                logger.warning("bad shared template entry at 0x%x: %s", offset, str(e))
                break
            yield slot, offset, template
            slot = None
            offset = template.next_offset
