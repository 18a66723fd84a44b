import struct
import logging
import binascii
from collections import namedtuple

import evtxdecode.utils
from evtxdecode.errors import OffsetOutOfBounds, SubstitutionIndexError


logger = logging.getLogger(__name__)


class VALUE_TYPES:
    NullType = 0x00
    WStringType = 0x01
    StringType = 0x02
    SignedByteType = 0x03
    UnsignedByteType = 0x04
    SignedWordType = 0x05
    UnsignedWordType = 0x06
    SignedDwordType = 0x07
    UnsignedDwordType = 0x08
    SignedQwordType = 0x09
    UnsignedQwordType = 0x0A
    FloatType = 0x0B
    DoubleType = 0x0C
    BooleanType = 0x0D
    BinaryType = 0x0E
    GuidType = 0x0F
    SizeType = 0x10
    FiletimeType = 0x11
    SystemtimeType = 0x12
    SidType = 0x13
    Hex32Type = 0x14
    Hex64Type = 0x15
    EvtHandleType = 0x20
    BXmlType = 0x21
    EvtXmlType = 0x23
    ArrayFlag = 0x80


TYPE_NAMES = {
    0x00: "NullType",
    0x01: "Utf16le",
    0x02: "AnsiString",
    0x03: "Int8Type",
    0x04: "Uint8Type",
    0x05: "Int16Type",
    0x06: "Uint16Type",
    0x07: "Int32Type",
    0x08: "Uint32Type",
    0x09: "Int64Type",
    0x0A: "Uint64Type",
    0x0B: "Real32Type",
    0x0C: "Real64Type",
    0x0D: "BoolType",
    0x0E: "BinaryType",
    0x0F: "GuidType",
    0x10: "SizeTType",
    0x11: "FileTime",
    0x12: "SysTime",
    0x13: "SidType",
    0x14: "HexInt32",
    0x15: "HexInt64",
    0x20: "EvtHandle",
    0x21: "BinXmlType",
    0x23: "EvtXml",
}


def get_type_name(type_):
    if type_ & VALUE_TYPES.ArrayFlag:
        return "ArrayType"
    return TYPE_NAMES.get(type_, "UnknownType")


def format_placeholder(type_, size):
    return "[%s 0x%02x, size %d]" % (get_type_name(type_), type_, size)


ValueSlot = namedtuple('ValueSlot', ['index', 'size', 'type', 'offset'])


class ValueTable(object):
    """
    The substitution values of one template instance.

    On disk: a dword count, then `count` descriptors of
      (size: word, type: word, only the low byte significant), then the
      value data back to back in descriptor order.
    """

    def __init__(self, offset, slots, end):
        super(ValueTable, self).__init__()
        self.offset = offset
        self.slots = slots
        # chunk offset just past the last value
        self.end = end

    def __len__(self):
        return len(self.slots)

    def __iter__(self):
        return iter(self.slots)

    def __getitem__(self, index):
        if not (0 <= index < len(self.slots)):
            raise SubstitutionIndexError("substitution index %d out of range (%d values)" %
                                         (index, len(self.slots)))
        return self.slots[index]

    def get(self, index):
        if 0 <= index < len(self.slots):
            return self.slots[index]
        return None

    @classmethod
    def parse(cls, span, offset, limit=None):
        """
        Parse the value table that starts at the given chunk offset.

        Args:
          span (evtxdecode.binary.ByteSpan): the chunk buffer.
          offset (int): chunk-relative offset of the `count` field.
          limit (int): the table and its data must end at or before this
            chunk offset. defaults to the end of the chunk.

        Returns:
          ValueTable: the parsed table.

        Raises:
          OffsetOutOfBounds: if the descriptors or the cumulative value
            data would extend past the limit.
        """
        if limit is None:
            limit = len(span)

        count = span.unpack_dword(offset)
        descriptors = offset + 4
        value_offset = descriptors + (count * 4)
        if value_offset > limit:
            raise OffsetOutOfBounds("value table at 0x%x: %d descriptors overrun 0x%x" %
                                    (offset, count, limit))

        slots = []
        for i in range(count):
            size, type_ = span.unpack_struct("<HH", descriptors + (i * 4))
            slots.append(ValueSlot(i, size, type_ & 0xFF, value_offset))
            value_offset += size

        if value_offset > limit:
            raise OffsetOutOfBounds("value table at 0x%x: value data overruns 0x%x" %
                                    (offset, limit))

        logger.debug("0x%x: value table with %d values, ends at 0x%x", offset, count, value_offset)
        return cls(offset, slots, value_offset)


INTEGER_FORMATS = {
    # observed size -> (signed, unsigned)
    1: ("<b", "<B"),
    2: ("<h", "<H"),
    4: ("<i", "<I"),
    8: ("<q", "<Q"),
}

SIGNED_TYPES = set([
    VALUE_TYPES.SignedByteType,
    VALUE_TYPES.SignedWordType,
    VALUE_TYPES.SignedDwordType,
    VALUE_TYPES.SignedQwordType,
])


def _render_integer(type_, data):
    formats = INTEGER_FORMATS.get(len(data))
    if formats is None:
        return None
    fmt = formats[0] if type_ in SIGNED_TYPES else formats[1]
    return str(struct.unpack(fmt, data)[0])


def format_guid(data):
    """
    Format 16 bytes as a registry-style GUID.

    The first three fields are little-endian, the last eight bytes are
      rendered in storage order.

    @type data: bytes
    @rtype: str
    """
    data1, data2, data3 = struct.unpack_from("<IHH", data, 0)
    data4 = binascii.hexlify(data[8:10]).decode("ascii").upper()
    data5 = binascii.hexlify(data[10:16]).decode("ascii").upper()
    return "{%08X-%04X-%04X-%s-%s}" % (data1, data2, data3, data4, data5)


def format_sid(data):
    """
    Format a binary security identifier as `S-R-A-S1-S2...`.

    @type data: bytes
    @rtype: str, or None if the data is too short for the declared
      number of sub authorities.
    """
    if len(data) < 8:
        return None
    revision = data[0]
    count = data[1]
    if len(data) < 8 + (4 * count):
        return None
    authority = int(binascii.hexlify(data[2:8]), 16)
    parts = ["S-%d-%d" % (revision, authority)]
    for i in range(count):
        parts.append("%d" % struct.unpack_from("<I", data, 8 + (4 * i))[0])
    return "-".join(parts)


def format_hex(data):
    """
    Format little-endian bytes as `0x` followed by two hex digits per byte.
    """
    return "0x" + binascii.hexlify(data[::-1]).decode("ascii")


def render_value(type_, data):
    """
    Render the bytes of one substitution value as text.

    Integer widths follow the observed size of the value, not the
      canonical width of the type. Embedded BinXML (0x21) is handled by
      the token stream decoder and never reaches this function.

    Args:
      type_ (int): the value type, low byte only.
      data (bytes): the raw value bytes.

    Returns:
      str: the rendered value, or a placeholder naming the type and size
        when the type is unknown, an array, or inconsistent with the size.
    """
    size = len(data)
    ret = None

    if type_ & VALUE_TYPES.ArrayFlag:
        logger.debug("array value type 0x%02x not rendered", type_)

    elif type_ == VALUE_TYPES.NullType:
        ret = ""

    elif size == 0:
        # explicitly empty, distinct from NullType
        ret = ""

    elif type_ == VALUE_TYPES.WStringType:
        ret = evtxdecode.utils.decode_utf16(data)

    elif type_ == VALUE_TYPES.StringType:
        ret = data.decode("utf-8", "replace").rstrip("\x00")

    elif VALUE_TYPES.SignedByteType <= type_ <= VALUE_TYPES.UnsignedQwordType:
        ret = _render_integer(type_, data)

    elif type_ == VALUE_TYPES.FloatType and size == 4:
        ret = repr(struct.unpack("<f", data)[0])

    elif type_ == VALUE_TYPES.DoubleType and size == 8:
        ret = repr(struct.unpack("<d", data)[0])

    elif type_ == VALUE_TYPES.BooleanType:
        value = _render_integer(type_, data)
        if value is not None:
            ret = "true" if int(value) != 0 else "false"

    elif type_ == VALUE_TYPES.BinaryType:
        ret = binascii.hexlify(data).decode("ascii").upper()

    elif type_ == VALUE_TYPES.GuidType and size == 16:
        ret = format_guid(data)

    elif type_ == VALUE_TYPES.SizeType and size in (4, 8):
        ret = "0x%x" % (int(binascii.hexlify(data[::-1]), 16))

    elif type_ == VALUE_TYPES.FiletimeType and size == 8:
        try:
            ret = evtxdecode.utils.filetime_to_iso(struct.unpack("<Q", data)[0])
        except ValueError as e:
            logger.debug("bad FILETIME value: %s", str(e))

    elif type_ == VALUE_TYPES.SystemtimeType and size == 16:
        try:
            ret = evtxdecode.utils.systemtime_to_iso(struct.unpack("<8H", data))
        except ValueError as e:
            logger.debug("bad SYSTEMTIME value: %s", str(e))

    elif type_ == VALUE_TYPES.SidType:
        ret = format_sid(data)

    elif type_ in (VALUE_TYPES.Hex32Type, VALUE_TYPES.Hex64Type):
        ret = format_hex(data)

    else:
        logger.warning("unrecognized value type 0x%02x (size %d)", type_, size)

    if ret is None:
        return format_placeholder(type_, size)
    return ret
