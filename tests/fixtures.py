import struct

import pytest

import evtxdecode.chunks
from evtxdecode.values import VALUE_TYPES


EVENT_NS = "http://schemas.microsoft.com/win/2004/08/events/event"

EPOCH_FILETIME = 116444736000000000
# 1970-01-02T00:00:00.000000500Z
TIMESTAMP = EPOCH_FILETIME + (86400 * 10000000) + 5


def name_entry(name):
    return struct.pack("<IHH", 0, 0, len(name)) + name.encode("utf-16le") + b"\x00\x00"


def wstring(text):
    return text.encode("utf-16le")


class StreamBuilder(object):
    """
    Writes BinXML tokens that will live at chunk offset `base`.

    `names` maps element/attribute names to the chunk offset of their
      name entry; a name not yet in it is written inline at its canonical
      position and registered.
    """

    def __init__(self, base, names):
        super(StreamBuilder, self).__init__()
        self.base = base
        self.names = names
        self.buf = bytearray()

    @property
    def pos(self):
        return self.base + len(self.buf)

    def raw(self, data):
        self.buf += data
        return self

    def name_ref(self, name):
        # call with the cursor at the name offset field
        field = self.pos
        if name in self.names:
            self.buf += struct.pack("<I", self.names[name])
            return
        offset = field + 4
        self.names[name] = offset
        self.buf += struct.pack("<I", offset)
        self.buf += name_entry(name)

    def fragment_header(self):
        return self.raw(b"\x0f\x01\x01\x00")

    def open_element(self, name, attributes=False):
        self.buf += struct.pack("<BHI", 0x41 if attributes else 0x01, 0xFFFF, 0)
        self.name_ref(name)
        if attributes:
            self.buf += struct.pack("<I", 0)
        return self

    def close_start(self):
        return self.raw(b"\x02")

    def close_empty(self):
        return self.raw(b"\x03")

    def end_element(self):
        return self.raw(b"\x04")

    def attribute(self, name, more=False):
        self.buf += b"\x46" if more else b"\x06"
        self.name_ref(name)
        return self

    def value(self, text, more=False):
        self.buf += struct.pack("<BBH", 0x45 if more else 0x05, VALUE_TYPES.WStringType, len(text))
        self.buf += wstring(text)
        return self

    def null_value(self):
        return self.raw(struct.pack("<BB", 0x05, VALUE_TYPES.NullType))

    def substitution(self, index, type_, optional=False):
        return self.raw(struct.pack("<BHB", 0x0E if optional else 0x0D, index, type_))

    def template_instance(self, template_id, template_offset):
        return self.raw(struct.pack("<BBII", 0x0C, 0x01, template_id, template_offset))

    def eof(self):
        return self.raw(b"\x00")

    def element(self, name, text):
        return self.open_element(name).close_start().value(text).end_element()


def value_table(base, values):
    """
    Serialize a value table that will live at chunk offset `base`.

    Args:
      values (list[tuple[int, bytes or callable]]): (type, data) pairs;
        `data` may be a callable taking the chunk offset at which the
        value will be stored, used for embedded BinXML.
    """
    data_offset = base + 4 + (4 * len(values))
    descriptors = bytearray()
    data = bytearray()
    for type_, value in values:
        if callable(value):
            value = value(data_offset + len(data))
        descriptors += struct.pack("<HH", len(value), type_)
        data += value
    return struct.pack("<I", len(values)) + bytes(descriptors) + bytes(data)


def make_binxml(base, names, templates, template_id, body, values):
    """
    Serialize a BinXML fragment holding one template instance.

    The template definition is written inline the first time
      `template_id` is used in the chunk and referenced afterwards.

    Args:
      base (int): chunk offset of the fragment.
      names (dict[str, int]): the chunk's name offsets.
      templates (dict[int, int]): the chunk's template definition offsets.
      template_id (int): identifier of the template.
      body (callable): writes the template body tokens to a StreamBuilder.
      values (list): substitution values, see `value_table`.
    """
    b = StreamBuilder(base, names)
    b.fragment_header()
    instance = b.pos

    if template_id in templates:
        b.template_instance(template_id, templates[template_id])
    else:
        template_offset = instance + 10
        templates[template_id] = template_offset
        b.template_instance(template_id, template_offset)

        tb = StreamBuilder(template_offset + 0x18, names)
        body(tb)
        b.raw(struct.pack("<II12sI", 0, template_id, b"\x11" * 12, len(tb.buf)))
        b.raw(bytes(tb.buf))

    b.raw(value_table(b.pos, values))
    return bytes(b.buf)


def make_record(base, record_id, binxml, timestamp=TIMESTAMP, size=None):
    if size is None:
        size = 0x18 + len(binxml) + 4
    return struct.pack("<IIQQ", 0x2a2a, size, record_id, timestamp) + binxml + struct.pack("<I", size)


class ChunkBuilder(object):
    """
    Lays out records in a chunk and serializes it with a matching header.
    """

    def __init__(self):
        super(ChunkBuilder, self).__init__()
        self.names = {}
        self.templates = {}
        self.buf = bytearray(evtxdecode.chunks.CHUNK_HEADER_SIZE)
        self.record_ids = []
        self.last_record_offset = 0

    @property
    def pos(self):
        return len(self.buf)

    def add_record(self, record_id, body, values, template_id=1, timestamp=TIMESTAMP, size=None):
        base = self.pos
        binxml = make_binxml(base + 0x18, self.names, self.templates, template_id, body, values)
        self.buf += make_record(base, record_id, binxml, timestamp=timestamp, size=size)
        while len(self.buf) % 8:
            self.buf += b"\x00"
        self.record_ids.append(record_id)
        self.last_record_offset = base
        return base

    def add_raw(self, data):
        base = self.pos
        self.buf += data
        return base

    def build(self, first_record_id=None, last_record_id=None, free_space_offset=None):
        if first_record_id is None:
            first_record_id = self.record_ids[0] if self.record_ids else 0
        if last_record_id is None:
            last_record_id = self.record_ids[-1] if self.record_ids else 0
        if free_space_offset is None:
            free_space_offset = self.pos

        header = struct.pack("<8sQQQQIIII64sII",
                             evtxdecode.chunks.EVTX_CHUNK_MAGIC,
                             first_record_id, last_record_id,
                             first_record_id, last_record_id,
                             0x80, self.last_record_offset, free_space_offset,
                             0, b"\x00" * 64, 0, 0)

        name_offsets = [0] * 64
        for i, offset in enumerate(sorted(self.names.values())[:64]):
            name_offsets[i] = offset
        template_offsets = [0] * 32
        for i, offset in enumerate(sorted(self.templates.values())[:32]):
            template_offsets[i] = offset

        header += struct.pack("<64I", *name_offsets)
        header += struct.pack("<32I", *template_offsets)

        buf = bytearray(self.buf)
        buf[:len(header)] = header
        buf += b"\x00" * (evtxdecode.chunks.CHUNK_SIZE - len(buf))
        return bytes(buf)


def make_file(chunks, chunk_count=None, flags=0):
    if chunk_count is None:
        chunk_count = len(chunks)
    header = struct.pack("<8sQQQIHHHH76sII",
                         evtxdecode.chunks.EVTX_FILE_MAGIC,
                         0, max(chunk_count - 1, 0), 1,
                         0x80, 1, 3, 0x1000, chunk_count,
                         b"\x00" * 76, flags, 0)
    header += b"\x00" * (evtxdecode.chunks.FIRST_CHUNK_OFFSET - len(header))
    return header + b"".join(chunks)


def event_body(b):
    """
    A small Security-style event:

        <Event xmlns="...">
          <System>
            <Provider Name="%0" />
            <EventID>%1</EventID>
            <TimeCreated SystemTime="%2" />
            <Security UserID="%3?" />
          </System>
          <EventData>
            <Data Name="LogonType">%4</Data>
            <Data Name="TargetUserSid">%5</Data>
          </EventData>
        </Event>
    """
    b.fragment_header()
    b.open_element("Event", attributes=True)
    b.attribute("xmlns").value(EVENT_NS)
    b.close_start()

    b.open_element("System").close_start()
    b.open_element("Provider", attributes=True)
    b.attribute("Name").substitution(0, VALUE_TYPES.WStringType)
    b.close_empty()
    b.open_element("EventID").close_start()
    b.substitution(1, VALUE_TYPES.UnsignedWordType)
    b.end_element()
    b.open_element("TimeCreated", attributes=True)
    b.attribute("SystemTime").substitution(2, VALUE_TYPES.FiletimeType)
    b.close_empty()
    b.open_element("Security", attributes=True)
    b.attribute("UserID").substitution(3, VALUE_TYPES.SidType, optional=True)
    b.close_empty()
    b.end_element()

    b.open_element("EventData").close_start()
    b.open_element("Data", attributes=True)
    b.attribute("Name").value("LogonType")
    b.close_start()
    b.substitution(4, VALUE_TYPES.WStringType)
    b.end_element()
    b.open_element("Data", attributes=True)
    b.attribute("Name").value("TargetUserSid")
    b.close_start()
    b.substitution(5, VALUE_TYPES.SidType)
    b.end_element()
    b.end_element()

    b.end_element()
    b.eof()


SID_BYTES = bytes(bytearray([0x01, 0x02, 0x00, 0x00, 0x00, 0x00, 0x00, 0x05,
                             0x15, 0x00, 0x00, 0x00, 0x02, 0x00, 0x00, 0x00]))


def event_values(eid=4624, provider="Microsoft-Windows-Security-Auditing", logon_type="%%1843",
                 user_sid=None):
    if user_sid is None:
        user = (VALUE_TYPES.NullType, b"")
    else:
        user = (VALUE_TYPES.SidType, user_sid)

    return [
        (VALUE_TYPES.WStringType, wstring(provider)),
        (VALUE_TYPES.UnsignedWordType, struct.pack("<H", eid)),
        (VALUE_TYPES.FiletimeType, struct.pack("<Q", EPOCH_FILETIME)),
        user,
        (VALUE_TYPES.WStringType, wstring(logon_type)),
        (VALUE_TYPES.SidType, SID_BYTES),
    ]


@pytest.fixture
def event_chunk():
    cb = ChunkBuilder()
    cb.add_record(1, event_body, event_values(eid=4624))
    cb.add_record(2, event_body, event_values(eid=4625, user_sid=SID_BYTES))
    cb.add_record(3, event_body, event_values(eid=4624, logon_type="%%1842"))
    return cb.build()


@pytest.fixture
def event_file(event_chunk):
    return make_file([event_chunk])


@pytest.fixture
def event_path(tmpdir, event_file):
    path = tmpdir.join("Security.evtx")
    path.write_binary(event_file)
    return str(path)
