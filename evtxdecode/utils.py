import mmap
import logging
import datetime

from lxml import etree


logger = logging.getLogger(__name__)


# FILETIME ticks (100ns) between 1601-01-01 and 1970-01-01
FILETIME_EPOCH_DELTA = 116444736000000000
TICKS_PER_SECOND = 10000000
UNIX_EPOCH = datetime.datetime(1970, 1, 1)


def decode_utf16(data):
    """
    Decode UTF-16LE bytes into text, dropping trailing NULs.

    @type data: bytes
    @rtype: str
    """
    if len(data) % 2:
        data = data[:-1]
    return data.decode("utf-16le", "replace").rstrip("\x00")


def _format_iso(dt, nanoseconds):
    return "%04d-%02d-%02dT%02d:%02d:%02d.%09dZ" % (
        dt.year, dt.month, dt.day,
        dt.hour, dt.minute, dt.second,
        nanoseconds)


def filetime_to_iso(filetime):
    """
    Format a Windows FILETIME as ISO-8601 UTC with nanosecond precision.

    Args:
      filetime (int): 100ns ticks since 1601-01-01T00:00:00Z.

    Returns:
      str: eg. `1970-01-01T00:00:00.000000000Z`.

    Raises:
      ValueError: if the value is outside the range of a datetime.
    """
    ticks = filetime - FILETIME_EPOCH_DELTA
    seconds, remainder = divmod(ticks, TICKS_PER_SECOND)
    try:
        dt = UNIX_EPOCH + datetime.timedelta(seconds=seconds)
    except OverflowError:
        raise ValueError("FILETIME out of range: 0x%x" % (filetime))
    return _format_iso(dt, remainder * 100)


def systemtime_to_iso(parts):
    """
    Format a SYSTEMTIME structure as ISO-8601 UTC.

    Args:
      parts (tuple[int]): the eight words year, month, day-of-week, day,
        hour, minute, second, milliseconds.

    Returns:
      str: the formatted timestamp.

    Raises:
      ValueError: if the fields do not describe a valid date.
    """
    year, month, _, day, hour, minute, second, milliseconds = parts
    dt = datetime.datetime(year, month, day, hour, minute, second)
    return _format_iso(dt, milliseconds * 1000000)


def to_lxml(record_xml):
    """
    Convert an XML string to an Etree element.

    @type record_xml: str
    @rtype: etree.Element
    """
    if "<?xml" not in record_xml:
        return etree.fromstring(
            "<?xml version=\"1.0\" standalone=\"yes\" ?>%s" % record_xml)
    else:
        return etree.fromstring(record_xml)


def get_eid(tree):
    """
    Given a decoded record tree, return the EID of the record.

    Args:
      tree (evtxdecode.xmltree.XmlTree)

    Returns:
      int: the event ID of the record, or None if it has none.
    """
    if tree.root is None:
        return None

    system = tree.find_child(tree.root, "System")
    if system is None:
        return None

    eid = tree.find_child(system, "EventID")
    if eid is None or not eid.text:
        return None

    try:
        return int(eid.text)
    except ValueError:
        logger.debug("non-numeric EventID: %r", eid.text)
        return None


class Mmap(object):
    """
    Convenience class for opening a read-only memory map for a file path.
    """

    def __init__(self, filename):
        super(Mmap, self).__init__()
        self._filename = filename
        self._f = None
        self._mmap = None

    def __enter__(self):
        self._f = open(self._filename, "rb")
        self._mmap = mmap.mmap(self._f.fileno(), 0, access=mmap.ACCESS_READ)
        return self._mmap

    def __exit__(self, type, value, traceback):
        self._mmap.close()
        self._f.close()
