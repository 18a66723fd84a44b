import struct

from evtxdecode.errors import OffsetOutOfBounds



class ByteSpan(object):
    """
    Bounds-checked little-endian reads over a chunk buffer.

    All offsets are relative to the start of the buffer. Every read
    validates `offset + width <= len(buf)` before touching the data and
    raises OffsetOutOfBounds otherwise, so no code path reads outside
    the chunk even when the offsets come from corrupt data.
    """

    def __init__(self, buf):
        super(ByteSpan, self).__init__()
        self._buf = bytes(buf)

    def __len__(self):
        return len(self._buf)

    def __repr__(self):
        return "ByteSpan(size=0x%x)" % (len(self._buf))

    def check(self, offset, length):
        """
        Ensure that the range [offset, offset + length) lies within the buffer.

        Args:
          offset (int): chunk-relative start of the range.
          length (int): number of bytes in the range.

        Raises:
          OffsetOutOfBounds: if any part of the range is outside the buffer.
        """
        if offset < 0 or length < 0 or offset + length > len(self._buf):
            raise OffsetOutOfBounds("read of 0x%x bytes at 0x%x overruns 0x%x byte buffer" %
                                    (length, offset, len(self._buf)))

    def _unpack(self, fmt, offset):
        self.check(offset, struct.calcsize(fmt))
        return struct.unpack_from(fmt, self._buf, offset)[0]

    def unpack_byte(self, offset):
        return self._unpack("<B", offset)

    def unpack_word(self, offset):
        return self._unpack("<H", offset)

    def unpack_dword(self, offset):
        return self._unpack("<I", offset)

    def unpack_qword(self, offset):
        return self._unpack("<Q", offset)

    def unpack_struct(self, fmt, offset):
        """
        Unpack a whole struct format at the given offset.

        Returns:
          tuple: the unpacked fields.
        """
        self.check(offset, struct.calcsize(fmt))
        return struct.unpack_from(fmt, self._buf, offset)

    def unpack_binary(self, offset, length):
        self.check(offset, length)
        return self._buf[offset:offset + length]

    def unpack_wstring(self, offset, num_chars):
        """
        Decode `num_chars` UTF-16LE code units at the given offset.

        Returns:
          str: the decoded text, unpaired surrogates replaced.
        """
        data = self.unpack_binary(offset, num_chars * 2)
        return data.decode("utf-16le", "replace")

    def find_pair(self, first, second, offset, end):
        """
        Find the first position in [offset, end) where `first` is followed by `second`.

        Returns:
          int: the position, or -1 when the pair does not occur.
        """
        end = min(end, len(self._buf) - 1)
        for i in range(max(offset, 0), end):
            if self._buf[i] == first and self._buf[i + 1] == second:
                return i
        return -1
