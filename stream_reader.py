import struct
from collections import namedtuple

# ==============================================================================
# 1. Errors
# ==============================================================================

class GrdError(Exception):
    """Base class for everything the .grd decoder raises."""


class TruncatedInputError(GrdError):
    def __init__(self, offset, wanted, length):
        super().__init__(f"Truncated input: need {wanted} bytes at 0x{offset:08X}, buffer is {length} bytes")
        self.offset = offset
        self.wanted = wanted
        self.length = length


class MalformedEntryError(GrdError):
    """A handler met bytes it cannot turn into a value."""


class UnsupportedPaletteError(GrdError):
    def __init__(self, palette):
        super().__init__(f"The color palette {palette!r} is not supported")
        self.palette = palette


# ==============================================================================
# 2. Diagnostic log sinks
# ==============================================================================

LogEvent = namedtuple("LogEvent", "depth offset key type_tag args")


class PrintLog:
    """Console sink, one line per decoded entry, indented by nesting depth."""

    def __init__(self, indent_str="    "):
        self.indent_str = indent_str

    def __call__(self, depth, offset, key, type_tag, *args):
        prefix = self.indent_str * depth
        shown = ", ".join(str(a) for a in args if str(a) != "")
        print(f"[0x{offset:08X}] {prefix}{key}({type_tag}) {shown}")


class RecordingLog:
    """Keeps every event in memory; handy for tests and tooling."""

    def __init__(self):
        self.events = []

    def __call__(self, depth, offset, key, type_tag, *args):
        self.events.append(LogEvent(depth, offset, key, type_tag, args))

    def of_type(self, type_tag):
        return [e for e in self.events if e.type_tag == type_tag]


# ==============================================================================
# 3. Stream reader (ByteCursor)
# ==============================================================================

class GrdStreamReader:
    """Big-endian reader over an in-memory buffer.

    ``read_*`` methods consume bytes, ``peek_*`` methods leave the cursor
    where it is. Every access is bounds checked and raises
    :class:`TruncatedInputError` instead of returning a short slice.
    """

    def __init__(self, data, offset=0):
        self.data = data
        self.cursor = offset
        self.length = len(data)

    def is_eof(self): return self.cursor >= self.length
    def tell(self): return self.cursor
    def seek(self, offset): self.cursor = offset

    def _require(self, size, at=None):
        start = self.cursor if at is None else at
        if start < 0 or start + size > self.length:
            raise TruncatedInputError(start, size, self.length)
        return start

    def advance(self, length=4):
        self._require(length)
        self.cursor += length

    def peek_bytes(self, length, at=None):
        start = self._require(length, at)
        return self.data[start:start + length]

    def peek_u4(self, at=None):
        return struct.unpack('>I', self.peek_bytes(4, at))[0]

    def peek_ostype(self, at=None):
        # latin-1 maps every byte, so misaligned reads still yield a tag
        return self.peek_bytes(4, at).decode('latin-1')

    def read_bytes(self, length):
        raw = self.peek_bytes(length)
        self.cursor += length
        return raw

    def read_u1(self):
        return self.read_bytes(1)[0]

    def read_u4(self):
        return struct.unpack('>I', self.read_bytes(4))[0]

    def read_double(self):
        return struct.unpack('>d', self.read_bytes(8))[0]

    def read_ostype(self):
        return self.read_bytes(4).decode('latin-1')

    def read_str(self, length):
        return self.read_bytes(length).decode('latin-1').strip('\x00 ')

    def read_utf16(self, char_count, errors='strict'):
        start = self.cursor
        raw = self.read_bytes(char_count * 2)
        try:
            val = raw.decode('utf-16-be', errors=errors)
        except UnicodeDecodeError as e:
            raise MalformedEntryError(f"Bad UTF-16 text at 0x{start:08X}: {e}") from e
        return val.strip('\x00').strip()
