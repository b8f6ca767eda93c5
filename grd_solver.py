import argparse
import json
import os
import re
import sys
from enum import Enum

from gradient_map import COLOR_TERMS, GradientAssembler, RawGradient
from stream_reader import GrdError, GrdStreamReader, MalformedEntryError, PrintLog, TruncatedInputError

HEADER_SIZE = 28
KEY_LENGTH_LIMIT = 256
DEFAULT_TAG_LENGTH = 4
DESC_SKIP = 26


def _clean(tag):
    return tag.strip('\x00 \t\r\n')


class TypeTag(Enum):
    OBJECT = 'Objc'
    LIST = 'VlLs'
    TEXT = 'TEXT'
    UNIT_FLOAT = 'UntF'
    BOOLEAN = 'bool'
    INTEGER = 'long'
    DOUBLE = 'doub'
    ENUM = 'enum'
    RAW_DATA = 'tdta'
    PATTERN = 'patt'
    DESCRIPTOR = 'desc'

    @classmethod
    def lookup(cls, raw):
        try:
            return cls(raw)
        except ValueError:
            return None


# ==============================================================================
# 1. Parse context
# ==============================================================================

class ParseContext:
    """Mutable state of one decode session.

    ``current_object`` is the key of the most recently entered container. It
    is a single value, not a stack: leaving a nested container does not
    restore the parent's key.
    """

    def __init__(self):
        self.current_object = ""
        self.gradients = []
        self.current_gradient = None
        self.current_color = {}
        self.current_opacity = {}

    def _active_gradient(self):
        if self.current_gradient is None:
            self.current_gradient = RawGradient()
        return self.current_gradient

    def enter_object(self, key, obj_type):
        self.current_object = key
        if key == 'Grad':
            self.flush_gradient()
            self.current_gradient = RawGradient()
        elif key == 'Clr':
            self.flush_color()
            self.current_color = {'palette': obj_type}

    def flush_color(self):
        if self.current_color:
            self._active_gradient().color_fields.append(self.current_color)
        self.current_color = {}

    def flush_opacity(self):
        if self.current_opacity:
            self._active_gradient().opacity_fields.append(self.current_opacity)
        self.current_opacity = {}

    def flush_gradient(self):
        self.flush_color()
        self.flush_opacity()
        if self.current_gradient is not None and not self.current_gradient.is_empty():
            self.gradients.append(self.current_gradient)
        self.current_gradient = None

    def record_text(self, key, text):
        if self.current_object == 'Grad' and key == 'Nm':
            self._active_gradient().name = text

    def record_unit_float(self, key, unit, value):
        if self.current_object == 'Clr' and key in COLOR_TERMS:
            self.current_color[key] = value
        if self.current_object == 'Trns' and key == 'Opct' and unit == '#Prc':
            self.flush_opacity()
            self.current_opacity[key] = value / 100

    def record_integer(self, key, value):
        if key != 'Lctn':
            return
        if self.current_object == 'Clr':
            self.current_color[key] = value
        elif self.current_object == 'Trns':
            self.current_opacity[key] = value

    def record_double(self, key, value):
        if self.current_object == 'Clr' and key in COLOR_TERMS:
            self.current_color[key] = value

    def finish(self):
        self.flush_gradient()
        return self.gradients


# ==============================================================================
# 2. Descriptor entry decoder + type handlers
# ==============================================================================

class GrdDescriptorParser:
    def __init__(self, reader, context, log=None, max_resyncs=None):
        self.reader = reader
        self.context = context
        self.log = log
        self.depth = 0
        self.resyncs = 0
        self.max_resyncs = reader.length if max_resyncs is None else max_resyncs

    def _log(self, offset, key, type_tag, *args):
        if self.log is not None:
            self.log(self.depth, offset, key, type_tag, *args)

    def parse_entry(self):
        """Decode one key/type/value record at the cursor.

        An unknown type tag rolls the cursor back to one byte before the
        entry's length field and tries again. Running off the buffer while
        resynchronising, or exceeding ``max_resyncs``, ends decoding quietly.
        """
        resyncing = False
        while True:
            rollback = self.reader.tell()
            try:
                length = self.reader.peek_u4()
                if length == 0 or length > KEY_LENGTH_LIMIT:
                    length = DEFAULT_TAG_LENGTH
                self.reader.advance(4)
                key = _clean(self.reader.peek_ostype())
                self.reader.advance(length)
                raw_type = self.reader.read_ostype()
            except TruncatedInputError:
                if not resyncing:
                    raise
                self.reader.seek(self.reader.length)
                return

            tag = TypeTag.lookup(raw_type)
            if tag is not None:
                self.dispatch(tag, key, rollback)
                return

            # Some writers are off by one byte; retry one byte earlier.
            self.resyncs += 1
            target = rollback - 1
            if target < 0 or target >= self.reader.length or self.resyncs > self.max_resyncs:
                self._log(rollback, key, 'unknown', repr(raw_type), "giving up")
                self.reader.seek(self.reader.length)
                return
            self.reader.seek(target)
            resyncing = True

    def dispatch(self, tag, key, offset):
        if tag is TypeTag.OBJECT:
            self.parse_objc(key, offset)
        elif tag is TypeTag.LIST:
            self.parse_vlls(key, offset)
        elif tag is TypeTag.TEXT:
            self.parse_text(key, offset)
        elif tag is TypeTag.UNIT_FLOAT:
            self.parse_untf(key, offset)
        elif tag is TypeTag.BOOLEAN:
            self.parse_bool(key, offset)
        elif tag is TypeTag.INTEGER:
            self.parse_long(key, offset)
        elif tag is TypeTag.DOUBLE:
            self.parse_doub(key, offset)
        elif tag is TypeTag.ENUM:
            self.parse_enum(key, offset)
        elif tag is TypeTag.RAW_DATA:
            self.parse_tdta(key, offset)
        elif tag is TypeTag.PATTERN:
            self.parse_patt(key, offset)
        elif tag is TypeTag.DESCRIPTOR:
            self.parse_desc(key, offset)

    def parse_objc(self, key, offset):
        name_length = self.reader.read_u4()
        obj_name = self.reader.read_utf16(name_length, errors='replace')

        type_length = self.reader.read_u4() or DEFAULT_TAG_LENGTH
        obj_type = self.reader.read_str(type_length)

        child_count = self.reader.read_u4()

        self.context.enter_object(key, obj_type)
        self._log(offset, key, 'objc', child_count, obj_type, obj_name)

        self.depth += 1
        try:
            for _ in range(child_count):
                if self.reader.is_eof():
                    break
                self.parse_entry()
        finally:
            self.depth -= 1

    def parse_vlls(self, key, offset):
        count = self.reader.read_u4()
        self._log(offset, key, 'vlls', count)

        self.depth += 1
        skipped = 0
        try:
            for _ in range(count):
                if not self.parse_list_item(key):
                    skipped += 1
        finally:
            self.depth -= 1
        if skipped:
            self._log(offset, key, 'vlls', f"skipped {skipped} item(s)")

    def parse_list_item(self, key):
        """Decode one list item inline; ``False`` means the item was skipped."""
        item_offset = self.reader.tell()
        tag = TypeTag.lookup(self.reader.read_ostype())
        if tag is None:
            return False
        try:
            self.dispatch(tag, key, item_offset)
        except MalformedEntryError as e:
            self._log(item_offset, key, 'skip', str(e))
            return False
        return True

    def parse_text(self, key, offset):
        count = self.reader.read_u4()
        text = self.reader.read_utf16(count)
        self._log(offset, key, 'text', count, text)
        self.context.record_text(key, text)

    def parse_untf(self, key, offset):
        unit = self.reader.read_ostype()
        value = self.reader.read_double()
        self._log(offset, key, 'untf', unit, value)
        self.context.record_unit_float(key, unit, value)

    def parse_bool(self, key, offset):
        value = self.reader.read_u1()
        self._log(offset, key, 'bool', value)

    def parse_long(self, key, offset):
        value = self.reader.read_u4()
        self._log(offset, key, 'long', value)
        self.context.record_integer(key, value)

    def parse_doub(self, key, offset):
        value = self.reader.read_double()
        self._log(offset, key, 'doub', value)
        self.context.record_double(key, value)

    def _read_class_id(self):
        length = self.reader.read_u4() or DEFAULT_TAG_LENGTH
        return self.reader.read_str(length)

    def parse_enum(self, key, offset):
        enum_type = self._read_class_id()
        enum_val = self._read_class_id()
        self._log(offset, key, 'enum', enum_type, enum_val)

    def parse_tdta(self, key, offset):
        size = self.reader.read_u4()
        raw = self.reader.read_bytes(size)
        disp = raw[:16].hex() + ("..." if size > 16 else "")
        self._log(offset, key, 'tdta', size, disp)

    def parse_patt(self, key, offset):
        # Pattern payload layout is unknown; the enclosing container owns its bytes.
        self._log(offset, key, 'patt')

    def parse_desc(self, key, offset):
        size = self.reader.peek_u4()
        self.reader.advance(DESC_SKIP)
        self._log(offset, key, 'desc', size)


# ==============================================================================
# 3. Sequential parser (driver + export)
# ==============================================================================

class SequentialGrdParser:
    def __init__(self, log=None, header_size=HEADER_SIZE, max_resyncs=None):
        self.log = log
        self.header_size = header_size
        self.max_resyncs = max_resyncs
        self.resyncs = 0
        self.definitions = []
        self.maps = {}

    def parse(self, buffer):
        reader = GrdStreamReader(buffer, self.header_size)
        context = ParseContext()
        decoder = GrdDescriptorParser(reader, context, log=self.log, max_resyncs=self.max_resyncs)

        while not reader.is_eof():
            decoder.parse_entry()

        self.resyncs = decoder.resyncs
        if self.resyncs and self.log is not None:
            self.log(0, reader.tell(), 'stream', 'resync', f"resynchronized {self.resyncs} time(s)")

        raw_gradients = context.finish()
        assembler = GradientAssembler()
        self.definitions = assembler.assemble(raw_gradients)
        self.maps = assembler.build_maps(self.definitions)
        return self.maps

    def read(self, filepath):
        with open(filepath, 'rb') as f:
            return self.parse(f.read())

    def save_json(self, out_dir="output", filename="gradients.json"):
        if not os.path.exists(out_dir): os.makedirs(out_dir)
        out_path = os.path.join(out_dir, filename)
        with open(out_path, 'w', encoding='utf-8') as f:
            json.dump([m.to_dict() for m in self.maps.values()], f, indent=4, ensure_ascii=False)
        print(f"[Success] Saved {len(self.maps)} gradients to {out_path}")
        return out_path

    def save_images(self, out_dir="output", width=256, height=32):
        if not os.path.exists(out_dir): os.makedirs(out_dir)
        paths = []
        for i, (name, gradient_map) in enumerate(self.maps.items()):
            safe_name = re.sub(r'[\\/*?:"<>|]', "_", name)
            fname = os.path.join(out_dir, f"{safe_name}.png")
            # distinct names can sanitize to the same file
            n = i
            while fname in paths:
                fname = os.path.join(out_dir, f"{safe_name}_{n}.png")
                n += 1
            gradient_map.to_image(width, height).save(fname)
            paths.append(fname)
        print(f"[Success] Saved {len(paths)} previews to {out_dir}")
        return paths


def parse(buffer, log=None):
    return SequentialGrdParser(log=log).parse(buffer)


def read(filepath, log=None):
    return SequentialGrdParser(log=log).read(filepath)


def main(argv=None):
    ap = argparse.ArgumentParser(prog="grd-solver", description="Decode a .grd gradient file")
    ap.add_argument("file")
    ap.add_argument("-o", "--out-dir", default=None)
    ap.add_argument("-v", "--verbose", action="store_true", help="print every decoded entry")
    ap.add_argument("--width", type=int, default=256)
    ap.add_argument("--height", type=int, default=32)
    args = ap.parse_args(argv)

    log = PrintLog() if args.verbose or os.environ.get("GRD_LOG") else None
    out_dir = args.out_dir or args.file + '-' + "output"

    p = SequentialGrdParser(log=log)
    try:
        p.read(args.file)
    except (GrdError, OSError) as e:
        print(f"[Err] Failed to decode {args.file}: {e}")
        return 1

    p.save_images(out_dir=out_dir, width=args.width, height=args.height)
    p.save_json(out_dir=out_dir)
    return 0


if __name__ == "__main__":
    sys.exit(main())
