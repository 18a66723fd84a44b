"""
Decoder for the BinXML token stream stored in EVTX records.

A record's BinXML is a fragment header followed by a template instance:
the instance names a template definition by chunk offset, the
definition's body is itself a BinXML token stream with substitution
tokens, and the instance carries the value table that fills them in.
The definition may be stored inline in the record (the first record of
a chunk to use it) or only referenced by offset.

The decoder walks token streams with a plain dispatch loop, resolving
names through the chunk's NameCache and values through the instance's
ValueTable, and builds an XmlTree as it goes. Embedded BinXML values
are decoded recursively and attached at the current position.
"""
import logging

from evtxdecode.errors import MissingTemplateMarker, OffsetOutOfBounds, RecursionLimitExceeded
from evtxdecode.names import ElementNameStack, resolve_name
from evtxdecode.templates import TEMPLATE_HEADER_SIZE, read_template_definition
from evtxdecode.values import VALUE_TYPES, ValueTable, format_placeholder, render_value


logger = logging.getLogger(__name__)


class SYSTEM_TOKENS:
    EndOfStreamToken = 0x00
    OpenStartElementToken = 0x01
    CloseStartElementToken = 0x02
    CloseEmptyElementToken = 0x03
    CloseElementToken = 0x04
    ValueToken = 0x05
    AttributeToken = 0x06
    CDataSectionToken = 0x07
    CharReferenceToken = 0x08
    EntityReferenceToken = 0x09
    ProcessingInstructionTargetToken = 0x0A
    ProcessingInstructionDataToken = 0x0B
    TemplateInstanceToken = 0x0C
    NormalSubstitutionToken = 0x0D
    ConditionalSubstitutionToken = 0x0E
    StartOfStreamToken = 0x0F
    MoreDataFlag = 0x40


# the template instance token is expected right after the fragment header
TEMPLATE_SCAN_WINDOW = 10
# token, unknown byte, template id, template offset
TEMPLATE_INSTANCE_SIZE = 10
FRAGMENT_HEADER_SIZE = 4
MAX_RECURSION_DEPTH = 32
# each level costs a few Python frames; stay well below the interpreter limit
MAX_DEPTH_CEILING = 256

ENTITIES = {
    "amp": "&",
    "lt": "<",
    "gt": ">",
    "quot": "\"",
    "apos": "'",
}


class _StreamState(object):
    """
    Mutable state of one token stream walk.
    """
    __slots__ = ('values', 'current', 'attribute_name', 'attribute', 'stack')

    def __init__(self, values, parent):
        super(_StreamState, self).__init__()
        self.values = values
        # element that receives text, attributes and children
        self.current = parent
        # name of the attribute whose value is expected next, and the
        # attribute once its first value has been seen
        self.attribute_name = None
        self.attribute = None
        self.stack = ElementNameStack()

    def end_attribute(self):
        self.attribute_name = None
        self.attribute = None


class BinXmlDecoder(object):
    """
    Decodes BinXML spans of one chunk into an XmlTree.

    Args:
      span (evtxdecode.binary.ByteSpan): the chunk buffer.
      names (evtxdecode.names.NameCache): the chunk's name cache.
      tree (evtxdecode.xmltree.XmlTree): the tree to populate.
      max_depth (int): maximum nesting of template instances and embedded
        BinXML values, capped at MAX_DEPTH_CEILING.
    """

    def __init__(self, span, names, tree, max_depth=MAX_RECURSION_DEPTH):
        super(BinXmlDecoder, self).__init__()
        self._span = span
        self._names = names
        self._tree = tree
        if max_depth > MAX_DEPTH_CEILING:
            logger.warning("maximum depth %d lowered to %d", max_depth, MAX_DEPTH_CEILING)
            max_depth = MAX_DEPTH_CEILING
        self._max_depth = max_depth

    def _check_depth(self, depth):
        if depth > self._max_depth:
            raise RecursionLimitExceeded("BinXML nesting deeper than %d" % (self._max_depth))

    def decode(self, offset, size, parent=None, depth=0):
        """
        Decode the BinXML span [offset, offset + size) into the tree.

        The span must hold a template instance within its first few bytes.

        Args:
          offset (int): chunk-relative start of the span.
          size (int): length of the span.
          parent (evtxdecode.xmltree.XmlElement): element that receives the
            decoded elements, or None to create top-level elements.
          depth (int): current nesting depth.

        Returns:
          int: chunk offset just past the instance's value data.

        Raises:
          MissingTemplateMarker: if no template instance is found.
          OffsetOutOfBounds: if any structure overruns the chunk or the span.
          RecursionLimitExceeded: if nesting exceeds the configured limit.
        """
        self._check_depth(depth)
        self._span.check(offset, size)
        end = offset + size

        window_end = min(offset + TEMPLATE_SCAN_WINDOW, end - 1)
        marker = self._span.find_pair(SYSTEM_TOKENS.TemplateInstanceToken, 0x01, offset, window_end)
        if marker == -1:
            raise MissingTemplateMarker("no template instance at 0x%x" % (offset))

        return self._instantiate(marker, offset, end, parent, depth)

    def decode_stream(self, offset, size, values=None, parent=None, depth=0):
        """
        Walk a bare token stream that is not wrapped in a template instance.

        Substitution tokens in the stream are resolved against `values`, an
          empty ValueTable when not provided.
        """
        if values is None:
            values = ValueTable(offset, [], offset)
        self._span.check(offset, size)
        self._walk(offset, size, values, parent, depth)

    def _instantiate(self, pos, start, end, parent, depth):
        """
        Instantiate the template referenced by the instance token at `pos`.

        `start` and `end` delimit the span the instance lives in; a template
          definition found inside that span is stored inline and its body
          sits between the instance header and the value table.

        Returns:
          int: chunk offset just past the instance's value data.
        """
        self._check_depth(depth)
        _, template_id, template_offset = self._span.unpack_struct("<BII", pos + 1)
        template = read_template_definition(self._span, template_offset)

        table_offset = pos + TEMPLATE_INSTANCE_SIZE
        if start < template_offset < end:
            if template_offset != table_offset:
                logger.debug("0x%x: inline template 0x%x does not follow its instance header",
                             pos, template_offset)
            if template.body_end > end:
                raise OffsetOutOfBounds("inline template at 0x%x overruns its span (0x%x > 0x%x)" %
                                        (template_offset, template.body_end, end))
            table_offset += TEMPLATE_HEADER_SIZE + template.data_size

        logger.debug("0x%x: template 0x%08x at 0x%x (0x%x bytes), values at 0x%x",
                     pos, template_id, template_offset, template.data_size, table_offset)

        values = ValueTable.parse(self._span, table_offset, limit=end)
        self._walk(template.body_offset, template.data_size, values, parent, depth + 1)
        return values.end

    def _walk(self, offset, size, values, parent, depth):
        """
        Walk the token stream [offset, offset + size) with the given values.
        """
        self._check_depth(depth)
        span = self._span
        state = _StreamState(values, parent)
        end = offset + size
        pos = offset

        while pos < end:
            token = span.unpack_byte(pos)

            if token == SYSTEM_TOKENS.EndOfStreamToken:
                pos += 1

            elif token & ~SYSTEM_TOKENS.MoreDataFlag == SYSTEM_TOKENS.OpenStartElementToken:
                pos = self._open_element(state, pos, token)

            elif token == SYSTEM_TOKENS.CloseStartElementToken:
                state.end_attribute()
                pos += 1

            elif token == SYSTEM_TOKENS.CloseEmptyElementToken:
                self._close_element(state, emit=False)
                pos += 1

            elif token == SYSTEM_TOKENS.CloseElementToken:
                self._close_element(state, emit=True)
                pos += 1

            elif token & ~SYSTEM_TOKENS.MoreDataFlag == SYSTEM_TOKENS.ValueToken:
                pos = self._value(state, pos)

            elif token in (0x06, 0x46, 0x36):
                pos = self._attribute(state, pos, token)

            elif token == SYSTEM_TOKENS.CDataSectionToken:
                count = span.unpack_word(pos + 1)
                self._emit(state, span.unpack_wstring(pos + 3, count), VALUE_TYPES.WStringType)
                pos += 3 + (count * 2)

            elif token == SYSTEM_TOKENS.CharReferenceToken:
                self._emit(state, chr(span.unpack_word(pos + 1)), VALUE_TYPES.WStringType)
                pos += 3

            elif token == SYSTEM_TOKENS.EntityReferenceToken:
                name, consumed = resolve_name(span, self._names, span.unpack_dword(pos + 1), pos + 5)
                self._emit(state, ENTITIES.get(name, "&%s;" % (name)), VALUE_TYPES.WStringType)
                pos += 5 + consumed

            elif token == SYSTEM_TOKENS.ProcessingInstructionTargetToken:
                name, consumed = resolve_name(span, self._names, span.unpack_dword(pos + 1), pos + 5)
                logger.debug("0x%x: skipping processing instruction target %r", pos, name)
                pos += 5 + consumed

            elif token == SYSTEM_TOKENS.ProcessingInstructionDataToken:
                count = span.unpack_word(pos + 1)
                logger.debug("0x%x: skipping processing instruction data", pos)
                pos += 3 + (count * 2)

            elif token == SYSTEM_TOKENS.TemplateInstanceToken:
                state.end_attribute()
                pos = self._instantiate(pos, offset, end, state.current, depth)

            elif token in (SYSTEM_TOKENS.NormalSubstitutionToken,
                           SYSTEM_TOKENS.ConditionalSubstitutionToken):
                optional = token == SYSTEM_TOKENS.ConditionalSubstitutionToken
                pos = self._substitute(state, pos, optional, depth)

            elif token == SYSTEM_TOKENS.StartOfStreamToken:
                pos += FRAGMENT_HEADER_SIZE

            else:
                logger.warning("0x%x: unrecognized token 0x%02x", pos, token)
                if state.current is not None:
                    self._tree.append_text(state.current, "[Unknown Token 0x%02x]" % (token),
                                           VALUE_TYPES.WStringType)
                pos += 1

        if len(state.stack) > 0:
            logger.warning("0x%x: stream ended with %d open elements (innermost: %s)",
                           offset, len(state.stack), state.stack.peek())

    def _open_element(self, state, pos, token):
        span = self._span
        _, _, name_offset = span.unpack_struct("<HII", pos + 1)
        cursor = pos + 11
        name, consumed = resolve_name(span, self._names, name_offset, cursor)
        cursor += consumed
        if token & SYSTEM_TOKENS.MoreDataFlag:
            # attribute list size
            cursor += 4

        elem = self._tree.new_element(name)
        self._tree.add_child(state.current, elem)
        state.stack.push(name)
        state.current = elem
        state.end_attribute()
        return cursor

    def _close_element(self, state, emit):
        name = state.stack.pop()
        if emit:
            logger.debug("</%s>", name)
        state.current = self._tree.parent_of(state.current)
        state.end_attribute()

    def _attribute(self, state, pos, token):
        span = self._span
        if token == 0x36:
            # a dword of unknown meaning precedes the name offset
            cursor = pos + 9
            name_offset = span.unpack_dword(pos + 5)
        else:
            cursor = pos + 5
            name_offset = span.unpack_dword(pos + 1)

        name, consumed = resolve_name(span, self._names, name_offset, cursor)
        state.attribute_name = name
        state.attribute = None
        return cursor + consumed

    def _value(self, state, pos):
        span = self._span
        type_ = span.unpack_byte(pos + 1)
        pos += 2

        if type_ == VALUE_TYPES.WStringType:
            count = span.unpack_word(pos)
            text = span.unpack_wstring(pos + 2, count)
            pos += 2 + (count * 2)
        elif type_ == VALUE_TYPES.NullType:
            text = ""
        else:
            logger.warning("0x%x: value token with unsupported type 0x%02x", pos - 2, type_)
            text = format_placeholder(type_, 0)

        self._emit(state, text, type_)
        return pos

    def _substitute(self, state, pos, optional, depth):
        index, type_ = self._span.unpack_struct("<HB", pos + 1)
        pos += 4

        if optional:
            slot = state.values.get(index)
            if slot is None or slot.type == VALUE_TYPES.NullType or slot.size == 0:
                logger.debug("0x%x: eliding optional substitution %d", pos - 4, index)
                return pos
        else:
            slot = state.values[index]

        if slot.type != type_:
            logger.debug("0x%x: substitution %d declared type 0x%02x, value has 0x%02x",
                         pos - 4, index, type_, slot.type)

        if slot.type == VALUE_TYPES.BXmlType:
            if slot.size > 0:
                self.decode(slot.offset, slot.size, parent=state.current, depth=depth + 1)
            return pos

        data = self._span.unpack_binary(slot.offset, slot.size)
        self._emit(state, render_value(slot.type, data), slot.type)
        return pos

    def _emit(self, state, text, type_):
        """
        Deliver a value to the pending attribute, or else as element text.
        """
        tree = self._tree
        if state.current is None:
            logger.debug("dropping value outside of any element: %r", text)
            return

        if state.attribute_name is None:
            tree.append_text(state.current, text, type_)
            return

        attr = state.attribute
        if attr is None:
            state.attribute = tree.add_attribute(state.current, state.attribute_name, text, type_)
        elif type_ == VALUE_TYPES.NullType:
            pass
        elif attr.is_null():
            attr.value = text
            attr.type = type_
        else:
            attr.value += text
