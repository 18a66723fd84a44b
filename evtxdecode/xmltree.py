"""
Minimal XML tree for decoded EVTX records.

Not a full XML implementation: elements, attributes and text only.
Nodes live in an arena owned by the XmlTree and refer to each other by
index; dropping the tree drops every node.

Values carry the BinXML value type they were decoded from. Attributes
and text typed NullType are kept in the tree but suppressed by every
serializer, so a template's placeholder for an absent value never shows
up as an empty string.
"""
import logging
from xml.sax.saxutils import escape, quoteattr

from lxml import etree

import evtxdecode.messages
from evtxdecode.values import VALUE_TYPES


logger = logging.getLogger(__name__)


OUTPUT_MODES = ("pretty", "compact", "flat")
INDENT = "  "


class XmlAttribute(object):
    __slots__ = ('name', 'value', 'type')

    def __init__(self, name, value, type_):
        super(XmlAttribute, self).__init__()
        self.name = name
        self.value = value
        self.type = type_

    def is_null(self):
        return self.type == VALUE_TYPES.NullType or self.value is None

    def __repr__(self):
        return "XmlAttribute(name=%r, value=%r, type=0x%02x)" % (self.name, self.value, self.type)


class XmlElement(object):
    __slots__ = ('index', 'name', 'text', 'text_type', 'attributes', 'parent', 'children')

    def __init__(self, index, name):
        super(XmlElement, self).__init__()
        self.index = index
        self.name = name
        self.text = None
        self.text_type = VALUE_TYPES.NullType
        self.attributes = []
        # arena index of the parent, or None for a root
        self.parent = None
        # arena indices, document order
        self.children = []

    def has_text(self):
        return self.text is not None and self.text_type != VALUE_TYPES.NullType

    def visible_attributes(self):
        return [a for a in self.attributes if not a.is_null()]

    def __repr__(self):
        return "XmlElement(index=%d, name=%r)" % (self.index, self.name)


class XmlTree(object):
    """
    The decoded XML of one record.
    """

    def __init__(self):
        super(XmlTree, self).__init__()
        self._elements = []
        # arena indices of top-level elements
        self._roots = []

    def __len__(self):
        return len(self._elements)

    @property
    def root(self):
        if not self._roots:
            return None
        return self._elements[self._roots[0]]

    @property
    def roots(self):
        return [self._elements[i] for i in self._roots]

    def element(self, index):
        return self._elements[index]

    def new_element(self, name):
        elem = XmlElement(len(self._elements), name)
        self._elements.append(elem)
        return elem

    def set_text(self, elem, text, type_):
        elem.text = text
        elem.text_type = type_

    def append_text(self, elem, text, type_):
        """
        Add text to an element, concatenating with any non-null text it already has.

        An element holds a single text, so text that follows a child element
          is joined to the text before it and serialized ahead of the children.
        """
        if type_ == VALUE_TYPES.NullType:
            if elem.text is None:
                self.set_text(elem, text, type_)
            return

        if elem.has_text():
            elem.text += text
        else:
            self.set_text(elem, text, type_)

    def add_attribute(self, elem, name, value, type_):
        attr = XmlAttribute(name, value, type_)
        elem.attributes.append(attr)
        return attr

    def add_child(self, parent, child):
        """
        Append `child` to `parent`, or make it a top-level element when
          `parent` is None. Child order is preserved.
        """
        if parent is None:
            child.parent = None
            self._roots.append(child.index)
        else:
            child.parent = parent.index
            parent.children.append(child.index)

    def parent_of(self, elem):
        if elem.parent is None:
            return None
        return self._elements[elem.parent]

    def children_of(self, elem):
        return [self._elements[i] for i in elem.children]

    def find_child(self, parent, name):
        for child in self.children_of(parent):
            if child.name == name:
                return child
        return None

    def _pretty(self, elem, depth, lines):
        indent = INDENT * depth
        attrs = "".join(" %s=%s" % (a.name, quoteattr(a.value)) for a in elem.visible_attributes())
        children = self.children_of(elem)

        if not children and not elem.has_text():
            lines.append("%s<%s%s />" % (indent, elem.name, attrs))
            return

        if not children:
            lines.append("%s<%s%s>%s</%s>" % (indent, elem.name, attrs, escape(elem.text), elem.name))
            return

        lines.append("%s<%s%s>" % (indent, elem.name, attrs))
        if elem.has_text():
            lines.append("%s%s" % (INDENT * (depth + 1), escape(elem.text)))
        for child in children:
            self._pretty(child, depth + 1, lines)
        lines.append("%s</%s>" % (indent, elem.name))

    def to_pretty_xml(self):
        """
        Serialize as indented XML, one tag per line.

        Returns:
          str: the XML, or the empty string for an empty tree.
        """
        lines = []
        for root in self.roots:
            self._pretty(root, 0, lines)
        return "\n".join(lines)

    def _compact(self, elem, parts):
        parts.append("<%s" % (elem.name))
        for a in elem.visible_attributes():
            parts.append(" %s=%s" % (a.name, quoteattr(a.value)))

        children = self.children_of(elem)
        if not children and not elem.has_text():
            parts.append("/>")
            return

        parts.append(">")
        if elem.has_text():
            parts.append(escape(elem.text))
        for child in children:
            self._compact(child, parts)
        parts.append("</%s>" % (elem.name))

    def to_compact_xml(self):
        """
        Serialize as XML on a single line.
        """
        parts = []
        for root in self.roots:
            self._compact(root, parts)
        return "".join(parts)

    def _flat(self, elem, lines, resolve_messages):
        def fmt(value):
            if resolve_messages:
                return evtxdecode.messages.resolve_message(value)
            return value

        if elem.has_text() and elem.text != "":
            lines.append("%s: %s" % (elem.name, fmt(elem.text)))

        for a in elem.visible_attributes():
            lines.append("%s.%s: %s" % (elem.name, a.name, fmt(a.value)))

        for child in self.children_of(elem):
            self._flat(child, lines, resolve_messages)

    def to_flat_text(self, resolve_messages=False):
        """
        Serialize as `element: text` and `element.attribute: value` lines,
          depth first.

        Args:
          resolve_messages (bool): replace `%%NNNN` references with
            their message text.
        """
        lines = []
        for root in self.roots:
            self._flat(root, lines, resolve_messages)
        return "\n".join(lines)

    def serialize(self, mode, resolve_messages=False):
        if mode == "pretty":
            return self.to_pretty_xml()
        elif mode == "compact":
            return self.to_compact_xml()
        elif mode == "flat":
            return self.to_flat_text(resolve_messages=resolve_messages)
        else:
            raise ValueError("unknown output mode: %s" % (mode))

    def _lxml(self, elem, parent):
        if parent is None:
            node = etree.Element(elem.name)
        else:
            node = etree.SubElement(parent, elem.name)

        for a in elem.visible_attributes():
            if a.name == "xmlns" or a.name.startswith("xmlns:"):
                continue
            node.set(a.name, a.value)
        if elem.has_text():
            node.text = elem.text
        for child in self.children_of(elem):
            self._lxml(child, node)
        return node

    def to_lxml(self):
        """
        Convert the root element into an lxml Element.

        Namespace declarations (`xmlns` attributes) are dropped, so the
          result has no namespace semantics.

        Returns:
          etree.Element: the converted root, or None for an empty tree.
        """
        if self.root is None:
            return None
        return self._lxml(self.root, None)
