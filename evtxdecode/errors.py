class ParseError(RuntimeError): pass


class SignatureMismatch(ParseError): pass


class RecordTooSmall(ParseError): pass


class MissingTemplateMarker(ParseError): pass


class OffsetOutOfBounds(ParseError): pass


class SubstitutionIndexError(ParseError): pass


class StructureError(ParseError): pass


class RecursionLimitExceeded(ParseError): pass
