import logging

import evtxdecode.utils
import evtxdecode.chunks
from evtxdecode.binxml import MAX_RECURSION_DEPTH


logger = logging.getLogger(__name__)


def iter_records(buf, event_id=None, max_depth=MAX_RECURSION_DEPTH):
    '''
    Decode the records of an EVTX file.

    Chunks are processed one at a time and their records strictly in
    order. A record that fails to decode is still yielded, with its
    partial tree and the error attached, so callers can report it and
    keep going.

    Args:
      buf (buffer): the contents of an EVTX file.
      event_id (int): when provided, only yield records with this event ID.
      max_depth (int): maximum nesting of templates and embedded BinXML.

    Returns:
      iterable[evtxdecode.chunks.DecodedRecord]: the decoded records.

    Raises:
      evtxdecode.errors.SignatureMismatch: if the file header is invalid.
    '''
    for chunk in evtxdecode.chunks.iter_chunks(buf):
        for record in chunk.records(max_depth=max_depth):
            if event_id is not None and evtxdecode.utils.get_eid(record.tree) != event_id:
                continue
            yield record
