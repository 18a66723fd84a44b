import sys
import logging
import argparse

import evtxdecode
import evtxdecode.utils
import evtxdecode.chunks
from evtxdecode.binxml import MAX_DEPTH_CEILING, MAX_RECURSION_DEPTH
from evtxdecode.errors import ParseError
from evtxdecode.names import iter_chunk_names
from evtxdecode.templates import iter_chunk_templates


logger = logging.getLogger(__name__)


def format_summary(record):
    eid = record.eid
    if record.error is None:
        status = "ok"
    else:
        status = "error: %s" % (str(record.error))

    return "%d\t0x%x\t%s\t%s\t%s" % (
        record.record_id,
        record.offset,
        record.timestamp or "-",
        "-" if eid is None else eid,
        status)


def get_output_mode(args):
    if args.xml:
        return "pretty"
    elif args.compact:
        return "compact"
    elif args.txt:
        return "flat"
    else:
        return None


def output_record(args, record):
    mode = get_output_mode(args)
    if mode is None:
        print(format_summary(record))
        return

    text = record.tree.serialize(mode, resolve_messages=args.messages)
    if mode == "flat":
        print("record: %d" % (record.record_id))
    if text:
        print(text)


def dump_tables(buf, header):
    print("file header:")
    print("  chunks: %d (%d-%d)" % (header.chunk_count, header.first_chunk_number, header.last_chunk_number))
    print("  next record id: %d" % (header.next_record_id))
    print("  version: %d.%d" % (header.major_version, header.minor_version))
    print("  flags: 0x%x (%s)" % (header.flags, header.get_flags_text()))

    for chunk in evtxdecode.chunks.iter_chunks(buf):
        h = chunk.header
        print("chunk at 0x%x:" % (chunk.offset))
        print("  records: %d-%d (%d)" % (h.first_record_id, h.last_record_id, h.record_count))
        print("  free space: 0x%x" % (h.free_space_offset))

        for slot, offset, entry in iter_chunk_names(chunk.span, h):
            print("  name 0x%x: %s" % (offset, entry.name))

        for slot, offset, template in iter_chunk_templates(chunk.span, h):
            print("  template 0x%x: id 0x%08x, 0x%x bytes" % (offset, template.template_id, template.data_size))


def depth_argument(value):
    depth = int(value)
    if not (1 <= depth <= MAX_DEPTH_CEILING):
        raise argparse.ArgumentTypeError("depth must be between 1 and %d" % (MAX_DEPTH_CEILING))
    return depth


def main(argv=None):
    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(
        description="Decode the records of an EVTX event log file.")
    parser.add_argument("input", type=str,
                        help="Path to EVTX file")

    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true",
                           help="Enable debug logging")
    verbosity.add_argument("-q", "--quiet", action="store_true",
                           help="Disable all output but errors")

    output = parser.add_mutually_exclusive_group()
    output.add_argument("-x", "--xml", action="store_true",
                        help="Render records as indented XML")
    output.add_argument("-c", "--compact", action="store_true",
                        help="Render each record as XML on one line")
    output.add_argument("-t", "--txt", action="store_true",
                        help="Render records as flattened text")

    parser.add_argument("-e", "--event-id", type=int, action="store",
                        help="Only show records with this event ID")
    parser.add_argument("--max-depth", type=depth_argument, action="store", default=MAX_RECURSION_DEPTH,
                        help="Maximum template nesting depth")
    parser.add_argument("--messages", action="store_true",
                        help="Replace %%%%NNNN message references in flattened text")
    parser.add_argument("-d", "--dump-tables", action="store_true",
                        help="Dump file and chunk headers and shared tables")
    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG)
    elif args.quiet:
        logging.basicConfig(level=logging.ERROR)
    else:
        logging.basicConfig(level=logging.INFO)

    with evtxdecode.utils.Mmap(args.input) as mm:
        try:
            header = evtxdecode.chunks.parse_file_header(mm)
        except ParseError as e:
            logger.error("Error: %s is not an EVTX file: %s", args.input, str(e))
            return 1

        if args.dump_tables:
            dump_tables(mm, header)

        num_complete = 0
        num_failed = 0

        if args.xml:
            print('<?xml version="1.0" encoding="UTF-8"?>')
            print('<Events>')
        for record in evtxdecode.iter_records(mm, event_id=args.event_id, max_depth=args.max_depth):
            output_record(args, record)

            if record.is_complete():
                num_complete += 1
            else:
                num_failed += 1
        if args.xml:
            print('</Events>')

        logger.info('decoded %d records', num_complete)
        logger.info('failed to decode %d records', num_failed)

    return 0


if __name__ == "__main__":
    sys.exit(main())
