import pytest

import evtxdecode.main

from fixtures import *


def test_summary(event_path, capsys):
    assert evtxdecode.main.main([event_path]) == 0
    out = capsys.readouterr()[0]
    lines = out.splitlines()
    assert len(lines) == 3
    assert lines[0] == "1\t0x200\t1970-01-02T00:00:00.000000500Z\t4624\tok"
    assert lines[1].split("\t")[3] == "4625"


def test_xml(event_path, capsys):
    assert evtxdecode.main.main([event_path, "-x", "-e", "4625"]) == 0
    out = capsys.readouterr()[0]
    assert out.startswith('<?xml version="1.0" encoding="UTF-8"?>\n<Events>\n<Event xmlns=')
    assert out.count("<Event ") == 1
    assert "    <EventID>4625</EventID>" in out
    assert '<Security UserID="S-1-5-21-2" />' in out
    assert out.endswith("</Events>\n")


def test_compact(event_path, capsys):
    assert evtxdecode.main.main([event_path, "-c"]) == 0
    lines = capsys.readouterr()[0].splitlines()
    assert len(lines) == 3
    assert all(line.startswith("<Event ") and line.endswith("</Event>") for line in lines)


def test_flat_with_messages(event_path, capsys):
    assert evtxdecode.main.main([event_path, "-t", "--messages", "-e", "4624"]) == 0
    out = capsys.readouterr()[0]
    assert "record: 1\n" in out
    assert "record: 3\n" in out
    assert "Data: Network\nData.Name: LogonType\n" in out
    assert "Data: Interactive\n" in out
    assert "Provider.Name: Microsoft-Windows-Security-Auditing\n" in out


def test_dump_tables(event_path, capsys):
    assert evtxdecode.main.main([event_path, "-d", "-q"]) == 0
    out = capsys.readouterr()[0]
    assert "  chunks: 1 (0-0)" in out
    assert "  flags: 0x0 (clean)" in out
    assert "  records: 1-3 (3)" in out
    assert ": Event\n" in out
    assert "template 0x" in out


def test_not_evtx(tmpdir):
    path = tmpdir.join("notes.txt")
    path.write_binary(b"not an event log" * 16)
    assert evtxdecode.main.main([str(path)]) == 1


def test_max_depth_bounds(event_path, capsys):
    with pytest.raises(SystemExit) as e:
        evtxdecode.main.main([event_path, "--max-depth", "5000"])
    assert e.value.code == 2
    assert "depth must be between 1 and 256" in capsys.readouterr()[1]

    assert evtxdecode.main.main([event_path, "--max-depth", "256"]) == 0
