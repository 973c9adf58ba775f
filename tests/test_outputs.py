import pytest

from flowci.errors import OutputParseError
from flowci.outputs import MarkerScanner, parse_marker_line, parse_output_records, read_output_file


def test_key_value_records():
    text = "url=https://x\nempty=\n\nquery=a=b\n"
    assert parse_output_records(text) == {"url": "https://x", "empty": "", "query": "a=b"}


def test_heredoc_record():
    text = "notes<<EOF\nline one\nline two\nEOF\nafter=1\n"
    assert parse_output_records(text) == {"notes": "line one\nline two", "after": "1"}


def test_later_record_wins():
    assert parse_output_records("v=1\nv=2\n") == {"v": "2"}


@pytest.mark.parametrize(
    "text",
    [
        "no separator here\n",
        "bad key=1\n",
        "notes<<EOF\nnever closed\n",
        "<<EOF\nx\nEOF\n",
    ],
)
def test_malformed_records(text):
    with pytest.raises(OutputParseError):
        parse_output_records(text)


def test_parse_error_carries_line_number():
    with pytest.raises(OutputParseError) as exc:
        parse_output_records("ok=1\nbroken\n")
    assert exc.value.line_no == 2


def test_read_missing_output_file(tmp_path):
    assert read_output_file(tmp_path / "missing") == {}


def test_marker_line():
    assert parse_marker_line("::set-output name=url::https://x\n") == ("url", "https://x")
    assert parse_marker_line("plain output") is None
    with pytest.raises(OutputParseError):
        parse_marker_line("::set-output nme=url::x")


def test_marker_scanner_handles_split_chunks():
    scanner = MarkerScanner()
    scanner.feed(b"building...\n::set-out")
    scanner.feed(b"put name=url::https://")
    scanner.feed(b"x\n::set-output name=size::42")
    scanner.close()

    assert scanner.outputs == {"url": "https://x", "size": "42"}
    assert scanner.error is None


def test_marker_scanner_remembers_first_error():
    scanner = MarkerScanner()
    scanner.feed(b"::set-output broken\n::set-output name=ok::1\n")

    assert scanner.outputs == {"ok": "1"}
    assert isinstance(scanner.error, OutputParseError)
