# outputs.py
"""
Step output channel.

A step declares outputs in two ways:

- the side-file named by ``$FLOWCI_OUTPUT`` (also exported as
  ``$GITHUB_OUTPUT``), one ``key=value`` record per line, or a heredoc block::

      notes<<EOF
      line one
      line two
      EOF

- marker lines on stdout: ``::set-output name=key::value``
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple

from .errors import OutputParseError

MARKER_PREFIX = "::set-output "
_MARKER = re.compile(r"^::set-output name=(?P<key>[A-Za-z_][A-Za-z0-9_\-]*)::(?P<value>.*)$")
_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*$")


def parse_output_records(text: str) -> Dict[str, str]:
    """Parse the contents of an output side-file."""
    outputs: Dict[str, str] = {}
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue

        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            key, _, delimiter = line.partition("<<")
            key, delimiter = key.strip(), delimiter.strip()
            if not _KEY.match(key) or not delimiter:
                raise OutputParseError("malformed heredoc output record", line_no=i, line=line)
            body = []
            while i < len(lines) and lines[i] != delimiter:
                body.append(lines[i])
                i += 1
            if i >= len(lines):
                raise OutputParseError(
                    f"unterminated heredoc for output '{key}' (missing '{delimiter}')", line_no=i, line=line
                )
            i += 1  # skip delimiter
            outputs[key] = "\n".join(body)
            continue

        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not _KEY.match(key):
            raise OutputParseError("malformed output record, expected key=value", line_no=i, line=line)
        outputs[key] = value

    return outputs


def parse_marker_line(line: str) -> Optional[Tuple[str, str]]:
    """Return (key, value) for a ``::set-output`` line, None for ordinary output."""
    line = line.rstrip("\r\n")
    if not line.startswith(MARKER_PREFIX):
        return None
    m = _MARKER.match(line)
    if not m:
        raise OutputParseError("malformed ::set-output marker", line=line)
    return m.group("key"), m.group("value")


def read_output_file(path: Path) -> Dict[str, str]:
    if not path.exists():
        return {}
    return parse_output_records(path.read_text(encoding="utf-8", errors="replace"))


class MarkerScanner:
    """
    Incrementally finds marker lines in a byte stream split into arbitrary chunks.

    Parse errors are remembered instead of raised so the stream keeps flowing;
    the executor checks ``error`` once the process exits.
    """

    def __init__(self) -> None:
        self._partial = b""
        self.outputs: Dict[str, str] = {}
        self.error: OutputParseError | None = None

    def feed(self, chunk: bytes) -> None:
        data = self._partial + chunk
        *lines, self._partial = data.split(b"\n")
        self._scan(lines)

    def close(self) -> None:
        if self._partial:
            self._scan([self._partial])
            self._partial = b""

    def _scan(self, lines: Iterable[bytes]) -> None:
        for raw in lines:
            if not raw.startswith(MARKER_PREFIX.encode()):
                continue
            try:
                parsed = parse_marker_line(raw.decode("utf-8", errors="replace"))
            except OutputParseError as e:
                if self.error is None:
                    self.error = e
                continue
            if parsed:
                key, value = parsed
                self.outputs[key] = value
