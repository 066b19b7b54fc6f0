"""Line parsers: one line of text in, one record (or a failure) out.

Parsers never raise on malformed input. They return a ``ParseFailure`` so the
batcher can count the line and keep reading.
"""

import json
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, List, Optional, Union

from fileflow.jobs.models import utcnow

MAX_FAILURE_CONTENT = 100


@dataclass
class ParsedRecord:
    line_number: int
    content: Optional[str] = None
    data: Optional[Any] = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class ParseFailure:
    line_number: int
    content: str
    reason: str

    @classmethod
    def for_line(cls, line: str, line_number: int, reason: str) -> "ParseFailure":
        return cls(line_number=line_number, content=line[:MAX_FAILURE_CONTENT], reason=reason)


ParseResult = Union[ParsedRecord, ParseFailure]
LineParser = Callable[[str, int], ParseResult]


def split_csv_values(line: str, delimiter: str = ",") -> List[str]:
    """Split one CSV line, honouring quotes.

    A doubled quote inside a quoted field yields one literal quote, and the
    delimiter inside quotes does not split. Fields are whitespace-trimmed.
    """
    values = []
    current = []
    in_quotes = False
    i = 0
    while i < len(line):
        char = line[i]
        if char == '"':
            if in_quotes and i + 1 < len(line) and line[i + 1] == '"':
                current.append('"')
                i += 1
            else:
                in_quotes = not in_quotes
        elif char == delimiter and not in_quotes:
            values.append("".join(current).strip())
            current = []
        else:
            current.append(char)
        i += 1
    values.append("".join(current).strip())
    return values


def parse_csv_line(line: str, line_number: int) -> ParseResult:
    return ParsedRecord(line_number=line_number, data=split_csv_values(line))


def parse_json_line(line: str, line_number: int) -> ParseResult:
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        return ParseFailure.for_line(line, line_number, f"Invalid JSON: {e.msg}")
    except (ValueError, RecursionError) as e:
        # oversized integer literals and pathologically deep nesting
        return ParseFailure.for_line(line, line_number, f"Invalid JSON: {e}")
    return ParsedRecord(line_number=line_number, data=data)


def parse_text_line(line: str, line_number: int) -> ParseResult:
    return ParsedRecord(line_number=line_number, content=line)


_PARSERS_BY_EXTENSION = {
    "csv": parse_csv_line,
    "json": parse_json_line,
    "jsonl": parse_json_line,
    "txt": parse_text_line,
    "log": parse_text_line,
}


def get_parser_for_file(filename: str) -> LineParser:
    """Pick a parser from the file extension; unknown extensions are plain text."""
    ext = os.path.splitext(filename or "")[1].lower().lstrip(".")
    return _PARSERS_BY_EXTENSION.get(ext, parse_text_line)
