"""Quote-aware parsing of the ``--csv`` output printed by the Kaggle CLI."""

from __future__ import annotations

import re

_OUTSIDE = 0
_INSIDE = 1
_LINE_SPLIT_RE = re.compile(r"\r?\n")


def split_csv_line(line: str) -> list[str]:
    """Split one CSV line into fields.

    Two states: outside quotes a comma ends the field; inside quotes commas are
    literal and a doubled quote stands for one quote character.
    """
    fields: list[str] = []
    current: list[str] = []
    state = _OUTSIDE
    index = 0
    while index < len(line):
        char = line[index]
        if state == _INSIDE:
            if char == '"':
                if index + 1 < len(line) and line[index + 1] == '"':
                    current.append('"')
                    index += 1
                else:
                    state = _OUTSIDE
            else:
                current.append(char)
        elif char == '"':
            state = _INSIDE
        elif char == ",":
            fields.append("".join(current))
            current = []
        else:
            current.append(char)
        index += 1
    fields.append("".join(current))
    return fields


def normalize_header(name: str) -> str:
    return name.strip().replace('"', "").lower()


class CsvTable:
    """Rows of a CSV document whose columns are located by header name."""

    def __init__(self, header: list[str], rows: list[list[str]]):
        self.header = [normalize_header(name) for name in header]
        self.rows = rows

    def index_of(self, name: str) -> int:
        try:
            return self.header.index(name.lower())
        except ValueError:
            return -1

    def find_index(self, pattern: str) -> int:
        regex = re.compile(pattern, re.IGNORECASE)
        for idx, name in enumerate(self.header):
            if regex.search(name):
                return idx
        return -1

    def has_column(self, name: str) -> bool:
        return self.index_of(name) >= 0

    @staticmethod
    def cell(row: list[str], index: int, default: str = "") -> str:
        if index < 0 or index >= len(row):
            return default
        return row[index].strip() or default

    def column(self, row: list[str], name: str, default: str = "") -> str:
        return self.cell(row, self.index_of(name), default)

    def __iter__(self):
        return iter(self.rows)

    def __len__(self) -> int:
        return len(self.rows)


def parse_csv(text: str) -> CsvTable:
    lines = [line for line in _LINE_SPLIT_RE.split(text.strip()) if line.strip()]
    if not lines:
        return CsvTable([], [])
    header = split_csv_line(lines[0])
    return CsvTable(header, [split_csv_line(line) for line in lines[1:]])

