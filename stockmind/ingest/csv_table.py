"""Delimited text parsing for Sellerboard exports.

Sellerboard hands out comma-separated files for some accounts and
semicolon-separated ones for others (European locale settings), and product
titles routinely carry quotes, delimiters and line breaks. ``parse_csv``
picks the delimiter and hands tokenizing to :mod:`csv`.
"""

from __future__ import annotations

import csv
import io

BOM = "\ufeff"
QUOTE = '"'


def detect_delimiter(text: str) -> str:
    """Pick ``;`` only when it outnumbers ``,`` on the first line outside quotes."""
    commas = semicolons = 0
    in_quotes = False
    for char in text:
        if char == QUOTE:
            in_quotes = not in_quotes
        elif in_quotes:
            continue
        elif char in "\r\n":
            break
        elif char == ",":
            commas += 1
        elif char == ";":
            semicolons += 1
    return ";" if semicolons > commas else ","


def parse_csv(text: str) -> list[dict[str, str]]:
    """Parse ``text`` into records keyed by the trimmed header row.

    Field values are returned as the reader unescaped them, untrimmed;
    normalization trims values when it looks them up.
    """
    if not text or not text.strip():
        return []
    text = text.strip()
    rows = csv.reader(io.StringIO(text, newline=""), delimiter=detect_delimiter(text))
    header_row = next(rows, None)
    if not header_row:
        return []
    headers = [field.strip() for field in header_row]
    headers[0] = headers[0].lstrip(BOM).strip()

    records: list[dict[str, str]] = []
    for row in rows:
        if not any(field.strip() for field in row):
            continue
        records.append({header: (row[idx] if idx < len(row) else "") for idx, header in enumerate(headers)})
    return records
