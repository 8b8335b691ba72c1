"""
Plain-text output helpers for command handlers.
"""

import shutil
from typing import List, Tuple, Optional, TextIO


def _fit_widths(headers: List[str], rows: List[List[str]], max_width: int) -> List[int]:
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row[:len(widths)]):
            widths[i] = max(widths[i], len(cell))

    separators = (len(widths) - 1) * 2
    available = max_width - 4 - separators
    if sum(widths) + separators > max_width - 4 and available > 0:
        scale = available / sum(widths)
        widths = [max(4, int(w * scale)) for w in widths]
    return widths


def _truncate(cell: str, width: int) -> str:
    if len(cell) <= width:
        return cell
    if width > 3:
        return cell[:width - 3] + '...'
    return cell[:width]


def draw_table(title: str, headers: List[str], rows: List[List[str]],
               file: Optional[TextIO] = None, max_width: Optional[int] = None) -> None:
    """
    Print a titled table with aligned columns.

    Cells wider than the terminal allows are truncated with an ellipsis.
    """
    if not rows:
        print("No data to display.", file=file)
        return

    max_width = max_width or shutil.get_terminal_size((80, 24)).columns
    widths = _fit_widths(headers, rows, max_width)
    content_width = sum(widths) + (len(widths) - 1) * 2

    print(title, file=file)
    print('=' * max(len(title), content_width), file=file)
    print('  '.join(h.ljust(widths[i]) for i, h in enumerate(headers)).rstrip(), file=file)
    print('-' * content_width, file=file)
    for row in rows:
        cells = [_truncate(cell, widths[i]).ljust(widths[i]) for i, cell in enumerate(row[:len(widths)])]
        print('  '.join(cells).rstrip(), file=file)


def draw_info_section(title: str, fields: List[Tuple[str, str]], file: Optional[TextIO] = None) -> None:
    """Print a titled block of label/value pairs."""
    print(title, file=file)
    print('=' * len(title), file=file)
    if not fields:
        return
    label_width = max(len(label) for label, _ in fields)
    for label, value in fields:
        print(f"{label.ljust(label_width)} : {value}", file=file)
    print(file=file)
