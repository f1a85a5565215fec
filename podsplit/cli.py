"""
podsplit CLI Utilities - formatted terminal output

Usage:
    from podsplit.cli import print_header, print_table, print_success

    print_header("POD5 Split - Non-Duplicated Reads Only")
    print_table(["Chunk", "Reads"], rows, alignments=["l", "r"])
    print_success("All chunks verified")
"""

import os
import shutil
import sys
from typing import Any, List, Optional


def supports_color() -> bool:
    """Check if terminal supports color output"""
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("TERM", "") == "dumb":
        return False
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


class Colors:
    """ANSI color codes"""
    RESET = "\033[0m"
    BOLD = "\033[1m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"


def colorize(text: str, *codes: str) -> str:
    """Apply color codes to text"""
    if not supports_color():
        return text
    return "".join(codes) + text + Colors.RESET


def terminal_width() -> int:
    return shutil.get_terminal_size((80, 24)).columns


# =============================================================================
# Formatted Output
# =============================================================================

def print_header(title: str, char: str = "=", width: Optional[int] = None) -> None:
    """Print a header with decoration"""
    width = width or min(terminal_width(), 72)
    print(char * width)
    print(title)
    print(char * width)


def print_section(title: str, char: str = "-") -> None:
    """Print a section header"""
    width = min(terminal_width(), 72)
    print()
    print(title)
    print(char * width)


def print_success(message: str) -> None:
    print(f"{colorize('✓', Colors.GREEN)} {message}")


def print_error(message: str, file=None) -> None:
    print(f"{colorize('✗', Colors.RED)} {message}", file=file or sys.stderr)


def print_warning(message: str) -> None:
    print(f"{colorize('⚠', Colors.YELLOW)} {message}")


def print_item(key: str, value: Any, indent: int = 2) -> None:
    """Print a key-value item"""
    prefix = " " * indent
    print(f"{prefix}{colorize(key + ':', Colors.BOLD)} {value}")


def print_table(
    headers: List[str],
    rows: List[List[Any]],
    alignments: Optional[List[str]] = None,
    indent: int = 2,
) -> None:
    """
    Print a formatted table.

    Args:
        headers: Column headers
        rows: Table rows
        alignments: Column alignments ('l', 'r', 'c') per column
        indent: Left margin
    """
    if not rows:
        print(" " * indent + "(no data)")
        return

    col_widths = [len(str(h)) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            if i < len(col_widths):
                col_widths[i] = max(col_widths[i], len(str(cell)))

    if not alignments:
        alignments = ["l"] * len(headers)

    def format_cell(value: Any, width: int, align: str) -> str:
        s = str(value)
        if align == "r":
            return s.rjust(width)
        elif align == "c":
            return s.center(width)
        return s.ljust(width)

    prefix = " " * indent
    header_line = " | ".join(
        format_cell(h, col_widths[i], alignments[i]) for i, h in enumerate(headers)
    )
    print(prefix + header_line)
    print(prefix + "-" * len(header_line))
    for row in rows:
        print(prefix + " | ".join(
            format_cell(cell, col_widths[i], alignments[i]) for i, cell in enumerate(row)
        ))


def format_count(n: int) -> str:
    """Thousands separators, like printf \"%'d\""""
    return f"{n:,}"
