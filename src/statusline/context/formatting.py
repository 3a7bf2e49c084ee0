"""Text, number and duration formatting shared by the CLI and health output."""

import re

# CSI sequences (colors, cursor movement) and OSC sequences (window titles,
# hyperlinks) terminated by BEL or ST
_ESCAPE_SEQUENCE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]|\x1b\].*?(?:\x07|\x1b\\)", re.DOTALL)
_LINE_BREAKS = re.compile(r"[\t\n\r]+")


def _is_control(char: str) -> bool:
    code = ord(char)
    return code < 0x20 or 0x7F <= code <= 0x9F


def sanitize_for_terminal(text: str) -> str:
    """Make untrusted text safe to print on the single status line.

    Removes ANSI escape sequences and C0/C1 control characters. Tabs and
    line breaks become a single space so the output stays on one line.

    >>> sanitize_for_terminal("\\x1b[31mRed\\x1b[0m\\x00 text")
    'Red text'
    """
    text = _ESCAPE_SEQUENCE.sub("", text)
    text = _LINE_BREAKS.sub(" ", text)
    return "".join(char for char in text if not _is_control(char))


def format_token_count(tokens: int) -> str:
    """Format a token count in thousands.

    Rounds half up to the nearest thousand and never shows "0k" for a
    positive count: 0 -> "0", 500 -> "1k", 1500 -> "2k", 179000 -> "179k".
    """
    if tokens <= 0:
        return "0"
    return f"{max(1, (tokens + 500) // 1000)}k"


def format_duration(seconds: int) -> str:
    """Format seconds as "45s", "12m" or "2h15m"."""
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    return f"{seconds // 3600}h{(seconds % 3600) // 60}m"


def burn_rate(cost: float, duration_seconds: int) -> float:
    """Cost per hour, or 0.0 for sessions shorter than a minute."""
    if duration_seconds <= 60:
        return 0.0
    return cost * 3600 / duration_seconds
