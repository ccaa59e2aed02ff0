"""Repair of line breaks that are not valid ICS folding."""
import re

# A break is legitimate when the next line starts a property, is a folded
# continuation (leading whitespace), opens/closes a component, or ends the text.
_ERRONEOUS_BREAK = re.compile(r'\r?\n(?![A-Z-]+[:;]|[ \t]|END:|BEGIN:|\Z)')


def repair_ics_lines(text: str) -> str:
    """
    Join fragments left behind by raw newlines inside property values.

    Some feeds write multi-line DESCRIPTION or SUMMARY values without
    folding them, so the continuation is read as a bogus property line.
    Each such break is replaced by a single space.

    Args:
        text: Raw ICS text

    Returns:
        Repaired ICS text
    """
    return _ERRONEOUS_BREAK.sub(' ', text)


def count_erroneous_breaks(text: str) -> int:
    """Number of line breaks repair_ics_lines would join."""
    return len(_ERRONEOUS_BREAK.findall(text))
