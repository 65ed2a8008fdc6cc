"""
Killfeed Output Formatters

Formatting helpers shared by CLI command output.
"""

from datetime import datetime, timezone
from typing import Optional


def format_isk(value: float, precision: int = 2) -> str:
    """
    Format ISK value with appropriate suffix (B/M/K).

    Args:
        value: ISK amount
        precision: Decimal places (default: 2)

    Returns:
        Formatted string like "1.50B", "250.00M", "15.00K", "100.00"

    Examples:
        >>> format_isk(1500000000)
        '1.50B'
        >>> format_isk(15000)
        '15.00K'
    """
    if value >= 1_000_000_000:
        return f"{value / 1_000_000_000:.{precision}f}B"
    elif value >= 1_000_000:
        return f"{value / 1_000_000:.{precision}f}M"
    elif value >= 1_000:
        return f"{value / 1_000:.{precision}f}K"
    return f"{value:.{precision}f}"


def format_datetime(dt: Optional[datetime]) -> Optional[str]:
    """
    Format datetime for JSON output.

    Args:
        dt: Timezone-aware datetime, or None

    Returns:
        ISO string like "2026-01-15T12:30:00Z", or None
    """
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def get_utc_now() -> datetime:
    """Current datetime with UTC timezone."""
    return datetime.now(timezone.utc)


def get_utc_timestamp() -> str:
    """
    Get current UTC timestamp string.

    Returns:
        ISO format timestamp like "2026-01-15T12:30:00Z"
    """
    return format_datetime(get_utc_now())  # type: ignore[return-value]
