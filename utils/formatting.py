"""
Formatting utilities.
"""

from datetime import datetime, timezone
from typing import Optional


def format_currency(amount: float, currency: str = "USD") -> str:
    """
    Format an amount as currency, dropping cents for whole amounts.

    Args:
        amount: The amount in whole units (e.g., dollars, not cents).
        currency: Currency code (default USD).

    Returns:
        Formatted currency string.
    """
    symbols = {
        "USD": "$",
        "GBP": "£",
        "EUR": "€",
    }
    symbol = symbols.get(currency, currency + " ")
    if float(amount).is_integer():
        return f"{symbol}{int(amount):,}"
    return f"{symbol}{amount:,.2f}"


def format_percent(value: float, decimals: int = 1) -> str:
    """
    Format a ratio (0.25) as a percentage ("25.0%").

    Args:
        value: The ratio.
        decimals: Number of decimal places.

    Returns:
        Formatted percentage string.
    """
    return f"{value * 100:.{decimals}f}%"


def format_age(moment: Optional[datetime], now: Optional[datetime] = None) -> str:
    """Human-readable age such as "5m ago" or "3d ago"; "never" for None."""
    if moment is None:
        return "never"
    now = now or datetime.now(timezone.utc)
    seconds = max(0, int((now - moment).total_seconds()))
    if seconds < 60:
        return f"{seconds}s ago"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    return f"{seconds // 86400}d ago"
