"""
Display formatting context.

Formatting is an explicit argument: callers pass a FormatContext to
Money.format_pesos and format_duration instead of reaching for a process-wide
locale object.
"""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class FormatContext(BaseModel):
    """Locale-ish settings used when rendering amounts and durations."""

    model_config = ConfigDict(frozen=True)

    locale: str = "es-MX"
    currency_symbol: str = "$"
    group_separator: str = ","
    decimal_separator: str = "."
    currency_suffix: str = " pesos"
    minute_singular: str = "minuto"
    minute_plural: str = "minutos"
    hour_singular: str = "hora"
    hour_plural: str = "horas"

    def group_number(self, text: str) -> str:
        """
        Swap the separators of a ``{:,.2f}`` rendering for this locale's.

        Args:
            text: Number rendered with ',' grouping and '.' decimals

        Returns:
            str: Number using the configured separators
        """
        placeholder = "\x00"
        return (
            text.replace(",", placeholder)
            .replace(".", self.decimal_separator)
            .replace(placeholder, self.group_separator)
        )


ES_MX = FormatContext()

EN_US = FormatContext(
    locale="en-US",
    currency_suffix=" MXN",
    minute_singular="minute",
    minute_plural="minutes",
    hour_singular="hour",
    hour_plural="hours",
)


def format_duration(minutes: int, ctx: FormatContext) -> str:
    """
    Render a parked duration, e.g. ``2 horas 5 minutos``.

    Args:
        minutes: Whole minutes, non-negative
        ctx: Formatting context

    Returns:
        str: Human readable duration
    """
    if minutes < 0:
        raise ValueError("Duration cannot be negative")

    def _minutes(value: int) -> str:
        label = ctx.minute_singular if value == 1 else ctx.minute_plural
        return f"{value} {label}"

    if minutes < 60:
        return _minutes(minutes)

    hours, remaining = divmod(minutes, 60)
    hour_label = ctx.hour_singular if hours == 1 else ctx.hour_plural
    if remaining == 0:
        return f"{hours} {hour_label}"
    return f"{hours} {hour_label} {_minutes(remaining)}"
