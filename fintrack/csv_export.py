from __future__ import annotations

import csv
import io
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from fintrack.aggregator import CategoryShare

CSV_HEADER = ["Category", "Amount", "Percentage"]
TWO_PLACES = Decimal("0.01")


def export_category_csv(rows: Iterable[CategoryShare]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for row in rows:
        writer.writerow(
            [
                row.category,
                format_amount(row.amount),
                format_percentage(row.percentage),
            ]
        )
    return buffer.getvalue()


def format_amount(value: Decimal) -> str:
    return f"{_two_places(value):f}"


def format_percentage(value: Decimal) -> str:
    return f"{_two_places(value):f}%"


def _two_places(value: Decimal | int | float | str) -> Decimal:
    coerced = value if isinstance(value, Decimal) else Decimal(str(value))
    rounded = coerced.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    return abs(rounded) if rounded.is_zero() else rounded
