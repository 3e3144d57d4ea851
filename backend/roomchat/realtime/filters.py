"""Row filters for realtime subscriptions.

A subscription may narrow the rows it receives with a filter in the
change-feed syntax ``column=op.value``, e.g. ``room_id=eq.<uuid>`` or
``user_id=in.(a,b)``.

Values are compared as text, the way they appear on the wire. Ordering
operators compare numerically when both sides are numbers; ISO timestamps
order correctly as text.
"""
from dataclasses import dataclass
from typing import Any, Optional, Tuple, Union

OPERATORS = ("eq", "neq", "lt", "lte", "gt", "gte", "in")


def _as_text(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _ordered(left: str, right: str) -> Tuple[Any, Any]:
    try:
        return float(left), float(right)
    except ValueError:
        return left, right


@dataclass(frozen=True)
class RowFilter:
    column: str
    op: str
    value: Union[str, Tuple[str, ...]]

    def matches(self, row: dict) -> bool:
        if self.column not in row:
            return False
        actual = _as_text(row[self.column])
        if self.op == "in":
            return actual in self.value
        if self.op == "eq":
            return actual == self.value
        if self.op == "neq":
            return actual != self.value
        left, right = _ordered(actual, self.value)
        if self.op == "lt":
            return left < right
        if self.op == "lte":
            return left <= right
        if self.op == "gt":
            return left > right
        return left >= right

    def __str__(self) -> str:
        if self.op == "in":
            return f"{self.column}=in.({','.join(self.value)})"
        return f"{self.column}={self.op}.{self.value}"


def parse_filter(text: Optional[str]) -> Optional[RowFilter]:
    """Parse ``column=op.value``; empty input means no filter.

    Raises:
        ValueError: The filter is malformed or uses an unknown operator.
    """
    if text is None:
        return None
    if not isinstance(text, str):
        raise ValueError(f"Invalid filter: {text!r} (expected a string)")
    if not text.strip():
        return None
    column, sep, expression = text.strip().partition("=")
    op, dot, value = expression.partition(".")
    if not sep or not dot or not column:
        raise ValueError(f"Invalid filter: {text!r} (expected column=op.value)")
    if op not in OPERATORS:
        raise ValueError(f"Unsupported filter operator: {op!r}")

    if op == "in":
        if not (value.startswith("(") and value.endswith(")")):
            raise ValueError(f"Invalid filter: {text!r} (expected column=in.(a,b))")
        items = tuple(item.strip().strip('"') for item in value[1:-1].split(",") if item.strip())
        return RowFilter(column.strip(), op, items)
    return RowFilter(column.strip(), op, value)
