"""
Progress Sync — progress text codec

Legacy orders kept per-item progress inside the free-text description column,
one item per line:

    Bolt M8 (Qty: 10) [Delivered: 4] [Stock: ordered] [Status: completed]

Every bracket annotation is optional and may appear in any order. The items
table is the system of record now; this codec only imports old descriptions
and renders the description column from the item rows.

Hand-edited lines that do not parse are kept as a single item of quantity 1,
never dropped.
"""

import logging
import re

from pydantic import BaseModel

from .errors import ParseTolerant

logger = logging.getLogger(__name__)

STOCK_STATUSES = ("awaiting", "ordered", "in-stock")
DEFAULT_STOCK_STATUS = "awaiting"

_LINE_RE = re.compile(r"^(?P<name>.+?)\s*\(Qty:\s*(?P<quantity>\d+)\)(?P<annotations>.*)$")
_DELIVERED_RE = re.compile(r"\[Delivered:\s*(\d+)\s*\]", re.IGNORECASE)
_STOCK_RE = re.compile(r"\[Stock:\s*([A-Za-z-]+)\s*\]", re.IGNORECASE)
_COMPLETED_RE = re.compile(r"\[Status:\s*completed\s*\]", re.IGNORECASE)


class ProgressLine(BaseModel):
    name: str
    quantity: int = 1
    delivered: int = 0
    stock_status: str = DEFAULT_STOCK_STATUS
    completed: bool = False


def decode_with_issues(
    text: str | None,
) -> tuple[list[ProgressLine], list[ParseTolerant]]:
    """Decode a description, returning the lines and every recovery made."""
    lines: list[ProgressLine] = []
    issues: list[ParseTolerant] = []
    if not text:
        return lines, issues

    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue

        match = _LINE_RE.match(line)
        if not match:
            issues.append(ParseTolerant(line, "unparsable line kept as quantity 1"))
            lines.append(ProgressLine(name=line))
            continue

        quantity = int(match["quantity"])
        if quantity < 1:
            issues.append(ParseTolerant(line, "non-positive quantity raised to 1"))
            quantity = 1

        annotations = match["annotations"]
        delivered = 0
        delivered_match = _DELIVERED_RE.search(annotations)
        if delivered_match:
            delivered = int(delivered_match.group(1))
            if delivered > quantity:
                issues.append(ParseTolerant(line, "delivered clamped to quantity"))
                delivered = quantity

        stock_status = DEFAULT_STOCK_STATUS
        stock_match = _STOCK_RE.search(annotations)
        if stock_match:
            token = stock_match.group(1).lower()
            if token in STOCK_STATUSES:
                stock_status = token
            else:
                issues.append(ParseTolerant(line, f"unknown stock status {token!r}"))

        lines.append(
            ProgressLine(
                name=match["name"].strip(),
                quantity=quantity,
                delivered=delivered,
                stock_status=stock_status,
                completed=bool(_COMPLETED_RE.search(annotations)),
            )
        )

    for issue in issues:
        logger.debug("Recovered progress line: %s", issue)
    return lines, issues


def decode(text: str | None) -> list[ProgressLine]:
    lines, _ = decode_with_issues(text)
    return lines


def encode_line(line: ProgressLine) -> str:
    parts = [f"{line.name} (Qty: {line.quantity})"]
    if line.delivered > 0:
        parts.append(f"[Delivered: {line.delivered}]")
    parts.append(f"[Stock: {line.stock_status}]")
    if line.completed:
        parts.append("[Status: completed]")
    return " ".join(parts)


def encode(lines: list[ProgressLine]) -> str:
    return "\n".join(encode_line(line) for line in lines)
