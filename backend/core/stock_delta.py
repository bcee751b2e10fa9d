"""
STOCK DELTA RESOLVER

Turns "what the bill used to hold" and "what the bill should hold" into
signed per-product stock adjustments:

    delta = previous_quantity - target_quantity

so a new bill consumes stock (negative), a larger edit consumes the
difference, a smaller edit or a removed line restores stock (positive).

Pure functions over immutable line lists. Nothing here reads or writes stock.
Lines may be model objects (InvoiceLine, CartLine) or plain mappings.
"""

from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Mapping

from core.errors import MalformedLineError


def line_field(line: Any, name: str) -> Any:
    if isinstance(line, Mapping):
        return line.get(name)
    return getattr(line, name, None)


def _quantity(line: Any) -> int:
    quantity = line_field(line, "quantity")
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise MalformedLineError(
            f"Line quantity must be an integer: {quantity!r}",
            {"product_id": line_field(line, "product_id"), "quantity": quantity}
        )
    return quantity


def _product_id(line: Any) -> str:
    product_id = line_field(line, "product_id")
    if not product_id or not isinstance(product_id, str):
        raise MalformedLineError(
            "Line is missing its product reference",
            {"product_id": product_id}
        )
    return product_id


def normalize_lines(lines: Iterable[Any]) -> List[Any]:
    """
    Drop lines whose quantity is zero or below.
    A line cut to zero in an edit is the same as a removed line.
    """
    kept = []
    for line in lines or []:
        _product_id(line)
        if _quantity(line) > 0:
            kept.append(line)
    return kept


def quantities_by_product(lines: Iterable[Any], allow_negative: bool = True) -> Dict[str, int]:
    """
    Total quantity per product, in first-seen order.
    Lines with quantity <= 0 are ignored; with allow_negative=False a negative
    quantity is rejected as malformed instead.
    """
    totals: "OrderedDict[str, int]" = OrderedDict()
    for line in lines or []:
        product_id = _product_id(line)
        quantity = _quantity(line)
        if quantity < 0 and not allow_negative:
            raise MalformedLineError(
                f"Saved line for {product_id} has negative quantity {quantity}",
                {"product_id": product_id, "quantity": quantity}
            )
        if quantity <= 0:
            continue
        totals[product_id] = totals.get(product_id, 0) + quantity
    return dict(totals)


def resolve_deltas(previous_lines: Iterable[Any], target_lines: Iterable[Any]) -> Dict[str, int]:
    """
    Compute signed stock deltas for moving a bill from previous_lines to
    target_lines.

    - previous empty (new bill): every target product -> -quantity
    - product in both: -(target_qty - previous_qty)
    - only in previous (removed): +previous_qty
    - only in target (added): -target_qty

    Products whose delta is zero are omitted, so resolve_deltas(A, A) == {}.

    Raises MalformedLineError for a missing product reference, a non-integer
    quantity, or a negative quantity among the previously saved lines.
    """
    previous = quantities_by_product(previous_lines, allow_negative=False)
    target = quantities_by_product(target_lines)

    deltas: Dict[str, int] = {}
    for product_id in list(previous) + [p for p in target if p not in previous]:
        delta = previous.get(product_id, 0) - target.get(product_id, 0)
        if delta != 0:
            deltas[product_id] = delta
    return deltas
