"""
Shopping cart aggregation.

Pure in-memory: lines are product snapshots (dicts with at least id, name,
price and stock) plus a quantity. Quantities are clamped to the product's
stock; whenever that happens the mutating call returns a StockNotice.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from schemas import StockNotice

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def _parse_quantity(qty) -> Optional[int]:
    if isinstance(qty, bool):
        return None
    if isinstance(qty, int):
        return qty
    if isinstance(qty, float) and qty.is_integer():
        return int(qty)
    if isinstance(qty, str):
        try:
            return int(qty.strip())
        except ValueError:
            return None
    return None


class Cart:
    def __init__(self):
        self._lines: List[Dict[str, Any]] = []

    def _find(self, product_id: str) -> Optional[Dict[str, Any]]:
        for line in self._lines:
            if line["id"] == product_id:
                return line
        return None

    def add(self, product: Dict[str, Any], qty: int = 1) -> Optional[StockNotice]:
        if qty < 1:
            return None
        stock = max(int(product.get("stock", 0)), 0)
        existing = self._find(product["id"])
        if existing:
            existing["stock"] = stock
            wanted = existing["quantity"] + qty
            if wanted > stock:
                existing["quantity"] = stock
                if stock == 0:
                    self.remove(product["id"])
                return StockNotice(product_id=product["id"], name=product.get("name", ""),
                                   requested=wanted, available=stock)
            existing["quantity"] = wanted
            return None

        if qty > stock:
            if stock > 0:
                self._lines.append({**product, "quantity": stock})
            return StockNotice(product_id=product["id"], name=product.get("name", ""),
                               requested=qty, available=stock)
        if qty > 0:
            self._lines.append({**product, "quantity": qty})
        return None

    def remove(self, product_id: str):
        self._lines = [line for line in self._lines if line["id"] != product_id]

    def set_quantity(self, product_id: str, qty) -> Optional[StockNotice]:
        line = self._find(product_id)
        if line is None:
            return None
        quantity = _parse_quantity(qty)
        if quantity is None or quantity <= 0:
            self.remove(product_id)
            return None
        stock = max(int(line.get("stock", 0)), 0)
        if quantity > stock:
            line["quantity"] = stock
            if stock == 0:
                self.remove(product_id)
            return StockNotice(product_id=product_id, name=line.get("name", ""),
                               requested=quantity, available=stock)
        line["quantity"] = quantity
        return None

    def clear(self):
        self._lines = []

    @property
    def items(self) -> List[Dict[str, Any]]:
        return [dict(line) for line in self._lines]

    @property
    def total(self) -> Decimal:
        return sum((to_money(line["price"]) * line["quantity"] for line in self._lines), Decimal("0.00"))

    @property
    def item_count(self) -> int:
        return sum(line["quantity"] for line in self._lines)

    def __len__(self):
        return len(self._lines)

    def __bool__(self):
        return bool(self._lines)
