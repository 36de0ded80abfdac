from dataclasses import asdict, dataclass
from typing import Dict

from config import TAX_RATE


@dataclass
class CartLine:
    menu_item_id: int
    title: str
    price: float
    quantity: int = 1
    image_url: str = ""

    @property
    def line_total(self):
        return self.price * self.quantity


class Cart:
    """Shopping cart for one checkout. Lines keep the order items were added in."""

    def __init__(self, tax_rate=TAX_RATE):
        self.tax_rate = tax_rate
        self._lines: Dict[int, CartLine] = {}

    def is_empty(self):
        return not self._lines

    def add(self, item, quantity=1):
        """Add a menu item; adding it again bumps its quantity"""
        line = self._lines.get(item.id)
        if line is None:
            self._lines[item.id] = CartLine(
                menu_item_id=item.id,
                title=item.title,
                price=item.price,
                quantity=quantity,
                image_url=item.image_url or "",
            )
        else:
            line.quantity += quantity

    @property
    def item_count(self):
        return sum(line.quantity for line in self._lines.values())

    @property
    def subtotal(self):
        return round(sum(line.line_total for line in self._lines.values()), 2)

    @property
    def tax(self):
        return round(self.subtotal * self.tax_rate, 2)

    @property
    def total(self):
        return round(self.subtotal + self.tax, 2)

    def as_order_items(self):
        return [asdict(line) for line in self._lines.values()]
