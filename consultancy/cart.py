"""Shopping cart persisted as JSON inside a client-held storage mapping.

In the API the storage is the signed Flask session cookie, so the cart never
touches the database until checkout.
"""
import json
from decimal import Decimal

from .utils import PENNY, clean_text, parse_positive_int

CART_STORAGE_KEY = 'consultancy_cart'
CART_ITEM_FIELDS = ('id', 'title', 'slug', 'price_from', 'price_label', 'pillar_name', 'pillar_slug', 'quantity')
MAX_CART_ITEMS = 50
MAX_ITEM_QUANTITY = 99


def _normalize_item(raw):
    if not isinstance(raw, dict):
        return None
    item_id = parse_positive_int(raw.get('id'))
    if item_id is None:
        return None
    try:
        price = float(raw.get('price_from') or 0)
    except (TypeError, ValueError):
        price = 0.0
    quantity = parse_positive_int(raw.get('quantity')) or 1
    return {
        'id': item_id,
        'title': clean_text(raw.get('title'), 200),
        'slug': clean_text(raw.get('slug'), 220),
        'price_from': max(0.0, price),
        'price_label': clean_text(raw.get('price_label'), 80),
        'pillar_name': clean_text(raw.get('pillar_name'), 120),
        'pillar_slug': clean_text(raw.get('pillar_slug'), 140),
        'quantity': min(quantity, MAX_ITEM_QUANTITY),
    }


class Cart:
    def __init__(self, storage, key=CART_STORAGE_KEY):
        self.storage = storage
        self.key = key
        self.items = self._load()

    def _load(self):
        raw = self.storage.get(self.key)
        if not raw:
            return []
        try:
            parsed = json.loads(raw) if isinstance(raw, str) else raw
        except (TypeError, json.JSONDecodeError):
            return []
        if not isinstance(parsed, list):
            return []
        items = []
        seen = set()
        for entry in parsed:
            item = _normalize_item(entry)
            if item and item['id'] not in seen:
                items.append(item)
                seen.add(item['id'])
        return items[:MAX_CART_ITEMS]

    def save(self):
        self.storage[self.key] = json.dumps(self.items)

    def _find(self, item_id):
        for item in self.items:
            if item['id'] == item_id:
                return item
        return None

    def is_in_cart(self, item_id):
        return self._find(item_id) is not None

    def add_item(self, item):
        """Insert an item with quantity 1; re-adding an item already present is a no-op."""
        normalized = _normalize_item({**item, 'quantity': 1})
        if normalized is None:
            raise ValueError('Cart items need a positive integer id.')
        if self.is_in_cart(normalized['id']):
            return False
        if len(self.items) >= MAX_CART_ITEMS:
            raise ValueError('Cart is full.')
        self.items.append(normalized)
        self.save()
        return True

    def update_quantity(self, item_id, quantity):
        item = self._find(item_id)
        if item is None:
            return False
        if quantity <= 0:
            return self.remove_item(item_id)
        item['quantity'] = max(1, min(int(quantity), MAX_ITEM_QUANTITY))
        self.save()
        return True

    def remove_item(self, item_id):
        before = len(self.items)
        self.items = [item for item in self.items if item['id'] != item_id]
        if len(self.items) == before:
            return False
        self.save()
        return True

    def clear(self):
        self.items = []
        self.storage.pop(self.key, None)

    @property
    def is_empty(self):
        return not self.items

    @property
    def total_items(self):
        return sum(item['quantity'] for item in self.items)

    @property
    def total_price(self):
        total = sum((Decimal(str(item['price_from'])) * item['quantity'] for item in self.items), Decimal('0'))
        return float(total.quantize(PENNY))

    def to_dict(self):
        return {
            'items': [dict(item) for item in self.items],
            'total_items': self.total_items,
            'total_price': self.total_price,
            'is_empty': self.is_empty,
        }

    def order_lines(self):
        return [{'serviceId': item['id'], 'quantity': item['quantity']} for item in self.items]
