"""
matcher.py -- Device-to-vulnerability matching predicates.

Matching is deliberately permissive: a name matches when either side,
case-folded, contains the other. A device matches an entry only when its
manufacturer matches some vendor AND its model matches some product.

Known limitation: short or generic tokens over-match, and punctuation
differences under-match ("scanner-9000" never matches "Scanner 9000 Pro").
Both are preserved as-is for compatibility with existing link data.
"""

from collections.abc import Iterable

from .models import VulnerabilityEntry


def is_substring_match(a: str, b: str) -> bool:
    """Case-folded containment in either direction. Empty input never matches."""
    if not a or not b:
        return False
    a, b = a.casefold(), b.casefold()
    return a in b or b in a


def vendor_match(manufacturer: str, vendors: Iterable[str]) -> bool:
    return any(is_substring_match(manufacturer, v) for v in vendors)


def product_match(model: str, products: Iterable[str]) -> bool:
    return any(is_substring_match(model, p) for p in products)


def device_matches(manufacturer: str, model: str, entry: VulnerabilityEntry) -> bool:
    if not manufacturer or not model:
        return False
    return vendor_match(manufacturer, entry.vendors) and product_match(model, entry.products)
