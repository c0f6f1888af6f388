"""
Promotional pricing.

A promotion sets signature and essential collection prices for sunglasses
while it is switched on and inside its validity window. Only one promotion
applies at a time: the active one that started most recently.

Resolved pricing is cached per app. Admin writes publish on a PricingChannel
and the cache drops its entry when it hears about them.
"""
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from pymongo.database import Database

logger = logging.getLogger(__name__)

SIGNATURE_INDICATORS = ("signature", "premium", "luxury", "deluxe", "professional", "advanced")
ESSENTIAL_INDICATORS = ("essential", "basic", "standard", "classic", "simple", "everyday", "starter")
COLLECTIONS = ("signature", "essential")


class PricingChannel:
    """Publish/subscribe hub for promotion changes, owned by one app instance."""

    def __init__(self):
        self._subscribers: List[Callable[[str], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[str], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, reason: str):
        with self._lock:
            subscribers = list(self._subscribers)
        logger.info("Promotion pricing refresh: %s (%d subscribers)", reason, len(subscribers))
        for callback in subscribers:
            try:
                callback(reason)
            except Exception:
                logger.exception("Pricing refresh subscriber failed")

    def __len__(self):
        return len(self._subscribers)


def _aware(value: datetime) -> datetime:
    # mongo hands back naive UTC datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_promotion_active(promotion: Dict[str, Any], at: Optional[datetime] = None) -> bool:
    at = at or datetime.now(timezone.utc)
    if not promotion.get("is_active"):
        return False
    return _aware(promotion["offer_valid_from"]) <= at <= _aware(promotion["offer_valid_to"])


def resolve_active_promotion(db: Database, at: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    at = at or datetime.now(timezone.utc)
    candidates = [p for p in db["promotion"].find({"is_active": True}) if is_promotion_active(p, at)]
    if not candidates:
        return None
    return max(candidates, key=lambda p: _aware(p["offer_valid_from"]))


def pricing_from_promotion(promotion: Optional[Dict[str, Any]]) -> Optional[Dict[str, Dict[str, Any]]]:
    if not promotion:
        return None
    pricing = {}
    for collection in COLLECTIONS:
        pricing[collection] = {
            "original_price": promotion[f"{collection}_original_price"],
            "promotional_price": promotion[f"{collection}_discounted_price"],
            "price_for_two": promotion[f"{collection}_price_for_two"],
            "is_promotional": True,
            "promotion_name": promotion.get("offer_name"),
        }
    return pricing


def product_collection(product: Dict[str, Any]) -> Optional[str]:
    """signature, essential, or None when the product belongs to neither."""
    category = (product.get("category") or "").strip().lower()
    if category in COLLECTIONS:
        return category
    text = " ".join([product.get("name") or "", category, product.get("description") or ""]).lower()
    if any(word in text for word in SIGNATURE_INDICATORS):
        return "signature"
    if any(word in text for word in ESSENTIAL_INDICATORS):
        return "essential"
    return None


class PricingCache:
    def __init__(self, channel: PricingChannel, ttl: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entry = None
        self._loaded_at = 0.0
        self._lock = threading.Lock()
        self.unsubscribe = channel.subscribe(self.invalidate)

    def invalidate(self, reason: str = ""):
        with self._lock:
            self._entry = None
            self._loaded_at = 0.0

    def get(self, db: Database) -> Optional[Dict[str, Dict[str, Any]]]:
        with self._lock:
            if self._loaded_at and self._clock() - self._loaded_at < self.ttl:
                return self._entry
        pricing = pricing_from_promotion(resolve_active_promotion(db))
        with self._lock:
            self._entry = pricing
            self._loaded_at = self._clock()
        return pricing


def best_price(product: Dict[str, Any], pricing: Optional[Dict[str, Dict[str, Any]]]) -> Dict[str, Any]:
    """
    Price a customer pays for one unit right now.

    Promotional pricing wins for signature/essential sunglasses, then the
    product's own discounted price, then its list price.
    """
    regular = float(product.get("price") or 0)
    collection = product_collection(product) if product.get("product_type") == "sunglasses" else None
    if pricing and collection:
        entry = pricing[collection]
        return {
            "price": float(entry["promotional_price"]),
            "original_price": float(entry["original_price"]),
            "is_promotional": True,
            "promotion_name": entry["promotion_name"],
        }
    discounted = product.get("discounted_price")
    if discounted is not None and 0 < float(discounted) < regular:
        return {"price": float(discounted), "original_price": regular, "is_promotional": False, "promotion_name": None}
    return {"price": regular, "original_price": None, "is_promotional": False, "promotion_name": None}
