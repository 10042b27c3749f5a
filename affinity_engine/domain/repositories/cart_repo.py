# affinity_engine/domain/repositories/cart_repo.py
import threading
from datetime import datetime
from typing import Dict, List, Optional

from affinity_engine.core.errors import NotFoundError
from affinity_engine.domain.models.cart import Cart, CartStatus, RecoveryAttempt


class CartRepo:
    """
    Active / abandoned carts keyed by cart id.
    Records are frozen; every write stores a new copy under the lock.
    Status moves active -> abandoned (a recovery attempt was made) -> recovered
    (the cart came back to `optimize_cart`).
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._carts: Dict[str, Cart] = {}

    def touch(self, cart: Cart, *, current_value: float, now: datetime) -> Cart:
        """
        Refresh the record seen by `optimize_cart`: new items and value, bumped
        attempt counter. A returning abandoned cart becomes `recovered`.
        Recovery attempts are carried over, never reset.

        Args:
            cart: Cart as sent by the client
            current_value: Σ price × quantity computed for this request
            now: Time of the update, drives the idle-time computation
        """
        with self._lock:
            prev = self._carts.get(cart.id)
            status: CartStatus = "active"
            if prev is not None and prev.status in ("abandoned", "recovered"):
                status = "recovered"
            stored = cart.model_copy(update={
                "current_value": current_value,
                "last_updated": now,
                "optimization_attempts": (prev.optimization_attempts if prev else 0) + 1,
                "recovery_attempts": list(prev.recovery_attempts) if prev else list(cart.recovery_attempts),
                "status": status,
            })
            self._carts[cart.id] = stored
            return stored

    def get(self, cart_id: str) -> Optional[Cart]:
        with self._lock:
            return self._carts.get(cart_id)

    def require(self, cart_id: str) -> Cart:
        """Like `get`, but a missing cart raises NotFoundError."""
        cart = self.get(cart_id)
        if cart is None:
            raise NotFoundError(f"Cart '{cart_id}' not found")
        return cart

    def list_carts(self) -> List[Cart]:
        with self._lock:
            return list(self._carts.values())

    def append_recovery_attempt(self, cart_id: str, attempt: RecoveryAttempt) -> Cart:
        """
        Record a recovery attempt and mark the cart abandoned.

        Args:
            cart_id: Cart the attempt was made for
            attempt: Strategy, incentives and time of the attempt
        """
        with self._lock:
            cart = self._carts.get(cart_id)
            if cart is None:
                raise NotFoundError(f"Cart '{cart_id}' not found")
            updated = cart.model_copy(update={
                "recovery_attempts": list(cart.recovery_attempts) + [attempt],
                "status": "abandoned",
            })
            self._carts[cart_id] = updated
            return updated

    def clear(self) -> None:
        with self._lock:
            self._carts.clear()
