"""In-app purchase capability used by the reservation flow.

``reserve`` runs the store's payment sheet for a product and returns the
purchase token, or ``None`` if the user cancelled. ``finish`` acknowledges a
token once the registry has accepted the claim.
"""

from __future__ import annotations

from typing import Optional, Protocol

from handle_sdk.errors import PurchaseUnavailableError


class PurchaseBackend(Protocol):
    def reserve(self, product_id: str) -> Optional[str]: ...

    def finish(self, purchase_token: str) -> None: ...


class NoopPurchaseBackend:
    """Backend for platforms without in-app purchases."""

    def reserve(self, product_id: str) -> Optional[str]:
        raise PurchaseUnavailableError(f"in-app purchases are not available (product {product_id})")

    def finish(self, purchase_token: str) -> None:
        return None


class StaticTokenPurchaseBackend:
    """Hands out a fixed token; useful with a registry that accepts test purchases."""

    def __init__(self, token: str | None) -> None:
        self.token = token
        self.requested: list[str] = []
        self.finished: list[str] = []

    def reserve(self, product_id: str) -> Optional[str]:
        self.requested.append(product_id)
        return self.token

    def finish(self, purchase_token: str) -> None:
        self.finished.append(purchase_token)


__all__ = ["PurchaseBackend", "NoopPurchaseBackend", "StaticTokenPurchaseBackend"]
