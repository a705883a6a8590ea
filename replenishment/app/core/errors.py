r"""replenishment/app/core/errors.py

Domain exceptions raised by the policy engine services."""

from __future__ import annotations


class PolicyEngineError(Exception):
    """Base class for policy engine failures."""


class InsufficientDemandData(PolicyEngineError):
    """The demand history window holds no usable observations.

    Callers must keep the previously stored demand values instead of
    treating the SKU as having zero demand.
    """

    def __init__(self, sku: str, window_days: int) -> None:
        self.sku = sku
        self.window_days = window_days
        super().__init__(
            f"No recent demand data for SKU '{sku}' in the last {window_days} days."
        )


class PolicyStoreError(PolicyEngineError):
    """The policy table could not be persisted."""
