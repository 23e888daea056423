"""
Remote entitlement source package.

Wraps the purchases and redeem-codes endpoints of the backend, the system of
record for entitlements.
"""

from .entitlements_client import RemoteEntitlementSource

__all__ = ["RemoteEntitlementSource"]
