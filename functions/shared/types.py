"""
Shared Type Definitions.

TypedDict definitions for the records this service reads and writes.
"""

from typing import TypedDict


class AccountEmail(TypedDict):
    """One address on an account."""

    email: str
    isPrimary: bool


class Account(TypedDict, total=False):
    """Local account record from the accounts table."""

    uid: str
    email: str
    emails: list[AccountEmail]
    locale: str
    stripe_customer_id: str


class PlanCatalogEntry(TypedDict, total=False):
    """One plan in the plan catalog, flattened with its product."""

    plan_id: str
    plan_name: str
    product_id: str
    product_name: str
    interval: str
    interval_count: int
    amount: int
    currency: str
    plan_metadata: dict[str, str]
    product_metadata: dict[str, str]
