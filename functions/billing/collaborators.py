"""
Interfaces of the external services the webhook pipeline calls.

The dispatcher never talks to Stripe, DynamoDB, SES, SNS or the profile
service directly. It is handed implementations of these protocols at
construction time (see billing.stripe_backend and billing.aws_collaborators
for the production ones) and every call goes through Collaborators.call,
which bounds it with a timeout.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, List, Mapping, Optional, Protocol, TypeVar

from shared.constants import DEFAULT_COLLABORATOR_TIMEOUT
from shared.errors import CollaboratorTimeoutError
from shared.types import Account, PlanCatalogEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class AccountBinding:
    """Which local account a Stripe object belongs to."""

    uid: Optional[str] = None
    email: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return bool(self.uid)


UNRESOLVED = AccountBinding()


class PaymentsBackend(Protocol):
    async def verify_webhook_signature(self, payload: str, signature: str, secret: str) -> Dict[str, Any]:
        ...

    async def fetch_plan_catalog(self) -> List[PlanCatalogEntry]:
        ...

    async def fetch_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def expand_resource(self, resource: Any, resource_type: str) -> Optional[Dict[str, Any]]:
        ...

    async def find_plan_by_id(self, plan_id: str) -> Optional[PlanCatalogEntry]:
        ...


class AccountStore(Protocol):
    async def lookup_account(self, stripe_object: Mapping[str, Any]) -> AccountBinding:
        ...

    async def fetch_account_by_uid(self, uid: str) -> Account:
        ...

    async def fetch_account_by_email(self, email: str) -> Account:
        ...

    async def list_devices(self, uid: str) -> List[str]:
        ...

    async def create_local_customer(self, uid: str, customer: Mapping[str, Any]) -> None:
        ...


class CacheInvalidator(Protocol):
    async def invalidate_customer_projection(self, uid: str, email: Optional[str]) -> None:
        ...

    async def invalidate_profile_cache(self, uid: str) -> None:
        ...


class PushNotifier(Protocol):
    async def notify_devices(self, uid: str, device_ids: List[str]) -> None:
        ...


class Mailer(Protocol):
    async def send(
        self, template: str, recipients: List[str], account: Mapping[str, Any], context: Mapping[str, Any]
    ) -> None:
        ...


class StatusSink(Protocol):
    async def publish(self, topic: str, record: Mapping[str, Any]) -> None:
        ...


class EventLedger(Protocol):
    async def claim(self, event) -> bool:
        ...

    async def release(self, event) -> None:
        ...

    async def record(self, event, status: str, error: Optional[str] = None) -> None:
        ...


@dataclass
class Collaborators:
    """Everything the pipeline talks to, plus the per-call timeout."""

    payments: PaymentsBackend
    accounts: AccountStore
    cache: CacheInvalidator
    push: PushNotifier
    mailer: Mailer
    status: StatusSink
    timeout: float = DEFAULT_COLLABORATOR_TIMEOUT

    async def call(self, operation: str, awaitable: Awaitable[T]) -> T:
        """
        Await a collaborator call with the configured timeout.

        Raises:
            CollaboratorTimeoutError: the call did not finish in time
        """
        start = time.monotonic()
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(
                f"{operation} timed out after {self.timeout}s",
                extra={"operation": operation, "latency_ms": (time.monotonic() - start) * 1000},
            )
            raise CollaboratorTimeoutError(operation, self.timeout) from None
