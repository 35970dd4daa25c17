"""Transactional store interface for members and their billing relations."""
from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, ContextManager, Dict, Iterator, List, Optional, Protocol, Sequence, Set, Tuple

from ..billing.models import ExternalCustomer, Subscription
from ..errors import DuplicateRecordError, StoreIntegrityError
from .models import Member


class MembershipTransaction(Protocol):
    """Operations available inside one store transaction."""

    def on_commit(self, callback: Callable[[], None]) -> None:
        ...

    def on_rollback(self, callback: Callable[[], None]) -> None:
        ...

    def savepoint(self) -> ContextManager[None]:
        """Roll back only the writes made inside the block when it raises."""

    def lock_member(self, member_id: str) -> Optional[Member]:
        """Load the member row holding an exclusive lock until the transaction ends."""

    def get_member(self, *, member_id: Optional[str] = None, email: Optional[str] = None) -> Optional[Member]:
        ...

    def get_member_by_customer_id(self, customer_id: str) -> Optional[Member]:
        ...

    def insert_member(self, member: Member) -> Member:
        ...

    def update_member(self, member: Member) -> Member:
        ...

    def delete_member(self, member_id: str) -> None:
        ...

    def get_customer(self, customer_id: str) -> Optional[ExternalCustomer]:
        ...

    def list_customers(self, member_id: str) -> List[ExternalCustomer]:
        ...

    def insert_customer(self, customer: ExternalCustomer) -> ExternalCustomer:
        ...

    def upsert_customer(self, customer: ExternalCustomer) -> ExternalCustomer:
        ...

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        """Look up by the provider's subscription id."""

    def get_subscription_by_id(self, id: str) -> Optional[Subscription]:
        ...

    def list_subscriptions(self, member_id: str) -> List[Subscription]:
        ...

    def upsert_subscription(self, subscription: Subscription) -> Subscription:
        """Insert or update keyed by ``subscription_id``; an existing offer id is kept."""

    def list_product_ids(self, member_id: str) -> List[str]:
        ...

    def set_product_ids(self, member_id: str, product_ids: Sequence[str]) -> None:
        ...

    def list_newsletter_ids(self, member_id: str) -> List[str]:
        ...

    def set_newsletter_ids(self, member_id: str, newsletter_ids: Sequence[str]) -> None:
        ...


class MembershipStore(Protocol):
    def transaction(self) -> ContextManager[MembershipTransaction]:
        """Open a transaction that commits on normal exit and rolls back on error."""


_MISSING = object()


class InMemoryMembershipStore:
    """Thread-safe in-memory store suitable for tests and local development.

    Row locks are real per-member locks held until the transaction ends. Reads
    are not isolated from other open transactions.
    """

    def __init__(self, *, product_exists: Optional[Callable[[str], bool]] = None) -> None:
        self._lock = threading.RLock()
        self._member_locks: Dict[str, threading.Lock] = {}
        self._product_exists = product_exists
        self.members: Dict[str, Member] = {}
        self.customers: Dict[str, ExternalCustomer] = {}
        self.subscriptions: Dict[str, Subscription] = {}
        self.member_products: Dict[str, Tuple[str, ...]] = {}
        self.member_newsletters: Dict[str, Tuple[str, ...]] = {}

    @contextmanager
    def transaction(self) -> Iterator["InMemoryTransaction"]:
        transaction = InMemoryTransaction(self)
        try:
            yield transaction
        except BaseException:
            transaction._finish(committed=False)
            raise
        transaction._finish(committed=True)

    def _member_lock(self, member_id: str) -> threading.Lock:
        with self._lock:
            return self._member_locks.setdefault(member_id, threading.Lock())


class InMemoryTransaction:
    def __init__(self, store: InMemoryMembershipStore) -> None:
        self._store = store
        self._undo: List[Tuple[Dict[str, Any], str, Any]] = []
        self._held: Dict[str, threading.Lock] = {}
        self._on_commit: List[Callable[[], None]] = []
        self._on_rollback: List[Callable[[], None]] = []

    def on_commit(self, callback: Callable[[], None]) -> None:
        self._on_commit.append(callback)

    def on_rollback(self, callback: Callable[[], None]) -> None:
        self._on_rollback.append(callback)

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        mark = len(self._undo)
        try:
            yield
        except BaseException:
            self._undo_to(mark)
            raise

    def lock_member(self, member_id: str) -> Optional[Member]:
        if member_id not in self._held:
            lock = self._store._member_lock(member_id)
            lock.acquire()
            self._held[member_id] = lock
        return self._store.members.get(member_id)

    def get_member(self, *, member_id: Optional[str] = None, email: Optional[str] = None) -> Optional[Member]:
        if member_id is not None:
            return self._store.members.get(member_id)
        if email is not None:
            return next((m for m in self._store.members.values() if m.email.lower() == email.lower()), None)
        return None

    def get_member_by_customer_id(self, customer_id: str) -> Optional[Member]:
        customer = self._store.customers.get(customer_id)
        return self._store.members.get(customer.member_id) if customer else None

    def insert_member(self, member: Member) -> Member:
        with self._store._lock:
            if member.id in self._store.members or self.get_member(email=member.email):
                raise DuplicateRecordError(f"Member {member.email} already exists")
            self._write(self._store.members, member.id, member)
        return member

    def update_member(self, member: Member) -> Member:
        with self._store._lock:
            existing = self.get_member(email=member.email)
            if existing is not None and existing.id != member.id:
                raise DuplicateRecordError(f"Email {member.email} is already in use")
            updated = member.model_copy(update={"updated_at": datetime.now(timezone.utc)})
            self._write(self._store.members, member.id, updated)
        return updated

    def delete_member(self, member_id: str) -> None:
        with self._store._lock:
            for customer in self.list_customers(member_id):
                self._delete(self._store.customers, customer.customer_id)
            for subscription in self.list_subscriptions(member_id):
                self._delete(self._store.subscriptions, subscription.subscription_id)
            self._delete(self._store.member_products, member_id)
            self._delete(self._store.member_newsletters, member_id)
            self._delete(self._store.members, member_id)

    def get_customer(self, customer_id: str) -> Optional[ExternalCustomer]:
        return self._store.customers.get(customer_id)

    def list_customers(self, member_id: str) -> List[ExternalCustomer]:
        return [c for c in self._store.customers.values() if c.member_id == member_id]

    def insert_customer(self, customer: ExternalCustomer) -> ExternalCustomer:
        with self._store._lock:
            if customer.customer_id in self._store.customers:
                raise DuplicateRecordError(f"Customer {customer.customer_id} is already linked")
            self._write(self._store.customers, customer.customer_id, customer)
        return customer

    def upsert_customer(self, customer: ExternalCustomer) -> ExternalCustomer:
        with self._store._lock:
            self._write(self._store.customers, customer.customer_id, customer)
        return customer

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return self._store.subscriptions.get(subscription_id)

    def get_subscription_by_id(self, id: str) -> Optional[Subscription]:
        return next((s for s in self._store.subscriptions.values() if s.id == id), None)

    def list_subscriptions(self, member_id: str) -> List[Subscription]:
        return sorted(
            (s for s in self._store.subscriptions.values() if s.member_id == member_id),
            key=lambda s: s.created_at,
        )

    def upsert_subscription(self, subscription: Subscription) -> Subscription:
        with self._store._lock:
            existing = self._store.subscriptions.get(subscription.subscription_id)
            if existing is not None:
                subscription = subscription.model_copy(
                    update={
                        "id": existing.id,
                        "created_at": existing.created_at,
                        "offer_id": subscription.offer_id or existing.offer_id,
                        "updated_at": datetime.now(timezone.utc),
                    }
                )
            self._write(self._store.subscriptions, subscription.subscription_id, subscription)
        return subscription

    def list_product_ids(self, member_id: str) -> List[str]:
        return list(self._store.member_products.get(member_id, ()))

    def set_product_ids(self, member_id: str, product_ids: Sequence[str]) -> None:
        if self._store._product_exists is not None:
            missing = [pid for pid in product_ids if not self._store._product_exists(pid)]
            if missing:
                raise StoreIntegrityError(f"Unknown products: {', '.join(missing)}")
        with self._store._lock:
            self._write(self._store.member_products, member_id, tuple(product_ids))

    def list_newsletter_ids(self, member_id: str) -> List[str]:
        return list(self._store.member_newsletters.get(member_id, ()))

    def set_newsletter_ids(self, member_id: str, newsletter_ids: Sequence[str]) -> None:
        with self._store._lock:
            self._write(self._store.member_newsletters, member_id, tuple(newsletter_ids))

    def _write(self, table: Dict[str, Any], key: str, value: Any) -> None:
        self._undo.append((table, key, table.get(key, _MISSING)))
        table[key] = value

    def _delete(self, table: Dict[str, Any], key: str) -> None:
        if key not in table:
            return
        self._undo.append((table, key, table[key]))
        del table[key]

    def _undo_to(self, mark: int) -> None:
        with self._store._lock:
            while len(self._undo) > mark:
                table, key, previous = self._undo.pop()
                if previous is _MISSING:
                    table.pop(key, None)
                else:
                    table[key] = previous

    def _finish(self, *, committed: bool) -> None:
        if not committed:
            self._undo_to(0)
        self._undo.clear()
        held: Set[str] = set(self._held)
        for member_id in held:
            self._held.pop(member_id).release()
        callbacks = self._on_commit if committed else self._on_rollback
        for callback in callbacks:
            callback()


__all__ = ["InMemoryMembershipStore", "InMemoryTransaction", "MembershipStore", "MembershipTransaction"]
