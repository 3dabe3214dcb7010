"""
Service-package entitlement engine.

Sells customers bundles of pre-paid sessions, derives whether a purchase is
active, expired or exhausted, renews purchases by catalog name and removes
purchases together with their balances.

Every public method takes the tenant id (``owner_id``) explicitly and runs as
one transaction: repository calls only flush, the engine commits or rolls back.
"""
import enum
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Union

from sqlalchemy.exc import (
    DisconnectionError,
    IntegrityError,
    OperationalError,
    SQLAlchemyError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.orm import Session

from agenda.config import settings
from agenda.exceptions import (
    CatalogMismatchError,
    EntitlementError,
    InconsistentStateError,
    IntentConflictError,
    InvalidPackageError,
    NoSessionsRemainingError,
    NotFoundError,
    PackageExpiredError,
    PartialWriteFailure,
    TransientRepositoryError,
)
from agenda.models.customer_package import CustomerPackage, PackageServiceBalance
from agenda.models.package import Package
from agenda.repositories.catalog_repo import CatalogRepository
from agenda.repositories.customer_repo import CustomerRepository
from agenda.repositories.entitlement_repo import EntitlementRepository
from agenda.utils.helpers import as_utc

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (OperationalError, DisconnectionError, PoolTimeoutError)


class EntitlementStatus(str, enum.Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"


@dataclass
class ServiceEntitlement:
    service_id: str
    service_name: Optional[str]
    quantity: Optional[int]  # sessions sold; None when the balance row is missing
    sessions_remaining: int


@dataclass
class CustomerEntitlement:
    customer_package_id: str
    customer_id: str
    package_id: str
    package_available: bool
    package_name: Optional[str]
    package_price: Optional[object]
    expires_after_days: Optional[int]
    purchase_date: datetime
    expiration_date: Optional[datetime]
    paid: bool
    status: EntitlementStatus
    services: List[ServiceEntitlement] = field(default_factory=list)


@dataclass
class PurchaseOutcome:
    package_id: str
    ok: bool
    customer_package_id: Optional[str] = None
    error_code: Optional[str] = None
    message: Optional[str] = None


def compute_expiration(purchase_date: datetime, expires_after_days: Optional[int]) -> Optional[datetime]:
    if expires_after_days is None:
        return None
    return purchase_date + timedelta(days=expires_after_days)


def is_expired(expiration_date: Optional[datetime], now: datetime) -> bool:
    return expiration_date is not None and as_utc(expiration_date) < as_utc(now)


def derive_status(
    expiration_date: Optional[datetime],
    balances: Iterable[Union[int, PackageServiceBalance]],
    now: datetime,
) -> EntitlementStatus:
    """
    Classify a purchase for display. Expiration is checked before exhaustion,
    so a purchase that is both expired and used up reports EXPIRED. A purchase
    without any balance rows counts as exhausted.
    """
    if is_expired(expiration_date, now):
        return EntitlementStatus.EXPIRED

    remaining = [b if isinstance(b, int) else b.sessions_remaining for b in balances]
    if all(count == 0 for count in remaining):
        return EntitlementStatus.EXHAUSTED

    return EntitlementStatus.ACTIVE


def _added_after_purchase(spec, purchase: CustomerPackage) -> bool:
    """True when the catalog package gained this service after the purchase was made."""
    if spec.created_at is None or purchase.created_at is None:
        return False
    return as_utc(spec.created_at) > as_utc(purchase.created_at)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EntitlementEngine:
    def __init__(self, db: Session, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self.clock = clock or _utc_now
        self.customers = CustomerRepository(db)
        self.catalog = CatalogRepository(db)
        self.entitlements = EntitlementRepository(db)

    def now(self) -> datetime:
        return as_utc(self.clock())

    # Transaction handling
    def _rollback(self, operation: str) -> None:
        try:
            self.db.rollback()
        except SQLAlchemyError as e:
            logger.critical(f"ROLLBACK FAILED during {operation}; manual reconciliation required: {e}")
            raise InconsistentStateError(
                f"{operation} failed and could not be rolled back; data needs manual reconciliation",
                detail={"operation": operation},
            ) from e

    def _write(self, operation: str, work: Callable, intent_id: Optional[str] = None):
        """
        Run ``work`` and commit it as one transaction.

        Transient failures are retried as a whole only when an intent id makes
        the retry idempotent; otherwise they are surfaced to the caller.
        """
        attempts = max(1, settings.REPOSITORY_RETRY_ATTEMPTS) if intent_id else 1
        for attempt in range(1, attempts + 1):
            try:
                result = work()
                self.db.commit()
                return result
            except EntitlementError:
                self._rollback(operation)
                raise
            except TRANSIENT_ERRORS as e:
                self._rollback(operation)
                if attempt < attempts:
                    wait = settings.REPOSITORY_RETRY_DELAY * attempt
                    logger.warning(
                        f"{operation} attempt {attempt} hit a transient error ({e}); retrying in {wait}s"
                    )
                    time.sleep(wait)
                    continue
                raise TransientRepositoryError(
                    f"{operation} failed: database temporarily unavailable",
                    detail={"operation": operation, "attempts": attempt},
                ) from e
            except SQLAlchemyError as e:
                self._rollback(operation)
                logger.error(f"{operation} failed and was rolled back: {e}")
                raise PartialWriteFailure(
                    f"{operation} failed; no changes were saved",
                    detail={"operation": operation},
                ) from e

    # Purchase and renewal
    def _sell(
        self,
        owner_id: str,
        customer_id: str,
        package: Package,
        intent_id: Optional[str],
    ) -> CustomerPackage:
        if not package.services:
            raise InvalidPackageError(
                f"Package '{package.name}' has no services and cannot be sold",
                detail={"package_id": package.package_id},
            )

        purchase_date = self.now()
        customer_package = self.entitlements.insert_customer_package(
            owner_id=owner_id,
            customer_id=customer_id,
            package_id=package.package_id,
            purchase_date=purchase_date,
            expiration_date=compute_expiration(purchase_date, package.expires_after_days),
            paid=True,
            intent_id=intent_id,
        )
        self.entitlements.insert_balances(
            customer_package.customer_package_id,
            [(spec.service_id, spec.quantity) for spec in package.services],
        )
        return customer_package

    def _require_customer(self, owner_id: str, customer_id: str) -> None:
        if self.customers.get_by_id(owner_id, customer_id) is None:
            raise NotFoundError("Customer", customer_id)

    @staticmethod
    def _replay(
        existing: CustomerPackage,
        intent_id: str,
        customer_id: str,
        package_id: Optional[str],
    ) -> CustomerPackage:
        """Return the purchase already made under ``intent_id`` if it is the same request."""
        if existing.customer_id != customer_id or (package_id is not None and existing.package_id != package_id):
            logger.warning(
                f"Purchase intent {intent_id} reused by customer {customer_id}; "
                f"it already belongs to {existing.customer_package_id}"
            )
            raise IntentConflictError(intent_id)
        logger.info(f"Purchase intent {intent_id} already fulfilled by {existing.customer_package_id}")
        return existing

    def _purchase_with_intent(
        self,
        operation: str,
        owner_id: str,
        intent_id: Optional[str],
        resolve: Callable[[], Package],
        customer_id: str,
        package_id: Optional[str] = None,
    ) -> CustomerPackage:
        """
        package_id is the catalog package the request names, when known up front.
        Renewals resolve it by name at write time, so only the customer is compared.
        """
        def work():
            if intent_id:
                existing = self.entitlements.get_by_intent(owner_id, intent_id)
                if existing is not None:
                    return self._replay(existing, intent_id, customer_id, package_id)
            self._require_customer(owner_id, customer_id)
            return self._sell(owner_id, customer_id, resolve(), intent_id)

        try:
            return self._write(operation, work, intent_id=intent_id)
        except PartialWriteFailure as e:
            # A concurrent request with the same intent id won the unique constraint
            if intent_id and isinstance(e.__cause__, IntegrityError):
                existing = self.entitlements.get_by_intent(owner_id, intent_id)
                if existing is not None:
                    return self._replay(existing, intent_id, customer_id, package_id)
            raise

    def purchase(
        self,
        owner_id: str,
        customer_id: str,
        package_id: str,
        intent_id: Optional[str] = None,
    ) -> CustomerPackage:
        """Sell an active catalog package to a customer with one balance per included service."""
        def resolve() -> Package:
            package = self.catalog.get_package(owner_id, package_id)
            if package is None or not package.active:
                raise NotFoundError("Package", package_id)
            return package

        customer_package = self._purchase_with_intent(
            "purchase", owner_id, intent_id, resolve, customer_id, package_id=package_id
        )
        logger.info(
            f"Customer {customer_id} purchased package {package_id} "
            f"as {customer_package.customer_package_id}"
        )
        return customer_package

    def purchase_many(self, owner_id: str, customer_id: str, package_ids: List[str]) -> List[PurchaseOutcome]:
        """Each package is its own transaction; failures are reported per package."""
        outcomes = []
        for package_id in package_ids:
            try:
                customer_package = self.purchase(owner_id, customer_id, package_id)
                outcomes.append(PurchaseOutcome(
                    package_id=package_id,
                    ok=True,
                    customer_package_id=customer_package.customer_package_id,
                ))
            except EntitlementError as e:
                logger.warning(f"Purchase of {package_id} for customer {customer_id} failed: {e.message}")
                outcomes.append(PurchaseOutcome(
                    package_id=package_id,
                    ok=False,
                    error_code=e.code,
                    message=e.message,
                ))
        return outcomes

    def renew(
        self,
        owner_id: str,
        customer_id: str,
        package_name: Optional[str],
        intent_id: Optional[str] = None,
    ) -> CustomerPackage:
        """
        Re-purchase a package by its catalog name.

        The current catalog definition is sold, which may differ in price or
        services from what the customer bought before.
        """
        def resolve() -> Package:
            package = None
            if package_name is not None:
                package = self.catalog.get_active_package_by_name(owner_id, package_name)
            if package is None:
                raise CatalogMismatchError(package_name)
            return package

        customer_package = self._purchase_with_intent("renew", owner_id, intent_id, resolve, customer_id)
        logger.info(
            f"Customer {customer_id} renewed '{package_name}' "
            f"as {customer_package.customer_package_id}"
        )
        return customer_package

    def renew_purchase(
        self,
        owner_id: str,
        customer_id: str,
        customer_package_id: str,
        intent_id: Optional[str] = None,
    ) -> CustomerPackage:
        """Renew from an earlier purchase, resolving by the name of its catalog package."""
        previous = self.entitlements.get_customer_package(owner_id, customer_package_id)
        if previous is None or previous.customer_id != customer_id:
            raise NotFoundError("Customer package", customer_package_id)

        package = self.catalog.get_package(owner_id, previous.package_id)
        return self.renew(owner_id, customer_id, package.name if package else None, intent_id=intent_id)

    # Deletion
    def delete_package(self, owner_id: str, customer_package_id: str) -> int:
        """Delete a purchase and its balances. Returns the number of balance rows removed."""
        def work():
            customer_package = self.entitlements.get_customer_package(owner_id, customer_package_id)
            if customer_package is None:
                raise NotFoundError("Customer package", customer_package_id)
            removed = self.entitlements.delete_balances(customer_package_id)
            self.entitlements.delete_customer_package(customer_package)
            return removed

        removed = self._write("delete_package", work)
        logger.info(f"Deleted customer package {customer_package_id} with {removed} balance(s)")
        return removed

    def delete_customer(self, owner_id: str, customer_id: str) -> int:
        """Delete a customer together with every purchase and balance. Returns purchases removed."""
        def work():
            customer = self.customers.get_by_id(owner_id, customer_id)
            if customer is None:
                raise NotFoundError("Customer", customer_id)
            purchases = self.entitlements.get_customer_packages(owner_id, customer_id)
            for customer_package in purchases:
                self.entitlements.delete_balances(customer_package.customer_package_id)
                self.entitlements.delete_customer_package(customer_package)
            self.customers.delete(customer)
            return len(purchases)

        removed = self._write("delete_customer", work)
        logger.info(f"Deleted customer {customer_id} and {removed} package purchase(s)")
        return removed

    # Consumption
    def consume_session(self, owner_id: str, customer_package_id: str, service_id: str) -> int:
        """Use one session of a service. Returns the sessions left afterwards."""
        def work():
            customer_package = self.entitlements.get_customer_package(owner_id, customer_package_id)
            if customer_package is None:
                raise NotFoundError("Customer package", customer_package_id)
            if is_expired(customer_package.expiration_date, self.now()):
                raise PackageExpiredError(
                    "This package has expired",
                    detail={"customer_package_id": customer_package_id},
                )

            balance = self.entitlements.get_balance(customer_package_id, service_id)
            if balance is None:
                raise NotFoundError("Package service", f"{customer_package_id}/{service_id}")

            if not self.entitlements.decrement_balance(customer_package_id, service_id):
                raise NoSessionsRemainingError(
                    "No sessions of this service remain in the package",
                    detail={"customer_package_id": customer_package_id, "service_id": service_id},
                )
            self.db.refresh(balance)
            return balance.sessions_remaining

        return self._write("consume_session", work)

    # Reads
    @staticmethod
    def _service_entitlement(balance: PackageServiceBalance, names: Dict[str, str]) -> ServiceEntitlement:
        return ServiceEntitlement(
            service_id=balance.service_id,
            service_name=names.get(balance.service_id),
            quantity=balance.sessions_purchased,
            sessions_remaining=balance.sessions_remaining,
        )

    def load_entitlements(
        self,
        owner_id: str,
        customer_ids: List[str],
        active_only: bool = False,
    ) -> Dict[str, List[CustomerEntitlement]]:
        """
        Paid purchases for each customer, with catalog details, per-service
        balances and derived status.

        active_only drops purchases whose expiration date has passed (the view
        used when booking new appointments); otherwise the full history is
        returned. The services of a purchase are the ones it was sold with:
        services added to the catalog package later are not listed, a missing
        balance row for a service sold with it reads as zero sessions, and a
        deleted catalog package is reported as unavailable rather than skipped.
        """
        now = self.now()
        result: Dict[str, List[CustomerEntitlement]] = {customer_id: [] for customer_id in customer_ids}

        purchases = self.entitlements.get_active_paid_packages(owner_id, list(result))
        if active_only:
            purchases = [p for p in purchases if not is_expired(p.expiration_date, now)]
        if not purchases:
            return result

        stored = defaultdict(dict)
        for balance in self.entitlements.get_balances([p.customer_package_id for p in purchases]):
            stored[balance.customer_package_id][balance.service_id] = balance

        packages = self.catalog.get_packages(owner_id, [p.package_id for p in purchases])

        service_ids = set()
        for package in packages.values():
            service_ids.update(spec.service_id for spec in package.services)
        for balances in stored.values():
            service_ids.update(balances)
        names = self.catalog.get_service_names(list(service_ids))

        for purchase in purchases:
            package = packages.get(purchase.package_id)
            balances = stored.get(purchase.customer_package_id, {})
            services = []
            listed = set()

            if package is not None:
                for spec in package.services:
                    listed.add(spec.service_id)
                    balance = balances.get(spec.service_id)
                    if balance is not None:
                        services.append(self._service_entitlement(balance, names))
                        continue
                    if _added_after_purchase(spec, purchase):
                        # Not part of what was sold
                        continue
                    logger.warning(
                        f"Missing balance for {purchase.customer_package_id}/{spec.service_id}; "
                        "reporting 0 sessions"
                    )
                    services.append(ServiceEntitlement(
                        service_id=spec.service_id,
                        service_name=names.get(spec.service_id),
                        quantity=None,
                        sessions_remaining=0,
                    ))

            for service_id, balance in balances.items():
                if service_id not in listed:
                    services.append(self._service_entitlement(balance, names))

            result[purchase.customer_id].append(CustomerEntitlement(
                customer_package_id=purchase.customer_package_id,
                customer_id=purchase.customer_id,
                package_id=purchase.package_id,
                package_available=package is not None,
                package_name=package.name if package else None,
                package_price=package.price if package else None,
                expires_after_days=package.expires_after_days if package else None,
                purchase_date=as_utc(purchase.purchase_date),
                expiration_date=as_utc(purchase.expiration_date),
                paid=bool(purchase.paid),
                status=derive_status(
                    purchase.expiration_date,
                    [s.sessions_remaining for s in services],
                    now,
                ),
                services=services,
            ))

        return result

    def list_sales(self, owner_id: str, skip: int = 0, limit: int = 100) -> tuple[list, int]:
        return self.entitlements.list_sales(owner_id, skip=skip, limit=limit)
