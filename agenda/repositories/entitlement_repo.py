"""
Persistence for customer purchases and their per-service balances.

Nothing here commits. Callers group these calls into one transaction and
commit or roll back themselves.
"""
from sqlalchemy.orm import Session
from sqlalchemy import update
from typing import Optional, List, Iterable, Tuple
from datetime import datetime
import secrets
from agenda.models.customer import Customer
from agenda.models.customer_package import CustomerPackage, PackageServiceBalance
from agenda.models.package import Package


class EntitlementRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_customer_package(self, owner_id: str, customer_package_id: str) -> Optional[CustomerPackage]:
        return self.db.query(CustomerPackage).filter(
            CustomerPackage.user_id == owner_id,
            CustomerPackage.customer_package_id == customer_package_id,
        ).first()

    def get_by_intent(self, owner_id: str, intent_id: str) -> Optional[CustomerPackage]:
        return self.db.query(CustomerPackage).filter(
            CustomerPackage.user_id == owner_id,
            CustomerPackage.intent_id == intent_id,
        ).first()

    def get_active_paid_packages(self, owner_id: str, customer_ids: List[str]) -> List[CustomerPackage]:
        """Paid purchases of the given customers, oldest first"""
        if not customer_ids:
            return []
        return self.db.query(CustomerPackage).filter(
            CustomerPackage.user_id == owner_id,
            CustomerPackage.customer_id.in_(customer_ids),
            CustomerPackage.paid == True,
        ).order_by(CustomerPackage.purchase_date, CustomerPackage.id).all()

    def get_customer_packages(self, owner_id: str, customer_id: str) -> List[CustomerPackage]:
        """Every purchase of a customer, paid or not"""
        return self.db.query(CustomerPackage).filter(
            CustomerPackage.user_id == owner_id,
            CustomerPackage.customer_id == customer_id,
        ).all()

    def get_balances(self, customer_package_ids: List[str]) -> List[PackageServiceBalance]:
        if not customer_package_ids:
            return []
        return self.db.query(PackageServiceBalance).filter(
            PackageServiceBalance.customer_package_id.in_(customer_package_ids)
        ).order_by(PackageServiceBalance.id).all()

    def get_balance(self, customer_package_id: str, service_id: str) -> Optional[PackageServiceBalance]:
        return self.db.query(PackageServiceBalance).filter(
            PackageServiceBalance.customer_package_id == customer_package_id,
            PackageServiceBalance.service_id == service_id,
        ).first()

    def insert_customer_package(
        self,
        owner_id: str,
        customer_id: str,
        package_id: str,
        purchase_date: datetime,
        expiration_date: Optional[datetime],
        paid: bool = True,
        intent_id: Optional[str] = None,
    ) -> CustomerPackage:
        customer_package = CustomerPackage(
            customer_package_id=f"cpkg_{secrets.token_hex(8)}",
            user_id=owner_id,
            customer_id=customer_id,
            package_id=package_id,
            purchase_date=purchase_date,
            expiration_date=expiration_date,
            paid=paid,
            intent_id=intent_id,
        )
        self.db.add(customer_package)
        self.db.flush()
        return customer_package

    def insert_balances(
        self,
        customer_package_id: str,
        quantities: Iterable[Tuple[str, int]],
    ) -> List[PackageServiceBalance]:
        """quantities: (service_id, sessions) pairs"""
        balances = [
            PackageServiceBalance(
                customer_package_id=customer_package_id,
                service_id=service_id,
                sessions_purchased=sessions,
                sessions_remaining=sessions,
            )
            for service_id, sessions in quantities
        ]
        self.db.add_all(balances)
        self.db.flush()
        return balances

    def delete_balances(self, customer_package_id: str) -> int:
        return self.db.query(PackageServiceBalance).filter(
            PackageServiceBalance.customer_package_id == customer_package_id
        ).delete(synchronize_session=False)

    def delete_customer_package(self, customer_package: CustomerPackage) -> None:
        self.db.delete(customer_package)
        self.db.flush()

    def decrement_balance(self, customer_package_id: str, service_id: str) -> int:
        """Take one session if any remain. Returns the number of rows updated (0 or 1)."""
        result = self.db.execute(
            update(PackageServiceBalance)
            .where(
                PackageServiceBalance.customer_package_id == customer_package_id,
                PackageServiceBalance.service_id == service_id,
                PackageServiceBalance.sessions_remaining > 0,
            )
            .values(sessions_remaining=PackageServiceBalance.sessions_remaining - 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def list_sales(self, owner_id: str, skip: int = 0, limit: int = 100) -> tuple[list, int]:
        """Paid purchases joined with customer and catalog package, newest first"""
        query = (
            self.db.query(
                CustomerPackage.customer_package_id,
                CustomerPackage.customer_id,
                CustomerPackage.package_id,
                CustomerPackage.purchase_date,
                CustomerPackage.expiration_date,
                CustomerPackage.paid,
                Customer.name.label("customer_name"),
                Customer.phone.label("customer_phone"),
                Package.name.label("package_name"),
                Package.price.label("package_price"),
            )
            .outerjoin(Customer, Customer.customer_id == CustomerPackage.customer_id)
            .outerjoin(Package, Package.package_id == CustomerPackage.package_id)
            .filter(CustomerPackage.user_id == owner_id, CustomerPackage.paid == True)
        )
        total = query.count()
        rows = query.order_by(
            CustomerPackage.purchase_date.desc(), CustomerPackage.id.desc()
        ).offset(skip).limit(limit).all()
        return rows, total
