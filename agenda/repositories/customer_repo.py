from sqlalchemy.orm import Session
from typing import Optional, List
from datetime import datetime, timezone
from agenda.models.customer import Customer
import secrets


class CustomerRepository:
    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        owner_id: str,
        name: str,
        phone: str,
        professional_id: Optional[str] = None,
    ) -> Customer:
        """Create a new customer"""
        customer = Customer(
            customer_id=f"cust_{secrets.token_hex(8)}",
            user_id=owner_id,
            name=name,
            phone=phone,
            professional_id=professional_id,
        )
        self.db.add(customer)
        self.db.commit()
        self.db.refresh(customer)
        return customer

    def get_by_id(self, owner_id: str, customer_id: str) -> Optional[Customer]:
        """Get customer by ID"""
        return self.db.query(Customer).filter(
            Customer.user_id == owner_id,
            Customer.customer_id == customer_id,
        ).first()

    def get_all(
        self,
        owner_id: str,
        skip: int = 0,
        limit: int = 100,
        search: Optional[str] = None,
    ) -> tuple[List[Customer], int]:
        """Get all customers with optional search on name or phone"""
        query = self.db.query(Customer).filter(Customer.user_id == owner_id)

        if search:
            search_term = f"%{search}%"
            query = query.filter(
                Customer.name.ilike(search_term) |
                Customer.phone.ilike(search_term)
            )

        total = query.count()
        customers = query.order_by(Customer.name).offset(skip).limit(limit).all()
        return customers, total

    def update(
        self,
        owner_id: str,
        customer_id: str,
        **kwargs
    ) -> Optional[Customer]:
        """Update customer"""
        customer = self.get_by_id(owner_id, customer_id)
        if not customer:
            return None

        for key, value in kwargs.items():
            if hasattr(customer, key) and value is not None:
                setattr(customer, key, value)

        customer.updated_at = datetime.now(timezone.utc)
        self.db.commit()
        self.db.refresh(customer)
        return customer

    def delete(self, customer: Customer) -> None:
        """Stage the customer row for deletion; the caller commits."""
        self.db.delete(customer)
        self.db.flush()
