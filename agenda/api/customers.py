from fastapi import APIRouter, Depends, HTTPException, status, Query
from dataclasses import asdict
from sqlalchemy.orm import Session
from typing import Optional
from agenda.database import get_db
from agenda.schemas.customer import (
    CustomerCreate,
    CustomerUpdate,
    CustomerResponse,
    CustomerCreatedResponse,
    CustomerListResponse,
)
from agenda.schemas.entitlement import PurchaseOutcomeResponse
from agenda.repositories.customer_repo import CustomerRepository
from agenda.services.entitlement_engine import EntitlementEngine
from agenda.middleware.auth import get_owner_id
from agenda.utils.helpers import is_valid_phone_number

router = APIRouter(prefix="/api/v1/customers", tags=["Customers"])


@router.post("", response_model=CustomerCreatedResponse, status_code=status.HTTP_201_CREATED)
def create_customer(
    customer_data: CustomerCreate,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db)
):
    """Create a new customer, optionally purchasing packages for them"""
    if not is_valid_phone_number(customer_data.phone):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Phone number must have 10 to 15 digits"
        )

    customer_repo = CustomerRepository(db)
    customer = customer_repo.create(
        owner_id=owner_id,
        name=customer_data.name,
        phone=customer_data.phone,
        professional_id=customer_data.professional_id,
    )

    outcomes = []
    if customer_data.package_ids:
        engine = EntitlementEngine(db)
        outcomes = engine.purchase_many(owner_id, customer.customer_id, customer_data.package_ids)

    response = CustomerCreatedResponse.model_validate(customer)
    response.purchases = [PurchaseOutcomeResponse(**asdict(outcome)) for outcome in outcomes]
    return response


@router.get("/{customer_id}", response_model=CustomerResponse)
def get_customer(
    customer_id: str,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db)
):
    """Get customer by ID"""
    customer_repo = CustomerRepository(db)
    customer = customer_repo.get_by_id(owner_id, customer_id)

    if not customer:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Customer not found"
        )

    return customer


@router.get("", response_model=CustomerListResponse)
def list_customers(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=100),
    search: Optional[str] = Query(None, description="Search in name or phone"),
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db)
):
    """List all customers with optional search"""
    customer_repo = CustomerRepository(db)
    customers, total = customer_repo.get_all(owner_id, skip=skip, limit=limit, search=search)

    return CustomerListResponse(
        total=total,
        page=(skip // limit) + 1,
        page_size=limit,
        customers=[CustomerResponse.model_validate(c) for c in customers],
    )


@router.put("/{customer_id}", response_model=CustomerResponse)
def update_customer(
    customer_id: str,
    customer_data: CustomerUpdate,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db)
):
    """Update customer"""
    if customer_data.phone is not None and not is_valid_phone_number(customer_data.phone):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Phone number must have 10 to 15 digits"
        )

    customer_repo = CustomerRepository(db)

    # Build update dict from non-None values
    update_data = {k: v for k, v in customer_data.model_dump().items() if v is not None}

    customer = customer_repo.update(owner_id, customer_id, **update_data)

    if not customer:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Customer not found"
        )

    return customer


@router.delete("/{customer_id}")
def delete_customer(
    customer_id: str,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db)
):
    """Delete customer along with their package purchases and balances"""
    engine = EntitlementEngine(db)
    removed = engine.delete_customer(owner_id, customer_id)

    return {"message": "Customer deleted successfully", "packages_removed": removed}
