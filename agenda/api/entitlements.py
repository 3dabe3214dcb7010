from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session
from dataclasses import asdict
from agenda.database import get_db
from agenda.middleware.auth import get_owner_id
from agenda.repositories.customer_repo import CustomerRepository
from agenda.services.entitlement_engine import CustomerEntitlement, EntitlementEngine
from agenda.schemas.entitlement import (
    PurchaseRequest,
    PurchaseResponse,
    PurchaseOutcomeResponse,
    RenewRequest,
    CustomerPackageResponse,
    CustomerPackagesResponse,
    ServiceBalanceResponse,
    ConsumeResponse,
    SaleResponse,
    SaleListResponse,
)
from agenda.utils.helpers import as_utc, format_currency, to_display_date

router = APIRouter(prefix="/api/v1", tags=["Customer Packages"])


def get_entitlement_engine(db: Session = Depends(get_db)) -> EntitlementEngine:
    return EntitlementEngine(db)


def _require_customer(db: Session, owner_id: str, customer_id: str) -> None:
    if not CustomerRepository(db).get_by_id(owner_id, customer_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Customer not found"
        )


def _entitlement_response(entitlement: CustomerEntitlement) -> CustomerPackageResponse:
    return CustomerPackageResponse(
        customer_package_id=entitlement.customer_package_id,
        customer_id=entitlement.customer_id,
        package_id=entitlement.package_id,
        package_available=entitlement.package_available,
        package_name=entitlement.package_name,
        package_price=entitlement.package_price,
        package_price_display=format_currency(entitlement.package_price),
        expires_after_days=entitlement.expires_after_days,
        purchase_date=entitlement.purchase_date,
        purchase_date_display=to_display_date(entitlement.purchase_date),
        expiration_date=entitlement.expiration_date,
        expiration_date_display=to_display_date(entitlement.expiration_date),
        paid=entitlement.paid,
        status=entitlement.status.value,
        services=[ServiceBalanceResponse(**asdict(s)) for s in entitlement.services],
    )


@router.get("/customers/{customer_id}/packages", response_model=CustomerPackagesResponse)
def list_customer_packages(
    customer_id: str,
    active_only: bool = Query(False, description="Hide packages whose expiration date has passed"),
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
    engine: EntitlementEngine = Depends(get_entitlement_engine)
):
    """Paid packages of a customer with remaining sessions per service"""
    _require_customer(db, owner_id, customer_id)
    entitlements = engine.load_entitlements(owner_id, [customer_id], active_only=active_only)

    return CustomerPackagesResponse(
        customer_id=customer_id,
        packages=[_entitlement_response(e) for e in entitlements[customer_id]],
    )


@router.post("/customers/{customer_id}/packages", response_model=PurchaseResponse)
def purchase_packages(
    customer_id: str,
    request_data: PurchaseRequest,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
    engine: EntitlementEngine = Depends(get_entitlement_engine)
):
    """Purchase one or more packages; each succeeds or fails on its own"""
    _require_customer(db, owner_id, customer_id)
    outcomes = engine.purchase_many(owner_id, customer_id, request_data.package_ids)

    purchased = sum(1 for outcome in outcomes if outcome.ok)
    return PurchaseResponse(
        purchased=purchased,
        failed=len(outcomes) - purchased,
        results=[PurchaseOutcomeResponse(**asdict(outcome)) for outcome in outcomes],
    )


@router.post(
    "/customers/{customer_id}/packages/renew",
    response_model=CustomerPackageResponse,
    status_code=status.HTTP_201_CREATED,
)
def renew_package(
    customer_id: str,
    request_data: RenewRequest,
    owner_id: str = Depends(get_owner_id),
    engine: EntitlementEngine = Depends(get_entitlement_engine)
):
    """Buy again a package the customer held before, matched by catalog name"""
    if request_data.package_name:
        customer_package = engine.renew(
            owner_id, customer_id, request_data.package_name, intent_id=request_data.intent_id
        )
    else:
        customer_package = engine.renew_purchase(
            owner_id, customer_id, request_data.customer_package_id, intent_id=request_data.intent_id
        )

    entitlements = engine.load_entitlements(owner_id, [customer_id])
    for entitlement in entitlements[customer_id]:
        if entitlement.customer_package_id == customer_package.customer_package_id:
            return _entitlement_response(entitlement)

    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Renewed package could not be read back"
    )


@router.get("/customer-packages/sales", response_model=SaleListResponse)
def list_package_sales(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=100),
    owner_id: str = Depends(get_owner_id),
    engine: EntitlementEngine = Depends(get_entitlement_engine)
):
    """Paid package purchases, newest first"""
    rows, total = engine.list_sales(owner_id, skip=skip, limit=limit)

    return SaleListResponse(
        total=total,
        page=(skip // limit) + 1,
        page_size=limit,
        sales=[
            SaleResponse(
                customer_package_id=row.customer_package_id,
                customer_id=row.customer_id,
                customer_name=row.customer_name,
                customer_phone=row.customer_phone,
                package_id=row.package_id,
                package_name=row.package_name,
                package_price=row.package_price,
                package_price_display=format_currency(row.package_price),
                purchase_date=as_utc(row.purchase_date),
                purchase_date_display=to_display_date(row.purchase_date),
                expiration_date=as_utc(row.expiration_date),
            )
            for row in rows
        ],
    )


@router.delete("/customer-packages/{customer_package_id}")
def delete_customer_package(
    customer_package_id: str,
    owner_id: str = Depends(get_owner_id),
    engine: EntitlementEngine = Depends(get_entitlement_engine)
):
    """Delete a purchased package and its remaining sessions"""
    removed = engine.delete_package(owner_id, customer_package_id)
    return {"message": "Package deleted successfully", "balances_removed": removed}


@router.post(
    "/customer-packages/{customer_package_id}/services/{service_id}/consume",
    response_model=ConsumeResponse,
)
def consume_session(
    customer_package_id: str,
    service_id: str,
    owner_id: str = Depends(get_owner_id),
    engine: EntitlementEngine = Depends(get_entitlement_engine)
):
    """Use one session of a service from a purchased package"""
    remaining = engine.consume_session(owner_id, customer_package_id, service_id)
    return ConsumeResponse(
        customer_package_id=customer_package_id,
        service_id=service_id,
        sessions_remaining=remaining,
    )
