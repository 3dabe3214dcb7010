from pydantic import BaseModel, Field, model_validator
from typing import Optional, List
from datetime import datetime
from decimal import Decimal


class PurchaseRequest(BaseModel):
    package_ids: List[str] = Field(..., min_length=1, description="Catalog packages to purchase")


class PurchaseOutcomeResponse(BaseModel):
    package_id: str
    ok: bool
    customer_package_id: Optional[str] = None
    error_code: Optional[str] = None
    message: Optional[str] = None


class PurchaseResponse(BaseModel):
    purchased: int
    failed: int
    results: List[PurchaseOutcomeResponse]


class RenewRequest(BaseModel):
    """Snapshot of a previous purchase: the package name, or the purchase id to read it from"""
    package_name: Optional[str] = Field(None, min_length=1)
    customer_package_id: Optional[str] = None
    intent_id: Optional[str] = Field(None, max_length=100, description="Client-generated purchase intent id")

    @model_validator(mode="after")
    def check_snapshot(self):
        if not self.package_name and not self.customer_package_id:
            raise ValueError("package_name or customer_package_id is required")
        return self


class ServiceBalanceResponse(BaseModel):
    service_id: str
    service_name: Optional[str] = None
    quantity: Optional[int] = None
    sessions_remaining: int


class CustomerPackageResponse(BaseModel):
    customer_package_id: str
    customer_id: str
    package_id: str
    package_available: bool
    package_name: Optional[str] = None
    package_price: Optional[Decimal] = None
    package_price_display: Optional[str] = None
    expires_after_days: Optional[int] = None
    purchase_date: datetime
    purchase_date_display: Optional[str] = None
    expiration_date: Optional[datetime] = None
    expiration_date_display: Optional[str] = None
    paid: bool
    status: str
    services: List[ServiceBalanceResponse] = []


class CustomerPackagesResponse(BaseModel):
    customer_id: str
    packages: List[CustomerPackageResponse]


class ConsumeResponse(BaseModel):
    customer_package_id: str
    service_id: str
    sessions_remaining: int


class SaleResponse(BaseModel):
    customer_package_id: str
    customer_id: str
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    package_id: str
    package_name: Optional[str] = None
    package_price: Optional[Decimal] = None
    package_price_display: Optional[str] = None
    purchase_date: datetime
    purchase_date_display: Optional[str] = None
    expiration_date: Optional[datetime] = None


class SaleListResponse(BaseModel):
    total: int
    page: int
    page_size: int
    sales: List[SaleResponse]
