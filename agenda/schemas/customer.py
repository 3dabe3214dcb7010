from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from agenda.schemas.entitlement import PurchaseOutcomeResponse


class CustomerCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    phone: str = Field(..., min_length=1, description="Phone number with area code")
    professional_id: Optional[str] = Field(None, description="Responsible professional")
    package_ids: List[str] = Field(default_factory=list, description="Catalog packages to purchase right away")


class CustomerUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    phone: Optional[str] = None
    professional_id: Optional[str] = None


class CustomerResponse(BaseModel):
    customer_id: str
    name: str
    phone: str
    professional_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CustomerListResponse(BaseModel):
    total: int
    page: int
    page_size: int
    customers: List[CustomerResponse]


class CustomerCreatedResponse(CustomerResponse):
    purchases: List[PurchaseOutcomeResponse] = []
