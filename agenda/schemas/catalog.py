from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from decimal import Decimal


class ServiceCreate(BaseModel):
    name: str = Field(..., min_length=1, description="Service name")
    description: Optional[str] = None
    price: Decimal = Field(..., ge=0, description="Service price")
    duration_minutes: int = Field(60, gt=0, description="Duration in minutes")
    default_commission: Optional[Decimal] = Field(None, ge=0, le=100, description="Default commission percentage")
    active: bool = True


class ServiceUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0)
    duration_minutes: Optional[int] = Field(None, gt=0)
    default_commission: Optional[Decimal] = Field(None, ge=0, le=100)
    active: Optional[bool] = None


class ServiceResponse(BaseModel):
    service_id: str
    name: str
    description: Optional[str] = None
    price: Decimal
    duration_minutes: int
    default_commission: Optional[Decimal] = None
    active: Optional[bool] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ServiceListResponse(BaseModel):
    total: int
    page: int
    page_size: int
    services: List[ServiceResponse]


class PackageServiceSpec(BaseModel):
    service_id: str = Field(..., description="Service included in the package")
    quantity: int = Field(..., gt=0, description="Number of sessions")


class PackageServiceResponse(BaseModel):
    service_id: str
    quantity: int
    service_name: Optional[str] = None


class PackageCreate(BaseModel):
    name: str = Field(..., min_length=1, description="Package name")
    description: Optional[str] = None
    price: Decimal = Field(..., ge=0, description="Package price")
    expires_after_days: Optional[int] = Field(None, gt=0, description="Validity in days; empty means never expires")
    active: bool = True
    services: List[PackageServiceSpec] = Field(..., min_length=1)


class PackageUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0)
    expires_after_days: Optional[int] = Field(None, gt=0)
    never_expires: bool = Field(False, description="Clear the validity period")
    active: Optional[bool] = None
    services: Optional[List[PackageServiceSpec]] = Field(None, min_length=1)


class PackageResponse(BaseModel):
    package_id: str
    name: str
    description: Optional[str] = None
    price: Decimal
    price_display: Optional[str] = None
    expires_after_days: Optional[int] = None
    active: Optional[bool] = None
    created_at: Optional[datetime] = None
    services: List[PackageServiceResponse] = []


class PackageListResponse(BaseModel):
    total: int
    page: int
    page_size: int
    packages: List[PackageResponse]
