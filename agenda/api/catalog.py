from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session
from typing import Optional
from agenda.database import get_db
from agenda.middleware.auth import get_owner_id
from agenda.models.package import Package
from agenda.repositories.catalog_repo import CatalogRepository
from agenda.schemas.catalog import (
    ServiceCreate,
    ServiceUpdate,
    ServiceResponse,
    ServiceListResponse,
    PackageCreate,
    PackageUpdate,
    PackageResponse,
    PackageListResponse,
    PackageServiceResponse,
)
from agenda.utils.helpers import format_currency

router = APIRouter(prefix="/api/v1", tags=["Catalog"])


def _package_response(package: Package, service_names: dict) -> PackageResponse:
    return PackageResponse(
        package_id=package.package_id,
        name=package.name,
        description=package.description,
        price=package.price,
        price_display=format_currency(package.price),
        expires_after_days=package.expires_after_days,
        active=package.active,
        created_at=package.created_at,
        services=[
            PackageServiceResponse(
                service_id=spec.service_id,
                quantity=spec.quantity,
                service_name=service_names.get(spec.service_id),
            )
            for spec in package.services
        ],
    )


def _package_responses(repo: CatalogRepository, packages: list) -> list:
    service_ids = [spec.service_id for package in packages for spec in package.services]
    names = repo.get_service_names(service_ids)
    return [_package_response(package, names) for package in packages]


# Services
@router.get("/services", response_model=ServiceListResponse)
def list_services(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=100),
    active_only: Optional[bool] = Query(None, description="Filter by active status"),
    search: Optional[str] = Query(None, description="Search in name"),
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db)
):
    """List services"""
    repo = CatalogRepository(db)
    services, total = repo.list_services(owner_id, skip=skip, limit=limit, active_only=active_only, search=search)

    return ServiceListResponse(
        total=total,
        page=(skip // limit) + 1,
        page_size=limit,
        services=[ServiceResponse.model_validate(s) for s in services],
    )


@router.get("/services/{service_id}", response_model=ServiceResponse)
def get_service(
    service_id: str,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db)
):
    """Get service by ID"""
    service = CatalogRepository(db).get_service(owner_id, service_id)
    if not service:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Service not found")
    return service


@router.post("/services", response_model=ServiceResponse, status_code=status.HTTP_201_CREATED)
def create_service(
    service_data: ServiceCreate,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db)
):
    """Create a new service"""
    return CatalogRepository(db).create_service(owner_id, **service_data.model_dump())


@router.put("/services/{service_id}", response_model=ServiceResponse)
def update_service(
    service_id: str,
    service_data: ServiceUpdate,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db)
):
    """Update service"""
    update_data = {k: v for k, v in service_data.model_dump().items() if v is not None}
    service = CatalogRepository(db).update_service(owner_id, service_id, **update_data)

    if not service:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Service not found")
    return service


@router.delete("/services/{service_id}")
def delete_service(
    service_id: str,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db)
):
    """Delete service"""
    try:
        success = CatalogRepository(db).delete_service(owner_id, service_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    if not success:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Service not found")
    return {"message": "Service deleted successfully"}


# Packages
@router.get("/packages", response_model=PackageListResponse)
def list_packages(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=100),
    active_only: Optional[bool] = Query(None, description="Filter by active status"),
    search: Optional[str] = Query(None, description="Search in name"),
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db)
):
    """List packages with their services"""
    repo = CatalogRepository(db)
    packages, total = repo.list_packages(owner_id, skip=skip, limit=limit, active_only=active_only, search=search)

    return PackageListResponse(
        total=total,
        page=(skip // limit) + 1,
        page_size=limit,
        packages=_package_responses(repo, packages),
    )


@router.get("/packages/{package_id}", response_model=PackageResponse)
def get_package(
    package_id: str,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db)
):
    """Get package by ID"""
    repo = CatalogRepository(db)
    package = repo.get_package(owner_id, package_id)

    if not package:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Package not found")
    return _package_responses(repo, [package])[0]


@router.post("/packages", response_model=PackageResponse, status_code=status.HTTP_201_CREATED)
def create_package(
    package_data: PackageCreate,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db)
):
    """Create a new package"""
    repo = CatalogRepository(db)
    try:
        package = repo.create_package(
            owner_id=owner_id,
            name=package_data.name,
            description=package_data.description,
            price=package_data.price,
            expires_after_days=package_data.expires_after_days,
            active=package_data.active,
            services=[s.model_dump() for s in package_data.services],
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return _package_responses(repo, [package])[0]


@router.put("/packages/{package_id}", response_model=PackageResponse)
def update_package(
    package_id: str,
    package_data: PackageUpdate,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db)
):
    """Update package; a services list replaces the current one"""
    repo = CatalogRepository(db)
    try:
        package = repo.update_package(
            owner_id=owner_id,
            package_id=package_id,
            name=package_data.name,
            description=package_data.description,
            price=package_data.price,
            active=package_data.active,
            expires_after_days=package_data.expires_after_days,
            clear_expiration=package_data.never_expires,
            services=[s.model_dump() for s in package_data.services] if package_data.services is not None else None,
        )
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if not package:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Package not found")
    return _package_responses(repo, [package])[0]


@router.delete("/packages/{package_id}")
def delete_package(
    package_id: str,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db)
):
    """Delete package from the catalog. Customer purchases of it are kept."""
    success = CatalogRepository(db).delete_package(owner_id, package_id)

    if not success:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Package not found")
    return {"message": "Package deleted successfully"}
