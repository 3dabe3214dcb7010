from sqlalchemy.orm import Session
from typing import Optional, List
from datetime import datetime, timezone
from decimal import Decimal
import logging
import secrets
from agenda.models.package import Package, PackageService
from agenda.models.service import Service

logger = logging.getLogger(__name__)


class CatalogRepository:
    def __init__(self, db: Session):
        self.db = db

    # Service methods
    def list_services(
        self,
        owner_id: str,
        skip: int = 0,
        limit: int = 100,
        active_only: Optional[bool] = None,
        search: Optional[str] = None
    ) -> tuple[List[Service], int]:
        """List services with filters"""
        query = self.db.query(Service).filter(Service.user_id == owner_id)

        if active_only is not None:
            query = query.filter(Service.active == active_only)

        if search:
            query = query.filter(Service.name.ilike(f"%{search}%"))

        total = query.count()
        services = query.order_by(Service.name).offset(skip).limit(limit).all()
        return services, total

    def get_service(self, owner_id: str, service_id: str) -> Optional[Service]:
        return self.db.query(Service).filter(
            Service.user_id == owner_id,
            Service.service_id == service_id,
        ).first()

    def get_service_names(self, service_ids: List[str]) -> dict:
        """Map service_id -> name for the given ids (missing ids are left out)"""
        if not service_ids:
            return {}
        rows = self.db.query(Service.service_id, Service.name).filter(
            Service.service_id.in_(set(service_ids))
        ).all()
        return {row.service_id: row.name for row in rows}

    def create_service(
        self,
        owner_id: str,
        name: str,
        price: Decimal,
        duration_minutes: int = 60,
        description: Optional[str] = None,
        default_commission: Optional[Decimal] = None,
        active: bool = True,
    ) -> Service:
        """Create a new service"""
        service = Service(
            service_id=f"svc_{secrets.token_hex(8)}",
            user_id=owner_id,
            name=name,
            description=description,
            price=price,
            duration_minutes=duration_minutes,
            default_commission=default_commission,
            active=active,
        )
        self.db.add(service)
        self.db.commit()
        self.db.refresh(service)
        return service

    def update_service(self, owner_id: str, service_id: str, **kwargs) -> Optional[Service]:
        """Update service"""
        service = self.get_service(owner_id, service_id)
        if not service:
            return None

        for key, value in kwargs.items():
            if hasattr(service, key) and value is not None:
                setattr(service, key, value)

        service.updated_at = datetime.now(timezone.utc)
        self.db.commit()
        self.db.refresh(service)
        return service

    def delete_service(self, owner_id: str, service_id: str) -> bool:
        """
        Delete service.

        Raises ValueError while a catalog package still includes it.
        """
        service = self.get_service(owner_id, service_id)
        if not service:
            return False

        in_use = self.db.query(PackageService).filter(
            PackageService.service_id == service_id
        ).count()
        if in_use:
            raise ValueError(f"Service is included in {in_use} package(s); remove it from them first")

        self.db.delete(service)
        self.db.commit()
        return True

    # Package methods
    def list_packages(
        self,
        owner_id: str,
        skip: int = 0,
        limit: int = 100,
        active_only: Optional[bool] = None,
        search: Optional[str] = None
    ) -> tuple[List[Package], int]:
        """List packages with filters"""
        query = self.db.query(Package).filter(Package.user_id == owner_id)

        if active_only is not None:
            query = query.filter(Package.active == active_only)

        if search:
            query = query.filter(Package.name.ilike(f"%{search}%"))

        total = query.count()
        packages = query.order_by(Package.name).offset(skip).limit(limit).all()
        return packages, total

    def get_package(self, owner_id: str, package_id: str) -> Optional[Package]:
        """Get package by package_id"""
        return self.db.query(Package).filter(
            Package.user_id == owner_id,
            Package.package_id == package_id,
        ).first()

    def get_packages(self, owner_id: str, package_ids: List[str]) -> dict:
        """Map package_id -> Package for the ids that still exist"""
        if not package_ids:
            return {}
        packages = self.db.query(Package).filter(
            Package.user_id == owner_id,
            Package.package_id.in_(set(package_ids)),
        ).all()
        return {p.package_id: p for p in packages}

    def get_active_package_by_name(self, owner_id: str, name: str) -> Optional[Package]:
        """Exact, case-sensitive name match among active packages; oldest wins on duplicates"""
        matches = self.db.query(Package).filter(
            Package.user_id == owner_id,
            Package.active == True,
            Package.name == name,
        ).order_by(Package.created_at, Package.id).all()

        if len(matches) > 1:
            logger.warning(
                f"{len(matches)} active packages named '{name}' for {owner_id}; "
                f"using {matches[0].package_id}"
            )
        return matches[0] if matches else None

    def _validate_package_services(self, owner_id: str, services: List[dict]) -> None:
        if not services:
            raise ValueError("A package must include at least one service")

        service_ids = [s["service_id"] for s in services]
        if len(set(service_ids)) != len(service_ids):
            raise ValueError("Each service can appear only once in a package")

        for spec in services:
            if spec["quantity"] < 1:
                raise ValueError("Service quantity must be at least 1")

        known = self.db.query(Service.service_id).filter(
            Service.user_id == owner_id,
            Service.service_id.in_(service_ids),
        ).all()
        missing = set(service_ids) - {row.service_id for row in known}
        if missing:
            raise ValueError(f"Unknown service(s): {', '.join(sorted(missing))}")

    def create_package(
        self,
        owner_id: str,
        name: str,
        price: Decimal,
        services: List[dict],
        expires_after_days: Optional[int] = None,
        description: Optional[str] = None,
        active: bool = True,
    ) -> Package:
        """
        Create a new package.

        services: [{"service_id": "svc_...", "quantity": 10}, ...]
        """
        self._validate_package_services(owner_id, services)

        package_id = f"pkg_{secrets.token_hex(8)}"
        package = Package(
            package_id=package_id,
            user_id=owner_id,
            name=name,
            description=description,
            price=price,
            expires_after_days=expires_after_days,
            active=active,
        )
        for spec in services:
            package.services.append(
                PackageService(package_id=package_id, service_id=spec["service_id"], quantity=spec["quantity"])
            )

        self.db.add(package)
        self.db.commit()
        self.db.refresh(package)
        return package

    def update_package(
        self,
        owner_id: str,
        package_id: str,
        name: Optional[str] = None,
        price: Optional[Decimal] = None,
        description: Optional[str] = None,
        active: Optional[bool] = None,
        services: Optional[List[dict]] = None,
        expires_after_days: Optional[int] = None,
        clear_expiration: bool = False,
    ) -> Optional[Package]:
        """
        Update package. A services list replaces the package's services wholesale;
        purchases already made keep the services they were sold with.
        """
        package = self.get_package(owner_id, package_id)
        if not package:
            return None

        if name is not None:
            package.name = name
        if price is not None:
            package.price = price
        if description is not None:
            package.description = description
        if active is not None:
            package.active = active
        if clear_expiration:
            package.expires_after_days = None
        elif expires_after_days is not None:
            package.expires_after_days = expires_after_days

        if services is not None:
            self._validate_package_services(owner_id, services)
            package.services.clear()
            self.db.flush()
            for spec in services:
                package.services.append(
                    PackageService(package_id=package_id, service_id=spec["service_id"], quantity=spec["quantity"])
                )

        package.updated_at = datetime.now(timezone.utc)
        self.db.commit()
        self.db.refresh(package)
        return package

    def delete_package(self, owner_id: str, package_id: str) -> bool:
        """Delete package. Customer purchases keep their (now dangling) package_id."""
        package = self.get_package(owner_id, package_id)
        if not package:
            return False

        self.db.delete(package)
        self.db.commit()
        return True
