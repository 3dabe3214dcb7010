"""
Typed errors raised by the entitlement engine.

Each error carries a stable ``code`` and the HTTP status the API answers with.
"""
from typing import Optional


class EntitlementError(Exception):
    code = "entitlement_error"
    status_code = 400

    def __init__(self, message: str, *, detail: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class NotFoundError(EntitlementError):
    code = "not_found"
    status_code = 404

    def __init__(self, entity: str, entity_id: str):
        super().__init__(
            f"{entity} not found: {entity_id}",
            detail={"entity": entity, "id": entity_id},
        )
        self.entity = entity
        self.entity_id = entity_id


class CatalogMismatchError(EntitlementError):
    """Renewal could not find an active catalog package with the given name."""
    code = "catalog_mismatch"
    status_code = 409

    def __init__(self, package_name: Optional[str]):
        if package_name is None:
            message = "The package of this purchase is no longer in the catalog and cannot be renewed."
        else:
            message = (
                f"Package '{package_name}' is no longer available for renewal. "
                "Check that it still exists and is active in the catalog."
            )
        super().__init__(message, detail={"package_name": package_name})
        self.package_name = package_name


class IntentConflictError(EntitlementError):
    """The purchase intent id already belongs to a purchase for another customer or package."""
    code = "intent_conflict"
    status_code = 409

    def __init__(self, intent_id: str):
        super().__init__(
            f"Purchase intent '{intent_id}' was already used for a different purchase. "
            "Generate a new intent id for this request.",
            detail={"intent_id": intent_id},
        )
        self.intent_id = intent_id


class InvalidPackageError(EntitlementError):
    code = "invalid_package"
    status_code = 422


class PackageExpiredError(EntitlementError):
    code = "package_expired"
    status_code = 409


class NoSessionsRemainingError(EntitlementError):
    code = "no_sessions_remaining"
    status_code = 409


class PartialWriteFailure(EntitlementError):
    """A multi-row write failed and was rolled back."""
    code = "partial_write"
    status_code = 500


class InconsistentStateError(EntitlementError):
    """The rollback after a failed write also failed; rows need manual reconciliation."""
    code = "inconsistent_state"
    status_code = 500


class TransientRepositoryError(EntitlementError):
    code = "transient"
    status_code = 503
