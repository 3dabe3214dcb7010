from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from agenda.exceptions import (
    CatalogMismatchError,
    InconsistentStateError,
    IntentConflictError,
    InvalidPackageError,
    NoSessionsRemainingError,
    NotFoundError,
    PackageExpiredError,
    PartialWriteFailure,
    TransientRepositoryError,
)
from agenda.models.customer import Customer
from agenda.models.customer_package import CustomerPackage, PackageServiceBalance
from agenda.models.package import Package
from agenda.repositories.catalog_repo import CatalogRepository
from agenda.repositories.customer_repo import CustomerRepository
from agenda.repositories.entitlement_repo import EntitlementRepository
from agenda.services.entitlement_engine import EntitlementStatus
from agenda.utils.helpers import as_utc


def row_counts(db):
    return db.query(CustomerPackage).count(), db.query(PackageServiceBalance).count()


def balances_of(db, customer_package_id):
    rows = db.query(PackageServiceBalance).filter(
        PackageServiceBalance.customer_package_id == customer_package_id
    ).all()
    return {row.service_id: row.sessions_remaining for row in rows}


# Purchase

def test_purchase_ten_sessions_package(engine, db, owner, catalog, customer_row):
    purchase = engine.purchase(owner.user_id, customer_row.customer_id, catalog.ten_sessions.package_id)

    assert purchase.paid is True
    assert as_utc(purchase.purchase_date) == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert as_utc(purchase.expiration_date) == datetime(2024, 1, 31, 12, 0, tzinfo=timezone.utc)
    assert balances_of(db, purchase.customer_package_id) == {catalog.massage.service_id: 10}


def test_purchase_without_validity_period_has_no_expiration(engine, owner, catalog, customer_row):
    purchase = engine.purchase(owner.user_id, customer_row.customer_id, catalog.combo.package_id)

    assert purchase.expiration_date is None


def test_purchase_creates_one_balance_per_service(engine, db, owner, catalog, customer_row):
    purchase = engine.purchase(owner.user_id, customer_row.customer_id, catalog.combo.package_id)

    assert balances_of(db, purchase.customer_package_id) == {
        catalog.massage.service_id: 5,
        catalog.facial.service_id: 3,
    }


def test_purchase_unknown_customer(engine, db, owner, catalog):
    with pytest.raises(NotFoundError) as exc_info:
        engine.purchase(owner.user_id, "cust_missing", catalog.combo.package_id)

    assert exc_info.value.entity == "Customer"
    assert row_counts(db) == (0, 0)


def test_purchase_inactive_package_is_not_found(engine, db, owner, catalog, customer_row):
    CatalogRepository(db).update_package(owner.user_id, catalog.combo.package_id, active=False)

    with pytest.raises(NotFoundError):
        engine.purchase(owner.user_id, customer_row.customer_id, catalog.combo.package_id)
    assert row_counts(db) == (0, 0)


def test_purchase_other_tenants_package_is_not_found(engine, db, other_owner, catalog):
    stranger = CustomerRepository(db).create(other_owner.user_id, name="João", phone="21988887777")

    with pytest.raises(NotFoundError):
        engine.purchase(other_owner.user_id, stranger.customer_id, catalog.combo.package_id)


def test_package_without_services_cannot_be_sold(engine, db, owner, customer_row):
    db.add(Package(package_id="pkg_empty", user_id=owner.user_id, name="Empty", price=Decimal("10.00"), active=True))
    db.commit()

    with pytest.raises(InvalidPackageError):
        engine.purchase(owner.user_id, customer_row.customer_id, "pkg_empty")
    assert row_counts(db) == (0, 0)


def test_failed_balance_insert_rolls_back_the_purchase(engine, db, owner, catalog, customer_row):
    with patch.object(EntitlementRepository, "insert_balances", side_effect=SQLAlchemyError("disk full")):
        with pytest.raises(PartialWriteFailure):
            engine.purchase(owner.user_id, customer_row.customer_id, catalog.combo.package_id)

    assert row_counts(db) == (0, 0)


def test_failed_rollback_is_reported_as_inconsistent(engine, db, owner, catalog, customer_row):
    with patch.object(EntitlementRepository, "insert_balances", side_effect=SQLAlchemyError("disk full")):
        with patch.object(db, "rollback", side_effect=SQLAlchemyError("connection lost")):
            with pytest.raises(InconsistentStateError):
                engine.purchase(owner.user_id, customer_row.customer_id, catalog.combo.package_id)


def test_transient_error_without_intent_is_not_retried(engine, owner, catalog, customer_row):
    calls = []

    def always_down(self, *args, **kwargs):
        calls.append(1)
        raise OperationalError("INSERT", {}, Exception("server closed the connection"))

    with patch.object(EntitlementRepository, "insert_customer_package", always_down):
        with pytest.raises(TransientRepositoryError):
            engine.purchase(owner.user_id, customer_row.customer_id, catalog.combo.package_id)

    assert len(calls) == 1


def test_transient_error_with_intent_retries_whole_purchase(engine, db, owner, catalog, customer_row):
    original = EntitlementRepository.insert_customer_package
    calls = []

    def flaky(self, *args, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            raise OperationalError("INSERT", {}, Exception("server closed the connection"))
        return original(self, *args, **kwargs)

    with patch.object(EntitlementRepository, "insert_customer_package", flaky):
        purchase = engine.purchase(
            owner.user_id, customer_row.customer_id, catalog.combo.package_id, intent_id="intent-1"
        )

    assert len(calls) == 2
    assert purchase.intent_id == "intent-1"
    assert row_counts(db) == (1, 2)


def test_repeated_intent_returns_existing_purchase(engine, db, owner, catalog, customer_row):
    first = engine.purchase(owner.user_id, customer_row.customer_id, catalog.combo.package_id, intent_id="intent-2")
    second = engine.purchase(owner.user_id, customer_row.customer_id, catalog.combo.package_id, intent_id="intent-2")

    assert first.customer_package_id == second.customer_package_id
    assert row_counts(db) == (1, 2)


def test_intent_reused_by_another_customer_is_a_conflict(engine, db, owner, catalog, customer_row):
    other = CustomerRepository(db).create(owner.user_id, name="Ana Souza", phone="11977776666")
    engine.renew(owner.user_id, customer_row.customer_id, "10 sessions", intent_id="intent-1")

    with pytest.raises(IntentConflictError) as exc_info:
        engine.renew(owner.user_id, other.customer_id, "Combo", intent_id="intent-1")

    assert exc_info.value.code == "intent_conflict"
    assert engine.load_entitlements(owner.user_id, [other.customer_id])[other.customer_id] == []
    assert row_counts(db) == (1, 1)


def test_intent_reused_for_another_package_is_a_conflict(engine, db, owner, catalog, customer_row):
    engine.purchase(owner.user_id, customer_row.customer_id, catalog.combo.package_id, intent_id="intent-3")

    with pytest.raises(IntentConflictError):
        engine.purchase(owner.user_id, customer_row.customer_id, catalog.ten_sessions.package_id, intent_id="intent-3")

    assert row_counts(db) == (1, 2)


def test_intent_taken_concurrently_by_another_customer_is_a_conflict(engine, db, owner, catalog, customer_row):
    other = CustomerRepository(db).create(owner.user_id, name="Ana Souza", phone="11977776666")
    engine.purchase(owner.user_id, customer_row.customer_id, catalog.combo.package_id, intent_id="intent-4")
    original = EntitlementRepository.get_by_intent
    calls = []

    def not_yet_visible(self, *args, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            return None
        return original(self, *args, **kwargs)

    with patch.object(EntitlementRepository, "get_by_intent", not_yet_visible):
        with pytest.raises(IntentConflictError):
            engine.purchase(owner.user_id, other.customer_id, catalog.combo.package_id, intent_id="intent-4")

    assert len(calls) == 2
    assert row_counts(db) == (1, 2)


def test_purchase_many_reports_each_package(engine, db, owner, catalog, customer_row):
    CatalogRepository(db).update_package(owner.user_id, catalog.combo.package_id, active=False)

    outcomes = engine.purchase_many(
        owner.user_id,
        customer_row.customer_id,
        [catalog.ten_sessions.package_id, catalog.combo.package_id, "pkg_missing"],
    )

    assert [o.ok for o in outcomes] == [True, False, False]
    assert outcomes[0].customer_package_id is not None
    assert outcomes[1].error_code == "not_found"
    assert outcomes[2].error_code == "not_found"
    assert row_counts(db) == (1, 1)


# Renewal

def test_renew_resolves_by_exact_name(engine, db, owner, catalog, customer_row):
    engine.purchase(owner.user_id, customer_row.customer_id, catalog.ten_sessions.package_id)
    renewal = engine.renew(owner.user_id, customer_row.customer_id, "10 sessions")

    assert renewal.package_id == catalog.ten_sessions.package_id
    assert as_utc(renewal.expiration_date) == datetime(2024, 1, 31, 12, 0, tzinfo=timezone.utc)
    assert row_counts(db) == (2, 2)


def test_renew_uses_current_catalog_contents(engine, db, owner, catalog, customer_row, clock):
    original = engine.purchase(owner.user_id, customer_row.customer_id, catalog.ten_sessions.package_id)
    CatalogRepository(db).update_package(
        owner.user_id,
        catalog.ten_sessions.package_id,
        price=Decimal("1200.00"),
        services=[{"service_id": catalog.facial.service_id, "quantity": 4}],
        clear_expiration=True,
    )
    clock.set(2024, 1, 20, 9, 0)

    renewal = engine.renew(owner.user_id, customer_row.customer_id, "10 sessions")

    assert balances_of(db, renewal.customer_package_id) == {catalog.facial.service_id: 4}
    assert renewal.expiration_date is None
    assert balances_of(db, original.customer_package_id) == {catalog.massage.service_id: 10}


def test_renew_after_rename_is_catalog_mismatch(engine, db, owner, catalog, customer_row):
    CatalogRepository(db).update_package(owner.user_id, catalog.ten_sessions.package_id, name="10 sessions (2024)")

    with pytest.raises(CatalogMismatchError):
        engine.renew(owner.user_id, customer_row.customer_id, "10 sessions")
    assert row_counts(db) == (0, 0)


def test_renew_does_not_match_substrings(engine, db, owner, catalog, customer_row):
    with pytest.raises(CatalogMismatchError):
        engine.renew(owner.user_id, customer_row.customer_id, "10 session")
    with pytest.raises(CatalogMismatchError):
        engine.renew(owner.user_id, customer_row.customer_id, "10 SESSIONS")


def test_renew_after_catalog_delete_writes_nothing(engine, db, owner, catalog, customer_row):
    engine.purchase(owner.user_id, customer_row.customer_id, catalog.ten_sessions.package_id)
    CatalogRepository(db).delete_package(owner.user_id, catalog.ten_sessions.package_id)
    before = row_counts(db)

    with pytest.raises(CatalogMismatchError) as exc_info:
        engine.renew(owner.user_id, customer_row.customer_id, "10 sessions")

    assert exc_info.value.code == "catalog_mismatch"
    assert row_counts(db) == before


def test_renew_purchase_reads_name_from_previous_purchase(engine, db, owner, catalog, customer_row):
    previous = engine.purchase(owner.user_id, customer_row.customer_id, catalog.combo.package_id)

    renewal = engine.renew_purchase(owner.user_id, customer_row.customer_id, previous.customer_package_id)

    assert renewal.package_id == catalog.combo.package_id
    assert renewal.customer_package_id != previous.customer_package_id


def test_renew_purchase_with_deleted_catalog_package(engine, db, owner, catalog, customer_row):
    previous = engine.purchase(owner.user_id, customer_row.customer_id, catalog.combo.package_id)
    CatalogRepository(db).delete_package(owner.user_id, catalog.combo.package_id)

    with pytest.raises(CatalogMismatchError):
        engine.renew_purchase(owner.user_id, customer_row.customer_id, previous.customer_package_id)


# Deletion

def test_delete_package_removes_balances(engine, db, owner, catalog, customer_row):
    purchase = engine.purchase(owner.user_id, customer_row.customer_id, catalog.combo.package_id)

    removed = engine.delete_package(owner.user_id, purchase.customer_package_id)

    assert removed == 2
    assert row_counts(db) == (0, 0)


def test_delete_package_twice_is_not_found(engine, owner, catalog, customer_row):
    purchase = engine.purchase(owner.user_id, customer_row.customer_id, catalog.combo.package_id)
    engine.delete_package(owner.user_id, purchase.customer_package_id)

    with pytest.raises(NotFoundError):
        engine.delete_package(owner.user_id, purchase.customer_package_id)


def test_failed_package_delete_keeps_balances(engine, db, owner, catalog, customer_row):
    purchase = engine.purchase(owner.user_id, customer_row.customer_id, catalog.combo.package_id)

    with patch.object(EntitlementRepository, "delete_customer_package", side_effect=SQLAlchemyError("locked")):
        with pytest.raises(PartialWriteFailure):
            engine.delete_package(owner.user_id, purchase.customer_package_id)

    assert row_counts(db) == (1, 2)


def test_delete_customer_cascades_to_purchases(engine, db, owner, catalog, customer_row):
    engine.purchase(owner.user_id, customer_row.customer_id, catalog.combo.package_id)
    engine.purchase(owner.user_id, customer_row.customer_id, catalog.ten_sessions.package_id)

    removed = engine.delete_customer(owner.user_id, customer_row.customer_id)

    assert removed == 2
    assert row_counts(db) == (0, 0)
    assert db.query(Customer).count() == 0


def test_delete_missing_customer(engine, owner):
    with pytest.raises(NotFoundError):
        engine.delete_customer(owner.user_id, "cust_missing")


# Consumption

def test_consume_down_to_exhausted(engine, owner, catalog, customer_row, clock):
    purchase = engine.purchase(owner.user_id, customer_row.customer_id, catalog.ten_sessions.package_id)
    clock.set(2024, 1, 20, 10, 0)

    remaining = [
        engine.consume_session(owner.user_id, purchase.customer_package_id, catalog.massage.service_id)
        for _ in range(10)
    ]

    assert remaining[0] == 9
    assert remaining[-1] == 0
    entitlement = engine.load_entitlements(owner.user_id, [customer_row.customer_id])[customer_row.customer_id][0]
    assert entitlement.status == EntitlementStatus.EXHAUSTED

    with pytest.raises(NoSessionsRemainingError):
        engine.consume_session(owner.user_id, purchase.customer_package_id, catalog.massage.service_id)


def test_consume_expired_package(engine, owner, catalog, customer_row, clock):
    purchase = engine.purchase(owner.user_id, customer_row.customer_id, catalog.ten_sessions.package_id)
    clock.set(2024, 2, 1, 12, 0)

    with pytest.raises(PackageExpiredError):
        engine.consume_session(owner.user_id, purchase.customer_package_id, catalog.massage.service_id)


def test_consume_service_not_in_package(engine, owner, catalog, customer_row):
    purchase = engine.purchase(owner.user_id, customer_row.customer_id, catalog.ten_sessions.package_id)

    with pytest.raises(NotFoundError):
        engine.consume_session(owner.user_id, purchase.customer_package_id, catalog.facial.service_id)


# Loading

def test_expired_with_sessions_left(engine, db, owner, catalog, customer_row, clock):
    purchase = engine.purchase(owner.user_id, customer_row.customer_id, catalog.ten_sessions.package_id)
    for _ in range(7):
        engine.consume_session(owner.user_id, purchase.customer_package_id, catalog.massage.service_id)
    clock.set(2024, 2, 1, 12, 0)

    history = engine.load_entitlements(owner.user_id, [customer_row.customer_id])[customer_row.customer_id]

    assert len(history) == 1
    assert history[0].status == EntitlementStatus.EXPIRED
    assert history[0].services[0].sessions_remaining == 3


def test_active_only_hides_expired_purchases(engine, owner, catalog, customer_row, clock):
    engine.purchase(owner.user_id, customer_row.customer_id, catalog.ten_sessions.package_id)
    engine.purchase(owner.user_id, customer_row.customer_id, catalog.combo.package_id)
    clock.set(2024, 3, 1)

    active = engine.load_entitlements(owner.user_id, [customer_row.customer_id], active_only=True)
    history = engine.load_entitlements(owner.user_id, [customer_row.customer_id])

    assert [e.package_name for e in active[customer_row.customer_id]] == ["Combo"]
    assert len(history[customer_row.customer_id]) == 2


def test_load_reports_catalog_details(engine, owner, catalog, customer_row):
    engine.purchase(owner.user_id, customer_row.customer_id, catalog.combo.package_id)

    entitlement = engine.load_entitlements(owner.user_id, [customer_row.customer_id])[customer_row.customer_id][0]

    assert entitlement.package_available is True
    assert entitlement.package_name == "Combo"
    assert entitlement.package_price == Decimal("750.50")
    assert entitlement.status == EntitlementStatus.ACTIVE
    assert [(s.service_name, s.quantity, s.sessions_remaining) for s in entitlement.services] == [
        ("Massage", 5, 5),
        ("Facial", 3, 3),
    ]


def test_missing_balance_row_reads_as_zero(engine, db, owner, catalog, customer_row):
    purchase = engine.purchase(owner.user_id, customer_row.customer_id, catalog.combo.package_id)
    db.query(PackageServiceBalance).filter(
        PackageServiceBalance.customer_package_id == purchase.customer_package_id,
        PackageServiceBalance.service_id == catalog.facial.service_id,
    ).delete()
    db.commit()

    entitlement = engine.load_entitlements(owner.user_id, [customer_row.customer_id])[customer_row.customer_id][0]

    facial = next(s for s in entitlement.services if s.service_id == catalog.facial.service_id)
    assert facial.sessions_remaining == 0
    assert entitlement.status == EntitlementStatus.ACTIVE


def test_deleted_catalog_package_is_reported_unavailable(engine, db, owner, catalog, customer_row):
    engine.purchase(owner.user_id, customer_row.customer_id, catalog.combo.package_id)
    CatalogRepository(db).delete_package(owner.user_id, catalog.combo.package_id)

    entitlements = engine.load_entitlements(owner.user_id, [customer_row.customer_id])[customer_row.customer_id]

    assert len(entitlements) == 1
    assert entitlements[0].package_available is False
    assert entitlements[0].package_name is None
    assert {s.service_name: s.sessions_remaining for s in entitlements[0].services} == {"Massage": 5, "Facial": 3}


def test_services_removed_from_catalog_keep_their_balance(engine, db, owner, catalog, customer_row):
    engine.purchase(owner.user_id, customer_row.customer_id, catalog.combo.package_id)
    CatalogRepository(db).update_package(
        owner.user_id,
        catalog.combo.package_id,
        services=[{"service_id": catalog.massage.service_id, "quantity": 5}],
    )

    entitlement = engine.load_entitlements(owner.user_id, [customer_row.customer_id])[customer_row.customer_id][0]

    facial = next(s for s in entitlement.services if s.service_id == catalog.facial.service_id)
    assert facial.quantity == 3
    assert facial.sessions_remaining == 3


def test_services_added_to_catalog_after_purchase_are_not_listed(engine, db, owner, catalog, customer_row, caplog):
    purchase = engine.purchase(owner.user_id, customer_row.customer_id, catalog.ten_sessions.package_id)
    purchase.created_at = datetime(2000, 1, 1, tzinfo=timezone.utc)
    db.commit()
    CatalogRepository(db).update_package(
        owner.user_id,
        catalog.ten_sessions.package_id,
        services=[
            {"service_id": catalog.massage.service_id, "quantity": 20},
            {"service_id": catalog.facial.service_id, "quantity": 2},
        ],
    )

    entitlement = engine.load_entitlements(owner.user_id, [customer_row.customer_id])[customer_row.customer_id][0]

    assert [(s.service_id, s.quantity, s.sessions_remaining) for s in entitlement.services] == [
        (catalog.massage.service_id, 10, 10),
    ]
    assert "Missing balance" not in caplog.text


def test_purchase_left_without_balances_is_exhausted(engine, db, owner, catalog, customer_row, clock):
    repo = EntitlementRepository(db)
    repo.insert_customer_package(
        owner_id=owner.user_id,
        customer_id=customer_row.customer_id,
        package_id="pkg_gone",
        purchase_date=clock(),
        expiration_date=None,
    )
    db.commit()

    entitlement = engine.load_entitlements(owner.user_id, [customer_row.customer_id])[customer_row.customer_id][0]

    assert entitlement.services == []
    assert entitlement.status == EntitlementStatus.EXHAUSTED


def test_load_many_customers_at_once(engine, db, owner, other_owner, catalog, customer_row):
    second = CustomerRepository(db).create(owner.user_id, name="Ana Souza", phone="11977776666")
    engine.purchase(owner.user_id, customer_row.customer_id, catalog.combo.package_id)
    engine.purchase(owner.user_id, second.customer_id, catalog.ten_sessions.package_id)

    result = engine.load_entitlements(owner.user_id, [customer_row.customer_id, second.customer_id, "cust_none"])

    assert [e.package_name for e in result[customer_row.customer_id]] == ["Combo"]
    assert [e.package_name for e in result[second.customer_id]] == ["10 sessions"]
    assert result["cust_none"] == []

    other = engine.load_entitlements(other_owner.user_id, [customer_row.customer_id])
    assert other[customer_row.customer_id] == []


def test_unpaid_purchases_are_not_entitlements(engine, db, owner, catalog, customer_row, clock):
    EntitlementRepository(db).insert_customer_package(
        owner_id=owner.user_id,
        customer_id=customer_row.customer_id,
        package_id=catalog.combo.package_id,
        purchase_date=clock(),
        expiration_date=None,
        paid=False,
    )
    db.commit()

    assert engine.load_entitlements(owner.user_id, [customer_row.customer_id])[customer_row.customer_id] == []


def test_sales_are_listed_newest_first(engine, owner, catalog, customer_row, clock):
    engine.purchase(owner.user_id, customer_row.customer_id, catalog.combo.package_id)
    clock.set(2024, 1, 5, 8, 0)
    engine.purchase(owner.user_id, customer_row.customer_id, catalog.ten_sessions.package_id)

    rows, total = engine.list_sales(owner.user_id)

    assert total == 2
    assert [row.package_name for row in rows] == ["10 sessions", "Combo"]
    assert rows[0].customer_name == "Maria Silva"
