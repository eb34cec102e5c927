from datetime import datetime

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

import pytest

from actions import (
    BALANCE_ACTIONS,
    BATCH_ACTIONS,
    OWNER_ACTIONS,
    OWNER_LIST_ACTIONS,
    OWNER_PATTERN_ACTIONS,
    REFILL_LIST_ACTIONS,
    TAG_ACTIONS,
    TAG_LIST_ACTIONS,
    TAG_PATTERN_ACTIONS,
    TRANSACTION_DETAIL_ACTIONS,
    TRANSACTION_LIST_ACTIONS,
    ActionContext,
    dispatch,
)
from database import Base
from models import Owner, Tag, Transaction, TransactionType
from services import (
    AuditContext,
    BalanceService,
    BatchImportService,
    LpgService,
    OwnerService,
    TagService,
    TransactionService,
)


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def make_txn(session: Session, description: str | None = "Pago") -> Transaction:
    txn = Transaction(
        type=TransactionType.credit,
        amount_cents=100,
        description=description,
        date=datetime(2024, 1, 1),
    )
    session.add(txn)
    session.commit()
    return txn


def ctx(session: Session, target_id=None) -> ActionContext:
    return ActionContext(session=session, audit=AuditContext(), target_id=target_id)


def test_unknown_intent_is_rejected() -> None:
    with make_session() as session:
        for intent in (None, "", "dropTable"):
            result = dispatch(TRANSACTION_DETAIL_ACTIONS, intent, {}, ctx(session, 1))
            assert result.success is False
            assert result.error == "Invalid action"


def test_missing_field_reports_validation_error() -> None:
    with make_session() as session:
        txn = make_txn(session)

        result = dispatch(TRANSACTION_DETAIL_ACTIONS, "addTag", {}, ctx(session, txn.id))

        assert result.success is False
        assert "tag_id" in result.error


def test_not_found_is_reported_not_raised() -> None:
    with make_session() as session:
        result = dispatch(
            TRANSACTION_DETAIL_ACTIONS, "addTag", {"tag_id": "5"}, ctx(session, 404)
        )

        assert result.payload() == {"success": False, "error": "Transaction not found"}


def test_add_and_remove_tag_through_dispatch() -> None:
    with make_session() as session:
        txn = make_txn(session)
        tag = Tag(name="Gas")
        session.add(tag)
        session.commit()

        added = dispatch(
            TRANSACTION_DETAIL_ACTIONS, "addTag", {"tag_id": str(tag.id)}, ctx(session, txn.id)
        )
        removed = dispatch(
            TRANSACTION_DETAIL_ACTIONS,
            "removeTag",
            {"tag_id": str(tag.id)},
            ctx(session, txn.id),
        )

        assert added.payload() == {"success": True, "added": True}
        assert removed.payload() == {"success": True, "removed": True}


def test_assign_owner_blank_clears_owner() -> None:
    with make_session() as session:
        owner = Owner(name="Ana", apartment_id="1A")
        session.add(owner)
        txn = make_txn(session)

        set_result = dispatch(
            TRANSACTION_DETAIL_ACTIONS,
            "assignOwner",
            {"owner_id": str(owner.id)},
            ctx(session, txn.id),
        )
        clear_result = dispatch(
            TRANSACTION_DETAIL_ACTIONS, "assignOwner", {"owner_id": ""}, ctx(session, txn.id)
        )

        assert set_result.extra == {"owner_id": owner.id}
        assert clear_result.extra == {"owner_id": None}


def test_auto_assign_owner_failure_comes_back_as_result() -> None:
    with make_session() as session:
        txn = make_txn(session, description=None)

        result = dispatch(
            TRANSACTION_DETAIL_ACTIONS, "autoAssignOwner", {}, ctx(session, txn.id)
        )

        assert result.success is False
        assert result.error == "Transaction has no description to match"


def test_database_error_becomes_generic_failure(monkeypatch) -> None:
    def broken(self, transaction_id, description):
        raise OperationalError("UPDATE transactions", {}, Exception("locked"))

    monkeypatch.setattr(TransactionService, "update_description", broken)

    with make_session() as session:
        txn = make_txn(session)

        result = dispatch(
            TRANSACTION_DETAIL_ACTIONS,
            "updateDescription",
            {"description": "x"},
            ctx(session, txn.id),
        )

        assert result.success is False
        assert result.error == "Failed to update description"


def test_create_transaction_parses_amount_and_tags() -> None:
    with make_session() as session:
        tag = Tag(name="Cuota")
        session.add(tag)
        session.commit()

        result = dispatch(
            TRANSACTION_LIST_ACTIONS,
            "create",
            {
                "type": "credit",
                "amount": "RD$1,500.50",
                "description": "Cuota enero",
                "date": "2024-01-05",
                "owner_id": "",
                "tag_ids": [str(tag.id)],
            },
            ctx(session),
        )

        assert result.success is True
        txn = TransactionService(session).get(result.extra["transaction_id"])
        assert txn.amount_cents == 150050
        assert txn.owner_id is None
        assert [t.id for t in txn.tags] == [tag.id]


def test_create_transaction_with_bad_amount() -> None:
    with make_session() as session:
        result = dispatch(
            TRANSACTION_LIST_ACTIONS,
            "create",
            {"type": "credit", "amount": "mucho", "description": "x", "date": "2024-01-05"},
            ctx(session),
        )

        assert result.success is False
        assert result.error == "Invalid amount"


def test_pattern_actions() -> None:
    with make_session() as session:
        tag = Tag(name="Gas")
        owner = Owner(name="Ana", apartment_id="1A")
        session.add_all([tag, owner])
        session.commit()

        blank = dispatch(TAG_PATTERN_ACTIONS, "create", {"pattern": "  "}, ctx(session, tag.id))
        invalid = dispatch(
            TAG_PATTERN_ACTIONS, "create", {"pattern": "[gas"}, ctx(session, tag.id)
        )
        created = dispatch(
            OWNER_PATTERN_ACTIONS,
            "create",
            {"pattern": "ANA", "apply_to_existing": "on"},
            ctx(session, owner.id),
        )
        toggled = dispatch(
            OWNER_PATTERN_ACTIONS,
            "toggle",
            {"pattern_id": str(created.extra["pattern_id"])},
            ctx(session, owner.id),
        )
        deleted = dispatch(
            OWNER_PATTERN_ACTIONS,
            "delete",
            {"pattern_id": str(created.extra["pattern_id"])},
            ctx(session, owner.id),
        )

        assert blank.error == "Pattern is required"
        assert invalid.error == "Invalid regex pattern"
        assert created.success is True
        assert created.extra["applied"] == 0
        assert toggled.extra == {"is_active": False}
        assert deleted.success is True


def test_owner_actions() -> None:
    with make_session() as session:
        created = dispatch(
            OWNER_LIST_ACTIONS,
            "create",
            {"name": "Ana", "apartment_id": "1A", "email": "", "phone": ""},
            ctx(session),
        )
        owner_id = created.extra["owner_id"]
        updated = dispatch(
            OWNER_ACTIONS,
            "update",
            {"name": "Ana María", "apartment_id": "1A", "is_active": "on"},
            ctx(session, owner_id),
        )
        deactivated = dispatch(OWNER_ACTIONS, "deactivate", {}, ctx(session, owner_id))
        missing = dispatch(OWNER_LIST_ACTIONS, "create", {"name": "Luis"}, ctx(session))
        unknown = dispatch(OWNER_ACTIONS, "archive", {}, ctx(session, owner_id))

        assert created.success is True
        assert updated.success is True
        assert deactivated.extra == {"owner_id": owner_id, "is_active": False}
        owner = OwnerService(session).get(owner_id)
        assert owner.name == "Ana María"
        assert owner.email is None
        assert missing.error == "Name and apartment ID are required"
        assert unknown.error == "Invalid action"


def test_owner_apartment_clash_is_reported() -> None:
    with make_session() as session:
        dispatch(OWNER_LIST_ACTIONS, "create", {"name": "Ana", "apartment_id": "1A"}, ctx(session))

        result = dispatch(
            OWNER_LIST_ACTIONS, "create", {"name": "Luis", "apartment_id": "1A"}, ctx(session)
        )

        assert result.success is False
        assert result.error == "Apartment ID already in use"


def test_tag_actions() -> None:
    with make_session() as session:
        created = dispatch(
            TAG_LIST_ACTIONS,
            "create",
            {"name": "Cuota enero", "month_year": "202401", "parent_id": ""},
            ctx(session),
        )
        tag_id = created.extra["tag_id"]
        bad_month = dispatch(
            TAG_ACTIONS,
            "update",
            {"name": "Cuota enero", "month_year": "202413"},
            ctx(session, tag_id),
        )
        renamed = dispatch(TAG_ACTIONS, "update", {"name": "Cuota 01"}, ctx(session, tag_id))
        blank = dispatch(TAG_ACTIONS, "update", {"name": " "}, ctx(session, tag_id))
        deleted = dispatch(TAG_ACTIONS, "delete", {}, ctx(session, tag_id))

        assert created.success is True
        assert bad_month.error == "month_year must be YYYYMM"
        assert renamed.success is True
        assert blank.error == "Name is required"
        assert deleted.extra == {"deleted": True}
        assert session.get(Tag, tag_id) is None


def test_refill_action_builds_readings() -> None:
    with make_session() as session:
        ana = Owner(name="Ana", apartment_id="1A")
        luis = Owner(name="Luis", apartment_id="2B")
        session.add_all([ana, luis])
        session.commit()

        result = dispatch(
            REFILL_LIST_ACTIONS,
            "create",
            {
                "refill_date": "2024-03-01",
                "bill_amount": "RD$10,000.00",
                "gallons_refilled": "100",
                "efficiency_percentage": "",
                "tag_id": "",
                "readings": [
                    {"owner_id": ana.id, "previous_reading": "100", "current_reading": "110"},
                    {"owner_id": luis.id, "previous_reading": "", "current_reading": "30"},
                ],
            },
            ctx(session),
        )

        assert result.success is True
        assert result.extra["attachment_id"] is None
        refill = LpgService(session).get(result.extra["refill_id"])
        assert refill.bill_amount_cents == 1000000
        assert sorted(e.total_amount_cents for e in refill.entries) == [250000, 750000]


def test_refill_action_reports_bad_readings() -> None:
    with make_session() as session:
        ana = Owner(name="Ana", apartment_id="1A")
        session.add(ana)
        session.commit()

        result = dispatch(
            REFILL_LIST_ACTIONS,
            "create",
            {
                "refill_date": "2024-03-01",
                "bill_amount": "100",
                "readings": [
                    {"owner_id": ana.id, "previous_reading": "50", "current_reading": "40"}
                ],
            },
            ctx(session),
        )

        assert result.success is False
        assert result.error == "Current reading cannot be lower than previous reading"


def test_balance_action() -> None:
    with make_session() as session:
        recorded = dispatch(
            BALANCE_ACTIONS,
            "record",
            {"balance": "-1,250.00", "as_of": "2024-02-01"},
            ctx(session),
        )
        no_date = dispatch(BALANCE_ACTIONS, "record", {"balance": "5", "as_of": ""}, ctx(session))
        bad_amount = dispatch(
            BALANCE_ACTIONS, "record", {"balance": "x", "as_of": "2024-02-01"}, ctx(session)
        )

        assert recorded.success is True
        assert BalanceService(session).current_balance() == (-125000, datetime(2024, 2, 1))
        assert no_date.error == "Balance date is required"
        assert bad_amount.error == "Invalid amount"


def test_batch_action_requires_a_file() -> None:
    with make_session() as session:
        result = dispatch(BATCH_ACTIONS, "import", {"auto_assign": "on"}, ctx(session))

        assert result.success is False
        assert result.error == "CSV file is required"


def test_batch_action_decodes_latin1_statement() -> None:
    statement = (
        "Estado de cuenta\nCuenta: 1\nDesde\n\n"
        "Fecha Posteo;Descripción Corta;Monto Transacción;No. Referencia;No. Serial;Descripción\n"
        "05/01/2024;Crédito;100.00;R1;S1;PAGO ANA\n"
    ).encode("latin-1")
    with make_session() as session:
        result = dispatch(
            BATCH_ACTIONS,
            "import",
            {"filename": "enero.csv", "content": statement},
            ctx(session),
        )

        assert result.success is True
        assert result.extra["errors"] == 0
        assert len(BatchImportService(session).transactions_for(result.extra["batch_id"])) == 1


def _raise_db_error(*args, **kwargs):
    raise SQLAlchemyError("db down")


@pytest.mark.parametrize(
    "table, intent, form, service, method, message",
    [
        (
            OWNER_LIST_ACTIONS,
            "create",
            {"name": "Ana", "apartment_id": "1A"},
            OwnerService,
            "create",
            "Failed to create owner",
        ),
        (OWNER_ACTIONS, "deactivate", {}, OwnerService, "set_active", "Failed to update owner"),
        (TAG_LIST_ACTIONS, "create", {"name": "Gas"}, TagService, "create", "Failed to create tag"),
        (TAG_ACTIONS, "delete", {}, TagService, "delete", "Failed to delete tag"),
        (
            REFILL_LIST_ACTIONS,
            "create",
            {
                "refill_date": "2024-03-01",
                "bill_amount": "100",
                "readings": [{"owner_id": 1, "current_reading": "10"}],
            },
            LpgService,
            "create_refill",
            "Failed to create refill",
        ),
        (
            BATCH_ACTIONS,
            "import",
            {"filename": "a.csv", "content": b"x"},
            BatchImportService,
            "import_statement",
            "Failed to import statement",
        ),
        (
            BALANCE_ACTIONS,
            "record",
            {"balance": "10", "as_of": "2024-01-01"},
            BalanceService,
            "set_current_balance",
            "Failed to record balance",
        ),
    ],
)
def test_database_errors_never_escape(
    monkeypatch, table, intent, form, service, method, message
) -> None:
    monkeypatch.setattr(service, method, _raise_db_error)

    with make_session() as session:
        result = dispatch(table, intent, form, ctx(session, 1))

        assert result.success is False
        assert result.error == message
