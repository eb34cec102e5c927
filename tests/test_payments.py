from datetime import date, datetime

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import Owner, Tag, Transaction, TransactionType
from services import PaymentService


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def credit(owner, when, cents, tags, **kwargs) -> Transaction:
    txn = Transaction(
        type=kwargs.pop("type", TransactionType.credit),
        amount_cents=cents,
        description="Cuota",
        date=when,
        owner=owner,
        **kwargs,
    )
    txn.tags = list(tags)
    return txn


def test_owner_without_payments_is_pending() -> None:
    with make_session() as session:
        owner = Owner(name="Ana", apartment_id="1A")
        tag = Tag(name="Enero 2024", month_year=202401)
        session.add_all([owner, tag])
        session.commit()

        rows = PaymentService(session).monthly_payments([tag.id])

        assert len(rows) == 1
        row = rows[0]
        assert row.status == "pending"
        assert row.amount_paid_cents == 0
        assert row.payment_count == 0
        assert row.last_payment_date is None
        assert row.payments == []


def test_payments_are_summed_per_owner() -> None:
    with make_session() as session:
        owner = Owner(name="Ana", apartment_id="1A")
        tag = Tag(name="Enero 2024", month_year=202401)
        session.add_all([owner, tag])
        session.add_all(
            [
                credit(owner, datetime(2024, 1, 5), 10000, [tag]),
                credit(owner, datetime(2024, 1, 20), 5000, [tag]),
            ]
        )
        session.commit()

        row = PaymentService(session).monthly_payments([tag.id])[0]

        assert row.amount_paid_cents == 15000
        assert row.payment_count == 2
        assert row.last_payment_date == datetime(2024, 1, 20)
        assert row.status == "paid"
        assert [p.amount_cents for p in row.payments] == [10000, 5000]


def test_transaction_with_several_selected_tags_counts_once() -> None:
    with make_session() as session:
        owner = Owner(name="Ana", apartment_id="1A")
        jan = Tag(name="Enero 2024", month_year=202401)
        feb = Tag(name="Febrero 2024", month_year=202402)
        session.add_all([owner, jan, feb])
        session.add(credit(owner, datetime(2024, 1, 5), 20000, [jan, feb]))
        session.commit()

        row = PaymentService(session).monthly_payments([jan.id, feb.id])[0]

        assert row.amount_paid_cents == 20000
        assert row.payment_count == 1


def test_debits_duplicates_and_inactive_owners_are_ignored() -> None:
    with make_session() as session:
        active = Owner(name="Ana", apartment_id="1A")
        inactive = Owner(name="Old", apartment_id="9Z", is_active=False)
        tag = Tag(name="Enero 2024", month_year=202401)
        session.add_all([active, inactive, tag])
        session.add_all(
            [
                credit(active, datetime(2024, 1, 5), 500, [tag], type=TransactionType.debit),
                credit(active, datetime(2024, 1, 6), 700, [tag], is_duplicate=True),
                credit(inactive, datetime(2024, 1, 7), 900, [tag]),
            ]
        )
        session.commit()

        rows = PaymentService(session).monthly_payments([tag.id])

        assert [r.apartment_id for r in rows] == ["1A"]
        assert rows[0].status == "pending"
        assert rows[0].amount_paid_cents == 0


def test_summary_uses_current_and_previous_month_tags() -> None:
    with make_session() as session:
        ana = Owner(name="Ana", apartment_id="1A")
        luis = Owner(name="Luis", apartment_id="2B")
        dec = Tag(name="Diciembre 2023", month_year=202312)
        jan = Tag(name="Enero 2024", month_year=202401)
        old = Tag(name="Junio 2023", month_year=202306)
        plain = Tag(name="Gas")
        session.add_all([ana, luis, dec, jan, old, plain])
        session.add(credit(ana, datetime(2024, 1, 3), 300000, [jan]))
        session.commit()

        summary = PaymentService(session).summary(date(2024, 1, 15))

        assert summary.current_tag.id == jan.id
        assert summary.previous_tag.id == dec.id
        assert summary.current_unpaid == 1
        assert summary.previous_unpaid == 2
        assert [t.month_year for t in summary.window_tags] == [202312, 202401]


def test_unpaid_count_without_tags_is_everyone() -> None:
    with make_session() as session:
        session.add_all(
            [Owner(name="Ana", apartment_id="1A"), Owner(name="Luis", apartment_id="2B")]
        )
        session.commit()

        assert PaymentService(session).monthly_payments([])[0].status == "pending"
        assert PaymentService(session).summary(date(2024, 1, 15)).current_unpaid == 0
