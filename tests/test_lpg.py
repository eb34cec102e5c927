from datetime import date, datetime

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

import pytest

from database import Base
from models import Owner, Tag, Transaction, TransactionType
from schemas import LpgReadingIn, LpgRefillIn
from services import LpgService


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def test_bill_is_split_by_consumption_share() -> None:
    entries = LpgService.compute_entries(
        10000,
        10.0,
        [
            LpgReadingIn(owner_id=1, previous_reading=100, current_reading=110),
            LpgReadingIn(owner_id=2, previous_reading=50, current_reading=80),
        ],
    )

    first, second = entries
    assert first.consumption == 10
    assert first.percentage == pytest.approx(25.0)
    assert first.subtotal_cents == 2500
    assert first.total_amount_cents == 2750
    assert second.percentage == pytest.approx(75.0)
    assert second.subtotal_cents == 7500
    assert second.total_amount_cents == 8250


def test_zero_total_consumption_is_rejected() -> None:
    with pytest.raises(ValueError, match="Total consumption must be greater than zero"):
        LpgService.compute_entries(
            10000, 0, [LpgReadingIn(owner_id=1, previous_reading=5, current_reading=5)]
        )


def test_reading_cannot_go_backwards() -> None:
    with pytest.raises(ValueError, match="lower than previous"):
        LpgService.compute_entries(
            10000, 0, [LpgReadingIn(owner_id=1, previous_reading=5, current_reading=4)]
        )


def test_refill_payments_and_previous_readings() -> None:
    with make_session() as session:
        ana = Owner(name="Ana", apartment_id="1A")
        luis = Owner(name="Luis", apartment_id="2B")
        tag = Tag(name="GLP marzo")
        session.add_all([ana, luis, tag])
        session.commit()
        service = LpgService(session)

        refill = service.create_refill(
            LpgRefillIn(
                bill_amount_cents=20000,
                gallons_refilled=80,
                refill_date=date(2024, 3, 1),
                efficiency_percentage=0,
                tag_id=tag.id,
                readings=[
                    LpgReadingIn(owner_id=ana.id, previous_reading=0, current_reading=10),
                    LpgReadingIn(owner_id=luis.id, previous_reading=0, current_reading=30),
                ],
            )
        )
        payment = Transaction(
            type=TransactionType.credit,
            amount_cents=5000,
            description="GLP",
            date=datetime(2024, 3, 5),
            owner_id=ana.id,
        )
        payment.tags = [tag]
        session.add(payment)
        session.commit()

        payments = {row.owner.apartment_id: row for row in service.pending_payments(refill.id)}

        assert payments["1A"].amount_owed_cents == 5000
        assert payments["1A"].remaining_cents == 0
        assert payments["1A"].status == "paid"
        assert payments["2B"].amount_owed_cents == 15000
        assert payments["2B"].status == "pending"
        assert service.previous_readings() == {ana.id: 10, luis.id: 30}
        assert service.latest().id == refill.id
        assert [e.refill_id for e in service.history_for_owner(ana.id)] == [refill.id]


def test_refill_rejects_repeated_apartment() -> None:
    with make_session() as session:
        ana = Owner(name="Ana", apartment_id="1A")
        session.add(ana)
        session.commit()

        with pytest.raises(ValueError, match="only appear once"):
            LpgService(session).create_refill(
                LpgRefillIn(
                    bill_amount_cents=100,
                    gallons_refilled=1,
                    refill_date=date(2024, 3, 1),
                    readings=[
                        LpgReadingIn(owner_id=ana.id, previous_reading=0, current_reading=1),
                        LpgReadingIn(owner_id=ana.id, previous_reading=1, current_reading=2),
                    ],
                )
            )
