from datetime import datetime

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import Transaction, TransactionType
from schemas import BalanceIn
from services import BalanceService


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def txn(when: datetime, cents: int, type: TransactionType, **kwargs) -> Transaction:
    return Transaction(type=type, amount_cents=cents, date=when, description="x", **kwargs)


def test_no_recorded_balance() -> None:
    with make_session() as session:
        estimate = BalanceService(session).estimate()

        assert estimate.current_balance_cents is None
        assert estimate.estimated_balance_cents is None
        assert estimate.transactions_since == 0


def test_estimate_adds_credits_and_subtracts_debits_since_balance_date() -> None:
    with make_session() as session:
        session.add_all(
            [
                txn(datetime(2024, 1, 1), 99999, TransactionType.credit),
                txn(datetime(2024, 2, 2), 30000, TransactionType.credit),
                txn(datetime(2024, 2, 3), 12000, TransactionType.debit),
                txn(datetime(2024, 2, 4), 50000, TransactionType.credit, is_duplicate=True),
            ]
        )
        session.commit()
        service = BalanceService(session)

        service.set_current_balance(
            BalanceIn(balance_cents=100000, as_of=datetime(2024, 2, 1))
        )
        estimate = service.estimate()

        assert estimate.current_balance_cents == 100000
        assert estimate.balance_date == datetime(2024, 2, 1)
        assert estimate.transactions_since == 2
        assert estimate.estimated_balance_cents == 118000


def test_recording_again_overwrites() -> None:
    with make_session() as session:
        service = BalanceService(session)
        service.set_current_balance(BalanceIn(balance_cents=1, as_of=datetime(2024, 1, 1)))
        service.set_current_balance(BalanceIn(balance_cents=2, as_of=datetime(2024, 3, 1)))

        assert service.current_balance() == (2, datetime(2024, 3, 1))
