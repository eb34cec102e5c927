import json
from datetime import datetime

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

import pytest

from database import Base
from models import (
    AuditLog,
    Owner,
    OwnerPattern,
    Tag,
    TagPattern,
    Transaction,
    TransactionType,
    transaction_to_tags,
)
from schemas import PatternIn
from services import PatternService, TransactionService


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def add_txn(session: Session, description=None, bank_description=None, owner=None):
    txn = Transaction(
        type=TransactionType.credit,
        amount_cents=100,
        description=description,
        bank_description=bank_description,
        date=datetime(2024, 1, 1),
        owner=owner,
    )
    session.add(txn)
    session.flush()
    return txn


def link_count(session: Session, tag_id: int) -> int:
    return session.execute(
        select(func.count())
        .select_from(transaction_to_tags)
        .where(transaction_to_tags.c.tag_id == tag_id)
    ).scalar_one()


def test_apply_to_existing_tags_each_match_once() -> None:
    with make_session() as session:
        tag = Tag(name="Gas")
        session.add(tag)
        first = add_txn(session, description="Pago GAS apto 1A")
        add_txn(session, bank_description="pago gas 2B")
        add_txn(session, description="Agua")
        session.commit()
        service = PatternService(session)

        _, applied = service.create_tag_pattern(
            tag.id, PatternIn(pattern=r"GAS|gas", apply_to_existing=True)
        )
        _, applied_again = service.create_tag_pattern(
            tag.id, PatternIn(pattern=r"[Gg][Aa][Ss]", apply_to_existing=True)
        )

        assert applied == 2
        assert applied_again == 0
        assert link_count(session, tag.id) == 2
        assert tag.id in [t.id for t in TransactionService(session).get(first.id).tags]


def test_rerunning_a_pattern_does_not_duplicate_links() -> None:
    with make_session() as session:
        tag = Tag(name="Gas")
        session.add(tag)
        add_txn(session, description="gas")
        session.commit()
        service = PatternService(session)
        item, _ = service.create_tag_pattern(tag.id, PatternIn(pattern="gas"))

        assert service.apply_tag_pattern(item.id) == 1
        assert service.apply_tag_pattern(item.id) == 0
        assert link_count(session, tag.id) == 1


def test_invalid_regex_is_rejected() -> None:
    with make_session() as session:
        tag = Tag(name="Gas")
        session.add(tag)
        session.commit()

        with pytest.raises(ValueError, match="Invalid regex pattern"):
            PatternService(session).create_tag_pattern(tag.id, PatternIn(pattern="(gas"))
        assert session.scalar(select(func.count(TagPattern.id))) == 0


def test_toggle_and_delete_patterns() -> None:
    with make_session() as session:
        owner = Owner(name="Ana", apartment_id="1A")
        session.add(owner)
        session.commit()
        service = PatternService(session)
        item, _ = service.create_owner_pattern(owner.id, PatternIn(pattern="ANA"))

        assert service.toggle_owner_pattern(owner.id, item.id).is_active is False
        assert service.toggle_owner_pattern(owner.id, item.id).is_active is True
        with pytest.raises(ValueError, match="Recognition pattern not found"):
            service.toggle_owner_pattern(owner.id + 1, item.id)

        service.delete_owner_pattern(owner.id, item.id)
        assert session.scalar(select(func.count(OwnerPattern.id))) == 0


def test_auto_assign_owner_uses_first_matching_active_pattern() -> None:
    with make_session() as session:
        ana = Owner(name="Ana", apartment_id="1A")
        luis = Owner(name="Luis", apartment_id="2B")
        session.add_all([ana, luis])
        session.flush()
        session.add_all(
            [
                OwnerPattern(owner_id=luis.id, pattern="PEREZ", is_active=False),
                OwnerPattern(owner_id=ana.id, pattern="PEREZ"),
                OwnerPattern(owner_id=luis.id, pattern="TRANSF"),
            ]
        )
        txn = add_txn(session, bank_description="TRANSF ANA PEREZ")
        session.commit()

        result = TransactionService(session).auto_assign_owner(txn.id)

        assert result.success is True
        assert result.owner_id == ana.id
        assert session.get(Transaction, txn.id).owner_id == ana.id


def test_auto_assign_owner_outcomes_without_a_match() -> None:
    with make_session() as session:
        blank = add_txn(session)
        unmatched = add_txn(session, description="Depósito")
        session.commit()
        service = TransactionService(session)

        missing = service.auto_assign_owner(999)
        empty = service.auto_assign_owner(blank.id)
        nothing = service.auto_assign_owner(unmatched.id)

        assert (missing.success, missing.error) == (False, "Transaction not found")
        assert (empty.success, empty.error) == (
            False,
            "Transaction has no description to match",
        )
        assert (nothing.success, nothing.owner_id) == (True, None)


def test_owner_pattern_apply_only_fills_unowned_transactions() -> None:
    with make_session() as session:
        ana = Owner(name="Ana", apartment_id="1A")
        luis = Owner(name="Luis", apartment_id="2B")
        session.add_all([ana, luis])
        session.flush()
        taken = add_txn(session, description="PAGO 1A", owner=luis)
        free = add_txn(session, description="PAGO 1A enero")
        session.commit()

        _, assigned = PatternService(session).create_owner_pattern(
            ana.id, PatternIn(pattern=r"1A", apply_to_existing=True)
        )

        assert assigned == 1
        session.expire_all()
        assert session.get(Transaction, taken.id).owner_id == luis.id
        assert session.get(Transaction, free.id).owner_id == ana.id
        entry = session.scalar(
            select(AuditLog).where(AuditLog.event_type == "BULK_IMPORT")
        )
        assert entry.entity_type == "OWNER"
        assert entry.entity_id == str(ana.id)
        assert json.loads(entry.details) == {"action": "pattern_applied", "count": 1}


def test_auto_assign_tags_adds_every_matching_tag() -> None:
    with make_session() as session:
        gas = Tag(name="Gas")
        jan = Tag(name="Enero 2024", month_year=202401)
        session.add_all([gas, jan])
        session.flush()
        session.add_all(
            [
                TagPattern(tag_id=gas.id, pattern="GLP"),
                TagPattern(tag_id=jan.id, pattern="ENE"),
            ]
        )
        txn = add_txn(session, description="GLP ENE 2024")
        session.commit()
        service = TransactionService(session)

        result = service.auto_assign_tags(txn.id)
        again = service.auto_assign_tags(txn.id)

        assert sorted(result.tag_ids) == sorted([gas.id, jan.id])
        assert again.success is True
        assert {t.name for t in service.get(txn.id).tags} == {"Gas", "Enero 2024"}
        assert link_count(session, gas.id) == 1
