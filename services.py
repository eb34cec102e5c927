from __future__ import annotations

import json
import logging
import math
import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Iterator, Optional, Sequence

from sqlalchemy import case, exists, func, insert, inspect, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload, selectinload

from config import get_settings
from csv_utils import parse_bank_statement
from filters import TransactionFilters
from models import (
    Attachment,
    AuditEntityType,
    AuditEventType,
    AuditLog,
    KVStore,
    LpgRefill,
    LpgRefillEntry,
    Owner,
    OwnerPattern,
    Tag,
    TagPattern,
    Transaction,
    TransactionBatch,
    TransactionType,
    transaction_to_tags,
)
from periods import end_of_day, resolve_month_window, start_of_day
from schemas import (
    AuditLogFilters,
    BalanceIn,
    LpgEntryOut,
    LpgReadingIn,
    LpgRefillIn,
    MonthlyPaymentOut,
    OwnerIn,
    PatternIn,
    PaymentOut,
    TagIn,
    TransactionIn,
)
from storage import AttachmentStorage, StorageError, build_storage_key, get_storage

logger = logging.getLogger(__name__)


SNAPSHOT_SKIP = frozenset({"updated_at"})


def model_snapshot(obj: Any) -> dict[str, Any]:
    return {
        attr.key: getattr(obj, attr.key)
        for attr in inspect(obj).mapper.column_attrs
        if attr.key not in SNAPSHOT_SKIP
    }


def compile_pattern(pattern: str) -> re.Pattern:
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ValueError("Invalid regex pattern") from exc


def not_duplicate():
    return Transaction.is_duplicate.is_(False)


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuditContext:
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class AuditLogPage:
    items: list[AuditLog]
    total_count: int
    page: int
    limit: int

    @property
    def page_count(self) -> int:
        return math.ceil(self.total_count / self.limit) if self.limit else 0


class AuditService:
    """
    Append-only audit trail. Writes are best effort: a failed insert is rolled
    back to its savepoint and logged, and the caller's unit of work carries on.
    """

    def __init__(self, session: Session, context: Optional[AuditContext] = None):
        self.session = session
        self.context = context or AuditContext()

    def _persist(self, entry: AuditLog) -> None:
        with self.session.begin_nested():
            self.session.add(entry)

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: AuditEntityType,
        entity_id: Optional[object] = None,
        details: Optional[dict[str, Any]] = None,
        *,
        is_system_event: bool = False,
        context: Optional[AuditContext] = None,
    ) -> None:
        ctx = context or self.context
        try:
            entry = AuditLog(
                event_type=event_type.value,
                entity_type=entity_type.value,
                entity_id=str(entity_id) if entity_id is not None else None,
                user_id=ctx.user_id,
                user_email=ctx.user_email,
                details=json.dumps(details, default=str) if details else None,
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
                is_system_event=is_system_event,
            )
            self._persist(entry)
        except SQLAlchemyError:
            logger.exception(
                f"audit_write_failed: event={event_type.value} "
                f"entity={entity_type.value} id={entity_id}"
            )

    def log_create(
        self, entity_type: AuditEntityType, entity_id: object, values: dict[str, Any]
    ) -> None:
        self.log_event(
            AuditEventType.create,
            entity_type,
            entity_id,
            {"action": "created", "new_values": values},
        )

    def log_update(
        self,
        entity_type: AuditEntityType,
        entity_id: object,
        old: dict[str, Any],
        new: dict[str, Any],
    ) -> None:
        changes = {
            key: {"old": old.get(key), "new": value}
            for key, value in new.items()
            if old.get(key) != value
        }
        if not changes:
            return
        self.log_event(
            AuditEventType.update,
            entity_type,
            entity_id,
            {"action": "updated", "changes": changes},
        )

    def log_delete(
        self, entity_type: AuditEntityType, entity_id: object, values: dict[str, Any]
    ) -> None:
        self.log_event(
            AuditEventType.delete,
            entity_type,
            entity_id,
            {"action": "deleted", "deleted_values": values},
        )

    def log_sign_in(self, email: str, name: Optional[str] = None) -> None:
        self.log_event(
            AuditEventType.sign_in,
            AuditEntityType.system,
            details={"action": "user_signed_in", "user_name": name},
            is_system_event=True,
            context=AuditContext(
                user_id=email,
                user_email=email,
                ip_address=self.context.ip_address,
                user_agent=self.context.user_agent,
            ),
        )

    def log_sign_out(self, email: str) -> None:
        self.log_event(
            AuditEventType.sign_out,
            AuditEntityType.system,
            details={"action": "user_signed_out"},
            is_system_event=True,
            context=AuditContext(
                user_id=email,
                user_email=email,
                ip_address=self.context.ip_address,
                user_agent=self.context.user_agent,
            ),
        )

    def log_bulk_import(
        self, entity_type: AuditEntityType, count: int, filename: Optional[str]
    ) -> None:
        self.log_event(
            AuditEventType.bulk_import,
            entity_type,
            details={"action": "bulk_import", "count": count, "filename": filename},
        )

    def find(
        self, filters: AuditLogFilters, page: int = 1, limit: int = 50
    ) -> AuditLogPage:
        clauses = []
        if filters.event_type:
            clauses.append(AuditLog.event_type == filters.event_type)
        if filters.entity_type:
            clauses.append(AuditLog.entity_type == filters.entity_type)
        if filters.user_email:
            clauses.append(
                AuditLog.user_email.icontains(filters.user_email, autoescape=True)
            )
        if filters.entity_id:
            clauses.append(AuditLog.entity_id == filters.entity_id)
        if filters.is_system_event is not None:
            clauses.append(AuditLog.is_system_event.is_(filters.is_system_event))
        if filters.date_from:
            clauses.append(AuditLog.created_at >= start_of_day(filters.date_from))
        if filters.date_to:
            clauses.append(AuditLog.created_at <= end_of_day(filters.date_to))
        if filters.search:
            clauses.append(
                AuditLog.details.icontains(filters.search, autoescape=True)
            )

        page = max(page, 1)
        limit = min(max(limit, 1), 200)
        total = self.session.execute(
            select(func.count(AuditLog.id)).where(*clauses)
        ).scalar_one()
        items = self.session.scalars(
            select(AuditLog)
            .where(*clauses)
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        return AuditLogPage(
            items=list(items), total_count=int(total or 0), page=page, limit=limit
        )

    def entity_history(
        self, entity_type: AuditEntityType, entity_id: object
    ) -> list[AuditLog]:
        stmt = (
            select(AuditLog)
            .where(
                AuditLog.entity_type == entity_type.value,
                AuditLog.entity_id == str(entity_id),
            )
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        )
        return list(self.session.scalars(stmt).all())


# ---------------------------------------------------------------------------
# Owners
# ---------------------------------------------------------------------------


class OwnerService:
    def __init__(self, session: Session, context: Optional[AuditContext] = None):
        self.session = session
        self.audit = AuditService(session, context)

    def list_all(self, include_inactive: bool = True) -> list[Owner]:
        stmt = select(Owner).order_by(Owner.is_active.desc(), Owner.apartment_id)
        if not include_inactive:
            stmt = stmt.where(Owner.is_active.is_(True))
        return list(self.session.scalars(stmt).all())

    def list_active(self) -> list[Owner]:
        stmt = (
            select(Owner)
            .where(Owner.is_active.is_(True))
            .order_by(Owner.apartment_id)
        )
        return list(self.session.scalars(stmt).all())

    def get(self, owner_id: int) -> Owner:
        owner = self.session.scalar(
            select(Owner)
            .options(selectinload(Owner.patterns))
            .where(Owner.id == owner_id)
        )
        if not owner:
            raise ValueError("Owner not found")
        return owner

    def _check_apartment(self, apartment_id: str, exclude_id: Optional[int] = None):
        stmt = select(Owner.id).where(
            func.lower(Owner.apartment_id) == apartment_id.lower()
        )
        if exclude_id is not None:
            stmt = stmt.where(Owner.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise ValueError("Apartment ID already in use")

    def create(self, data: OwnerIn) -> Owner:
        apartment_id = data.apartment_id.strip()
        self._check_apartment(apartment_id)
        owner = Owner(
            name=data.name.strip(),
            apartment_id=apartment_id,
            email=data.email.strip() if data.email else None,
            phone=data.phone.strip() if data.phone else None,
            is_active=data.is_active,
        )
        self.session.add(owner)
        self.session.flush()
        self.audit.log_create(AuditEntityType.owner, owner.id, model_snapshot(owner))
        self.session.commit()
        self.session.refresh(owner)
        return owner

    def update(self, owner_id: int, data: OwnerIn) -> Owner:
        owner = self.get(owner_id)
        apartment_id = data.apartment_id.strip()
        self._check_apartment(apartment_id, exclude_id=owner.id)
        old = model_snapshot(owner)
        owner.name = data.name.strip()
        owner.apartment_id = apartment_id
        owner.email = data.email.strip() if data.email else None
        owner.phone = data.phone.strip() if data.phone else None
        owner.is_active = data.is_active
        self.session.flush()
        self.audit.log_update(AuditEntityType.owner, owner.id, old, model_snapshot(owner))
        self.session.commit()
        self.session.refresh(owner)
        return owner

    def set_active(self, owner_id: int, is_active: bool) -> Owner:
        owner = self.get(owner_id)
        if owner.is_active == is_active:
            return owner
        owner.is_active = is_active
        self.session.flush()
        self.audit.log_update(
            AuditEntityType.owner,
            owner.id,
            {"is_active": not is_active},
            {"is_active": is_active},
        )
        self.session.commit()
        return owner


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------


class TagService:
    def __init__(self, session: Session, context: Optional[AuditContext] = None):
        self.session = session
        self.audit = AuditService(session, context)

    def list_all(self) -> list[Tag]:
        stmt = select(Tag).options(joinedload(Tag.parent)).order_by(Tag.name)
        return list(self.session.scalars(stmt).all())

    def monthly_tags(self) -> list[Tag]:
        stmt = (
            select(Tag)
            .where(Tag.month_year.isnot(None))
            .order_by(Tag.month_year.asc(), Tag.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def get(self, tag_id: int) -> Tag:
        tag = self.session.scalar(
            select(Tag)
            .options(joinedload(Tag.parent), selectinload(Tag.patterns))
            .where(Tag.id == tag_id)
        )
        if not tag:
            raise ValueError("Tag not found")
        return tag

    def _validate(self, data: TagIn, tag_id: Optional[int] = None) -> str:
        clean_name = data.name.strip()
        if not clean_name:
            raise ValueError("Tag name cannot be empty")
        stmt = select(Tag.id).where(func.lower(Tag.name) == clean_name.lower())
        if tag_id is not None:
            stmt = stmt.where(Tag.id != tag_id)
        if self.session.scalar(stmt) is not None:
            raise ValueError("Tag with this name already exists")
        if data.parent_id is not None:
            if data.parent_id == tag_id:
                raise ValueError("A tag cannot be its own parent")
            if not self.session.get(Tag, data.parent_id):
                raise ValueError("Parent tag not found")
        return clean_name

    def create(self, data: TagIn) -> Tag:
        clean_name = self._validate(data)
        tag = Tag(
            name=clean_name,
            description=data.description,
            color=data.color,
            parent_id=data.parent_id,
            month_year=data.month_year,
        )
        self.session.add(tag)
        self.session.flush()
        self.audit.log_create(AuditEntityType.tag, tag.id, model_snapshot(tag))
        self.session.commit()
        self.session.refresh(tag)
        return tag

    def update(self, tag_id: int, data: TagIn) -> Tag:
        tag = self.get(tag_id)
        clean_name = self._validate(data, tag_id=tag.id)
        old = model_snapshot(tag)
        tag.name = clean_name
        tag.description = data.description
        tag.color = data.color
        tag.parent_id = data.parent_id
        tag.month_year = data.month_year
        self.session.flush()
        self.audit.log_update(AuditEntityType.tag, tag.id, old, model_snapshot(tag))
        self.session.commit()
        self.session.refresh(tag)
        return tag

    def delete(self, tag_id: int) -> None:
        tag = self.get(tag_id)
        snapshot = model_snapshot(tag)
        self.session.execute(
            transaction_to_tags.delete().where(transaction_to_tags.c.tag_id == tag.id)
        )
        self.session.execute(
            update(Tag).where(Tag.parent_id == tag.id).values(parent_id=None)
        )
        self.session.execute(
            update(LpgRefill).where(LpgRefill.tag_id == tag.id).values(tag_id=None)
        )
        self.session.delete(tag)
        self.session.flush()
        self.audit.log_delete(AuditEntityType.tag, tag_id, snapshot)
        self.session.commit()


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


@dataclass
class TransactionPage:
    transactions: list[Transaction]
    total_count: int
    current_page: int
    limit: int

    @property
    def page_count(self) -> int:
        return math.ceil(self.total_count / self.limit)


@dataclass
class AutoAssignResult:
    success: bool
    owner_id: Optional[int] = None
    tag_ids: list[int] = field(default_factory=list)
    error: Optional[str] = None


def transaction_filter_clauses(filters: TransactionFilters) -> list:
    """Build the WHERE clauses shared by the listing and count queries."""
    clauses = [not_duplicate()]

    if filters.no_owner:
        clauses.append(Transaction.owner_id.is_(None))
    elif filters.owner_id is not None:
        clauses.append(Transaction.owner_id == filters.owner_id)

    if filters.transaction_type is not None:
        clauses.append(Transaction.type == filters.transaction_type)

    if filters.start_date is not None:
        clauses.append(Transaction.date >= start_of_day(filters.start_date))
    if filters.end_date is not None:
        clauses.append(Transaction.date <= end_of_day(filters.end_date))

    if filters.search_term:
        term = filters.search_term
        clauses.append(
            or_(
                *(
                    column.icontains(term, autoescape=True)
                    for column in (
                        Transaction.description,
                        Transaction.bank_description,
                        Transaction.reference,
                        Transaction.serial,
                    )
                )
            )
        )

    if filters.no_tags:
        clauses.append(
            ~exists().where(transaction_to_tags.c.transaction_id == Transaction.id)
        )
    elif filters.tag_id is not None:
        clauses.append(
            Transaction.id.in_(
                select(transaction_to_tags.c.transaction_id).where(
                    transaction_to_tags.c.tag_id == filters.tag_id
                )
            )
        )
    return clauses


class TransactionService:
    def __init__(self, session: Session, context: Optional[AuditContext] = None):
        self.session = session
        self.audit = AuditService(session, context)

    def list_filtered(self, filters: TransactionFilters) -> TransactionPage:
        clauses = transaction_filter_clauses(filters)
        total = self.session.execute(
            select(func.count(Transaction.id)).where(*clauses)
        ).scalar_one()
        stmt = (
            select(Transaction)
            .options(
                joinedload(Transaction.owner),
                selectinload(Transaction.tags),
                selectinload(Transaction.attachments),
            )
            .where(*clauses)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(filters.offset)
            .limit(filters.limit)
        )
        return TransactionPage(
            transactions=list(self.session.scalars(stmt).all()),
            total_count=int(total or 0),
            current_page=filters.page,
            limit=filters.limit,
        )

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(
                joinedload(Transaction.owner),
                selectinload(Transaction.tags),
                selectinload(Transaction.attachments),
            )
            .where(Transaction.id == transaction_id)
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise ValueError("Transaction not found")
        return txn

    def recent_by_tag(self, tag_id: int, limit: int = 20) -> list[Transaction]:
        filters = TransactionFilters(tag_id=tag_id, limit=limit)
        return self.list_filtered(filters).transactions

    def for_owner(self, owner_id: int, limit: int = 50) -> list[Transaction]:
        filters = TransactionFilters(owner_id=owner_id, limit=limit)
        return self.list_filtered(filters).transactions

    def _load_tags(self, tag_ids: Iterable[int]) -> list[Tag]:
        unique_ids = list(dict.fromkeys(tag_ids))
        if not unique_ids:
            return []
        tags = self.session.scalars(select(Tag).where(Tag.id.in_(unique_ids))).all()
        if len(tags) != len(unique_ids):
            raise ValueError("Tag not found")
        return list(tags)

    def create(self, data: TransactionIn) -> Transaction:
        if data.owner_id is not None and not self.session.get(Owner, data.owner_id):
            raise ValueError("Owner not found")
        txn = Transaction(
            type=data.type,
            amount_cents=data.amount_cents,
            description=data.description.strip(),
            date=start_of_day(data.date),
            owner_id=data.owner_id,
            reference=data.reference or None,
            category=data.category or None,
            is_duplicate=False,
        )
        txn.tags = self._load_tags(data.tag_ids)
        self.session.add(txn)
        self.session.flush()
        values = model_snapshot(txn)
        values["tag_ids"] = [t.id for t in txn.tags]
        self.audit.log_create(AuditEntityType.transaction, txn.id, values)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def update_description(self, transaction_id: int, description: str) -> Transaction:
        txn = self.get(transaction_id)
        old = {"description": txn.description}
        txn.description = description.strip() or None
        self.session.flush()
        self.audit.log_update(
            AuditEntityType.transaction,
            txn.id,
            old,
            {"description": txn.description},
        )
        self.session.commit()
        return txn

    def assign_owner(self, transaction_id: int, owner_id: Optional[int]) -> Transaction:
        txn = self.get(transaction_id)
        if owner_id is not None and not self.session.get(Owner, owner_id):
            raise ValueError("Owner not found")
        old = {"owner_id": txn.owner_id}
        txn.owner_id = owner_id
        self.session.flush()
        self.audit.log_update(
            AuditEntityType.transaction, txn.id, old, {"owner_id": owner_id}
        )
        self.session.commit()
        return txn

    def _has_tag(self, transaction_id: int, tag_id: int) -> bool:
        stmt = select(transaction_to_tags.c.tag_id).where(
            transaction_to_tags.c.transaction_id == transaction_id,
            transaction_to_tags.c.tag_id == tag_id,
        )
        return self.session.execute(stmt).first() is not None

    def add_tag(self, transaction_id: int, tag_id: int) -> bool:
        txn = self.get(transaction_id)
        if not self.session.get(Tag, tag_id):
            raise ValueError("Tag not found")
        if self._has_tag(txn.id, tag_id):
            return False
        self.session.execute(
            insert(transaction_to_tags).values(transaction_id=txn.id, tag_id=tag_id)
        )
        self.audit.log_create(
            AuditEntityType.transaction_tag,
            f"{txn.id}:{tag_id}",
            {"transaction_id": txn.id, "tag_id": tag_id},
        )
        self.session.commit()
        self.session.expire(txn, ["tags"])
        return True

    def remove_tag(self, transaction_id: int, tag_id: int) -> bool:
        txn = self.get(transaction_id)
        result = self.session.execute(
            transaction_to_tags.delete().where(
                transaction_to_tags.c.transaction_id == txn.id,
                transaction_to_tags.c.tag_id == tag_id,
            )
        )
        if not result.rowcount:
            return False
        self.audit.log_delete(
            AuditEntityType.transaction_tag,
            f"{txn.id}:{tag_id}",
            {"transaction_id": txn.id, "tag_id": tag_id},
        )
        self.session.commit()
        self.session.expire(txn, ["tags"])
        return True

    def auto_assign_owner(self, transaction_id: int) -> AutoAssignResult:
        """Assign the owner of the first active owner pattern that matches."""
        try:
            txn = self.session.get(Transaction, transaction_id)
            if not txn:
                return AutoAssignResult(False, error="Transaction not found")
            text = txn.match_text
            if not text:
                return AutoAssignResult(
                    False, error="Transaction has no description to match"
                )
            owner_id = PatternService(self.session).match_owner(text)
            if owner_id is None:
                return AutoAssignResult(True, owner_id=None)
            if txn.owner_id != owner_id:
                old = {"owner_id": txn.owner_id}
                txn.owner_id = owner_id
                self.session.flush()
                self.audit.log_update(
                    AuditEntityType.transaction,
                    txn.id,
                    old,
                    {"owner_id": owner_id},
                )
                self.session.commit()
            return AutoAssignResult(True, owner_id=owner_id)
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception(f"auto_assign_owner_failed: transaction={transaction_id}")
            return AutoAssignResult(False, error="Failed to auto-assign owner")

    def auto_assign_tags(self, transaction_id: int) -> AutoAssignResult:
        """Apply the tag of every active tag pattern that matches."""
        try:
            txn = self.session.get(Transaction, transaction_id)
            if not txn:
                return AutoAssignResult(False, error="Transaction not found")
            text = txn.match_text
            if not text:
                return AutoAssignResult(
                    False, error="Transaction has no description to match"
                )
            tag_ids = PatternService(self.session).match_tags(text)
            added = [tid for tid in tag_ids if not self._has_tag(txn.id, tid)]
            if added:
                self.session.execute(
                    insert(transaction_to_tags),
                    [{"transaction_id": txn.id, "tag_id": tid} for tid in added],
                )
                for tid in added:
                    self.audit.log_create(
                        AuditEntityType.transaction_tag,
                        f"{txn.id}:{tid}",
                        {"transaction_id": txn.id, "tag_id": tid, "source": "pattern"},
                    )
                self.session.commit()
                self.session.expire(txn, ["tags"])
            return AutoAssignResult(True, tag_ids=tag_ids)
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception(f"auto_assign_tags_failed: transaction={transaction_id}")
            return AutoAssignResult(False, error="Failed to auto-assign tags")


# ---------------------------------------------------------------------------
# Recognition patterns
# ---------------------------------------------------------------------------


class PatternService:
    def __init__(self, session: Session, context: Optional[AuditContext] = None):
        self.session = session
        self.audit = AuditService(session, context)

    @staticmethod
    def _compiled(patterns: Sequence[TagPattern | OwnerPattern]):
        for item in patterns:
            try:
                yield item, re.compile(item.pattern)
            except re.error:
                logger.warning(f"pattern_skipped: id={item.id} reason=invalid_regex")

    def match_owner(self, text: str) -> Optional[int]:
        patterns = self.session.scalars(
            select(OwnerPattern)
            .join(Owner, Owner.id == OwnerPattern.owner_id)
            .where(OwnerPattern.is_active.is_(True), Owner.is_active.is_(True))
            .order_by(OwnerPattern.id)
        ).all()
        for item, regex in self._compiled(patterns):
            if regex.search(text):
                return item.owner_id
        return None

    def match_tags(self, text: str) -> list[int]:
        patterns = self.session.scalars(
            select(TagPattern)
            .where(TagPattern.is_active.is_(True))
            .order_by(TagPattern.id)
        ).all()
        matched: list[int] = []
        for item, regex in self._compiled(patterns):
            if regex.search(text) and item.tag_id not in matched:
                matched.append(item.tag_id)
        return matched

    def create_tag_pattern(self, tag_id: int, data: PatternIn) -> tuple[TagPattern, int]:
        if not self.session.get(Tag, tag_id):
            raise ValueError("Tag not found")
        regex = compile_pattern(data.pattern)
        item = TagPattern(
            tag_id=tag_id,
            pattern=data.pattern,
            description=data.description or None,
            is_active=True,
        )
        self.session.add(item)
        self.session.flush()
        self.audit.log_create(AuditEntityType.pattern, item.id, model_snapshot(item))
        applied = self._apply_tag(regex, tag_id) if data.apply_to_existing else 0
        self.session.commit()
        return item, applied

    def apply_tag_pattern(self, pattern_id: int) -> int:
        item = self.session.get(TagPattern, pattern_id)
        if not item:
            raise ValueError("Recognition pattern not found")
        applied = self._apply_tag(compile_pattern(item.pattern), item.tag_id)
        self.session.commit()
        return applied

    def _apply_tag(self, regex: re.Pattern, tag_id: int) -> int:
        already = set(
            self.session.scalars(
                select(transaction_to_tags.c.transaction_id).where(
                    transaction_to_tags.c.tag_id == tag_id
                )
            ).all()
        )
        rows = self.session.execute(
            select(
                Transaction.id, Transaction.description, Transaction.bank_description
            )
        ).all()
        new_ids = [
            row.id
            for row in rows
            if row.id not in already
            and regex.search(row.description or row.bank_description or "")
        ]
        if new_ids:
            self.session.execute(
                insert(transaction_to_tags),
                [{"transaction_id": tid, "tag_id": tag_id} for tid in new_ids],
            )
            self.audit.log_event(
                AuditEventType.bulk_import,
                AuditEntityType.transaction_tag,
                tag_id,
                {"action": "pattern_applied", "count": len(new_ids)},
            )
        logger.info(f"tag_pattern_applied: tag={tag_id} added={len(new_ids)}")
        return len(new_ids)

    def _get_tag_pattern(self, tag_id: int, pattern_id: int) -> TagPattern:
        item = self.session.scalar(
            select(TagPattern).where(
                TagPattern.id == pattern_id, TagPattern.tag_id == tag_id
            )
        )
        if not item:
            raise ValueError("Recognition pattern not found")
        return item

    def toggle_tag_pattern(self, tag_id: int, pattern_id: int) -> TagPattern:
        item = self._get_tag_pattern(tag_id, pattern_id)
        item.is_active = not item.is_active
        self.session.flush()
        self.audit.log_update(
            AuditEntityType.pattern,
            item.id,
            {"is_active": not item.is_active},
            {"is_active": item.is_active},
        )
        self.session.commit()
        return item

    def delete_tag_pattern(self, tag_id: int, pattern_id: int) -> None:
        item = self._get_tag_pattern(tag_id, pattern_id)
        snapshot = model_snapshot(item)
        self.session.delete(item)
        self.session.flush()
        self.audit.log_delete(AuditEntityType.pattern, pattern_id, snapshot)
        self.session.commit()

    def create_owner_pattern(
        self, owner_id: int, data: PatternIn
    ) -> tuple[OwnerPattern, int]:
        if not self.session.get(Owner, owner_id):
            raise ValueError("Owner not found")
        regex = compile_pattern(data.pattern)
        item = OwnerPattern(
            owner_id=owner_id,
            pattern=data.pattern,
            description=data.description or None,
            is_active=True,
        )
        self.session.add(item)
        self.session.flush()
        self.audit.log_create(AuditEntityType.pattern, item.id, model_snapshot(item))
        applied = self._apply_owner(regex, owner_id) if data.apply_to_existing else 0
        self.session.commit()
        return item, applied

    def _apply_owner(self, regex: re.Pattern, owner_id: int) -> int:
        """Assign the owner to matching transactions that have no owner yet."""
        rows = self.session.execute(
            select(
                Transaction.id, Transaction.description, Transaction.bank_description
            ).where(Transaction.owner_id.is_(None))
        ).all()
        ids = [
            row.id
            for row in rows
            if regex.search(row.description or row.bank_description or "")
        ]
        if ids:
            self.session.execute(
                update(Transaction)
                .where(Transaction.id.in_(ids))
                .values(owner_id=owner_id, updated_at=datetime.utcnow())
            )
            self.audit.log_event(
                AuditEventType.bulk_import,
                AuditEntityType.owner,
                owner_id,
                {"action": "pattern_applied", "count": len(ids)},
            )
        logger.info(f"owner_pattern_applied: owner={owner_id} assigned={len(ids)}")
        return len(ids)

    def _get_owner_pattern(self, owner_id: int, pattern_id: int) -> OwnerPattern:
        item = self.session.scalar(
            select(OwnerPattern).where(
                OwnerPattern.id == pattern_id, OwnerPattern.owner_id == owner_id
            )
        )
        if not item:
            raise ValueError("Recognition pattern not found")
        return item

    def toggle_owner_pattern(self, owner_id: int, pattern_id: int) -> OwnerPattern:
        item = self._get_owner_pattern(owner_id, pattern_id)
        item.is_active = not item.is_active
        self.session.flush()
        self.audit.log_update(
            AuditEntityType.pattern,
            item.id,
            {"is_active": not item.is_active},
            {"is_active": item.is_active},
        )
        self.session.commit()
        return item

    def delete_owner_pattern(self, owner_id: int, pattern_id: int) -> None:
        item = self._get_owner_pattern(owner_id, pattern_id)
        snapshot = model_snapshot(item)
        self.session.delete(item)
        self.session.flush()
        self.audit.log_delete(AuditEntityType.pattern, pattern_id, snapshot)
        self.session.commit()


# ---------------------------------------------------------------------------
# Monthly payments
# ---------------------------------------------------------------------------


@dataclass
class MonthlySummary:
    current_tag: Optional[Tag]
    previous_tag: Optional[Tag]
    current_unpaid: int
    previous_unpaid: int
    window_tags: list[Tag]


class PaymentService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _credits_for_tags(self, tag_ids: Sequence[int]) -> list[Transaction]:
        # IN over the association yields each transaction once, however many
        # of the selected tags it carries.
        tagged = select(transaction_to_tags.c.transaction_id).where(
            transaction_to_tags.c.tag_id.in_(tag_ids)
        )
        stmt = (
            select(Transaction)
            .where(
                not_duplicate(),
                Transaction.type == TransactionType.credit,
                Transaction.owner_id.isnot(None),
                Transaction.id.in_(tagged),
            )
            .order_by(Transaction.date.asc(), Transaction.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def monthly_payments(self, tag_ids: Sequence[int]) -> list[MonthlyPaymentOut]:
        owners = OwnerService(self.session).list_active()
        by_owner: dict[int, list[Transaction]] = defaultdict(list)
        if tag_ids:
            for txn in self._credits_for_tags(tag_ids):
                by_owner[txn.owner_id].append(txn)

        rows: list[MonthlyPaymentOut] = []
        for owner in owners:
            payments = by_owner.get(owner.id, [])
            amount_paid = sum(t.amount_cents for t in payments)
            rows.append(
                MonthlyPaymentOut(
                    owner_id=owner.id,
                    owner_name=owner.name,
                    apartment_id=owner.apartment_id,
                    amount_paid_cents=amount_paid,
                    payment_count=len(payments),
                    last_payment_date=max((t.date for t in payments), default=None),
                    payments=[
                        PaymentOut(id=t.id, date=t.date, amount_cents=t.amount_cents)
                        for t in payments
                    ],
                    status="paid" if amount_paid > 0 else "pending",
                )
            )
        return rows

    def unpaid_count(self, tag_id: int) -> int:
        return sum(1 for row in self.monthly_payments([tag_id]) if row.status == "pending")

    def summary(self, today: Optional[date] = None) -> MonthlySummary:
        window = resolve_month_window(today)
        tags = TagService(self.session).monthly_tags()
        by_month = {t.month_year: t for t in tags}
        current = by_month.get(window.current)
        previous = by_month.get(window.previous)
        return MonthlySummary(
            current_tag=current,
            previous_tag=previous,
            current_unpaid=self.unpaid_count(current.id) if current else 0,
            previous_unpaid=self.unpaid_count(previous.id) if previous else 0,
            window_tags=[t for t in tags if t.month_year in window],
        )


# ---------------------------------------------------------------------------
# LPG refills
# ---------------------------------------------------------------------------


@dataclass
class LpgPaymentStatus:
    owner: Owner
    amount_owed_cents: int
    amount_paid_cents: int
    entry: Optional[LpgRefillEntry] = None

    @property
    def remaining_cents(self) -> int:
        return self.amount_owed_cents - self.amount_paid_cents

    @property
    def status(self) -> str:
        return "paid" if self.remaining_cents <= 0 else "pending"


def _round_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class LpgService:
    def __init__(self, session: Session, context: Optional[AuditContext] = None):
        self.session = session
        self.audit = AuditService(session, context)

    @staticmethod
    def compute_entries(
        bill_amount_cents: int,
        efficiency_percentage: float,
        readings: Sequence[LpgReadingIn],
    ) -> list[LpgEntryOut]:
        """
        Split the bill by each apartment's share of total consumption, then
        apply the efficiency surcharge on top of each share.
        """
        consumptions = []
        for reading in readings:
            consumption = reading.current_reading - reading.previous_reading
            if consumption < 0:
                raise ValueError("Current reading cannot be lower than previous reading")
            consumptions.append(Decimal(str(consumption)))
        total = sum(consumptions, Decimal("0"))
        if total <= 0:
            raise ValueError("Total consumption must be greater than zero")

        bill = Decimal(bill_amount_cents)
        surcharge = Decimal("1") + Decimal(str(efficiency_percentage)) / Decimal("100")
        entries: list[LpgEntryOut] = []
        for reading, consumption in zip(readings, consumptions):
            share = consumption / total
            subtotal = share * bill
            entries.append(
                LpgEntryOut(
                    owner_id=reading.owner_id,
                    previous_reading=reading.previous_reading,
                    current_reading=reading.current_reading,
                    consumption=float(consumption),
                    percentage=float(share * 100),
                    subtotal_cents=_round_cents(subtotal),
                    total_amount_cents=_round_cents(subtotal * surcharge),
                )
            )
        return entries

    def create_refill(self, data: LpgRefillIn) -> LpgRefill:
        owner_ids = [r.owner_id for r in data.readings]
        if len(set(owner_ids)) != len(owner_ids):
            raise ValueError("Each apartment can only appear once per refill")
        found = self.session.scalars(select(Owner.id).where(Owner.id.in_(owner_ids))).all()
        if len(found) != len(owner_ids):
            raise ValueError("Owner not found")
        if data.tag_id is not None and not self.session.get(Tag, data.tag_id):
            raise ValueError("Tag not found")

        entries = self.compute_entries(
            data.bill_amount_cents, data.efficiency_percentage, data.readings
        )
        refill = LpgRefill(
            bill_amount_cents=data.bill_amount_cents,
            gallons_refilled=data.gallons_refilled,
            refill_date=start_of_day(data.refill_date),
            efficiency_percentage=data.efficiency_percentage,
            tag_id=data.tag_id,
        )
        refill.entries = [LpgRefillEntry(**entry.model_dump()) for entry in entries]
        self.session.add(refill)
        self.session.flush()
        self.audit.log_create(
            AuditEntityType.lpg_refill, refill.id, model_snapshot(refill)
        )
        for entry in refill.entries:
            self.audit.log_create(
                AuditEntityType.lpg_refill_entry, entry.id, model_snapshot(entry)
            )
        self.session.commit()
        self.session.refresh(refill)
        return refill

    def _with_details(self):
        return select(LpgRefill).options(
            selectinload(LpgRefill.entries).joinedload(LpgRefillEntry.owner),
            selectinload(LpgRefill.entries).selectinload(LpgRefillEntry.attachments),
            selectinload(LpgRefill.attachments),
            joinedload(LpgRefill.tag),
        )

    def list_all(self) -> list[LpgRefill]:
        stmt = self._with_details().order_by(
            LpgRefill.refill_date.desc(), LpgRefill.id.desc()
        )
        return list(self.session.scalars(stmt).unique().all())

    def get(self, refill_id: int) -> LpgRefill:
        refill = self.session.scalar(
            self._with_details().where(LpgRefill.id == refill_id)
        )
        if not refill:
            raise ValueError("Refill not found")
        return refill

    def latest(self) -> Optional[LpgRefill]:
        stmt = self._with_details().order_by(
            LpgRefill.refill_date.desc(), LpgRefill.id.desc()
        )
        return self.session.scalars(stmt.limit(1)).first()

    def previous_readings(self) -> dict[int, float]:
        refill = self.latest()
        if not refill:
            return {}
        return {entry.owner_id: entry.current_reading for entry in refill.entries}

    def history_for_owner(self, owner_id: int) -> list[LpgRefillEntry]:
        stmt = (
            select(LpgRefillEntry)
            .options(joinedload(LpgRefillEntry.refill).joinedload(LpgRefill.tag))
            .join(LpgRefill, LpgRefill.id == LpgRefillEntry.refill_id)
            .where(LpgRefillEntry.owner_id == owner_id)
            .order_by(LpgRefill.refill_date.desc())
        )
        return list(self.session.scalars(stmt).all())

    def _paid_by_owner(self, tag_id: int) -> dict[int, int]:
        tagged = select(transaction_to_tags.c.transaction_id).where(
            transaction_to_tags.c.tag_id == tag_id
        )
        rows = self.session.execute(
            select(Transaction.owner_id, func.sum(Transaction.amount_cents))
            .where(
                not_duplicate(),
                Transaction.type == TransactionType.credit,
                Transaction.owner_id.isnot(None),
                Transaction.id.in_(tagged),
            )
            .group_by(Transaction.owner_id)
        ).all()
        return {owner_id: int(total or 0) for owner_id, total in rows}

    def pending_payments(self, refill_id: int) -> list[LpgPaymentStatus]:
        refill = self.get(refill_id)
        if refill.tag_id is None:
            return []
        paid = self._paid_by_owner(refill.tag_id)
        return [
            LpgPaymentStatus(
                owner=entry.owner,
                amount_owed_cents=entry.total_amount_cents,
                amount_paid_cents=paid.get(entry.owner_id, 0),
                entry=entry,
            )
            for entry in refill.entries
            if entry.total_amount_cents > 0
        ]

    def all_pending_payments(self) -> list[LpgPaymentStatus]:
        totals: dict[int, LpgPaymentStatus] = {}
        for refill in self.list_all():
            if refill.tag_id is None:
                continue
            for row in self.pending_payments(refill.id):
                agg = totals.get(row.owner.id)
                if agg is None:
                    totals[row.owner.id] = LpgPaymentStatus(
                        owner=row.owner,
                        amount_owed_cents=row.amount_owed_cents,
                        amount_paid_cents=row.amount_paid_cents,
                    )
                else:
                    agg.amount_owed_cents += row.amount_owed_cents
                    agg.amount_paid_cents += row.amount_paid_cents
        return sorted(totals.values(), key=lambda r: r.owner.apartment_id)


# ---------------------------------------------------------------------------
# Attachments
# ---------------------------------------------------------------------------


ATTACHMENT_PARENTS = {
    "transaction": (Transaction, "transaction_id", "Transaction not found"),
    "refill": (LpgRefill, "refill_id", "Refill not found"),
    "refill_entry": (LpgRefillEntry, "refill_entry_id", "Refill entry not found"),
}


class AttachmentService:
    def __init__(
        self,
        session: Session,
        storage: Optional[AttachmentStorage] = None,
        context: Optional[AuditContext] = None,
    ) -> None:
        self.session = session
        self.storage = storage or get_storage()
        self.audit = AuditService(session, context)

    def upload(
        self,
        entity_type: str,
        entity_id: int,
        filename: str,
        content: bytes,
        mime_type: Optional[str] = None,
    ) -> Attachment:
        if entity_type not in ATTACHMENT_PARENTS:
            raise ValueError(f"Unsupported attachment target: {entity_type}")
        if not content:
            raise ValueError("File is required")
        model, column, missing = ATTACHMENT_PARENTS[entity_type]
        if not self.session.get(model, entity_id):
            raise ValueError(missing)

        key = build_storage_key(entity_type, filename, get_settings().environment)
        self.storage.put(key, content)
        attachment = Attachment(
            filename=filename,
            storage_key=key,
            size=len(content),
            mime_type=mime_type or "application/octet-stream",
            **{column: entity_id},
        )
        try:
            self.session.add(attachment)
            self.session.flush()
            self.audit.log_create(
                AuditEntityType.attachment, attachment.id, model_snapshot(attachment)
            )
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            self.storage.delete(key)
            raise
        logger.info(f"attachment_uploaded: id={attachment.id} {column}={entity_id}")
        return attachment

    def get(self, attachment_id: int) -> Attachment:
        attachment = self.session.get(Attachment, attachment_id)
        if not attachment:
            raise ValueError("Attachment not found")
        return attachment

    def for_transaction(self, transaction_id: int) -> list[Attachment]:
        stmt = (
            select(Attachment)
            .where(Attachment.transaction_id == transaction_id)
            .order_by(Attachment.created_at.desc())
        )
        return list(self.session.scalars(stmt).all())

    def open(self, attachment_id: int) -> tuple[Attachment, Iterator[bytes]]:
        attachment = self.get(attachment_id)
        return attachment, self.storage.open(attachment.storage_key)

    def for_refill(self, refill_id: int) -> list[Attachment]:
        """Attachments on the refill itself and on any of its entries."""
        entry_ids = select(LpgRefillEntry.id).where(LpgRefillEntry.refill_id == refill_id)
        stmt = (
            select(Attachment)
            .where(
                or_(
                    Attachment.refill_id == refill_id,
                    Attachment.refill_entry_id.in_(entry_ids),
                )
            )
            .order_by(Attachment.created_at.desc())
        )
        return list(self.session.scalars(stmt).all())

    def delete(
        self,
        attachment_id: int,
        transaction_id: Optional[int] = None,
        refill_id: Optional[int] = None,
    ) -> None:
        attachment = self.get(attachment_id)
        if transaction_id is not None and attachment.transaction_id != transaction_id:
            raise ValueError("Attachment not found")
        if refill_id is not None and attachment.id not in {
            a.id for a in self.for_refill(refill_id)
        }:
            raise ValueError("Attachment not found")
        snapshot = model_snapshot(attachment)
        key = attachment.storage_key
        self.session.delete(attachment)
        self.session.flush()
        self.audit.log_delete(AuditEntityType.attachment, attachment_id, snapshot)
        self.session.commit()
        try:
            self.storage.delete(key)
        except StorageError:
            logger.exception(f"attachment_bytes_orphaned: id={attachment_id} key={key}")


# ---------------------------------------------------------------------------
# Bank statement import
# ---------------------------------------------------------------------------


@dataclass
class ImportSummary:
    batch: TransactionBatch
    errors: list[str]
    owners_assigned: int = 0


class BatchImportService:
    def __init__(self, session: Session, context: Optional[AuditContext] = None):
        self.session = session
        self.context = context
        self.audit = AuditService(session, context)

    def list_all(self) -> list[TransactionBatch]:
        stmt = select(TransactionBatch).order_by(TransactionBatch.processed_at.desc())
        return list(self.session.scalars(stmt).all())

    def get(self, batch_id: int) -> TransactionBatch:
        batch = self.session.get(TransactionBatch, batch_id)
        if not batch:
            raise ValueError("Batch not found")
        return batch

    def transactions_for(self, batch_id: int) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.owner), selectinload(Transaction.tags))
            .where(Transaction.batch_id == batch_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        return list(self.session.scalars(stmt).all())

    def _is_known(self, row) -> bool:
        stmt = select(Transaction.id).where(
            Transaction.date == row.date,
            Transaction.amount_cents == row.amount_cents,
            Transaction.type == row.type,
        )
        if row.serial:
            stmt = stmt.where(Transaction.serial == row.serial)
        return self.session.scalar(stmt.limit(1)) is not None

    def import_statement(
        self, original_filename: str, content: str, *, auto_assign: bool = False
    ) -> ImportSummary:
        parsed = parse_bank_statement(content)
        stamp = int(datetime.utcnow().timestamp() * 1000)
        safe = re.sub(r"[^a-zA-Z0-9.-]", "_", original_filename)
        batch = TransactionBatch(
            filename=f"{stamp}-{safe}",
            original_filename=original_filename,
            processed_at=datetime.utcnow(),
            total_transactions=len(parsed.transactions),
            new_transactions=0,
            duplicated_transactions=0,
        )
        self.session.add(batch)
        self.session.flush()

        new_ids: list[int] = []
        for row in parsed.transactions:
            duplicate = self._is_known(row)
            txn = Transaction(
                type=row.type,
                amount_cents=row.amount_cents,
                description=row.description,
                bank_description=row.bank_description,
                date=row.date,
                reference=row.reference,
                serial=row.serial,
                bank_account=parsed.account or None,
                batch_id=batch.id,
                is_duplicate=duplicate,
            )
            self.session.add(txn)
            self.session.flush()
            if duplicate:
                batch.duplicated_transactions += 1
            else:
                batch.new_transactions += 1
                new_ids.append(txn.id)

        self.audit.log_bulk_import(
            AuditEntityType.transaction, batch.new_transactions, original_filename
        )
        self.session.commit()
        logger.info(
            f"statement_imported: batch={batch.id} new={batch.new_transactions} "
            f"duplicates={batch.duplicated_transactions} errors={len(parsed.errors)}"
        )

        assigned = 0
        if auto_assign:
            txn_service = TransactionService(self.session, self.context)
            for txn_id in new_ids:
                result = txn_service.auto_assign_owner(txn_id)
                if result.success and result.owner_id is not None:
                    assigned += 1
                txn_service.auto_assign_tags(txn_id)
        return ImportSummary(batch=batch, errors=parsed.errors, owners_assigned=assigned)


# ---------------------------------------------------------------------------
# Balance
# ---------------------------------------------------------------------------


CURRENT_BALANCE_KEY = "current_balance"
BALANCE_DATE_KEY = "balance_date"


@dataclass
class BalanceEstimate:
    current_balance_cents: Optional[int]
    estimated_balance_cents: Optional[int]
    balance_date: Optional[datetime]
    transactions_since: int


class BalanceService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _get(self, key: str) -> Optional[str]:
        row = self.session.get(KVStore, key)
        return row.value if row else None

    def _set(self, key: str, value: str) -> None:
        row = self.session.get(KVStore, key)
        if row:
            row.value = value
        else:
            self.session.add(KVStore(key=key, value=value))

    def set_current_balance(self, data: BalanceIn) -> None:
        self._set(CURRENT_BALANCE_KEY, str(data.balance_cents))
        self._set(BALANCE_DATE_KEY, data.as_of.isoformat())
        self.session.commit()

    def current_balance(self) -> Optional[tuple[int, datetime]]:
        balance = self._get(CURRENT_BALANCE_KEY)
        as_of = self._get(BALANCE_DATE_KEY)
        if balance is None or as_of is None:
            return None
        return int(balance), datetime.fromisoformat(as_of)

    def estimate(self) -> BalanceEstimate:
        recorded = self.current_balance()
        if recorded is None:
            return BalanceEstimate(None, None, None, 0)
        balance, as_of = recorded
        signed = func.sum(
            case(
                (Transaction.type == TransactionType.credit, Transaction.amount_cents),
                else_=-Transaction.amount_cents,
            )
        )
        delta, count = self.session.execute(
            select(func.coalesce(signed, 0), func.count(Transaction.id)).where(
                not_duplicate(), Transaction.date >= as_of
            )
        ).one()
        return BalanceEstimate(
            current_balance_cents=balance,
            estimated_balance_cents=balance + int(delta or 0),
            balance_date=as_of,
            transactions_since=int(count or 0),
        )
