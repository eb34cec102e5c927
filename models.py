from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    debit = "debit"
    credit = "credit"


class AuditEventType(str, Enum):
    create = "CREATE"
    update = "UPDATE"
    delete = "DELETE"
    sign_in = "SIGN_IN"
    sign_out = "SIGN_OUT"
    bulk_import = "BULK_IMPORT"
    bulk_delete = "BULK_DELETE"


class AuditEntityType(str, Enum):
    owner = "OWNER"
    transaction = "TRANSACTION"
    tag = "TAG"
    attachment = "ATTACHMENT"
    batch = "BATCH"
    pattern = "PATTERN"
    transaction_tag = "TRANSACTION_TAG"
    lpg_refill = "LPG_REFILL"
    lpg_refill_entry = "LPG_REFILL_ENTRY"
    system = "SYSTEM"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Owner(Base, TimestampMixin):
    __tablename__ = "owners"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(254))
    phone: Mapped[Optional[str]] = mapped_column(String(40))
    apartment_id: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="owner"
    )
    patterns: Mapped[list["OwnerPattern"]] = relationship(
        "OwnerPattern",
        back_populates="owner",
        cascade="all, delete-orphan",
        order_by="OwnerPattern.id",
    )

    @property
    def label(self) -> str:
        return f"{self.name} ({self.apartment_id})"


class TransactionBatch(Base):
    __tablename__ = "transaction_batches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    original_filename: Mapped[str] = mapped_column(String(255), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    total_transactions: Mapped[int] = mapped_column(Integer, nullable=False)
    new_transactions: Mapped[int] = mapped_column(Integer, nullable=False)
    duplicated_transactions: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="batch"
    )


class Tag(Base, TimestampMixin):
    __tablename__ = "transaction_tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(80), nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text)
    color: Mapped[Optional[str]] = mapped_column(String(9))
    parent_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transaction_tags.id", ondelete="SET NULL")
    )
    # YYYYMM; set only on monthly-payment tags
    month_year: Mapped[Optional[int]] = mapped_column(Integer)

    parent: Mapped[Optional["Tag"]] = relationship("Tag", remote_side=[id])
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", secondary="transaction_to_tags", back_populates="tags"
    )
    patterns: Mapped[list["TagPattern"]] = relationship(
        "TagPattern",
        back_populates="tag",
        cascade="all, delete-orphan",
        order_by="TagPattern.id",
    )

    @property
    def is_monthly_payment(self) -> bool:
        return self.month_year is not None

    __table_args__ = (
        CheckConstraint(
            "month_year IS NULL OR (month_year % 100 BETWEEN 1 AND 12)",
            name="ck_tag_month_year_valid",
        ),
    )


transaction_to_tags = Table(
    "transaction_to_tags",
    Base.metadata,
    Column(
        "transaction_id",
        Integer,
        ForeignKey("transactions.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "tag_id",
        Integer,
        ForeignKey("transaction_tags.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("created_at", DateTime, default=datetime.utcnow, nullable=False),
    Index("ix_transaction_to_tags_tag", "tag_id"),
)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    bank_description: Mapped[Optional[str]] = mapped_column(Text)
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    owner_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("owners.id", ondelete="SET NULL")
    )
    bank_account: Mapped[Optional[str]] = mapped_column(String(64))
    reference: Mapped[Optional[str]] = mapped_column(String(120))
    category: Mapped[Optional[str]] = mapped_column(String(120))
    serial: Mapped[Optional[str]] = mapped_column(String(120))
    batch_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transaction_batches.id")
    )
    is_duplicate: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    owner: Mapped[Optional["Owner"]] = relationship(
        "Owner", back_populates="transactions"
    )
    batch: Mapped[Optional["TransactionBatch"]] = relationship(
        "TransactionBatch", back_populates="transactions"
    )
    tags: Mapped[list["Tag"]] = relationship(
        "Tag",
        secondary="transaction_to_tags",
        back_populates="transactions",
        order_by="Tag.name",
    )
    attachments: Mapped[list["Attachment"]] = relationship(
        "Attachment", back_populates="transaction", cascade="all, delete-orphan"
    )

    @property
    def match_text(self) -> str:
        return self.description or self.bank_description or ""

    __table_args__ = (
        Index("ix_transactions_dup_date", "is_duplicate", "date"),
        Index("ix_transactions_owner_type", "owner_id", "type"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )


class TagPattern(Base, TimestampMixin):
    __tablename__ = "tag_patterns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tag_id: Mapped[int] = mapped_column(
        ForeignKey("transaction_tags.id", ondelete="CASCADE"), nullable=False
    )
    pattern: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    tag: Mapped["Tag"] = relationship("Tag", back_populates="patterns")


class OwnerPattern(Base, TimestampMixin):
    __tablename__ = "owner_patterns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(
        ForeignKey("owners.id", ondelete="CASCADE"), nullable=False
    )
    pattern: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    owner: Mapped["Owner"] = relationship("Owner", back_populates="patterns")


class LpgRefill(Base, TimestampMixin):
    __tablename__ = "lpg_refills"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    bill_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    gallons_refilled: Mapped[float] = mapped_column(Float, nullable=False)
    refill_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    efficiency_percentage: Mapped[float] = mapped_column(
        Float, default=0.0, nullable=False
    )
    tag_id: Mapped[Optional[int]] = mapped_column(ForeignKey("transaction_tags.id"))

    tag: Mapped[Optional["Tag"]] = relationship("Tag")
    entries: Mapped[list["LpgRefillEntry"]] = relationship(
        "LpgRefillEntry",
        back_populates="refill",
        cascade="all, delete-orphan",
        order_by="LpgRefillEntry.id",
    )
    attachments: Mapped[list["Attachment"]] = relationship(
        "Attachment", back_populates="refill", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("bill_amount_cents >= 0", name="ck_refill_bill_positive"),
    )


class LpgRefillEntry(Base, TimestampMixin):
    __tablename__ = "lpg_refill_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    refill_id: Mapped[int] = mapped_column(
        ForeignKey("lpg_refills.id", ondelete="CASCADE"), nullable=False
    )
    owner_id: Mapped[int] = mapped_column(
        ForeignKey("owners.id", ondelete="CASCADE"), nullable=False
    )
    previous_reading: Mapped[float] = mapped_column(Float, nullable=False)
    current_reading: Mapped[float] = mapped_column(Float, nullable=False)
    consumption: Mapped[float] = mapped_column(Float, nullable=False)
    percentage: Mapped[float] = mapped_column(Float, nullable=False)
    subtotal_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    total_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    refill: Mapped["LpgRefill"] = relationship("LpgRefill", back_populates="entries")
    owner: Mapped["Owner"] = relationship("Owner")
    attachments: Mapped[list["Attachment"]] = relationship(
        "Attachment", back_populates="refill_entry", cascade="all, delete-orphan"
    )


class Attachment(Base, TimestampMixin):
    __tablename__ = "attachments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="CASCADE")
    )
    refill_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("lpg_refills.id", ondelete="CASCADE")
    )
    refill_entry_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("lpg_refill_entries.id", ondelete="CASCADE")
    )
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    storage_key: Mapped[str] = mapped_column(String(512), nullable=False)
    size: Mapped[int] = mapped_column(Integer, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(120), nullable=False)

    transaction: Mapped[Optional["Transaction"]] = relationship(
        "Transaction", back_populates="attachments"
    )
    refill: Mapped[Optional["LpgRefill"]] = relationship(
        "LpgRefill", back_populates="attachments"
    )
    refill_entry: Mapped[Optional["LpgRefillEntry"]] = relationship(
        "LpgRefillEntry", back_populates="attachments"
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(64))
    user_id: Mapped[Optional[str]] = mapped_column(String(64))
    user_email: Mapped[Optional[str]] = mapped_column(String(254))
    details: Mapped[Optional[str]] = mapped_column(Text)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64))
    user_agent: Mapped[Optional[str]] = mapped_column(String(512))
    is_system_event: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_audit_logs_created", "created_at"),
        Index("ix_audit_logs_entity", "entity_type", "entity_id"),
    )


class KVStore(Base):
    __tablename__ = "kv_store"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )
