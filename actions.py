"""Form actions posted to the detail and list pages.

Each page posts an ``intent`` field. The intent picks an entry from the page's
dispatch table; the remaining fields are validated into that entry's form
model and handed to the handler. Every outcome, including failures, comes
back as an :class:`ActionResult`.
"""

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Type

from pydantic import BaseModel, Field, ValidationError, model_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from csv_utils import decode_statement, parse_amount
from models import LpgRefillEntry, TransactionType
from schemas import (
    ActionResult,
    BalanceIn,
    LpgReadingIn,
    LpgRefillIn,
    OwnerIn,
    PatternIn,
    TagIn,
    TransactionIn,
)
from services import (
    AttachmentService,
    AuditContext,
    AutoAssignResult,
    BalanceService,
    BatchImportService,
    LpgService,
    OwnerService,
    PatternService,
    TagService,
    TransactionService,
)
from storage import AttachmentStorage, StorageError

logger = logging.getLogger(__name__)

INVALID_ACTION = "Invalid action"


@dataclass
class ActionContext:
    session: Session
    audit: AuditContext
    target_id: Optional[int] = None
    storage: Optional[AttachmentStorage] = None


class FormModel(BaseModel):
    @model_validator(mode="before")
    @classmethod
    def _blank_to_none(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {k: (None if v == "" else v) for k, v in data.items()}
        return data


class EmptyForm(FormModel):
    pass


class DescriptionForm(FormModel):
    description: Optional[str] = Field(default=None, max_length=500)


class OwnerChoiceForm(FormModel):
    owner_id: Optional[int] = None


class TagChoiceForm(FormModel):
    tag_id: int


class AttachmentUploadForm(FormModel):
    filename: str = Field(..., min_length=1, max_length=255)
    content: bytes
    mime_type: Optional[str] = None


class AttachmentChoiceForm(FormModel):
    attachment_id: int


class NewTransactionForm(FormModel):
    type: TransactionType
    amount: str
    description: str = Field(..., min_length=1, max_length=500)
    date: dt.date
    owner_id: Optional[int] = None
    reference: Optional[str] = None
    category: Optional[str] = None
    tag_ids: list[int] = Field(default_factory=list)


class PatternForm(FormModel):
    pattern: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None
    apply_to_existing: bool = False

    @model_validator(mode="before")
    @classmethod
    def _require_pattern(cls, data: Any) -> Any:
        if isinstance(data, dict) and not (data.get("pattern") or "").strip():
            raise ValueError("Pattern is required")
        return data


class PatternChoiceForm(FormModel):
    pattern_id: int


@dataclass(frozen=True)
class Action:
    schema: Type[BaseModel]
    handler: Callable[[ActionContext, Any], ActionResult]
    failure: str


def form_payload(form, list_fields: tuple[str, ...] = ("tag_ids",)) -> dict[str, Any]:
    """Flatten a multi-dict form, keeping the listed fields as lists."""
    payload: dict[str, Any] = {}
    for key in form.keys():
        if key in list_fields:
            payload[key] = [v for v in form.getlist(key) if v != ""]
        else:
            payload[key] = form.get(key)
    return payload


def _validation_message(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid input"
    first = errors[0]
    message = str(first.get("msg", "Invalid input"))
    if message.startswith("Value error, "):
        return message[len("Value error, ") :]
    field = ".".join(str(part) for part in first.get("loc", ()))
    return f"{field}: {message}" if field else message


def dispatch(
    table: Mapping[str, Action],
    intent: Optional[str],
    form: Mapping[str, Any],
    ctx: ActionContext,
) -> ActionResult:
    action = table.get(intent or "")
    if action is None:
        return ActionResult.fail(INVALID_ACTION)
    fields = {k: v for k, v in form.items() if k not in ("intent", "csrf_token")}
    try:
        data = action.schema.model_validate(fields)
        return action.handler(ctx, data)
    except ValidationError as exc:
        return ActionResult.fail(_validation_message(exc))
    except ValueError as exc:
        return ActionResult.fail(str(exc))
    except (SQLAlchemyError, StorageError):
        ctx.session.rollback()
        logger.exception(f"action_failed: intent={intent} target={ctx.target_id}")
        return ActionResult.fail(action.failure)


def _assign_result(result: AutoAssignResult, **extra: Any) -> ActionResult:
    return ActionResult(success=result.success, error=result.error, extra=extra)


# Transaction detail


def _update_description(ctx: ActionContext, data: DescriptionForm) -> ActionResult:
    TransactionService(ctx.session, ctx.audit).update_description(
        ctx.target_id, data.description or ""
    )
    return ActionResult.ok()


def _assign_owner(ctx: ActionContext, data: OwnerChoiceForm) -> ActionResult:
    txn = TransactionService(ctx.session, ctx.audit).assign_owner(
        ctx.target_id, data.owner_id
    )
    return ActionResult.ok(owner_id=txn.owner_id)


def _add_tag(ctx: ActionContext, data: TagChoiceForm) -> ActionResult:
    added = TransactionService(ctx.session, ctx.audit).add_tag(
        ctx.target_id, data.tag_id
    )
    return ActionResult.ok(added=added)


def _remove_tag(ctx: ActionContext, data: TagChoiceForm) -> ActionResult:
    removed = TransactionService(ctx.session, ctx.audit).remove_tag(
        ctx.target_id, data.tag_id
    )
    return ActionResult.ok(removed=removed)


def _auto_assign_owner(ctx: ActionContext, data: EmptyForm) -> ActionResult:
    result = TransactionService(ctx.session, ctx.audit).auto_assign_owner(
        ctx.target_id
    )
    return _assign_result(result, owner_id=result.owner_id)


def _auto_assign_tags(ctx: ActionContext, data: EmptyForm) -> ActionResult:
    result = TransactionService(ctx.session, ctx.audit).auto_assign_tags(
        ctx.target_id
    )
    return _assign_result(result, tag_ids=result.tag_ids)


def _upload_attachment(ctx: ActionContext, data: AttachmentUploadForm) -> ActionResult:
    attachment = AttachmentService(ctx.session, ctx.storage, ctx.audit).upload(
        "transaction", ctx.target_id, data.filename, data.content, data.mime_type
    )
    return ActionResult.ok(attachment_id=attachment.id)


def _delete_attachment(ctx: ActionContext, data: AttachmentChoiceForm) -> ActionResult:
    AttachmentService(ctx.session, ctx.storage, ctx.audit).delete(
        data.attachment_id, transaction_id=ctx.target_id
    )
    return ActionResult.ok()


TRANSACTION_DETAIL_ACTIONS: dict[str, Action] = {
    "updateDescription": Action(
        DescriptionForm, _update_description, "Failed to update description"
    ),
    "assignOwner": Action(OwnerChoiceForm, _assign_owner, "Failed to assign owner"),
    "addTag": Action(TagChoiceForm, _add_tag, "Failed to add tag"),
    "removeTag": Action(TagChoiceForm, _remove_tag, "Failed to remove tag"),
    "autoAssignOwner": Action(
        EmptyForm, _auto_assign_owner, "Failed to auto-assign owner"
    ),
    "autoAssignTags": Action(EmptyForm, _auto_assign_tags, "Failed to auto-assign tags"),
    "uploadAttachment": Action(
        AttachmentUploadForm, _upload_attachment, "Failed to upload attachment"
    ),
    "deleteAttachment": Action(
        AttachmentChoiceForm, _delete_attachment, "Failed to delete attachment"
    ),
}


# Transactions list


def _create_transaction(ctx: ActionContext, data: NewTransactionForm) -> ActionResult:
    payload = TransactionIn(
        type=data.type,
        amount_cents=parse_amount(data.amount),
        description=data.description,
        date=data.date,
        owner_id=data.owner_id,
        reference=data.reference,
        category=data.category,
        tag_ids=data.tag_ids,
    )
    txn = TransactionService(ctx.session, ctx.audit).create(payload)
    return ActionResult.ok(transaction_id=txn.id)


TRANSACTION_LIST_ACTIONS: dict[str, Action] = {
    "create": Action(NewTransactionForm, _create_transaction, "Failed to create transaction"),
}


# Recognition patterns


def _pattern_in(data: PatternForm) -> PatternIn:
    return PatternIn(
        pattern=data.pattern.strip(),
        description=data.description,
        apply_to_existing=data.apply_to_existing,
    )


def _create_tag_pattern(ctx: ActionContext, data: PatternForm) -> ActionResult:
    item, applied = PatternService(ctx.session, ctx.audit).create_tag_pattern(
        ctx.target_id, _pattern_in(data)
    )
    return ActionResult.ok(pattern_id=item.id, applied=applied)


def _toggle_tag_pattern(ctx: ActionContext, data: PatternChoiceForm) -> ActionResult:
    item = PatternService(ctx.session, ctx.audit).toggle_tag_pattern(
        ctx.target_id, data.pattern_id
    )
    return ActionResult.ok(is_active=item.is_active)


def _delete_tag_pattern(ctx: ActionContext, data: PatternChoiceForm) -> ActionResult:
    PatternService(ctx.session, ctx.audit).delete_tag_pattern(
        ctx.target_id, data.pattern_id
    )
    return ActionResult.ok()


def _create_owner_pattern(ctx: ActionContext, data: PatternForm) -> ActionResult:
    item, applied = PatternService(ctx.session, ctx.audit).create_owner_pattern(
        ctx.target_id, _pattern_in(data)
    )
    return ActionResult.ok(pattern_id=item.id, applied=applied)


def _toggle_owner_pattern(ctx: ActionContext, data: PatternChoiceForm) -> ActionResult:
    item = PatternService(ctx.session, ctx.audit).toggle_owner_pattern(
        ctx.target_id, data.pattern_id
    )
    return ActionResult.ok(is_active=item.is_active)


def _delete_owner_pattern(ctx: ActionContext, data: PatternChoiceForm) -> ActionResult:
    PatternService(ctx.session, ctx.audit).delete_owner_pattern(
        ctx.target_id, data.pattern_id
    )
    return ActionResult.ok()


TAG_PATTERN_ACTIONS: dict[str, Action] = {
    "create": Action(PatternForm, _create_tag_pattern, "Failed to create pattern"),
    "toggle": Action(PatternChoiceForm, _toggle_tag_pattern, "Failed to update pattern"),
    "delete": Action(PatternChoiceForm, _delete_tag_pattern, "Failed to delete pattern"),
}

OWNER_PATTERN_ACTIONS: dict[str, Action] = {
    "create": Action(PatternForm, _create_owner_pattern, "Failed to create pattern"),
    "toggle": Action(
        PatternChoiceForm, _toggle_owner_pattern, "Failed to update pattern"
    ),
    "delete": Action(
        PatternChoiceForm, _delete_owner_pattern, "Failed to delete pattern"
    ),
}


# Owners


class OwnerForm(FormModel):
    name: Optional[str] = None
    apartment_id: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool = True

    @model_validator(mode="after")
    def _require_identity(self) -> "OwnerForm":
        if not (self.name or "").strip() or not (self.apartment_id or "").strip():
            raise ValueError("Name and apartment ID are required")
        return self


def _owner_in(data: OwnerForm) -> OwnerIn:
    return OwnerIn(
        name=data.name.strip(),
        apartment_id=data.apartment_id.strip(),
        email=data.email,
        phone=data.phone,
        is_active=data.is_active,
    )


def _create_owner(ctx: ActionContext, data: OwnerForm) -> ActionResult:
    owner = OwnerService(ctx.session, ctx.audit).create(_owner_in(data))
    return ActionResult.ok(owner_id=owner.id)


def _update_owner(ctx: ActionContext, data: OwnerForm) -> ActionResult:
    owner = OwnerService(ctx.session, ctx.audit).update(ctx.target_id, _owner_in(data))
    return ActionResult.ok(owner_id=owner.id)


def _set_owner_active(
    is_active: bool,
) -> Callable[[ActionContext, EmptyForm], ActionResult]:
    def handler(ctx: ActionContext, data: EmptyForm) -> ActionResult:
        owner = OwnerService(ctx.session, ctx.audit).set_active(ctx.target_id, is_active)
        return ActionResult.ok(owner_id=owner.id, is_active=owner.is_active)

    return handler


OWNER_LIST_ACTIONS: dict[str, Action] = {
    "create": Action(OwnerForm, _create_owner, "Failed to create owner"),
}

OWNER_ACTIONS: dict[str, Action] = {
    "update": Action(OwnerForm, _update_owner, "Failed to update owner"),
    "activate": Action(EmptyForm, _set_owner_active(True), "Failed to update owner"),
    "deactivate": Action(EmptyForm, _set_owner_active(False), "Failed to update owner"),
}


# Tags


class TagForm(FormModel):
    name: Optional[str] = None
    description: Optional[str] = None
    color: Optional[str] = None
    parent_id: Optional[int] = None
    month_year: Optional[int] = None

    @model_validator(mode="after")
    def _require_name(self) -> "TagForm":
        if not (self.name or "").strip():
            raise ValueError("Name is required")
        return self


def _tag_in(data: TagForm) -> TagIn:
    return TagIn(
        name=data.name.strip(),
        description=data.description,
        color=data.color,
        parent_id=data.parent_id,
        month_year=data.month_year,
    )


def _create_tag(ctx: ActionContext, data: TagForm) -> ActionResult:
    tag = TagService(ctx.session, ctx.audit).create(_tag_in(data))
    return ActionResult.ok(tag_id=tag.id)


def _update_tag(ctx: ActionContext, data: TagForm) -> ActionResult:
    tag = TagService(ctx.session, ctx.audit).update(ctx.target_id, _tag_in(data))
    return ActionResult.ok(tag_id=tag.id)


def _delete_tag(ctx: ActionContext, data: EmptyForm) -> ActionResult:
    TagService(ctx.session, ctx.audit).delete(ctx.target_id)
    return ActionResult.ok(deleted=True)


TAG_LIST_ACTIONS: dict[str, Action] = {
    "create": Action(TagForm, _create_tag, "Failed to create tag"),
}

TAG_ACTIONS: dict[str, Action] = {
    "update": Action(TagForm, _update_tag, "Failed to update tag"),
    "delete": Action(EmptyForm, _delete_tag, "Failed to delete tag"),
}


# LPG refills


class ReadingForm(FormModel):
    owner_id: int
    previous_reading: Optional[float] = None
    current_reading: float


class RefillForm(FormModel):
    refill_date: dt.date
    bill_amount: Optional[str] = None
    gallons_refilled: Optional[float] = None
    efficiency_percentage: Optional[float] = None
    tag_id: Optional[int] = None
    readings: list[ReadingForm] = Field(default_factory=list)
    bill_filename: Optional[str] = None
    bill_content: Optional[bytes] = None
    bill_mime_type: Optional[str] = None


class RefillAttachmentForm(AttachmentUploadForm):
    refill_entry_id: Optional[int] = None


def _create_refill(ctx: ActionContext, data: RefillForm) -> ActionResult:
    payload = LpgRefillIn(
        bill_amount_cents=parse_amount(data.bill_amount or ""),
        gallons_refilled=data.gallons_refilled or 0,
        refill_date=data.refill_date,
        efficiency_percentage=data.efficiency_percentage or 0,
        tag_id=data.tag_id,
        readings=[
            LpgReadingIn(
                owner_id=r.owner_id,
                previous_reading=r.previous_reading or 0,
                current_reading=r.current_reading,
            )
            for r in data.readings
        ],
    )
    refill = LpgService(ctx.session, ctx.audit).create_refill(payload)
    attachment_id = None
    if data.bill_content:
        attachment = AttachmentService(ctx.session, ctx.storage, ctx.audit).upload(
            "refill",
            refill.id,
            data.bill_filename or "bill",
            data.bill_content,
            data.bill_mime_type,
        )
        attachment_id = attachment.id
    return ActionResult.ok(refill_id=refill.id, attachment_id=attachment_id)


def _upload_refill_attachment(
    ctx: ActionContext, data: RefillAttachmentForm
) -> ActionResult:
    service = AttachmentService(ctx.session, ctx.storage, ctx.audit)
    if data.refill_entry_id is None:
        attachment = service.upload(
            "refill", ctx.target_id, data.filename, data.content, data.mime_type
        )
    else:
        entry = ctx.session.get(LpgRefillEntry, data.refill_entry_id)
        if entry is None or entry.refill_id != ctx.target_id:
            raise ValueError("Refill entry not found")
        attachment = service.upload(
            "refill_entry", entry.id, data.filename, data.content, data.mime_type
        )
    return ActionResult.ok(attachment_id=attachment.id)


def _delete_refill_attachment(
    ctx: ActionContext, data: AttachmentChoiceForm
) -> ActionResult:
    AttachmentService(ctx.session, ctx.storage, ctx.audit).delete(
        data.attachment_id, refill_id=ctx.target_id
    )
    return ActionResult.ok()


REFILL_LIST_ACTIONS: dict[str, Action] = {
    "create": Action(RefillForm, _create_refill, "Failed to create refill"),
}

REFILL_DETAIL_ACTIONS: dict[str, Action] = {
    "uploadAttachment": Action(
        RefillAttachmentForm, _upload_refill_attachment, "Failed to upload attachment"
    ),
    "deleteAttachment": Action(
        AttachmentChoiceForm, _delete_refill_attachment, "Failed to delete attachment"
    ),
}


# Bank statements and balance


class StatementForm(FormModel):
    filename: Optional[str] = None
    content: Optional[bytes] = None
    auto_assign: bool = False


class BalanceForm(FormModel):
    balance: Optional[str] = None
    as_of: Optional[str] = None


def _import_statement(ctx: ActionContext, data: StatementForm) -> ActionResult:
    if not data.content:
        raise ValueError("CSV file is required")
    summary = BatchImportService(ctx.session, ctx.audit).import_statement(
        data.filename or "statement.csv",
        decode_statement(data.content),
        auto_assign=data.auto_assign,
    )
    return ActionResult.ok(
        batch_id=summary.batch.id,
        errors=len(summary.errors),
        owners_assigned=summary.owners_assigned,
    )


def _record_balance(ctx: ActionContext, data: BalanceForm) -> ActionResult:
    if not data.as_of:
        raise ValueError("Balance date is required")
    balance = BalanceIn(
        balance_cents=parse_amount(data.balance or "", allow_negative=True),
        as_of=dt.datetime.fromisoformat(data.as_of),
    )
    BalanceService(ctx.session).set_current_balance(balance)
    logger.info(
        f"balance_recorded: by={ctx.audit.user_email} as_of={balance.as_of.isoformat()}"
    )
    return ActionResult.ok()


BATCH_ACTIONS: dict[str, Action] = {
    "import": Action(StatementForm, _import_statement, "Failed to import statement"),
}

BALANCE_ACTIONS: dict[str, Action] = {
    "record": Action(BalanceForm, _record_balance, "Failed to record balance"),
}
