import logging
import math
from datetime import date, datetime
from typing import Optional
from urllib.parse import urlencode
from zoneinfo import ZoneInfo

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import (
    HTMLResponse,
    JSONResponse,
    RedirectResponse,
    Response,
    StreamingResponse,
)
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from pydantic import ValidationError
from sqlalchemy.orm import Session

from actions import (
    BALANCE_ACTIONS,
    BATCH_ACTIONS,
    OWNER_ACTIONS,
    OWNER_LIST_ACTIONS,
    OWNER_PATTERN_ACTIONS,
    REFILL_DETAIL_ACTIONS,
    REFILL_LIST_ACTIONS,
    TAG_ACTIONS,
    TAG_LIST_ACTIONS,
    TAG_PATTERN_ACTIONS,
    TRANSACTION_DETAIL_ACTIONS,
    TRANSACTION_LIST_ACTIONS,
    ActionContext,
    dispatch,
    form_payload,
)
from auth import (
    SESSION_COOKIE,
    SESSION_MAX_AGE,
    NotAuthenticated,
    NotAuthorized,
    SessionUser,
    admin_user,
    can_sign_in,
    current_user,
    issue_magic_link_token,
    issue_session_token,
    magic_link_url,
    optional_user,
    session_user_for,
    verify_magic_link_token,
)
from config import get_settings
from csrf import generate_csrf_token, validate_csrf_token
from database import get_db
from filters import applied_filters, decode_filters, encode_filters, with_filter, with_page
from models import AuditEntityType, AuditEventType, TransactionType
from periods import format_month_year
from schemas import ActionResult, AuditLogFilters
from services import (
    AttachmentService,
    AuditContext,
    AuditService,
    BalanceService,
    BatchImportService,
    LpgService,
    OwnerService,
    PaymentService,
    TagService,
    TransactionService,
)
from storage import StorageError, get_storage, safe_filename

settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Condo Finances")
app.mount("/static", StaticFiles(directory="static"), name="static")
templates = Jinja2Templates(directory="templates")


def format_currency(cents: Optional[int], options: Optional[dict] = None) -> str:
    if cents is None:
        return "-"
    include_cents = True
    if isinstance(options, dict):
        include_cents = options.get("include_cents", True)
    sign = "-" if cents < 0 else ""
    if include_cents:
        return f"{sign}RD$ {abs(cents) / 100:,.2f}"
    return f"{sign}RD$ {abs(cents) / 100:,.0f}"


templates.env.filters["currency"] = format_currency
templates.env.filters["month_year"] = format_month_year
templates.env.globals["math"] = math
templates.env.globals["TransactionType"] = TransactionType
templates.env.globals["csrf_token"] = generate_csrf_token


def static_path(path: str) -> str:
    return app.url_path_for("static", path=path)


templates.env.globals["static_path"] = static_path


@app.on_event("startup")
def startup_event():
    settings.attachments_dir.mkdir(parents=True, exist_ok=True)
    logger.info(f"app_started: env={settings.environment}")


@app.exception_handler(NotAuthenticated)
async def not_authenticated_handler(request: Request, exc: NotAuthenticated):
    return RedirectResponse(url="/auth/sign-in", status_code=303)


@app.exception_handler(NotAuthorized)
async def not_authorized_handler(request: Request, exc: NotAuthorized):
    return RedirectResponse(url="/unauthorized", status_code=303)


def local_today() -> date:
    return datetime.now(ZoneInfo(settings.timezone)).date()


def audit_context(request: Request, user: Optional[SessionUser]) -> AuditContext:
    return AuditContext(
        user_id=user.id if user else None,
        user_email=user.email if user else None,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def render(request: Request, template: str, context: dict[str, object]) -> HTMLResponse:
    ctx = {
        "request": request,
        "user": optional_user(request),
        "error": request.query_params.get("error"),
    }
    ctx.update(context)
    return templates.TemplateResponse(template, ctx)


def require_csrf(form) -> None:
    if not validate_csrf_token(form.get("csrf_token", "")):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")


def wants_json(request: Request) -> bool:
    if request.headers.get("HX-Request"):
        return True
    return "application/json" in request.headers.get("accept", "")


def action_response(request: Request, result: ActionResult, url: str) -> Response:
    if wants_json(request):
        return JSONResponse(result.payload(), status_code=200 if result.success else 400)
    if not result.success:
        url = f"{url}?{urlencode({'error': result.error or 'Action failed'})}"
    return RedirectResponse(url=url, status_code=303)


def _optional_int(value) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid number: {value}") from exc


async def read_upload(payload: dict, upload, prefix: str = "") -> None:
    if upload is None or not hasattr(upload, "read"):
        return
    payload[f"{prefix}filename"] = upload.filename
    payload[f"{prefix}mime_type"] = upload.content_type
    payload[f"{prefix}content"] = await upload.read()

# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


@app.get("/", response_class=HTMLResponse)
def dashboard(
    request: Request,
    db: Session = Depends(get_db),
    user: SessionUser = Depends(current_user),
):
    payments = PaymentService(db)
    summary = payments.summary(local_today())
    selected = [
        int(v) for v in request.query_params.getlist("tagId") if v.strip().isdigit()
    ]
    if not selected and summary.current_tag:
        selected = [summary.current_tag.id]
    recent = TransactionService(db).list_filtered(decode_filters({})).transactions[:10]
    return render(
        request,
        "dashboard.html",
        {
            "summary": summary,
            "monthly_tags": TagService(db).monthly_tags(),
            "selected_tag_ids": selected,
            "payments": payments.monthly_payments(selected),
            "balance": BalanceService(db).estimate(),
            "lpg_pending": LpgService(db).all_pending_payments(),
            "recent": recent,
        },
    )


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


@app.get("/transactions", response_class=HTMLResponse)
def transactions_page(
    request: Request,
    db: Session = Depends(get_db),
    user: SessionUser = Depends(current_user),
):
    filters = decode_filters(request.query_params)
    page = TransactionService(db).list_filtered(filters)
    owners = OwnerService(db).list_all()
    tags = TagService(db).list_all()
    chips = applied_filters(filters, owners, tags)
    return render(
        request,
        "transactions.html",
        {
            "filters": filters,
            "page": page,
            "owners": owners,
            "tags": tags,
            "chips": chips,
            "clear_query": {
                chip.id: urlencode(encode_filters(with_filter(filters, chip.id, None)))
                for chip in chips
            },
            "prev_query": urlencode(encode_filters(with_page(filters, page.current_page - 1))),
            "next_query": urlencode(encode_filters(with_page(filters, page.current_page + 1))),
            "today": local_today(),
        },
    )


@app.post("/transactions")
async def transactions_action(
    request: Request,
    db: Session = Depends(get_db),
    user: SessionUser = Depends(admin_user),
):
    form = await request.form()
    require_csrf(form)
    ctx = ActionContext(session=db, audit=audit_context(request, user))
    result = dispatch(TRANSACTION_LIST_ACTIONS, form.get("intent"), form_payload(form), ctx)
    url = request.app.url_path_for("transactions_page")
    if result.success and not wants_json(request):
        url = f"/transactions/{result.extra['transaction_id']}"
    return action_response(request, result, url)


@app.get("/api/transactions")
def api_transactions(
    request: Request,
    db: Session = Depends(get_db),
    user: SessionUser = Depends(current_user),
):
    filters = decode_filters(request.query_params)
    page = TransactionService(db).list_filtered(filters)
    return {
        "items": [
            {
                "id": txn.id,
                "date": txn.date.isoformat(),
                "type": txn.type.value,
                "amount_cents": txn.amount_cents,
                "description": txn.description,
                "bank_description": txn.bank_description,
                "owner": (
                    {"id": txn.owner.id, "name": txn.owner.name}
                    if txn.owner
                    else None
                ),
                "tags": [{"id": t.id, "name": t.name, "color": t.color} for t in txn.tags],
                "attachment_count": len(txn.attachments),
            }
            for txn in page.transactions
        ],
        "total_count": page.total_count,
        "page_count": page.page_count,
        "current_page": page.current_page,
        "limit": page.limit,
    }


@app.get("/transactions/{transaction_id}", response_class=HTMLResponse)
def transaction_detail(
    transaction_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: SessionUser = Depends(current_user),
):
    try:
        txn = TransactionService(db).get(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return render(
        request,
        "transaction_detail.html",
        {
            "txn": txn,
            "owners": OwnerService(db).list_active(),
            "tags": TagService(db).list_all(),
            "history": AuditService(db).entity_history(
                AuditEntityType.transaction, txn.id
            ),
        },
    )


@app.post("/transactions/{transaction_id}")
async def transaction_action(
    transaction_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: SessionUser = Depends(admin_user),
):
    form = await request.form()
    require_csrf(form)
    payload = form_payload(form)
    await read_upload(payload, payload.pop("file", None))
    ctx = ActionContext(
        session=db,
        audit=audit_context(request, user),
        target_id=transaction_id,
        storage=get_storage(),
    )
    result = dispatch(TRANSACTION_DETAIL_ACTIONS, form.get("intent"), payload, ctx)
    return action_response(request, result, f"/transactions/{transaction_id}")


# ---------------------------------------------------------------------------
# Owners
# ---------------------------------------------------------------------------


@app.get("/owners", response_class=HTMLResponse)
def owners_page(
    request: Request,
    db: Session = Depends(get_db),
    user: SessionUser = Depends(current_user),
):
    return render(request, "owners.html", {"owners": OwnerService(db).list_all()})


@app.post("/owners")
async def create_owner(
    request: Request,
    db: Session = Depends(get_db),
    user: SessionUser = Depends(admin_user),
):
    form = await request.form()
    require_csrf(form)
    ctx = ActionContext(session=db, audit=audit_context(request, user))
    result = dispatch(OWNER_LIST_ACTIONS, "create", form_payload(form), ctx)
    url = f"/owners/{result.extra['owner_id']}" if result.success else "/owners"
    return action_response(request, result, url)


@app.get("/owners/{owner_id}", response_class=HTMLResponse)
def owner_detail(
    owner_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: SessionUser = Depends(current_user),
):
    try:
        owner = OwnerService(db).get(owner_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return render(
        request,
        "owner_detail.html",
        {
            "owner": owner,
            "transactions": TransactionService(db).for_owner(owner.id),
            "lpg_history": LpgService(db).history_for_owner(owner.id),
        },
    )


@app.post("/owners/{owner_id}")
async def update_owner(
    owner_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: SessionUser = Depends(admin_user),
):
    form = await request.form()
    require_csrf(form)
    ctx = ActionContext(session=db, audit=audit_context(request, user), target_id=owner_id)
    result = dispatch(OWNER_ACTIONS, form.get("intent", "update"), form_payload(form), ctx)
    return action_response(request, result, f"/owners/{owner_id}")


@app.post("/owners/{owner_id}/patterns")
async def owner_patterns_action(
    owner_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: SessionUser = Depends(admin_user),
):
    form = await request.form()
    require_csrf(form)
    ctx = ActionContext(session=db, audit=audit_context(request, user), target_id=owner_id)
    result = dispatch(OWNER_PATTERN_ACTIONS, form.get("intent"), form_payload(form), ctx)
    return action_response(request, result, f"/owners/{owner_id}")


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------


@app.get("/tags", response_class=HTMLResponse)
def tags_page(
    request: Request,
    db: Session = Depends(get_db),
    user: SessionUser = Depends(current_user),
):
    return render(request, "tags.html", {"tags": TagService(db).list_all()})


@app.post("/tags")
async def create_tag(
    request: Request,
    db: Session = Depends(get_db),
    user: SessionUser = Depends(admin_user),
):
    form = await request.form()
    require_csrf(form)
    ctx = ActionContext(session=db, audit=audit_context(request, user))
    result = dispatch(TAG_LIST_ACTIONS, "create", form_payload(form), ctx)
    if not result.success:
        return action_response(request, result, "/tags")
    headers = {"HX-Trigger": "tags-updated"}
    if request.headers.get("HX-Request"):
        return Response(status_code=204, headers=headers)
    return RedirectResponse(
        url=f"/tags/{result.extra['tag_id']}", status_code=303, headers=headers
    )


@app.get("/tags/{tag_id}", response_class=HTMLResponse)
def tag_detail(
    tag_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: SessionUser = Depends(current_user),
):
    service = TagService(db)
    try:
        tag = service.get(tag_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return render(
        request,
        "tag_detail.html",
        {
            "tag": tag,
            "tags": service.list_all(),
            "transactions": TransactionService(db).recent_by_tag(tag.id),
        },
    )


@app.post("/tags/{tag_id}")
async def update_tag(
    tag_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: SessionUser = Depends(admin_user),
):
    form = await request.form()
    require_csrf(form)
    intent = form.get("intent", "update")
    ctx = ActionContext(session=db, audit=audit_context(request, user), target_id=tag_id)
    result = dispatch(TAG_ACTIONS, intent, form_payload(form), ctx)
    if result.success and intent == "delete":
        return action_response(request, result, "/tags")
    return action_response(request, result, f"/tags/{tag_id}")


@app.post("/tags/{tag_id}/patterns")
async def tag_patterns_action(
    tag_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: SessionUser = Depends(admin_user),
):
    form = await request.form()
    require_csrf(form)
    ctx = ActionContext(session=db, audit=audit_context(request, user), target_id=tag_id)
    result = dispatch(TAG_PATTERN_ACTIONS, form.get("intent"), form_payload(form), ctx)
    return action_response(request, result, f"/tags/{tag_id}")


# ---------------------------------------------------------------------------
# LPG
# ---------------------------------------------------------------------------


@app.get("/lpg", response_class=HTMLResponse)
def lpg_page(
    request: Request,
    db: Session = Depends(get_db),
    user: SessionUser = Depends(current_user),
):
    service = LpgService(db)
    return render(
        request,
        "lpg.html",
        {"refills": service.list_all(), "pending": service.all_pending_payments()},
    )


@app.get("/lpg/new", response_class=HTMLResponse)
def lpg_new_page(
    request: Request,
    db: Session = Depends(get_db),
    user: SessionUser = Depends(admin_user),
):
    return render(
        request,
        "lpg_new.html",
        {
            "owners": OwnerService(db).list_active(),
            "tags": TagService(db).list_all(),
            "previous_readings": LpgService(db).previous_readings(),
            "today": local_today(),
        },
    )


def refill_payload_from_form(form, owner_ids: list[int]) -> dict[str, object]:
    payload = {
        key: value
        for key, value in form_payload(form).items()
        if not key.startswith(("previous_", "current_"))
    }
    readings = []
    for owner_id in owner_ids:
        current = form.get(f"current_{owner_id}")
        if current in (None, ""):
            continue
        readings.append(
            {
                "owner_id": owner_id,
                "previous_reading": form.get(f"previous_{owner_id}"),
                "current_reading": current,
            }
        )
    payload["readings"] = readings
    return payload


@app.post("/lpg/new")
async def create_refill(
    request: Request,
    db: Session = Depends(get_db),
    user: SessionUser = Depends(admin_user),
):
    form = await request.form()
    require_csrf(form)
    owner_ids = [o.id for o in OwnerService(db).list_active()]
    payload = refill_payload_from_form(form, owner_ids)
    await read_upload(payload, payload.pop("bill_file", None), prefix="bill_")
    ctx = ActionContext(
        session=db, audit=audit_context(request, user), storage=get_storage()
    )
    result = dispatch(REFILL_LIST_ACTIONS, "create", payload, ctx)
    url = f"/lpg/{result.extra['refill_id']}" if result.success else "/lpg/new"
    return action_response(request, result, url)


@app.get("/lpg/{refill_id}", response_class=HTMLResponse)
def lpg_detail(
    refill_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: SessionUser = Depends(current_user),
):
    service = LpgService(db)
    try:
        refill = service.get(refill_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return render(
        request,
        "lpg_detail.html",
        {
            "refill": refill,
            "payments": service.pending_payments(refill.id),
            "attachments": AttachmentService(db).for_refill(refill.id),
        },
    )


@app.post("/lpg/{refill_id}")
async def lpg_detail_action(
    refill_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: SessionUser = Depends(admin_user),
):
    form = await request.form()
    require_csrf(form)
    payload = form_payload(form)
    await read_upload(payload, payload.pop("file", None))
    ctx = ActionContext(
        session=db,
        audit=audit_context(request, user),
        target_id=refill_id,
        storage=get_storage(),
    )
    result = dispatch(REFILL_DETAIL_ACTIONS, form.get("intent"), payload, ctx)
    return action_response(request, result, f"/lpg/{refill_id}")


# ---------------------------------------------------------------------------
# Audit logs
# ---------------------------------------------------------------------------


def audit_filters_from_request(request: Request) -> AuditLogFilters:
    params = request.query_params
    system_raw = params.get("is_system_event")
    try:
        return AuditLogFilters(
            event_type=params.get("event_type") or None,
            entity_type=params.get("entity_type") or None,
            user_email=params.get("user_email") or None,
            entity_id=params.get("entity_id") or None,
            is_system_event=None if system_raw in (None, "") else system_raw == "true",
            date_from=params.get("date_from") or None,
            date_to=params.get("date_to") or None,
            search=params.get("search") or None,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/audit-logs", response_class=HTMLResponse)
def audit_logs_page(
    request: Request,
    db: Session = Depends(get_db),
    user: SessionUser = Depends(admin_user),
):
    filters = audit_filters_from_request(request)
    page = max(_optional_int(request.query_params.get("page")) or 1, 1)
    result = AuditService(db).find(filters, page=page)
    return render(
        request,
        "audit_logs.html",
        {
            "filters": filters,
            "result": result,
            "event_types": list(AuditEventType),
            "entity_types": list(AuditEntityType),
        },
    )


# ---------------------------------------------------------------------------
# Bank statement batches
# ---------------------------------------------------------------------------


@app.get("/batches", response_class=HTMLResponse)
def batches_page(
    request: Request,
    db: Session = Depends(get_db),
    user: SessionUser = Depends(admin_user),
):
    return render(request, "batches.html", {"batches": BatchImportService(db).list_all()})


@app.post("/batches")
async def import_batch(
    request: Request,
    db: Session = Depends(get_db),
    user: SessionUser = Depends(admin_user),
):
    form = await request.form()
    require_csrf(form)
    payload = form_payload(form)
    await read_upload(payload, payload.pop("file", None))
    ctx = ActionContext(session=db, audit=audit_context(request, user))
    result = dispatch(BATCH_ACTIONS, "import", payload, ctx)
    url = f"/batches/{result.extra['batch_id']}" if result.success else "/batches"
    return action_response(request, result, url)


@app.get("/batches/{batch_id}", response_class=HTMLResponse)
def batch_detail(
    batch_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: SessionUser = Depends(admin_user),
):
    service = BatchImportService(db)
    try:
        batch = service.get(batch_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return render(
        request,
        "batch_detail.html",
        {"batch": batch, "transactions": service.transactions_for(batch.id)},
    )


# ---------------------------------------------------------------------------
# Balance
# ---------------------------------------------------------------------------


@app.get("/balance", response_class=HTMLResponse)
def balance_page(
    request: Request,
    db: Session = Depends(get_db),
    user: SessionUser = Depends(current_user),
):
    return render(
        request,
        "balance.html",
        {"balance": BalanceService(db).estimate(), "today": local_today()},
    )


@app.post("/balance")
async def update_balance(
    request: Request,
    db: Session = Depends(get_db),
    user: SessionUser = Depends(admin_user),
):
    form = await request.form()
    require_csrf(form)
    ctx = ActionContext(session=db, audit=audit_context(request, user))
    result = dispatch(BALANCE_ACTIONS, "record", form_payload(form), ctx)
    return action_response(request, result, "/balance")


# ---------------------------------------------------------------------------
# Attachments
# ---------------------------------------------------------------------------


@app.get("/attachments/{attachment_id}", response_class=StreamingResponse)
def download_attachment(
    attachment_id: int,
    db: Session = Depends(get_db),
    user: SessionUser = Depends(current_user),
):
    try:
        attachment, chunks = AttachmentService(db).open(attachment_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except StorageError as exc:
        logger.exception(f"attachment_read_failed: id={attachment_id}")
        raise HTTPException(status_code=404, detail="Attachment not available") from exc
    disposition = f'inline; filename="{safe_filename(attachment.filename)}"'
    return StreamingResponse(
        chunks,
        media_type=attachment.mime_type,
        headers={"Content-Disposition": disposition},
    )


# ---------------------------------------------------------------------------
# Sign-in
# ---------------------------------------------------------------------------


@app.get("/auth/sign-in", response_class=HTMLResponse)
def sign_in_page(request: Request):
    return render(request, "sign_in.html", {"sent": False})


@app.post("/auth/sign-in", response_class=HTMLResponse)
async def request_magic_link(request: Request, db: Session = Depends(get_db)):
    form = await request.form()
    require_csrf(form)
    email = (form.get("email") or "").strip().lower()
    if can_sign_in(db, email):
        url = magic_link_url(issue_magic_link_token(email))
        if settings.environment == "development":
            logger.info(f"magic_link_issued: email={email} url={url}")
        else:
            logger.info(f"magic_link_issued: email={email}")
    else:
        logger.info(f"magic_link_refused: email={email}")
    return render(request, "sign_in.html", {"sent": True, "email": email})


@app.get("/api/auth/verify")
def verify_magic_link(token: str, request: Request, db: Session = Depends(get_db)):
    email = verify_magic_link_token(token)
    if email is None:
        query = urlencode({"error": "This sign-in link is invalid or has expired"})
        return RedirectResponse(url=f"/auth/sign-in?{query}", status_code=303)
    if not can_sign_in(db, email):
        return RedirectResponse(url="/unauthorized", status_code=303)
    user = session_user_for(db, email)
    AuditService(db, audit_context(request, user)).log_sign_in(user.email, user.name)
    db.commit()
    response = RedirectResponse(url="/", status_code=303)
    response.set_cookie(
        SESSION_COOKIE,
        issue_session_token(user),
        max_age=SESSION_MAX_AGE,
        httponly=True,
        samesite="lax",
        secure=settings.base_url.startswith("https://"),
    )
    return response


@app.post("/auth/sign-out")
async def sign_out(request: Request, db: Session = Depends(get_db)):
    form = await request.form()
    require_csrf(form)
    user = optional_user(request)
    if user is not None:
        AuditService(db, audit_context(request, user)).log_sign_out(user.email)
        db.commit()
    response = RedirectResponse(url="/auth/sign-in", status_code=303)
    response.delete_cookie(SESSION_COOKIE)
    return response


@app.get("/unauthorized", response_class=HTMLResponse)
def unauthorized_page(request: Request):
    return render(request, "unauthorized.html", {})


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
