"""Transaction list filters and their query-string form."""

from dataclasses import dataclass, replace
from datetime import date
from typing import Iterable, Mapping, Optional

from models import TransactionType

NO_OWNER = "no-owner"
NO_TAGS = "no-tags"
PAGE_SIZE = 20


@dataclass(frozen=True)
class TransactionFilters:
    owner_id: Optional[int] = None
    transaction_type: Optional[TransactionType] = None
    tag_id: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    search_term: Optional[str] = None
    no_owner: bool = False
    no_tags: bool = False
    page: int = 1
    limit: int = PAGE_SIZE

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    @property
    def is_active(self) -> bool:
        return any(
            (
                self.owner_id is not None,
                self.transaction_type is not None,
                self.tag_id is not None,
                self.start_date is not None,
                self.end_date is not None,
                bool(self.search_term),
                self.no_owner,
                self.no_tags,
            )
        )


@dataclass(frozen=True)
class AppliedFilter:
    id: str
    value: str
    label: str


def _parse_int(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def _parse_type(value: Optional[str]) -> Optional[TransactionType]:
    if not value:
        return None
    try:
        return TransactionType(value)
    except ValueError:
        return None


def decode_filters(params: Mapping[str, str]) -> TransactionFilters:
    owner_raw = params.get("ownerId")
    tag_raw = params.get("tagId")
    no_owner = owner_raw == NO_OWNER
    no_tags = tag_raw == NO_TAGS
    search = (params.get("search") or "").strip() or None
    page = _parse_int(params.get("page")) or 1
    return TransactionFilters(
        owner_id=None if no_owner else _parse_int(owner_raw),
        transaction_type=_parse_type(params.get("type")),
        tag_id=None if no_tags else _parse_int(tag_raw),
        start_date=_parse_date(params.get("startDate")),
        end_date=_parse_date(params.get("endDate")),
        search_term=search,
        no_owner=no_owner,
        no_tags=no_tags,
        page=max(page, 1),
    )


def encode_filters(
    filters: TransactionFilters, *, include_page: bool = True
) -> dict[str, str]:
    params: dict[str, str] = {}
    if filters.no_owner:
        params["ownerId"] = NO_OWNER
    elif filters.owner_id is not None:
        params["ownerId"] = str(filters.owner_id)
    if filters.transaction_type is not None:
        params["type"] = filters.transaction_type.value
    if filters.no_tags:
        params["tagId"] = NO_TAGS
    elif filters.tag_id is not None:
        params["tagId"] = str(filters.tag_id)
    if filters.start_date is not None:
        params["startDate"] = filters.start_date.isoformat()
    if filters.end_date is not None:
        params["endDate"] = filters.end_date.isoformat()
    if filters.search_term:
        params["search"] = filters.search_term
    if include_page and filters.page > 1:
        params["page"] = str(filters.page)
    return params


def with_filter(
    filters: TransactionFilters, name: str, value: Optional[str]
) -> TransactionFilters:
    """Return a copy with one query parameter changed and the page reset."""
    params = encode_filters(filters, include_page=False)
    if value is None or value == "":
        params.pop(name, None)
    else:
        params[name] = value
    return decode_filters(params)


def with_page(filters: TransactionFilters, page: int) -> TransactionFilters:
    return replace(filters, page=max(page, 1))


def applied_filters(
    filters: TransactionFilters,
    owners: Iterable = (),
    tags: Iterable = (),
) -> list[AppliedFilter]:
    owner_names = {o.id: o.name for o in owners}
    tag_names = {t.id: t.name for t in tags}
    chips: list[AppliedFilter] = []
    if filters.transaction_type is not None:
        label = (
            "Money In"
            if filters.transaction_type == TransactionType.credit
            else "Money Out"
        )
        chips.append(AppliedFilter("type", filters.transaction_type.value, label))
    if filters.no_owner:
        chips.append(AppliedFilter("ownerId", NO_OWNER, "No Owner"))
    elif filters.owner_id is not None:
        chips.append(
            AppliedFilter(
                "ownerId",
                str(filters.owner_id),
                owner_names.get(filters.owner_id, "Unknown Owner"),
            )
        )
    if filters.no_tags:
        chips.append(AppliedFilter("tagId", NO_TAGS, "No Tags"))
    elif filters.tag_id is not None:
        chips.append(
            AppliedFilter(
                "tagId",
                str(filters.tag_id),
                tag_names.get(filters.tag_id, "Unknown Tag"),
            )
        )
    if filters.search_term:
        chips.append(
            AppliedFilter("search", filters.search_term, f'"{filters.search_term}"')
        )
    if filters.start_date is not None:
        value = filters.start_date.isoformat()
        chips.append(AppliedFilter("startDate", value, f"From {value}"))
    if filters.end_date is not None:
        value = filters.end_date.isoformat()
        chips.append(AppliedFilter("endDate", value, f"Until {value}"))
    return chips
