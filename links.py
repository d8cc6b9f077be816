"""Lifecycle of a shortened link: create, resolve, click, delete, expire.

Every function here is pure over the collection it is given. Persisting the
result is the caller's job (see `store.LinkStore`).
"""
import enum
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from pydantic import AnyUrl, BaseModel, TypeAdapter, ValidationError

from codes import allocate_code, check_custom_code
from schemas import ClickEvent, LinkRecord, LinkSummary

MAX_LINKS = 5
MIN_VALIDITY_MINUTES = 1
MAX_VALIDITY_MINUTES = 10080
DIRECT_SOURCE = "Direct"
UNKNOWN_LOCATION = "Unknown"

_url_adapter = TypeAdapter(AnyUrl)


class CreateResult(BaseModel):
    record: Optional[LinkRecord] = None
    errors: Dict[str, List[str]] = {}

    @property
    def ok(self) -> bool:
        return self.record is not None and not self.errors


class ResolveStatus(str, enum.Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"


class Resolution(BaseModel):
    status: ResolveStatus
    code: str
    record: Optional[LinkRecord] = None

    @property
    def original_url(self) -> Optional[str]:
        if self.status is ResolveStatus.OK and self.record is not None:
            return self.record.original_url
        return None


def is_valid_url(url: str) -> bool:
    if not isinstance(url, str):
        return False
    try:
        _url_adapter.validate_python(url)
    except ValidationError:
        return False
    return True


def _is_valid_validity(minutes) -> bool:
    if isinstance(minutes, bool) or not isinstance(minutes, int):
        return False
    return MIN_VALIDITY_MINUTES <= minutes <= MAX_VALIDITY_MINUTES


def validate_create(url: str, custom_code: Optional[str], validity_minutes, existing: Sequence[LinkRecord]) -> Dict[str, List[str]]:
    """Collect all field errors for a create request; nothing short-circuits."""
    errors: Dict[str, List[str]] = {}
    if url is None or url == "":
        errors.setdefault("url", []).append("URL is required")
    elif not is_valid_url(url):
        errors.setdefault("url", []).append("Please enter a valid URL")

    code_problems = check_custom_code(custom_code, existing)
    if code_problems:
        errors["customCode"] = code_problems

    if not _is_valid_validity(validity_minutes):
        errors.setdefault("validityMinutes", []).append(
            f"Validity must be between {MIN_VALIDITY_MINUTES} and {MAX_VALIDITY_MINUTES} minutes (1 week)"
        )

    if len(existing) >= MAX_LINKS:
        errors.setdefault("general", []).append(
            f"Maximum of {MAX_LINKS} URLs can be shortened concurrently"
        )
    return errors


def create_link(url: str, custom_code: Optional[str], validity_minutes, existing: Sequence[LinkRecord], now: datetime) -> CreateResult:
    errors = validate_create(url, custom_code, validity_minutes, existing)
    if errors:
        return CreateResult(errors=errors)

    code, errors = allocate_code(custom_code, existing)
    if errors:
        return CreateResult(errors=errors)

    record = LinkRecord(
        id=uuid.uuid4().hex,
        original_url=url,
        short_code=code,
        created_at=now,
        expires_at=now + timedelta(minutes=validity_minutes),
        is_custom_code=bool(custom_code),
        click_count=0,
        click_events=[],
    )
    return CreateResult(record=record)


def is_expired(record: LinkRecord, now: datetime) -> bool:
    return now > record.expires_at


def find_by_code(code: str, existing: Sequence[LinkRecord]) -> Optional[LinkRecord]:
    for record in existing:
        if record.short_code == code:
            return record
    return None


def record_click(record: LinkRecord, source: Optional[str], now: datetime) -> LinkRecord:
    event = ClickEvent(timestamp=now, source=source or DIRECT_SOURCE, location=UNKNOWN_LOCATION)
    return record.model_copy(update={
        "click_count": record.click_count + 1,
        "click_events": [*record.click_events, event],
    })


def resolve_link(code: str, existing: Sequence[LinkRecord], now: datetime, source: Optional[str] = None) -> Resolution:
    """Look a code up and, when it is live, count one click.

    An expired link is returned untouched: no click is recorded for it.
    """
    record = find_by_code(code, existing)
    if record is None:
        return Resolution(status=ResolveStatus.NOT_FOUND, code=code)
    if is_expired(record, now):
        return Resolution(status=ResolveStatus.EXPIRED, code=code, record=record)
    return Resolution(status=ResolveStatus.OK, code=code, record=record_click(record, source, now))


def replace_record(updated: LinkRecord, existing: Sequence[LinkRecord]) -> List[LinkRecord]:
    return [updated if record.id == updated.id else record for record in existing]


def delete_link(link_id: str, existing: Sequence[LinkRecord]) -> List[LinkRecord]:
    return [record for record in existing if record.id != link_id]


def format_validity(created_at: datetime, expires_at: datetime) -> str:
    minutes = int((expires_at - created_at).total_seconds() // 60)
    if minutes < 60:
        return f"{minutes} minutes"
    if minutes < 1440:
        hours = minutes // 60
        return f"{hours} hour{'s' if hours > 1 else ''}"
    days = minutes // 1440
    return f"{days} day{'s' if days > 1 else ''}"


def summarize(records: Sequence[LinkRecord], now: datetime) -> LinkSummary:
    active = sum(1 for record in records if not is_expired(record, now))
    return LinkSummary(
        total_links=len(records),
        total_clicks=sum(record.click_count for record in records),
        active_links=active,
        expired_links=len(records) - active,
    )
