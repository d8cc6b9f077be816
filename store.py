import json
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

from pydantic import TypeAdapter, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from events import log_event
from links import (
    CreateResult,
    Resolution,
    ResolveStatus,
    create_link,
    delete_link,
    replace_record,
    resolve_link,
)
from models import StoredValue
from schemas import LinkRecord

logger = logging.getLogger("url_shortener")

_records_adapter = TypeAdapter(List[LinkRecord])


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PersistenceError(Exception):
    """The stored link collection exists but cannot be read back."""


class LinkStore:
    """The link collection kept under a single key of the key-value table.

    Each operation loads the whole collection, applies one lifecycle step and
    writes the whole collection back. There is one writer; the last write wins.
    """

    def __init__(self, session: AsyncSession, key: str, clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.key = key
        self.clock = clock

    async def load(self) -> List[LinkRecord]:
        row = await self.session.get(StoredValue, self.key)
        if row is None:
            return []
        try:
            data = json.loads(row.value)
        except ValueError as e:
            raise PersistenceError(f"Stored collection '{self.key}' is not valid JSON: {e}") from e
        if not isinstance(data, list):
            raise PersistenceError(f"Stored collection '{self.key}' is not a list")
        try:
            return _records_adapter.validate_python(data)
        except ValidationError as e:
            raise PersistenceError(f"Stored collection '{self.key}' has malformed records: {e}") from e

    async def save(self, records: Sequence[LinkRecord]) -> None:
        value = json.dumps(_records_adapter.dump_python(list(records), mode="json", by_alias=True))
        await self.session.merge(StoredValue(key=self.key, value=value, updated_at=utcnow()))
        await self.session.commit()
        logger.debug(f"Saved {len(records)} links under key={self.key}")

    async def list_links(self) -> List[LinkRecord]:
        return await self.load()

    async def get_link(self, link_id: str) -> Optional[LinkRecord]:
        for record in await self.load():
            if record.id == link_id:
                return record
        return None

    async def create(self, url: str, custom_code: Optional[str] = None, validity_minutes=30) -> CreateResult:
        existing = await self.load()
        result = create_link(url, custom_code, validity_minutes, existing, self.clock())
        if not result.ok:
            log_event("VALIDATION_ERROR", {
                "errors": result.errors,
                "formData": {"url": url, "customCode": custom_code, "validityMinutes": validity_minutes},
            })
            return result
        await self.save([*existing, result.record])
        log_event("URL_SHORTENED", result.record)
        return result

    async def resolve(self, code: str, source: Optional[str] = None) -> Resolution:
        existing = await self.load()
        resolution = resolve_link(code, existing, self.clock(), source)
        if resolution.status is ResolveStatus.NOT_FOUND:
            log_event("REDIRECT_ERROR", {"shortCode": code, "error": "URL not found"})
        elif resolution.status is ResolveStatus.EXPIRED:
            log_event("REDIRECT_ERROR", {"shortCode": code, "error": "URL expired", "url": resolution.record})
        else:
            await self.save(replace_record(resolution.record, existing))
            log_event("URL_CLICKED", {
                "shortCode": code,
                "originalUrl": resolution.record.original_url,
                "clickData": resolution.record.click_events[-1],
                "totalClicks": resolution.record.click_count,
            })
        return resolution

    async def delete(self, link_id: str) -> List[LinkRecord]:
        existing = await self.load()
        removed = [record for record in existing if record.id == link_id]
        remaining = delete_link(link_id, existing)
        await self.save(remaining)
        log_event("URL_DELETED", removed[0] if removed else {"id": link_id, "found": False})
        return remaining
