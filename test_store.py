import asyncio
import json
import logging
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db import init_models
from events import log_event
from links import ResolveStatus
from models import StoredValue
from redirect import DeferredResolution, resolve_unless_abandoned
from store import LinkStore, PersistenceError

SQLALCHEMY_TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def session():
    engine = create_async_engine(
        SQLALCHEMY_TEST_DATABASE_URL, connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    await init_models(engine)
    TestingSessionLocal = sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    async with TestingSessionLocal() as s:
        yield s
    await engine.dispose()


@pytest.fixture
def store(session, clock):
    return LinkStore(session, key="shortenedUrls", clock=clock)


@pytest.mark.asyncio
async def test_load_missing_key_is_empty(store):
    assert await store.load() == []


@pytest.mark.asyncio
async def test_save_load_round_trip(store, clock):
    created = await store.create("https://example.com", "", 30)
    await store.resolve(created.record.short_code, "https://ref.example/")
    records = await store.load()
    await store.save(records)
    assert await store.load() == records
    assert records[0].click_events[0].timestamp == clock.now


@pytest.mark.asyncio
async def test_storage_key_is_respected(session, clock):
    first = LinkStore(session, key="first", clock=clock)
    second = LinkStore(session, key="second", clock=clock)
    await first.create("https://example.com", "", 30)
    assert len(await first.load()) == 1
    assert await second.load() == []


@pytest.mark.asyncio
async def test_create_resolve_expire_scenario(store, clock):
    result = await store.create("https://example.com", "", 30)
    assert result.ok
    record = result.record
    assert record.expires_at == record.created_at + timedelta(minutes=30)

    clock.advance(minutes=10)
    resolution = await store.resolve(record.short_code)
    assert resolution.status is ResolveStatus.OK
    assert resolution.original_url == "https://example.com"
    assert (await store.get_link(record.id)).click_count == 1

    clock.advance(minutes=21)
    resolution = await store.resolve(record.short_code)
    assert resolution.status is ResolveStatus.EXPIRED
    assert resolution.record.click_count == 1
    assert (await store.get_link(record.id)).click_count == 1


@pytest.mark.asyncio
async def test_failed_create_does_not_write(store, session):
    result = await store.create("not a url", "", 30)
    assert not result.ok
    assert await session.get(StoredValue, store.key) is None


@pytest.mark.asyncio
async def test_cap_leaves_collection_unchanged(store):
    for i in range(5):
        assert (await store.create(f"https://example.com/{i}")).ok
    before = await store.load()
    result = await store.create("https://example.com/extra")
    assert "general" in result.errors
    assert await store.load() == before


@pytest.mark.asyncio
async def test_delete_twice(store):
    record = (await store.create("https://example.com")).record
    assert await store.delete(record.id) == []
    assert await store.delete(record.id) == []
    assert await store.load() == []


@pytest.mark.asyncio
@pytest.mark.parametrize("value,message", [
    ("{not json", "not valid JSON"),
    ('{"a": 1}', "not a list"),
    ('[{"id": "1"}]', "malformed records"),
])
async def test_malformed_collection_raises(store, session, value, message):
    session.add(StoredValue(key=store.key, value=value))
    await session.commit()
    with pytest.raises(PersistenceError, match=message):
        await store.load()


@pytest.mark.asyncio
async def test_deferred_resolution_records_click(store):
    record = (await store.create("https://example.com")).record
    resolution = await DeferredResolution(store, record.short_code, delay=0.01).start().result()
    assert resolution.status is ResolveStatus.OK
    assert (await store.get_link(record.id)).click_count == 1


@pytest.mark.asyncio
async def test_cancelled_deferred_resolution_records_nothing(store):
    record = (await store.create("https://example.com")).record
    deferred = DeferredResolution(store, record.short_code, delay=5).start()
    await asyncio.sleep(0.01)
    assert deferred.cancel()
    await asyncio.sleep(0.01)
    assert deferred.cancelled()
    assert not deferred.cancel()
    assert (await store.get_link(record.id)).click_count == 0


@pytest.mark.asyncio
async def test_resolve_unless_abandoned(store):
    record = (await store.create("https://example.com")).record

    async def still_here():
        return False

    async def gone():
        return True

    resolution = await resolve_unless_abandoned(
        DeferredResolution(store, record.short_code, delay=0.02), still_here, poll_interval=0.005
    )
    assert resolution.status is ResolveStatus.OK

    abandoned = await resolve_unless_abandoned(
        DeferredResolution(store, record.short_code, delay=5), gone, poll_interval=0.005
    )
    assert abandoned is None
    await asyncio.sleep(0.01)
    assert (await store.get_link(record.id)).click_count == 1


class SlowStore:
    """Delegates to a real store but takes a while to resolve."""

    def __init__(self, store, pause):
        self.store = store
        self.pause = pause

    async def resolve(self, code, source=None):
        await asyncio.sleep(self.pause)
        return await self.store.resolve(code, source)


@pytest.mark.asyncio
async def test_abandon_after_delay_waits_for_recorded_click(store):
    record = (await store.create("https://example.com")).record
    polls = []

    async def gone_on_second_poll():
        polls.append(True)
        return len(polls) >= 2

    deferred = DeferredResolution(SlowStore(store, 0.05), record.short_code, delay=0)
    resolution = await resolve_unless_abandoned(deferred, gone_on_second_poll, poll_interval=0.005)

    assert len(polls) >= 2
    assert deferred.resolving()
    assert not deferred.cancelled()
    assert resolution is not None
    assert resolution.status is ResolveStatus.OK
    assert resolution.record.click_count == 1
    assert (await store.get_link(record.id)).click_count == 1


@pytest.mark.asyncio
async def test_cancel_refused_once_resolving(store):
    record = (await store.create("https://example.com")).record
    deferred = DeferredResolution(SlowStore(store, 0.05), record.short_code, delay=0).start()
    await asyncio.sleep(0.01)
    assert deferred.resolving()
    assert not deferred.cancel()
    resolution = await deferred.result()
    assert resolution.status is ResolveStatus.OK


def logged_events(caplog):
    events = []
    for record in caplog.records:
        name = getattr(record, "event_name", None)
        if name:
            body = record.getMessage().split(": ", 1)[1]
            events.append((name, json.loads(body)))
    return events


@pytest.mark.asyncio
async def test_operations_emit_events(store, caplog):
    caplog.set_level(logging.INFO, logger="url_shortener")

    record = (await store.create("https://example.com", "my-code", 30)).record
    await store.create("not a url", "", 30)
    await store.resolve("my-code", "https://ref.example/")
    await store.resolve("missing")
    await store.delete(record.id)

    events = logged_events(caplog)
    assert [name for name, _ in events] == [
        "URL_SHORTENED",
        "VALIDATION_ERROR",
        "URL_CLICKED",
        "REDIRECT_ERROR",
        "URL_DELETED",
    ]
    shortened, invalid, clicked, not_found, deleted = [payload for _, payload in events]
    assert shortened["shortCode"] == "my-code"
    assert shortened["originalUrl"] == "https://example.com"
    assert invalid["errors"] == {"url": ["Please enter a valid URL"]}
    assert invalid["formData"]["url"] == "not a url"
    assert clicked["shortCode"] == "my-code"
    assert clicked["totalClicks"] == 1
    assert clicked["clickData"]["source"] == "https://ref.example/"
    assert not_found == {"shortCode": "missing", "error": "URL not found"}
    assert deleted["id"] == record.id


@pytest.mark.asyncio
async def test_expired_resolve_emits_redirect_error(store, clock, caplog):
    caplog.set_level(logging.INFO, logger="url_shortener")
    await store.create("https://example.com", "old-one", 1)
    clock.advance(minutes=5)
    await store.resolve("old-one")

    name, payload = logged_events(caplog)[-1]
    assert name == "REDIRECT_ERROR"
    assert payload["error"] == "URL expired"
    assert payload["url"]["clickCount"] == 0


def test_unserializable_payload_is_logged_with_repr(caplog):
    caplog.set_level(logging.INFO, logger="url_shortener")
    payload = {}
    payload["self"] = payload
    log_event("CIRCULAR", payload)
    assert caplog.records[-1].event_name == "CIRCULAR"
    assert "{'self': {...}}" in caplog.records[-1].getMessage()


class BrokenStream:
    def write(self, text):
        raise OSError("disk full")

    def flush(self):
        pass


@pytest.mark.asyncio
async def test_failing_log_handler_does_not_change_results(store, monkeypatch, caplog):
    caplog.set_level(logging.INFO, logger="url_shortener")
    monkeypatch.setattr(logging, "raiseExceptions", False)
    handler = logging.StreamHandler(BrokenStream())
    event_logger = logging.getLogger("url_shortener")
    event_logger.addHandler(handler)
    try:
        result = await store.create("https://example.com", "", 30)
        resolution = await store.resolve(result.record.short_code)
    finally:
        event_logger.removeHandler(handler)

    assert result.ok
    assert resolution.status is ResolveStatus.OK
    assert (await store.get_link(result.record.id)).click_count == 1
