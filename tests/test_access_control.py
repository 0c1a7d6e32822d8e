"""Tests for access decisions and the atomic access transaction."""
import asyncio
import sqlite3
from datetime import timedelta

import pytest

from access_control import ACCESS_UPDATE, AccessDecision, evaluate, load_record
from errors import TransientError
from item_record import ItemKind, ItemRecord, utcnow


def _record(**overrides):
    now = utcnow()
    fields = dict(
        id='abcdefghij',
        kind=ItemKind.TEXT,
        content='hello',
        expires_at=now + timedelta(minutes=10),
        created_at=now,
    )
    fields.update(overrides)
    return ItemRecord(**fields)


def _verify(secret, digest):
    return digest == f'digest:{secret}'


class TestEvaluate:

    def test_missing_record_is_not_found(self):
        assert evaluate(None, utcnow()) is AccessDecision.NOT_FOUND

    def test_deleted_wins_over_expired(self):
        now = utcnow()
        record = _record(expires_at=now - timedelta(hours=1), deleted_at=now - timedelta(minutes=5))
        assert evaluate(record, now) is AccessDecision.NOT_FOUND

    def test_expiry_is_inclusive(self):
        now = utcnow()
        record = _record(expires_at=now)
        assert evaluate(record, now) is AccessDecision.EXPIRED

    def test_expired_before_secret_check(self):
        now = utcnow()
        record = _record(expires_at=now - timedelta(seconds=1), secret_digest='digest:pw')
        assert evaluate(record, now) is AccessDecision.EXPIRED

    def test_secret_required_when_absent(self):
        record = _record(secret_digest='digest:pw')
        assert evaluate(record, utcnow(), None, _verify) is AccessDecision.SECRET_REQUIRED
        assert evaluate(record, utcnow(), '', _verify) is AccessDecision.SECRET_REQUIRED

    def test_bad_secret_checked_before_quota(self):
        record = _record(secret_digest='digest:pw', max_views=1, view_count=1)
        assert evaluate(record, utcnow(), 'nope', _verify) is AccessDecision.BAD_SECRET
        assert evaluate(record, utcnow(), 'pw', _verify) is AccessDecision.EXHAUSTED

    def test_one_time_overrides_larger_quota(self):
        record = _record(is_one_time=True, max_views=5, view_count=1)
        assert record.effective_quota == 1
        assert evaluate(record, utcnow()) is AccessDecision.EXHAUSTED

    def test_unbounded_when_no_quota(self):
        record = _record(view_count=10_000)
        assert record.effective_quota is None
        assert evaluate(record, utcnow()) is AccessDecision.ALLOWED

    def test_allowed_with_correct_secret(self):
        record = _record(secret_digest='digest:pw', max_views=2, view_count=1)
        assert evaluate(record, utcnow(), 'pw', _verify) is AccessDecision.ALLOWED

    def test_evaluate_has_no_side_effects(self):
        record = _record(max_views=1)
        for _ in range(3):
            assert evaluate(record, utcnow()) is AccessDecision.ALLOWED
        assert record.view_count == 0


@pytest.mark.asyncio
async def test_text_round_trip(shares, db):
    created = await shares.create_item('text', content='hello')

    result = await shares.access_item(created.id)

    assert result.allowed
    assert result.view.content == 'hello'
    assert result.view.view_count == 1
    assert result.view.file_locator is None
    record = await load_record(db, created.id)
    assert record.view_count == 1
    assert record.download_count == 0
    assert record.deleted_at is None


@pytest.mark.asyncio
async def test_expired_item_reports_expired_not_not_found(shares, db):
    now = utcnow()
    created = await shares.create_item(
        'text', content='late', expires_at=now - timedelta(seconds=1),
        now=now - timedelta(minutes=5),
    )

    first = await shares.access_item(created.id, now=now)
    second = await shares.access_item(created.id, now=now)

    assert first.decision is AccessDecision.EXPIRED
    assert second.decision is AccessDecision.EXPIRED
    record = await load_record(db, created.id)
    assert record.view_count == 0
    assert record.deleted_at is None


@pytest.mark.asyncio
async def test_password_flow(shares, db):
    created = await shares.create_item('text', content='secret', secret='correct')

    assert (await shares.access_item(created.id)).decision is AccessDecision.SECRET_REQUIRED
    assert (await shares.access_item(created.id, 'wrong')).decision is AccessDecision.BAD_SECRET
    assert (await load_record(db, created.id)).view_count == 0

    result = await shares.access_item(created.id, 'correct')

    assert result.allowed
    assert result.view.content == 'secret'
    assert (await load_record(db, created.id)).view_count == 1


@pytest.mark.asyncio
async def test_view_never_exposes_digest(shares):
    created = await shares.create_item('text', content='x', secret='pw')
    result = await shares.access_item(created.id, 'pw')
    dumped = result.view.model_dump()
    assert not any('digest' in key or 'secret' in key for key in dumped)
    assert 'pw' not in dumped.values()


@pytest.mark.asyncio
async def test_max_views_sequential(shares, db):
    created = await shares.create_item('text', content='limited', max_views=3)

    results = [await shares.access_item(created.id) for _ in range(3)]

    assert all(r.allowed for r in results)
    assert [r.view.view_count for r in results] == [1, 2, 3]
    record = await load_record(db, created.id)
    assert record.view_count == 3
    # Finalized by the access that met the quota
    assert record.deleted_at is not None
    assert (await shares.access_item(created.id)).decision is AccessDecision.NOT_FOUND


@pytest.mark.asyncio
async def test_one_time_is_finalized_by_first_access(shares, db):
    created = await shares.create_item('text', content='once', is_one_time=True, max_views=10)

    first = await shares.access_item(created.id)
    second = await shares.access_item(created.id)

    assert first.allowed
    assert first.view.is_one_time
    assert second.decision is AccessDecision.NOT_FOUND
    record = await load_record(db, created.id)
    assert record.view_count == 1
    assert record.deleted_at is not None


@pytest.mark.asyncio
async def test_concurrent_access_never_overruns_quota(shares, db):
    created = await shares.create_item('text', content='race', max_views=3)

    results = await asyncio.gather(*(shares.access_item(created.id) for _ in range(50)))

    decisions = [r.decision for r in results]
    assert decisions.count(AccessDecision.ALLOWED) == 3
    assert decisions.count(AccessDecision.EXHAUSTED) == 47
    record = await load_record(db, created.id)
    assert record.view_count == 3
    assert record.deleted_at is not None


@pytest.mark.asyncio
async def test_concurrent_one_time_access_succeeds_once(shares, db):
    created = await shares.create_item('text', content='race', is_one_time=True)

    results = await asyncio.gather(*(shares.access_item(created.id) for _ in range(20)))

    assert sum(r.allowed for r in results) == 1
    assert (await load_record(db, created.id)).view_count == 1


@pytest.mark.asyncio
async def test_file_access_counts_downloads(shares, db):
    from share_manager import FileUpload

    created = await shares.create_item(
        'file', upload=FileUpload(b'%PDF-1.4', 'report.pdf', 'application/pdf'), max_views=2,
    )

    first = await shares.access_item(created.id)
    second = await shares.access_item(created.id)

    assert first.view.download_count == 1
    assert second.view.download_count == 2
    assert second.view.file_name == 'report.pdf'
    assert second.view.file_size == 8
    assert second.view.file_type == 'application/pdf'
    assert second.view.content is None
    record = await load_record(db, created.id)
    assert record.download_count == 2
    assert record.deleted_at is not None


@pytest.mark.asyncio
async def test_malformed_id_is_not_found_without_lookup(shares):
    assert (await shares.access_item('../etc/pw')).decision is AccessDecision.NOT_FOUND
    assert (await shares.access_item('short')).decision is AccessDecision.NOT_FOUND


@pytest.mark.asyncio
async def test_delete_between_load_and_update_is_not_found(shares, db, monkeypatch):
    created = await shares.create_item('text', content='x', max_views=3)
    real_fetchone = db.fetchone
    interleaved = []

    async def fetchone(sql, params=()):
        if sql == ACCESS_UPDATE and not interleaved:
            interleaved.append(await shares.delete_item(created.id))
        return await real_fetchone(sql, params)

    monkeypatch.setattr(db, 'fetchone', fetchone)

    result = await shares.access_item(created.id)

    assert interleaved
    assert result.decision is AccessDecision.NOT_FOUND
    assert result.view is None
    assert (await load_record(db, created.id)).view_count == 0


@pytest.mark.asyncio
async def test_database_failure_surfaces_as_transient(shares, db, monkeypatch):
    created = await shares.create_item('text', content='x')

    async def locked(*args, **kwargs):
        raise sqlite3.OperationalError('database is locked')

    monkeypatch.setattr(db.conn, 'execute_fetchall', locked)

    with pytest.raises(TransientError):
        await shares.access_item(created.id)
