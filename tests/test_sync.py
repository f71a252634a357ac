"""End-to-end sync behaviour against an in-memory help center and fake embedder."""

import sqlite3
from unittest.mock import AsyncMock, patch

import pytest

from helpcenter_kb.config.settings import SourceConfig
from helpcenter_kb.errors import EmbeddingServiceError, FetchError, StorageError
from helpcenter_kb.pipelines.fetcher import HelpCenterSection
from helpcenter_kb.pipelines.sync import SyncCoordinator

from conftest import make_article

PASSWORD_BODY = (
    "<p>Open the sign-in page and choose Forgot password. "
    "Enter the email address you use for your account. "
    "We send a reset link that stays valid for one hour.</p>"
    "<ul><li>Check your spam folder</li><li>Add our address to your contacts</li></ul>"
    "<p>Follow the link and pick a new password with at least twelve characters. "
    "Sign in again on every device afterwards.</p>"
)
BILLING_BODY = "<p>Invoices are issued on the first day of every month.</p>"
EXPORT_BODY = (
    "<h2>Exporting data</h2><p>Go to Settings and open the Data tab. "
    "Choose CSV or JSON and press Export. Large exports are emailed to you when ready. "
    "Exports include every project you own but not shared projects.</p>"
)


def acme_articles(updated_password="2024-01-01T00:00:00"):
    return [
        make_article(1, "Reset your password", PASSWORD_BODY, updated_at=updated_password, section_id=10),
        make_article(2, "Billing cycle", BILLING_BODY, section_id=20),
        make_article(3, "Export your data", EXPORT_BODY, section_id=10),
    ]


@pytest.fixture
def coordinator(store, fake_help_center, fake_embedder, small_sync_config):
    return SyncCoordinator(store, fake_help_center, fake_embedder, small_sync_config)


async def assert_paired(store, source_id):
    for article in await store.get_articles_by_source(source_id):
        chunks = await store.get_chunks_by_article(article.id, source_id)
        assert [c.chunk_index for c in chunks] == list(range(len(chunks)))
        assert await store.count_embeddings(source_id, article.id) == len(chunks)
    unpaired = await store.find_unpaired()
    assert unpaired == {"chunks_without_vectors": [], "vectors_without_chunks": []}


@pytest.mark.asyncio
async def test_first_sync_indexes_every_article(coordinator, store, fake_help_center, fake_embedder, acme_source):
    fake_help_center.publish("acme", acme_articles())

    result = await coordinator.sync_source(acme_source)

    assert result.ok
    assert result.articles_fetched == 3
    assert result.articles_processed == 3
    assert result.articles_deleted == 0
    assert result.chunks_created == len(fake_embedder.embed_calls)
    assert result.chunks_created >= 3

    stats = await store.get_database_stats()
    assert stats["articles"] == 3
    assert stats["chunks"] == result.chunks_created
    assert stats["embeddings"] == result.chunks_created
    assert (await store.get_source("acme")).last_synced_at is not None
    await assert_paired(store, "acme")


@pytest.mark.asyncio
async def test_second_sync_without_changes_is_a_no_op(coordinator, store, fake_help_center, fake_embedder, acme_source):
    fake_help_center.publish("acme", acme_articles())
    await coordinator.sync_source(acme_source)
    synced_at = (await store.get_source("acme")).last_synced_at
    chunk_ids = {c.id for c in await store.get_chunks_by_article(1, "acme")}
    fake_embedder.embed_calls.clear()
    fake_embedder.batch_calls = 0

    result = await coordinator.sync_source(acme_source)

    assert result.up_to_date
    assert result.articles_fetched == 3
    assert result.chunks_created == 0
    assert fake_embedder.embed_calls == []
    assert fake_embedder.batch_calls == 0
    assert {c.id for c in await store.get_chunks_by_article(1, "acme")} == chunk_ids
    assert (await store.get_source("acme")).last_synced_at == synced_at


@pytest.mark.asyncio
async def test_removed_article_is_deleted_and_others_untouched(coordinator, store, fake_help_center,
                                                                 fake_embedder, acme_source):
    fake_help_center.publish("acme", acme_articles())
    await coordinator.sync_source(acme_source)
    kept_ids = {c.id for a in (1, 2) for c in await store.get_chunks_by_article(a, "acme")}
    fake_embedder.embed_calls.clear()

    fake_help_center.publish("acme", acme_articles()[:2])
    result = await coordinator.sync_source(acme_source)

    assert result.articles_deleted == 1
    assert result.articles_processed == 0
    assert fake_embedder.embed_calls == []
    assert await store.get_article(3, "acme") is None
    assert await store.get_chunks_by_article(3, "acme") == []
    assert {c.id for a in (1, 2) for c in await store.get_chunks_by_article(a, "acme")} == kept_ids
    await assert_paired(store, "acme")


@pytest.mark.asyncio
async def test_only_updated_articles_are_reprocessed(coordinator, store, fake_help_center,
                                                     fake_embedder, acme_source):
    fake_help_center.publish("acme", acme_articles())
    await coordinator.sync_source(acme_source)
    untouched = {c.id for c in await store.get_chunks_by_article(2, "acme")}
    fake_embedder.embed_calls.clear()

    fake_help_center.publish("acme", acme_articles(updated_password="2024-06-01T00:00:00"))
    result = await coordinator.sync_source(acme_source)

    assert result.articles_processed == 1
    assert all(text.startswith("# Reset your password") for text in fake_embedder.embed_calls)
    assert {c.id for c in await store.get_chunks_by_article(2, "acme")} == untouched
    await assert_paired(store, "acme")


@pytest.mark.asyncio
async def test_full_resync_reprocesses_everything(coordinator, store, fake_help_center, fake_embedder, acme_source):
    fake_help_center.publish("acme", acme_articles())
    first = await coordinator.sync_source(acme_source)
    fake_embedder.embed_calls.clear()

    result = await coordinator.sync_source(acme_source, full_resync=True)

    assert result.articles_processed == 3
    assert len(fake_embedder.embed_calls) == first.chunks_created
    assert (await store.get_database_stats())["chunks"] == first.chunks_created
    await assert_paired(store, "acme")


@pytest.mark.asyncio
async def test_section_and_category_names_are_stored(coordinator, store, fake_help_center, acme_source):
    fake_help_center.publish(
        "acme",
        acme_articles(),
        sections={
            10: HelpCenterSection(id=10, name="Account", category_id=100),
            20: HelpCenterSection(id=20, name="Payments", category_id=200),
        },
        categories={100: "General", 200: "Billing"},
    )

    await coordinator.sync_source(acme_source)

    article = await store.get_article(2, "acme")
    assert article.section_name == "Payments"
    assert article.category_name == "Billing"


@pytest.mark.asyncio
async def test_embedding_failure_leaves_prior_state(store, fake_help_center, fake_embedder,
                                                    small_sync_config, acme_source):
    coordinator = SyncCoordinator(store, fake_help_center, fake_embedder, small_sync_config)
    fake_help_center.publish("acme", acme_articles())
    await coordinator.sync_source(acme_source)
    before = await store.get_database_stats()
    synced_at = (await store.get_source("acme")).last_synced_at

    fake_embedder.fail_with = EmbeddingServiceError("Cannot connect to Ollama")
    fake_help_center.publish("acme", acme_articles(updated_password="2024-06-01T00:00:00")[:1])
    with pytest.raises(EmbeddingServiceError):
        await coordinator.sync_source(acme_source)

    assert await store.get_database_stats() == before
    assert (await store.get_source("acme")).last_synced_at == synced_at


@pytest.mark.asyncio
async def test_progress_reports_each_phase(coordinator, fake_help_center, acme_source):
    fake_help_center.publish("acme", acme_articles())
    updates = []

    await coordinator.sync_source(acme_source, on_progress=updates.append)

    phases = [u.phase for u in updates]
    assert phases[0] == "fetching"
    for phase in ("fetching", "parsing", "chunking", "embedding", "storing"):
        assert phase in phases
    assert phases.index("embedding") < phases.index("storing")


@pytest.mark.asyncio
async def test_up_to_date_sync_reports_only_nothing_to_do(coordinator, fake_help_center, acme_source):
    fake_help_center.publish("acme", acme_articles())
    await coordinator.sync_source(acme_source)
    updates = []

    await coordinator.sync_source(acme_source, on_progress=updates.append)

    assert [u.phase for u in updates if u.phase != "fetching"] == ["storing"]
    assert updates[-1].message == "All articles are up to date."


@pytest.mark.asyncio
async def test_sync_all_isolates_failures_and_skips_disabled(coordinator, store, fake_help_center, acme_source):
    broken = SourceConfig(id="broken", name="Broken", base_url="https://broken.test")
    disabled = SourceConfig(id="old", name="Old", base_url="https://old.test", enabled=False)
    fake_help_center.publish("acme", acme_articles())
    fake_help_center.fail_for["broken"] = FetchError("HTTP 404", source="broken", status=404)
    seen = []

    results = await coordinator.sync_all(
        [broken, disabled, acme_source],
        on_progress=lambda source_id, progress: seen.append(source_id),
    )

    assert [r.source_id for r in results] == ["broken", "acme"]
    assert results[0].error == "HTTP 404"
    assert results[1].ok
    assert results[1].articles_processed == 3
    assert "old" not in seen
    assert fake_help_center.fetch_calls == 2
    assert (await store.get_source("broken")).last_synced_at is None


@pytest.mark.asyncio
async def test_sync_all_reports_storage_failure(coordinator, store, fake_help_center, acme_source):
    fake_help_center.publish("acme", acme_articles())
    failing_commit = AsyncMock(side_effect=StorageError("Sync commit failed for source acme: disk I/O error"))

    with patch.object(store, "commit_source_sync", failing_commit):
        results = await coordinator.sync_all([acme_source])

    failing_commit.assert_awaited_once()
    assert not results[0].ok
    assert "disk I/O error" in results[0].error
    assert (await store.get_database_stats())["chunks"] == 0


class LockingConnection:
    """Delegates to a real connection but reports the database as locked for one source."""

    def __init__(self, conn, locked_source):
        self.conn = conn
        self.locked_source = locked_source

    def execute(self, sql, params=()):
        if "updated_at FROM articles" in sql and self.locked_source in params:
            raise sqlite3.OperationalError("database is locked")
        return self.conn.execute(sql, params)

    def __getattr__(self, name):
        return getattr(self.conn, name)


@pytest.mark.asyncio
async def test_sync_all_continues_after_database_error(coordinator, store, fake_help_center, acme_source):
    busy = SourceConfig(id="busy", name="Busy", base_url="https://busy.test")
    fake_help_center.publish("busy", acme_articles())
    fake_help_center.publish("acme", acme_articles())
    real_conn = store.conn
    store.conn = LockingConnection(real_conn, "busy")
    try:
        results = await coordinator.sync_all([busy, acme_source])
    finally:
        store.conn = real_conn

    assert [r.ok for r in results] == [False, True]
    assert "database is locked" in results[0].error
    assert results[1].articles_processed == 3
    assert (await store.get_source("busy")).last_synced_at is None
