"""Tests for the batch sync engine and channel lifecycle."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import ClassVar

from conftest import FakeSource, make_items

from twister.constants import (
    KEY_LAST_SYNC_TOKEN,
    KEY_SYNC_ENABLED,
    KEY_SYNC_LOCK,
    KEY_SYNC_STATE,
)
from twister.host import LocalHost
from twister.models import Channel, NewLinkWithNotes, ScheduleOccurrence, SyncState


class PhasedSource(FakeSource):
    """FakeSource that syncs open items, then closed ones."""

    name: ClassVar[str] = "phased"
    first_phase: ClassVar[str | None] = "open"


class TestPagination:
    """Tests for batch pagination and termination."""

    async def test_120_items_in_pages_of_50(self, host: LocalHost, fake_source: FakeSource) -> None:
        """Test that 120 items sync in 3 batches and leave no state behind."""
        fake_source.items = make_items(120)

        await fake_source.on_channel_enabled(Channel(id="c1"))
        runs = await host.tasks.drain()

        assert runs == 3
        assert len(host.integrations.links) == 120
        assert len(host.integrations.saves) == 120
        assert all(link["archived"] is False for link in host.integrations.links.values())
        assert all(link["unread"] is False for link in host.integrations.links.values())
        assert await fake_source.load_state("c1") is None
        assert await fake_source.get(KEY_SYNC_LOCK + "c1") is None

    async def test_state_advances_between_batches(
        self, host: LocalHost, fake_source: FakeSource
    ) -> None:
        """Test that each batch sees the offset and batch number of the previous one."""
        fake_source.items = make_items(120)

        await fake_source.on_channel_enabled(Channel(id="c1"))
        await host.tasks.drain()

        offsets = [(s.offset, s.batch_number, s.items_processed) for s in fake_source.seen_states]
        assert offsets == [(0, 1, 0), (50, 2, 50), (100, 3, 100)]
        assert all(s.initial_sync for s in fake_source.seen_states)

    async def test_state_persisted_between_batches(
        self, host: LocalHost, fake_source: FakeSource
    ) -> None:
        """Test that the advanced state is stored while a batch is pending."""
        fake_source.items = make_items(120)

        await fake_source.on_channel_enabled(Channel(id="c1"))
        await host.tasks.run_pending()

        state = await fake_source.load_state("c1")
        assert state is not None
        assert state.offset == 50
        assert state.page == 2
        assert await fake_source.get(KEY_SYNC_LOCK + "c1") is True

    async def test_empty_channel_completes(self, host: LocalHost, fake_source: FakeSource) -> None:
        """Test that a channel with no items finishes after one batch."""
        await fake_source.on_channel_enabled(Channel(id="c1"))
        runs = await host.tasks.drain()

        assert runs == 1
        assert host.integrations.links == {}
        assert await fake_source.get(KEY_SYNC_LOCK + "c1") is None

    async def test_last_sync_token_persisted(self, host: LocalHost, fake_source: FakeSource) -> None:
        """Test that the final page's sync token is kept for the next run."""
        fake_source.items = make_items(10)

        await fake_source.on_channel_enabled(Channel(id="c1"))
        await host.tasks.drain()

        assert await fake_source.get(KEY_LAST_SYNC_TOKEN + "c1") == "token-1"
        assert await fake_source.get(KEY_SYNC_ENABLED + "c1") is True


class TestPhases:
    """Tests for multi-phase syncs."""

    async def test_phases_run_in_order(self, host: LocalHost) -> None:
        """Test that a phase hand-off resets paging and keeps counting batches."""
        host.registry.register_source(PhasedSource)
        source = await host.attach("phased")
        assert isinstance(source, PhasedSource)
        source.phases = {
            "open": [{"id": "a"}, {"id": "b"}],
            "closed": [{"id": "c"}],
        }

        await source.on_channel_enabled(Channel(id="c1"))
        runs = await host.tasks.drain()

        assert runs == 2
        assert [s.phase for s in source.seen_states] == ["open", "closed"]
        assert source.seen_states[1].offset == 0
        assert source.seen_states[1].items_processed == 2
        assert set(host.integrations.links) == {"fake:item:a", "fake:item:b", "fake:item:c"}


class TestIdempotency:
    """Tests for upsert idempotency and initial-sync flagging."""

    async def test_resync_does_not_duplicate(self, host: LocalHost, fake_source: FakeSource) -> None:
        """Test that syncing the same items twice leaves one thread per item."""
        fake_source.items = make_items(30)

        await fake_source.on_channel_enabled(Channel(id="c1"))
        await host.tasks.drain()
        assert await fake_source.start_incremental_sync("c1") is True
        await host.tasks.drain()

        assert len(host.integrations.links) == 30
        assert len(host.integrations.saves) == 60
        link = host.integrations.links["fake:item:0"]
        assert len(link["notes"]) == 1

    async def test_incremental_sync_leaves_read_state_alone(
        self, host: LocalHost, fake_source: FakeSource
    ) -> None:
        """Test that only initial syncs set unread/archived."""
        fake_source.items = make_items(3)

        await fake_source.on_channel_enabled(Channel(id="c1"))
        await host.tasks.drain()
        await fake_source.start_incremental_sync("c1")
        await host.tasks.drain()

        initial, incremental = host.integrations.saves[0], host.integrations.saves[-1]
        assert initial["archived"] is False
        assert initial["unread"] is False
        assert "archived" not in incremental
        assert "unread" not in incremental
        assert fake_source.seen_states[-1].initial_sync is False
        assert fake_source.seen_states[-1].phase == "incremental"

    async def test_sync_metadata_stamped(self, host: LocalHost, fake_source: FakeSource) -> None:
        """Test that every thread carries the provider and channel it came from."""
        fake_source.items = make_items(1)

        await fake_source.on_channel_enabled(Channel(id="c1"))
        await host.tasks.drain()

        link = host.integrations.links["fake:item:0"]
        assert link["meta"] == {"syncProvider": "fake", "syncableId": "c1"}
        assert link["channel_id"] == "c1"


class TestLocking:
    """Tests for the per-channel sync lock."""

    async def test_enable_ignored_while_locked(
        self, host: LocalHost, fake_source: FakeSource
    ) -> None:
        """Test that enabling a channel with a held lock does nothing."""
        await fake_source.set(KEY_SYNC_LOCK + "c1", True)

        await fake_source.on_channel_enabled(Channel(id="c1"))

        assert len(host.tasks) == 0
        assert await fake_source.get(KEY_SYNC_ENABLED + "c1") is None

    async def test_incremental_skipped_while_locked(
        self, host: LocalHost, fake_source: FakeSource
    ) -> None:
        """Test that a delta sync does not start over a running sync."""
        fake_source.items = make_items(120)
        await fake_source.on_channel_enabled(Channel(id="c1"))

        assert await fake_source.start_incremental_sync("c1") is False
        assert len(host.tasks) == 1

    async def test_stale_lock_cleared(self, host: LocalHost, fake_source: FakeSource) -> None:
        """Test that a batch with no state clears a leftover lock."""
        await fake_source.set(KEY_SYNC_LOCK + "c1", True)

        await fake_source.sync_batch("c1")

        assert await fake_source.get(KEY_SYNC_LOCK + "c1") is None
        assert host.integrations.saves == []


class TestFailures:
    """Tests for error handling inside batches."""

    async def test_failed_item_is_skipped(self, host: LocalHost, fake_source: FakeSource) -> None:
        """Test that one bad item does not abort the batch."""
        fake_source.items = make_items(10)
        fake_source.fail_ids = {"item-3"}

        await fake_source.on_channel_enabled(Channel(id="c1"))
        await host.tasks.drain()

        assert len(host.integrations.links) == 9
        assert "fake:item:3" not in host.integrations.links
        assert await fake_source.load_state("c1") is None

    async def test_transform_returning_none_is_skipped(
        self, host: LocalHost, fake_source: FakeSource
    ) -> None:
        """Test that items the transformer declines are not upserted."""
        fake_source.items = [{"id": "a"}, {"id": "b", "skip": True}]

        await fake_source.on_channel_enabled(Channel(id="c1"))
        await host.tasks.drain()

        assert list(host.integrations.links) == ["fake:item:a"]

    async def test_missing_token_abandons_sync(
        self, host: LocalHost, fake_source: FakeSource
    ) -> None:
        """Test that losing authorization clears state and lock."""
        fake_source.items = make_items(10)
        host.integrations.revoke("github")

        await fake_source.on_channel_enabled(Channel(id="c1"))
        await host.tasks.drain()

        assert host.integrations.saves == []
        assert await fake_source.load_state("c1") is None
        assert await fake_source.get(KEY_SYNC_LOCK + "c1") is None

    async def test_retried_batch_after_abandon_is_noop(
        self, host: LocalHost, fake_source: FakeSource
    ) -> None:
        """Test that a retry of an abandoned batch finds no state and returns."""
        host.integrations.revoke("github")
        await fake_source.on_channel_enabled(Channel(id="c1"))
        await host.tasks.drain()

        host.integrations.set_token("github", "gh-token")
        await fake_source.sync_batch("c1")

        assert host.integrations.saves == []


class TestDisable:
    """Tests for channel disablement."""

    async def test_disable_archives_and_clears(
        self, host: LocalHost, fake_source: FakeSource
    ) -> None:
        """Test that disabling archives once and clears every channel key."""
        fake_source.items = make_items(5)
        await fake_source.on_channel_enabled(Channel(id="c1"))
        await host.tasks.drain()
        assert await fake_source.tools.store.list() != []

        await fake_source.on_channel_disabled(Channel(id="c1"))

        assert host.integrations.archive_calls == [{"syncProvider": "fake", "syncableId": "c1"}]
        assert all(link["archived"] is True for link in host.integrations.links.values())
        assert await fake_source.tools.store.list() == []
        assert host.routes == {}

    async def test_disable_leaves_other_channels(
        self, host: LocalHost, fake_source: FakeSource
    ) -> None:
        """Test that state of another channel survives a disable."""
        await fake_source.save_state("c2", SyncState())

        await fake_source.on_channel_disabled(Channel(id="c1"))

        assert await fake_source.get(KEY_SYNC_STATE + "c2") is not None


class TestAbandonedSync:
    """Tests for syncs whose batch task the host gives up on."""

    async def test_dropped_batch_releases_channel(
        self, host: LocalHost, fake_source: FakeSource
    ) -> None:
        """Test that exhausting retries clears the lock so the channel can sync again."""
        fake_source.items = make_items(10)
        fake_source.fetch_error = RuntimeError("provider down")
        later = datetime.now(UTC) + timedelta(hours=1)

        await fake_source.on_channel_enabled(Channel(id="c1"))
        await host.tasks.drain(until=later)

        assert len(host.tasks.dropped) == 1
        assert await fake_source.get(KEY_SYNC_LOCK + "c1") is None
        assert await fake_source.load_state("c1") is None

        fake_source.fetch_error = None
        await fake_source.on_channel_enabled(Channel(id="c1"))
        await host.tasks.drain()

        assert len(host.integrations.links) == 10

    async def test_retry_keeps_lock(self, host: LocalHost, fake_source: FakeSource) -> None:
        """Test that a failure with retries left keeps the run locked."""
        fake_source.fetch_error = RuntimeError("provider down")

        await fake_source.on_channel_enabled(Channel(id="c1"))
        await host.tasks.drain()

        assert host.tasks.dropped == []
        assert await fake_source.get(KEY_SYNC_LOCK + "c1") is True
        assert await fake_source.load_state("c1") is not None


class TestSaveLink:
    """Tests for the metadata save_link stamps on upserts."""

    async def test_initial_sync_marks_thread_read(
        self, host: LocalHost, fake_source: FakeSource
    ) -> None:
        """Test that a full thread saved during the initial sync is read and unarchived."""
        link = NewLinkWithNotes(source="fake:1", type="item", title="One")

        await fake_source.save_link(link, "c1", initial_sync=True)

        saved = host.integrations.saves[-1]
        assert saved["unread"] is False
        assert saved["archived"] is False
        assert saved["meta"] == {"syncProvider": "fake", "syncableId": "c1"}

    async def test_occurrence_upsert_keeps_parent_flags(
        self, host: LocalHost, fake_source: FakeSource
    ) -> None:
        """Test that an occurrence-only upsert leaves the series' archived flag alone."""
        await host.integrations.save_link(
            NewLinkWithNotes(source="fake:series", type="event", title="Standup", archived=True)
        )
        occurrence = ScheduleOccurrence(
            occurrence=datetime(2024, 2, 22, 15, tzinfo=UTC),
            start=datetime(2024, 2, 22, 17, tzinfo=UTC),
            unread=False,
        )
        link = NewLinkWithNotes(source="fake:series", type="event", schedule_occurrences=[occurrence])

        await fake_source.save_link(link, "c1", initial_sync=True)

        saved = host.integrations.saves[-1]
        assert "unread" not in saved
        assert "archived" not in saved
        assert host.integrations.links["fake:series"]["archived"] is True
        assert len(host.integrations.links["fake:series"]["schedule_occurrences"]) == 1
