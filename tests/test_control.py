import types

import aiosqlite
import pytest

from send_scheduler.control import OperatorControl
from send_scheduler.errors import ConflictError, NotFoundError, StoreError, ValidationError
from send_scheduler.persistence import Persistence

NOW = 1_700_000_000
DAY = 86400


def quiet_logger():
    return types.SimpleNamespace(info=lambda *args, **kwargs: None)


async def make_control(tmp_path, persistence_cls=Persistence):
    persistence = persistence_cls(str(tmp_path / "control.db"))
    await persistence.init_db()
    await persistence.insert_items(
        [
            {"id": "p1", "recipient_ref": "r1", "instance_ref": "i1", "scheduled_ts": NOW + 100},
            {"id": "s1", "recipient_ref": "r1", "instance_ref": "i1", "scheduled_ts": NOW - 8 * DAY},
            {"id": "c1", "recipient_ref": "r1", "instance_ref": "i1", "scheduled_ts": NOW - 8 * DAY},
            {"id": "f1", "recipient_ref": "r1", "instance_ref": "i1", "scheduled_ts": NOW - 3 * DAY},
            {"id": "old-pending", "recipient_ref": "r1", "instance_ref": "i1", "scheduled_ts": NOW - 30 * DAY},
        ],
        now_ts=NOW - 40 * DAY,
    )
    await persistence.transition("s1", "pending", "sent", {"sent_ts": NOW - 8 * DAY})
    await persistence.transition("c1", "pending", "cancelled")
    await persistence.transition("f1", "pending", "failed", {"last_error": "gave up"})
    return OperatorControl(persistence, logger=quiet_logger()), persistence


class FlappingPersistence(Persistence):
    """Every conditional update loses its race."""

    async def transition(self, *args, **kwargs):
        return False


class RacingPersistence(Persistence):
    """A retry write lands right after the first read of an item."""

    raced = False

    async def get_item(self, item_id):
        item = await super().get_item(item_id)
        if item is not None and not self.raced:
            self.raced = True
            await self.transition(
                item_id, item["status"], "rescheduled", {"scheduled_ts": NOW + 60},
                increment_attempts=True, expected_version=item["version"],
            )
        return item


class ReadOnlyPersistence(Persistence):
    async def purge_items_older_than(self, threshold_ts, statuses):
        raise aiosqlite.OperationalError("attempt to write a readonly database")


@pytest.mark.asyncio
async def test_reschedule_moves_active_item(tmp_path):
    control, persistence = await make_control(tmp_path)

    result = await control.reschedule("p1", NOW + 3600, now_ts=NOW)

    assert result == {"ok": True, "changed": True, "message": "Item rescheduled", "scheduled_ts": NOW + 3600}
    item = await persistence.get_item("p1")
    assert item["status"] == "rescheduled"
    assert item["scheduled_ts"] == NOW + 3600
    assert item["attempts"] == 0


@pytest.mark.asyncio
async def test_reschedule_rejects_past_time(tmp_path):
    control, persistence = await make_control(tmp_path)

    with pytest.raises(ValidationError):
        await control.reschedule("p1", NOW - 1, now_ts=NOW)
    assert (await persistence.get_item("p1"))["status"] == "pending"

    result = await control.reschedule("p1", NOW, now_ts=NOW)
    assert result["scheduled_ts"] == NOW


@pytest.mark.asyncio
async def test_reschedule_requires_time_and_known_item(tmp_path):
    control, _ = await make_control(tmp_path)

    with pytest.raises(ValidationError, match="new_time"):
        await control.reschedule("p1", None, now_ts=NOW)
    with pytest.raises(ValidationError, match="item_id"):
        await control.reschedule("", NOW + 10, now_ts=NOW)
    with pytest.raises(NotFoundError):
        await control.reschedule("ghost", NOW + 10, now_ts=NOW)


@pytest.mark.asyncio
async def test_reschedule_terminal_item_conflicts(tmp_path):
    control, persistence = await make_control(tmp_path)

    with pytest.raises(ConflictError):
        await control.reschedule("s1", NOW + 10, now_ts=NOW)
    assert (await persistence.get_item("s1"))["status"] == "sent"


@pytest.mark.asyncio
async def test_reschedule_lost_race_conflicts(tmp_path):
    control, _ = await make_control(tmp_path, persistence_cls=FlappingPersistence)

    with pytest.raises(ConflictError, match="concurrently"):
        await control.reschedule("p1", NOW + 10, now_ts=NOW)


@pytest.mark.asyncio
async def test_reschedule_twice(tmp_path):
    control, persistence = await make_control(tmp_path)

    await control.reschedule("p1", NOW + 3600, now_ts=NOW)
    result = await control.reschedule("p1", NOW + 7200, now_ts=NOW)

    assert result["changed"] is True
    item = await persistence.get_item("p1")
    assert item["scheduled_ts"] == NOW + 7200
    assert item["version"] == 2


@pytest.mark.asyncio
async def test_reschedule_on_stale_read_conflicts(tmp_path):
    control, persistence = await make_control(tmp_path, persistence_cls=RacingPersistence)

    with pytest.raises(ConflictError, match="concurrently"):
        await control.reschedule("p1", NOW + 3600, now_ts=NOW)

    item = await persistence.get_item("p1")
    assert item["status"] == "rescheduled"
    assert item["scheduled_ts"] == NOW + 60
    assert item["attempts"] == 1


@pytest.mark.asyncio
async def test_cancel_retries_after_stale_read(tmp_path):
    control, persistence = await make_control(tmp_path, persistence_cls=RacingPersistence)

    result = await control.cancel("p1")

    assert result == {"ok": True, "changed": True, "message": "Item cancelled"}
    assert (await persistence.get_item("p1"))["status"] == "cancelled"


@pytest.mark.asyncio
async def test_cancel_active_item(tmp_path):
    control, persistence = await make_control(tmp_path)

    result = await control.cancel("p1")

    assert result == {"ok": True, "changed": True, "message": "Item cancelled"}
    assert (await persistence.get_item("p1"))["status"] == "cancelled"


@pytest.mark.asyncio
async def test_cancel_terminal_item_is_noop(tmp_path):
    control, persistence = await make_control(tmp_path)

    result = await control.cancel("s1")

    assert result["ok"] is True
    assert result["changed"] is False
    assert "sent" in result["message"]
    assert (await persistence.get_item("s1"))["status"] == "sent"

    again = await control.cancel("c1")
    assert again["changed"] is False


@pytest.mark.asyncio
async def test_cancel_unknown_item(tmp_path):
    control, _ = await make_control(tmp_path)
    with pytest.raises(NotFoundError):
        await control.cancel("ghost")


@pytest.mark.asyncio
async def test_cancel_losing_every_race_is_a_noop(tmp_path):
    control, persistence = await make_control(tmp_path, persistence_cls=FlappingPersistence)

    result = await control.cancel("p1")

    assert result["ok"] is True
    assert result["changed"] is False
    assert "not applied" in result["message"]
    assert (await persistence.get_item("p1"))["status"] == "pending"


@pytest.mark.asyncio
async def test_purge_removes_old_terminal_items_only(tmp_path):
    control, persistence = await make_control(tmp_path)

    result = await control.purge(7, now_ts=NOW)

    assert result == {"ok": True, "removed": 2, "message": "2 old item(s) removed"}
    remaining = {item["id"] for item in await persistence.list_items()}
    assert remaining == {"p1", "f1", "old-pending"}


@pytest.mark.asyncio
async def test_purge_cutoff_beyond_item_age_keeps_items(tmp_path):
    control, persistence = await make_control(tmp_path)

    result = await control.purge(9, now_ts=NOW)

    assert result["removed"] == 0
    assert len(await persistence.list_items()) == 5


@pytest.mark.asyncio
async def test_purge_with_selected_statuses(tmp_path):
    control, persistence = await make_control(tmp_path)

    result = await control.purge(1, statuses=["failed"], now_ts=NOW)

    assert result["removed"] == 1
    assert await persistence.get_item("f1") is None
    assert await persistence.get_item("s1") is not None


@pytest.mark.asyncio
@pytest.mark.parametrize("statuses", [["pending"], ["sent", "rescheduled"], ["bogus"], []])
async def test_purge_rejects_non_terminal_statuses(tmp_path, statuses):
    control, persistence = await make_control(tmp_path)

    with pytest.raises(ValidationError):
        await control.purge(0, statuses=statuses, now_ts=NOW)
    assert len(await persistence.list_items()) == 5


@pytest.mark.asyncio
@pytest.mark.parametrize("days", [-1, "abc", None])
async def test_purge_rejects_invalid_days(tmp_path, days):
    control, _ = await make_control(tmp_path)
    with pytest.raises(ValidationError):
        await control.purge(days, now_ts=NOW)


@pytest.mark.asyncio
async def test_purge_store_failure_is_reported(tmp_path):
    control, _ = await make_control(tmp_path, persistence_cls=ReadOnlyPersistence)
    with pytest.raises(StoreError) as excinfo:
        await control.purge(7, now_ts=NOW)
    assert excinfo.value.code == "store_unavailable"


@pytest.mark.asyncio
async def test_purge_logs(tmp_path):
    control, persistence = await make_control(tmp_path)
    await persistence.insert_cron_log({"cron_kind": "scheduled_dispatch", "status": "success", "occurred_ts": NOW - 31 * DAY})
    await persistence.insert_cron_log({"cron_kind": "scheduled_dispatch", "status": "success", "occurred_ts": NOW - DAY})

    result = await control.purge_logs(30, now_ts=NOW)

    assert result["removed"] == 1
    assert await persistence.count_cron_logs() == 1
