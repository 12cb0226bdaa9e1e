import asyncio

import pytest

from clusterdeck.services.session_table import SessionHandle, SessionTable, spawn_session


async def forever(handle: SessionHandle) -> None:
    await asyncio.Event().wait()


async def wait_until(predicate, timeout: float = 2.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
async def table():
    table = SessionTable()
    yield table
    await table.stop_all()


class TestReplace:
    async def test_inserts_new_handle(self, table: SessionTable):
        handle = await table.replace("k", spawn_session(table, "k", forever))
        assert table.get("k") is handle
        assert len(table) == 1

    async def test_previous_task_has_exited_before_factory_runs(self, table: SessionTable):
        first = await table.replace("k", spawn_session(table, "k", forever))
        seen_done: list[bool] = []
        inner = spawn_session(table, "k", forever)

        def factory() -> SessionHandle:
            seen_done.append(first.task.done())
            return inner()

        second = await table.replace("k", factory)

        assert seen_done == [True]
        assert first.task.cancelled()
        assert table.get("k") is second
        assert len(table) == 1

    async def test_previous_producer_stops_emitting(self, table: SessionTable):
        emitted: list[str] = []

        def producer(tag: str):
            async def run(handle: SessionHandle) -> None:
                while True:
                    emitted.append(tag)
                    await asyncio.sleep(0)

            return run

        await table.replace("k", spawn_session(table, "k", producer("old")))
        await wait_until(lambda: "old" in emitted)
        await table.replace("k", spawn_session(table, "k", producer("new")))
        await wait_until(lambda: "new" in emitted)

        first_new = emitted.index("new")
        assert "old" not in emitted[first_new:]

    async def test_concurrent_replaces_leave_one_live_session(self, table: SessionTable):
        await table.replace("k", spawn_session(table, "k", forever))

        handles = await asyncio.gather(
            *(table.replace("k", spawn_session(table, "k", forever)) for _ in range(5))
        )

        live = [h for h in handles if not h.done]
        assert len(live) == 1
        assert table.get("k") is live[0]
        assert len(table) == 1

    async def test_cancel_sets_stop_event(self, table: SessionTable):
        first = await table.replace("k", spawn_session(table, "k", forever))
        await table.replace("k", spawn_session(table, "k", forever))
        assert first.stop_event.is_set()

    async def test_independent_keys_do_not_interfere(self, table: SessionTable):
        a = await table.replace("a", spawn_session(table, "a", forever))
        b = await table.replace("b", spawn_session(table, "b", forever))
        assert not a.done and not b.done
        assert len(table) == 2


class TestSelfDeregistration:
    async def test_natural_completion_removes_entry(self, table: SessionTable):
        async def finish(handle: SessionHandle) -> None:
            return None

        handle = await table.replace("k", spawn_session(table, "k", finish))
        await handle.task

        assert "k" not in table

    async def test_failure_removes_entry(self, table: SessionTable):
        async def explode(handle: SessionHandle) -> None:
            raise RuntimeError("boom")

        handle = await table.replace("k", spawn_session(table, "k", explode))
        with pytest.raises(RuntimeError):
            await handle.task

        assert "k" not in table

    async def test_on_exit_runs_when_cancelled_before_first_step(self, table: SessionTable):
        released: list[bool] = []
        started: list[bool] = []

        async def run(handle: SessionHandle) -> None:
            started.append(True)
            await asyncio.Event().wait()

        await table.replace("k", spawn_session(table, "k", run, on_exit=lambda: released.append("k" in table)))
        assert await table.stop("k") is True

        assert started == []
        assert released == [False]

    async def test_on_exit_runs_before_deregistration(self, table: SessionTable):
        seen: list[bool] = []

        async def finish(handle: SessionHandle) -> None:
            return None

        handle = await table.replace("k", spawn_session(table, "k", finish, on_exit=lambda: seen.append("k" in table)))
        await handle.task

        assert seen == [True]
        assert "k" not in table

    async def test_finishing_session_does_not_evict_its_replacement(self, table: SessionTable):
        old = await table.replace("k", spawn_session(table, "k", forever))
        new = await table.replace("k", spawn_session(table, "k", forever))

        assert table.remove("k", expected=old) is None
        assert table.get("k") is new


class TestStop:
    async def test_stop_cancels_and_removes(self, table: SessionTable):
        handle = await table.replace("k", spawn_session(table, "k", forever))

        assert await table.stop("k") is True

        assert handle.task.cancelled()
        assert "k" not in table

    async def test_stop_unknown_key(self, table: SessionTable):
        assert await table.stop("nope") is False

    async def test_stop_where_filters_by_cluster(self, table: SessionTable):
        a = await table.replace("a", spawn_session(table, "a", forever, cluster_id="c1"))
        b = await table.replace("b", spawn_session(table, "b", forever, cluster_id="c2"))

        assert await table.stop_where(lambda h: h.cluster_id == "c1") == 1

        assert a.done and not b.done
        assert [h.key for h in table.snapshot()] == ["b"]

    async def test_stop_all(self, table: SessionTable):
        for key in ("a", "b", "c"):
            await table.replace(key, spawn_session(table, key, forever))

        assert await table.stop_all() == 3
        assert len(table) == 0
