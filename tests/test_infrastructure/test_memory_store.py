"""Tests for the in-memory Ledger Store and its conditional-write contract."""

from __future__ import annotations

import asyncio

import pytest

from session_clearinghouse.infrastructure.ledger import InMemoryLedgerStore


class TestGet:
    @pytest.mark.asyncio
    async def test_missing_key_returns_none(self) -> None:
        store = InMemoryLedgerStore()
        assert await store.get("service/nope") is None

    @pytest.mark.asyncio
    async def test_values_are_copies(self) -> None:
        store = InMemoryLedgerStore()
        await store.put_if_status("service/1", None, {"status": "AVAILABLE", "tags": []})

        value = await store.get("service/1")
        value["tags"].append("mutated")

        assert await store.get("service/1") == {"status": "AVAILABLE", "tags": []}


class TestPutIfStatus:
    @pytest.mark.asyncio
    async def test_create_requires_absent_key(self) -> None:
        store = InMemoryLedgerStore()

        ok, current = await store.put_if_status("k", None, {"status": "A"})
        assert ok is True
        assert current == {"status": "A"}

        ok, current = await store.put_if_status("k", None, {"status": "B"})
        assert ok is False
        assert current == {"status": "A"}

    @pytest.mark.asyncio
    async def test_replace_requires_matching_status(self) -> None:
        store = InMemoryLedgerStore()
        await store.put_if_status("k", None, {"status": "PENDING"})

        ok, current = await store.put_if_status("k", "RELEASED", {"status": "REFUNDED"})
        assert ok is False
        assert current == {"status": "PENDING"}

        ok, current = await store.put_if_status("k", "PENDING", {"status": "RELEASED"})
        assert ok is True
        assert await store.get("k") == {"status": "RELEASED"}

    @pytest.mark.asyncio
    async def test_replace_of_missing_key_fails(self) -> None:
        store = InMemoryLedgerStore()
        ok, current = await store.put_if_status("k", "PENDING", {"status": "RELEASED"})
        assert ok is False
        assert current is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("store", ["memory", "yielding"], indirect=True)
    async def test_concurrent_writers_exactly_one_wins(self, store: InMemoryLedgerStore) -> None:
        await store.put_if_status("service/1", None, {"status": "AVAILABLE"})

        results = await asyncio.gather(
            *(
                store.put_if_status("service/1", "AVAILABLE", {"status": "BOOKED", "by": i})
                for i in range(10)
            )
        )

        assert sum(1 for ok, _ in results if ok) == 1


class TestVersionedWrites:
    @pytest.mark.asyncio
    async def test_matching_version_writes(self) -> None:
        store = InMemoryLedgerStore()
        await store.put_if_status("k", None, {"status": "PENDING", "version": 0})

        ok, current = await store.put_if_status(
            "k", "PENDING", {"status": "PENDING", "version": 1}, expected_version=0
        )

        assert ok is True
        assert current["version"] == 1

    @pytest.mark.asyncio
    async def test_stale_version_rejected_even_with_same_status(self) -> None:
        store = InMemoryLedgerStore()
        await store.put_if_status("k", None, {"status": "PENDING", "version": 3, "a": 1})

        ok, current = await store.put_if_status(
            "k", "PENDING", {"status": "PENDING", "version": 3, "b": 1}, expected_version=2
        )

        assert ok is False
        assert current == {"status": "PENDING", "version": 3, "a": 1}

    @pytest.mark.asyncio
    async def test_missing_version_counts_as_zero(self) -> None:
        store = InMemoryLedgerStore()
        await store.put_if_status("k", None, {"status": "PENDING"})

        ok, _ = await store.put_if_status(
            "k", "PENDING", {"status": "PENDING", "version": 1}, expected_version=0
        )

        assert ok is True

    @pytest.mark.asyncio
    async def test_interleaved_same_status_writers_one_wins(
        self, yielding_store: InMemoryLedgerStore
    ) -> None:
        await yielding_store.put_if_status("booking/1", None, {"status": "CONFIRMED", "version": 0})

        results = await asyncio.gather(
            *(
                yielding_store.put_if_status(
                    "booking/1",
                    "CONFIRMED",
                    {"status": "CONFIRMED", "version": 1, "session_ref": f"m-{i}"},
                    expected_version=0,
                )
                for i in range(5)
            )
        )

        assert sum(1 for ok, _ in results if ok) == 1


class TestListByPrefix:
    @pytest.mark.asyncio
    async def test_sorted_and_scoped(self) -> None:
        store = InMemoryLedgerStore()
        for key in ("booking/b", "service/2", "booking/a", "service/1"):
            await store.put_if_status(key, None, {"status": "X", "key": key})

        rows = await store.list_by_prefix("booking/")

        assert [k for k, _ in rows] == ["booking/a", "booking/b"]
        assert rows[0][1]["key"] == "booking/a"
