import asyncio
import unittest

from _fakes import ONE_ETHER, FakeRegistry, ManualClock, make_tokens
from directory import DatEntry, DirectoryCache, filter_entries, sort_entries
from errors import UpstreamUnavailable
from registry import Registry


class DirectoryCacheTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.clock = ManualClock()
        self.official = FakeRegistry(Registry.OFFICIAL, make_tokens(3))
        self.community = FakeRegistry(Registry.COMMUNITY, make_tokens(2, owner="0xC0FFEE"))
        self.cache = DirectoryCache([self.official, self.community], ttl_seconds=60, clock=self.clock)

    def _total_calls(self) -> int:
        return self.official.total_calls + self.community.total_calls

    async def test_first_call_enumerates_both_registries(self) -> None:
        entries, source = await self.cache.list_all()
        self.assertEqual(source, "fresh")
        self.assertEqual(
            [(e.type, e.id) for e in entries],
            [("official", 1), ("official", 2), ("official", 3), ("user", 1), ("user", 2)],
        )
        self.assertEqual(entries[3].owner, "0xC0FFEE")

    async def test_price_is_converted_to_native_unit(self) -> None:
        self.official.tokens[1]["price_wei"] = 3 * ONE_ETHER // 2
        entries, _ = await self.cache.list_all()
        self.assertEqual(entries[0].price, 1.5)

    async def test_second_call_within_ttl_is_a_cache_hit(self) -> None:
        first, _ = await self.cache.list_all()
        calls = self._total_calls()
        self.clock.advance(10)
        second, source = await self.cache.list_all(force_refresh=False)
        self.assertEqual(source, "cache")
        self.assertEqual(second, first)
        self.assertEqual(self._total_calls(), calls)

    async def test_force_refresh_always_enumerates(self) -> None:
        await self.cache.list_all()
        for _ in range(2):
            _, source = await self.cache.list_all(force_refresh=True)
            self.assertEqual(source, "fresh")
        self.assertEqual(self.official.calls["total_supply"], 3)

    async def test_ttl_expiry_triggers_reenumeration(self) -> None:
        self.official.tokens = make_tokens(5)
        self.community.tokens = {}
        entries, source = await self.cache.list_all()
        self.assertEqual((len(entries), source), (5, "fresh"))

        self.clock.advance(30)
        cached, source = await self.cache.list_all()
        self.assertEqual(source, "cache")
        self.assertEqual(cached, entries)

        self.clock.advance(40)
        _, source = await self.cache.list_all()
        self.assertEqual(source, "fresh")
        self.assertEqual(self.official.calls["total_supply"], 2)

    async def test_failed_token_is_dropped(self) -> None:
        self.community.tokens = {}
        self.official.fail_metadata = {2}
        entries, source = await self.cache.list_all()
        self.assertEqual(source, "fresh")
        self.assertEqual([e.id for e in entries], [1, 3])

    async def test_one_failure_out_of_many_keeps_the_rest(self) -> None:
        self.official.tokens = make_tokens(10)
        self.official.fail_owner = {7}
        entries, _ = await self.cache.list_all()
        official_ids = [e.id for e in entries if e.type == "official"]
        self.assertEqual(len(official_ids), 9)
        self.assertNotIn(7, official_ids)

    async def test_supply_larger_than_existing_tokens_drops_missing_ids(self) -> None:
        self.official.supply = 4
        entries, _ = await self.cache.list_all()
        self.assertEqual([e.id for e in entries if e.type == "official"], [1, 2, 3])

    async def test_supply_failure_fails_refresh_and_keeps_stale_snapshot(self) -> None:
        original, _ = await self.cache.list_all()
        self.clock.advance(70)
        self.community.fail_supply = True
        with self.assertRaises(UpstreamUnavailable):
            await self.cache.list_all()
        self.assertEqual(self.cache.size, len(original))
        self.assertEqual(self.cache.age_seconds(), 70)

        self.community.fail_supply = False
        _, source = await self.cache.list_all()
        self.assertEqual(source, "fresh")

    async def test_empty_directory_is_not_served_from_cache(self) -> None:
        self.official.tokens = {}
        self.community.tokens = {}
        entries, source = await self.cache.list_all()
        self.assertEqual((entries, source), ([], "fresh"))
        _, source = await self.cache.list_all()
        self.assertEqual(source, "fresh")

    async def test_concurrent_refreshes_share_one_enumeration(self) -> None:
        self.official.delay = 0.01
        self.community.delay = 0.01
        results = await asyncio.gather(
            self.cache.list_all(force_refresh=True),
            self.cache.list_all(force_refresh=True),
            self.cache.list_all(),
        )
        self.assertEqual({source for _, source in results}, {"fresh"})
        self.assertIs(results[0][0], results[1][0])
        self.assertIs(results[0][0], results[2][0])
        self.assertEqual(self.official.calls["total_supply"], 1)
        self.assertEqual(self.community.calls["total_supply"], 1)

    async def test_cancelled_caller_does_not_cancel_shared_refresh(self) -> None:
        self.official.delay = 0.05
        self.community.delay = 0.05
        first = asyncio.create_task(self.cache.list_all(force_refresh=True))
        second = asyncio.create_task(self.cache.list_all())
        await asyncio.sleep(0.01)
        first.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await first

        entries, source = await second
        self.assertEqual(source, "fresh")
        self.assertEqual(len(entries), 5)
        self.assertIsNone(self.cache._inflight)
        self.assertEqual(self.cache.size, 5)
        self.assertEqual(self.official.calls["total_supply"], 1)
        self.assertEqual(self.community.calls["total_supply"], 1)

    async def test_refresh_after_inflight_completes_starts_new_enumeration(self) -> None:
        await self.cache.list_all(force_refresh=True)
        await self.cache.list_all(force_refresh=True)
        self.assertEqual(self.official.calls["total_supply"], 2)

    async def test_enumerable_registry_uses_token_by_index(self) -> None:
        self.official = FakeRegistry(
            Registry.OFFICIAL, make_tokens(2, start=5) | make_tokens(1, start=12), index_ids=[5, 6, 12],
        )
        cache = DirectoryCache([self.official], clock=self.clock)
        entries, _ = await cache.list_all()
        self.assertEqual([e.id for e in entries], [5, 6, 12])
        self.assertEqual(self.official.calls["token_by_index"], 3)


def _entry(token_id: int, registry: str, name: str, price: float, owner: str = "0xaa") -> DatEntry:
    return DatEntry(id=token_id, type=registry, name=name, description=f"{name} rows", price=price, owner=owner)


class PresentationHelperTests(unittest.TestCase):
    def setUp(self) -> None:
        self.entries = [
            _entry(1, "official", "Weather", 0.5, owner="0xAA"),
            _entry(2, "official", "census", 2.0),
            _entry(1, "user", "Traffic", 1.0, owner="0xBB"),
        ]

    def test_filter_by_registry(self) -> None:
        result = filter_entries(self.entries, registry=Registry.COMMUNITY)
        self.assertEqual([e.name for e in result], ["Traffic"])

    def test_filter_by_owner_ignores_case(self) -> None:
        result = filter_entries(self.entries, owner="0xaa")
        self.assertEqual([e.name for e in result], ["Weather", "census"])

    def test_search_matches_name_or_description(self) -> None:
        self.assertEqual([e.name for e in filter_entries(self.entries, query="TRAF")], ["Traffic"])
        self.assertEqual(len(filter_entries(self.entries, query="rows")), 3)

    def test_sorting(self) -> None:
        self.assertEqual([e.price for e in sort_entries(self.entries, "price-desc")], [2.0, 1.0, 0.5])
        self.assertEqual([e.name for e in sort_entries(self.entries, "name-asc")], ["census", "Traffic", "Weather"])
        self.assertEqual([e.id for e in sort_entries(self.entries, "date-desc")], [2, 1, 1])

    def test_helpers_do_not_mutate_input(self) -> None:
        before = list(self.entries)
        sort_entries(self.entries, "name-desc")
        filter_entries(self.entries, owner="0xbb")
        self.assertEqual(self.entries, before)


if __name__ == "__main__":
    unittest.main()
