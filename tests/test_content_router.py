import os
import sys
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from approval import ApprovalGate, ApprovalService
from conditions import ConditionTreeEvaluator
from content_router import ContentRouter, DefaultRouter, is_anime
from evaluators import BUILTIN_EVALUATORS, EvaluatorRegistry, EvaluatorServices, FieldEvaluator
from router_types import ApprovalRequest, ContentItem, ProposedRouting, RoutingContext
from stores import MemoryApprovalStore, MemoryInstanceStore, MemoryQuotaService, MemoryRuleStore, MemoryUserStore

RADARR = [
    {"id": 7, "name": "Main", "base_url": "http://radarr", "is_default": True, "root_folder": "/movies",
     "quality_profile": "HD-1080p"},
    {"id": 3, "name": "Horror", "base_url": "http://radarr-horror", "root_folder": "/horror-default"},
    {"id": 8, "name": "Backup", "base_url": "http://radarr-backup", "root_folder": "/backup"},
    {"id": 9, "name": "Other", "base_url": "http://radarr-other", "root_folder": "/other"},
]
SONARR = [
    {"id": 1, "name": "TV", "base_url": "http://sonarr", "is_default": True, "root_folder": "/tv"},
    {"id": 2, "name": "Anime", "base_url": "http://sonarr-anime", "root_folder": "/anime"},
]
HORROR_RULE = {
    "id": 1, "name": "Horror", "target_type": "radarr", "target_instance_id": 3, "order": 80,
    "root_folder": "/horror",
    "condition": {"field": "genres", "operator": "contains", "value": "horror"},
}
US_RULE = {
    "id": 2, "name": "US releases", "target_type": "radarr", "target_instance_id": 3, "order": 50,
    "root_folder": "/us",
    "condition": {"field": "region", "operator": "equals", "value": "US"},
}
ANIME_RULE = {
    "id": 3, "name": "Anime", "target_type": "sonarr", "target_instance_id": 2, "order": 90,
    "series_type": "anime",
    "condition": {"field": "genres", "operator": "contains", "value": "anime"},
}


class RegionEvaluator(FieldEvaluator):
    name = "Region Router"
    description = "Routes content based on release region"
    priority = 40
    supported_fields = [{"name": "region", "description": "Release region code"}]
    supported_operators = {"region": ["equals"]}

    def field_value(self, field, item, context):
        return (item.metadata or {}).get("region")


class ExplodingEvaluator:
    name = "Exploding Router"
    description = "Always fails"
    priority = 90
    content_type = "both"

    def __init__(self, services):
        pass

    async def can_evaluate(self, item, context):
        return True

    async def evaluate(self, item, context):
        raise RuntimeError("evaluator bug")


def build(rules=None, radarr=RADARR, sonarr=SONARR, users=None, quotas=None, metadata_lookup=None,
          extra_factories=(), fail_open=True):
    instance_store = MemoryInstanceStore(radarr, sonarr)
    rule_store = MemoryRuleStore(rules or [])
    quota_service = MemoryQuotaService(quotas or [])
    services = EvaluatorServices(rule_store=rule_store)
    registry = EvaluatorRegistry.load(list(BUILTIN_EVALUATORS) + list(extra_factories), services)
    conditions = ConditionTreeEvaluator(registry)
    services.conditions = conditions
    dispatchers = {"movie": MagicMock(dispatch=AsyncMock()), "show": MagicMock(dispatch=AsyncMock())}
    approvals = ApprovalService(MemoryApprovalStore(), instance_store, dispatchers, quota_service)
    router = ContentRouter(
        registry=registry,
        conditions=conditions,
        rule_store=rule_store,
        instance_store=instance_store,
        approval_gate=ApprovalGate(MemoryUserStore(users or [{"id": 1, "name": "alice"}]),
                                   rule_store, quota_service, conditions),
        approval_service=approvals,
        quota_service=quota_service,
        dispatchers=dispatchers,
        metadata_lookup=metadata_lookup,
        fail_open=fail_open,
    )
    return router


def dispatched(router, content_type="movie"):
    return [c.args[3] for c in router.dispatchers[content_type].dispatch.await_args_list]


class TestRouteContent(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.movie = ContentItem(title="Halloween", type="movie", guids=["tmdb://948"], genres=["Horror"],
                                 metadata={"region": "US"})
        self.comedy = ContentItem(title="Airplane!", type="movie", guids=["tmdb://813"], genres=["Comedy"])

    # End-to-end scenarios

    async def test_no_rules_routes_to_default_instance(self):
        router = build()
        routed = await router.route_content(self.movie, "plex-948", user_id=1)
        self.assertEqual(routed, [7])
        self.assertEqual(dispatched(router), [7])
        call = router.dispatchers["movie"].dispatch.await_args
        self.assertEqual(call.kwargs["root_folder"], "/movies")
        self.assertEqual(call.kwargs["quality_profile"], "HD-1080p")

    async def test_duplicate_instance_decisions_apply_highest_priority_once(self):
        router = build(rules=[HORROR_RULE, US_RULE], extra_factories=[RegionEvaluator])
        routed = await router.route_content(self.movie, "plex-948", user_id=1)
        self.assertEqual(routed, [3])
        self.assertEqual(dispatched(router), [3])
        self.assertEqual(router.dispatchers["movie"].dispatch.await_args.kwargs["root_folder"], "/horror")

    async def test_rule_requiring_approval_holds_content(self):
        router = build(rules=[dict(HORROR_RULE, always_require_approval=True)])
        routed = await router.route_content(self.movie, "plex-948", user_id=1)
        self.assertEqual(routed, [])
        router.dispatchers["movie"].dispatch.assert_not_awaited()
        requests_ = await router.approval_service.list_requests()
        self.assertEqual(len(requests_), 1)
        self.assertEqual(requests_[0].status, "pending")
        self.assertEqual(requests_[0].triggered_by, "router_rule")
        self.assertEqual(requests_[0].proposed_routing.instance_id, 3)
        self.assertEqual(requests_[0].proposed_routing.instance_type, "radarr")

    async def test_sync_pass_without_rules_uses_sync_target(self):
        router = build()
        routed = await router.route_content(self.movie, "plex-948", user_id=1, syncing=True,
                                            sync_target_instance_id=5)
        self.assertEqual(routed, [5])
        self.assertEqual(dispatched(router), [5])
        self.assertTrue(router.dispatchers["movie"].dispatch.await_args.args[4])

    # Existing approval requests

    async def _seed(self, router, status, proposed=None):
        request = ApprovalRequest(id=0, user_id=1, content_key="plex-948", content_type="movie",
                                  content_title="Halloween", content_guids=["tmdb://948"], status=status,
                                  proposed_routing=proposed)
        return await router.approval_service.store.create(request)

    async def test_pending_request_blocks_routing_and_duplicates(self):
        router = build(rules=[HORROR_RULE])
        await self._seed(router, "pending")
        self.assertEqual(await router.route_content(self.movie, "plex-948", user_id=1), [])
        router.dispatchers["movie"].dispatch.assert_not_awaited()
        self.assertEqual(len(await router.approval_service.list_requests()), 1)

    async def test_approved_request_uses_stored_routing(self):
        router = build(rules=[HORROR_RULE])
        proposed = ProposedRouting(instance_id=9, instance_type="radarr", root_folder="/approved")
        await self._seed(router, "approved", proposed)
        routed = await router.route_content(self.movie, "plex-948", user_id=1)
        self.assertEqual(routed, [9])
        self.assertEqual(dispatched(router), [9])
        self.assertEqual(router.dispatchers["movie"].dispatch.await_args.kwargs["root_folder"], "/approved")

    async def test_rejected_request_is_respected(self):
        router = build()
        await self._seed(router, "rejected")
        self.assertEqual(await router.route_content(self.movie, "plex-948", user_id=1), [])
        router.dispatchers["movie"].dispatch.assert_not_awaited()

    async def test_expired_request_is_re_evaluated(self):
        router = build(rules=[HORROR_RULE])
        await self._seed(router, "expired")
        self.assertEqual(await router.route_content(self.movie, "plex-948", user_id=1), [3])

    async def test_auto_approved_record_stops_rerouting(self):
        router = build()
        self.assertEqual(await router.route_content(self.movie, "plex-948", user_id=1), [7])
        record = await router.approval_service.store.find_existing(1, "plex-948")
        self.assertEqual(record.status, "auto_approved")
        self.assertEqual(record.proposed_routing.instance_id, 7)
        self.assertEqual(await router.route_content(self.movie, "plex-948", user_id=1), [])

    # Fallback behaviour

    async def test_unmatched_rules_fall_back_like_no_rules(self):
        with_rules = build(rules=[HORROR_RULE])
        without_rules = build()
        self.assertEqual(await with_rules.route_content(self.comedy, "plex-813", user_id=1),
                         await without_rules.route_content(self.comedy, "plex-813", user_id=1))

        with_rules = build(rules=[HORROR_RULE])
        without_rules = build()
        kwargs = {"user_id": 1, "syncing": True, "sync_target_instance_id": 8}
        self.assertEqual(await with_rules.route_content(self.comedy, "plex-813", **kwargs), [8])
        self.assertEqual(await without_rules.route_content(self.comedy, "plex-813", **kwargs), [8])

    async def test_rules_override_sync_target(self):
        router = build(rules=[HORROR_RULE])
        with self.assertLogs(level="INFO") as logs:
            routed = await router.route_content(self.movie, "plex-948", syncing=True, sync_target_instance_id=8)
        self.assertEqual(routed, [3])
        self.assertTrue(any("overridden" in line for line in logs.output))

    async def test_no_default_instance_routes_nothing(self):
        router = build(radarr=[dict(RADARR[1])])
        with patch("logging.warning") as mock_warning:
            self.assertEqual(await router.route_content(self.movie, "plex-948"), [])
        mock_warning.assert_called()
        router.dispatchers["movie"].dispatch.assert_not_awaited()

    async def test_default_routing_includes_synced_instances(self):
        radarr = [dict(RADARR[0], synced_instances=[8, "bogus", 99, "9"])] + RADARR[1:]
        router = build(radarr=radarr)
        routed = await router.route_content(self.movie, "plex-948")
        self.assertEqual(routed, [7, 8, 9])
        roots = [c.kwargs["root_folder"] for c in router.dispatchers["movie"].dispatch.await_args_list]
        self.assertEqual(roots, ["/movies", "/backup", "/other"])

    # Forced routing

    async def test_forced_instance_bypasses_everything(self):
        router = build(rules=[dict(HORROR_RULE, always_require_approval=True)])
        self.assertEqual(await router.route_content(self.movie, "plex-948", user_id=1, forced_instance_id=9), [9])
        self.assertEqual(dispatched(router), [9])
        self.assertEqual(await router.approval_service.list_requests(), [])

    async def test_forced_instance_ignored_for_conflicting_sync_target(self):
        router = build()
        routed = await router.route_content(self.movie, "plex-948", syncing=True, sync_target_instance_id=8,
                                            forced_instance_id=9)
        self.assertEqual(routed, [8])

    async def test_forced_instance_ignored_for_any_sync_pass(self):
        router = build(rules=[HORROR_RULE])
        routed = await router.route_content(self.movie, "plex-948", syncing=True, sync_target_instance_id=9,
                                            forced_instance_id=9)
        self.assertEqual(routed, [3])
        self.assertEqual(dispatched(router), [3])

    async def test_forced_dispatch_failure_propagates(self):
        router = build()
        router.dispatchers["movie"].dispatch.side_effect = RuntimeError("unreachable")
        with self.assertRaises(RuntimeError):
            await router.route_content(self.movie, "plex-948", forced_instance_id=9)

    # Failure isolation

    async def test_failing_evaluator_is_skipped(self):
        router = build(rules=[HORROR_RULE], extra_factories=[ExplodingEvaluator])
        with patch("logging.error") as mock_error:
            self.assertEqual(await router.route_content(self.movie, "plex-948"), [3])
        mock_error.assert_called()

    async def test_dispatch_failure_does_not_stop_other_instances(self):
        radarr = [dict(RADARR[0], synced_instances=[8])] + RADARR[1:]
        router = build(radarr=radarr)

        async def flaky(item, key, user_id, instance_id, syncing, **settings):
            if instance_id == 7:
                raise RuntimeError("radarr offline")

        router.dispatchers["movie"].dispatch.side_effect = flaky
        self.assertEqual(await router.route_content(self.movie, "plex-948"), [8])

    async def test_rule_store_failure_treated_as_no_rules(self):
        router = build(rules=[HORROR_RULE])
        router.rule_store.has_any_rule = AsyncMock(side_effect=RuntimeError("db down"))
        self.assertEqual(await router.route_content(self.movie, "plex-948"), [7])

    async def test_approval_errors_fail_open(self):
        router = build(rules=[HORROR_RULE])
        router.approval_gate.check_approval_requirements = AsyncMock(side_effect=RuntimeError("db down"))
        self.assertEqual(await router.route_content(self.movie, "plex-948", user_id=1), [3])

    async def test_approval_errors_fail_closed_when_configured(self):
        router = build(rules=[HORROR_RULE], fail_open=False)
        router.approval_gate.check_approval_requirements = AsyncMock(side_effect=RuntimeError("db down"))
        self.assertEqual(await router.route_content(self.movie, "plex-948", user_id=1), [])
        router.dispatchers["movie"].dispatch.assert_not_awaited()

    # Quotas

    async def test_quota_exceeded_holds_content(self):
        router = build(rules=[HORROR_RULE], quotas=[{"user_id": 1, "quota_type": "daily", "quota_limit": 0}])
        self.assertEqual(await router.route_content(self.movie, "plex-948", user_id=1), [])
        request = await router.approval_service.store.find_existing(1, "plex-948")
        self.assertEqual(request.triggered_by, "quota_exceeded")
        self.assertEqual(request.status, "pending")

    async def test_quota_bypass_auto_approves_and_routes(self):
        router = build(rules=[HORROR_RULE],
                       quotas=[{"user_id": 1, "quota_type": "daily", "quota_limit": 0, "bypass_approval": True}])
        self.assertEqual(await router.route_content(self.movie, "plex-948", user_id=1), [3])
        request = await router.approval_service.store.find_existing(1, "plex-948")
        self.assertEqual(request.status, "approved")
        self.assertEqual(request.notes, "Auto-approved (bypass enabled)")

    async def test_usage_recorded_after_routing(self):
        router = build(quotas=[{"user_id": 1, "quota_type": "monthly", "quota_limit": 5}])
        await router.route_content(self.movie, "plex-948", user_id=1)
        self.assertEqual((await router.quota_service.status(1, "movie")).current_usage, 1)

    async def test_sync_pass_records_nothing(self):
        router = build(rules=[HORROR_RULE], quotas=[{"user_id": 1, "quota_type": "monthly", "quota_limit": 5}])
        await router.route_content(self.movie, "plex-948", user_id=1, syncing=True)
        self.assertEqual((await router.quota_service.status(1, "movie")).current_usage, 0)
        self.assertEqual(await router.approval_service.list_requests(), [])

    # Enrichment

    async def test_enrichment_adds_anime_genre(self):
        lookup = MagicMock()
        lookup.lookup = AsyncMock(return_value={"genres": ["Animation"], "originalLanguage": {"name": "Japanese"}})
        router = build(rules=[ANIME_RULE], metadata_lookup=lookup)
        show = ContentItem(title="Frieren", type="show", guids=["tvdb:424536"])
        self.assertEqual(await router.route_content(show, "plex-frieren"), [2])
        lookup.lookup.assert_awaited_once_with(424536, "show")
        self.assertEqual(router.dispatchers["show"].dispatch.await_args.kwargs["series_type"], "anime")
        self.assertEqual(router.dispatchers["show"].dispatch.await_args.args[0].genres, ["Animation", "anime"])

    async def test_enrichment_failure_uses_original_item(self):
        lookup = MagicMock()
        lookup.lookup = AsyncMock(side_effect=RuntimeError("timeout"))
        router = build(rules=[ANIME_RULE], metadata_lookup=lookup)
        show = ContentItem(title="Frieren", type="show", guids=["tvdb://424536"])
        self.assertEqual(await router.route_content(show, "plex-frieren"), [1])
        self.assertIs(router.dispatchers["show"].dispatch.await_args.args[0], show)

    async def test_enrichment_uses_lookup_genres_when_item_has_none(self):
        lookup = MagicMock()
        lookup.lookup = AsyncMock(return_value={"genres": ["Animation"], "originalLanguage": {"name": "Japanese"}})
        rule = dict(ANIME_RULE, condition={"field": "genres", "operator": "contains", "value": "Animation"})
        router = build(rules=[rule], metadata_lookup=lookup)
        show = ContentItem(title="Frieren", type="show", guids=["tvdb://424536"])
        self.assertEqual(await router.route_content(show, "plex-frieren"), [2])

    async def test_enrichment_skipped_when_rules_need_no_lookup(self):
        lookup = MagicMock()
        lookup.lookup = AsyncMock(return_value={"year": 1978})
        lookup.watch_providers = AsyncMock(return_value=None)
        user_rule = dict(HORROR_RULE, id=4, name="Alice",
                         condition={"field": "user", "operator": "equals", "value": "alice"})
        router = build(rules=[HORROR_RULE, user_rule], metadata_lookup=lookup)
        self.assertEqual(await router.route_content(self.movie, "plex-948", user_name="alice"), [3])
        lookup.lookup.assert_not_awaited()
        lookup.watch_providers.assert_not_awaited()

    async def test_enrichment_only_considers_rules_for_the_content_type(self):
        lookup = MagicMock()
        lookup.lookup = AsyncMock(return_value={"year": 1978})
        router = build(rules=[HORROR_RULE, ANIME_RULE], metadata_lookup=lookup)
        self.assertEqual(await router.route_content(self.movie, "plex-948"), [3])
        lookup.lookup.assert_not_awaited()

    async def test_enrichment_fetches_everything_when_rules_cannot_be_read(self):
        lookup = MagicMock()
        lookup.lookup = AsyncMock(return_value={"year": 1978})
        lookup.watch_providers = AsyncMock(return_value={"flatrate": []})
        router = build(rules=[HORROR_RULE], metadata_lookup=lookup)
        router.rule_store.all_enabled_rules = AsyncMock(side_effect=RuntimeError("db down"))
        context = RoutingContext(content_type="movie", item_key="plex-948")
        with patch("logging.error"):
            enriched = await router._enrich(self.movie, context, {})
        self.assertEqual(enriched.metadata, {"region": "US", "year": 1978, "watchProviders": {"flatrate": []}})
        lookup.lookup.assert_awaited_once_with(948, "movie")
        lookup.watch_providers.assert_awaited_once_with(948, "movie")

    async def test_enrichment_merges_watch_providers(self):
        lookup = MagicMock()
        lookup.lookup = AsyncMock()
        lookup.watch_providers = AsyncMock(return_value={"flatrate": [{"provider_id": 8, "provider_name": "Netflix"}]})
        rule = dict(HORROR_RULE, condition={"field": "streamingServices", "operator": "in", "value": [8]})
        router = build(rules=[rule], metadata_lookup=lookup)
        self.assertEqual(await router.route_content(self.movie, "plex-948"), [3])
        lookup.lookup.assert_not_awaited()
        lookup.watch_providers.assert_awaited_once_with(948, "movie")
        routed_item = router.dispatchers["movie"].dispatch.await_args.args[0]
        self.assertEqual(routed_item.metadata["region"], "US")
        self.assertIn("flatrate", routed_item.metadata["watchProviders"])

    async def test_show_watch_providers_use_tmdb_id_from_lookup(self):
        lookup = MagicMock()
        lookup.lookup = AsyncMock(return_value={"tvdbId": 424536, "tmdbId": 209867})
        crunchyroll = {"flatrate": [{"provider_id": 283, "provider_name": "Crunchyroll"}]}
        lookup.watch_providers = AsyncMock(return_value=crunchyroll)
        rule = dict(ANIME_RULE, condition={"field": "streamingServices", "operator": "in", "value": ["Crunchyroll"]})
        router = build(rules=[rule], metadata_lookup=lookup)
        show = ContentItem(title="Frieren", type="show", guids=["tvdb://424536"], genres=["Drama"])
        self.assertEqual(await router.route_content(show, "plex-frieren"), [2])
        lookup.watch_providers.assert_awaited_once_with(209867, "show")

    async def test_not_in_streaming_rule_ignores_items_without_provider_data(self):
        rule = dict(HORROR_RULE, condition={"field": "streamingServices", "operator": "notIn", "value": [8]})
        router = build(rules=[rule])
        self.assertEqual(await router.route_content(self.comedy, "plex-813"), [7])

    def test_evaluator_listing(self):
        router = build()
        loaded = router.get_loaded_evaluators()
        self.assertEqual(loaded[0]["name"], "Conditional Router")
        self.assertEqual(loaded[0]["priority"], 100)
        self.assertIn("supportedFields", router.get_evaluators_metadata()[0])


class TestDefaultRouter(unittest.IsolatedAsyncioTestCase):
    async def test_invalid_synced_ids_are_skipped(self):
        radarr = [dict(RADARR[0], synced_instances=[0, -2, "x", 7, 8])] + RADARR[1:]
        router = DefaultRouter(MemoryInstanceStore(radarr, []))
        with patch("logging.warning") as mock_warning:
            decisions = await router.default_decisions("movie")
        self.assertEqual([d.instance_id for d in decisions], [7, 8])
        self.assertEqual(mock_warning.call_count, 3)


class TestAnimeGate(unittest.TestCase):
    def test_keyword(self):
        self.assertTrue(is_anime([], {"keywords": ["Anime"]}))

    def test_animation_with_cjk_language(self):
        self.assertTrue(is_anime(["Animation"], {"originalLanguage": {"name": "Korean"}}))
        self.assertFalse(is_anime(["Animation"], {"originalLanguage": {"name": "English"}}))

    def test_curated_studio_or_network(self):
        self.assertTrue(is_anime([], {"studio": "MAPPA"}))
        self.assertTrue(is_anime([], {"network": "TV Tokyo"}))
        self.assertFalse(is_anime(["Drama"], {"network": "HBO"}))


if __name__ == "__main__":
    unittest.main()
