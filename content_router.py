import logging
import uuid
from typing import Dict, List, Optional, Tuple

from conditions import condition_fields, condition_mentions, resolve_decisions
from evaluators import maybe_await
from router_types import (
    ContentItem,
    ProposedRouting,
    RoutingContext,
    RoutingDecision,
)
from stores import InstanceStore, QuotaService, RuleStore

ANIME_KEYWORDS = {"anime", "donghua", "manhwa", "webtoon"}
ANIME_LANGUAGES = {"ja", "zh", "ko", "japanese", "chinese", "mandarin", "cantonese", "korean"}
ANIME_STUDIOS = {
    "toei animation", "mappa", "aniplex", "tencent penguin pictures",
    "bilibili", "haoliners animation league", "studio ghibli",
    "production i.g", "kyoto animation", "bones", "sunrise", "a-1 pictures", "gainax"
}
ANIME_NETWORKS = {"tv tokyo", "fuji tv", "tbs", "nhk", "tv asahi", "nippon tv", "tooniverse"}
# Fields that never need the backend lookup payload
LOOKUP_FREE_FIELDS = {"user", "streamingServices"}


# =========================
# Anime gate (deterministic)
# =========================
def is_anime(genres: List[str], metadata: dict) -> bool:
    """
    Deterministic anime/donghua/webtoon gate over a backend lookup payload:
      1) keyword in {"anime","donghua","manhwa","webtoon"}
      2) genre "Animation" AND original language Japanese/Chinese/Korean
      3) studio or network in curated set
    """
    keywords = metadata.get('keywords') or []
    kw_l = {str(k).strip().lower() for k in keywords if k}
    if ANIME_KEYWORDS & kw_l:
        return True

    language = metadata.get('originalLanguage') or ''
    if isinstance(language, dict):
        language = language.get('name') or ''
    has_animation = any((g or "").lower() == "animation" for g in genres)
    if has_animation and str(language).lower() in ANIME_LANGUAGES:
        return True

    if (metadata.get('studio') or "").lower() in ANIME_STUDIOS:
        return True
    if (metadata.get('network') or "").lower() in ANIME_NETWORKS:
        return True
    return False


def _parse_instance_id(raw) -> Optional[int]:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw if raw > 0 else None
    if isinstance(raw, str) and raw.strip().isdigit():
        value = int(raw.strip())
        return value if value > 0 else None
    return None


class DefaultRouter:
    """Fallback policy: the default instance plus the instances kept in sync with it."""

    def __init__(self, instance_store: InstanceStore):
        self.instance_store = instance_store

    async def default_decisions(self, content_type: str, log_extra: Optional[dict] = None) -> List[RoutingDecision]:
        default = await self.instance_store.default_instance(content_type)
        if default is None:
            logging.warning(f"No default {content_type} instance configured, nothing to route",
                            extra=log_extra)
            return []

        decisions = [default.to_decision()]
        if not default.synced_instances:
            return decisions

        instances = {i.id: i for i in await self.instance_store.all_instances(content_type)}
        for raw in default.synced_instances:
            synced_id = _parse_instance_id(raw)
            if synced_id is None:
                logging.warning(f"Invalid synced instance id {raw!r} on default instance {default.id}, skipping",
                                extra=log_extra)
                continue
            if synced_id == default.id or any(d.instance_id == synced_id for d in decisions):
                continue
            instance = instances.get(synced_id)
            if instance is None:
                logging.warning(f"Synced instance {synced_id} not found, skipping", extra=log_extra)
                continue
            decisions.append(instance.to_decision())
        return decisions


class ContentRouter:
    """Decides which backend instances receive a content item, then dispatches it."""

    def __init__(self, registry, conditions, rule_store: RuleStore, instance_store: InstanceStore, approval_gate,
                 approval_service, quota_service: QuotaService, dispatchers: Dict[str, object],
                 metadata_lookup=None, fail_open: bool = True, record_auto_approvals: bool = True):
        self.registry = registry
        self.conditions = conditions
        self.rule_store = rule_store
        self.instance_store = instance_store
        self.approval_gate = approval_gate
        self.approval_service = approval_service
        self.quota_service = quota_service
        self.dispatchers = dispatchers
        self.metadata_lookup = metadata_lookup
        self.default_router = DefaultRouter(instance_store)
        self.fail_open = fail_open
        self.record_auto_approvals = record_auto_approvals

    # -------------------------
    # Evaluator metadata
    # -------------------------
    def get_loaded_evaluators(self) -> List[dict]:
        return self.registry.summary()

    def get_evaluators_metadata(self) -> List[dict]:
        return self.registry.metadata()

    # -------------------------
    # Entry point
    # -------------------------
    async def route_content(self, item: ContentItem, key: str, user_id: Optional[int] = None,
                            user_name: Optional[str] = None, syncing: bool = False,
                            sync_target_instance_id: Optional[int] = None,
                            forced_instance_id: Optional[int] = None) -> List[int]:
        """Route ``item`` and return the ids of the instances it was dispatched to."""
        context = RoutingContext(
            content_type=item.type,
            item_key=key,
            user_id=user_id,
            user_name=user_name,
            syncing=syncing,
            sync_target_instance_id=sync_target_instance_id,
        )
        log = {'request_id': key, 'correlation_id': str(uuid.uuid4())}
        dispatcher = self.dispatchers[item.type]

        # A sync pass with a target always goes through normal routing
        sync_pass = syncing and sync_target_instance_id is not None
        if forced_instance_id is not None and not sync_pass:
            logging.info(f"Forced routing of \"{item.title}\" to instance {forced_instance_id}", extra=log)
            await dispatcher.dispatch(item, key, user_id, forced_instance_id, syncing)
            return [forced_instance_id]

        logging.info(f"Routing {item.type} \"{item.title}\"{' during sync' if syncing else ''}", extra=log)

        try:
            has_rules = await self.rule_store.has_any_rule()
        except Exception as e:
            logging.error(f"Error checking for routing rules: {e}", extra=log)
            has_rules = False

        if not has_rules:
            logging.info("No routing rules configured, using default routing", extra=log)
            return await self._fallback(item, context, log)

        enriched = await self._enrich(item, context, log)
        decisions = await self._collect_decisions(enriched, context, log)
        if not decisions:
            logging.info(f"No routing rules matched \"{item.title}\", using default routing", extra=log)
            return await self._fallback(enriched, context, log)

        decisions.sort(key=lambda d: d.priority, reverse=True)
        return await self._gate_and_apply(enriched, context, decisions, log)

    # -------------------------
    # Stages
    # -------------------------
    async def _fallback(self, item: ContentItem, context: RoutingContext, log: dict) -> List[int]:
        if context.syncing and context.sync_target_instance_id is not None:
            target = context.sync_target_instance_id
            logging.info(f"Sync pass: routing \"{item.title}\" to sync target instance {target}", extra=log)
            try:
                await self.dispatchers[item.type].dispatch(item, context.item_key, context.user_id, target, True)
            except Exception as e:
                logging.error(f"Error routing \"{item.title}\" to sync target instance {target}: {e}", extra=log)
                raise
            return [target]

        decisions = await self.default_router.default_decisions(item.type, log)
        if not decisions:
            return []
        return await self._gate_and_apply(item, context, decisions, log)

    async def _gate_and_apply(self, item: ContentItem, context: RoutingContext,
                              decisions: List[RoutingDecision], log: dict) -> List[int]:
        if context.user_id:
            existing = await self._existing_outcome(item, context, log)
            if existing is not None:
                return existing
            if await self._held_for_approval(item, context, decisions, log):
                return []
        return await self._apply(item, context, decisions, log)

    async def _existing_outcome(self, item: ContentItem, context: RoutingContext, log: dict) -> Optional[List[int]]:
        """None means keep going; a list is the final outcome for this item."""
        content_key = context.item_key or item.guids[0]
        who = context.user_name or context.user_id
        try:
            existing = await self.approval_service.store.find_existing(context.user_id, content_key)
        except Exception as e:
            logging.error(f"Error looking up approval requests for \"{item.title}\": {e}", extra=log)
            return None if self.fail_open else []

        if existing is None:
            return None
        if existing.status == 'pending':
            logging.info(f"Pending approval request already exists for \"{item.title}\" by user {who}", extra=log)
            return []
        if existing.status == 'approved':
            logging.info(f"Using previously approved routing for \"{item.title}\" by user {who}", extra=log)
            if existing.proposed_routing is None:
                logging.warning(f"Approved request {existing.id} has no stored routing", extra=log)
                return []
            try:
                return await self.approval_service.route_proposed(
                    item, context.item_key, context.user_id, existing.proposed_routing, context.syncing)
            except Exception as e:
                logging.error(f"Error routing \"{item.title}\" using approved request {existing.id}: {e}",
                              extra=log)
                return []
        if existing.status == 'rejected':
            logging.info(f"\"{item.title}\" was previously rejected for user {who}, skipping routing", extra=log)
            return []
        if existing.status == 'expired':
            logging.info(f"Previous approval request for \"{item.title}\" expired, re-evaluating", extra=log)
            return None
        logging.info(f"Existing request with status '{existing.status}' for \"{item.title}\", skipping routing",
                     extra=log)
        return []

    async def _held_for_approval(self, item: ContentItem, context: RoutingContext,
                                 decisions: List[RoutingDecision], log: dict) -> bool:
        try:
            result = await self.approval_gate.check_approval_requirements(item, context, decisions)
            if not result.required:
                return False

            logging.info(f"Approval required for \"{item.title}\" by user "
                         f"{context.user_name or context.user_id}: {result.reason}", extra=log)
            request = await self.approval_service.create_approval_request(
                context.user_id, item, context.item_key,
                ProposedRouting.from_decisions(decisions, item.type),
                result.trigger, result.reason, result.data,
            )
            if not result.auto_approve:
                return True

            logging.info(f"Auto-approving request {request.id} for user {context.user_id} due to bypass setting",
                         extra=log)
            await self.approval_service.store.approve(request.id, context.user_id, 'Auto-approved (bypass enabled)')
            return False
        except Exception as e:
            logging.error(f"Error checking approval requirements for \"{item.title}\": {e}", extra=log)
            if self.fail_open:
                return False
            logging.warning(f"Holding \"{item.title}\" because approval checks are fail-closed", extra=log)
            return True

    async def _enrichment_needs(self, item: ContentItem, context: RoutingContext, log: dict) -> Tuple[bool, bool]:
        """(metadata, watch providers) wanted by the enabled rules for this content type."""
        backend = 'radarr' if context.content_type == 'movie' else 'sonarr'
        try:
            rules = [r for r in await self.rule_store.all_enabled_rules() if r.target_type == backend]
        except Exception as e:
            logging.error(f"Error determining enrichment needs, fetching everything: {e}", extra=log)
            return True, True

        fields = set()
        for rule in rules:
            fields |= condition_fields(rule.condition)
        needs_providers = 'streamingServices' in fields
        fields -= LOOKUP_FREE_FIELDS
        if item.genres:
            fields.discard('genres')
        # Anime is detected from the lookup payload
        needs_metadata = bool(fields) or any(condition_mentions(r.condition, 'anime') for r in rules)
        logging.debug(f"Enrichment needs for \"{item.title}\": metadata={needs_metadata}, "
                      f"providers={needs_providers}", extra=log)
        return needs_metadata, needs_providers

    async def _lookup_metadata(self, item: ContentItem, context: RoutingContext, log: dict) -> dict:
        external_id = item.guid_id('tmdb' if context.content_type == 'movie' else 'tvdb')
        if external_id is None:
            logging.debug(f"Couldn't extract an id from \"{item.title}\", skipping metadata enrichment", extra=log)
            return {}
        try:
            return await self.metadata_lookup.lookup(external_id, context.content_type) or {}
        except Exception as e:
            logging.error(f"Error enriching metadata for \"{item.title}\": {e}", extra=log)
            return {}

    async def _lookup_providers(self, item: ContentItem, tmdb_id, context: RoutingContext, log: dict):
        if not isinstance(tmdb_id, int) or isinstance(tmdb_id, bool) or tmdb_id <= 0:
            logging.debug(f"No TMDB id for \"{item.title}\", skipping watch provider lookup", extra=log)
            return None
        try:
            return await self.metadata_lookup.watch_providers(tmdb_id, context.content_type)
        except Exception as e:
            logging.error(f"Error fetching watch providers for \"{item.title}\": {e}", extra=log)
            return None

    async def _enrich(self, item: ContentItem, context: RoutingContext, log: dict) -> ContentItem:
        if self.metadata_lookup is None:
            return item
        needs_metadata, needs_providers = await self._enrichment_needs(item, context, log)
        if not needs_metadata and not needs_providers:
            logging.debug(f"No enrichment needed for \"{item.title}\"", extra=log)
            return item

        tmdb_id = item.guid_id('tmdb')
        metadata = {}
        # Shows usually arrive without a TMDB guid; the lookup payload carries one
        if needs_metadata or (needs_providers and tmdb_id is None):
            metadata = dict(await self._lookup_metadata(item, context, log))
        if needs_providers:
            providers = await self._lookup_providers(item, tmdb_id or metadata.get('tmdbId'), context, log)
            if providers is not None:
                metadata['watchProviders'] = providers
        if not metadata:
            return item

        merged = dict(item.metadata or {})
        merged.update(metadata)
        genres = list(item.genres) or [str(g) for g in metadata.get('genres') or [] if g]
        if is_anime(genres, merged) and 'anime' not in {g.lower() for g in genres}:
            logging.debug(f"Adding anime genre to \"{item.title}\"", extra=log)
            genres.append('anime')
        return item.with_metadata(merged, genres)

    async def _collect_decisions(self, item: ContentItem, context: RoutingContext, log: dict) -> List[RoutingDecision]:
        backend = 'radarr' if context.content_type == 'movie' else 'sonarr'
        decisions: List[RoutingDecision] = []
        for evaluator in self.registry:
            if getattr(evaluator, 'content_type', 'both') not in ('both', backend):
                continue
            try:
                if not await maybe_await(evaluator.can_evaluate(item, context)):
                    continue
                produced = await maybe_await(evaluator.evaluate(item, context)) or []
            except Exception as e:
                logging.error(f"Error in evaluator {evaluator.name}: {e}", extra=log)
                continue
            if produced:
                logging.debug(f"Evaluator {evaluator.name} produced {len(produced)} decision(s)", extra=log)
            decisions.extend(produced)
        return decisions

    async def _apply(self, item: ContentItem, context: RoutingContext,
                     decisions: List[RoutingDecision], log: dict) -> List[int]:
        dispatcher = self.dispatchers[item.type]
        resolved = resolve_decisions(decisions)
        routed: List[int] = []
        for decision in resolved:
            try:
                await dispatcher.dispatch(item, context.item_key, context.user_id, decision.instance_id,
                                          context.syncing, **decision.settings(item.type))
                routed.append(decision.instance_id)
            except Exception as e:
                logging.error(f"Error routing \"{item.title}\" to instance {decision.instance_id}: {e}", extra=log)

        target = context.sync_target_instance_id
        if context.syncing and target is not None and target not in routed:
            logging.info(f"Sync target instance {target} was overridden by routing rules for \"{item.title}\"",
                         extra=log)

        if routed and not context.syncing:
            await self._after_routing(item, context, [d for d in resolved if d.instance_id in routed], log)
        logging.info(f"Routed \"{item.title}\" to instance(s) {routed}", extra=log)
        return routed

    async def _after_routing(self, item: ContentItem, context: RoutingContext,
                             applied: List[RoutingDecision], log: dict) -> None:
        if context.user_id and context.user_id > 0:
            try:
                await self.quota_service.record_usage(context.user_id, item.type)
            except Exception as e:
                logging.error(f"Error recording quota usage for user {context.user_id}: {e}", extra=log)

        if not self.record_auto_approvals:
            return
        user_id = context.user_id or 0
        content_key = context.item_key or item.guids[0]
        try:
            if await self.approval_service.store.find_existing(user_id, content_key):
                return
            await self.approval_service.create_approval_request(
                user_id, item, content_key,
                ProposedRouting.from_decisions(applied, item.type),
                'manual_flag', 'Auto-added (no approval required)',
                status='auto_approved',
            )
        except Exception as e:
            logging.error(f"Error creating auto-approval record for \"{item.title}\": {e}", extra=log)
