import logging
from typing import Dict, List, Optional, Tuple

from router_types import (
    ApprovalRequest,
    ApprovalResult,
    ContentItem,
    ProposedRouting,
    RoutingContext,
    RoutingDecision,
)
from stores import ApprovalStore, InstanceStore, QuotaService, RuleStore, UserStore

TRIGGER_MANUAL_FLAG = 'manual_flag'
TRIGGER_ROUTER_RULE = 'router_rule'
TRIGGER_QUOTA_EXCEEDED = 'quota_exceeded'


class ApprovalGate:
    """Decides whether routing for a user must wait for an administrator.

    Checks run in order and the first hit wins: the user's blanket flag, any
    matching rule flagged ``always_require_approval``, then the user's quota.
    Collaborator errors propagate; the routing engine owns the fail-open policy.
    """

    def __init__(self, user_store: UserStore, rule_store: RuleStore, quota_service: QuotaService, conditions):
        self.user_store = user_store
        self.rule_store = rule_store
        self.quota_service = quota_service
        self.conditions = conditions

    async def check_approval_requirements(self, item: ContentItem, context: RoutingContext,
                                          decisions: List[RoutingDecision]) -> ApprovalResult:
        if not context.user_id:
            return ApprovalResult(required=False)

        user = await self.user_store.get_user(context.user_id)
        if user and user.requires_approval:
            return ApprovalResult(
                required=True,
                reason=f"User {user.name} requires approval for all requests",
                trigger=TRIGGER_MANUAL_FLAG,
            )

        rule_bypasses_quota = False
        for rule in await self.rule_store.all_enabled_rules():
            try:
                matched = self.conditions.evaluate(rule.condition, item, context)
            except Exception as e:
                logging.error(f"Error evaluating approval conditions for rule '{rule.name}': {e}")
                continue
            if not matched:
                continue
            if rule.always_require_approval:
                return ApprovalResult(
                    required=True,
                    reason=rule.approval_reason or f"Content matched rule '{rule.name}' requiring approval",
                    trigger=TRIGGER_ROUTER_RULE,
                    data={'ruleId': rule.id},
                )
            if rule.bypass_user_quotas:
                rule_bypasses_quota = True

        status = await self.quota_service.status(context.user_id, context.content_type)
        if status and status.exceeded:
            bypass = rule_bypasses_quota or await self.quota_service.user_bypasses_quotas(context.user_id)
            data = {
                'quotaType': status.quota_type,
                'quotaUsage': status.current_usage,
                'quotaLimit': status.quota_limit,
            }
            if bypass:
                data['autoApprove'] = True
            return ApprovalResult(
                required=True,
                reason=f"{status.quota_type.replace('_', ' ').title()} quota exceeded "
                       f"({status.current_usage}/{status.quota_limit})",
                trigger=TRIGGER_QUOTA_EXCEEDED,
                data=data,
            )

        return ApprovalResult(required=False)


class ApprovalService:
    """Persists approval requests and executes their stored routing once approved."""

    def __init__(self, store: ApprovalStore, instance_store: InstanceStore, dispatchers: Dict[str, object],
                 quota_service: QuotaService):
        self.store = store
        self.instance_store = instance_store
        self.dispatchers = dispatchers
        self.quota_service = quota_service

    async def create_approval_request(self, user_id: int, item: ContentItem, content_key: str,
                                      proposed: Optional[ProposedRouting], trigger: str,
                                      reason: Optional[str] = None, data: Optional[dict] = None,
                                      status: str = 'pending') -> ApprovalRequest:
        request = ApprovalRequest(
            id=0,
            user_id=user_id,
            content_key=content_key or item.guids[0],
            content_type=item.type,
            content_title=item.title,
            content_guids=list(item.guids),
            status=status,
            proposed_routing=proposed,
            triggered_by=trigger,
            reason=reason,
            data=dict(data or {}),
        )
        created = await self.store.create(request)
        logging.info(f"Approval request {created.id} ({created.status}) for user {user_id}: "
                     f"{item.title} [{trigger}]")
        return created

    async def list_requests(self, status: Optional[str] = None) -> List[ApprovalRequest]:
        return await self.store.list_requests(status)

    async def approve(self, request_id: int, approver_id: Optional[int] = None,
                      notes: Optional[str] = None) -> Tuple[Optional[ApprovalRequest], Optional[str]]:
        """Approve and process a request. Returns the request and any processing error."""
        request = await self.store.approve(request_id, approver_id, notes)
        if request is None:
            return None, f"Request {request_id} not found"
        ok, error = await self.process_approved_request(request)
        if not ok:
            logging.warning(f"Approved request {request_id} but failed to process: {error}")
        return request, error

    async def reject(self, request_id: int, approver_id: Optional[int] = None,
                     notes: Optional[str] = None) -> Optional[ApprovalRequest]:
        request = await self.store.reject(request_id, approver_id, notes)
        if request:
            logging.info(f"Rejected approval request {request_id}: {request.content_title}")
        return request

    async def route_proposed(self, item: ContentItem, key: str, user_id: Optional[int],
                             proposed: ProposedRouting, syncing: bool = False) -> List[int]:
        """Dispatch a stored routing: the primary with its stored settings, synced
        instances with their own stored settings. Returns the instance ids reached."""
        dispatcher = self.dispatchers[item.type]
        routed: List[int] = []
        await dispatcher.dispatch(item, key, user_id, proposed.instance_id, syncing,
                                  **proposed.to_decision().settings(item.type))
        routed.append(proposed.instance_id)

        if proposed.synced_instances:
            instances = {i.id: i for i in await self.instance_store.all_instances(item.type)}
            for synced_id in proposed.synced_instances:
                instance = instances.get(synced_id)
                if instance is None:
                    logging.warning(f"Synced instance {synced_id} from stored routing not found, skipping")
                    continue
                try:
                    await dispatcher.dispatch(item, key, user_id, synced_id, syncing,
                                              **instance.to_decision().settings(item.type))
                    routed.append(synced_id)
                except Exception as e:
                    logging.error(f"Failed to route \"{item.title}\" to synced instance {synced_id}: {e}")
        return routed

    async def process_approved_request(self, request: ApprovalRequest) -> Tuple[bool, Optional[str]]:
        if request.status != 'approved':
            return False, 'Request is not approved'
        if request.proposed_routing is None:
            return False, 'Invalid routing decision'
        item = ContentItem(title=request.content_title, type=request.content_type,
                           guids=list(request.content_guids) or [request.content_key])
        try:
            routed = await self.route_proposed(item, request.content_key, request.user_id,
                                               request.proposed_routing)
        except Exception as e:
            logging.error(f"Failed to process approved request {request.id}: {e}")
            return False, str(e)
        if request.user_id and request.user_id > 0:
            await self.quota_service.record_usage(request.user_id, request.content_type)
        logging.info(f"Routed approved request {request.id} for user {request.user_id}: "
                     f"{request.content_title} to {request.proposed_routing.instance_type} "
                     f"instance(s) {routed}")
        return True, None
