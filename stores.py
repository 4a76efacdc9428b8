import logging
import threading
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from router_types import (
    ApprovalRequest,
    ConfigError,
    Instance,
    InvalidConditionError,
    Rule,
    User,
    UserQuotaStatus,
)

QUOTA_TYPES = ('daily', 'weekly_rolling', 'monthly')


# =========================
# Collaborator interfaces
# =========================
class RuleStore(Protocol):
    async def has_any_rule(self) -> bool: ...

    async def all_enabled_rules(self) -> List[Rule]: ...


class InstanceStore(Protocol):
    async def default_instance(self, content_type: str) -> Optional[Instance]: ...

    async def all_instances(self, content_type: str) -> List[Instance]: ...


class UserStore(Protocol):
    async def get_user(self, user_id: int) -> Optional[User]: ...


class ApprovalStore(Protocol):
    async def find_existing(self, user_id: int, content_key: str) -> Optional[ApprovalRequest]: ...

    async def create(self, request: ApprovalRequest) -> ApprovalRequest: ...

    async def approve(self, request_id: int, approver_id: Optional[int], notes: Optional[str]) -> Optional[ApprovalRequest]: ...

    async def reject(self, request_id: int, approver_id: Optional[int], notes: Optional[str]) -> Optional[ApprovalRequest]: ...


class QuotaService(Protocol):
    async def status(self, user_id: int, content_type: str) -> Optional[UserQuotaStatus]: ...

    async def user_bypasses_quotas(self, user_id: int) -> bool: ...

    async def record_usage(self, user_id: int, content_type: str) -> bool: ...


# =========================
# In-memory implementations
# =========================
def _load_rules(raw_rules: Iterable[dict]) -> List[Rule]:
    rules: List[Rule] = []
    for raw in raw_rules or []:
        try:
            rules.append(Rule.from_dict(raw))
        except InvalidConditionError as e:
            logging.warning(f"Skipping rule '{raw.get('name', raw.get('id'))}': invalid condition: {e}")
        except (ConfigError, KeyError, TypeError, ValueError) as e:
            logging.warning(f"Skipping rule '{raw.get('name', raw.get('id'))}': {e}")
    return rules


class MemoryRuleStore:
    def __init__(self, raw_rules: Optional[Iterable[dict]] = None, rules: Optional[List[Rule]] = None):
        self._rules = list(rules or []) + _load_rules(raw_rules or [])
        # Highest order first, matching evaluation order of the rule scan
        self._rules.sort(key=lambda r: r.order, reverse=True)

    async def has_any_rule(self) -> bool:
        return bool(self._rules)

    async def all_enabled_rules(self) -> List[Rule]:
        return [r for r in self._rules if r.enabled]


class MemoryInstanceStore:
    def __init__(self, radarr: Optional[Iterable[dict]] = None, sonarr: Optional[Iterable[dict]] = None):
        self._instances: Dict[str, List[Instance]] = {
            'movie': [Instance.from_dict(i) for i in radarr or []],
            'show': [Instance.from_dict(i) for i in sonarr or []],
        }

    async def default_instance(self, content_type: str) -> Optional[Instance]:
        for instance in self._instances.get(content_type, []):
            if instance.is_default:
                return instance
        return None

    async def all_instances(self, content_type: str) -> List[Instance]:
        return list(self._instances.get(content_type, []))

    def find(self, content_type: str, instance_id: int) -> Optional[Instance]:
        for instance in self._instances.get(content_type, []):
            if instance.id == instance_id:
                return instance
        return None


class MemoryUserStore:
    def __init__(self, raw_users: Optional[Iterable[dict]] = None):
        self._users = {u.id: u for u in (User.from_dict(raw) for raw in raw_users or [])}

    async def get_user(self, user_id: int) -> Optional[User]:
        return self._users.get(user_id)


class MemoryApprovalStore:
    """Approval requests keyed by (user id, content key).

    ``create`` refuses to duplicate a pending request for the same pair and
    hands back the existing one instead.
    """

    def __init__(self):
        self._requests: Dict[int, ApprovalRequest] = {}
        self._next_id = 1
        # Shared across waitress worker threads
        self._lock = threading.Lock()

    def _latest(self, user_id: int, content_key: str) -> Optional[ApprovalRequest]:
        matches = [r for r in self._requests.values()
                   if r.user_id == user_id and r.content_key == content_key]
        return max(matches, key=lambda r: r.id) if matches else None

    async def find_existing(self, user_id: int, content_key: str) -> Optional[ApprovalRequest]:
        with self._lock:
            return self._latest(user_id, content_key)

    async def create(self, request: ApprovalRequest) -> ApprovalRequest:
        with self._lock:
            existing = self._latest(request.user_id, request.content_key)
            if existing and existing.status == 'pending':
                logging.debug(f"Pending approval request {existing.id} already exists for "
                              f"user {request.user_id} and content {request.content_key}")
                return existing
            request.id = self._next_id
            self._next_id += 1
            self._requests[request.id] = request
            return request

    async def list_requests(self, status: Optional[str] = None) -> List[ApprovalRequest]:
        with self._lock:
            return [r for r in sorted(self._requests.values(), key=lambda r: r.id)
                    if status is None or r.status == status]

    async def _transition(self, request_id: int, status: str, approver_id: Optional[int],
                          notes: Optional[str]) -> Optional[ApprovalRequest]:
        with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                return None
            request.status = status
            request.approved_by = approver_id
            request.notes = notes
            return request

    async def approve(self, request_id: int, approver_id: Optional[int], notes: Optional[str]) -> Optional[ApprovalRequest]:
        return await self._transition(request_id, 'approved', approver_id, notes)

    async def reject(self, request_id: int, approver_id: Optional[int], notes: Optional[str]) -> Optional[ApprovalRequest]:
        return await self._transition(request_id, 'rejected', approver_id, notes)

    async def expire(self, request_id: int) -> Optional[ApprovalRequest]:
        return await self._transition(request_id, 'expired', None, 'Expired')


class MemoryQuotaService:
    """Per-user quotas over daily, rolling-week or calendar-month windows."""

    def __init__(self, raw_quotas: Optional[Iterable[dict]] = None, clock=datetime.now):
        self._clock = clock
        self._quotas: Dict[Tuple[int, Optional[str]], dict] = {}
        self._usage: List[Tuple[int, str, datetime]] = []
        self._lock = threading.Lock()
        for raw in raw_quotas or []:
            quota_type = raw.get('quota_type', 'monthly')
            if quota_type not in QUOTA_TYPES:
                raise ConfigError(f"Unknown quota_type '{quota_type}' for user {raw.get('user_id')}")
            key = (int(raw['user_id']), raw.get('content_type'))
            self._quotas[key] = {
                'quota_type': quota_type,
                'quota_limit': int(raw.get('quota_limit', 0)),
                'bypass_approval': bool(raw.get('bypass_approval', False)),
            }

    def _quota_for(self, user_id: int, content_type: Optional[str]) -> Optional[dict]:
        return self._quotas.get((user_id, content_type)) or self._quotas.get((user_id, None))

    def _window_start(self, quota_type: str) -> datetime:
        now = self._clock()
        if quota_type == 'daily':
            return now.replace(hour=0, minute=0, second=0, microsecond=0)
        if quota_type == 'weekly_rolling':
            return now - timedelta(days=7)
        return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

    async def status(self, user_id: int, content_type: str) -> Optional[UserQuotaStatus]:
        quota = self._quota_for(user_id, content_type)
        if quota is None:
            return None
        since = self._window_start(quota['quota_type'])
        scoped = (user_id, content_type) in self._quotas
        with self._lock:
            usage = sum(1 for uid, ctype, at in self._usage
                        if uid == user_id and at >= since and (not scoped or ctype == content_type))
        return UserQuotaStatus(
            # Predictive: adding this item would pass the limit
            exceeded=usage + 1 > quota['quota_limit'],
            quota_type=quota['quota_type'],
            current_usage=usage,
            quota_limit=quota['quota_limit'],
        )

    async def user_bypasses_quotas(self, user_id: int) -> bool:
        return any(q['bypass_approval'] for (uid, _), q in self._quotas.items() if uid == user_id)

    async def record_usage(self, user_id: int, content_type: str) -> bool:
        if self._quota_for(user_id, content_type) is None:
            return False
        with self._lock:
            self._usage.append((user_id, content_type, self._clock()))
        return True
