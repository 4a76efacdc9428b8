import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Union

CONTENT_TYPES = ('movie', 'show')
DEFAULT_PRIORITY = 50

GUID_PATTERN = re.compile(r'^(?P<source>[a-z]+):(?://)?(?P<id>[A-Za-z0-9]+)$')


class InvalidConditionError(ValueError):
    """Raised when a stored condition tree cannot be parsed."""


class ConfigError(ValueError):
    pass


# =========================
# Content and context
# =========================
@dataclass
class ContentItem:
    title: str
    type: str
    guids: List[str]
    genres: List[str] = field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        if self.type not in CONTENT_TYPES:
            raise ValueError(f"Unsupported content type '{self.type}'")
        if not self.guids:
            raise ValueError(f"Content item '{self.title}' has no GUIDs")

    @staticmethod
    def from_dict(data: dict) -> "ContentItem":
        guids = data.get('guids') or []
        if isinstance(guids, str):
            guids = [guids]
        return ContentItem(
            title=data.get('title', 'Unknown Title'),
            type=data.get('type', ''),
            guids=[str(g) for g in guids],
            genres=list(data.get('genres') or []),
            metadata=data.get('metadata'),
        )

    def with_metadata(self, metadata: Dict[str, Any], genres: Optional[List[str]] = None) -> "ContentItem":
        return replace(self, metadata=metadata, genres=list(genres if genres is not None else self.genres))

    def guid_id(self, source: str) -> Optional[int]:
        """Return the numeric id for a GUID source such as ``tmdb`` or ``tvdb``."""
        for guid in self.guids:
            match = GUID_PATTERN.match(guid.strip().lower())
            if match and match.group('source') == source:
                raw = match.group('id')
                if source == 'imdb':
                    raw = raw.lstrip('t')
                if raw.isdigit() and int(raw) > 0:
                    return int(raw)
        return None


@dataclass
class RoutingContext:
    content_type: str
    item_key: str
    user_id: Optional[int] = None
    user_name: Optional[str] = None
    syncing: bool = False
    sync_target_instance_id: Optional[int] = None


# =========================
# Condition tree
# =========================
@dataclass(frozen=True)
class Condition:
    field: str
    operator: str
    value: Any
    negate: bool = False


@dataclass(frozen=True)
class ConditionGroup:
    operator: str
    conditions: tuple = ()
    negate: bool = False


ConditionNode = Union[Condition, ConditionGroup]


def parse_condition(raw: Any) -> ConditionNode:
    """Validate a stored condition payload into a Condition or ConditionGroup.

    A group is anything carrying a ``conditions`` list; a leaf needs
    ``field``, ``operator`` and ``value``.
    """
    if isinstance(raw, (Condition, ConditionGroup)):
        return raw
    if not isinstance(raw, dict):
        raise InvalidConditionError(f"Condition must be a mapping, got {type(raw).__name__}")

    negate = raw.get('negate', False)
    if not isinstance(negate, bool):
        raise InvalidConditionError("'negate' must be a boolean")

    if 'conditions' in raw:
        operator = str(raw.get('operator', 'AND')).upper()
        if operator not in ('AND', 'OR'):
            raise InvalidConditionError(f"Unknown group operator '{raw.get('operator')}'")
        children = raw.get('conditions')
        if not isinstance(children, list):
            raise InvalidConditionError("'conditions' must be a list")
        return ConditionGroup(
            operator=operator,
            conditions=tuple(parse_condition(c) for c in children),
            negate=negate,
        )

    missing = [k for k in ('field', 'operator', 'value') if k not in raw]
    if missing:
        raise InvalidConditionError(f"Condition missing keys: {', '.join(missing)}")
    if not isinstance(raw['field'], str) or not isinstance(raw['operator'], str):
        raise InvalidConditionError("Condition 'field' and 'operator' must be strings")
    return Condition(field=raw['field'], operator=raw['operator'], value=raw['value'], negate=negate)


# =========================
# Decisions and persisted records
# =========================
@dataclass
class RoutingDecision:
    instance_id: int
    quality_profile: Optional[Union[int, str]] = None
    root_folder: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    priority: int = DEFAULT_PRIORITY
    search_on_add: Optional[bool] = None
    season_monitoring: Optional[str] = None
    series_type: Optional[str] = None
    minimum_availability: Optional[str] = None

    def settings(self, content_type: str) -> Dict[str, Any]:
        """Keyword arguments for the dispatch collaborator of ``content_type``."""
        settings = {
            'root_folder': self.root_folder or None,
            'quality_profile': self.quality_profile,
            'tags': list(self.tags or []),
            'search_on_add': self.search_on_add,
        }
        if content_type == 'movie':
            settings['minimum_availability'] = self.minimum_availability
        else:
            settings['season_monitoring'] = self.season_monitoring
            settings['series_type'] = self.series_type
        return settings


@dataclass
class ProposedRouting:
    instance_id: int
    instance_type: str
    quality_profile: Optional[Union[int, str]] = None
    root_folder: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    priority: int = DEFAULT_PRIORITY
    search_on_add: Optional[bool] = None
    season_monitoring: Optional[str] = None
    series_type: Optional[str] = None
    minimum_availability: Optional[str] = None
    synced_instances: List[int] = field(default_factory=list)

    @staticmethod
    def from_decisions(decisions: List[RoutingDecision], content_type: str) -> Optional["ProposedRouting"]:
        if not decisions:
            return None
        primary = decisions[0]
        return ProposedRouting(
            instance_id=primary.instance_id,
            instance_type='radarr' if content_type == 'movie' else 'sonarr',
            quality_profile=primary.quality_profile,
            root_folder=primary.root_folder,
            tags=list(primary.tags or []),
            priority=primary.priority,
            search_on_add=primary.search_on_add,
            season_monitoring=primary.season_monitoring,
            series_type=primary.series_type,
            minimum_availability=primary.minimum_availability,
            synced_instances=[d.instance_id for d in decisions[1:]],
        )

    def to_decision(self) -> RoutingDecision:
        return RoutingDecision(
            instance_id=self.instance_id,
            quality_profile=self.quality_profile,
            root_folder=self.root_folder,
            tags=list(self.tags or []),
            priority=self.priority,
            search_on_add=self.search_on_add,
            season_monitoring=self.season_monitoring,
            series_type=self.series_type,
            minimum_availability=self.minimum_availability,
        )


@dataclass
class ApprovalRequest:
    id: int
    user_id: int
    content_key: str
    content_type: str
    content_title: str
    content_guids: List[str] = field(default_factory=list)
    status: str = 'pending'
    proposed_routing: Optional[ProposedRouting] = None
    triggered_by: str = 'manual_flag'
    reason: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    approved_by: Optional[int] = None
    notes: Optional[str] = None


@dataclass
class ApprovalResult:
    required: bool
    reason: Optional[str] = None
    trigger: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def auto_approve(self) -> bool:
        return bool(self.data.get('autoApprove'))


@dataclass
class UserQuotaStatus:
    exceeded: bool
    quota_type: str
    current_usage: int
    quota_limit: int


@dataclass
class User:
    id: int
    name: str
    requires_approval: bool = False

    @staticmethod
    def from_dict(data: dict) -> "User":
        return User(
            id=int(data['id']),
            name=str(data.get('name') or f"User {data['id']}"),
            requires_approval=bool(data.get('requires_approval', False)),
        )


@dataclass
class Rule:
    id: int
    name: str
    target_type: str
    target_instance_id: int
    condition: ConditionNode
    enabled: bool = True
    order: int = DEFAULT_PRIORITY
    quality_profile: Optional[Union[int, str]] = None
    root_folder: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    search_on_add: Optional[bool] = None
    season_monitoring: Optional[str] = None
    series_type: Optional[str] = None
    minimum_availability: Optional[str] = None
    always_require_approval: bool = False
    bypass_user_quotas: bool = False
    approval_reason: Optional[str] = None

    @staticmethod
    def from_dict(data: dict) -> "Rule":
        target_type = data.get('target_type')
        if target_type not in ('radarr', 'sonarr'):
            raise ConfigError(f"Rule '{data.get('name')}' has invalid target_type '{target_type}'")
        order = data.get('order')
        return Rule(
            id=int(data['id']),
            name=str(data.get('name') or f"Rule {data['id']}"),
            target_type=target_type,
            target_instance_id=int(data['target_instance_id']),
            condition=parse_condition(data.get('condition')),
            enabled=data.get('enabled', True) is not False,
            order=DEFAULT_PRIORITY if order is None else int(order),
            quality_profile=data.get('quality_profile'),
            root_folder=data.get('root_folder'),
            tags=list(data.get('tags') or []),
            search_on_add=data.get('search_on_add'),
            season_monitoring=data.get('season_monitoring'),
            series_type=data.get('series_type'),
            minimum_availability=data.get('minimum_availability'),
            always_require_approval=bool(data.get('always_require_approval', False)),
            bypass_user_quotas=bool(data.get('bypass_user_quotas', False)),
            approval_reason=data.get('approval_reason'),
        )

    def to_decision(self) -> RoutingDecision:
        return RoutingDecision(
            instance_id=self.target_instance_id,
            quality_profile=self.quality_profile,
            root_folder=self.root_folder,
            tags=list(self.tags),
            priority=self.order,
            search_on_add=self.search_on_add,
            season_monitoring=self.season_monitoring,
            series_type=self.series_type,
            minimum_availability=self.minimum_availability,
        )


@dataclass
class Instance:
    id: int
    name: str
    base_url: str
    api_key: str
    quality_profile: Optional[Union[int, str]] = None
    root_folder: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    is_default: bool = False
    synced_instances: List[Any] = field(default_factory=list)
    search_on_add: Optional[bool] = True
    minimum_availability: Optional[str] = None
    season_monitoring: Optional[str] = None
    series_type: Optional[str] = None

    @staticmethod
    def from_dict(data: dict) -> "Instance":
        return Instance(
            id=int(data['id']),
            name=str(data.get('name') or f"Instance {data['id']}"),
            base_url=str(data.get('base_url', '')),
            api_key=str(data.get('api_key', '')),
            quality_profile=data.get('quality_profile'),
            root_folder=data.get('root_folder'),
            tags=list(data.get('tags') or []),
            is_default=bool(data.get('is_default', False)),
            synced_instances=list(data.get('synced_instances') or []),
            search_on_add=data.get('search_on_add', True),
            minimum_availability=data.get('minimum_availability'),
            season_monitoring=data.get('season_monitoring'),
            series_type=data.get('series_type'),
        )

    def to_decision(self) -> RoutingDecision:
        return RoutingDecision(
            instance_id=self.id,
            quality_profile=self.quality_profile,
            root_folder=self.root_folder,
            tags=list(self.tags),
            priority=DEFAULT_PRIORITY,
            search_on_add=self.search_on_add,
            season_monitoring=self.season_monitoring,
            series_type=self.series_type,
            minimum_availability=self.minimum_availability,
        )
