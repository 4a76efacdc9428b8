import inspect
import logging
import operator
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from rapidfuzz import fuzz

from router_types import Condition, ContentItem, RoutingContext, RoutingDecision

DEFAULT_FUZZY_THRESHOLD = 80

# =========================
# Ratings normalisation
# =========================
RATING_ORDER = [
    "G", "TV-Y", "TV-G",
    "PG", "TV-Y7", "TV-PG",
    "PG-13", "TV-14",
    "M", "MA15+",
    "R", "TV-MA",
    "NC-17", "18"
]
RATING_INDEX = {name: i for i, name in enumerate(RATING_ORDER)}

RATING_NORMALISE = {
    "G": "G",
    "PG": "PG",
    "PG13": "PG-13",
    "PG-13": "PG-13",
    "R": "R",
    "R18": "R",
    "R18+": "R",
    "NC17": "NC-17",
    "NC-17": "NC-17",
    "18": "18",
    "X18": "NC-17",
    "X18+": "NC-17",
    "M": "M",
    "MA15": "MA15+",
    "MA15+": "MA15+",
    "TVY": "TV-Y",
    "TV-Y": "TV-Y",
    "TVG": "TV-G",
    "TV-G": "TV-G",
    "TVY7": "TV-Y7",
    "TV-Y7": "TV-Y7",
    "TVPG": "TV-PG",
    "TV-PG": "TV-PG",
    "TV14": "TV-14",
    "TV-14": "TV-14",
    "TVMA": "TV-MA",
    "TV-MA": "TV-MA",
}


def normalise_rating(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    s = str(raw).strip().upper().replace(' ', '')
    if s in RATING_NORMALISE:
        return RATING_NORMALISE[s]
    return RATING_NORMALISE.get(s.replace('-', ''), None)


def rating_strictness(r: Optional[str]) -> int:
    return RATING_INDEX.get(normalise_rating(r) or '', -1)


# =========================
# Operator engine
# =========================
NUMERIC_OPS = {
    "equals": operator.eq, "notEquals": operator.ne,
    "greaterThan": operator.gt, "lessThan": operator.lt,
}
RATING_OPS = {"ratingAtMost": operator.le, "ratingAtLeast": operator.ge}


def _to_list(v) -> list:
    if v is None:
        return []
    return list(v) if isinstance(v, (list, tuple, set)) else [v]


def _is_number(x) -> bool:
    if isinstance(x, bool):
        return False
    try:
        float(x)
        return True
    except (TypeError, ValueError):
        return False


def _norm_str(x) -> str:
    return str(x).strip().casefold()


def _regex(pattern, value) -> bool:
    try:
        return bool(re.search(str(pattern), str(value), flags=re.IGNORECASE))
    except re.error as e:
        logging.error(f"Invalid regex pattern '{pattern}': {e}")
        return False


def _fuzzy(value, target) -> bool:
    # target can be {"value": "netflix", "threshold": 70} or just "netflix"
    threshold = DEFAULT_FUZZY_THRESHOLD
    if isinstance(target, dict):
        pattern = target.get("value", "")
        threshold = int(target.get("threshold", DEFAULT_FUZZY_THRESHOLD))
    else:
        pattern = target
    return fuzz.token_set_ratio(_norm_str(value), _norm_str(pattern)) >= threshold


def _between(value, rng) -> bool:
    """Inclusive range check; either bound may be omitted."""
    if not _is_number(value):
        return False
    if isinstance(rng, dict):
        low, high = rng.get("min"), rng.get("max")
    else:
        rng = _to_list(rng)
        low = rng[0] if len(rng) > 0 else None
        high = rng[1] if len(rng) > 1 else None
    if low is None and high is None:
        return False
    v = float(value)
    if low is not None and (not _is_number(low) or v < float(low)):
        return False
    if high is not None and (not _is_number(high) or v > float(high)):
        return False
    return True


def _equals(left, right) -> bool:
    if _is_number(left) and _is_number(right):
        return float(left) == float(right)
    return _norm_str(left) == _norm_str(right)


def compare_scalar(op: str, left, right) -> bool:
    """Compare one field value against a condition value."""
    if left is None:
        return False
    if op in RATING_OPS:
        lhs, rhs = rating_strictness(left), rating_strictness(right)
        if lhs < 0 or rhs < 0:
            return False
        return RATING_OPS[op](lhs, rhs)
    if op == "between":
        return _between(left, right)
    if op in ("in", "notIn"):
        hit = any(_equals(left, t) for t in _to_list(right))
        return hit if op == "in" else not hit
    if op in NUMERIC_OPS and _is_number(left) and _is_number(right):
        return NUMERIC_OPS[op](float(left), float(right))
    if op == "equals":
        return _equals(left, right)
    if op == "notEquals":
        return not _equals(left, right)
    if op == "contains":
        return _norm_str(right) in _norm_str(left)
    if op == "notContains":
        return _norm_str(right) not in _norm_str(left)
    if op == "regex":
        return _regex(right, left)
    if op == "fuzzy":
        return _fuzzy(left, right)
    logging.warning(f"Unsupported operator '{op}' for value {left!r}")
    return False


def compare_list(op: str, values: list, right) -> bool:
    """List fields: membership operators look for any overlap with the targets."""
    if not values:
        return False
    targets = _to_list(right)
    if op in ("contains", "in"):
        return any(_equals(v, t) for v in values for t in targets)
    if op in ("notContains", "notIn"):
        return not any(_equals(v, t) for v in values for t in targets)
    if op in ("equals", "notEquals"):
        same = {_norm_str(v) for v in values} == {_norm_str(t) for t in targets}
        return same if op == "equals" else not same
    if op == "regex":
        return any(_regex(right, v) for v in values)
    if op == "fuzzy":
        return any(_fuzzy(v, right) for v in values)
    if op == "between":
        return any(_between(v, right) for v in values)
    return any(compare_scalar(op, v, right) for v in values)


def compare(op: str, actual, expected) -> bool:
    if isinstance(actual, (list, tuple, set)):
        return compare_list(op, list(actual), expected)
    return compare_scalar(op, actual, expected)


def rating_matches(actual: float, op: str, criteria) -> bool:
    """Typed rating criteria: a number, a list of numbers or a {min, max} range."""
    if _is_number(criteria):
        if op in NUMERIC_OPS:
            return NUMERIC_OPS[op](actual, float(criteria))
        return False
    if isinstance(criteria, (list, tuple)):
        if not all(_is_number(c) for c in criteria) or op not in ('in', 'notIn'):
            return False
        hit = any(actual == float(c) for c in criteria)
        return hit if op == 'in' else not hit
    if isinstance(criteria, dict) and op == 'between':
        if 'min' not in criteria and 'max' not in criteria:
            return False
        low = criteria.get('min')
        high = criteria.get('max')
        if (low is not None and not _is_number(low)) or (high is not None and not _is_number(high)):
            return False
        low = float('-inf') if low is None else float(low)
        high = float('inf') if high is None else float(high)
        return low <= actual <= high
    return False


# =========================
# Metadata helpers
# =========================
def _metadata(item: ContentItem) -> dict:
    return item.metadata if isinstance(item.metadata, dict) else {}


def extract_year(item: ContentItem) -> Optional[int]:
    year = _metadata(item).get('year')
    return year if isinstance(year, int) and year > 0 else None


def extract_language(item: ContentItem) -> Optional[str]:
    lang = _metadata(item).get('originalLanguage')
    if isinstance(lang, dict):
        lang = lang.get('name')
    return lang if isinstance(lang, str) and lang.strip() else None


def extract_providers(item: ContentItem) -> List[Any]:
    """Flat-rate streaming providers as ids and names."""
    providers: List[Any] = []
    wp = _metadata(item).get('watchProviders') or []
    if isinstance(wp, list):
        entries = wp
    elif 'results' in wp:
        entries = list((wp.get('results') or {}).values())
    else:
        # A single region, as TMDB returns it
        entries = [wp]
    for entry in entries:
        for p in (entry or {}).get('flatrate', []) or []:
            pid = p.get('id', p.get('provider_id'))
            name = p.get('name') or p.get('provider_name')
            if pid is not None:
                providers.append(pid)
            if name:
                providers.append(name)
    return providers


# =========================
# Evaluator plugins
# =========================
@dataclass
class EvaluatorServices:
    """Collaborators handed to every evaluator factory at startup."""
    rule_store: Any
    conditions: Any = None


class RoutingEvaluator:
    name: str = ''
    description: str = ''
    priority: int = 50
    content_type: str = 'both'
    supported_fields: List[Dict[str, Any]] = []
    supported_operators: Dict[str, List[str]] = {}

    def __init__(self, services: EvaluatorServices):
        self.services = services

    async def can_evaluate(self, item: ContentItem, context: RoutingContext) -> bool:
        return False

    async def evaluate(self, item: ContentItem, context: RoutingContext) -> List[RoutingDecision]:
        return []

    def can_evaluate_condition_field(self, field: str) -> bool:
        return any(f['name'] == field for f in self.supported_fields)


class ConditionalEvaluator(RoutingEvaluator):
    name = 'Conditional Router'
    description = 'Routes content based on complex conditional rules'
    priority = 100
    supported_fields = [{'name': 'condition', 'description': 'Complex condition structure for advanced routing'}]
    supported_operators = {'condition': ['equals', 'contains']}

    async def _rules_for(self, context: RoutingContext):
        target = 'radarr' if context.content_type == 'movie' else 'sonarr'
        rules = await self.services.rule_store.all_enabled_rules()
        return [r for r in rules if r.target_type == target]

    async def can_evaluate(self, item, context):
        try:
            return bool(await self._rules_for(context))
        except Exception as e:
            logging.error(f"Conditional Router: rule lookup failed for {context.content_type}: {e}")
            return False

    async def evaluate(self, item, context):
        decisions: List[RoutingDecision] = []
        for rule in await self._rules_for(context):
            try:
                matched = self.services.conditions.evaluate(rule.condition, item, context)
            except Exception as e:
                logging.error(f"Error evaluating conditional rule '{rule.name}': {e}")
                continue
            if matched:
                logging.debug(f"Conditional rule '{rule.name}' matched \"{item.title}\"")
                decisions.append(rule.to_decision())
        return decisions

    def can_evaluate_condition_field(self, field):
        return False


class FieldEvaluator(RoutingEvaluator):
    """Leaf-only evaluator: judges conditions on its fields, produces no decisions."""

    def field_value(self, field: str, item: ContentItem, context: RoutingContext):
        raise NotImplementedError

    def evaluate_condition(self, condition: Condition, item: ContentItem, context: RoutingContext) -> bool:
        # Negation is applied by the tree evaluator, never here
        if not self.can_evaluate_condition_field(condition.field):
            return False
        value = self.field_value(condition.field, item, context)
        if value is None or value == []:
            return False
        return compare(condition.operator, value, condition.value)


class StreamingEvaluator(FieldEvaluator):
    name = 'Streaming Availability Router'
    description = 'Routes content based on streaming service availability'
    priority = 85
    supported_fields = [{'name': 'streamingServices', 'description': 'Flat-rate streaming providers (ids or names)'}]
    supported_operators = {'streamingServices': ['in', 'notIn', 'fuzzy']}

    def field_value(self, field, item, context):
        return extract_providers(item)

    def evaluate_condition(self, condition, item, context):
        if condition.field != 'streamingServices':
            return False
        if _metadata(item).get('watchProviders') is None:
            # Unknown availability satisfies neither in nor notIn
            return False
        targets = _to_list(condition.value)
        if not targets:
            logging.warning("Invalid streamingServices value in condition: empty")
            return False
        providers = extract_providers(item)
        if condition.operator in ('in', 'notIn'):
            # Names are matched loosely, the way provider labels drift between regions
            hit = any(_equals(p, t) if _is_number(t) else (not _is_number(p) and _fuzzy(p, t))
                      for p in providers for t in targets)
            return hit if condition.operator == 'in' else not hit
        if not providers:
            return False
        return compare(condition.operator, providers, condition.value)


class GenreEvaluator(FieldEvaluator):
    name = 'Genre Router'
    description = 'Routes content based on genre matching rules'
    priority = 80
    supported_fields = [{'name': 'genres', 'description': 'Genre categories of the content'}]
    supported_operators = {'genres': ['contains', 'in', 'notContains', 'notIn', 'equals', 'regex', 'fuzzy']}

    def field_value(self, field, item, context):
        return item.genres or list(_metadata(item).get('genres') or [])


class ImdbEvaluator(FieldEvaluator):
    name = 'IMDB Router'
    description = 'Routes content based on IMDb rating and vote count'
    priority = 80
    supported_fields = [
        {'name': 'imdbRating', 'description': 'IMDb user rating (0-10)'},
        {'name': 'imdbVotes', 'description': 'Number of IMDb votes'},
    ]
    supported_operators = {
        'imdbRating': ['equals', 'notEquals', 'greaterThan', 'lessThan', 'in', 'notIn', 'between'],
        'imdbVotes': ['equals', 'notEquals', 'greaterThan', 'lessThan', 'in', 'notIn', 'between'],
    }

    def field_value(self, field, item, context):
        imdb = (_metadata(item).get('ratings') or {}).get('imdb') or {}
        return imdb.get('value') if field == 'imdbRating' else imdb.get('votes')


class RatingsEvaluator(FieldEvaluator):
    """TMDB and Rotten Tomatoes scores from the lookup payload.

    TMDB is on a 0-10 scale. Rotten Tomatoes scores arrive as percentages and
    rules state them the same way, e.g. ``rtCriticRating greaterThan 90``.
    """
    name = 'Ratings Router'
    description = 'Routes content based on ratings (Rotten Tomatoes, TMDB)'
    priority = 80
    supported_fields = [
        {'name': 'tmdbRating', 'description': 'TMDB rating (0-10)'},
        {'name': 'rtCriticRating', 'description': 'Rotten Tomatoes critic score (0-100%)'},
        {'name': 'rtAudienceRating', 'description': 'Rotten Tomatoes audience score (0-100%)'},
    ]
    supported_operators = {
        f['name']: ['equals', 'notEquals', 'greaterThan', 'lessThan', 'in', 'notIn', 'between']
        for f in supported_fields
    }

    def field_value(self, field, item, context):
        ratings = _metadata(item).get('ratings') or {}
        if field == 'tmdbRating':
            return (ratings.get('tmdb') or {}).get('value')
        if field == 'rtAudienceRating':
            # Radarr only reports the critic score; audience scores come from other sources
            return (ratings.get('rottenTomatoesAudience') or {}).get('value')
        return (ratings.get('rottenTomatoes') or {}).get('value')

    def evaluate_condition(self, condition, item, context):
        if not self.can_evaluate_condition_field(condition.field):
            return False
        actual = self.field_value(condition.field, item, context)
        if not _is_number(actual):
            return False
        return rating_matches(float(actual), condition.operator, condition.value)


class UserEvaluator(FieldEvaluator):
    name = 'User Router'
    description = 'Routes content based on requesting users'
    priority = 75
    supported_fields = [{'name': 'user', 'description': 'Requesting user id or name'}]
    supported_operators = {'user': ['equals', 'notEquals', 'in', 'notIn', 'regex']}

    @staticmethod
    def _matches(context: RoutingContext, target) -> bool:
        if _is_number(target) and context.user_id is not None:
            if int(float(target)) == context.user_id:
                return True
        return context.user_name is not None and _norm_str(context.user_name) == _norm_str(target)

    def evaluate_condition(self, condition, item, context):
        if condition.field != 'user' or (not context.user_id and not context.user_name):
            return False
        op, value = condition.operator, condition.value
        if op in ('equals', 'in'):
            return any(self._matches(context, t) for t in _to_list(value))
        if op in ('notEquals', 'notIn'):
            return not any(self._matches(context, t) for t in _to_list(value))
        if op == 'regex':
            return context.user_name is not None and _regex(value, context.user_name)
        return False


class YearEvaluator(FieldEvaluator):
    name = 'Year Router'
    description = 'Routes content based on release year'
    priority = 70
    supported_fields = [{'name': 'year', 'description': 'Release year of the content'}]
    supported_operators = {'year': ['equals', 'notEquals', 'greaterThan', 'lessThan', 'in', 'notIn', 'between']}

    def field_value(self, field, item, context):
        return extract_year(item)


class SeasonEvaluator(FieldEvaluator):
    name = 'Season Router'
    description = 'Routes shows based on their number of seasons'
    priority = 68
    content_type = 'sonarr'
    supported_fields = [{'name': 'season', 'description': 'Number of regular seasons'}]
    supported_operators = {'season': ['equals', 'notEquals', 'greaterThan', 'lessThan', 'in', 'notIn', 'between']}

    def field_value(self, field, item, context):
        if context.content_type != 'show':
            return None
        seasons = _metadata(item).get('seasons')
        if not isinstance(seasons, list):
            return None
        return sum(1 for s in seasons if isinstance(s, dict) and s.get('seasonNumber', 0) > 0)


class LanguageEvaluator(FieldEvaluator):
    name = 'Language Router'
    description = 'Routes content based on original language'
    priority = 65
    supported_fields = [{'name': 'language', 'description': 'Original language name'}]
    supported_operators = {'language': ['equals', 'notEquals', 'contains', 'in', 'notIn', 'fuzzy']}

    def field_value(self, field, item, context):
        return extract_language(item)


class CertificationEvaluator(FieldEvaluator):
    name = 'Certification Router'
    description = 'Routes content based on age certification'
    priority = 60
    supported_fields = [{'name': 'certification', 'description': 'Age certification such as PG-13 or TV-MA'}]
    supported_operators = {'certification': ['equals', 'notEquals', 'contains', 'notContains', 'in', 'notIn',
                                             'regex', 'ratingAtMost', 'ratingAtLeast']}

    def field_value(self, field, item, context):
        cert = _metadata(item).get('certification')
        return (normalise_rating(cert) or cert) if cert else None


BUILTIN_EVALUATORS: List[Callable[[EvaluatorServices], Any]] = [
    ConditionalEvaluator,
    StreamingEvaluator,
    GenreEvaluator,
    ImdbEvaluator,
    RatingsEvaluator,
    UserEvaluator,
    YearEvaluator,
    SeasonEvaluator,
    LanguageEvaluator,
    CertificationEvaluator,
]


# =========================
# Registry
# =========================
def is_valid_evaluator(evaluator) -> bool:
    priority = getattr(evaluator, 'priority', None)
    return (
        isinstance(getattr(evaluator, 'name', None), str)
        and isinstance(getattr(evaluator, 'description', None), str)
        and isinstance(priority, (int, float)) and not isinstance(priority, bool)
        and callable(getattr(evaluator, 'can_evaluate', None))
        and callable(getattr(evaluator, 'evaluate', None))
    )


async def maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


class EvaluatorRegistry:
    """Evaluators in descending priority order, fixed for the process lifetime."""

    def __init__(self, evaluators: Iterable[Any]):
        # sorted() is stable, so equal priorities keep registration order
        self._evaluators = tuple(sorted(evaluators, key=lambda e: e.priority, reverse=True))

    @classmethod
    def load(cls, factories: Iterable[Callable[[EvaluatorServices], Any]],
             services: EvaluatorServices) -> "EvaluatorRegistry":
        accepted = []
        for factory in factories:
            label = getattr(factory, '__name__', repr(factory))
            try:
                evaluator = factory(services)
            except Exception as e:
                logging.error(f"Error loading evaluator {label}: {e}")
                continue
            if not is_valid_evaluator(evaluator):
                logging.warning(f"Invalid evaluator found: {label}, missing required methods or properties")
                continue
            accepted.append(evaluator)
            logging.debug(f"Loaded router evaluator: {evaluator.name}")
        registry = cls(accepted)
        logging.info(f"Successfully loaded {len(registry)} router evaluators")
        return registry

    def __iter__(self):
        return iter(self._evaluators)

    def __len__(self) -> int:
        return len(self._evaluators)

    @property
    def evaluators(self) -> tuple:
        return self._evaluators

    def summary(self) -> List[Dict[str, Any]]:
        return [{'name': e.name, 'description': e.description, 'priority': e.priority}
                for e in self._evaluators]

    def metadata(self) -> List[Dict[str, Any]]:
        return [{
            'name': e.name,
            'description': e.description,
            'priority': e.priority,
            'supportedFields': list(getattr(e, 'supported_fields', None) or []),
            'supportedOperators': dict(getattr(e, 'supported_operators', None) or {}),
            'contentType': getattr(e, 'content_type', 'both'),
        } for e in self._evaluators]
