import asyncio
import logging
from typing import Any, Dict, List, Optional, Union

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from router_types import ContentItem, Instance

MOVIE = 'movie'
SHOW = 'show'


class ArrApiError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ''):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


def build_session() -> requests.Session:
    sess = requests.Session()
    retry = Retry(
        total=5,
        connect=3,
        read=3,
        backoff_factor=0.5,
        status_forcelist=[429, 502, 503, 504],
        allowed_methods=frozenset(["GET", "PUT", "POST"])
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=100, pool_maxsize=100)
    sess.mount('http://', adapter)
    sess.mount('https://', adapter)
    return sess


class ArrClient:
    """Minimal client for the Radarr/Sonarr v3 endpoints used when routing."""

    def __init__(self, base_url: str, api_key: str, session: Optional[requests.Session] = None,
                 timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/") + "/api/v3"
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout

    def _request(self, method: str, endpoint: str, **kwargs) -> Any:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        headers = kwargs.pop("headers", {})
        headers.setdefault("accept", "application/json")
        headers.setdefault("X-Api-Key", self.api_key)
        if method in {"post", "put"}:
            headers.setdefault("Content-Type", "application/json")
        try:
            response = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
            response.raise_for_status()
        except requests.HTTPError as exc:
            resp = exc.response
            logging.error("Arr API error during %s %s: %s", method.upper(), url, exc)
            raise ArrApiError(str(exc), getattr(resp, 'status_code', None),
                              getattr(resp, 'text', '') or '') from exc
        except requests.RequestException as exc:
            logging.error("Arr API error during %s %s: %s", method.upper(), url, exc)
            raise ArrApiError(str(exc)) from exc
        if not response.content:
            return None
        return response.json()

    def get(self, endpoint: str, **params) -> Any:
        return self._request("get", endpoint, params=params or None)

    def post(self, endpoint: str, payload: dict) -> Any:
        return self._request("post", endpoint, json=payload)

    def lookup_movie(self, tmdb_id: int) -> Optional[dict]:
        data = self.get("movie/lookup/tmdb", tmdbId=tmdb_id)
        return _first(data)

    def lookup_series(self, tvdb_id: int) -> Optional[dict]:
        data = self.get("series/lookup", term=f"tvdb:{tvdb_id}")
        return _first(data)

    def quality_profiles(self) -> List[dict]:
        return self.get("qualityprofile") or []

    def root_folders(self) -> List[dict]:
        return self.get("rootfolder") or []

    def tags(self) -> List[dict]:
        return self.get("tag") or []

    def create_tag(self, label: str) -> dict:
        return self.post("tag", {"label": label})


def _first(data) -> Optional[dict]:
    if isinstance(data, list):
        return data[0] if data else None
    return data if isinstance(data, dict) else None


class TmdbClient:
    """Watch-provider lookups against the TMDB v3 API."""

    base_url = "https://api.themoviedb.org/3"

    def __init__(self, access_token: str, session: Optional[requests.Session] = None, region: str = 'US',
                 timeout: float = 10.0) -> None:
        self.access_token = access_token
        self.session = session or requests.Session()
        self.region = region
        self.timeout = timeout

    def _request(self, endpoint: str) -> Any:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        headers = {"accept": "application/json", "Authorization": f"Bearer {self.access_token}"}
        try:
            response = self.session.request("get", url, headers=headers, timeout=self.timeout)
            if response.status_code == 404:
                return None
            response.raise_for_status()
        except requests.HTTPError as exc:
            resp = exc.response
            logging.error("TMDB API error during GET %s: %s", url, exc)
            raise ArrApiError(str(exc), getattr(resp, 'status_code', None),
                              getattr(resp, 'text', '') or '') from exc
        except requests.RequestException as exc:
            logging.error("TMDB API error during GET %s: %s", url, exc)
            raise ArrApiError(str(exc)) from exc
        if not response.content:
            return None
        return response.json()

    def watch_providers(self, tmdb_id: int, content_type: str) -> Optional[dict]:
        """Offers for the configured region, e.g. ``{"flatrate": [...], "rent": [...]}``."""
        media = 'movie' if content_type == MOVIE else 'tv'
        data = self._request(f"{media}/{tmdb_id}/watch/providers")
        if not isinstance(data, dict):
            return None
        return (data.get('results') or {}).get(self.region)


class ArrClientPool:
    """One client per configured instance, sharing a retrying session."""

    def __init__(self, instance_store, session: Optional[requests.Session] = None):
        self.instance_store = instance_store
        self.session = session or build_session()
        self._clients: Dict[tuple, ArrClient] = {}

    def instance(self, content_type: str, instance_id: int) -> Instance:
        instance = self.instance_store.find(content_type, instance_id)
        if instance is None:
            raise ArrApiError(f"{_backend(content_type)} instance {instance_id} not found")
        return instance

    def client(self, content_type: str, instance_id: int) -> ArrClient:
        key = (content_type, instance_id)
        if key not in self._clients:
            instance = self.instance(content_type, instance_id)
            self._clients[key] = ArrClient(instance.base_url, instance.api_key, session=self.session)
        return self._clients[key]


def _backend(content_type: str) -> str:
    return 'Radarr' if content_type == MOVIE else 'Sonarr'


def _already_exists(exc: ArrApiError) -> bool:
    return exc.status_code == 400 and 'exist' in (exc.body or '').lower()


class ArrDispatcher:
    """Adds content to one backend instance using resolved routing settings."""

    content_type = ''
    _endpoint = ''

    def __init__(self, pool: ArrClientPool, dry_run: bool = True):
        self.pool = pool
        self.dry_run = dry_run

    async def dispatch(self, item: ContentItem, key: str, user_id: Optional[int], instance_id: int,
                       syncing: bool = False, **settings) -> None:
        await asyncio.to_thread(self.add, item, key, user_id, instance_id, syncing, **settings)

    def _resolve_quality_profile(self, client: ArrClient, wanted: Union[int, str, None]) -> int:
        if isinstance(wanted, int) and not isinstance(wanted, bool):
            return wanted
        if isinstance(wanted, str) and wanted.strip().isdigit():
            return int(wanted)
        profiles = client.quality_profiles()
        if not profiles:
            raise ArrApiError("No quality profiles available")
        if wanted:
            for profile in profiles:
                if str(profile.get('name', '')).lower() == str(wanted).lower():
                    return profile['id']
            logging.warning(f"Quality profile '{wanted}' not found, using '{profiles[0].get('name')}'")
        return profiles[0]['id']

    def _resolve_root_folder(self, client: ArrClient, wanted: Optional[str]) -> str:
        if wanted:
            return wanted
        folders = client.root_folders()
        if not folders:
            raise ArrApiError("No root folders available")
        return folders[0]['path']

    def _resolve_tags(self, client: ArrClient, wanted: List[Any]) -> List[int]:
        if not wanted:
            return []
        if all(isinstance(t, int) and not isinstance(t, bool) for t in wanted):
            return list(wanted)
        existing = {str(t.get('label', '')).lower(): t['id'] for t in client.tags()}
        ids = []
        for tag in wanted:
            if isinstance(tag, int) and not isinstance(tag, bool):
                ids.append(tag)
                continue
            label = str(tag).strip().lower()
            if label not in existing:
                existing[label] = client.create_tag(label)['id']
            ids.append(existing[label])
        return ids

    def _lookup(self, client: ArrClient, item: ContentItem) -> dict:
        raise NotImplementedError

    def _payload(self, lookup: dict, instance: Instance, quality_profile: int, root_folder: str,
                 tags: List[int], search_on_add: bool, settings: dict) -> dict:
        raise NotImplementedError

    def add(self, item: ContentItem, key: str, user_id: Optional[int], instance_id: int,
            syncing: bool = False, root_folder: Optional[str] = None,
            quality_profile: Union[int, str, None] = None, tags: Optional[List[Any]] = None,
            search_on_add: Optional[bool] = None, **settings) -> None:
        backend = _backend(self.content_type)
        instance = self.pool.instance(self.content_type, instance_id)
        extra = {'request_id': key}
        if self.dry_run:
            logging.warning(f"[DRY RUN] Would add \"{item.title}\" to {backend} instance "
                            f"{instance.name} ({instance_id})", extra=extra)
            return

        client = self.pool.client(self.content_type, instance_id)
        lookup = self._lookup(client, item)
        payload = self._payload(
            lookup,
            instance,
            self._resolve_quality_profile(client, quality_profile or instance.quality_profile),
            self._resolve_root_folder(client, root_folder or instance.root_folder),
            self._resolve_tags(client, tags if tags else instance.tags),
            instance.search_on_add if search_on_add is None else search_on_add,
            settings,
        )
        try:
            client.post(self._endpoint, payload)
        except ArrApiError as e:
            if _already_exists(e):
                logging.info(f"\"{item.title}\" already exists in {backend} instance {instance.name}",
                             extra=extra)
                return
            raise
        logging.info(f"Added \"{item.title}\" to {backend} instance {instance.name} "
                     f"({instance_id}){' [sync]' if syncing else ''}", extra=extra)


class RadarrDispatcher(ArrDispatcher):
    content_type = MOVIE
    _endpoint = "movie"

    def _lookup(self, client, item):
        tmdb_id = item.guid_id('tmdb')
        if tmdb_id is None:
            raise ArrApiError(f"No TMDB id in GUIDs for \"{item.title}\"")
        movie = client.lookup_movie(tmdb_id)
        if not movie:
            raise ArrApiError(f"Radarr lookup found nothing for TMDB id {tmdb_id}")
        return movie

    def _payload(self, lookup, instance, quality_profile, root_folder, tags, search_on_add, settings):
        return {
            'title': lookup.get('title'),
            'tmdbId': lookup.get('tmdbId'),
            'year': lookup.get('year'),
            'titleSlug': lookup.get('titleSlug'),
            'images': lookup.get('images', []),
            'qualityProfileId': quality_profile,
            'rootFolderPath': root_folder,
            'tags': tags,
            'monitored': True,
            'minimumAvailability': settings.get('minimum_availability') or instance.minimum_availability or 'released',
            'addOptions': {'searchForMovie': bool(search_on_add)},
        }


class SonarrDispatcher(ArrDispatcher):
    content_type = SHOW
    _endpoint = "series"

    def _lookup(self, client, item):
        tvdb_id = item.guid_id('tvdb')
        if tvdb_id is None:
            raise ArrApiError(f"No TVDB id in GUIDs for \"{item.title}\"")
        series = client.lookup_series(tvdb_id)
        if not series:
            raise ArrApiError(f"Sonarr lookup found nothing for TVDB id {tvdb_id}")
        return series

    def _payload(self, lookup, instance, quality_profile, root_folder, tags, search_on_add, settings):
        return {
            'title': lookup.get('title'),
            'tvdbId': lookup.get('tvdbId'),
            'titleSlug': lookup.get('titleSlug'),
            'images': lookup.get('images', []),
            'seasons': lookup.get('seasons', []),
            'qualityProfileId': quality_profile,
            'rootFolderPath': root_folder,
            'tags': tags,
            'monitored': True,
            'seasonFolder': True,
            'seriesType': settings.get('series_type') or instance.series_type or 'standard',
            'addOptions': {
                'monitor': settings.get('season_monitoring') or instance.season_monitoring or 'all',
                'searchForMissingEpisodes': bool(search_on_add),
            },
        }


class MetadataLookup:
    """Best-effort metadata lookup through the default instance of each backend.

    Streaming availability comes from TMDB when an access token is configured.
    """

    def __init__(self, pool: ArrClientPool, tmdb: Optional[TmdbClient] = None):
        self.pool = pool
        self.tmdb = tmdb

    async def lookup(self, external_id: int, content_type: str) -> Optional[dict]:
        default = await self.pool.instance_store.default_instance(content_type)
        if default is None:
            logging.warning(f"No default {_backend(content_type)} instance available for metadata lookup")
            return None
        client = self.pool.client(content_type, default.id)
        if content_type == MOVIE:
            return await asyncio.to_thread(client.lookup_movie, external_id)
        return await asyncio.to_thread(client.lookup_series, external_id)

    async def watch_providers(self, tmdb_id: int, content_type: str) -> Optional[dict]:
        if self.tmdb is None:
            logging.debug("No TMDB access token configured, skipping watch provider lookup")
            return None
        return await asyncio.to_thread(self.tmdb.watch_providers, tmdb_id, content_type)
