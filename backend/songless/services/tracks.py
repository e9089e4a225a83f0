"""Track provider backed by the public Deezer API."""

import logging
import random
import time
from dataclasses import asdict, dataclass
from typing import List, Optional

import requests

from songless.services.rooms.errors import TrackProviderUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Track:
    id: str
    title: str
    artist: str
    preview_url: str
    duration_ms: int = 0
    artwork_url: Optional[str] = None
    permalink_url: Optional[str] = None

    def to_dict(self):
        data = asdict(self)
        return {
            'id': data['id'],
            'title': data['title'],
            'artist': data['artist'],
            'previewUrl': data['preview_url'],
            'durationMs': data['duration_ms'],
            'artworkUrl': data['artwork_url'],
            'permalinkUrl': data['permalink_url'],
        }


def parse_playable_track(raw) -> Optional[Track]:
    """Return a Track, or None when the entry lacks an id or a preview URL."""
    if not isinstance(raw, dict):
        return None
    preview_url = raw.get('preview') or ''
    if not raw.get('id') or not preview_url:
        return None
    artist = raw.get('artist') or {}
    album = raw.get('album') or {}
    try:
        duration_ms = int(raw.get('duration') or 0) * 1000
    except (TypeError, ValueError):
        duration_ms = 0
    return Track(
        id=str(raw['id']),
        title=raw.get('title') or 'Untitled',
        artist=artist.get('name') or 'Unknown Artist',
        preview_url=preview_url,
        duration_ms=duration_ms,
        artwork_url=album.get('cover_medium') or album.get('cover') or artist.get('picture_medium'),
        permalink_url=raw.get('link'),
    )


def _translate_request_error(exc: requests.RequestException) -> TrackProviderUnavailable:
    if isinstance(exc, requests.Timeout):
        return TrackProviderUnavailable('Deezer request timed out.', 'DEEZER_TIMEOUT', 504)
    response = getattr(exc, 'response', None)
    status = response.status_code if response is not None else None
    if status in (401, 403):
        return TrackProviderUnavailable('Deezer API rejected request.', 'DEEZER_AUTH_FAILED', 502)
    if status == 404:
        return TrackProviderUnavailable('Deezer resource was not found.', 'DEEZER_NOT_FOUND', 404)
    if status and status >= 500:
        return TrackProviderUnavailable('Deezer is temporarily unavailable.', 'DEEZER_UPSTREAM_ERROR', 502)
    return TrackProviderUnavailable('Failed to reach Deezer.', 'DEEZER_REQUEST_FAILED', 502)


class DeezerTrackProvider:
    def __init__(self, api_base='https://api.deezer.com', playlist_id='', playlist_query='top',
                 cache_ttl_sec=300, timeout_sec=12.0, session=None):
        self.api_base = api_base.rstrip('/')
        self.playlist_id = str(playlist_id or '').strip()
        self.playlist_query = (playlist_query or 'top').strip() or 'top'
        self.cache_ttl_sec = cache_ttl_sec
        self.timeout_sec = timeout_sec
        self.session = session or requests.Session()
        self._cache_key = None
        self._cache_expires_at = 0.0
        self._cache_tracks: List[Track] = []
        self._searched_playlist_id = None

    @classmethod
    def from_config(cls, config):
        return cls(
            api_base=config.get('DEEZER_API_BASE_URL', 'https://api.deezer.com'),
            playlist_id=config.get('DEEZER_PLAYLIST_ID', ''),
            playlist_query=config.get('DEEZER_PLAYLIST_QUERY', 'top'),
            cache_ttl_sec=config.get('DEEZER_CACHE_TTL_SEC', 300),
            timeout_sec=config.get('DEEZER_TIMEOUT_SEC', 12.0),
        )

    def _get_json(self, path, params=None):
        try:
            response = self.session.get(f"{self.api_base}{path}", params=params, timeout=self.timeout_sec)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as exc:
            raise _translate_request_error(exc) from exc
        except ValueError as exc:
            raise TrackProviderUnavailable('Deezer returned malformed JSON.', 'DEEZER_REQUEST_FAILED', 502) from exc

    def _resolve_playlist_id(self) -> str:
        if self.playlist_id:
            return self.playlist_id
        if self._searched_playlist_id:
            return self._searched_playlist_id
        payload = self._get_json('/search/playlist', params={'q': self.playlist_query, 'limit': 1})
        for playlist in payload.get('data') or []:
            if isinstance(playlist, dict) and playlist.get('id'):
                self._searched_playlist_id = str(playlist['id'])
                return self._searched_playlist_id
        raise TrackProviderUnavailable(
            f'No Deezer playlists found for query "{self.playlist_query}".',
            'DEEZER_PLAYLIST_NOT_FOUND',
            503,
        )

    def playlist_tracks(self, force_refresh=False) -> List[Track]:
        playlist_id = self._resolve_playlist_id()
        now = time.monotonic()
        if not force_refresh and self._cache_tracks and self._cache_key == playlist_id and now < self._cache_expires_at:
            return self._cache_tracks

        payload = self._get_json(f'/playlist/{playlist_id}')
        raw_tracks = payload.get('tracks')
        if isinstance(raw_tracks, dict):
            raw_tracks = raw_tracks.get('data')
        tracks = [t for t in (parse_playable_track(r) for r in raw_tracks or []) if t]
        if not tracks:
            raise TrackProviderUnavailable('No playable Deezer tracks found in playlist.', 'DEEZER_EMPTY_PLAYLIST', 502)

        self._cache_key = playlist_id
        self._cache_expires_at = now + self.cache_ttl_sec
        self._cache_tracks = tracks
        logger.info(f"[tracks.cache] playlist={playlist_id} playable={len(tracks)}")
        return tracks

    def get_random_playable_track(self) -> Track:
        return random.choice(self.playlist_tracks())
