"""Spotify Web API Client - the source side of every mapping"""

import logging
import time
from typing import Any, Iterator

import requests

from spotube.core.errors import (
    InvalidTrack, NotFound, PermissionDenied, ProviderTimeout, RateLimited,
    TransientProviderError, Unauthorized, UnknownProviderError,
)
from spotube.core.matching import normalize
from spotube.core.models import SOURCE_SERVICE, Playlist, Track, TrackRef
from spotube.core.tokens import TokenStore

logger = logging.getLogger(__name__)

API_BASE = "https://api.spotify.com/v1"
PAGE_DELAY = 0.1


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("message", "")
    return str(error or body)[:200]


class SpotifyClient:
    service = SOURCE_SERVICE

    def __init__(self, tokens: TokenStore, session: requests.Session | None = None,
                 timeout: float = 10):
        self._tokens = tokens
        self._session = session or requests.Session()
        self._timeout = timeout
        self.rate_limit_retry_after: int | None = None

    def _request(self, method: str, url: str, params: dict | None = None,
                 json: dict | None = None) -> dict:
        if not url.startswith("http"):
            url = f"{API_BASE}{url}"

        for attempt in range(2):
            token = self._tokens.access_token("spotify", force_refresh=attempt > 0)
            try:
                response = self._session.request(
                    method, url,
                    headers={"Authorization": f"Bearer {token}"},
                    params=params, json=json, timeout=self._timeout,
                )
            except requests.Timeout as e:
                raise ProviderTimeout(f"Spotify {method} {url} timed out: {e}", service=self.service)
            except requests.RequestException as e:
                raise TransientProviderError(f"Spotify {method} {url} failed: {e}", service=self.service)

            if response.status_code == 401 and attempt == 0:
                logger.warning("Spotify rejected access token, forcing refresh")
                continue
            break

        self._raise_for_status(response, f"{method} {url}")
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}

    def _raise_for_status(self, response: requests.Response, name: str) -> None:
        status = response.status_code
        if status < 400:
            return

        message = f"Spotify {status} on {name}: {_error_message(response)}"
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            self.rate_limit_retry_after = int(retry_after) if retry_after and retry_after.isdigit() else None
            logger.warning(f"Rate limited on {name}, Retry-After={retry_after}")
            raise RateLimited(message, service=self.service, retry_after=self.rate_limit_retry_after)
        if status == 401:
            raise Unauthorized(message, service=self.service, status=status)
        if status == 403:
            raise PermissionDenied(message, service=self.service, status=status)
        if status == 404:
            raise NotFound(message, service=self.service, status=status)
        if status == 400:
            raise InvalidTrack(message, service=self.service, status=status)
        logger.error(message)
        raise UnknownProviderError(message, service=self.service, status=status)

    def _paginate(self, url: str, params: dict | None) -> Iterator[dict]:
        while url:
            data = self._request("GET", url, params=params)
            yield from data.get("items", [])
            url = data.get("next")
            params = None  # `next` already carries the query
            if url:
                time.sleep(PAGE_DELAY)

    def list_playlists(self) -> list[Playlist]:
        playlists = []
        for item in self._paginate("/me/playlists", {"limit": 50}):
            playlists.append(Playlist(
                id=item.get("id", ""),
                name=item.get("name", ""),
                track_count=(item.get("tracks") or {}).get("total", 0),
            ))
        logger.info(f"Retrieved {len(playlists)} Spotify playlists")
        return playlists

    def get_playlist(self, playlist_id: str) -> Playlist:
        data = self._request("GET", f"/playlists/{playlist_id}",
                             params={"fields": "id,name,tracks.total"})
        return Playlist(
            id=data.get("id", playlist_id),
            name=data.get("name", ""),
            track_count=(data.get("tracks") or {}).get("total", 0),
        )

    def list_tracks(self, playlist_id: str) -> Iterator[Track]:
        params = {
            "limit": 100,
            "fields": "next,items(track(id,name,type,is_local,artists(name),album(name)))",
        }
        count = 0
        for item in self._paginate(f"/playlists/{playlist_id}/tracks", params):
            track = self._extract_track(item)
            if track:
                count += 1
                yield track
        logger.info(f"Retrieved {count} tracks from Spotify playlist {playlist_id}")

    def _extract_track(self, item: dict) -> Track | None:
        data: dict[str, Any] = item.get("track") or {}
        if data.get("type", "track") != "track" or data.get("is_local"):
            return None

        track_id = data.get("id") or ""
        name = data.get("name") or ""
        if not track_id or not name:
            return None

        artists = data.get("artists") or []
        return Track(
            id=track_id,
            title=name,
            artist=artists[0].get("name", "") if artists else "",
            album=(data.get("album") or {}).get("name", ""),
        )

    def add_track(self, playlist_id: str, track_ref: TrackRef) -> None:
        self._request("POST", f"/playlists/{playlist_id}/tracks",
                      json={"uris": [f"spotify:track:{track_ref.id}"]})
        logger.info(f"Added {track_ref.id} to Spotify playlist {playlist_id}")

    def remove_track(self, playlist_id: str, track_ref: TrackRef) -> None:
        self._request("DELETE", f"/playlists/{playlist_id}/tracks",
                      json={"tracks": [{"uri": f"spotify:track:{track_ref.id}"}]})
        logger.info(f"Removed {track_ref.id} from Spotify playlist {playlist_id}")

    def rename_playlist(self, playlist_id: str, new_name: str) -> None:
        self._request("PUT", f"/playlists/{playlist_id}", json={"name": new_name})
        logger.info(f"Renamed Spotify playlist {playlist_id} to '{new_name}'")

    def search_track(self, title: str, artist: str) -> str | None:
        query = f"track:{title} artist:{artist}" if artist else title
        data = self._request("GET", "/search", params={"q": query, "type": "track", "limit": 5})
        items = (data.get("tracks") or {}).get("items") or []
        if not items:
            logger.warning(f"No Spotify results for: {title} by {artist}")
            return None

        for item in items:
            if normalize(item.get("name", "")) == normalize(title):
                return item["id"]
        return items[0]["id"]
