"""
YouTube Data API v3 Client - the destination side of every mapping

Every call is charged against the daily QuotaTracker before it is sent.
Server errors and network failures are retried in-call with a short backoff;
everything else is translated into the shared error taxonomy and left to the
executor's retry policy.
"""

import json
import logging
import threading
import time
from typing import Any, Callable, Iterator

import httplib2
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from spotube.core.errors import (
    InvalidTrack, NotFound, PermissionDenied, ProviderTimeout, QuotaExceeded, RateLimited,
    TransientProviderError, Unauthorized, UnknownProviderError,
)
from spotube.core.matching import score_search_result
from spotube.core.models import DESTINATION_SERVICE, Playlist, Track, TrackRef
from spotube.core.quota import COST_LIST, COST_SEARCH, COST_WRITE, QuotaTracker
from spotube.core.tokens import TokenStore

logger = logging.getLogger(__name__)

WRITE_DELAY = 0.5
QUOTA_REASONS = ("quotaExceeded", "dailyLimitExceeded")
RATE_REASONS = ("rateLimitExceeded", "userRateLimitExceeded")


def _build_service(access_token: str, timeout: float) -> Any:
    credentials = Credentials(token=access_token)
    http = AuthorizedHttp(credentials, http=httplib2.Http(timeout=timeout))
    return build("youtube", "v3", http=http, cache_discovery=False)


def _reason(error: HttpError) -> str:
    """First `reason` of the error payload, e.g. 'quotaExceeded' or 'playlistNotFound'."""
    try:
        body = json.loads(error.content.decode("utf-8") if isinstance(error.content, bytes) else error.content)
        return body["error"]["errors"][0]["reason"]
    except (ValueError, KeyError, IndexError, TypeError, AttributeError):
        pass
    text = str(error)
    for reason in QUOTA_REASONS + RATE_REASONS:
        if reason in text:
            return reason
    return ""


class YouTubeClient:
    """YouTube Data API client with quota accounting and retry logic."""

    service = DESTINATION_SERVICE

    def __init__(self, tokens: TokenStore, quota: QuotaTracker, timeout: float = 10,
                 service_factory: Callable[[str, float], Any] = _build_service,
                 max_retries: int = 3):
        self._tokens = tokens
        self._quota = quota
        self._timeout = timeout
        self._service_factory = service_factory
        self._max_retries = max_retries
        self._local = threading.local()

    @property
    def quota(self) -> QuotaTracker:
        return self._quota

    def _get_service(self, force_refresh: bool = False) -> Any:
        """Per-thread service: httplib2.Http, and so the built service, is not thread-safe."""
        token = self._tokens.access_token("google", force_refresh=force_refresh)
        local = self._local
        if getattr(local, "service", None) is None or token != getattr(local, "token", None):
            local.service = self._service_factory(token, self._timeout)
            local.token = token
        return local.service

    def _call(self, name: str, cost: int, make_request: Callable[[Any], Any]) -> dict:
        """Charge quota, execute, retry transient failures, translate errors."""
        self._quota.consume(cost, name)
        refreshed = False
        force_refresh = False
        attempt = 0

        while True:
            service = self._get_service(force_refresh=force_refresh)
            force_refresh = False
            try:
                return make_request(service).execute()
            except HttpError as e:
                status = getattr(e.resp, "status", 0)
                reason = _reason(e)

                if status == 401 and not refreshed:
                    logger.warning(f"YouTube rejected access token on {name}, forcing refresh")
                    refreshed = True
                    force_refresh = True
                    continue

                if status >= 500 and attempt < self._max_retries - 1:
                    wait = 2 ** attempt
                    logger.warning(f"Server error on {name}, retrying in {wait}s...")
                    time.sleep(wait)
                    attempt += 1
                    continue

                raise self._translate(e, status, reason, name)

            except TimeoutError as e:
                raise ProviderTimeout(f"Timeout on {name}: {e}", service=self.service)

            except (ConnectionError, OSError, httplib2.HttpLib2Error) as e:
                if attempt < self._max_retries - 1:
                    wait = 2 ** attempt
                    logger.warning(f"Network error on {name}, retrying in {wait}s...")
                    time.sleep(wait)
                    attempt += 1
                    continue
                raise TransientProviderError(f"Network error on {name}: {e}", service=self.service)

    def _translate(self, error: HttpError, status: int, reason: str, name: str) -> Exception:
        message = f"YouTube {status} on {name}: {reason or error}"

        if reason in QUOTA_REASONS:
            self._quota.exhaust()
            logger.error(f"Quota exceeded on {name}")
            return QuotaExceeded(message, service=self.service, status=status,
                                 retry_after=self._quota.seconds_until_reset())
        if status == 429 or reason in RATE_REASONS:
            return RateLimited(message, service=self.service, status=status)
        if status == 409:
            # SERVICE_UNAVAILABLE on concurrent playlist writes; the state is uncertain
            return TransientProviderError(message, service=self.service, status=status)
        if status == 401:
            return Unauthorized(message, service=self.service, status=status)
        if status == 403:
            return PermissionDenied(message, service=self.service, status=status)
        if status == 404:
            return NotFound(message, service=self.service, status=status)
        if status == 400:
            return InvalidTrack(message, service=self.service, status=status)
        return UnknownProviderError(message, service=self.service, status=status)

    def list_playlists(self) -> list[Playlist]:
        playlists = []
        page_token = None

        while True:
            response = self._call("list playlists", COST_LIST, lambda s: s.playlists().list(
                part="snippet,contentDetails", mine=True, maxResults=50, pageToken=page_token
            ))
            for item in response.get("items", []):
                playlists.append(self._extract_playlist(item))
            page_token = response.get("nextPageToken")
            if not page_token:
                break

        logger.info(f"Retrieved {len(playlists)} YouTube playlists")
        return playlists

    def get_playlist(self, playlist_id: str) -> Playlist:
        response = self._call(f"get playlist {playlist_id}", COST_LIST, lambda s: s.playlists().list(
            part="snippet,contentDetails", id=playlist_id, maxResults=1
        ))
        items = response.get("items", [])
        if not items:
            raise NotFound(f"YouTube playlist {playlist_id} not found", service=self.service, status=404)
        return self._extract_playlist(items[0])

    def _extract_playlist(self, item: dict) -> Playlist:
        return Playlist(
            id=item.get("id", ""),
            name=item.get("snippet", {}).get("title", ""),
            track_count=item.get("contentDetails", {}).get("itemCount", 0),
        )

    def list_tracks(self, playlist_id: str) -> Iterator[Track]:
        """Yield all videos of a playlist, one page (50 items, 1 unit) at a time."""
        page_token = None
        count = 0

        while True:
            response = self._call(f"list playlist {playlist_id}", COST_LIST, lambda s: s.playlistItems().list(
                part="snippet,contentDetails",
                playlistId=playlist_id,
                maxResults=50,
                pageToken=page_token
            ))

            for item in response.get("items", []):
                track = self._extract_item(item)
                if track:
                    count += 1
                    yield track

            page_token = response.get("nextPageToken")
            if not page_token:
                break

        logger.info(f"Retrieved {count} items from YouTube playlist {playlist_id}")

    def _extract_item(self, item: dict) -> Track | None:
        item_id = item.get("id", "")
        snippet = item.get("snippet", {})
        content = item.get("contentDetails", {})

        video_id = content.get("videoId", "")
        if not item_id or not video_id:
            return None

        return Track(
            id=video_id,
            title=snippet.get("title", ""),
            artist=snippet.get("videoOwnerChannelTitle", ""),
            item_id=item_id,
        )

    def add_track(self, playlist_id: str, track_ref: TrackRef) -> None:
        body = {
            "snippet": {
                "playlistId": playlist_id,
                "resourceId": {"kind": "youtube#video", "videoId": track_ref.id}
            }
        }
        self._call(f"add {track_ref.id}", COST_WRITE,
                   lambda s: s.playlistItems().insert(part="snippet", body=body))
        logger.info(f"Added {track_ref.id} to YouTube playlist {playlist_id}")
        time.sleep(WRITE_DELAY)

    def remove_track(self, playlist_id: str, track_ref: TrackRef) -> None:
        item_id = track_ref.item_id or self._find_item_id(playlist_id, track_ref.id)
        self._call(f"remove {item_id}", COST_WRITE,
                   lambda s: s.playlistItems().delete(id=item_id))
        logger.info(f"Removed {track_ref.id} from YouTube playlist {playlist_id}")
        time.sleep(WRITE_DELAY)

    def _find_item_id(self, playlist_id: str, video_id: str) -> str:
        for track in self.list_tracks(playlist_id):
            if track.id == video_id:
                return track.item_id
        raise NotFound(f"Video {video_id} not in playlist {playlist_id}", service=self.service, status=404)

    def rename_playlist(self, playlist_id: str, new_name: str) -> None:
        # playlists.update replaces the whole snippet, so carry the description over
        response = self._call(f"get playlist {playlist_id}", COST_LIST, lambda s: s.playlists().list(
            part="snippet", id=playlist_id, maxResults=1
        ))
        items = response.get("items", [])
        if not items:
            raise NotFound(f"YouTube playlist {playlist_id} not found", service=self.service, status=404)

        snippet = items[0].get("snippet", {})
        body = {
            "id": playlist_id,
            "snippet": {"title": new_name, "description": snippet.get("description", "")},
        }
        self._call(f"rename {playlist_id}", COST_WRITE,
                   lambda s: s.playlists().update(part="snippet", body=body))
        logger.info(f"Renamed YouTube playlist {playlist_id} to '{new_name}'")

    def search_track(self, title: str, artist: str) -> str | None:
        """
        Search the music category for the track and return the best scoring
        video ID: official uploads from the artist's channel first, covers,
        karaoke and live versions last. Falls back to the first hit.
        """
        query = f"{title} {artist} official audio".strip()
        response = self._call(f"search '{title} {artist}'", COST_SEARCH, lambda s: s.search().list(
            part="snippet",
            q=query,
            type="video",
            videoCategoryId="10",  # Music
            maxResults=5
        ))
        items = [i for i in response.get("items", []) if i.get("id", {}).get("videoId")]
        if not items:
            logger.warning(f"No results for: {title} by {artist}")
            return None

        scored = []
        for item in items:
            snippet = item.get("snippet", {})
            score = score_search_result(snippet.get("title", ""), snippet.get("channelTitle", ""), title, artist)
            if score is not None and score > 0:
                scored.append((score, item["id"]["videoId"], snippet.get("title", "")))

        if not scored:
            logger.warning(f"No confident match for '{title}' by '{artist}', using first result")
            return items[0]["id"]["videoId"]

        best_score, best_id, best_title = max(scored, key=lambda s: s[0])
        logger.debug(f"Best match (score={best_score}): {best_title}")
        return best_id
