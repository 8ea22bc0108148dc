"""Shared fixtures: in-memory record store, controllable clock and scripted playlist adapters."""

from datetime import datetime, timedelta, timezone

import pytest

from spotube.core.activity import ActivityLogger
from spotube.core.blacklist import BlacklistGate
from spotube.core.errors import NotFound
from spotube.core.models import DESTINATION_SERVICE, MAPPINGS, SOURCE_SERVICE, Playlist, Track, TrackRef
from spotube.core.store import RecordStore


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, minutes: float = 0) -> None:
        self.now += timedelta(seconds=seconds, minutes=minutes)


class FakeAdapter:
    """In-memory playlist service. Errors queued in `errors[method]` are raised one per call."""

    def __init__(self, service: str):
        self.service = service
        self.playlists: dict[str, Playlist] = {}
        self.tracks: dict[str, list[Track]] = {}
        self.catalog: dict[tuple[str, str], str] = {}
        self.titles: dict[str, Track] = {}
        self.errors: dict[str, list[Exception]] = {}
        self.calls: list[tuple] = []
        self._item_seq = 0

    def add_playlist(self, playlist_id: str, name: str, tracks: list[Track] | None = None) -> None:
        self.playlists[playlist_id] = Playlist(playlist_id, name)
        self.tracks[playlist_id] = list(tracks or [])

    def _maybe_fail(self, method: str) -> None:
        queued = self.errors.get(method)
        if queued:
            raise queued.pop(0)

    def list_playlists(self) -> list[Playlist]:
        self._maybe_fail("list_playlists")
        return list(self.playlists.values())

    def get_playlist(self, playlist_id: str) -> Playlist:
        self.calls.append(("get_playlist", playlist_id))
        self._maybe_fail("get_playlist")
        if playlist_id not in self.playlists:
            raise NotFound(f"playlist {playlist_id} not found", service=self.service, status=404)
        playlist = self.playlists[playlist_id]
        return Playlist(playlist.id, playlist.name, len(self.tracks[playlist_id]))

    def list_tracks(self, playlist_id: str):
        self.calls.append(("list_tracks", playlist_id))
        self._maybe_fail("list_tracks")
        yield from list(self.tracks.get(playlist_id, []))

    def add_track(self, playlist_id: str, track_ref: TrackRef) -> None:
        self.calls.append(("add_track", playlist_id, track_ref.id))
        self._maybe_fail("add_track")
        self._item_seq += 1
        known = self.titles.get(track_ref.id, Track(track_ref.id, track_ref.id))
        self.tracks.setdefault(playlist_id, []).append(
            Track(track_ref.id, known.title, known.artist, item_id=f"item{self._item_seq}"))

    def remove_track(self, playlist_id: str, track_ref: TrackRef) -> None:
        self.calls.append(("remove_track", playlist_id, track_ref.id))
        self._maybe_fail("remove_track")
        self.tracks[playlist_id] = [t for t in self.tracks.get(playlist_id, []) if t.id != track_ref.id]

    def rename_playlist(self, playlist_id: str, new_name: str) -> None:
        self.calls.append(("rename_playlist", playlist_id, new_name))
        self._maybe_fail("rename_playlist")
        self.playlists[playlist_id].name = new_name

    def search_track(self, title: str, artist: str) -> str | None:
        self.calls.append(("search_track", title, artist))
        self._maybe_fail("search_track")
        return self.catalog.get((title, artist))

    def publish(self, video_id: str, title: str, artist: str, channel: str = "") -> None:
        """Make a video findable by search for (title, artist)."""
        self.catalog[(title, artist)] = video_id
        self.titles[video_id] = Track(video_id, f"{artist} - {title}", channel or artist)

    def call_names(self) -> list[str]:
        return [c[0] for c in self.calls]


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return RecordStore()


@pytest.fixture
def activity(store):
    return ActivityLogger(store)


@pytest.fixture
def blacklist(store):
    return BlacklistGate(store)


@pytest.fixture
def spotify():
    return FakeAdapter(SOURCE_SERVICE)


@pytest.fixture
def youtube():
    return FakeAdapter(DESTINATION_SERVICE)


@pytest.fixture
def adapters(spotify, youtube):
    return {SOURCE_SERVICE: spotify, DESTINATION_SERVICE: youtube}


@pytest.fixture
def make_mapping(store):
    def _make(source="sp1", destination="yt1", **overrides):
        record = {
            "source_playlist_id": source,
            "destination_playlist_id": destination,
            "source_playlist_name": "",
            "destination_playlist_name": "",
            "sync_name": True,
            "sync_tracks": True,
            "interval_minutes": 60,
            "last_analyzed_at": "",
            "next_analysis_at": "",
        }
        record.update(overrides)
        return store.insert(MAPPINGS, record)
    return _make
