"""Common contract of the playlist API adapters."""

from typing import Iterator, Protocol

from spotube.core.models import Playlist, Track, TrackRef


class PlaylistAdapter(Protocol):
    service: str

    def list_playlists(self) -> list[Playlist]: ...
    def get_playlist(self, playlist_id: str) -> Playlist: ...
    def list_tracks(self, playlist_id: str) -> Iterator[Track]: ...
    def add_track(self, playlist_id: str, track_ref: TrackRef) -> None: ...
    def remove_track(self, playlist_id: str, track_ref: TrackRef) -> None: ...
    def rename_playlist(self, playlist_id: str, new_name: str) -> None: ...
    def search_track(self, title: str, artist: str) -> str | None: ...
