import json
from unittest.mock import Mock

import pytest
import requests

from spotube.clients import spotify as spotify_module
from spotube.clients.spotify import SpotifyClient
from spotube.core.errors import (
    InvalidTrack, NotFound, PermissionDenied, ProviderTimeout, RateLimited, TransientProviderError,
    Unauthorized, UnknownProviderError,
)
from spotube.core.models import TrackRef


def response(status=200, body=None, headers=None):
    resp = Mock(status_code=status, headers=headers or {})
    resp.content = json.dumps(body).encode() if body is not None else b""
    resp.text = resp.content.decode()
    resp.json.return_value = body
    return resp


def track_item(track_id, name, artist="Artist", **extra):
    track = {"id": track_id, "name": name, "type": "track", "is_local": False,
             "artists": [{"name": artist}], "album": {"name": "Album"}}
    track.update(extra)
    return {"track": track}


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr(spotify_module, "PAGE_DELAY", 0)


@pytest.fixture
def tokens():
    tokens = Mock()
    tokens.access_token.return_value = "tok"
    return tokens


@pytest.fixture
def session():
    return Mock(spec=requests.Session)


@pytest.fixture
def client(tokens, session):
    return SpotifyClient(tokens, session=session, timeout=5)


class TestReads:
    def test_get_playlist(self, client, session):
        session.request.return_value = response(body={"id": "sp1", "name": "Road Trip", "tracks": {"total": 3}})

        playlist = client.get_playlist("sp1")

        assert (playlist.id, playlist.name, playlist.track_count) == ("sp1", "Road Trip", 3)
        args, kwargs = session.request.call_args
        assert args == ("GET", "https://api.spotify.com/v1/playlists/sp1")
        assert kwargs["headers"] == {"Authorization": "Bearer tok"}
        assert kwargs["timeout"] == 5

    def test_list_tracks_paginates_and_filters(self, client, session):
        session.request.side_effect = [
            response(body={
                "items": [
                    track_item("t1", "One"),
                    track_item("t2", "Local", is_local=True),
                    track_item("e1", "Podcast", type="episode"),
                    {"track": None},
                ],
                "next": "https://api.spotify.com/v1/playlists/sp1/tracks?offset=100",
            }),
            response(body={"items": [track_item("t3", "Three", "Other")], "next": None}),
        ]

        tracks = list(client.list_tracks("sp1"))

        assert [(t.id, t.title, t.artist) for t in tracks] == [("t1", "One", "Artist"), ("t3", "Three", "Other")]
        second_call = session.request.call_args_list[1]
        assert second_call.args[1].endswith("offset=100")
        assert second_call.kwargs["params"] is None

    def test_list_playlists(self, client, session):
        session.request.return_value = response(body={
            "items": [{"id": "sp1", "name": "A", "tracks": {"total": 2}}], "next": None,
        })
        assert [p.name for p in client.list_playlists()] == ["A"]

    def test_search_prefers_exact_name(self, client, session):
        session.request.return_value = response(body={"tracks": {"items": [
            {"id": "t1", "name": "Song (Remix)"}, {"id": "t2", "name": "song"},
        ]}})

        assert client.search_track("Song", "Artist") == "t2"
        assert session.request.call_args.kwargs["params"]["q"] == "track:Song artist:Artist"

    def test_search_no_results(self, client, session):
        session.request.return_value = response(body={"tracks": {"items": []}})
        assert client.search_track("Song", "Artist") is None


class TestWrites:
    def test_add_track(self, client, session):
        session.request.return_value = response(201, {"snapshot_id": "x"})
        client.add_track("sp1", TrackRef("t1"))

        args, kwargs = session.request.call_args
        assert args == ("POST", "https://api.spotify.com/v1/playlists/sp1/tracks")
        assert kwargs["json"] == {"uris": ["spotify:track:t1"]}

    def test_remove_track(self, client, session):
        session.request.return_value = response(200, {"snapshot_id": "x"})
        client.remove_track("sp1", TrackRef("t1"))

        assert session.request.call_args.kwargs["json"] == {"tracks": [{"uri": "spotify:track:t1"}]}

    def test_rename_with_empty_body(self, client, session):
        session.request.return_value = response(200)
        client.rename_playlist("sp1", "New")

        args, kwargs = session.request.call_args
        assert args[0] == "PUT"
        assert kwargs["json"] == {"name": "New"}


class TestErrors:
    @pytest.mark.parametrize("status,error", [
        (400, InvalidTrack),
        (403, PermissionDenied),
        (404, NotFound),
        (500, UnknownProviderError),
    ])
    def test_status_translation(self, client, session, status, error):
        session.request.return_value = response(status, {"error": {"status": status, "message": "bad"}})
        with pytest.raises(error):
            client.get_playlist("sp1")

    def test_rate_limit_carries_retry_after(self, client, session):
        session.request.return_value = response(429, {"error": {"message": "slow"}}, {"Retry-After": "30"})

        with pytest.raises(RateLimited) as exc_info:
            client.add_track("sp1", TrackRef("t1"))

        assert exc_info.value.retry_after == 30
        assert client.rate_limit_retry_after == 30

    def test_401_forces_one_refresh(self, client, session, tokens):
        session.request.side_effect = [response(401, {"error": {"message": "expired"}}),
                                       response(body={"id": "sp1", "name": "A"})]

        assert client.get_playlist("sp1").name == "A"
        assert tokens.access_token.call_args_list[1].kwargs == {"force_refresh": True}

    def test_repeated_401_is_unauthorized(self, client, session):
        session.request.return_value = response(401, {"error": {"message": "revoked"}})
        with pytest.raises(Unauthorized):
            client.get_playlist("sp1")
        assert session.request.call_count == 2

    def test_timeout(self, client, session):
        session.request.side_effect = requests.Timeout("slow")
        with pytest.raises(ProviderTimeout):
            client.get_playlist("sp1")

    def test_connection_error(self, client, session):
        session.request.side_effect = requests.ConnectionError("down")
        with pytest.raises(TransientProviderError):
            client.get_playlist("sp1")
