from spotube.core.matching import (
    MatchPolicy, fuzzy_contains, normalize, normalize_video_title, score_search_result,
)
from spotube.core.models import Track


def test_normalize():
    assert normalize("  Hello   World ") == "hello world"


def test_normalize_video_title_drops_decorations():
    assert normalize_video_title("Artist - Song (Official Music Video)") == "artist - song"
    assert normalize_video_title("Artist - Song [Lyrics]") == "artist - song"
    assert normalize_video_title("Artist - Song (feat. Someone)") == "artist - song (feat. someone)"


class TestTitleArtistPolicy:
    policy = MatchPolicy("title_artist")

    def test_title_and_artist_in_video_title(self):
        assert self.policy.matches(Track("s1", "Blinding Lights", "The Weeknd"),
                                   Track("v1", "The Weeknd - Blinding Lights (Official Audio)", "Some Channel"))

    def test_artist_from_channel(self):
        assert self.policy.matches(Track("s1", "Blinding Lights", "The Weeknd"),
                                   Track("v1", "Blinding Lights", "The Weeknd"))

    def test_wrong_artist(self):
        assert not self.policy.matches(Track("s1", "Blinding Lights", "The Weeknd"),
                                       Track("v1", "Blinding Lights (cover)", "Karaoke Hits"))

    def test_empty_title_never_matches(self):
        assert not self.policy.matches(Track("s1", "", "Anyone"), Track("v1", "Anyone - Something", "Anyone"))


class TestTitlePolicy:
    policy = MatchPolicy("title")

    def test_exact_title(self):
        assert self.policy.matches(Track("s1", "Song", "A"), Track("v1", "Song (Official Video)", "Other"))

    def test_containment_is_not_enough(self):
        assert not self.policy.matches(Track("s1", "Song", "A"), Track("v1", "A - Song", "A"))


class TestPair:
    def test_one_to_one(self):
        policy = MatchPolicy("title")
        source = [Track("s1", "Song", "A"), Track("s2", "Song", "A")]
        destination = [Track("v1", "Song", "A")]

        missing, extra = policy.pair(source, destination)

        assert [t.id for t in missing] == ["s2"]
        assert extra == []

    def test_resolved_ids_take_priority(self):
        policy = MatchPolicy("title", resolved={"s2": "v1"})
        source = [Track("s1", "Song", "A"), Track("s2", "Different", "B")]
        destination = [Track("v1", "Song", "A")]

        missing, extra = policy.pair(source, destination)

        assert [t.id for t in missing] == ["s1"]
        assert extra == []

    def test_unmatched_destination_returned(self):
        policy = MatchPolicy("title_artist")
        missing, extra = policy.pair([], [Track("v1", "Anything", "Anyone")])

        assert missing == []
        assert [t.id for t in extra] == ["v1"]


class TestSearchScoring:
    def test_fuzzy_contains(self):
        assert fuzzy_contains("weeknd - blinding lights", "blinding lights")
        assert fuzzy_contains("theweekndvevo", "the weeknd")
        assert not fuzzy_contains("blinding lights", "weeknd")

    def test_requires_track_title(self):
        assert score_search_result("Something Else", "Artist", "Song", "Artist") is None

    def test_official_upload_beats_cover(self):
        official = score_search_result("Artist - Song (Official Audio)", "ArtistVEVO", "Song", "Artist")
        cover = score_search_result("Song (Acoustic Cover)", "Covers Channel", "Song", "Artist")

        assert official == 10 + 10 + 5 + 3 + 2 + 3
        assert cover == 0

    def test_penalty_waived_when_source_has_keyword(self):
        remix = score_search_result("Artist - Song (Club Remix)", "Other", "Song (Club Remix)", "Artist")
        assert remix == 20
