"""
Cross-service track matching.

Spotify and YouTube IDs live in unrelated spaces, so a destination video is
tied to a source track either through a previously resolved ID (search cache)
or by comparing normalized titles. The comparison is a policy:

- "title": normalized video title equals the normalized track title
- "title_artist": normalized video title contains both track title and artist

The heuristic can pair a cover or remix with the original; the policy is
configurable rather than tuned.
"""

import re
from dataclasses import dataclass, field

from spotube.core.models import Track

_BRACKETS = re.compile(r"[\(\[][^\)\]]*(official|audio|video|lyrics?|visuali[sz]er|hd|4k)[^\)\]]*[\)\]]",
                       re.IGNORECASE)


def normalize(s: str) -> str:
    """Lowercase, collapse whitespace."""
    return " ".join(s.lower().split())


def normalize_video_title(title: str) -> str:
    """Normalize and drop '(Official Video)'-style decorations."""
    return normalize(_BRACKETS.sub(" ", title))


@dataclass
class MatchPolicy:
    mode: str = "title_artist"
    resolved: dict[str, str] = field(default_factory=dict)  # source track id -> destination id

    def matches(self, source: Track, destination: Track) -> bool:
        if self.resolved.get(source.id) == destination.id:
            return True

        video_title = normalize_video_title(destination.title)
        track_title = normalize(source.title)
        if not track_title:
            return False
        if self.mode == "title":
            return video_title == track_title

        artist = normalize(source.artist)
        if track_title not in video_title:
            return False
        return not artist or artist in video_title or artist in normalize(destination.artist)

    def pair(self, source_tracks: list[Track],
             destination_tracks: list[Track]) -> tuple[list[Track], list[Track]]:
        """
        Pair tracks one-to-one. Returns (unmatched source, unmatched destination).
        A destination track is consumed by the first source track it matches, so
        duplicates on either side stay visible.
        """
        remaining = list(destination_tracks)
        pending = []
        # Resolved IDs first so a title lookalike cannot steal the real match
        for track in source_tracks:
            resolved = self.resolved.get(track.id)
            index = next((i for i, c in enumerate(remaining) if resolved and c.id == resolved), None)
            if index is None:
                pending.append(track)
            else:
                del remaining[index]

        unmatched_source = []
        for track in pending:
            for i, candidate in enumerate(remaining):
                if self.matches(track, candidate):
                    del remaining[i]
                    break
            else:
                unmatched_source.append(track)
        return unmatched_source, remaining


# (keyword, where it is looked for, weight). Penalties are waived when the
# source title itself carries the keyword, e.g. a track that is a remix.
SEARCH_SIGNALS = (
    ("official", "title", 3),
    ("audio", "title", 2),
    ("vevo", "channel", 3),
    ("cover", "title", -10),
    ("remix", "title", -5),
    ("live", "title", -3),
    ("karaoke", "title", -10),
    ("instrumental", "title", -10),
)


def fuzzy_contains(haystack: str, needle: str) -> bool:
    """Containment that tolerates a missing word, e.g. "The Weeknd" in "Weeknd - ..."."""
    if needle in haystack:
        return True
    words = needle.split()
    if len(words) < 2:
        return False
    return sum(1 for word in words if word in haystack) >= len(words) * 0.7


def score_search_result(video_title: str, channel: str, title: str, artist: str) -> int | None:
    """
    Score a destination search hit for a source track. None means the video
    title does not carry the track title at all.

    +10 track title in video title (required), +10 artist in video title,
    +5 artist in channel name, then the SEARCH_SIGNALS adjustments.
    """
    video_title = video_title.lower()
    channel = channel.lower()
    title = title.lower()
    artist = artist.lower()

    if not fuzzy_contains(video_title, title):
        return None

    score = 10
    if artist and fuzzy_contains(video_title, artist):
        score += 10
    if artist and fuzzy_contains(channel, artist):
        score += 5

    fields = {"title": video_title, "channel": channel}
    for keyword, where, weight in SEARCH_SIGNALS:
        if keyword not in fields[where]:
            continue
        if weight < 0 and keyword in title:
            continue
        score += weight
    return score
