"""Season/episode ordering of file names."""

import re
from typing import List, NamedTuple, Optional

# s01e01, S1E1, 1x01, 01X01
EPISODE_PATTERN = re.compile(r"s(\d{1,2})e(\d{1,2})|(\d{1,2})x(\d{1,2})", re.IGNORECASE)


class Episode(NamedTuple):
    name: str
    season: int
    episode: int


def parse_episode(name: str) -> Optional[Episode]:
    """Extract season and episode numbers, or None if the name has neither pattern."""
    match = EPISODE_PATTERN.search(name)
    if match is None:
        return None
    if match.group(1) is not None:
        season, episode = match.group(1), match.group(2)
    else:
        season, episode = match.group(3), match.group(4)
    return Episode(name, int(season), int(episode))


def sort_episodes(names: List[str]) -> List[str]:
    """
    Order file names by season then episode.

    Names without a recognizable season/episode marker are dropped from the
    result, they cannot be placed in a sequence.
    """
    episodes = [ep for ep in map(parse_episode, names) if ep is not None]
    episodes.sort(key=lambda ep: (ep.season, ep.episode))
    return [ep.name for ep in episodes]


def next_episode(sorted_names: List[str], current: str) -> Optional[str]:
    """Return the entry after ``current``, or None if it is last or absent."""
    try:
        position = sorted_names.index(current)
    except ValueError:
        return None
    if position + 1 < len(sorted_names):
        return sorted_names[position + 1]
    return None
