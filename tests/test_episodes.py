from torrentwatch.episodes import next_episode, parse_episode, sort_episodes


def test_sorts_by_season_then_episode():
    names = ["Show S01E02.mkv", "Show S01E01.mkv", "Show S02E01.mkv"]

    assert sort_episodes(names) == [
        "Show S01E01.mkv",
        "Show S01E02.mkv",
        "Show S02E01.mkv",
    ]


def test_names_without_episode_marker_are_dropped():
    names = ["Show S01E02.mkv", "Extras.mkv", "Show S01E01.mkv"]

    result = sort_episodes(names)

    assert "Extras.mkv" not in result
    assert result == ["Show S01E01.mkv", "Show S01E02.mkv"]


def test_cross_format_and_case_insensitive():
    names = ["show.2x01.mkv", "SHOW.s01e10.MKV", "show 1X02.mkv"]

    assert sort_episodes(names) == ["show 1X02.mkv", "SHOW.s01e10.MKV", "show.2x01.mkv"]


def test_numeric_not_lexicographic_order():
    names = ["Show S01E10.mkv", "Show S01E9.mkv"]

    assert sort_episodes(names) == ["Show S01E9.mkv", "Show S01E10.mkv"]


def test_parse_episode():
    assert parse_episode("Show.S03E07.1080p.mkv").season == 3
    assert parse_episode("Show.S03E07.1080p.mkv").episode == 7
    assert parse_episode("Show 4x12.avi")[1:] == (4, 12)
    assert parse_episode("Movie (2019).mkv") is None


def test_next_episode():
    ordered = ["a S01E01", "a S01E02"]

    assert next_episode(ordered, "a S01E01") == "a S01E02"
    assert next_episode(ordered, "a S01E02") is None
    assert next_episode(ordered, "missing") is None
