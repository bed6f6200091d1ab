import json

import pytest

from emotes import RankingStore


def test_missing_file_loads_empty(tmp_path):
    assert RankingStore(tmp_path / "nope.json").load() == {}


@pytest.mark.parametrize("content", ["", "   ", "{not json", "[1, 2, 3]", "\"just a string\""])
def test_corrupt_file_loads_empty(tmp_path, content):
    path = tmp_path / "emoji-rankings.json"
    path.write_text(content)
    assert RankingStore(path).load() == {}


def test_invalid_counts_are_skipped(tmp_path):
    path = tmp_path / "emoji-rankings.json"
    path.write_text(json.dumps({"neg": -1, "text": "5", "flag": True, "float": 1.5, "good": 2}))
    assert RankingStore(path).load() == {"good": 2}


def test_mixed_case_entries_merge_to_one_key(tmp_path):
    path = tmp_path / "emoji-rankings.json"
    path.write_text(json.dumps({"Wave": 3, "wave": 5, "DANCE": 1}))
    assert RankingStore(path).load() == {"wave": 5, "dance": 1}


def test_save_round_trips_and_leaves_no_temp_files(tmp_path):
    path = tmp_path / "data" / "emoji-rankings.json"
    store = RankingStore(path)

    store.save({"wave": 2, "dance": 0})
    store.save({"wave": 3, "dance": 1})

    assert store.load() == {"wave": 3, "dance": 1}
    assert [p.name for p in path.parent.iterdir()] == ["emoji-rankings.json"]


def test_save_failure_raises_oserror(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("file, not a directory")
    with pytest.raises(OSError):
        RankingStore(blocker / "emoji-rankings.json").save({"wave": 1})
