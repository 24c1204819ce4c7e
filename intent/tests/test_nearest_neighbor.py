"""
Tests for the nearest-neighbor exemplar index.
"""

import json
import threading

import pytest

from ..config import DEFAULT_TRAINING_DATA_PATH
from ..nearest_neighbor import NearestNeighborIndex, normalize, tokenize


def test_normalize_and_tokenize():
    assert normalize("  Remind   ME\tto Call ") == "remind me to call"
    assert tokenize("email bob@example.com at 3:30 #work") == ["email", "bob@example.com", "at", "3:30", "#work"]


def test_exact_match_returns_full_confidence_and_slots():
    index = NearestNeighborIndex()
    index.append("create_event", "Lunch with Ana", {"title": "Lunch with Ana"})

    match = index.classify("  lunch WITH ana ")

    assert match.exact is True
    assert match.intent == "create_event"
    assert match.confidence == 1.0
    assert match.slots == {"title": "Lunch with Ana"}


def test_latest_exemplar_wins_exact_lookup():
    index = NearestNeighborIndex()
    index.append("create_event", "book flight to paris", {})
    index.append("none", "book flight to paris", {})

    assert index.classify("book flight to paris").intent == "none"
    assert index.size == 2


def test_returned_slots_are_a_copy():
    index = NearestNeighborIndex()
    index.append("create_note", "note milk", {"note_body": "milk"})
    index.classify("note milk").slots["note_body"] = "changed"
    assert index.classify("note milk").slots == {"note_body": "milk"}


def test_similar_utterance_votes_for_intent(seeded_index):
    match = seeded_index.classify("remind me to call dad")

    assert match.exact is False
    assert match.intent == "add_reminder"
    assert match.confidence == pytest.approx(0.95)
    assert match.slots == {}
    assert match.nearest_text == "remind me to call mom"


def test_non_exact_confidence_is_capped(seeded_index):
    match = seeded_index.classify("check my email please")
    assert match is not None
    assert match.intent == "read_email"
    assert 0.0 <= match.confidence <= 0.95


def test_no_match_below_similarity_floor(seeded_index):
    assert seeded_index.classify("xyzzy plugh") is None
    assert seeded_index.classify("   ") is None


def test_similarity_bounds():
    tokens = ("remind", "me", "to", "call", "mom")
    assert NearestNeighborIndex.similarity(list(tokens), tokens) == 1.0
    assert NearestNeighborIndex.similarity(["xyzzy"], tokens) == 0.0
    assert NearestNeighborIndex.similarity([], tokens) == 0.0


def test_keyword_bonus_raises_similarity():
    query = ["remind", "me", "later"]
    exemplar = ("remind", "me", "soon")
    plain = NearestNeighborIndex.similarity(query, exemplar)
    boosted = NearestNeighborIndex.similarity(
        query, exemplar, frozenset({"add_reminder"}), frozenset({"add_reminder"})
    )
    assert boosted > plain


def test_append_rejects_empty_text():
    with pytest.raises(ValueError):
        NearestNeighborIndex().append("create_note", "   ")


def test_load_dataset_list_and_object_formats(tmp_path):
    as_list = tmp_path / "list.json"
    as_list.write_text(json.dumps([
        {"text": "check my inbox", "intent": "read_email"},
        {"text": "", "intent": "read_email"},
        {"intent": "missing text"},
        {"text": "water the ferns", "intent": "banana"},
    ]))
    as_object = tmp_path / "object.json"
    as_object.write_text(json.dumps({"examples": [
        {"text": "send mail to bob", "intent": "send_email", "slots": {"email_to": ["bob"]}},
    ]}))

    index = NearestNeighborIndex()
    assert index.load_dataset(str(as_list)) == 1
    assert index.load_dataset(str(as_object)) == 1
    assert index.intent_counts() == {"read_email": 1, "send_email": 1}
    assert index.classify("send mail to bob").slots == {"email_to": ["bob"]}


def test_load_dataset_errors(tmp_path):
    index = NearestNeighborIndex()
    with pytest.raises(OSError):
        index.load_dataset(str(tmp_path / "missing.json"))

    broken = tmp_path / "broken.json"
    broken.write_text("{not json")
    with pytest.raises(ValueError):
        index.load_dataset(str(broken))

    wrong_shape = tmp_path / "shape.json"
    wrong_shape.write_text(json.dumps({"examples": "nope"}))
    with pytest.raises(ValueError):
        index.load_dataset(str(wrong_shape))


def test_bundled_dataset_covers_every_intent():
    index = NearestNeighborIndex()
    loaded = index.load_dataset(DEFAULT_TRAINING_DATA_PATH)
    counts = index.intent_counts()

    assert loaded == len(index)
    assert set(counts) == {"create_event", "add_reminder", "create_note", "read_email", "send_email", "none"}
    assert all(n >= 10 for n in counts.values())


def test_concurrent_appends_are_all_kept():
    index = NearestNeighborIndex()

    def worker(n):
        for i in range(50):
            index.append("create_note", f"note {n} {i}")

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert index.size == 200
