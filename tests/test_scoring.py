import random

import pytest

from newsletter_workers.jobs.scoring import (
    calculate_total_score,
    evaluate_candidate,
    passes_minimums,
    rescore_criteria,
    score_unrated_candidates,
    scores_from_rating,
)
from newsletter_workers.utils.errors import ContentModuleNotFoundError, InvalidSelectionError


def test_total_score_is_weighted_sum():
    assert calculate_total_score({1: 8, 2: 6}, {1: 2.0, 2: 0.5}) == pytest.approx(19.0)


def test_missing_weight_counts_as_one():
    assert calculate_total_score({1: 8, 2: 6}, {1: 2.0, 2: None}) == pytest.approx(22.0)
    assert calculate_total_score({3: 5}, {}) == pytest.approx(5.0)


def test_missing_score_contributes_nothing():
    assert calculate_total_score({1: 8, 2: None}, {1: 1.0, 2: 3.0, 3: 4.0}) == pytest.approx(8.0)


def test_total_score_matches_manual_sum_for_random_inputs():
    rng = random.Random(7)
    for _ in range(50):
        numbers = rng.sample(range(1, 10), rng.randint(1, 6))
        scores = {n: (rng.randint(0, 10) if rng.random() > 0.2 else None) for n in numbers}
        weights = {n: (round(rng.uniform(0, 3), 2) if rng.random() > 0.2 else None) for n in numbers}

        expected = sum(
            scores[n] * (1.0 if weights[n] is None else weights[n])
            for n in numbers if scores[n] is not None
        )
        assert calculate_total_score(scores, weights) == pytest.approx(expected)


def test_string_keys_are_treated_like_numbers():
    stored = {"1": {"score": 7, "reason": "x"}, "2": 4}
    assert scores_from_rating(stored) == {1: 7.0, 2: 4.0}
    assert calculate_total_score(scores_from_rating(stored), {"1": 2, "2": None}) == pytest.approx(18.0)


def test_evaluate_candidate_records_each_criterion(claude):
    criteria = [
        {"criteria_number": 1, "name": "Impact", "weight": 2.0},
        {"criteria_number": 2, "name": "Novelty", "weight": None},
    ]
    rating = evaluate_candidate(claude, {"id": "c1", "fake_scores": {1: 9, 2: 3}}, criteria)

    assert rating["criteria_scores"]["1"]["score"] == 9
    assert rating["criteria_scores"]["2"]["weight"] is None
    assert rating["total_score"] == pytest.approx(21.0)
    assert claude.calls["score_criterion"] == 2


def test_passes_minimums_only_checks_enforced_criteria():
    criteria = [
        {"criteria_number": 1, "minimum_score": 5, "enforce_minimum": True},
        {"criteria_number": 2, "minimum_score": 9, "enforce_minimum": False},
    ]
    good = {"criteria_scores": {"1": {"score": 6}, "2": {"score": 1}}}
    bad = {"criteria_scores": {"1": {"score": 4}, "2": {"score": 10}}}

    assert passes_minimums(good, criteria)
    assert not passes_minimums(bad, criteria)
    assert passes_minimums({"criteria_scores": None}, criteria)


def test_score_unrated_candidates_persists_ratings(store, claude):
    module = store.add_module()
    store.add_criterion(module["id"], 1, weight=2.0)
    rated = store.add_candidate(title="Rated")
    unrated = store.add_candidate(title="Fresh", fake_scores={1: 7})
    store.add_rating(rated["id"], module["id"], 12.0)

    candidates = store.get_eligible_candidates("issue-x", module)
    scored = score_unrated_candidates(store, claude, module, candidates, batch_size=2, batch_delay=0)

    assert scored == 1
    assert store.get_rating(unrated["id"], module["id"])["total_score"] == pytest.approx(14.0)
    assert store.get_rating(rated["id"], module["id"])["total_score"] == pytest.approx(12.0)
    fresh = next(c for c in candidates if c["id"] == unrated["id"])
    assert fresh["total_score"] == pytest.approx(14.0)


def test_score_unrated_candidates_without_criteria_leaves_them_unrated(store, claude):
    module = store.add_module()
    store.add_candidate()

    candidates = store.get_eligible_candidates("issue-x", module)
    assert score_unrated_candidates(store, claude, module, candidates, batch_delay=0) == 0
    assert claude.calls["score_criterion"] == 0


def test_rescore_keeps_unaffected_criteria(store, claude):
    module = store.add_module()
    store.add_criterion(module["id"], 1, weight=2.0)
    store.add_criterion(module["id"], 2, weight=1.0)
    store.add_criterion(module["id"], 3, weight=0.5)
    candidate = store.add_candidate(fake_scores={2: 10})
    store.add_rating(candidate["id"], module["id"], 24.0, {
        "1": {"score": 8, "weight": 2.0, "reason": "a"},
        "2": {"score": 6, "weight": 1.0, "reason": "b"},
        "3": {"score": 4, "weight": 0.5, "reason": "c"},
    })

    result = rescore_criteria(store, claude, module["id"], [candidate["id"]], [2])

    assert result == {"rescored": 1, "skipped": 0, "errors": []}
    rating = store.get_rating(candidate["id"], module["id"])
    assert rating["criteria_scores"]["1"]["score"] == 8
    assert rating["criteria_scores"]["2"]["score"] == 10
    assert rating["criteria_scores"]["3"]["score"] == 4
    assert rating["total_score"] == pytest.approx(28.0)
    assert claude.calls["score_criterion"] == 1


def test_rescore_adds_scores_for_candidates_without_a_rating(store, claude):
    module = store.add_module()
    store.add_criterion(module["id"], 1, weight=3.0)
    store.add_criterion(module["id"], 2, weight=1.0)
    candidate = store.add_candidate(fake_scores={1: 4})

    rescore_criteria(store, claude, module["id"], [candidate["id"]], [1])

    rating = store.get_rating(candidate["id"], module["id"])
    assert set(rating["criteria_scores"]) == {"1"}
    assert rating["total_score"] == pytest.approx(12.0)


def test_rescore_reports_missing_candidates(store, claude):
    module = store.add_module()
    store.add_criterion(module["id"], 1)

    result = rescore_criteria(store, claude, module["id"], ["nope"], [1])

    assert result["rescored"] == 0
    assert result["skipped"] == 1
    assert result["errors"][0]["candidate_id"] == "nope"


def test_rescore_rejects_unknown_criteria(store, claude):
    module = store.add_module()
    store.add_criterion(module["id"], 1)
    candidate = store.add_candidate()

    with pytest.raises(InvalidSelectionError):
        rescore_criteria(store, claude, module["id"], [candidate["id"]], [1, 9])


def test_rescore_unknown_module(store, claude):
    with pytest.raises(ContentModuleNotFoundError):
        rescore_criteria(store, claude, "missing", ["c"], [1])
