import threading

import pytest

from newsletter_workers.jobs.finalize import finalize_issue, rank_module_articles
from newsletter_workers.utils.errors import InvalidWorkflowStateError, StepCancelledError


def _prepare(store, issue, module, scores, mode="score_based", eligible_count=None, fact_checks=None):
    """Selection, claims and fully generated articles for one module"""
    ids = []
    for i, score in enumerate(scores):
        candidate = store.add_candidate(id=f"{module['name']}-{i}", title=f"{module['name']} source {i}")
        store.add_rating(candidate["id"], module["id"], score)
        ids.append(candidate["id"])

    store.upsert_module_selection(issue["id"], module["id"], ids, mode,
                                  eligible_count if eligible_count is not None else len(ids))
    store.assign_candidates(issue["id"], module["id"], ids)
    store.create_module_articles(issue["id"], module["id"], ids)
    for article in store.get_module_articles(issue["id"], module["id"]):
        passed = (fact_checks or {}).get(article["candidate_id"], True)
        store.update_module_article(article["id"], {
            "headline": f"Headline {article['candidate_id']}",
            "content": "Body",
            "fact_check_score": 25.0 if passed else 10.0,
            "fact_check_passed": passed,
        })
    return ids


def test_rank_orders_by_score_and_keeps_selection_order_on_ties():
    articles = [
        {"id": "a", "content": "x", "total_score": 5.0},
        {"id": "b", "content": "x", "total_score": 9.0},
        {"id": "c", "content": "x", "total_score": 5.0},
        {"id": "d", "content": None, "total_score": 10.0},
    ]
    ranked = rank_module_articles(articles, "score_based", "advisory")
    assert [a["id"] for a in ranked] == ["b", "a", "c"]


def test_rank_keeps_operator_order_for_manual_selections():
    articles = [
        {"id": "a", "content": "x", "total_score": 1.0},
        {"id": "b", "content": "x", "total_score": 9.0},
    ]
    assert [a["id"] for a in rank_module_articles(articles, "manual", "advisory")] == ["a", "b"]


def test_finalize_picks_top_articles_and_releases_the_rest(store, claude):
    issue = store.add_issue(workflow_state="finalizing")
    module = store.add_module(name="news", target_count=2)
    _prepare(store, issue, module, [5.0, 9.0, 7.0])

    result = finalize_issue(store, claude, issue, [module], policy="advisory")

    articles = {a["candidate_id"]: a for a in store.get_module_articles(issue["id"], module["id"])}
    assert (articles["news-1"]["rank"], articles["news-1"]["is_active"]) == (1, True)
    assert (articles["news-2"]["rank"], articles["news-2"]["is_active"]) == (2, True)
    assert (articles["news-0"]["rank"], articles["news-0"]["is_active"]) == (None, False)

    assert result["winners"] == 2
    assert result["released"] == 1
    assert [a["candidate_id"] for a in store.get_assignments(issue["id"])] == ["news-1", "news-2"]
    assert store.get_module_selection(issue["id"], module["id"])["candidate_ids"] == ["news-1", "news-2"]

    final = store.get_issue(issue["id"])
    assert final["status"] == "draft"
    assert final["workflow_state"] == "draft"
    assert final["subject_line"] == "Today: Headline news-1"
    assert final["welcome_summary"] == "2 stories today"


def test_subject_line_comes_from_the_first_article_module(store, claude):
    issue = store.add_issue(workflow_state="finalizing")
    lead = store.add_module(name="lead", target_count=1, display_order=0)
    second = store.add_module(name="more", target_count=1, display_order=1)
    _prepare(store, issue, lead, [1.0])
    _prepare(store, issue, second, [10.0])

    result = finalize_issue(store, claude, issue, [lead, second])

    assert result["subject_line"] == "Today: Headline lead-0"


def test_exclude_policy_drops_failed_fact_checks(store, claude):
    issue = store.add_issue(workflow_state="finalizing")
    module = store.add_module(name="news", target_count=2)
    _prepare(store, issue, module, [9.0, 5.0, 3.0], fact_checks={"news-0": False})

    finalize_issue(store, claude, issue, [module], policy="exclude")

    active = [a["candidate_id"] for a in store.get_module_articles(issue["id"], module["id"]) if a["is_active"]]
    assert active == ["news-1", "news-2"]


def test_advisory_policy_keeps_failed_fact_checks(store, claude):
    issue = store.add_issue(workflow_state="finalizing")
    module = store.add_module(name="news", target_count=2)
    _prepare(store, issue, module, [9.0, 5.0, 3.0], fact_checks={"news-0": False})

    finalize_issue(store, claude, issue, [module], policy="advisory")

    active = [a["candidate_id"] for a in store.get_module_articles(issue["id"], module["id"]) if a["is_active"]]
    assert active == ["news-0", "news-1"]


def test_manual_selection_keeps_operator_order_and_row(store, claude):
    issue = store.add_issue(workflow_state="finalizing")
    module = store.add_module(name="news", target_count=3)
    _prepare(store, issue, module, [1.0, 9.0], mode="manual")

    finalize_issue(store, claude, issue, [module])

    ranks = {a["candidate_id"]: a["rank"] for a in store.get_module_articles(issue["id"], module["id"])}
    assert ranks == {"news-0": 1, "news-1": 2}
    selection = store.get_module_selection(issue["id"], module["id"])
    assert selection["selection_mode"] == "manual"
    assert selection["candidate_ids"] == ["news-0", "news-1"]


def test_finalize_leaves_the_rotation_cursor_alone(store, claude):
    issue = store.add_issue(workflow_state="finalizing")
    module = store.add_module(name="news", selection_mode="sequential", target_count=2, next_position=4)
    _prepare(store, issue, module, [1.0, 2.0], mode="sequential", eligible_count=5)

    finalize_issue(store, claude, issue, [store.get_module(module["id"])])

    assert store.modules[module["id"]]["next_position"] == 4
    assert store.get_module_selection(issue["id"], module["id"])["cursor_advanced_at"] is None


def test_exclude_policy_trims_manual_selection_to_the_winners(store, claude):
    issue = store.add_issue(workflow_state="finalizing")
    module = store.add_module(name="news", target_count=3)
    _prepare(store, issue, module, [1.0, 9.0, 4.0], mode="manual", fact_checks={"news-1": False})

    result = finalize_issue(store, claude, issue, [module], policy="exclude")

    selection = store.get_module_selection(issue["id"], module["id"])
    assert selection["candidate_ids"] == ["news-0", "news-2"]
    assert selection["selection_mode"] == "manual"
    assert result["released"] == 1
    assert [a["candidate_id"] for a in store.get_assignments(issue["id"])] == ["news-0", "news-2"]


def test_finalize_does_not_overwrite_an_issue_that_left_finalizing(store, claude):
    issue = store.add_issue(status="failed", workflow_state="failed", workflow_error="finalizing: timed out")
    module = store.add_module(name="news", target_count=1)
    _prepare(store, issue, module, [3.0])

    with pytest.raises(InvalidWorkflowStateError):
        finalize_issue(store, claude, issue, [module])

    final = store.get_issue(issue["id"])
    assert (final["status"], final["workflow_state"]) == ("failed", "failed")
    assert final["workflow_error"] == "finalizing: timed out"


def test_cancelled_finalize_stops_before_writing(store, claude):
    issue = store.add_issue(workflow_state="finalizing")
    module = store.add_module(name="news", target_count=1)
    _prepare(store, issue, module, [3.0])
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(StepCancelledError):
        finalize_issue(store, claude, issue, [module], cancel=cancel)

    assert store.get_issue(issue["id"])["workflow_state"] == "finalizing"
    assert claude.calls["generate_subject_line"] == 0


def test_non_article_selection_is_kept_as_is(store, claude):
    issue = store.add_issue(workflow_state="finalizing")
    module = store.add_module(name="prompt", module_type="prompt", selection_mode="priority", target_count=1)
    store.add_candidate(id="p1", family="prompt")
    store.upsert_module_selection(issue["id"], module["id"], ["p1"], "priority", 1)
    store.assign_candidates(issue["id"], module["id"], ["p1"])

    result = finalize_issue(store, claude, issue, [module])

    assert result["modules"][module["id"]] == 1
    assert result["released"] == 0
    assert store.get_issue(issue["id"])["subject_line"] is None
    assert claude.calls["generate_subject_line"] == 0


def test_existing_subject_and_welcome_are_not_regenerated(store, claude):
    issue = store.add_issue(workflow_state="finalizing", subject_line="Hand written", welcome_summary="Already here")
    module = store.add_module(name="news", target_count=1)
    _prepare(store, issue, module, [3.0])

    result = finalize_issue(store, claude, issue, [module])

    assert result["subject_line"] == "Hand written"
    assert claude.calls["generate_subject_line"] == 0
    assert claude.calls["generate_welcome"] == 0
    assert store.get_issue(issue["id"])["status"] == "draft"


def test_modules_without_a_selection_are_skipped(store, claude):
    issue = store.add_issue(workflow_state="finalizing")
    module = store.add_module(name="news")

    result = finalize_issue(store, claude, issue, [module])

    assert result["winners"] == 0
    assert store.get_issue(issue["id"])["status"] == "draft"


@pytest.mark.parametrize("policy", ["advisory", "exclude"])
def test_finalize_without_articles_still_reaches_draft(store, claude, policy):
    issue = store.add_issue(workflow_state="finalizing")
    module = store.add_module(name="news")
    store.upsert_module_selection(issue["id"], module["id"], [], "score_based", 0)

    result = finalize_issue(store, claude, issue, [module], policy=policy)

    assert result["winners"] == 0
    assert claude.calls["generate_welcome"] == 0
    assert store.get_issue(issue["id"])["workflow_state"] == "draft"
