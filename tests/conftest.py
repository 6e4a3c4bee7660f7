import threading
import uuid
from collections import Counter
from datetime import date, datetime, timezone
from unittest.mock import MagicMock

import pytest

from newsletter_workers.jobs.issue_assembly import IssueAssembler
from newsletter_workers.utils.errors import TransientError
from newsletter_workers.utils.states import CONSUMABLE_MODULE_TYPES, OPEN_ISSUE_STATUSES


PUBLICATION_ID = "pub-1"


def _new_id(prefix):
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


class FakeStore:
    """In-memory stand-in for DatabaseClient with the same query surface"""

    def __init__(self):
        self.issues = {}
        self.modules = {}
        self.criteria = {}
        self.candidates = {}
        self.ratings = {}
        self.assignments = {}
        self.selections = {}
        self.articles = {}
        self.duplicate_groups = []
        self.execution_logs = {}
        self.state_history = []
        self.cas_conflicts = 0
        self._lock = threading.RLock()

    # ----- seeding -------------------------------------------------------

    def add_issue(self, **fields):
        issue = {
            "id": _new_id("issue"),
            "publication_id": PUBLICATION_ID,
            "issue_date": date(2026, 10, 17),
            "status": "processing",
            "workflow_state": "not_started",
            "workflow_module_id": None,
            "workflow_error": None,
            "subject_line": None,
            "welcome_intro": None,
            "welcome_tagline": None,
            "welcome_summary": None,
            "poll_snapshot": None,
        }
        issue.update(fields)
        self.issues[issue["id"]] = issue
        return issue

    def add_module(self, **fields):
        module = {
            "id": _new_id("module"),
            "publication_id": PUBLICATION_ID,
            "module_type": "article",
            "name": "Top Stories",
            "display_order": len(self.modules),
            "is_active": True,
            "selection_mode": "score_based",
            "target_count": 3,
            "next_position": 1,
            "cursor_version": 0,
            "lookback_hours": None,
            "block_order": [],
        }
        module.update(fields)
        self.modules[module["id"]] = module
        return module

    def add_criterion(self, module_id, number, weight=1.0, **fields):
        criterion = {
            "criteria_number": number,
            "name": f"Criterion {number}",
            "weight": weight,
            "ai_prompt": None,
            "minimum_score": None,
            "enforce_minimum": False,
            "is_active": True,
        }
        criterion.update(fields)
        self.criteria.setdefault(module_id, []).append(criterion)
        return criterion

    def add_candidate(self, **fields):
        candidate = {
            "id": _new_id("cand"),
            "publication_id": PUBLICATION_ID,
            "family": "article",
            "natural_key": None,
            "title": "Untitled",
            "description": "",
            "content": "",
            "source_url": "https://example.com",
            "priority": 0,
            "is_active": True,
            "excluded": False,
            "module_eligible": True,
            "suppressed_by_issue_id": None,
            "processed_at": datetime.now(timezone.utc),
        }
        candidate.update(fields)
        self.candidates[candidate["id"]] = candidate
        return candidate

    def add_rating(self, candidate_id, module_id, total_score, criteria_scores=None):
        self.ratings[(candidate_id, module_id)] = {
            "candidate_id": candidate_id,
            "module_id": module_id,
            "criteria_scores": criteria_scores or {},
            "total_score": float(total_score),
        }

    # ----- prompts -------------------------------------------------------

    def get_prompt_by_key(self, prompt_key):
        return None

    def get_all_prompts(self):
        return []

    # ----- issues --------------------------------------------------------

    def get_issue(self, issue_id):
        issue = self.issues.get(issue_id)
        return dict(issue) if issue else None

    def count_open_issues(self, publication_id, issue_date):
        return sum(
            1 for i in self.issues.values()
            if i["publication_id"] == publication_id and i["issue_date"] == issue_date
            and i["status"] in OPEN_ISSUE_STATUSES
        )

    def get_pending_issues(self):
        return [dict(i) for i in self.issues.values()
                if i["status"] == "processing" and i["workflow_state"] == "not_started"]

    def update_issue(self, issue_id, fields, expected_state=None):
        with self._lock:
            issue = self.issues[issue_id]
            if expected_state is not None and issue["workflow_state"] != expected_state:
                return False
            issue.update(fields)
            return True

    def update_workflow_state(self, issue_id, state, module_id=None):
        with self._lock:
            self.state_history.append((state, module_id))
            self.issues[issue_id].update({"workflow_state": state, "workflow_module_id": module_id})

    def fail_workflow(self, issue_id, error_message):
        self.update_issue(issue_id, {
            "status": "failed",
            "workflow_state": "failed",
            "workflow_error": (error_message or "Unknown error")[:500],
        })

    def reset_issue_for_reprocess(self, issue_id):
        with self._lock:
            articles = [a for a in self.articles if self.articles[a]["issue_id"] == issue_id]
            for article_id in articles:
                del self.articles[article_id]
            assignments = [k for k in self.assignments if k[0] == issue_id]
            for key in assignments:
                del self.assignments[key]
            selections = [k for k, s in self.selections.items()
                          if k[0] == issue_id and s["selection_mode"] != "manual"]
            for key in selections:
                del self.selections[key]
            cleared = 0
            for candidate in self.candidates.values():
                if candidate["suppressed_by_issue_id"] == issue_id:
                    candidate["suppressed_by_issue_id"] = None
                    cleared += 1
            self.duplicate_groups = [g for g in self.duplicate_groups if g["issue_id"] != issue_id]
            self.issues[issue_id].update({
                "status": "processing",
                "workflow_error": None,
                "subject_line": None,
                "welcome_intro": None,
                "welcome_tagline": None,
                "welcome_summary": None,
            })
            return {
                "articles_deleted": len(articles),
                "candidates_released": len(assignments),
                "selections_deleted": len(selections),
                "suppressions_cleared": cleared,
            }

    # ----- modules -------------------------------------------------------

    def get_active_modules(self, publication_id):
        modules = [dict(m) for m in self.modules.values()
                   if m["publication_id"] == publication_id and m["is_active"]]
        return sorted(modules, key=lambda m: (m["display_order"], m["id"]))

    def get_module(self, module_id):
        module = self.modules.get(module_id)
        return dict(module) if module else None

    def get_criteria(self, module_id, active_only=True):
        rows = [dict(c) for c in self.criteria.get(module_id, [])
                if c["is_active"] or not active_only]
        return sorted(rows, key=lambda c: c["criteria_number"])

    def advance_cursor_for_selection(self, issue_id, module_id, expected_version, next_position):
        with self._lock:
            selection = self.selections.get((issue_id, module_id))
            if selection is None or selection["cursor_advanced_at"] is not None:
                return False
            if self.cas_conflicts:
                # Simulate another issue moving the cursor first
                self.cas_conflicts -= 1
                self.modules[module_id]["cursor_version"] += 1
                return False
            module = self.modules[module_id]
            if module["cursor_version"] != expected_version:
                return False
            module["next_position"] = next_position
            module["cursor_version"] += 1
            selection["cursor_advanced_at"] = datetime.now(timezone.utc)
            return True

    # ----- candidates ----------------------------------------------------

    def _claimed_anywhere(self, candidate_id):
        return any(key[1] == candidate_id for key in self.assignments)

    def get_dedup_pool(self, publication_id, since):
        pool = []
        for c in self.candidates.values():
            if (
                c["publication_id"] == publication_id and c["family"] == "article"
                and c["is_active"] and not c["excluded"] and c["suppressed_by_issue_id"] is None
                and c["processed_at"] >= since and not self._claimed_anywhere(c["id"])
            ):
                scores = [r["total_score"] for (cid, _), r in self.ratings.items() if cid == c["id"]]
                row = dict(c)
                row["best_score"] = max(scores) if scores else None
                pool.append(row)
        return pool

    def get_eligible_candidates(self, issue_id, module, since=None):
        family = module["module_type"]
        consumable = family in CONSUMABLE_MODULE_TYPES
        rows = []
        for c in sorted(self.candidates.values(), key=lambda c: c["id"]):
            if c["publication_id"] != module["publication_id"] or c["family"] != family:
                continue
            if not c["is_active"] or c["excluded"] or c["suppressed_by_issue_id"] is not None:
                continue
            if family == "partner_rec" and not c["module_eligible"]:
                continue
            if since is not None and c["processed_at"] < since:
                continue
            claimed = [key for key in self.assignments if key[1] == c["id"]]
            if any(key[0] == issue_id or consumable for key in claimed):
                continue
            rating = self.ratings.get((c["id"], module["id"]))
            row = dict(c)
            row["total_score"] = rating["total_score"] if rating else None
            row["criteria_scores"] = rating["criteria_scores"] if rating else None
            rows.append(row)
        return rows

    def get_candidates_by_ids(self, candidate_ids):
        return [dict(self.candidates[cid]) for cid in candidate_ids if cid in self.candidates]

    def get_rating(self, candidate_id, module_id):
        rating = self.ratings.get((candidate_id, module_id))
        return dict(rating) if rating else None

    def upsert_rating(self, candidate_id, module_id, criteria_scores, total_score):
        with self._lock:
            self.ratings[(candidate_id, module_id)] = {
                "candidate_id": candidate_id,
                "module_id": module_id,
                "criteria_scores": dict(criteria_scores),
                "total_score": float(total_score),
            }

    # ----- deduplication -------------------------------------------------

    def has_duplicate_groups(self, issue_id):
        return any(g["issue_id"] == issue_id for g in self.duplicate_groups)

    def save_duplicate_groups(self, issue_id, groups):
        suppressed = 0
        with self._lock:
            for group in groups:
                self.duplicate_groups.append(dict(group, issue_id=issue_id))
                for cid in group["member_ids"]:
                    if cid != group["representative_id"]:
                        self.candidates[cid]["suppressed_by_issue_id"] = issue_id
                        suppressed += 1
        return suppressed

    # ----- assignments ---------------------------------------------------

    def assign_candidates(self, issue_id, module_id, candidate_ids):
        claimed = 0
        with self._lock:
            for cid in candidate_ids:
                if (issue_id, cid) not in self.assignments:
                    self.assignments[(issue_id, cid)] = module_id
                    claimed += 1
        return claimed

    def get_assignments(self, issue_id):
        return [
            {"issue_id": i, "candidate_id": cid, "module_id": mid}
            for (i, cid), mid in sorted(self.assignments.items()) if i == issue_id
        ]

    def release_unused_candidates(self, issue_id, keep_ids):
        keep = set(keep_ids)
        with self._lock:
            doomed = [k for k in self.assignments if k[0] == issue_id and k[1] not in keep]
            for key in doomed:
                del self.assignments[key]
        return len(doomed)

    # ----- selections ----------------------------------------------------

    def get_module_selection(self, issue_id, module_id):
        selection = self.selections.get((issue_id, module_id))
        if not selection:
            return None
        row = dict(selection)
        row["candidate_ids"] = list(selection["candidate_ids"])
        return row

    def get_module_selections(self, issue_id):
        return [self.get_module_selection(i, m) for (i, m) in self.selections if i == issue_id]

    def upsert_module_selection(self, issue_id, module_id, candidate_ids, selection_mode, eligible_count):
        with self._lock:
            existing = self.selections.get((issue_id, module_id), {})
            self.selections[(issue_id, module_id)] = {
                "issue_id": issue_id,
                "module_id": module_id,
                "candidate_ids": list(candidate_ids),
                "selection_mode": selection_mode,
                "eligible_count": eligible_count,
                "selected_at": datetime.now(timezone.utc),
                "used_at": existing.get("used_at"),
                "cursor_advanced_at": existing.get("cursor_advanced_at"),
            }

    def insert_module_selection_if_absent(self, issue_id, module_id, selection_mode):
        with self._lock:
            if (issue_id, module_id) in self.selections:
                return False
            self.upsert_module_selection(issue_id, module_id, [], selection_mode, 0)
            return True

    def set_selection_winners(self, issue_id, module_id, candidate_ids):
        self.selections[(issue_id, module_id)]["candidate_ids"] = list(candidate_ids)

    def mark_selections_used(self, issue_id):
        stamped = 0
        for (i, _), selection in self.selections.items():
            if i == issue_id and selection["used_at"] is None:
                selection["used_at"] = datetime.now(timezone.utc)
                stamped += 1
        return stamped

    # ----- module articles -----------------------------------------------

    def _article_view(self, article):
        candidate = self.candidates[article["candidate_id"]]
        rating = self.ratings.get((article["candidate_id"], article["module_id"]))
        row = dict(article)
        row.update({
            "source_title": candidate["title"],
            "source_description": candidate["description"],
            "source_content": candidate["content"],
            "source_url": candidate["source_url"],
            "total_score": rating["total_score"] if rating else None,
        })
        return row

    def _articles(self, issue_id, module_id=None, where=None, limit=None):
        rows = [
            self._article_view(a) for a in self.articles.values()
            if a["issue_id"] == issue_id and (module_id is None or a["module_id"] == module_id)
            and (where is None or where(a))
        ]
        rows.sort(key=lambda a: (a["selection_order"], a["id"]))
        return rows[:limit] if limit is not None else rows

    def create_module_articles(self, issue_id, module_id, candidate_ids):
        created = 0
        with self._lock:
            existing = {(a["issue_id"], a["module_id"], a["candidate_id"]) for a in self.articles.values()}
            for order, cid in enumerate(candidate_ids):
                if (issue_id, module_id, cid) in existing:
                    continue
                article_id = f"art-{len(self.articles):04d}"
                self.articles[article_id] = {
                    "id": article_id,
                    "issue_id": issue_id,
                    "module_id": module_id,
                    "candidate_id": cid,
                    "selection_order": order,
                    "headline": None,
                    "content": None,
                    "word_count": None,
                    "fact_check_accuracy": None,
                    "fact_check_compliance": None,
                    "fact_check_quality": None,
                    "fact_check_score": None,
                    "fact_check_passed": None,
                    "fact_check_details": None,
                    "rank": None,
                    "is_active": False,
                }
                created += 1
        return created

    def get_module_articles(self, issue_id, module_id=None):
        return self._articles(issue_id, module_id)

    def get_articles_needing_titles(self, issue_id, module_id):
        return self._articles(issue_id, module_id, lambda a: a["headline"] is None)

    def get_articles_needing_bodies(self, issue_id, module_id, limit=None):
        return self._articles(issue_id, module_id,
                              lambda a: a["headline"] is not None and a["content"] is None, limit)

    def get_articles_needing_fact_check(self, issue_id, module_id):
        return self._articles(issue_id, module_id,
                              lambda a: a["content"] is not None and a["fact_check_score"] is None)

    def update_module_article(self, article_id, fields):
        with self._lock:
            self.articles[article_id].update(fields)

    def set_article_ranks(self, issue_id, module_id, ranked_article_ids):
        with self._lock:
            for article in self.articles.values():
                if article["issue_id"] == issue_id and article["module_id"] == module_id:
                    article["is_active"] = False
                    article["rank"] = None
            for rank, article_id in enumerate(ranked_article_ids, start=1):
                self.articles[article_id]["is_active"] = True
                self.articles[article_id]["rank"] = rank

    # ----- execution logs ------------------------------------------------

    def create_execution_log(self, run_id, job_type, issue_id, started_at):
        log_id = _new_id("log")
        self.execution_logs[log_id] = {"run_id": run_id, "job_type": job_type,
                                       "issue_id": issue_id, "status": "running"}
        return log_id

    def complete_execution_log(self, log_id, completed_at, duration_ms, status, summary, entries,
                               error_message=None, error_stack=None):
        self.execution_logs[log_id].update({
            "status": status,
            "summary": dict(summary),
            "entries": list(entries),
            "error_message": error_message,
        })


class FakeClaude:
    """Deterministic Claude stand-in with per-method failure injection"""

    def __init__(self):
        self.calls = Counter()
        self.failures = {}
        self.topic_groups = []
        self.fact_check_scores = {}
        self._lock = threading.Lock()

    def fail_next(self, method, times=1, error=None):
        self.failures[method] = [times, error or TransientError(f"{method} unavailable")]

    def _record(self, method):
        with self._lock:
            self.calls[method] += 1
            pending = self.failures.get(method)
            if pending and pending[0] > 0:
                pending[0] -= 1
                raise pending[1]

    def score_criterion(self, candidate, criterion):
        self._record("score_criterion")
        scores = candidate.get("fake_scores") or {}
        return {"score": float(scores.get(criterion["criteria_number"], 5)), "reason": "fake"}

    def find_topic_groups(self, candidates):
        self._record("find_topic_groups")
        return [dict(g) for g in self.topic_groups]

    def generate_title(self, article):
        self._record("generate_title")
        return f"Headline: {article['source_title']}"

    def generate_body(self, article):
        self._record("generate_body")
        return {"content": f"Body for {article['headline']}", "word_count": 3}

    def fact_check(self, article):
        self._record("fact_check")
        return dict(self.fact_check_scores.get(
            article["candidate_id"],
            {"accuracy": 9, "compliance": 9, "quality": 8, "details": ""},
        ))

    def generate_subject_line(self, headlines):
        self._record("generate_subject_line")
        return f"Today: {headlines[0]}"

    def generate_welcome(self, articles):
        self._record("generate_welcome")
        return {"intro": "Hello", "tagline": "All the news", "summary": f"{len(articles)} stories today"}


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def claude():
    return FakeClaude()


@pytest.fixture
def alerter():
    return MagicMock()


@pytest.fixture
def assembler(store, claude, alerter):
    return IssueAssembler(
        store, claude, alerter,
        retry_delay=0,
        step_timeout=10,
        batch_size=3,
        batch_delay=0,
        fact_check_policy="advisory",
    )


@pytest.fixture(autouse=True)
def no_database_prompts(monkeypatch):
    """Prompt lookups use built-in templates, never a real database"""
    from newsletter_workers.utils import prompts

    prompts.refresh_cache()
    monkeypatch.setattr(prompts, "get_db", lambda: FakeStore())
    yield
    prompts.refresh_cache()
