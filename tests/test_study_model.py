"""Tests for study_model.py — model invariants and the JSON file store."""

from datetime import date

from study_model import (
    JsonFileStore,
    Plan,
    Resource,
    StreakStats,
    Task,
    UserRecord,
    load_record,
    save_record,
)


class TestTaskInvariants:
    def test_reflection_dropped_when_not_completed(self):
        task = Task(id="t1", title="x", is_completed=False, reflection={"notes": "n", "feedback": "f"})
        assert task.reflection is None

    def test_reflection_kept_when_completed(self):
        task = Task(id="t1", title="x", is_completed=True, reflection={"notes": "n"})
        assert task.reflection.notes == "n"
        assert task.reflection.feedback == ""


class TestResourceInvariants:
    def test_challenge_fields_only_on_challenges(self):
        res = Resource(type="video", title="v", content="https://example.com",
                       test_cases=[{"input": "1", "expected": "1"}], solution="x")
        assert res.test_cases is None
        assert res.solution is None

    def test_challenge_keeps_cases(self):
        res = Resource(type="coding_challenge", title="c", content="p",
                       test_cases=[{"input": "1", "expected": "2"}])
        assert res.test_cases[0].expected == "2"


class TestPlanLookups:
    def make_plan(self) -> Plan:
        return Plan(id="p", goal="g", schedule=[
            {"day": 1, "tasks": [
                {"id": "t1", "title": "a", "resources": [
                    {"type": "article", "title": "read", "content": "https://example.com"},
                    {"type": "coding_challenge", "title": "c1", "content": "p",
                     "test_cases": [{"input": "1", "expected": "1"}]},
                    {"type": "coding_challenge", "title": "c2", "content": "p",
                     "test_cases": [{"input": "2", "expected": "2"}]},
                ]},
            ]},
        ])

    def test_find_task(self):
        plan = self.make_plan()
        assert plan.find_task("t1").title == "a"
        assert plan.find_task("nope") is None

    def test_find_first_challenge(self):
        assert self.make_plan().find_challenge("t1").title == "c1"

    def test_find_challenge_by_index(self):
        assert self.make_plan().find_challenge("t1", 2).title == "c2"
        assert self.make_plan().find_challenge("t1", 0) is None


class TestJsonFileStore:
    def test_round_trip_of_record(self, tmp_path):
        store = JsonFileStore(tmp_path)
        record = UserRecord(stats=StreakStats(streak=2, last_completion_date=date(2024, 1, 2)))
        save_record(store, "alice", record)
        assert load_record(store, "alice") == record

    def test_absent_key(self, tmp_path):
        store = JsonFileStore(tmp_path)
        assert store.read("nobody") is None
        assert load_record(store, "nobody") == UserRecord()

    def test_no_temp_files_left(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.write("alice", {"plans": []})
        store.write("alice", {"plans": []})
        assert [p.name for p in tmp_path.iterdir()] == ["alice.json"]

    def test_key_cannot_escape_data_dir(self, tmp_path):
        store = JsonFileStore(tmp_path / "users")
        store.write("../evil", {})
        assert not (tmp_path / "evil.json").exists()
        assert store.read("../evil") == {}
