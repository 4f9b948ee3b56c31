import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from repositories import JsonIstEventRepository
from schemas import IstEvent
from scripts import ist_class_report

BASE = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def _write(path, payload):
    path.write_text(json.dumps(payload), encoding="utf-8")
    return str(path)


def test_report_from_dataset_file(tmp_path, capsys):
    dataset = _write(
        tmp_path / "events.json",
        [
            {"courseId": "stats-101", "skills": ["Bayes Theorem", "bayes   theorem"]},
            {"courseId": "stats-101", "skills": ["Probability"]},
            {"courseId": "stats-101", "skills": []},
            {"courseId": "stats-101", "skills": "Probability"},
            {"courseId": "bpmn-201", "skills": ["Swimlanes"]},
            "not an event",
        ],
    )

    exit_code = ist_class_report.main(["stats-101", "--events", dataset])
    captured = capsys.readouterr()

    assert exit_code == ist_class_report.EXIT_OK
    report = json.loads(captured.out)
    assert report["totalEvents"] == 4
    assert report["eventsWithSkills"] == 2
    assert [stat["skill"] for stat in report["topSkills"]] == ["bayes theorem", "probability"]
    assert captured.err == ""


def test_report_options_are_applied(tmp_path, capsys):
    dataset = _write(tmp_path / "events.json", [{"courseId": "c", "skills": ["A", "B", "C"]}])
    output = tmp_path / "report.json"

    exit_code = ist_class_report.main(
        ["c", "--events", dataset, "--max-skills", "1", "--gap-threshold", "0.5", "--output", str(output)]
    )
    capsys.readouterr()

    assert exit_code == 0
    report = json.loads(output.read_text(encoding="utf-8"))
    assert [stat["skill"] for stat in report["topSkills"]] == ["a"]
    assert [stat["skill"] for stat in report["gaps"]] == ["a", "b", "c"]


def test_empty_course_is_not_an_error(tmp_path, capsys):
    dataset = _write(tmp_path / "events.json", [])

    exit_code = ist_class_report.main(["stats-101", "--events", dataset])
    captured = capsys.readouterr()

    assert exit_code == 0
    assert json.loads(captured.out)["totalEvents"] == 0
    assert "No IST events found for course stats-101." in captured.err


def test_malformed_dataset(tmp_path, capsys):
    broken = tmp_path / "broken.json"
    broken.write_text("[{", encoding="utf-8")
    assert ist_class_report.main(["stats-101", "--events", str(broken)]) == ist_class_report.EXIT_MALFORMED

    not_a_list = _write(tmp_path / "object.json", {"events": []})
    assert ist_class_report.main(["stats-101", "--events", not_a_list]) == ist_class_report.EXIT_MALFORMED
    assert "Malformed IST source data" in capsys.readouterr().err


def test_missing_dataset_is_unreachable(tmp_path, capsys):
    missing = tmp_path / "missing.json"
    assert ist_class_report.main(["stats-101", "--events", str(missing)]) == ist_class_report.EXIT_UNAVAILABLE
    assert "not reachable" in capsys.readouterr().err


def test_reads_the_configured_store(ist_env, capsys):
    store = JsonIstEventRepository(ist_env / "ist_events.json")
    for hours, skills in enumerate([["Probability"], ["Bayes Theorem"], ["Bayes Theorem"]]):
        store.append_event(
            IstEvent(id=f"e{hours}", course_id="stats-101", skills=skills, created_at=BASE + timedelta(hours=hours))
        )

    exit_code = ist_class_report.main(["stats-101", "--since", (BASE + timedelta(hours=1)).isoformat()])
    report = json.loads(capsys.readouterr().out)

    assert exit_code == 0
    assert report["totalEvents"] == 2
    assert report["topSkills"] == [{"skill": "bayes theorem", "count": 2, "share": 1.0}]


def test_unknown_storage_mode_is_a_configuration_error(ist_env, monkeypatch, capsys):
    monkeypatch.setenv("IST_STORAGE_MODE", "firestore")

    assert ist_class_report.main(["stats-101"]) == ist_class_report.EXIT_CONFIG
    assert "IST_STORAGE_MODE" in capsys.readouterr().err


def test_malformed_configured_store(ist_env, capsys):
    (ist_env / "ist_events.json").write_text('{"not": "a list"}', encoding="utf-8")

    assert ist_class_report.main(["stats-101"]) == ist_class_report.EXIT_MALFORMED
    capsys.readouterr()


def test_generated_mock_dataset_reports_cleanly(tmp_path, capsys):
    import generate_test_data

    dataset = tmp_path / "mock.json"
    assert generate_test_data.main(["--output", str(dataset), "--count", "120", "--seed", "3"]) == 0
    capsys.readouterr()

    for course_id in generate_test_data.SKILLS:
        assert ist_class_report.main([course_id, "--events", str(dataset), "--max-skills", "100"]) == 0
        report = json.loads(capsys.readouterr().out)
        assert report["totalEvents"] > 0
        skills = [stat["skill"] for stat in report["topSkills"]]
        assert len(skills) == len(set(skills))
        assert all(skill == " ".join(skill.split()).lower() for skill in skills)
        assert "!!!" not in skills and "" not in skills
