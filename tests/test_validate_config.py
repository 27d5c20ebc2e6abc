import json

from scripts.validate_config import main, validate_state, validate_system_config


def write(path, payload):
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_valid_documents_pass(tmp_path, capsys):
    system = write(tmp_path / "system.json", {"schedule": {"cooldown_minutes": 10}})
    state = write(tmp_path / "state.json", {
        "templates": {
            "t1": {
                "recurring_enabled": True,
                "recurring_pattern": "weekly",
                "recurring_time": "08:00",
                "recurring_days": ["monday"],
            },
            "t2": {"recurring_enabled": False, "recurring_pattern": "hourly"},
        },
        "streams": {
            "s1": {
                "recurring_enabled": True,
                "schedule_type": "daily",
                "recurring_time": "21:15",
            },
        },
    })

    assert main([str(system), str(state)]) == 0
    assert "passed" in capsys.readouterr().out


def test_recurrence_problems_are_reported(tmp_path):
    state = write(tmp_path / "state.json", {
        "templates": {"t1": {"recurring_enabled": True, "recurring_pattern": "weekly", "recurring_time": "25:00"}},
        "streams": {"s1": {"recurring_enabled": "yes", "schedule_type": "weekly", "recurring_time": "08:00",
                           "schedule_days": ["noday"]}},
    })
    problems = validate_state(state)
    assert "template t1: Recurring time must be in HH:MM format" in problems
    assert "template t1: Weekly schedule requires at least one day selected" in problems
    assert "stream s1: Invalid days: noday" in problems


def test_broken_documents(tmp_path, capsys):
    system = tmp_path / "system.json"
    system.write_text("{oops", encoding="utf-8")
    assert validate_system_config(system)[0].startswith("system.json: invalid JSON")

    write(system, {"supervisor": {"max_retry_attempts": -1}})
    assert validate_system_config(system) == [
        "system.json: supervisor/max_retry_attempts: -1 is less than the minimum of 0"
    ]

    state = write(tmp_path / "state.json", {"templates": []})
    assert validate_state(state) == ["state: 'templates' must be an object"]

    assert main([str(system), str(state)]) == 1
    assert "[CONFIG ERROR]" in capsys.readouterr().err


def test_missing_state_file_is_fine(tmp_path):
    assert validate_state(tmp_path / "absent.json") == []
