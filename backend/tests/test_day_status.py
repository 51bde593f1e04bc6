from backend.services.day_status import evaluate_break, evaluate_day

FULL_DAY = {
    "date": "2026-01-02",
    "check_in": "08:00:00",
    "break_out": "12:00:00",
    "break_in": "13:00:00",
    "check_out": "17:00:00",
    "anomaly": None,
}


def test_full_day_is_complete():
    day = evaluate_day(FULL_DAY, today="2026-01-05")
    assert day["status"] == "complete"
    assert day["missing"] == []
    assert day["break"] == {"status": "normal", "minutes": 60}
    assert day["has_issue"] is False


def test_missing_break_is_partial():
    record = {**FULL_DAY, "break_in": None}
    day = evaluate_day(record, today="2026-01-05")
    assert day["status"] == "partial"
    assert day["missing"] == ["break_in"]
    assert day["break"]["status"] == "incomplete"
    assert day["has_issue"] is True


def test_open_day_depends_on_whether_it_is_today():
    record = {**FULL_DAY, "check_out": None, "break_out": None, "break_in": None}
    assert evaluate_day(record, today="2026-01-02")["status"] == "pending_checkout"
    assert evaluate_day(record, today="2026-01-03")["status"] == "incomplete"


def test_missing_check_in_is_incomplete():
    record = {**FULL_DAY, "check_in": None}
    assert evaluate_day(record, today="2026-01-02")["status"] == "incomplete"


def test_flagged_record_is_anomaly():
    record = {**FULL_DAY, "check_out": None, "anomaly": "same_check_in_out"}
    assert evaluate_day(record, today="2026-01-05")["status"] == "anomaly"


def test_break_bounds():
    assert evaluate_break(None, None) == {"status": "none", "minutes": None}
    assert evaluate_break("12:00:00", "12:20:00")["status"] == "short"
    assert evaluate_break("12:00:00", "14:30:00")["status"] == "long"
    assert evaluate_break("13:00:00", "12:00:00")["status"] == "invalid"
    assert evaluate_break("12:00:00", "12:20:00", min_minutes=15)["status"] == "normal"
