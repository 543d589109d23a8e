from datetime import date

import pandas as pd

from eventpulse.services.insights import build_frame, derive_insights, is_time_like, suggest_visualization


def test_time_series_gets_line_and_trend():
    df = build_frame(["date", "users"], [(date(2024, 1, 1), 10), (date(2024, 1, 2), 15), (date(2024, 1, 3), 20)])

    assert suggest_visualization(df) == "line"
    insights = derive_insights(df, cap=1000)
    assert insights[0] == "The query returned 3 rows."
    assert "users increased by 100.0% from the first to the last period." in insights
    assert "Peak users was 20 on 2024-01-03." in insights


def test_categories_get_bar_and_leader_share():
    df = build_frame(["event_name", "event_count"], [("page_view", 60), ("click", 40)])

    assert suggest_visualization(df) == "bar"
    insights = derive_insights(df, cap=1000)
    assert "'page_view' leads event_count with 60 (60.0% of the total)." in insights
    assert "Total event_count across all rows: 100." in insights


def test_single_value_is_a_table():
    df = build_frame(["total_events"], [(42,)])

    assert suggest_visualization(df) == "table"
    assert derive_insights(df, cap=1000) == ["The query returned 1 row."]


def test_empty_result():
    df = build_frame(["date", "users"], [])

    assert suggest_visualization(df) == "table"
    assert derive_insights(df, cap=1000) == ["The query returned no rows for this period."]


def test_cap_is_reported():
    df = build_frame(["user_id", "n"], [(f"u{i}", i) for i in range(5)])
    assert any("capped at 5 rows" in line for line in derive_insights(df, cap=5))


def test_high_cardinality_categories_fall_back_to_table():
    df = build_frame(["user_id", "n"], [(f"u{i}", i) for i in range(30)])
    assert suggest_visualization(df) == "table"


def test_time_detection():
    assert is_time_like(pd.Series(["2024-01-01", "2024-01-02"], name="x"))
    assert is_time_like(pd.Series([1, 2], name="signup_date"))
    assert not is_time_like(pd.Series(["home", "pricing"], name="page"))
