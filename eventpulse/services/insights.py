"""Result shaping for natural-language queries: insight strings and a chart hint."""

from datetime import date, datetime
from typing import List, Sequence

import pandas as pd

TIME_COLUMN_NAMES = {"date", "day", "week", "month", "year", "hour", "minute", "time", "timestamp", "period", "cohort"}
MAX_BAR_CATEGORIES = 20


def build_frame(columns: Sequence[str], rows: Sequence[tuple]) -> pd.DataFrame:
    return pd.DataFrame.from_records(list(rows), columns=list(columns))


def is_time_like(series: pd.Series) -> bool:
    if pd.api.types.is_datetime64_any_dtype(series):
        return True

    name = str(series.name).lower()
    if name in TIME_COLUMN_NAMES or name.endswith(("_date", "_day", "_week", "_month", "_at", "_time")):
        return True

    sample = series.dropna().head(5)
    if sample.empty:
        return False
    if all(isinstance(value, (date, datetime)) for value in sample):
        return True
    if all(isinstance(value, str) for value in sample):
        parsed = pd.to_datetime(sample, errors="coerce", format="mixed")
        return bool(parsed.notna().all())
    return False


def _numeric_columns(df: pd.DataFrame) -> List[str]:
    return [
        column for column in df.columns[1:]
        if pd.api.types.is_numeric_dtype(df[column]) and not pd.api.types.is_bool_dtype(df[column])
    ]


def suggest_visualization(df: pd.DataFrame) -> str:
    """line for a time-like first column, bar for a low-cardinality category, else table"""
    if df.empty or len(df.columns) < 2 or not _numeric_columns(df):
        return "table"

    x = df.iloc[:, 0]
    if is_time_like(x):
        return "line"
    if not pd.api.types.is_numeric_dtype(x) and x.nunique() <= MAX_BAR_CATEGORIES:
        return "bar"
    return "table"


def _fmt(value) -> str:
    if isinstance(value, float) and not value.is_integer():
        return f"{value:,.2f}"
    return f"{int(value):,}"


def derive_insights(df: pd.DataFrame, cap: int) -> List[str]:
    insights: List[str] = []

    if df.empty:
        return ["The query returned no rows for this period."]

    insights.append(f"The query returned {len(df):,} row{'s' if len(df) != 1 else ''}.")
    if len(df) >= cap:
        insights.append(f"Results were capped at {cap:,} rows; narrow the question for complete data.")

    numeric = _numeric_columns(df)
    if not numeric or len(df.columns) < 2:
        return insights

    x = df.iloc[:, 0]
    metric = numeric[0]
    values = pd.to_numeric(df[metric], errors="coerce")

    if is_time_like(x) and len(df) >= 2:
        ordered = pd.DataFrame({"x": pd.to_datetime(x, errors="coerce"), "y": values}).dropna().sort_values("x")
        if len(ordered) >= 2:
            first, last = ordered["y"].iloc[0], ordered["y"].iloc[-1]
            if first == 0:
                direction = "increased" if last > 0 else "stayed flat"
                insights.append(f"{metric} {direction} over the period (from 0 to {_fmt(last)}).")
            else:
                change = (last - first) / first * 100
                if abs(change) < 1:
                    insights.append(f"{metric} stayed roughly flat over the period.")
                else:
                    direction = "increased" if change > 0 else "decreased"
                    insights.append(f"{metric} {direction} by {abs(change):.1f}% from the first to the last period.")

            peak = ordered.loc[ordered["y"].idxmax()]
            insights.append(f"Peak {metric} was {_fmt(peak['y'])} on {peak['x'].date().isoformat()}.")
        return insights

    total = values.sum()
    if total > 0:
        top_index = values.idxmax()
        share = values.loc[top_index] / total * 100
        insights.append(
            f"'{x.loc[top_index]}' leads {metric} with {_fmt(values.loc[top_index])} ({share:.1f}% of the total)."
        )
    if len(df) > 1:
        insights.append(f"Total {metric} across all rows: {_fmt(total)}.")

    return insights
