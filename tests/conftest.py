"""
Pytest configuration and fixtures

Every test pins the reference time so feature windows are deterministic.
Synthetic telemetry is generated from a seeded numpy Generator.
"""
import numpy as np
import pandas as pd
import pytest

from game_insights.data_processor import GameDataset
from game_insights.models import MetricDataPoint, RevenueDataPoint, UserFeatures


NOW = pd.Timestamp("2025-06-15 12:00:00")


@pytest.fixture
def now():
    """Fixed reference time (a Sunday at noon, UTC)"""
    return NOW


@pytest.fixture
def make_features():
    """Factory for UserFeatures with sensible defaults for an active non-payer"""
    def _make(user_id="u1", **overrides):
        values = dict(
            user_id=user_id,
            cohort="2025-05",
            session_count_7d=3,
            session_count_30d=10,
            last_session_hours_ago=20,
            avg_session_length=300,
            days_active=10,
            days_since_first_session=30,
            weekly_active_ratio=0.4,
        )
        values.update(overrides)
        return UserFeatures(**values)
    return _make


@pytest.fixture
def event_rows(now):
    """Small hand-written telemetry for two players and one anonymous row"""
    return [
        {"user_id": "alice", "timestamp": (now - pd.Timedelta(days=10)).isoformat(), "revenue": 0,
         "level": 1, "duration": 600, "event_type": "session_start", "result": None},
        {"user_id": "alice", "timestamp": (now - pd.Timedelta(days=9)).isoformat(), "revenue": 4.99,
         "level": 3, "duration": 300, "event_type": "purchase"},
        {"user_id": "alice", "timestamp": (now - pd.Timedelta(days=2)).isoformat(), "revenue": "",
         "level": 5, "duration": 900, "event_type": "level_attempt", "result": "fail"},
        {"user_id": "alice", "timestamp": (now - pd.Timedelta(hours=5)).isoformat(), "revenue": None,
         "level": "6", "duration": 600, "event_type": "level_attempt", "result": "win"},
        {"user_id": "bob", "timestamp": (now - pd.Timedelta(days=1)).isoformat(), "revenue": 0,
         "level": 2, "duration": 120, "event_type": "session_start"},
        {"user_id": None, "timestamp": now.isoformat(), "revenue": 100, "level": 9},
    ]


def generate_events(n_users=150, days=60, seed=7, now=NOW):
    """
    Synthetic telemetry: each user installs on a random day and plays a
    random number of sessions afterwards; about a fifth of users pay.
    """
    rng = np.random.default_rng(seed)
    rows = []
    for i in range(n_users):
        install = int(rng.integers(1, days))
        sessions = int(rng.integers(2, 12))
        payer = rng.random() < 0.2
        level = 1
        for _ in range(sessions):
            offset = install - int(rng.integers(0, install + 1))
            ts = now - pd.Timedelta(days=offset, hours=int(rng.integers(0, 12)))
            level += int(rng.integers(0, 3))
            rows.append({
                "player_id": f"p{i}",
                "event_time": ts.isoformat(),
                "amount": round(float(rng.uniform(0.99, 19.99)), 2) if payer and rng.random() < 0.4 else 0.0,
                "lvl": level,
                "session_length": float(rng.integers(60, 1200)),
                "event_type": "level_attempt" if rng.random() < 0.5 else "session_start",
                "result": "fail" if rng.random() < 0.3 else "win",
            })
    return rows


@pytest.fixture
def synthetic_dataset():
    """GameDataset of generated telemetry using aliased column names"""
    return GameDataset(rows=generate_events(), id="synthetic")


@pytest.fixture
def large_dataset():
    """Generated telemetry with enough players for every model's default minimum"""
    return GameDataset(rows=generate_events(n_users=600), id="synthetic-large")


@pytest.fixture
def daily_revenue():
    """60 days of revenue around 1000 with a weekly rhythm"""
    start = NOW.normalize() - pd.Timedelta(days=60)
    rng = np.random.default_rng(3)
    points = []
    for i in range(60):
        day = start + pd.Timedelta(days=i)
        weekend = 1.2 if day.dayofweek >= 5 else 1.0
        points.append(RevenueDataPoint(
            date=day.strftime("%Y-%m-%d"),
            revenue=1000 * weekend + float(rng.normal(0, 20)),
            dau=500,
            new_users=50,
            payers=25,
        ))
    return points


@pytest.fixture
def steady_metric():
    """30 daily observations alternating 90/110 (mean 100, std 10)"""
    start = NOW.normalize() - pd.Timedelta(days=30)
    return [
        MetricDataPoint(timestamp=start + pd.Timedelta(days=i), value=90.0 if i % 2 else 110.0)
        for i in range(30)
    ]
