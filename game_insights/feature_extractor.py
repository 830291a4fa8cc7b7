"""
Feature Extraction Pipeline for Game Telemetry

This module turns raw event rows into the per-user and game-wide feature
records consumed by every prediction model.

Example:
--------
>>> dataset = GameDataset(rows=rows)
>>> extractor = FeatureExtractor(dataset, now=pd.Timestamp('2025-06-01'))
>>> features = extractor.extract_all_user_features()
>>> aggregate = extractor.extract_aggregate_features()
"""

from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd
from sklearn.base import BaseEstimator, TransformerMixin

from .data_processor import (
    ColumnResolver,
    GameDataset,
    to_number,
    to_text,
    to_timestamp,
    utc_now,
)
from .models import (
    AggregateFeatures,
    ColumnMapping,
    RevenueDataPoint,
    TimeSeriesPoint,
    UserFeatures,
)


DAY = pd.Timedelta(days=1)
HOUR = pd.Timedelta(hours=1)

ATTEMPT_KEYWORDS = ("attempt", "play", "level")
FAILURE_KEYWORDS = ("fail", "lose")


class FeatureExtractor:
    """
    Extracts user and aggregate features from one dataset snapshot.

    Rows are coerced once into a canonical frame and indexed by user id;
    every extraction method is a pure function of that snapshot and the
    reference time captured at construction.
    """

    DEFAULT_SESSION_LENGTH = 300.0
    NO_PURCHASE_DAYS = 999
    NO_SESSION_HOURS = 999
    DEFAULT_PEAK_HOUR = 12
    TIME_SERIES_METRICS = ("revenue", "dau", "sessions")

    def __init__(self, dataset: Union[GameDataset, Sequence[Mapping[str, Any]]], now: Optional[pd.Timestamp] = None):
        """
        Parameters:
        -----------
        dataset : GameDataset or sequence of dict
            Raw telemetry rows (plus optional column mappings)
        now : pd.Timestamp, optional
            Reference time for all recency windows. Defaults to the current UTC time.
        """
        if not isinstance(dataset, GameDataset):
            dataset = GameDataset(rows=dataset)
        self.dataset = dataset
        self.now = to_timestamp(now) if now is not None else utc_now()
        self.resolver = ColumnResolver(dataset.column_mappings, dataset.columns)

        self._frame = self._build_frame()
        valid = self._frame[self._frame["user_id"].notna()]
        self._user_rows: Dict[str, pd.DataFrame] = {
            user_id: rows for user_id, rows in valid.groupby("user_id", sort=False)
        }

    # ------------------------------------------------------------------
    # Frame construction
    # ------------------------------------------------------------------

    def _column(self, canonical: str, coerce: Callable[[Any], Any]) -> List[Any]:
        column = self.resolver.resolve(canonical)
        if column is None:
            return [None] * len(self.dataset.rows)
        return [coerce(row.get(column)) for row in self.dataset.rows]

    @staticmethod
    def _first_present(primary: List[Optional[str]], fallback: List[Optional[str]]) -> List[Optional[str]]:
        return [a if a else (b if b else None) for a, b in zip(primary, fallback)]

    def _build_frame(self) -> pd.DataFrame:
        timestamps = pd.to_datetime(pd.Series(self._column("timestamp", to_timestamp), dtype=object))
        frame = pd.DataFrame({
            "user_id": pd.Series(self._column("user_id", to_text), dtype=object),
            "timestamp": timestamps,
            "revenue": pd.Series(self._column("revenue", to_number), dtype=float),
            "level": pd.Series(self._column("level", to_number), dtype=float),
            "duration": pd.Series(self._column("duration", to_number), dtype=float),
            "session_length": pd.Series(self._column("session_length", to_number), dtype=float),
            "event_type": pd.Series(self._first_present(
                self._column("event_type", to_text), self._column("event", to_text)
            ), dtype=object),
            "result": pd.Series(self._first_present(
                self._column("result", to_text), self._column("outcome", to_text)
            ), dtype=object),
        })
        frame["date"] = frame["timestamp"].dt.strftime("%Y-%m-%d")
        return frame

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def user_ids(self) -> List[str]:
        """Distinct user ids in order of first appearance."""
        return list(self._user_rows)

    def row_count(self, user_id: str) -> int:
        rows = self._user_rows.get(str(user_id))
        return 0 if rows is None else len(rows)

    # ------------------------------------------------------------------
    # User features
    # ------------------------------------------------------------------

    def _default_features(self, user_id: str) -> UserFeatures:
        return UserFeatures(
            user_id=user_id,
            cohort=self.now.strftime("%Y-%m"),
            last_session_hours_ago=self.NO_SESSION_HOURS,
            avg_session_length=0.0,
            current_level=1,
            max_level_reached=1,
            days_since_last_purchase=self.NO_PURCHASE_DAYS,
            peak_play_hour=self.DEFAULT_PEAK_HOUR,
        )

    @staticmethod
    def _mean_or_zero(values: pd.Series) -> float:
        values = values.dropna()
        return float(values.mean()) if len(values) else 0.0

    def extract_user_features(self, user_id: str) -> UserFeatures:
        """
        Compute the feature record for one user.

        A user with no rows gets the default record (999 hours since last
        session, level 1, cohort of the reference month).
        """
        user_id = str(user_id)
        rows = self._user_rows.get(user_id)
        if rows is None or rows.empty:
            return self._default_features(user_id)

        now = self.now
        ts = rows["timestamp"].dropna()

        first_session = min(ts.min(), now) if len(ts) else now
        last_session = ts.max() if len(ts) else now
        days_since_first = int((now - first_session) // DAY)

        # Activity
        session_count_7d = int((ts >= now - 7 * DAY).sum())
        session_count_30d = int((ts >= now - 30 * DAY).sum())
        previous_week = int(((ts >= now - 14 * DAY) & (ts < now - 7 * DAY)).sum())
        session_trend = (session_count_7d - previous_week) / previous_week if previous_week > 0 else 0.0
        last_session_hours_ago = float((now - last_session) // HOUR)

        # Monetization
        revenue = rows["revenue"]
        total_spend = float(revenue.sum())
        purchases = revenue > 0
        purchase_count = int(purchases.sum())
        last_purchase = rows.loc[purchases, "timestamp"].max()
        days_since_last_purchase = (
            float((now - last_purchase) // DAY) if pd.notna(last_purchase) else float(self.NO_PURCHASE_DAYS)
        )

        # Progression
        levels = rows["level"].dropna()
        current_level = max(float(levels.max()), 0.0) if len(levels) else 0.0
        current_level = current_level or 1.0
        progression_speed = current_level / days_since_first if days_since_first > 0 else 0.0

        events = rows["event_type"].fillna("").str.lower()
        results = rows["result"].fillna("").str.lower()
        attempts = events.apply(lambda e: any(k in e for k in ATTEMPT_KEYWORDS))
        failures = attempts & results.apply(lambda r: any(k in r for k in FAILURE_KEYWORDS) or r == "false")
        attempt_count = int(attempts.sum())
        failure_rate = int(failures.sum()) / attempt_count if attempt_count > 0 else 0.0

        # Engagement
        days_active = int(rows["date"].dropna().nunique())
        avg_session_length = (
            self._mean_or_zero(rows["duration"])
            or self._mean_or_zero(rows["session_length"])
            or self.DEFAULT_SESSION_LENGTH
        )
        weekly_active_ratio = min(1.0, days_active / max(7, min(days_since_first, 30)))
        total_play_time = float(rows["duration"].sum()) or len(rows) * avg_session_length

        if len(ts):
            peak_play_hour = int(np.argmax(np.bincount(ts.dt.hour.to_numpy(dtype=int), minlength=24)))
        else:
            peak_play_hour = self.DEFAULT_PEAK_HOUR

        event_names = rows["event_type"].dropna()
        feature_usage = {str(k): int(v) for k, v in event_names.value_counts(sort=False).items()}

        return UserFeatures(
            user_id=user_id,
            cohort=first_session.strftime("%Y-%m"),
            session_count_7d=session_count_7d,
            session_count_30d=session_count_30d,
            session_trend=session_trend,
            last_session_hours_ago=last_session_hours_ago,
            avg_session_length=avg_session_length,
            total_play_time=total_play_time,
            current_level=current_level,
            max_level_reached=current_level,
            progression_speed=progression_speed,
            failure_rate=failure_rate,
            stuck_at_level=failure_rate > 0.5 and session_count_7d < 3,
            total_spend=total_spend,
            purchase_count=purchase_count,
            avg_purchase_value=total_spend / purchase_count if purchase_count > 0 else 0.0,
            days_since_last_purchase=days_since_last_purchase,
            is_payer=total_spend > 0,
            days_active=days_active,
            days_since_first_session=days_since_first,
            weekly_active_ratio=weekly_active_ratio,
            peak_play_hour=peak_play_hour,
            feature_usage=feature_usage,
        )

    def extract_all_user_features(self) -> List[UserFeatures]:
        return [self.extract_user_features(user_id) for user_id in self._user_rows]

    def to_frame(self) -> pd.DataFrame:
        """All user features as a DataFrame indexed by user id."""
        records = [f.model_dump(exclude={"feature_usage"}) for f in self.extract_all_user_features()]
        if not records:
            return pd.DataFrame(columns=[n for n in UserFeatures.model_fields if n != "feature_usage"])
        return pd.DataFrame.from_records(records).set_index("user_id", drop=False)

    # ------------------------------------------------------------------
    # Aggregate features
    # ------------------------------------------------------------------

    def _first_seen(self) -> pd.Series:
        """First timestamp per user (users without timestamps are excluded)."""
        dated = self._frame.dropna(subset=["user_id", "timestamp"])
        return dated.groupby("user_id")["timestamp"].min()

    def _active_users(self, days: int) -> int:
        recent = self._frame[self._frame["timestamp"] >= self.now - days * DAY]
        return int(recent["user_id"].nunique())

    def _retention(self, day: int, first_seen: pd.Series) -> float:
        """
        Share of eligible users active on exactly day N after first being seen.

        Eligible users were first seen at least N days before the reference time.
        """
        if first_seen.empty:
            return 0.0

        account_age = (self.now - first_seen) // DAY
        eligible = set(first_seen.index[(account_age >= day).to_numpy()])
        if not eligible:
            return 0.0

        dated = self._frame.dropna(subset=["user_id", "timestamp"])
        offsets = (dated["timestamp"] - dated["user_id"].map(first_seen)) // DAY
        retained = set(dated.loc[offsets == day, "user_id"]) & eligible
        return len(retained) / len(eligible)

    def extract_aggregate_features(self) -> AggregateFeatures:
        frame = self._frame
        now = self.now

        first_seen = self._first_seen()
        dau = self._active_users(1)
        new_users = int((first_seen >= now - DAY).sum())

        users = frame["user_id"].dropna()
        total_users = int(users.nunique())
        total_revenue = float(frame["revenue"].sum())
        payers = int(frame.loc[frame["revenue"] > 0, "user_id"].nunique())

        durations = frame["duration"].where(frame["duration"].fillna(0) != 0, frame["session_length"])
        durations = durations[durations > 0]
        avg_session_length = float(durations.mean()) if len(durations) else self.DEFAULT_SESSION_LENGTH

        leveled = frame[frame["level"] > 0]
        if len(leveled):
            max_levels = leveled.groupby(leveled["user_id"].fillna("unknown"))["level"].max()
            avg_level = float(max_levels.mean())
        else:
            avg_level = 1.0

        last_day_revenue = float(frame.loc[frame["timestamp"] >= now - DAY, "revenue"].sum())

        return AggregateFeatures(
            date=now.strftime("%Y-%m-%d"),
            day_of_week=int(now.dayofweek),
            is_weekend=now.dayofweek >= 5,
            dau=dau,
            wau=self._active_users(7),
            mau=self._active_users(30),
            new_users=new_users,
            returning_users=max(0, dau - new_users),
            d1_retention=self._retention(1, first_seen),
            d7_retention=self._retention(7, first_seen),
            d30_retention=self._retention(30, first_seen),
            revenue=last_day_revenue,
            arpu=total_revenue / total_users if total_users > 0 else 0.0,
            arppu=total_revenue / payers if payers > 0 else 0.0,
            payer_conversion_rate=payers / total_users if total_users > 0 else 0.0,
            avg_session_length=avg_session_length,
            avg_sessions_per_user=len(frame) / max(1, total_users),
            avg_level_reached=avg_level,
        )

    # ------------------------------------------------------------------
    # Time series
    # ------------------------------------------------------------------

    def extract_time_series(self, metric: str) -> List[TimeSeriesPoint]:
        """
        Daily series for `revenue`, `dau` or `sessions`, ascending by date.

        An unknown metric yields a zero for every date.
        """
        dated = self._frame[self._frame["date"].notna()]
        if dated.empty:
            return []

        grouped = dated.groupby("date", sort=True)
        if metric == "revenue":
            values = grouped["revenue"].sum()
        elif metric == "dau":
            values = grouped["user_id"].nunique()
        elif metric == "sessions":
            values = grouped.size()
        else:
            values = grouped.size() * 0

        return [TimeSeriesPoint(date=str(d), value=float(v)) for d, v in values.items()]

    def extract_revenue_data_points(self) -> List[RevenueDataPoint]:
        """
        Daily revenue observations with DAU, new users and paying users.

        New users are users whose first recorded day is that day.
        """
        dated = self._frame[self._frame["date"].notna()]
        if dated.empty:
            return []

        first_day = dated.dropna(subset=["user_id"]).groupby("user_id")["date"].min()
        new_by_day = first_day.value_counts()
        paying = dated[dated["revenue"] > 0]
        payers_by_day = paying.groupby("date")["user_id"].nunique()

        points = []
        for day, rows in dated.groupby("date", sort=True):
            dau = int(rows["user_id"].nunique())
            points.append(RevenueDataPoint(
                date=str(day),
                revenue=float(rows["revenue"].sum()),
                dau=dau,
                new_users=min(int(new_by_day.get(day, 0)), dau),
                payers=int(payers_by_day.get(day, 0)),
            ))
        return points


class UserFeatureTransformer(BaseEstimator, TransformerMixin):
    """
    sklearn-compatible wrapper around FeatureExtractor.

    Example:
    --------
    >>> transformer = UserFeatureTransformer(now=pd.Timestamp('2025-06-01'))
    >>> features = transformer.fit_transform(events_df)
    """

    def __init__(self, now=None, column_mappings=None):
        """
        Parameters:
        -----------
        now : pd.Timestamp, optional
            Reference time for recency windows
        column_mappings : list, optional
            Declared column mappings (ColumnMapping or dict)
        """
        self.now = now
        self.column_mappings = column_mappings

    def fit(self, X, y=None):
        """No-op; present for the sklearn API"""
        return self

    def transform(self, X) -> pd.DataFrame:
        """
        Parameters:
        -----------
        X : pd.DataFrame or list of dict
            Raw event rows

        Returns:
        --------
        pd.DataFrame with one row of features per user
        """
        mappings: Iterable[Union[ColumnMapping, Mapping[str, str]]] = self.column_mappings or ()
        if isinstance(X, pd.DataFrame):
            dataset = GameDataset.from_dataframe(X, mappings)
        else:
            dataset = GameDataset(rows=list(X), column_mappings=tuple(mappings))
        return FeatureExtractor(dataset, now=self.now).to_frame()
