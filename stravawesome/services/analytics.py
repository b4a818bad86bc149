"""
Activity aggregations for the dashboard: weekly mileage chart and the
training insights card.
"""
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

METERS_TO_MILES = 0.000621371
METERS_PER_MILE = 1609.34
CALORIES_PER_MILE = 45
INDOOR_MILES_PER_HOUR = 15

CONSISTENCY_WINDOW_DAYS = 30


def parse_start_date(activity: Dict[str, Any]) -> Optional[datetime]:
    raw = activity.get("start_date")
    if not raw:
        return None
    try:
        dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def to_miles(meters: float) -> float:
    return (meters or 0) * METERS_TO_MILES


def monday_of(d: date) -> date:
    return d - timedelta(days=d.weekday())


def week_label(d: date) -> str:
    return f"{d.strftime('%b')} {d.day}"


def indoor_ride_miles(activity: Dict[str, Any]) -> float:
    """Trainer rides often lack distance; estimate from calories or time."""
    if activity.get("distance"):
        return to_miles(activity["distance"])
    if activity.get("calories"):
        return activity["calories"] / CALORIES_PER_MILE
    if activity.get("moving_time"):
        return (activity["moving_time"] / 3600) * INDOOR_MILES_PER_HOUR
    return 0.0


def year_week_labels(year: int) -> List[str]:
    """Monday labels covering ``year``; the first week may start in December."""
    first = monday_of(date(year, 1, 1))
    labels = [week_label(first)]
    current = first + timedelta(days=7)
    while current.year == year:
        labels.append(week_label(current))
        current += timedelta(days=7)
    return labels


def weekly_chart(activities: Iterable[Dict[str, Any]], year: int) -> Dict[str, Any]:
    running: Dict[str, float] = {}
    walking: Dict[str, float] = {}
    cycling: Dict[str, float] = {}
    indoor: Dict[str, float] = {}

    for activity in activities:
        started = parse_start_date(activity)
        if started is None:
            continue
        week = week_label(monday_of(started.date()))
        kind = activity.get("type")

        if kind == "Run":
            running[week] = running.get(week, 0) + to_miles(activity.get("distance", 0))
        elif kind in ("Walk", "Hike"):
            walking[week] = walking.get(week, 0) + to_miles(activity.get("distance", 0))
        elif kind == "Ride":
            if activity.get("trainer"):
                indoor[week] = indoor.get(week, 0) + indoor_ride_miles(activity)
            elif activity.get("distance"):
                cycling[week] = cycling.get(week, 0) + to_miles(activity["distance"])

    labels = year_week_labels(year)
    running_series = []
    cycling_series = []
    for week in labels:
        run = round(running.get(week, 0))
        walk = round(walking.get(week, 0))
        running_series.append({"week": week, "running": run, "walking": walk, "total": run + walk})
        cycling_series.append({
            "week": week,
            "cycling": round(cycling.get(week, 0)),
            "indoor": round(indoor.get(week, 0)),
        })

    return {"labels": labels, "datasets": {"running": running_series, "cycling": cycling_series}}


def _total(activities: List[Dict[str, Any]], field: str) -> float:
    return sum(a.get(field) or 0 for a in activities)


def consistency_trend(days_active: int) -> str:
    if days_active >= 15:
        return "good"
    if days_active >= 8:
        return "fair"
    return "low"


def build_insights(activities: List[Dict[str, Any]], now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    today = now.date()
    week_start = monday_of(today)
    last_week_start = week_start - timedelta(days=7)
    month_start = today.replace(day=1)
    window_start = now - timedelta(days=CONSISTENCY_WINDOW_DAYS)

    dated = [(a, parse_start_date(a)) for a in activities]
    dated = [(a, d) for a, d in dated if d is not None]

    this_week = [a for a, d in dated if week_start <= d.date() < week_start + timedelta(days=7)]
    last_week = [a for a, d in dated if last_week_start <= d.date() < week_start]
    this_month = [a for a, d in dated if d.date() >= month_start]
    last_30 = [(a, d) for a, d in dated if d >= window_start]

    weekly_summary = {
        "totalActivities": len(this_week),
        "totalDistance": _total(this_week, "distance"),
        "totalTime": _total(this_week, "moving_time"),
        "totalElevation": _total(this_week, "total_elevation_gain"),
        "lastWeekDistance": _total(last_week, "distance"),
        "lastWeekActivities": len(last_week),
    }

    days_active = len({d.date() for _, d in last_30})
    runs = [a for a, _ in last_30 if a.get("type") == "Run"]
    avg_pace = _total(runs, "average_speed") / len(runs) if runs else 0

    longest = max(this_month, key=lambda a: a.get("distance") or 0, default=None)

    if weekly_summary["lastWeekDistance"] > 0:
        week_over_week = (
            (weekly_summary["totalDistance"] - weekly_summary["lastWeekDistance"])
            / weekly_summary["lastWeekDistance"] * 100
        )
    else:
        week_over_week = 0

    month_distance = _total(this_month, "distance")
    return {
        "weeklySummary": weekly_summary,
        "insights": {
            "consistency": {
                "daysActive": days_active,
                "totalDays": CONSISTENCY_WINDOW_DAYS,
                "percentage": round(days_active / CONSISTENCY_WINDOW_DAYS * 100),
                "trend": consistency_trend(days_active),
            },
            "performance": {
                "averagePace": avg_pace,
                "totalRuns": len(runs),
                "longestActivity": {
                    "name": longest.get("name"),
                    "distance": longest.get("distance"),
                    "type": longest.get("type"),
                    "date": longest.get("start_date"),
                } if longest else None,
                "weekOverWeekImprovement": week_over_week,
            },
            "goals": {
                "thisMonthDistance": month_distance,
                "thisMonthActivities": len(this_month),
                "averageActivityDistance": month_distance / len(this_month) if this_month else 0,
            },
        },
    }
