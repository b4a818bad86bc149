"""
Prompt construction for the AI training coach.
"""
import html
from typing import Any, Dict, List

from .analytics import METERS_PER_MILE, parse_start_date

MAX_MESSAGE_LENGTH = 500
RECENT_ACTIVITY_LINES = 10


def sanitize_message(message: str) -> str:
    """Truncate and HTML-escape user input before it reaches the prompt."""
    return html.escape(message[:MAX_MESSAGE_LENGTH].strip(), quote=True).replace("/", "&#x2F;")


def build_training_context(activities: List[Dict[str, Any]], goals: List[Dict[str, Any]]) -> Dict[str, Any]:
    activity_types: List[str] = []
    for a in activities:
        if a.get("type") and a["type"] not in activity_types:
            activity_types.append(a["type"])

    return {
        "activities": [
            {
                "name": a.get("name"),
                "type": a.get("type"),
                "distance": a.get("distance"),
                "moving_time": a.get("moving_time"),
                "start_date": a.get("start_date"),
                "average_speed": a.get("average_speed"),
                "total_elevation_gain": a.get("total_elevation_gain"),
                "average_heartrate": a.get("average_heartrate"),
                "max_heartrate": a.get("max_heartrate"),
            }
            for a in activities
        ],
        "goals": goals,
        "summary": {
            "totalActivities": len(activities),
            "totalDistance": sum(a.get("distance") or 0 for a in activities),
            "totalTime": sum(a.get("moving_time") or 0 for a in activities),
            "activityTypes": activity_types,
        },
    }


def summarize_for_client(context: Dict[str, Any]) -> Dict[str, Any]:
    summary = context["summary"]
    return {
        "totalActivities": summary["totalActivities"],
        "totalDistance": f"{summary['totalDistance'] / METERS_PER_MILE:.2f}",
        "totalTime": round(summary["totalTime"] / 3600),
        "activityTypes": summary["activityTypes"],
    }


def _activity_line(activity: Dict[str, Any]) -> str:
    started = parse_start_date(activity)
    day = started.date().isoformat() if started else "unknown date"
    miles = (activity.get("distance") or 0) / METERS_PER_MILE
    return f"- {activity.get('name')} ({activity.get('type')}): {miles:.2f} miles on {day}"


def build_system_prompt(context: Dict[str, Any], year: int) -> str:
    summary = context["summary"]
    goals = "\n".join(
        f"- {g['activityType']}: {g['targetDistance']} miles" for g in context["goals"]
    ) or "- No goals set"
    recent = "\n".join(
        _activity_line(a) for a in context["activities"][:RECENT_ACTIVITY_LINES]
    ) or "- No recent activities"

    return f"""You are a helpful AI assistant that analyzes Strava training data. You have access to the user's recent activities and goals.

Training Data Summary:
- Total Activities (last 30 days): {summary['totalActivities']}
- Total Distance: {summary['totalDistance'] / METERS_PER_MILE:.2f} miles
- Total Time: {round(summary['totalTime'] / 3600)} hours
- Activity Types: {', '.join(summary['activityTypes'])}

Goals for {year}:
{goals}

Recent Activities (last {RECENT_ACTIVITY_LINES}):
{recent}

Please provide helpful, encouraging, and insightful analysis based on this training data. Be specific about patterns, progress, and suggestions for improvement."""
