"""Leaderboards over users, universities and residence halls.

Read straight from the running totals, so rankings are as fresh as the
last committed update and no fresher.
"""
from typing import List, Optional

from pymongo import DESCENDING

from database import RESIDENCE_HALLS, UNIVERSITIES, USERS


def _avg(total, count) -> float:
    return round(total / count, 1) if count else 0.0


def get_individual_leaderboard(db, university: Optional[str] = None, limit: int = 50) -> List[dict]:
    query = {"university": university} if university else {}
    cursor = db[USERS].find(query).sort("total_points_earned", DESCENDING).limit(limit)
    return [
        {
            "rank": rank,
            "user_id": str(doc["_id"]),
            "name": doc.get("display_name") or "Anonymous",
            "university": doc.get("university") or "Unknown",
            "points": doc.get("total_points_earned", 0),
            "items_recycled": doc.get("total_items_recycled", 0),
            "co2_saved": round(doc.get("total_co2_saved", 0.0), 2),
        }
        for rank, doc in enumerate(cursor, start=1)
    ]


def get_university_leaderboard(db, limit: int = 10) -> List[dict]:
    cursor = db[UNIVERSITIES].find({}).sort("total_points", DESCENDING).limit(limit)
    return [
        {
            "rank": rank,
            "university_id": str(doc["_id"]),
            "name": doc.get("name"),
            "location": doc.get("location"),
            "total_points": doc.get("total_points", 0),
            "student_count": doc.get("student_count", 0),
            "avg_points": _avg(doc.get("total_points", 0), doc.get("student_count", 0)),
        }
        for rank, doc in enumerate(cursor, start=1)
    ]


def get_residence_leaderboard(db, university: Optional[str] = None, limit: int = 20) -> List[dict]:
    query = {"university": university} if university else {}
    cursor = db[RESIDENCE_HALLS].find(query).sort("total_points", DESCENDING).limit(limit)
    return [
        {
            "rank": rank,
            "hall_id": str(doc["_id"]),
            "name": doc.get("name"),
            "university": doc.get("university"),
            "total_points": doc.get("total_points", 0),
            "member_count": doc.get("member_count", 0),
            "avg_points": _avg(doc.get("total_points", 0), doc.get("member_count", 0)),
        }
        for rank, doc in enumerate(cursor, start=1)
    ]
