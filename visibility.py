"""
Event visibility.

``resolve_visibility`` turns (principal, scope, enrollment snapshot) into a
MongoDB filter over the ``event`` collection. It never touches the store, so
it can be exercised with canned snapshots; ``load_snapshot`` is the only
part that reads enrollments.

Unknown scopes resolve to a filter that matches nothing.
"""
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from bson import ObjectId
from pymongo.database import Database

from auth import Principal
from database import get_documents

MATCH_NOTHING: Dict[str, Any] = {"_id": {"$in": []}}

SCHOOLWIDE_SCOPES = ["schoolwide", "all"]

FEED_SCOPES = ["personal", "class", "schoolwide", "user", "role", "batch"]


@dataclass(frozen=True)
class EnrollmentSnapshot:
    class_ids: FrozenSet[str] = frozenset()
    taught_class_ids: FrozenSet[str] = frozenset()
    batch_ids: FrozenSet[str] = frozenset()


def _live(predicate: Dict[str, Any]) -> Dict[str, Any]:
    return {**predicate, "is_deleted": {"$ne": True}}


def _class_predicate(principal: Principal, snapshot: EnrollmentSnapshot, class_id: Optional[str]) -> Dict[str, Any]:
    if principal.role == "student":
        allowed = snapshot.class_ids
        if class_id is not None:
            allowed = allowed & {class_id}
        return {"visibility_scope": "class", "target_class": {"$in": sorted(allowed)}}
    if principal.role in ("teacher", "admin"):
        if class_id is not None:
            return {"visibility_scope": "class", "target_class": class_id}
        if principal.role == "admin":
            return {"visibility_scope": "class"}
        allowed = snapshot.taught_class_ids | snapshot.class_ids
        return {"visibility_scope": "class", "target_class": {"$in": sorted(allowed)}}
    return MATCH_NOTHING


def resolve_visibility(
    principal: Principal,
    scope: Optional[str],
    snapshot: EnrollmentSnapshot,
    class_id: Optional[str] = None,
) -> Dict[str, Any]:
    if scope == "personal":
        return _live({"created_by": principal.id})
    if scope == "class":
        predicate = _class_predicate(principal, snapshot, class_id)
        return MATCH_NOTHING if predicate is MATCH_NOTHING else _live(predicate)
    if scope in SCHOOLWIDE_SCOPES:
        return _live({"visibility_scope": {"$in": SCHOOLWIDE_SCOPES}})
    if scope == "user":
        return _live({"visibility_scope": "user", "target_user": principal.id})
    if scope == "role":
        return _live({"visibility_scope": "role", "metadata.target_role": principal.role})
    if scope == "batch":
        return _live({"visibility_scope": "batch", "metadata.target_batch": {"$in": sorted(snapshot.batch_ids)}})
    return MATCH_NOTHING


def visible_events_filter(principal: Principal, snapshot: EnrollmentSnapshot) -> Dict[str, Any]:
    """Everything the principal may see, for the dashboard calendar."""
    arms = [resolve_visibility(principal, scope, snapshot) for scope in FEED_SCOPES]
    arms = [arm for arm in arms if arm is not MATCH_NOTHING]
    if not arms:
        return MATCH_NOTHING
    return {"$or": arms}


def _object_ids(values: Iterable[str]) -> List[ObjectId]:
    return [ObjectId(v) for v in values if ObjectId.is_valid(v)]


def load_snapshot(db: Database, principal: Principal) -> EnrollmentSnapshot:
    class_ids = {row["class_id"] for row in db.enrollment.find({"student_id": principal.id}, {"class_id": 1})}
    if principal.class_id:
        class_ids.add(principal.class_id)
    taught = {str(row["_id"]) for row in db.classroom.find({"teacher_ids": principal.id}, {"_id": 1})}

    batch_ids = set()
    related = _object_ids(class_ids | taught)
    if related:
        for row in db.classroom.find({"_id": {"$in": related}}, {"batch_id": 1}):
            if row.get("batch_id"):
                batch_ids.add(row["batch_id"])

    return EnrollmentSnapshot(
        class_ids=frozenset(class_ids),
        taught_class_ids=frozenset(taught),
        batch_ids=frozenset(batch_ids),
    )


def list_visible_events(
    db: Database,
    principal: Principal,
    scope: Optional[str] = None,
    class_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    snapshot = load_snapshot(db, principal)
    if scope is None:
        query = visible_events_filter(principal, snapshot)
    else:
        query = resolve_visibility(principal, scope, snapshot, class_id)
    return get_documents(db, "event", query, sort=[("start_at", 1)])


def enrolled_student_ids(db: Database, class_id: str) -> List[str]:
    """Students enrolled in ``class_id``, counting a profile's home class as an enrollment."""
    seen = {}
    for row in db.enrollment.find({"class_id": class_id}, {"student_id": 1}):
        seen.setdefault(row["student_id"], None)
    for row in db.profile.find({"role": "student", "class_id": class_id}, {"_id": 1}):
        seen.setdefault(row["_id"], None)
    return list(seen)


def class_teacher_ids(db: Database, class_id: str) -> List[str]:
    if not ObjectId.is_valid(class_id):
        return []
    row = db.classroom.find_one({"_id": ObjectId(class_id)}, {"teacher_ids": 1})
    return list(row.get("teacher_ids", [])) if row else []
