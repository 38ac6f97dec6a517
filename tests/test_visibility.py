from auth import Principal
from visibility import (
    MATCH_NOTHING,
    EnrollmentSnapshot,
    enrolled_student_ids,
    list_visible_events,
    load_snapshot,
    resolve_visibility,
    visible_events_filter,
)

from conftest import add_class, add_event, add_profile, enroll, event_titles

STUDENT = Principal(id="stu-1", role="student")
TEACHER = Principal(id="tch-1", role="teacher")
ADMIN = Principal(id="adm-1", role="admin")


def test_personal_scope_filters_on_creator():
    pred = resolve_visibility(STUDENT, "personal", EnrollmentSnapshot())
    assert pred == {"created_by": "stu-1", "is_deleted": {"$ne": True}}


def test_class_scope_for_student_uses_enrollment_snapshot():
    snapshot = EnrollmentSnapshot(class_ids=frozenset({"c2", "c1"}))
    pred = resolve_visibility(STUDENT, "class", snapshot)
    assert pred["visibility_scope"] == "class"
    assert pred["target_class"] == {"$in": ["c1", "c2"]}


def test_student_cannot_widen_class_scope_with_explicit_class_id():
    snapshot = EnrollmentSnapshot(class_ids=frozenset({"c1"}))
    pred = resolve_visibility(STUDENT, "class", snapshot, class_id="c9")
    assert pred["target_class"] == {"$in": []}


def test_teacher_and_admin_may_pass_explicit_class():
    for principal in (TEACHER, ADMIN):
        pred = resolve_visibility(principal, "class", EnrollmentSnapshot(), class_id="c7")
        assert pred["target_class"] == "c7"


def test_teacher_without_class_id_sees_taught_classes():
    snapshot = EnrollmentSnapshot(taught_class_ids=frozenset({"c3"}))
    pred = resolve_visibility(TEACHER, "class", snapshot)
    assert pred["target_class"] == {"$in": ["c3"]}


def test_schoolwide_and_all_are_equivalent():
    a = resolve_visibility(STUDENT, "schoolwide", EnrollmentSnapshot())
    b = resolve_visibility(STUDENT, "all", EnrollmentSnapshot())
    assert a == b
    assert "created_by" not in a


def test_unknown_scope_fails_closed():
    assert resolve_visibility(STUDENT, "everything", EnrollmentSnapshot()) is MATCH_NOTHING
    assert resolve_visibility(STUDENT, None, EnrollmentSnapshot()) is MATCH_NOTHING


def test_unknown_role_gets_nothing_for_class_scope():
    stranger = Principal(id="x", role="parent")
    assert resolve_visibility(stranger, "class", EnrollmentSnapshot()) is MATCH_NOTHING


def test_personal_event_never_visible_to_another_user(db):
    add_event(db, "user-a", title="A's dentist", visibility_scope="personal")
    other = Principal(id="user-b", role="student")

    for scope in ("personal", "class", "schoolwide", "user", "role", "batch", None):
        rows = list_visible_events(db, other, scope=scope)
        assert "A's dentist" not in event_titles(rows)


def test_class_events_visible_only_to_enrolled_students(db):
    c1 = add_class(db, "C1")
    c2 = add_class(db, "C2")
    add_profile(db, "stu-1")
    enroll(db, c1, "stu-1")
    add_event(db, "tch-1", title="C1 quiz", visibility_scope="class", target_class=c1)
    add_event(db, "tch-1", title="C2 quiz", visibility_scope="class", target_class=c2)

    rows = list_visible_events(db, STUDENT, scope="class")
    assert event_titles(rows) == ["C1 quiz"]


def test_home_class_counts_as_enrollment(db):
    c1 = add_class(db, "C1")
    add_profile(db, "stu-2", class_id=c1)
    snapshot = load_snapshot(db, Principal(id="stu-2", role="student", class_id=c1))
    assert snapshot.class_ids == frozenset({c1})
    assert enrolled_student_ids(db, c1) == ["stu-2"]


def test_snapshot_collects_batches_of_related_classes(db):
    c1 = add_class(db, "C1", teacher_ids=["tch-1"], batch_id="batch-2025")
    snapshot = load_snapshot(db, TEACHER)
    assert snapshot.taught_class_ids == frozenset({c1})
    assert snapshot.batch_ids == frozenset({"batch-2025"})


def test_soft_deleted_events_are_hidden(db):
    add_event(db, "stu-1", title="gone", is_deleted=True)
    add_event(db, "stu-1", title="kept")
    assert event_titles(list_visible_events(db, STUDENT, scope="personal")) == ["kept"]


def test_dashboard_feed_combines_scopes(db):
    c1 = add_class(db, "C1")
    add_profile(db, "stu-1")
    enroll(db, c1, "stu-1")
    add_event(db, "stu-1", title="mine")
    add_event(db, "tch-1", title="class", visibility_scope="class", target_class=c1)
    add_event(db, "adm-1", title="assembly", visibility_scope="schoolwide")
    add_event(db, "adm-1", title="for students", visibility_scope="role", metadata={"target_role": "student"})
    add_event(db, "adm-1", title="for teachers", visibility_scope="role", metadata={"target_role": "teacher"})
    add_event(db, "tch-1", title="direct", visibility_scope="user", target_user="stu-1")
    add_event(db, "tch-1", title="someone else", visibility_scope="user", target_user="stu-9")
    add_event(db, "tch-9", title="private", visibility_scope="personal")

    rows = list_visible_events(db, STUDENT)
    assert event_titles(rows) == ["assembly", "class", "direct", "for students", "mine"]


def test_feed_filter_is_or_of_scope_arms():
    query = visible_events_filter(STUDENT, EnrollmentSnapshot())
    assert "$or" in query
    assert len(query["$or"]) == 6
