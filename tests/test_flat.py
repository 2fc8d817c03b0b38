import threading

import pytest
from sqlalchemy import delete, insert, select

from permbench.changes import (
    DepartmentReparented,
    DocumentOwnerChanged,
    FollowerAdded,
    FollowerRemoved,
    MemberAdded,
    MemberRemoved,
)
from permbench.db import Department, DepartmentMember
from permbench.db.orm import OwnerKind
from permbench.errors import ConsistencyError, ValidationError
from permbench.flat import FlatACLRepository, FlatACLRow, LockRegistry, ViewerIndex


def test_loaded_rows_match_reference_viewers(loaded_org, flat_engine):
    repo = flat_engine.repository

    assert repo.rows_for_document(1) == {1, 2}
    assert repo.rows_for_document(2) == set()
    assert repo.rows_for_document(3) == {1, 4}
    assert repo.rows_for_document(4) == {2, 3}
    assert repo.count_rows() == 6


def test_member_of_child_department_has_row_for_ancestor_document(loaded_org, flat_engine):
    assert flat_engine.check(1, 1) is True
    assert flat_engine.check(2, 3) is False


def test_member_add_adds_exactly_the_newly_reachable_rows(loaded_org, flat_engine):
    repo = flat_engine.repository
    before = repo.count_rows()

    # D2 and its ancestor D1 own DOC3 and DOC1, neither visible to U3 yet
    result = repo.apply(MemberAdded(department_id=2, user_id=3))

    assert (result.added, result.removed) == (2, 0)
    assert repo.count_rows() == before + 2
    assert flat_engine.check(3, 1) and flat_engine.check(3, 3)


def test_member_add_counts_only_pairs_not_already_visible(loaded_org, flat_engine):
    repo = flat_engine.repository

    # U4 already sees DOC3 as its creator
    result = repo.apply(MemberAdded(department_id=2, user_id=4))

    assert result.added == 1
    assert result.pairs_examined == 2


def test_reapplying_a_change_is_a_noop(loaded_org, flat_engine):
    repo = flat_engine.repository
    repo.apply(MemberAdded(department_id=2, user_id=3))
    rows = repo.count_rows()

    again = repo.apply(MemberAdded(department_id=2, user_id=3))

    assert again.rows_touched == 0
    assert repo.count_rows() == rows


def test_member_remove_restores_previous_rows(loaded_org, flat_engine):
    repo = flat_engine.repository
    before = repo.count_rows()
    repo.apply(MemberAdded(department_id=2, user_id=3))

    result = repo.apply(MemberRemoved(department_id=2, user_id=3))

    assert result.removed == 2
    assert repo.count_rows() == before
    assert repo.verify() == []


def test_removed_member_keeps_rows_granted_another_way(loaded_org, flat_engine):
    repo = flat_engine.repository

    # U4 leaves D3 but still created DOC3
    repo.apply(MemberAdded(department_id=2, user_id=4))
    repo.apply(MemberRemoved(department_id=2, user_id=4))

    assert flat_engine.check(4, 3) is True
    assert flat_engine.check(4, 1) is False


def test_follower_scenario(loaded_org, flat_engine):
    # C1 has no followers; DOC2 owned by C1
    assert flat_engine.check(4, 2) is False

    result = flat_engine.repository.apply(FollowerAdded(customer_id=1, user_id=4))

    assert result.added == 1
    assert flat_engine.check(4, 2) is True

    flat_engine.repository.apply(FollowerRemoved(customer_id=1, user_id=4))
    assert flat_engine.check(4, 2) is False


def test_change_with_unknown_entities_is_rejected(loaded_org, flat_engine):
    repo = flat_engine.repository
    before = repo.count_rows()

    with pytest.raises(ValidationError):
        repo.apply(MemberAdded(department_id=99, user_id=1))
    with pytest.raises(ValidationError):
        repo.apply(FollowerAdded(customer_id=1, user_id=99))

    assert repo.count_rows() == before


def test_reparent_to_root_drops_inherited_rows(loaded_org, flat_engine, session_factory):
    repo = flat_engine.repository

    result = repo.apply(DepartmentReparented(department_id=2, new_parent_id=None))

    assert result.removed == 1
    assert flat_engine.check(1, 1) is False
    with session_factory() as db:
        assert db.get(Department, 2).level == 1
    assert repo.verify() == []


def test_reparent_under_new_parent_fans_out_to_subtree_members(loaded_org, flat_engine, session_factory):
    repo = flat_engine.repository

    # D3 (U3, U4) moves under D2: both gain DOC1, U3 also gains DOC3
    result = repo.apply(DepartmentReparented(department_id=3, new_parent_id=2))

    assert (result.added, result.removed) == (3, 0)
    assert result.users == 2
    with session_factory() as db:
        department = db.get(Department, 3)
        assert (department.parent_id, department.level) == (2, 3)
    assert repo.verify() == []


def test_reparent_into_own_subtree_is_rejected(loaded_org, flat_engine, session_factory):
    with pytest.raises(ValidationError):
        flat_engine.repository.apply(DepartmentReparented(department_id=1, new_parent_id=2))
    with pytest.raises(ValidationError):
        flat_engine.repository.apply(DepartmentReparented(department_id=1, new_parent_id=1))

    with session_factory() as db:
        assert db.get(Department, 1).parent_id is None


def test_reparent_beyond_max_depth_is_rejected(loaded_org, session_factory):
    repo = FlatACLRepository(session_factory, max_dept_levels=2, retry_backoff_seconds=0)

    # D1 -> D2 is already two levels; D3 below D2 would be the third
    with pytest.raises(ValidationError):
        repo.apply(DepartmentReparented(department_id=3, new_parent_id=2))
    # D1 with its child below D3 would be three levels deep too
    with pytest.raises(ValidationError):
        repo.apply(DepartmentReparented(department_id=1, new_parent_id=3))


def test_owner_change_rewrites_document_rows(loaded_org, flat_engine):
    repo = flat_engine.repository

    result = repo.apply(DocumentOwnerChanged(document_id=2, owner_kind=OwnerKind.DEPARTMENT, owner_id=3))

    assert result.added == 2
    assert repo.rows_for_document(2) == {3, 4}

    repo.apply(DocumentOwnerChanged(document_id=2, owner_kind=OwnerKind.CUSTOMER, owner_id=2))
    assert repo.rows_for_document(2) == {3}


def test_grant_and_revoke(loaded_org, flat_engine):
    assert flat_engine.grant(3, 1) is True
    assert flat_engine.check(3, 1) is True
    assert flat_engine.grant(3, 1) is False

    assert flat_engine.revoke(3, 1) is True
    assert flat_engine.check(3, 1) is False


def test_revoke_keeps_rows_reachable_through_membership(loaded_org, flat_engine):
    # U1 sees DOC1 through D2 -> D1, not through a grant
    assert flat_engine.revoke(1, 1) is False
    assert flat_engine.check(1, 1) is True


def test_grant_unknown_document_is_rejected(loaded_org, flat_engine):
    with pytest.raises(ValidationError):
        flat_engine.grant(1, 999)


def test_verify_reports_missing_extra_and_orphaned_rows(loaded_org, flat_engine, session_factory):
    repo = flat_engine.repository
    with session_factory() as db:
        db.execute(insert(FlatACLRow), [
            {'user_id': 3, 'document_id': 1},
            {'user_id': 999, 'document_id': 1},
            {'user_id': 1, 'document_id': 777},
        ])
        db.execute(delete(FlatACLRow).where(
            FlatACLRow.user_id == 2, FlatACLRow.document_id == 4
        ))
        db.commit()

    issues = {(i.kind, i.user_id, i.document_id) for i in repo.verify()}

    assert issues == {
        ('extra', 3, 1),
        ('orphaned', 999, 1),
        ('orphaned', 1, 777),
        ('missing', 2, 4),
    }
    with pytest.raises(ConsistencyError) as exc_info:
        repo.verify(strict=True)
    assert len(exc_info.value.issues) == 4


def test_verify_limited_to_documents(loaded_org, flat_engine, session_factory):
    with session_factory() as db:
        db.execute(insert(FlatACLRow), [{'user_id': 3, 'document_id': 1}])
        db.commit()

    assert flat_engine.repository.verify(document_ids=[2, 3]) == []
    assert len(flat_engine.repository.verify(document_ids=[1])) == 1


def test_expansion_over_orphaned_rows_raises_and_rolls_back(loaded_org, flat_engine, session_factory):
    with session_factory() as db:
        db.execute(insert(FlatACLRow), [{'user_id': 999, 'document_id': 1}])
        db.commit()

    with pytest.raises(ConsistencyError):
        flat_engine.repository.apply(MemberAdded(department_id=1, user_id=3))

    with session_factory() as db:
        membership = db.scalar(select(DepartmentMember).where(
            DepartmentMember.department_id == 1, DepartmentMember.user_id == 3
        ))
    assert membership is None
    assert flat_engine.check(3, 1) is False


def test_expand_after_external_entity_change(loaded_org, flat_engine, session_factory):
    with session_factory() as db:
        db.add(DepartmentMember(department_id=1, user_id=4))
        db.commit()

    result = flat_engine.repository.expand(MemberAdded(department_id=1, user_id=4))

    assert result.added == 1
    assert flat_engine.check(4, 1) is True


def test_lock_registry_serializes_overlapping_scopes():
    locks = LockRegistry()
    entered = []

    def worker(name, keys):
        with locks.hold(keys):
            entered.append(name)

    with locks.hold([('department', 1)]):
        thread = threading.Thread(target=worker, args=("b", [('department', 1), ('customer', 2)]))
        thread.start()
        thread.join(timeout=0.2)
        assert entered == []
    thread.join(timeout=5)

    assert entered == ["b"]
    assert locks.get(('department', 1)) is locks.get(('department', 1))


def test_concurrent_changes_on_one_tree_leave_consistent_rows(loaded_org, flat_engine):
    changes = [MemberAdded(department_id=d, user_id=u) for d in (1, 2) for u in (3, 4)]
    errors = []

    def apply(change):
        try:
            flat_engine.repository.apply(change)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=apply, args=(c,)) for c in changes]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert flat_engine.repository.verify() == []


def test_viewer_index_from_session(loaded_org, session_factory):
    with session_factory() as db:
        index = ViewerIndex.from_session(db, max_levels=3)

    assert index.viewers(1, OwnerKind.DEPARTMENT, 1) == {1, 2}
    assert index.viewers(3, OwnerKind.DEPARTMENT, 2, creator_id=4) == {1, 4}
    assert index.viewers(4, OwnerKind.CUSTOMER, 2) == {2, 3}


def test_lock_scope_is_reread_once_held(loaded_org, session_factory):
    holds = []

    class RecordingLocks(LockRegistry):
        def hold(self, keys):
            holds.append(sorted(set(keys)))
            return super().hold(keys)

    repo = FlatACLRepository(
        session_factory, max_dept_levels=3, retry_backoff_seconds=0, locks=RecordingLocks()
    )
    lock_keys = repo._lock_keys
    moved = []

    def lock_keys_then_move(change):
        keys = lock_keys(change)
        if not moved:
            # D3 moves under D1 right after its root was read
            with session_factory() as db:
                department = db.get(Department, 3)
                department.parent_id, department.level = 1, 2
                db.commit()
            moved.append(3)
        return keys

    repo._lock_keys = lock_keys_then_move
    repo.apply(MemberAdded(department_id=3, user_id=1))

    assert holds == [[('department', 3)], [('department', 1), ('department', 3)]]
    assert repo.check(1, 1) is True
