import pytest

from permbench.changes import DepartmentReparented, DocumentOwnerChanged, MemberAdded
from permbench.cli import build_engines
from permbench.db.orm import OwnerKind
from permbench.errors import ValidationError
from permbench.fixtures import (
    Corpus,
    CorpusConfig,
    DepartmentRecord,
    DocumentRecord,
    UserRecord,
    load_corpus,
)
from permbench.flat import FlatEngine
from permbench.rebac import TupleEngine


def answers(engine, users=range(1, 5), documents=range(1, 5)):
    return {(u, d): engine.check(u, d) for u in users for d in documents}


def test_same_changes_keep_both_engines_in_agreement(loaded_org, tuple_engine, flat_engine):
    changes = [
        DepartmentReparented(department_id=3, new_parent_id=2),
        DocumentOwnerChanged(document_id=2, owner_kind=OwnerKind.DEPARTMENT, owner_id=3),
        MemberAdded(department_id=1, user_id=4),
        DepartmentReparented(department_id=2, new_parent_id=None),
        DocumentOwnerChanged(document_id=1, owner_kind=OwnerKind.CUSTOMER, owner_id=2),
    ]

    for change in changes:
        tuple_engine.apply(change)
        flat_engine.apply(change)
        assert answers(tuple_engine) == answers(flat_engine), change

    for user in range(1, 5):
        assert tuple_engine.list_viewable_documents(user) == flat_engine.list_viewable_documents(user)
    assert flat_engine.repository.verify() == []


def test_tuple_reparent_reads_the_tree_from_tuples(loaded_org, tuple_engine):
    # The departments table still says D3 is a root; only the tuples know better
    tuple_engine.apply(DepartmentReparented(department_id=3, new_parent_id=1))

    with pytest.raises(ValidationError):
        tuple_engine.apply(DepartmentReparented(department_id=1, new_parent_id=3))
    assert tuple_engine.check(3, 1) is True


def test_tuple_reparent_sees_a_detached_chain(loaded_org, tuple_engine):
    # D2 leaves D1, so D1 may now move below it
    tuple_engine.apply(DepartmentReparented(department_id=2, new_parent_id=None))

    assert tuple_engine.apply(DepartmentReparented(department_id=1, new_parent_id=2)) == 1
    assert tuple_engine.check(2, 3) is True
    assert tuple_engine.check(1, 1) is False


def test_tuple_reparent_beyond_max_depth_is_rejected(loaded_org, session_factory):
    engine = TupleEngine(session_factory, max_dept_levels=2, retry_backoff_seconds=0)

    # D1 -> D2 is already two levels; D3 below D2 would be the third
    with pytest.raises(ValidationError):
        engine.apply(DepartmentReparented(department_id=3, new_parent_id=2))
    # D1 with its child below D3 would be three levels deep too
    with pytest.raises(ValidationError):
        engine.apply(DepartmentReparented(department_id=1, new_parent_id=3))
    with pytest.raises(ValidationError):
        engine.apply(DepartmentReparented(department_id=999, new_parent_id=None))

    # once D2 is detached in the tuples, D3 fits below it
    engine.apply(DepartmentReparented(department_id=2, new_parent_id=None))
    assert engine.apply(DepartmentReparented(department_id=3, new_parent_id=2)) == 1


LEVELS = 12


@pytest.fixture
def deep_chain(session_factory):
    """D1 -> D2 -> ... -> D12, one user in the leaf, one document owned by the root."""
    corpus = Corpus(
        config=CorpusConfig(
            num_users=1,
            num_departments=LEVELS,
            num_customers=1,
            num_documents=1,
            max_dept_levels=LEVELS,
        ),
        departments=tuple(
            DepartmentRecord(i, f"D{i}", i - 1 if i > 1 else None, i) for i in range(1, LEVELS + 1)
        ),
        users=(UserRecord(1, "U1", LEVELS),),
        customers=(),
        documents=(DocumentRecord(1, "DOC1", OwnerKind.DEPARTMENT, 1, None),),
        grants=(),
    )
    load_corpus(session_factory, corpus)
    return corpus


def test_deep_tree_is_visible_to_both_engines(deep_chain, session_factory):
    tuples = TupleEngine(session_factory, max_dept_levels=LEVELS)
    flat = FlatEngine(session_factory, max_dept_levels=LEVELS)

    assert tuples.max_depth == LEVELS + 3
    assert tuples.check(1, 1) is True
    assert flat.check(1, 1) is True


def test_build_engines_uses_the_stored_tree_depth(deep_chain, session_factory):
    tuples, flat = build_engines(session_factory)

    assert tuples.max_dept_levels == LEVELS
    assert tuples.max_depth == LEVELS + 3
    assert flat.repository.max_dept_levels == LEVELS
    assert tuples.check(1, 1) is True
    assert flat.repository.verify() == []


def test_check_batch_matches_single_checks(loaded_org, tuple_engine, flat_engine):
    for engine in (tuple_engine, flat_engine):
        batch = engine.check_batch(1, [1, 2, 3, 4, 999])
        assert batch == {d: engine.check(1, d) for d in (1, 2, 3, 4, 999)}
        assert batch[1] is True and batch[999] is False


def test_storage_footprint(loaded_org, tuple_engine, flat_engine):
    assert tuple_engine.storage_stats()['tuples'] == tuple_engine.count()
    assert flat_engine.count() > 0
    assert flat_engine.storage_stats()
