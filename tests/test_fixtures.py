import pytest

from permbench.db.orm import OwnerKind
from permbench.fixtures import CorpusConfig, generate_corpus, load_corpus
from permbench.rebac import create_default_graph


@pytest.fixture
def small_config():
    return CorpusConfig(
        num_users=30,
        num_departments=14,
        num_customers=8,
        num_documents=40,
        max_dept_levels=3,
        max_dept_members=3,
        max_customer_followers=4,
        batch_size=7,
        department_owned_ratio=0.5,
        direct_grant_ratio=0.2,
        seed=7,
    )


def test_same_seed_gives_same_corpus(small_config):
    assert generate_corpus(small_config) == generate_corpus(small_config)


def test_different_seed_gives_different_corpus(small_config):
    other = small_config.model_copy(update={'seed': 8})
    assert generate_corpus(small_config) != generate_corpus(other)


def test_department_forest_respects_max_depth(small_config):
    corpus = generate_corpus(small_config)

    assert corpus.depth <= small_config.max_dept_levels
    for department in corpus.departments:
        if department.parent_id is None:
            assert department.level == 1
        else:
            parent = corpus.department(department.parent_id)
            assert parent.id < department.id
            assert department.level == parent.level + 1


def test_every_user_has_one_department_within_capacity(small_config):
    corpus = generate_corpus(small_config)
    sizes = {}
    for user in corpus.users:
        assert 1 <= user.department_id <= small_config.num_departments
        sizes[user.department_id] = sizes.get(user.department_id, 0) + 1

    assert max(sizes.values()) <= small_config.max_dept_members


def test_every_document_has_exactly_one_valid_owner(small_config):
    corpus = generate_corpus(small_config)

    for document in corpus.documents:
        if document.owner_kind == OwnerKind.DEPARTMENT:
            assert 1 <= document.owner_id <= small_config.num_departments
        else:
            assert document.owner_kind == OwnerKind.CUSTOMER
            assert 1 <= document.owner_id <= small_config.num_customers


def test_relation_tuples_are_valid(small_config):
    corpus = generate_corpus(small_config)
    graph = create_default_graph()

    tuples = list(corpus.relation_tuples())

    for key in tuples:
        graph.validate(key)
    assert len(tuples) == len(set(tuples))


def test_flat_rows_match_reference_viewers(small_config):
    corpus = generate_corpus(small_config)
    rows = set(corpus.flat_rows())

    for document in corpus.documents:
        assert {u for u, d in rows if d == document.id} == corpus.viewers(document.id)


def test_load_summary_counts(session_factory, small_config):
    corpus = generate_corpus(small_config)

    summary = load_corpus(session_factory, corpus)

    assert summary.users == 30
    assert summary.departments == 14
    assert summary.members == 30
    assert summary.documents == 40
    assert summary.grants == len(corpus.grants)
    assert summary.tuples == len(list(corpus.relation_tuples()))
    assert summary.flat_rows == len(list(corpus.flat_rows()))


def test_engines_agree_on_every_pair(session_factory, small_config, tuple_engine, flat_engine):
    corpus = generate_corpus(small_config)
    load_corpus(session_factory, corpus)

    for user in corpus.users:
        for document in corpus.documents:
            expected = user.id in corpus.viewers(document.id)
            assert tuple_engine.check(user.id, document.id) is expected, (user.id, document.id)
            assert flat_engine.check(user.id, document.id) is expected, (user.id, document.id)


def test_viewable_document_listings_agree(session_factory, small_config, tuple_engine, flat_engine):
    corpus = generate_corpus(small_config)
    load_corpus(session_factory, corpus)

    for user in corpus.users:
        assert tuple_engine.list_viewable_documents(user.id) == flat_engine.list_viewable_documents(user.id)


def test_loaded_flat_table_verifies_clean(session_factory, small_config, flat_engine):
    load_corpus(session_factory, generate_corpus(small_config))

    assert flat_engine.repository.verify() == []
