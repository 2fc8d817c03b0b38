"""
Pytest configuration and fixtures for permbench tests.
"""
import pytest

from permbench.db import create_db_engine, create_session_factory, init_db
from permbench.db.orm import OwnerKind
from permbench.fixtures import (
    Corpus,
    CorpusConfig,
    CustomerRecord,
    DepartmentRecord,
    DocumentRecord,
    UserRecord,
    load_corpus,
)
from permbench.flat import FlatEngine
from permbench.rebac import RelationshipStore, TupleEngine


@pytest.fixture
def db_engine(tmp_path):
    """File-backed SQLite database with every table created."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'permbench.db'}", echo=False)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def store(session_factory):
    """Tuple store bound to a fresh session."""
    with session_factory() as db:
        yield RelationshipStore(db)


@pytest.fixture
def org_corpus():
    """
    Small hand-built organization.

    D1 (root) -> D2; D3 (root)
    U1 in D2, U2 in D1, U3 and U4 in D3
    C1 has no followers, C2 is followed by U3
    DOC1 owned by D1, DOC2 by C1, DOC3 by D2 (created by U4), DOC4 by C2
    U2 is directly granted DOC4
    """
    config = CorpusConfig(
        num_users=4,
        num_departments=3,
        num_customers=2,
        num_documents=4,
        max_dept_levels=3,
        batch_size=2,
    )
    return Corpus(
        config=config,
        departments=(
            DepartmentRecord(1, "D1", None, 1),
            DepartmentRecord(2, "D2", 1, 2),
            DepartmentRecord(3, "D3", None, 1),
        ),
        users=(
            UserRecord(1, "U1", 2),
            UserRecord(2, "U2", 1),
            UserRecord(3, "U3", 3),
            UserRecord(4, "U4", 3),
        ),
        customers=(
            CustomerRecord(1, "C1", ()),
            CustomerRecord(2, "C2", (3,)),
        ),
        documents=(
            DocumentRecord(1, "DOC1", OwnerKind.DEPARTMENT, 1, None),
            DocumentRecord(2, "DOC2", OwnerKind.CUSTOMER, 1, None),
            DocumentRecord(3, "DOC3", OwnerKind.DEPARTMENT, 2, 4),
            DocumentRecord(4, "DOC4", OwnerKind.CUSTOMER, 2, None),
        ),
        grants=((2, 4),),
    )


@pytest.fixture
def loaded_org(session_factory, org_corpus):
    load_corpus(session_factory, org_corpus)
    return org_corpus


@pytest.fixture
def tuple_engine(session_factory):
    return TupleEngine(session_factory, max_dept_levels=3, retry_backoff_seconds=0)


@pytest.fixture
def flat_engine(session_factory):
    return FlatEngine(session_factory, max_dept_levels=3, retry_backoff_seconds=0)
