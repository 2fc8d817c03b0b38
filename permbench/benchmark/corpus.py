# (c) Copyright Datacraft, 2026
"""Fixed request corpus shared by every engine in a run."""
import logging
import random

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from permbench.db.departments import DepartmentMember
from permbench.db.orm import CustomerFollower, DirectGrant, Document, OwnerKind, User
from permbench.errors import ValidationError
from permbench.utils import storage_errors
from .models import BenchmarkConfig, CheckRequest

logger = logging.getLogger(__name__)


def build_request_corpus(
	session_factory: sessionmaker[Session],
	config: BenchmarkConfig,
) -> tuple[CheckRequest, ...]:
	"""
	Draw ``config.corpus_size`` referentially valid requests.

	About ``allowed_ratio`` of them name a user with a stored reason to view
	the document (creator, direct grant, owning department member or owning
	customer follower); the rest pair a random user with a random document.
	The sequence depends only on the seed and the stored entities, never on
	either engine's tables.
	"""
	rng = random.Random(config.seed)
	with session_factory() as db, storage_errors():
		user_ids = list(db.scalars(select(User.id).order_by(User.id)))
		document_ids = list(db.scalars(select(Document.id).order_by(Document.id)))
		if not user_ids or not document_ids:
			raise ValidationError("Cannot build a request corpus from an empty database")

		requests = []
		for _ in range(config.corpus_size):
			document_id = rng.choice(document_ids)
			user_id = None
			if rng.random() < config.allowed_ratio:
				user_id = _pick_viewer(db, rng, document_id)
			if user_id is None:
				user_id = rng.choice(user_ids)
			requests.append(CheckRequest(user_id=user_id, document_id=document_id))

	logger.info(f"Built request corpus of {len(requests)} requests (seed {config.seed})")
	return tuple(requests)


def _pick_viewer(db: Session, rng: random.Random, document_id: int) -> int | None:
	document = db.get(Document, document_id)
	candidates: list[int] = []
	if document.creator_id is not None:
		candidates.append(document.creator_id)
	candidates.extend(db.scalars(
		select(DirectGrant.user_id).where(DirectGrant.document_id == document_id)
	))
	if document.owner_kind == OwnerKind.DEPARTMENT.value:
		candidates.extend(db.scalars(
			select(DepartmentMember.user_id).where(
				DepartmentMember.department_id == document.owner_id
			)
		))
	else:
		candidates.extend(db.scalars(
			select(CustomerFollower.user_id).where(
				CustomerFollower.customer_id == document.owner_id
			)
		))
	if not candidates:
		return None
	return rng.choice(sorted(set(candidates)))
