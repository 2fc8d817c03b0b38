# (c) Copyright Datacraft, 2026
"""In-memory derivation of document viewers from the base relationships.

Used to bulk-flatten a generated corpus and to verify a stored flat table.
The union is the same one ``document#viewer`` evaluates lazily: the creator,
direct grants, members of the owning department or any of its descendants,
and followers of the owning customer.
"""
import logging
from collections import defaultdict
from typing import Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from permbench.db.departments import Department, DepartmentMember
from permbench.db.orm import CustomerFollower, DirectGrant, OwnerKind

logger = logging.getLogger(__name__)


class ViewerIndex:

	def __init__(
		self,
		parents: Mapping[int, int | None],
		members: Mapping[int, Iterable[int]],
		followers: Mapping[int, Iterable[int]],
		grants: Mapping[int, Iterable[int]],
		max_levels: int,
	):
		self.max_levels = max_levels
		self.followers = {c: frozenset(u) for c, u in followers.items()}
		self.grants = {d: frozenset(u) for d, u in grants.items()}

		subtree: dict[int, set[int]] = defaultdict(set)
		for department_id, users in members.items():
			users = set(users)
			if not users:
				continue
			current = department_id
			seen = set()
			# each member is visible from its department and every ancestor
			while current is not None and current not in seen and len(seen) < max_levels:
				seen.add(current)
				subtree[current].update(users)
				current = parents.get(current)
		self.subtree_members = {d: frozenset(u) for d, u in subtree.items()}

	def viewers(
		self,
		document_id: int,
		owner_kind: OwnerKind | str,
		owner_id: int,
		creator_id: int | None = None,
	) -> set[int]:
		result = set(self.grants.get(document_id, ()))
		if creator_id is not None:
			result.add(creator_id)
		if OwnerKind(owner_kind) == OwnerKind.DEPARTMENT:
			result.update(self.subtree_members.get(owner_id, ()))
		else:
			result.update(self.followers.get(owner_id, ()))
		return result

	@classmethod
	def from_session(cls, db: Session, max_levels: int) -> "ViewerIndex":
		"""Load every relationship the union needs from the entity tables."""
		parents = dict(db.execute(select(Department.id, Department.parent_id)).tuples().all())

		members: dict[int, list[int]] = defaultdict(list)
		for department_id, user_id in db.execute(
			select(DepartmentMember.department_id, DepartmentMember.user_id)
		).tuples():
			members[department_id].append(user_id)

		followers: dict[int, list[int]] = defaultdict(list)
		for customer_id, user_id in db.execute(
			select(CustomerFollower.customer_id, CustomerFollower.user_id)
		).tuples():
			followers[customer_id].append(user_id)

		grants: dict[int, list[int]] = defaultdict(list)
		for document_id, user_id in db.execute(
			select(DirectGrant.document_id, DirectGrant.user_id)
		).tuples():
			grants[document_id].append(user_id)

		logger.debug(
			f"Viewer index: {len(parents)} departments, {len(followers)} followed customers, "
			f"{len(grants)} granted documents"
		)
		return cls(parents, members, followers, grants, max_levels)
