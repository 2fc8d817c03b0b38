# (c) Copyright Datacraft, 2026
"""Entity mutations both permission engines know how to absorb.

The tuple engine turns each change into one or two tuple writes. The flat ACL
repository applies it to the entity tables and re-expands the affected rows.
"""
from dataclasses import dataclass

from permbench.db.orm import OwnerKind


@dataclass(frozen=True)
class MemberAdded:
	department_id: int
	user_id: int


@dataclass(frozen=True)
class MemberRemoved:
	department_id: int
	user_id: int


@dataclass(frozen=True)
class FollowerAdded:
	customer_id: int
	user_id: int


@dataclass(frozen=True)
class FollowerRemoved:
	customer_id: int
	user_id: int


@dataclass(frozen=True)
class DepartmentReparented:
	"""Move a department, with its whole subtree, under ``new_parent_id``.

	``None`` makes it a root.
	"""
	department_id: int
	new_parent_id: int | None


@dataclass(frozen=True)
class DocumentOwnerChanged:
	document_id: int
	owner_kind: OwnerKind
	owner_id: int


EntityChange = (
	MemberAdded
	| MemberRemoved
	| FollowerAdded
	| FollowerRemoved
	| DepartmentReparented
	| DocumentOwnerChanged
)
