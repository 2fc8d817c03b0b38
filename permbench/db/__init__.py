# (c) Copyright Datacraft, 2026
"""Database module for permbench."""
from .orm import (
	User, Customer, CustomerFollower, Document, DirectGrant, OwnerKind,
)
from .departments import Department, DepartmentMember
from .base import Base
from .engine import create_db_engine, create_session_factory, init_db, reset_db

__all__ = [
	'Base',
	'User',
	'Customer',
	'CustomerFollower',
	'Document',
	'DirectGrant',
	'OwnerKind',
	'Department',
	'DepartmentMember',
	'create_db_engine',
	'create_session_factory',
	'init_db',
	'reset_db',
]
