# (c) Copyright Datacraft, 2026
"""Flattened access-control-list engine."""
from .models import FlatACLRow
from .index import ViewerIndex
from .repository import (
	FlatACLRepository,
	FlatEngine,
	ExpansionResult,
	ConsistencyIssue,
	LockRegistry,
)

__all__ = [
	'FlatACLRow',
	'ViewerIndex',
	'FlatACLRepository',
	'FlatEngine',
	'ExpansionResult',
	'ConsistencyIssue',
	'LockRegistry',
]
