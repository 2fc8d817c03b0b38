# (c) Copyright Datacraft, 2026
"""Error taxonomy shared by both permission engines and the benchmark harness.

A denied permission is never an error: both engines answer it with ``False``.
"""


class PermbenchError(Exception):
	"""Base permbench error."""
	pass


class ValidationError(PermbenchError, ValueError):
	"""Malformed tuple, relation or entity reference. Nothing was applied."""
	pass


class ConsistencyError(PermbenchError):
	"""The flat ACL table no longer matches the relationships it was derived from."""

	def __init__(self, message: str, issues: list | None = None):
		super().__init__(message)
		self.issues = issues or []


class TransientStorageError(PermbenchError):
	"""Connectivity or timeout failure talking to the database."""
	pass


class DeadlineExceeded(PermbenchError):
	"""A benchmark run ran out of time."""
	pass
