# (c) Copyright Datacraft, 2026
"""Drives every engine through the same request sequence and measures it."""
import logging
import random
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from sqlalchemy import exists, func, select
from sqlalchemy.orm import Session, sessionmaker

from permbench.changes import (
	DepartmentReparented,
	DocumentOwnerChanged,
	EntityChange,
	FollowerAdded,
	FollowerRemoved,
	MemberAdded,
	MemberRemoved,
)
from permbench.db.departments import Department, DepartmentMember
from permbench.db.orm import Customer, CustomerFollower, Document, OwnerKind, User
from permbench.errors import DeadlineExceeded, PermbenchError
from permbench.utils import storage_errors
from .corpus import build_request_corpus
from .models import (
	BatchRequest,
	BenchmarkConfig,
	CheckRequest,
	EngineReport,
	LatencyStats,
	Mismatch,
	PermissionEngine,
	Scenario,
)

logger = logging.getLogger(__name__)

MISMATCH_SAMPLES = 10

CHANGE_KINDS = ("member", "follower", "reparent", "owner")

ChangePair = tuple[EntityChange, EntityChange]


class Deadline:
	"""Wall-clock budget of one engine run."""

	def __init__(self, seconds: float):
		self.seconds = seconds
		self.expires_at = time.monotonic() + seconds

	def remaining(self) -> float:
		return max(0.0, self.expires_at - time.monotonic())

	@property
	def expired(self) -> bool:
		return time.monotonic() >= self.expires_at

	def check(self) -> None:
		if self.expired:
			raise DeadlineExceeded(f"Deadline of {self.seconds}s exceeded")


@dataclass
class _Phase:
	samples: list[float] = field(default_factory=list)
	errors: int = 0
	dispatched: int = 0
	wall_seconds: float = 0.0
	deadline_exceeded: bool = False


def _timed(operation: Callable[[Any], Any], item: Any) -> float:
	started = time.perf_counter()
	operation(item)
	return (time.perf_counter() - started) * 1000


def _operation(engine: PermissionEngine, scenario: Scenario) -> Callable[[Any], Any]:
	match scenario:
		case Scenario.CHECK:
			return lambda r: engine.check(r.user_id, r.document_id)
		case Scenario.BATCH:
			return lambda b: engine.check_batch(b.user_id, b.document_ids)
		case Scenario.LIST:
			return lambda r: engine.list_viewable_documents(r.user_id)
	raise ValueError(f"{scenario.value} is not a read scenario")


def build_batches(requests: Sequence[CheckRequest], size: int) -> tuple[BatchRequest, ...]:
	"""One batch per request: its user against the next ``size`` corpus documents."""
	total = len(requests)
	return tuple(
		BatchRequest(
			user_id=request.user_id,
			document_ids=tuple(requests[(i + k) % total].document_id for k in range(size)),
		)
		for i, request in enumerate(requests)
	)


def _footprint(report: EngineReport, engine: PermissionEngine) -> EngineReport:
	try:
		report.stored_records = engine.count()
		report.storage = engine.storage_stats()
	except PermbenchError as e:
		logger.error(f"{engine.name}: could not read storage footprint: {e}")
	return report


class BenchmarkRunner:
	"""
	Runs warm-up then measured rounds of one engine on a worker pool.

	At most ``concurrency`` requests are in flight. Once the engine's deadline
	passes no new request is dispatched; in-flight ones finish and count.
	"""

	def __init__(self, config: BenchmarkConfig):
		self.config = config

	def run_engine(
		self,
		engine: PermissionEngine,
		requests: Sequence[CheckRequest],
		scenario: Scenario = Scenario.CHECK,
	) -> EngineReport:
		config = self.config
		operation = _operation(engine, scenario)
		items: Sequence[Any] = requests
		if scenario == Scenario.BATCH:
			items = build_batches(requests, config.check_batch_size)

		deadline = Deadline(config.timeout_seconds)
		logger.info(
			f"Benchmarking {engine.name} {scenario.value}: {config.warmup_rounds} warm-up + "
			f"{config.measured_rounds} measured rounds, concurrency {config.concurrency}"
		)

		warmup = self._dispatch(engine.name, operation, items, config.warmup_rounds, deadline)
		if warmup.deadline_exceeded:
			measured = _Phase(deadline_exceeded=True)
		else:
			measured = self._dispatch(engine.name, operation, items, config.measured_rounds, deadline)

		report = EngineReport(
			engine=engine.name,
			scenario=scenario,
			operation=scenario.value,
			warmup_rounds=config.warmup_rounds,
			measured_rounds=config.measured_rounds,
			concurrency=config.concurrency,
			completed=len(measured.samples),
			errors=measured.errors,
			deadline_exceeded=measured.deadline_exceeded,
			latency=LatencyStats.from_samples(measured.samples, measured.wall_seconds),
			wall_seconds=measured.wall_seconds,
		)
		logger.info(
			f"{engine.name} {scenario.value}: {report.completed} ok, {report.errors} errors, "
			f"p50={report.latency.p50:.3f}ms p99={report.latency.p99:.3f}ms "
			f"{report.latency.throughput:.1f} req/s"
		)
		return _footprint(report, engine)

	def _dispatch(
		self,
		name: str,
		operation: Callable[[Any], Any],
		items: Sequence[Any],
		rounds: int,
		deadline: Deadline,
	) -> _Phase:
		phase = _Phase()
		if rounds == 0 or not items:
			return phase

		concurrency = self.config.concurrency
		started = time.perf_counter()
		with ThreadPoolExecutor(
			max_workers=concurrency,
			thread_name_prefix=f"{name}-worker",
		) as pool:
			pending: dict[Future, Any] = {}
			while phase.dispatched < rounds or pending:
				try:
					while phase.dispatched < rounds and len(pending) < concurrency:
						deadline.check()
						item = items[phase.dispatched % len(items)]
						pending[pool.submit(_timed, operation, item)] = item
						phase.dispatched += 1
				except DeadlineExceeded as e:
					logger.warning(
						f"{name}: {e} after {phase.dispatched}/{rounds} requests; "
						f"reporting partial results"
					)
					phase.deadline_exceeded = True
					rounds = phase.dispatched

				if not pending:
					break
				timeout = deadline.remaining() if phase.dispatched < rounds else None
				done, _ = wait(pending, timeout=timeout, return_when=FIRST_COMPLETED)
				for future in done:
					item = pending.pop(future)
					try:
						phase.samples.append(future.result())
					except PermbenchError as e:
						phase.errors += 1
						logger.error(f"{name} request {item} failed: {e}")
		phase.wall_seconds = time.perf_counter() - started
		return phase

	def run_mutation_scenario(
		self,
		engines: Sequence[PermissionEngine],
		session_factory: sessionmaker[Session],
	) -> list[EngineReport]:
		"""
		Apply then undo the same changes on every engine, one report per change kind.

		Covers membership, following, re-parenting and ownership. Measures the
		latency of each change and, for the flat engine, how many rows each one
		rewrites. Every pair cancels out, so the stores end where they started.
		"""
		changes = build_mutation_changes(
			session_factory, self.config.mutation_rounds, self.config.seed
		)
		reports = []
		for engine in engines:
			deadline = Deadline(self.config.timeout_seconds)
			for kind in CHANGE_KINDS:
				reports.append(self._run_changes(engine, kind, changes[kind], deadline))
		return reports

	def _run_changes(
		self,
		engine: PermissionEngine,
		kind: str,
		pairs: list[ChangePair],
		deadline: Deadline,
	) -> EngineReport:
		samples: list[float] = []
		errors = touched = 0
		deadline_exceeded = False
		started = time.perf_counter()

		for pair in pairs:
			if deadline.expired:
				logger.warning(f"{engine.name}: mutation deadline exceeded, reporting partial results")
				deadline_exceeded = True
				break
			for change in pair:
				change_started = time.perf_counter()
				try:
					touched += engine.apply(change)
				except PermbenchError as e:
					errors += 1
					logger.error(f"{engine.name} failed to apply {change}: {e}")
					continue
				samples.append((time.perf_counter() - change_started) * 1000)

		wall_seconds = time.perf_counter() - started
		logger.info(f"{engine.name} {kind}: {len(samples)} changes applied, {touched} rows touched")
		return _footprint(EngineReport(
			engine=engine.name,
			scenario=Scenario.MUTATION,
			operation=kind,
			warmup_rounds=0,
			measured_rounds=len(pairs) * 2,
			concurrency=1,
			completed=len(samples),
			errors=errors,
			deadline_exceeded=deadline_exceeded,
			latency=LatencyStats.from_samples(samples, wall_seconds),
			rows_touched=touched,
			wall_seconds=wall_seconds,
		), engine)


def build_mutation_changes(
	session_factory: sessionmaker[Session],
	rounds: int,
	seed: int,
) -> dict[str, list[ChangePair]]:
	"""Seeded (change, undo) pairs per change kind, each valid against the stored entities."""
	rng = random.Random(seed)
	changes: dict[str, list[ChangePair]] = {kind: [] for kind in CHANGE_KINDS}
	with session_factory() as db, storage_errors():
		departments = db.execute(
			select(Department.id, Department.parent_id).order_by(Department.id)
		).tuples().all()
		user_ids = list(db.scalars(select(User.id).order_by(User.id)))
		customer_ids = list(db.scalars(select(Customer.id).order_by(Customer.id)))
		max_document_id = db.scalar(select(func.max(Document.id))) or 0
		if not departments or not user_ids:
			return changes

		department_ids = [d for d, _ in departments]
		children = [(d, parent) for d, parent in departments if parent is not None]
		for _ in range(rounds):
			department_id, user_id = rng.choice(department_ids), rng.choice(user_ids)
			if not db.scalar(select(exists().where(
				DepartmentMember.department_id == department_id,
				DepartmentMember.user_id == user_id,
			))):
				changes["member"].append((
					MemberAdded(department_id, user_id),
					MemberRemoved(department_id, user_id),
				))

			if customer_ids:
				customer_id, user_id = rng.choice(customer_ids), rng.choice(user_ids)
				if not db.scalar(select(exists().where(
					CustomerFollower.customer_id == customer_id,
					CustomerFollower.user_id == user_id,
				))):
					changes["follower"].append((
						FollowerAdded(customer_id, user_id),
						FollowerRemoved(customer_id, user_id),
					))

			if children:
				department_id, parent_id = rng.choice(children)
				changes["reparent"].append((
					DepartmentReparented(department_id, None),
					DepartmentReparented(department_id, parent_id),
				))

			document = db.get(Document, rng.randint(1, max_document_id)) if max_document_id else None
			if document is not None and customer_ids:
				if document.owner_kind == OwnerKind.DEPARTMENT.value:
					moved = DocumentOwnerChanged(document.id, OwnerKind.CUSTOMER, rng.choice(customer_ids))
				else:
					moved = DocumentOwnerChanged(document.id, OwnerKind.DEPARTMENT, rng.choice(department_ids))
				changes["owner"].append((
					moved,
					DocumentOwnerChanged(document.id, OwnerKind(document.owner_kind), document.owner_id),
				))
	return changes


def cross_check(
	engines: Sequence[PermissionEngine],
	requests: Sequence[CheckRequest],
	sample: int,
) -> tuple[int, list[Mismatch]]:
	"""Ask every engine the first ``sample`` requests; disagreements are reported, never raised."""
	checked = 0
	mismatches = []
	for request in requests[:sample]:
		try:
			answers = {
				engine.name: engine.check(request.user_id, request.document_id)
				for engine in engines
			}
		except PermbenchError as e:
			logger.error(f"Cross-check skipped user={request.user_id} document={request.document_id}: {e}")
			continue
		checked += 1
		if len(set(answers.values())) > 1:
			mismatch = Mismatch(request.user_id, request.document_id, answers)
			logger.warning(f"Engines disagree: {mismatch}")
			mismatches.append(mismatch)
	if mismatches:
		logger.warning(f"Cross-check found {len(mismatches)} mismatches in {checked} requests")
	else:
		logger.info(f"Cross-check: engines agree on {checked} requests")
	return checked, mismatches


def cross_check_listings(
	engines: Sequence[PermissionEngine],
	requests: Sequence[CheckRequest],
	sample: int,
) -> tuple[int, list[Mismatch]]:
	"""Compare full document listings for the distinct users among the first ``sample`` requests."""
	checked = 0
	mismatches = []
	for user_id in dict.fromkeys(request.user_id for request in requests[:sample]):
		try:
			answers = {
				engine.name: frozenset(engine.list_viewable_documents(user_id))
				for engine in engines
			}
		except PermbenchError as e:
			logger.error(f"Listing cross-check skipped user={user_id}: {e}")
			continue
		checked += 1
		if len(set(answers.values())) > 1:
			mismatch = Mismatch(user_id, None, answers)
			logger.warning(f"Engines disagree: {mismatch}")
			mismatches.append(mismatch)
	logger.info(f"Listing cross-check: {len(mismatches)} mismatches in {checked} users")
	return checked, mismatches


def _attach_mismatches(reports: list[EngineReport], mismatches: list[Mismatch]) -> None:
	for report in reports:
		report.mismatches = len(mismatches)
		report.mismatch_samples = [str(m) for m in mismatches[:MISMATCH_SAMPLES]]


def run_comparison(
	session_factory: sessionmaker[Session],
	engines: Sequence[PermissionEngine],
	config: BenchmarkConfig,
) -> list[EngineReport]:
	"""Run the configured scenarios on every engine; one report per engine per scenario run."""
	runner = BenchmarkRunner(config)
	requests = build_request_corpus(session_factory, config)
	reports: list[EngineReport] = []
	check_mismatches: list[Mismatch] | None = None

	for scenario in config.scenario.expand():
		if scenario == Scenario.MUTATION:
			scenario_reports = runner.run_mutation_scenario(engines, session_factory)
			_, mismatches = cross_check(engines, requests, config.cross_check_sample)
		elif scenario == Scenario.LIST:
			scenario_reports = [runner.run_engine(engine, requests, scenario) for engine in engines]
			_, mismatches = cross_check_listings(engines, requests, config.cross_check_sample)
		else:
			scenario_reports = [runner.run_engine(engine, requests, scenario) for engine in engines]
			if check_mismatches is None:
				_, check_mismatches = cross_check(engines, requests, config.cross_check_sample)
			mismatches = check_mismatches
		_attach_mismatches(scenario_reports, mismatches)
		reports.extend(scenario_reports)

	return reports
