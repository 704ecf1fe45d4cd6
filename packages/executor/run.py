"""
Run - One convergence pass of one target against one host

Lifecycle:
    plan (tag filter) → connect → gather facts → resolve context
        ↓
    directives, strictly sequential, abort on first fatal
        ↓
    handlers (once each, unless a fatal abort occurred)
        ↓
    cleanup staged files → close connection → seal report

The connection and the validation gate are scoped to execute(): both are
released on every exit path, including fatal abort and cancellation.
Cancellation is checked before each directive, never mid-directive.
"""

from typing import Callable, Iterable, List, Optional
import logging
import threading

from directives import Directive, Handler, RunContext, TargetSpec
from directives.errors import CommitFailed, ConnectionLost, RenderError, RunCancelled
from governance import ValidationGate
from planner import ExecutionPlan, ExecutionPlanner, PlanningError, TagFilter

from .config import EngineConfig
from .executor import DirectiveExecutor
from .facts import gather_facts
from .handlers import HandlerQueue
from .report import DirectiveResult, Outcome, RunReport

logger = logging.getLogger(__name__)


class Run:
    """
    Converges one host to a target specification.

    A Run executes once; create a new Run for every invocation.
    """

    def __init__(
        self,
        target: TargetSpec,
        connection_factory: Callable[[], object],
        tag_filter: Optional[TagFilter] = None,
        config: Optional[EngineConfig] = None,
        host: Optional[str] = None
    ):
        """
        Initialize run.

        Args:
            target: Validated target specification
            connection_factory: Zero-argument callable returning a HostConnection
            tag_filter: Tag include/exclude filter (default: everything)
            config: Engine configuration
            host: Host label for the report (default: connection name)
        """
        self.target = target
        self.connection_factory = connection_factory
        self.tag_filter = tag_filter or TagFilter()
        self.config = config or EngineConfig()
        self.host = host

        self._cancel = threading.Event()
        self._lock = threading.Lock()
        self._started = False
        self.report: Optional[RunReport] = None

    @classmethod
    def from_directives(
        cls,
        directives: Iterable[Directive],
        connection_factory: Callable[[], object],
        handlers: Iterable[Handler] = (),
        variables: Optional[dict] = None,
        **kwargs
    ) -> "Run":
        """Build a Run from in-memory directives instead of a target file."""
        target = TargetSpec(
            name="inline",
            vars=dict(variables or {}),
            directives=list(directives),
            handlers=list(handlers)
        )
        return cls(target, connection_factory, **kwargs)

    def cancel(self) -> None:
        """Request cancellation. Honoured before the next directive starts."""
        if not self._cancel.is_set():
            logger.warning("Cancellation requested; stopping before the next directive")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def execute(self) -> RunReport:
        """
        Execute the run.

        Returns:
            Sealed RunReport

        Raises:
            RuntimeError: If this Run was already executed
        """
        with self._lock:
            if self._started:
                raise RuntimeError("Run already executed")
            self._started = True

        report = RunReport(
            target=self.target.name,
            host=self.host or "unknown",
            dry_run=self.config.dry_run,
            allowed_failures=frozenset(self.target.allowed_failures) | self.config.allowed_failures
        )
        self.report = report

        try:
            plan = ExecutionPlanner().plan(
                self.target.directives, self.tag_filter, self.target.handler_map
            )
        except PlanningError as e:
            logger.error(f"Cannot plan target '{self.target.name}': {e}")
            report.mark_config_error(str(e))
            report.seal()
            return report

        report.omitted.extend(plan.omitted)

        try:
            connection = self.connection_factory()
        except ConnectionLost as e:
            logger.error(f"Cannot connect: {e.message}")
            report.mark_connection_lost(e.message)
            report.mark_not_run(plan.runnable_ids)
            report.seal()
            return report

        if self.host is None:
            report.host = getattr(connection, "name", "unknown")

        logger.info(
            f"Run start: target '{self.target.name}' on {report.host} "
            f"({len(plan)} directives{', dry run' if self.config.dry_run else ''})"
        )

        gate = ValidationGate(connection, timeout=self.config.command_timeout)
        try:
            self._converge(connection, gate, plan, report)
        finally:
            try:
                gate.cleanup()
            except ConnectionLost as e:
                logger.warning(f"Could not clean up staged files on {report.host}: {e.message}")
            connection.close()

        report.seal()
        logger.info(
            f"Run end: {report.status} (exit {int(report.exit_code())}), "
            f"{report.changed_count} changed"
        )
        return report

    def _converge(self, connection, gate: ValidationGate, plan: ExecutionPlan, report: RunReport):
        runnable_ids = plan.runnable_ids

        try:
            facts = gather_facts(connection, self.config.command_timeout) if self.target.gather_facts else {}
            context = RunContext.resolve(self.target.vars, facts)
        except (RenderError, CommitFailed) as e:
            logger.error(f"Cannot build run context: {e.message}")
            report.mark_config_error(e.message)
            report.mark_not_run(runnable_ids)
            return
        except ConnectionLost as e:
            report.mark_connection_lost(e.message)
            report.mark_not_run(runnable_ids)
            return

        queue = HandlerQueue(self.target.handler_map)
        executor = DirectiveExecutor(connection, gate, queue, self.config)
        aborted = False

        for index, directive in enumerate(plan.runnable):
            if self._cancel.is_set():
                cancelled = RunCancelled(f"Run cancelled before '{directive.id}'", directive.id)
                logger.warning(cancelled.message)
                report.mark_cancelled()
                report.mark_not_run(runnable_ids[index:])
                break

            try:
                result = executor.execute(directive, context)
            except ConnectionLost as e:
                logger.error(f"[{directive.id}] connection lost: {e.message}")
                report.record(DirectiveResult(
                    directive_id=directive.id,
                    label=directive.label,
                    outcome=Outcome.FAILED_FATAL,
                    message=e.message,
                    error_code=e.code,
                    stderr=e.message
                ))
                report.mark_connection_lost(e.message)
                report.mark_not_run(runnable_ids[index + 1:])
                self._report_unfired(queue, report, "connection lost")
                return

            report.record(result)
            if result.is_fatal:
                logger.error(f"Aborting run at '{directive.id}' ({result.error_code})")
                report.mark_not_run(runnable_ids[index + 1:])
                aborted = True
                break

        # Only a fatal abort withholds handlers; cancellation is a graceful stop.
        if aborted and not self.config.force_handlers:
            self._report_unfired(queue, report, "run aborted")
            return

        try:
            for handler_result in queue.fire(executor, context):
                report.record_handler(handler_result)
        except ConnectionLost as e:
            logger.error(f"Connection lost while firing handlers: {e.message}")
            report.mark_connection_lost(e.message)
            self._report_unfired(queue, report, "connection lost")

    def _report_unfired(self, queue: HandlerQueue, report: RunReport, reason: str):
        unfired: List[str] = queue.drain()
        if unfired:
            logger.warning(f"Handlers not fired ({reason}): {', '.join(unfired)}")
            report.mark_unfired(unfired)
