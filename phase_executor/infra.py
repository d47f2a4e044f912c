"""Infra gate: on-demand E2E infrastructure for tasks that need it.

A task whose verify command runs a browser test suite (Playwright,
``test:e2e``) needs the docker compose E2E stack. The gate starts that
stack the first time such a task is dispatched and keeps it up for the
rest of the run.

Provides:
- Detection of infra-dependent verify commands
- Idempotent provisioning under a unique compose project name
- Health polling with bounded attempts (unready services only warn)
- Teardown registered with atexit and SIGINT/SIGTERM at start time, run
  exactly once per started session
"""

from __future__ import annotations

import atexit
import re
import signal
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional
from urllib.error import URLError
from urllib.request import urlopen

from .clock import SYSTEM_CLOCK, Clock
from .config import HealthCheckConfig, InfraConfig
from .console import get_logger
from .errors import InfraUnavailable
from .exec import ExecResult, run_command, which
from .timeline import EventType, TimelineLogger

logger = get_logger(__name__)

CommandRunner = Callable[..., ExecResult]


@dataclass(frozen=True)
class InfraSession:
    """State of the E2E stack for this run."""
    started: bool = False
    namespace: Optional[str] = None
    compose_cmd: List[str] = field(default_factory=list)


NOT_STARTED = InfraSession()


def needs_infrastructure(verify_command: str, patterns: Iterable[str]) -> bool:
    """Whether a verify command runs a suite that needs the E2E stack."""
    if not verify_command:
        return False
    return any(re.search(re.escape(p), verify_command, re.IGNORECASE) for p in patterns)


def _check_health(url: str, timeout: int = 5) -> bool:
    """True if the URL answers with a 2xx status."""
    try:
        response = urlopen(url, timeout=timeout)
        return 200 <= response.status < 300
    except (URLError, OSError, ValueError):
        return False


class InfraGate:
    """Starts the E2E stack on demand and guarantees its teardown.

    Usage:
        with InfraGate(config.infra, repo_root) as gate:
            gate.ensure_for(task.verify)
            ...
    """

    def __init__(
        self,
        config: InfraConfig,
        repo_root: Path,
        runner: CommandRunner = run_command,
        clock: Clock = SYSTEM_CLOCK,
        probe: Callable[[str], bool] = _check_health,
        timeline: Optional[TimelineLogger] = None,
        which_fn: Callable[[str], Optional[str]] = which,
        dry_run: bool = False,
    ):
        """Initialize the gate.

        Args:
            config: Infra settings.
            repo_root: Directory holding the compose file.
            runner: Command runner (``exec.run_command`` signature).
            clock: Time source for startup grace and health polling.
            probe: Health check function taking a URL.
            timeline: Timeline logger for infra events.
            which_fn: Executable lookup.
            dry_run: Log intended actions without running anything.
        """
        self.config = config
        self.repo_root = Path(repo_root)
        self.runner = runner
        self.clock = clock
        self.probe = probe
        self.timeline = timeline
        self.which = which_fn
        self.dry_run = dry_run
        self.session = NOT_STARTED
        self.teardown_count = 0
        self._cleanup_registered = False
        self._original_handlers: Dict[int, object] = {}

    def __enter__(self) -> "InfraGate":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.teardown()

    def _run(self, argv: List[str], env: Optional[Dict[str, str]] = None) -> ExecResult:
        return self.runner(argv, cwd=self.repo_root, env=env, timeout=600)

    def _compose_env(self, namespace: str) -> Dict[str, str]:
        return {"COMPOSE_PROJECT_NAME": namespace}

    def _compose_args(self, compose_cmd: List[str], *action: str) -> List[str]:
        return compose_cmd + ["-f", self.config.compose_file, "--profile", self.config.profile, *action]

    def needs_infrastructure(self, verify_command: str) -> bool:
        return needs_infrastructure(verify_command, self.config.test_runner_patterns)

    def ensure_for(self, verify_command: str) -> InfraSession:
        """Start the stack if the verify command needs it.

        Provisioning problems are logged, not raised: the task proceeds and
        fails on its own if the stack really was required.
        """
        if not self.needs_infrastructure(verify_command):
            return self.session
        logger.info("  Task requires E2E infrastructure (E2E test runner detected)")
        try:
            return self.ensure_started()
        except InfraUnavailable as e:
            logger.warning("E2E infrastructure unavailable: %s - E2E tests may fail", e)
            return self.session

    def _detect_compose(self) -> List[str]:
        if not self.which("docker"):
            raise InfraUnavailable("docker not available")
        if self._run(["docker", "compose", "version"]).success:
            return ["docker", "compose"]
        if self.which("docker-compose"):
            return ["docker-compose"]
        raise InfraUnavailable("docker compose not available")

    def _remove_stale_containers(self) -> None:
        patterns = self.config.stale_container_patterns
        if not patterns:
            return
        listing = self._run(["docker", "ps", "-a", "--format", "{{.Names}}"])
        names = [
            name.strip()
            for name in listing.stdout.splitlines()
            if name.strip() and any(re.search(p, name) for p in patterns)
        ]
        if names:
            logger.info("Removing stale containers: %s", ", ".join(names))
            self._run(["docker", "rm", "-f", *names])
        self._run(["docker", "network", "prune", "-f"])

    def _missing_containers(self) -> List[str]:
        missing = []
        for name in self.config.required_containers:
            result = self._run(
                ["docker", "ps", "--filter", f"name={name}", "--filter", "status=running", "-q"]
            )
            if not result.stdout.strip():
                missing.append(name)
        return missing

    def _wait_for(self, check: HealthCheckConfig) -> bool:
        for _ in range(max(1, check.attempts)):
            if self.probe(check.url):
                logger.success("%s is ready", check.name)
                return True
            self.clock.sleep(check.interval)
        logger.warning("%s may not be fully ready, continuing anyway", check.name)
        return False

    def ensure_started(self) -> InfraSession:
        """Start the stack once per run; later calls return the live session.

        Raises:
            InfraUnavailable: If docker tooling is missing or the required
                containers are not running after startup. Teardown stays
                armed in the latter case.
        """
        if self.session.started:
            logger.info("E2E infrastructure already running")
            return self.session

        if self.dry_run:
            logger.info("[DRY RUN] Would start E2E infrastructure (%s)", self.config.compose_file)
            return self.session

        compose_cmd = self._detect_compose()
        namespace = f"{self.config.project_prefix}-{int(self.clock.now())}"

        logger.info("Starting E2E Docker infrastructure (%s)...", namespace)
        self._remove_stale_containers()

        self._register_cleanup()
        self.session = InfraSession(started=True, namespace=namespace, compose_cmd=compose_cmd)
        if self.timeline:
            self.timeline.log(EventType.INFRA_START, details={"namespace": namespace})

        # compose exits non-zero for unhealthy-but-running services; container state decides
        up = self._run(self._compose_args(compose_cmd, "up", "-d"), env=self._compose_env(namespace))
        if not up.success:
            logger.debug("compose up exited %d: %s", up.exit_code, up.tail())

        self.clock.sleep(self.config.startup_grace)
        missing = self._missing_containers()
        if missing:
            for name in missing:
                logger.error("  %s: NOT RUNNING", name)
            raise InfraUnavailable(f"E2E containers not running: {', '.join(missing)}")

        logger.info("E2E containers are running, waiting for services...")
        ready = {check.name: self._wait_for(check) for check in self.config.health_checks}
        if self.timeline:
            self.timeline.log(EventType.INFRA_READY, details={"namespace": namespace, "ready": ready})

        logger.success("E2E infrastructure started")
        return self.session

    def teardown(self) -> None:
        """Stop the stack. Runs at most once per started session."""
        session = self.session
        if not session.started:
            return
        self.session = NOT_STARTED
        self.teardown_count += 1

        logger.info("Stopping E2E Docker infrastructure...")
        if session.compose_cmd and session.namespace:
            down = self._run(
                self._compose_args(session.compose_cmd, "down"),
                env=self._compose_env(session.namespace),
            )
            if not down.success:
                logger.debug("compose down exited %d: %s", down.exit_code, down.tail())

        if self.config.containers:
            self._run(["docker", "stop", *self.config.containers])
            self._run(["docker", "rm", "-f", *self.config.containers])

        if self.timeline:
            self.timeline.log(EventType.INFRA_STOP, details={"namespace": session.namespace})
        logger.success("E2E infrastructure stopped")

    def _register_cleanup(self) -> None:
        """Register teardown for normal exit and termination signals."""
        if self._cleanup_registered:
            return
        atexit.register(self.teardown)
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                self._original_handlers[signum] = signal.signal(signum, self._signal_handler)
            except ValueError:
                # Not the main thread; atexit still covers normal exit
                pass
        self._cleanup_registered = True

    def _signal_handler(self, signum: int, frame) -> None:
        logger.warning("Received signal %d, cleaning up E2E infrastructure...", signum)
        self.teardown()
        sys.exit(128 + signum)
