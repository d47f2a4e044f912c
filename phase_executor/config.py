"""Configuration loader for the phase executor.

Loads the optional .planning/executor.yml, validates it against the
bundled schemas/executor-config.schema.json and resolves paths relative to
the repository root. Every setting has a default, so a repository without
a config file runs with the stock behaviour.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from jsonschema import Draft7Validator


SCHEMAS_DIR = Path(__file__).resolve().parent / "schemas"
CONFIG_SCHEMA = "executor-config.schema.json"
CONFIG_ENV_VAR = "PHASE_EXECUTOR_CONFIG"

DEFAULT_ALLOWED_TOOLS = ["Bash", "Read", "Write", "Edit", "Glob", "Grep"]


def _read_schema(schema_name: str) -> Dict[str, Any]:
    """Load a JSON schema bundled with the package."""
    schema_path = SCHEMAS_DIR / schema_name
    if not schema_path.exists():
        raise FileNotFoundError(f"Schema not found: {schema_path}")
    return json.loads(schema_path.read_text(encoding="utf-8"))


def validate_against_schema(data: Any, schema_name: str) -> Tuple[bool, List[str]]:
    """Validate data against a bundled JSON schema.

    Returns:
        Tuple of (is_valid, list_of_error_messages)
    """
    validator = Draft7Validator(_read_schema(schema_name))
    errors = sorted(validator.iter_errors(data), key=lambda e: list(e.path))

    if not errors:
        return True, []

    messages: List[str] = []
    for err in errors[:50]:
        location = ".".join(str(p) for p in err.absolute_path) or "<root>"
        messages.append(f"{location}: {err.message}")
    if len(errors) > 50:
        messages.append(f"... and {len(errors) - 50} more errors")
    return False, messages


@dataclass
class GitConfig:
    """Trunk and remote names."""
    trunk: str = "main"
    remote: str = "origin"


@dataclass
class GitHubConfig:
    """Review platform CLI settings."""
    cli: str = "gh"
    # gh falls back to its stored login when GITHUB_TOKEN is empty
    clear_token_env: bool = True


@dataclass
class PlanningConfig:
    """Where the planning hierarchy lives, relative to the repo root."""
    dir: str = ".planning"
    phases_dir: str = ".planning/phases"
    roadmap: str = ".planning/ROADMAP.md"
    state_dir: str = ".planning/.executor"


@dataclass
class AgentConfig:
    """Execution agent (Claude CLI) settings."""
    command: Optional[str] = None
    model: Optional[str] = None
    allowed_tools: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_TOOLS))
    timeout: int = 3600
    max_turns: Optional[int] = None
    commit_trailer: str = ""


@dataclass
class MergeConfig:
    """PR polling budget."""
    poll_interval: int = 30
    timeout_minutes: int = 30
    race_recheck_delay: int = 5
    post_resolve_delay: int = 10
    progress_every: int = 4

    @property
    def max_attempts(self) -> int:
        return max(1, (self.timeout_minutes * 60) // max(1, self.poll_interval))


@dataclass
class ConflictRuleConfig:
    """One row of the conflict classification table."""
    patterns: List[str]
    classification: str
    topic_tokens: List[str] = field(default_factory=list)


@dataclass
class ConflictsConfig:
    """Conflict classification rules and repair settings."""
    rules: List[ConflictRuleConfig] = field(default_factory=list)
    build_command: Optional[str] = None
    extra_instructions: List[str] = field(default_factory=list)


@dataclass
class HealthCheckConfig:
    """One service health surface polled after the stack starts."""
    name: str
    url: str
    attempts: int = 30
    interval: float = 2.0


def _default_health_checks() -> List[HealthCheckConfig]:
    return [
        HealthCheckConfig(name="API", url="http://localhost:3002/api/v1/health", attempts=30, interval=2.0),
        HealthCheckConfig(name="Frontend", url="http://localhost:5174", attempts=15, interval=2.0),
    ]


@dataclass
class InfraConfig:
    """Auxiliary E2E infrastructure (docker compose) settings."""
    compose_file: str = "docker-compose.yml"
    profile: str = "e2e"
    project_prefix: str = "gsd-e2e"
    stale_container_patterns: List[str] = field(default_factory=lambda: ["gsd-e2e"])
    # Name filters that must match a running container after startup
    required_containers: List[str] = field(
        default_factory=lambda: ["backend-e2e", "frontend-e2e", "postgres-e2e"]
    )
    # Explicit container names removed on teardown if compose down misses them
    containers: List[str] = field(default_factory=list)
    test_runner_patterns: List[str] = field(
        default_factory=lambda: ["playwright", "npx playwright", "test:e2e"]
    )
    health_checks: List[HealthCheckConfig] = field(default_factory=_default_health_checks)
    startup_grace: float = 3.0


@dataclass
class PrePushConfig:
    """Pre-push check script and auto-fix commands."""
    command: Optional[str] = "scripts/pre-push-checks.sh"
    autofix: List[str] = field(default_factory=list)
    timeout: int = 1800


@dataclass
class ExecutorConfig:
    """Full executor configuration with structured access."""

    repo_root: Path
    path: Optional[Path] = None
    raw_data: Dict[str, Any] = field(default_factory=dict)

    git: GitConfig = field(default_factory=GitConfig)
    github: GitHubConfig = field(default_factory=GitHubConfig)
    planning: PlanningConfig = field(default_factory=PlanningConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    conflicts: ConflictsConfig = field(default_factory=ConflictsConfig)
    infra: InfraConfig = field(default_factory=InfraConfig)
    prepush: PrePushConfig = field(default_factory=PrePushConfig)

    def resolve_path(self, relative_path: str) -> Path:
        """Resolve a path relative to the repo root."""
        path = Path(relative_path)
        if path.is_absolute():
            return path
        return self.repo_root / path

    @property
    def phases_dir(self) -> Path:
        return self.resolve_path(self.planning.phases_dir)

    @property
    def roadmap_path(self) -> Path:
        return self.resolve_path(self.planning.roadmap)

    @property
    def state_dir(self) -> Path:
        return self.resolve_path(self.planning.state_dir)

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / "logs"


def _parse_git(data: Dict[str, Any]) -> GitConfig:
    return GitConfig(
        trunk=data.get("trunk", "main"),
        remote=data.get("remote", "origin"),
    )


def _parse_github(data: Dict[str, Any]) -> GitHubConfig:
    return GitHubConfig(
        cli=data.get("cli", "gh"),
        clear_token_env=data.get("clear_token_env", True),
    )


def _parse_planning(data: Dict[str, Any]) -> PlanningConfig:
    base = data.get("dir", ".planning")
    return PlanningConfig(
        dir=base,
        phases_dir=data.get("phases_dir", f"{base}/phases"),
        roadmap=data.get("roadmap", f"{base}/ROADMAP.md"),
        state_dir=data.get("state_dir", f"{base}/.executor"),
    )


def _parse_agent(data: Dict[str, Any]) -> AgentConfig:
    return AgentConfig(
        command=data.get("command"),
        model=data.get("model"),
        allowed_tools=data.get("allowed_tools", list(DEFAULT_ALLOWED_TOOLS)),
        timeout=data.get("timeout", 3600),
        max_turns=data.get("max_turns"),
        commit_trailer=data.get("commit_trailer", ""),
    )


def _parse_merge(data: Dict[str, Any]) -> MergeConfig:
    return MergeConfig(
        poll_interval=data.get("poll_interval", 30),
        timeout_minutes=data.get("timeout_minutes", 30),
        race_recheck_delay=data.get("race_recheck_delay", 5),
        post_resolve_delay=data.get("post_resolve_delay", 10),
        progress_every=data.get("progress_every", 4),
    )


def _parse_conflicts(data: Dict[str, Any]) -> ConflictsConfig:
    rules = [
        ConflictRuleConfig(
            patterns=rule["patterns"],
            classification=rule["classification"],
            topic_tokens=rule.get("topic_tokens", []),
        )
        for rule in data.get("rules", [])
    ]
    return ConflictsConfig(
        rules=rules,
        build_command=data.get("build_command"),
        extra_instructions=data.get("extra_instructions", []),
    )


def _parse_infra(data: Dict[str, Any]) -> InfraConfig:
    defaults = InfraConfig()
    checks = defaults.health_checks
    if "health_checks" in data:
        checks = [
            HealthCheckConfig(
                name=check["name"],
                url=check["url"],
                attempts=check.get("attempts", 30),
                interval=check.get("interval", 2.0),
            )
            for check in data["health_checks"]
        ]
    return InfraConfig(
        compose_file=data.get("compose_file", defaults.compose_file),
        profile=data.get("profile", defaults.profile),
        project_prefix=data.get("project_prefix", defaults.project_prefix),
        stale_container_patterns=data.get("stale_container_patterns", defaults.stale_container_patterns),
        required_containers=data.get("required_containers", defaults.required_containers),
        containers=data.get("containers", defaults.containers),
        test_runner_patterns=data.get("test_runner_patterns", defaults.test_runner_patterns),
        health_checks=checks,
        startup_grace=data.get("startup_grace", defaults.startup_grace),
    )


def _parse_prepush(data: Dict[str, Any]) -> PrePushConfig:
    return PrePushConfig(
        command=data.get("command", "scripts/pre-push-checks.sh"),
        autofix=data.get("autofix", []),
        timeout=data.get("timeout", 1800),
    )


def load_config(
    config_path: Optional[Path] = None,
    repo_root: Optional[Path] = None,
) -> ExecutorConfig:
    """Load and validate executor configuration.

    Args:
        config_path: Path to executor.yml. Defaults to .planning/executor.yml.
        repo_root: Repository root directory. Defaults to current working directory.

    Returns:
        ExecutorConfig instance. Defaults are used when no file exists at the
        default location.

    Raises:
        FileNotFoundError: If an explicitly requested config file doesn't exist.
        ValueError: If the config is invalid against the schema.
    """
    repo_root = (repo_root or Path.cwd()).resolve()

    explicit = config_path is not None
    env_config = os.environ.get(CONFIG_ENV_VAR)
    if env_config:
        config_path = Path(env_config)
        explicit = True
    if config_path is None:
        config_path = get_default_config_path(repo_root)
    if not config_path.is_absolute():
        config_path = repo_root / config_path

    if not config_path.exists():
        if explicit:
            raise FileNotFoundError(f"Configuration file not found: {config_path}")
        return ExecutorConfig(repo_root=repo_root)

    raw_data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}

    valid, errors = validate_against_schema(raw_data, CONFIG_SCHEMA)
    if not valid:
        raise ValueError(
            f"Invalid configuration in {config_path}:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )

    return ExecutorConfig(
        repo_root=repo_root,
        path=config_path,
        raw_data=raw_data,
        git=_parse_git(raw_data.get("git", {})),
        github=_parse_github(raw_data.get("github", {})),
        planning=_parse_planning(raw_data.get("planning", {})),
        agent=_parse_agent(raw_data.get("agent", {})),
        merge=_parse_merge(raw_data.get("merge", {})),
        conflicts=_parse_conflicts(raw_data.get("conflicts", {})),
        infra=_parse_infra(raw_data.get("infra", {})),
        prepush=_parse_prepush(raw_data.get("prepush", {})),
    )


def get_default_config_path(repo_root: Optional[Path] = None) -> Path:
    """Get the default configuration file path."""
    return (repo_root or Path.cwd()) / ".planning" / "executor.yml"
