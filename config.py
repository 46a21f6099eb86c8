"""
This module defines the data structures for our configuration.
The static project topology comes from config.yaml, the per-stack values
and secrets come from the Pulumi stack configuration. Both are read once,
at program entry, and handed to the builder as frozen dataclasses.
"""

import enum
import hashlib
import pulumi
import yaml
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

DEFAULT_CLUSTER = "ig-dev-3631767"
DEFAULT_REGION = "us-west-2"
DEFAULT_DOCKER_CONTEXT = "../../"
DEFAULT_DOCKERFILE = "../../.docker/next.Dockerfile"
PRIORITY_RANGE = (1, 200)
MAX_RULE_PRIORITY = 50000

REQUIRED_PROJECT_KEYS = ["client", "base_domain", "region", "vpc_id", "secret_names"]


class ConfigurationError(ValueError):
    """Raised when the project or stack configuration cannot produce a deployment."""


class EnvironmentKind(enum.Enum):
    PRODUCTION = "production"
    NON_PRODUCTION = "non-production"


def classify_environment(name: str) -> EnvironmentKind:
    if not name:
        raise ConfigurationError("Environment name must not be empty")
    if name == EnvironmentKind.PRODUCTION.value:
        return EnvironmentKind.PRODUCTION
    return EnvironmentKind.NON_PRODUCTION


@dataclass(frozen=True)
class BuildProfile:
    search_index: str
    search_key: str
    search_app_id: str
    cdn_url: str
    cms_project_id: str


BUILD_PROFILES: Dict[EnvironmentKind, BuildProfile] = {
    EnvironmentKind.PRODUCTION: BuildProfile(
        search_index="prod_contentHub",
        search_key="f4dafff8d6d54fcc764cd6ffcc334dca",
        search_app_id="ABRJ5NEDAZ",
        cdn_url="https://aiq-cdn.pulumitest.com",
        cms_project_id="xjetorgi",
    ),
    EnvironmentKind.NON_PRODUCTION: BuildProfile(
        search_index="Test_pulumitest",
        search_key="af30881c89beeff19f2537b70d84ffcf",
        search_app_id="WX23VFIASO",
        cdn_url="https://pulumitest-cdn.staging.intergalactic.space",
        cms_project_id="s9egr9mn",
    ),
}


def profile_for(kind: EnvironmentKind) -> BuildProfile:
    try:
        return BUILD_PROFILES[kind]
    except KeyError:
        raise ConfigurationError(f"No build profile defined for environment kind '{kind.value}'")


@dataclass(frozen=True)
class MailSettings:
    domain: str
    zone_id: str
    email: str
    ttl: int = 600


@dataclass(frozen=True)
class ProjectConfig:
    client: str
    base_domain: str
    region: str
    vpc_id: str
    task_role_arn: str
    execution_role_arn: str
    secret_names: Tuple[str, ...]
    mail: Optional[MailSettings] = None
    default_cluster: str = DEFAULT_CLUSTER
    docker_context: str = DEFAULT_DOCKER_CONTEXT
    dockerfile: str = DEFAULT_DOCKERFILE
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class StackSettings:
    environment: str
    kind: EnvironmentKind
    cluster: str
    alb: str
    listener_arn: str
    url: str
    rule_priority: int
    secrets: Tuple[Tuple[str, Any], ...]
    cert_arn: Optional[str] = None

    @property
    def profile(self) -> BuildProfile:
        return profile_for(self.kind)


def load_config(file_path: str) -> Dict[str, Any]:
    """Load and validate YAML configuration from the given file path."""
    with open(file_path, "r") as file:
        config_data = yaml.safe_load(file) or {}

    # Ensure required keys exist
    for key in REQUIRED_PROJECT_KEYS:
        if key not in config_data:
            raise ConfigurationError(f"Missing required configuration key: {key}")

    return config_data


def parse_project_config(config_data: Dict[str, Any]) -> ProjectConfig:
    secret_names = list(config_data.get("secret_names") or [])
    if not secret_names:
        raise ConfigurationError("At least one secret name must be configured")
    duplicates = sorted({name for name in secret_names if secret_names.count(name) > 1})
    if duplicates:
        raise ConfigurationError(f"Duplicate secret names: {', '.join(duplicates)}")

    mail = None
    mail_data = config_data.get("mail")
    if mail_data:
        for key in ("domain", "zone_id", "email"):
            if key not in mail_data:
                raise ConfigurationError(f"Missing required mail configuration key: {key}")
        mail = MailSettings(
            domain=mail_data["domain"],
            zone_id=mail_data["zone_id"],
            email=mail_data["email"],
            ttl=int(mail_data.get("ttl", 600)),
        )

    task_role_arn = config_data.get("task_role_arn")
    if not task_role_arn:
        raise ConfigurationError("Missing required configuration key: task_role_arn")

    return ProjectConfig(
        client=config_data["client"].strip().lower(),
        base_domain=config_data["base_domain"].strip().lower(),
        region=config_data.get("region") or DEFAULT_REGION,
        vpc_id=config_data["vpc_id"],
        task_role_arn=task_role_arn,
        execution_role_arn=config_data.get("execution_role_arn") or task_role_arn,
        secret_names=tuple(secret_names),
        mail=mail,
        default_cluster=config_data.get("default_cluster") or DEFAULT_CLUSTER,
        docker_context=config_data.get("docker_context") or DEFAULT_DOCKER_CONTEXT,
        dockerfile=config_data.get("dockerfile") or DEFAULT_DOCKERFILE,
        tags=dict(config_data.get("tags") or {}),
    )


def derive_rule_priority(environment: str, service: str) -> int:
    """
    Stable listener rule priority for a service/environment pair.
    Repeated builds of the same stack always land on the same value.
    Two environments can hash to the same priority on a shared listener,
    in which case the load balancer rejects the second rule: set an
    explicit rulePriority on one of the stacks.
    """
    low, high = PRIORITY_RANGE
    digest = hashlib.sha256(f"{service}:{environment}".encode("utf-8")).hexdigest()
    return low + int(digest, 16) % (high - low + 1)


def _require(stack_config, key: str) -> str:
    value = stack_config.get(key)
    if not value:
        raise ConfigurationError(f"Missing required stack configuration value: {key}")
    return value


def load_stack_settings(stack_config, project: ProjectConfig) -> StackSettings:
    """
    Read every per-stack value up front. Missing secrets are all reported
    together so nothing gets declared with an empty value.
    """
    environment = _require(stack_config, "env").strip()
    if environment != environment.lower():
        raise ConfigurationError(f"Environment name must be lowercase, got '{environment}'")
    kind = classify_environment(environment)

    rule_priority = stack_config.get_int("rulePriority")
    if rule_priority is None:
        rule_priority = derive_rule_priority(environment, project.client)
        pulumi.log.info(
            f"Derived listener rule priority {rule_priority} for {environment}; "
            f"set rulePriority if it collides with another rule"
        )
    elif not 1 <= rule_priority <= MAX_RULE_PRIORITY:
        raise ConfigurationError(
            f"rulePriority must be between 1 and {MAX_RULE_PRIORITY}, got {rule_priority}"
        )

    secrets: List[Tuple[str, Any]] = []
    missing: List[str] = []
    for name in project.secret_names:
        # get() sees the plaintext, get_secret() wraps it in an Output
        if not stack_config.get(name):
            missing.append(name)
        else:
            secrets.append((name, stack_config.get_secret(name)))
    if missing:
        raise ConfigurationError(f"Missing or empty required secrets: {', '.join(missing)}")

    return StackSettings(
        environment=environment,
        kind=kind,
        cluster=stack_config.get("cluster") or project.default_cluster,
        alb=_require(stack_config, "alb"),
        listener_arn=_require(stack_config, "listener"),
        url=_require(stack_config, "url"),
        rule_priority=rule_priority,
        secrets=tuple(secrets),
        cert_arn=stack_config.get("cert") or None,
    )
