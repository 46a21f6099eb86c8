import json
import pulumi
from dataclasses import dataclass
from typing import Any, Dict, List

from config import ConfigurationError, EnvironmentKind, ProjectConfig, StackSettings
from engine import ResourceEngine

CONTAINER_NAME = "app"
CONTAINER_PORT = 3000
HEALTH_CHECK_PATH = "/api/healthz"
HEALTH_CHECK_MATCHER = "200"
HTTPS_PORT = 443
TASK_CPU = "128"
TASK_MEMORY = "256"
CMS_API_VERSION = "2023-06-01"
CMS_DATASET = "production"
SMTP_ACTIONS = ["ses:SendRawEmail", "ses:SendEmail"]


@dataclass
class SharedInfra:
    vpc: Any
    alb: Any
    cluster: Any
    listener: Any


class WebStackBuilder:
    """
    Declares the web application's resources against a ResourceEngine.
    Every name is derived from the client and environment, so running the
    build twice with the same settings declares the same graph.
    """

    def __init__(self, project: ProjectConfig, settings: StackSettings, engine: ResourceEngine):
        self.project = project
        self.settings = settings
        self.engine = engine
        self.outputs: Dict[str, Any] = {}

    def generate_resource_name(self, role: str) -> str:
        return f"{self.project.client}-{self.settings.environment}-{role}".lower()

    def tags(self, name: str) -> Dict[str, str]:
        return {
            "Client": self.project.client,
            "Name": f"{self.project.client} {name}",
        }

    @property
    def host_header(self) -> str:
        return f"{self.project.client}.{self.settings.environment}.{self.project.base_domain}"

    @property
    def base_url(self) -> str:
        return f"https://{self.settings.url}"

    def build(self) -> Dict[str, Any]:
        if self.settings.kind is EnvironmentKind.PRODUCTION and self.project.mail is None:
            raise ConfigurationError("Production builds need a 'mail' section in config.yaml")
        infra = self.resolve_shared_infra()
        secrets = self.materialize_secrets()
        self.declare_entry_point(infra)
        image = self.declare_image()
        target_group = self.declare_routing(infra)
        self.declare_compute(infra, image, target_group, secrets)
        if self.settings.kind is EnvironmentKind.PRODUCTION:
            self.declare_mail_identity()
        elif self.settings.kind is not EnvironmentKind.NON_PRODUCTION:
            raise ValueError(f"Unhandled environment kind: {self.settings.kind}")
        return self.outputs

    def resolve_shared_infra(self) -> SharedInfra:
        vpc = self.engine.lookup("ec2.Vpc", id=self.project.vpc_id)
        alb = self.engine.lookup("lb.LoadBalancer", name=self.settings.alb)
        cluster = self.engine.lookup("ecs.Cluster", cluster_name=self.settings.cluster)
        listener = self.engine.lookup(
            "lb.Listener",
            arn=self.settings.listener_arn,
            load_balancer_arn=alb.arn,
            port=HTTPS_PORT,
        )
        return SharedInfra(vpc=vpc, alb=alb, cluster=cluster, listener=listener)

    def materialize_secrets(self) -> List[Dict[str, Any]]:
        bindings = []
        for secret_name, value in self.settings.secrets:
            parameter = self.engine.declare(
                "ssm.Parameter",
                f"{self.project.client}-{self.settings.environment}-{secret_name}",
                {"type": "SecureString", "value": value},
            )
            bindings.append({"name": secret_name, "value_from": parameter.arn})
        pulumi.log.info(f"Bound {len(bindings)} secrets for {self.settings.environment}")
        return bindings

    def declare_entry_point(self, infra: SharedInfra):
        zone = self.engine.declare(
            "route53.Zone",
            self.generate_resource_name("zone"),
            {"name": self.settings.url},
            protect=True,
        )
        return self.engine.declare(
            "route53.Record",
            self.generate_resource_name("a-record"),
            {
                "zone_id": zone.zone_id,
                "name": "",
                "type": "A",
                "aliases": [
                    {
                        "evaluate_target_health": True,
                        "name": infra.alb.dns_name,
                        "zone_id": infra.alb.zone_id,
                    }
                ],
            },
            protect=True,
        )

    def build_args(self) -> Dict[str, str]:
        profile = self.settings.profile
        return {
            "WORKSPACE": "web",
            "NODE_ENV": "production",
            "PORT": str(CONTAINER_PORT),
            "NEXT_PUBLIC_SANITY_PROJECT_ID": profile.cms_project_id,
            "NEXT_PUBLIC_SANITY_API_VERSION": CMS_API_VERSION,
            "NEXT_PUBLIC_SANITY_DATASET": CMS_DATASET,
            "NEXT_PUBLIC_API_URL": f"{self.base_url}/api",
            "NEXT_PUBLIC_BASE_URL": self.base_url,
            "NEXT_PUBLIC_PORT": str(CONTAINER_PORT),
            "NEXT_PUBLIC_NODE_ENV": "production",
            "NEXT_PUBLIC_SANITY_STUDIO_TITLE": self.project.client,
            "NEXT_PUBLIC_ALGOLIA_INDEX": profile.search_index,
            "NEXT_PUBLIC_ALGOLIA_SEARCH_ONLY_KEY": profile.search_key,
            "NEXT_PUBLIC_ALGOLIA_APPLICATION_ID": profile.search_app_id,
            "NEXT_PUBLIC_SECURE_UPLOADS_URL": profile.cdn_url,
        }

    def container_environment(self) -> List[Dict[str, str]]:
        args = self.build_args()
        variables = {
            "NEXT_PUBLIC_BASE_URL": self.base_url,
            "NEXT_PUBLIC_SANITY_PROJECT_ID": args["NEXT_PUBLIC_SANITY_PROJECT_ID"],
            "NEXT_PUBLIC_SANITY_API_VERSION": CMS_API_VERSION,
            "NEXT_PUBLIC_PORT": str(CONTAINER_PORT),
            "AUTH0_BASE_URL": self.base_url,
            "NEXT_PUBLIC_NODE_ENV": "production",
            "NEXT_PUBLIC_ALGOLIA_INDEX": args["NEXT_PUBLIC_ALGOLIA_INDEX"],
            "NEXT_PUBLIC_ALGOLIA_APPLICATION_ID": args["NEXT_PUBLIC_ALGOLIA_APPLICATION_ID"],
            "NEXT_PUBLIC_ALGOLIA_SEARCH_ONLY_KEY": args["NEXT_PUBLIC_ALGOLIA_SEARCH_ONLY_KEY"],
            "NEXT_PUBLIC_SECURE_UPLOADS_URL": args["NEXT_PUBLIC_SECURE_UPLOADS_URL"],
        }
        return [{"name": name, "value": value} for name, value in variables.items()]

    def declare_image(self):
        env = self.settings.environment
        repository = self.engine.declare(
            "ecr.Repository",
            f"{self.project.client}-web-{env}",
            {"tags": self.tags(f"{env} Web Repo")},
            protect=True,
        )
        return self.engine.declare(
            "awsx:ecr.Image",
            f"{self.project.client}-web-{env}-image",
            {
                "repository_url": repository.repository_url,
                "context": self.project.docker_context,
                "dockerfile": self.project.dockerfile,
                "platform": "linux/arm64",
                "args": self.build_args(),
            },
            protect=True,
        )

    def declare_routing(self, infra: SharedInfra):
        env = self.settings.environment
        target_group = self.engine.declare(
            "lb.TargetGroup",
            self.generate_resource_name("tg"),
            {
                "port": 80,
                "protocol": "HTTP",
                "target_type": "instance",
                "vpc_id": infra.vpc.id,
                "health_check": {
                    "path": HEALTH_CHECK_PATH,
                    "matcher": HEALTH_CHECK_MATCHER,
                },
                "tags": self.tags(f"Web {env} Target Group"),
            },
            protect=True,
        )

        if self.settings.cert_arn:
            self.engine.declare(
                "alb.ListenerCertificate",
                self.generate_resource_name("cert"),
                {
                    "listener_arn": infra.listener.arn,
                    "certificate_arn": self.settings.cert_arn,
                },
            )
        else:
            pulumi.log.info(f"No certificate configured for {env}, skipping listener certificate")

        self.engine.declare(
            "lb.ListenerRule",
            self.generate_resource_name("rule"),
            {
                "actions": [{"type": "forward", "target_group_arn": target_group.arn}],
                "conditions": [{"host_header": {"values": [self.host_header]}}],
                "listener_arn": infra.listener.arn,
                "priority": self.settings.rule_priority,
                "tags": self.tags(f"Web {env} Rule"),
            },
            protect=True,
        )
        return target_group

    def declare_compute(self, infra: SharedInfra, image, target_group, secrets: List[Dict[str, Any]]):
        env = self.settings.environment
        client = self.project.client
        task_definition = self.engine.declare(
            "awsx:ecs.EC2TaskDefinition",
            f"{client}-web-{env}-task",
            {
                "containers": {
                    CONTAINER_NAME: {
                        "name": CONTAINER_NAME,
                        "image": image.image_uri,
                        "cpu": 0,
                        "port_mappings": [
                            {"container_port": CONTAINER_PORT, "host_port": 0, "protocol": "tcp"}
                        ],
                        "essential": True,
                        "environment": self.container_environment(),
                        "mount_points": [],
                        "volumes_from": [],
                        "secrets": secrets,
                        "log_configuration": {
                            "log_driver": "awslogs",
                            "options": {
                                "awslogs-create-group": "true",
                                "awslogs-group": f"/ecs/{client}-web-{env}",
                                "awslogs-region": self.project.region,
                                "awslogs-stream-prefix": "ecs",
                            },
                        },
                    }
                },
                "task_role": {"role_arn": self.project.task_role_arn},
                "execution_role": {"role_arn": self.project.execution_role_arn},
                "family": f"{client}-{env}",
                "network_mode": "bridge",
                "runtime_platform": {
                    "cpu_architecture": "ARM64",
                    "operating_system_family": "LINUX",
                },
                "cpu": TASK_CPU,
                "memory": TASK_MEMORY,
                "tags": self.tags(f"Web {env} Task"),
            },
        )

        return self.engine.declare(
            "awsx:ecs.EC2Service",
            f"{client}-web-{env}-service",
            {
                "cluster": infra.cluster.arn,
                "task_definition": task_definition.task_definition.family,
                "propagate_tags": "TASK_DEFINITION",
                "desired_count": 1,
                "enable_ecs_managed_tags": True,
                "continue_before_steady_state": True,
                "deployment_circuit_breaker": {"enable": True, "rollback": True},
                "load_balancers": [
                    {
                        "target_group_arn": target_group.arn,
                        "container_name": CONTAINER_NAME,
                        "container_port": CONTAINER_PORT,
                    }
                ],
            },
        )

    def declare_mail_identity(self):
        mail = self.project.mail
        env = self.settings.environment

        domain_identity = self.engine.declare(
            "ses.DomainIdentity",
            self.generate_resource_name("ses-domain"),
            {"domain": mail.domain},
            protect=True,
        )
        verification_record = self.engine.declare(
            "route53.Record",
            self.generate_resource_name("ses-verification-record"),
            {
                "zone_id": mail.zone_id,
                "name": self.engine.concat("_amazonses.", domain_identity.id),
                "type": "TXT",
                "ttl": mail.ttl,
                "records": [domain_identity.verification_token],
            },
            protect=True,
        )
        self.engine.declare(
            "ses.DomainIdentityVerification",
            self.generate_resource_name("ses-verification"),
            {"domain": domain_identity.id},
            depends_on=[verification_record],
            protect=True,
        )
        self.engine.declare(
            "ses.EmailIdentity",
            self.generate_resource_name("ses-email"),
            {"email": mail.email},
            protect=True,
        )

        policy = self.engine.declare(
            "iam.Policy",
            self.generate_resource_name("ses-smtp-policy"),
            {
                "policy": json.dumps({
                    "Version": "2012-10-17",
                    "Statement": [
                        {"Effect": "Allow", "Action": SMTP_ACTIONS, "Resource": "*"},
                    ],
                }),
                "tags": self.tags(f"Web {env} SMTP Policy"),
            },
            protect=True,
        )
        user = self.engine.declare(
            "iam.User",
            self.generate_resource_name("ses-smtp-user"),
            {"force_destroy": True, "tags": self.tags(f"Web {env} SMTP Access User")},
            protect=True,
        )
        self.engine.declare(
            "iam.PolicyAttachment",
            self.generate_resource_name("ses-smtp-policy-attachment"),
            {"users": [user.name], "policy_arn": policy.arn},
            protect=True,
        )
        access_key = self.engine.declare(
            "iam.AccessKey",
            self.generate_resource_name("ses-smtp-access-key"),
            {"user": user.name},
            protect=True,
        )
        self.engine.declare(
            "ssm.Parameter",
            self.generate_resource_name("smtp-password"),
            {
                "type": "SecureString",
                "value": access_key.ses_smtp_password_v4,
                "tags": self.tags(f"Web {env} SMTP Access User Password"),
            },
        )
        self.outputs["smtpUsername"] = access_key.id
        pulumi.log.info(f"Declared SES SMTP credentials for {env}")
