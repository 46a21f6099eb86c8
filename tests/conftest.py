from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pytest

from config import parse_project_config, load_stack_settings
from engine import ResourceEngine, SharedInfraNotFound

SECRET_NAMES = [
    "SANITY_WEBHOOK_SECRET",
    "AUTH0_SECRET",
    "POWERBI_TENANT",
]


class Ref:
    """Symbolic output of a declared resource, e.g. Ref('pulumitest-dev-tg', 'arn')."""

    def __init__(self, owner: str, path: str):
        self.owner = owner
        self.path = path

    def __getattr__(self, item):
        if item.startswith("_"):
            raise AttributeError(item)
        return Ref(self.owner, f"{self.path}.{item}")

    def __eq__(self, other):
        return isinstance(other, Ref) and (self.owner, self.path) == (other.owner, other.path)

    def __hash__(self):
        return hash((self.owner, self.path))

    def __repr__(self):
        return f"Ref({self.owner}.{self.path})"


@dataclass
class Concat:
    parts: tuple


class Handle:
    def __init__(self, name: str):
        self._name = name

    def __getattr__(self, item):
        if item.startswith("_"):
            raise AttributeError(item)
        return Ref(self._name, item)


class LookupHandle:
    def __init__(self, kind: str, attributes: Dict[str, Any]):
        self.kind = kind
        self._attributes = attributes

    def __getattr__(self, item):
        if item.startswith("_"):
            raise AttributeError(item)
        try:
            return self._attributes[item]
        except KeyError:
            raise AttributeError(f"{self.kind} has no output '{item}'")


@dataclass
class Declaration:
    kind: str
    name: str
    properties: Dict[str, Any]
    depends_on: List[str]
    references: List[str]
    protect: bool


def find_references(value) -> List[str]:
    if isinstance(value, Ref):
        return [value.owner]
    if isinstance(value, Concat):
        return find_references(list(value.parts))
    if isinstance(value, dict):
        return [owner for item in value.values() for owner in find_references(item)]
    if isinstance(value, (list, tuple)):
        return [owner for item in value for owner in find_references(item)]
    return []


@dataclass
class RecordingEngine(ResourceEngine):
    shared: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    lookups: List[tuple] = field(default_factory=list)
    declarations: List[Declaration] = field(default_factory=list)

    def lookup(self, kind: str, **selector) -> Any:
        self.lookups.append((kind, selector))
        if kind not in self.shared:
            raise SharedInfraNotFound(f"No {kind} found for {selector}")
        return LookupHandle(kind, self.shared[kind])

    def declare(
        self,
        kind: str,
        name: str,
        properties: Dict[str, Any],
        depends_on: Optional[List[Any]] = None,
        protect: bool = False,
    ) -> Any:
        self.declarations.append(
            Declaration(
                kind=kind,
                name=name,
                properties=properties,
                depends_on=[handle._name for handle in depends_on or []],
                references=sorted(set(find_references(properties))),
                protect=protect,
            )
        )
        return Handle(name)

    def concat(self, *parts) -> Any:
        return Concat(parts)

    def of_kind(self, kind: str) -> List[Declaration]:
        return [d for d in self.declarations if d.kind == kind]

    def one(self, kind: str) -> Declaration:
        found = self.of_kind(kind)
        assert len(found) == 1, f"expected one {kind}, found {len(found)}"
        return found[0]

    def names(self) -> List[tuple]:
        return [(d.kind, d.name) for d in self.declarations]


class FakeStackConfig:
    """Stands in for pulumi.Config, answering from a dict."""

    def __init__(self, values: Dict[str, Any]):
        self.values = values

    def get(self, key):
        return self.values.get(key)

    def get_int(self, key):
        value = self.values.get(key)
        return None if value is None else int(value)

    def get_secret(self, key):
        return self.values.get(key)


@pytest.fixture
def project_data():
    return {
        "client": "pulumitest",
        "base_domain": "intergalactic.space",
        "region": "us-west-2",
        "vpc_id": "vpc-05fe1cfe39cb385ed",
        "task_role_arn": "arn:aws:iam::123456789012:role/ecsTaskExecutionRole",
        "secret_names": list(SECRET_NAMES),
        "mail": {
            "domain": "intergalactic.com",
            "zone_id": "Z01707952S9R61QRTSNP0",
            "email": "dev+pulumitest@intergalactic.com",
        },
    }


@pytest.fixture
def project(project_data):
    return parse_project_config(project_data)


@pytest.fixture
def stack_values():
    values = {
        "env": "staging",
        "alb": "shared-alb",
        "listener": "arn:aws:elasticloadbalancing:us-west-2:123456789012:listener/app/shared-alb/1/2",
        "url": "staging.pulumitest.com",
        "cert": "arn:aws:acm:us-west-2:123456789012:certificate/abc",
        "rulePriority": 42,
    }
    for name in SECRET_NAMES:
        values[name] = f"{name.lower()}-value"
    return values


@pytest.fixture
def make_settings(project, stack_values):
    def _make(**overrides):
        values = dict(stack_values)
        for key, value in overrides.items():
            if value is None:
                values.pop(key, None)
            else:
                values[key] = value
        return load_stack_settings(FakeStackConfig(values), project)

    return _make


@pytest.fixture
def shared_infra():
    return {
        "ec2.Vpc": {"id": "vpc-05fe1cfe39cb385ed"},
        "lb.LoadBalancer": {
            "arn": "arn:aws:elasticloadbalancing:us-west-2:123456789012:loadbalancer/app/shared-alb/1",
            "dns_name": "shared-alb-1.us-west-2.elb.amazonaws.com",
            "zone_id": "Z1H1FL5HABSF5",
        },
        "ecs.Cluster": {"arn": "arn:aws:ecs:us-west-2:123456789012:cluster/ig-dev-3631767"},
        "lb.Listener": {
            "arn": "arn:aws:elasticloadbalancing:us-west-2:123456789012:listener/app/shared-alb/1/2",
        },
    }


@pytest.fixture
def engine(shared_infra):
    return RecordingEngine(shared=shared_infra)
