import abc
import inspect
import re
import pulumi
import pulumi_aws as aws
import pulumi_awsx as awsx
from types import ModuleType
from typing import Any, Callable, Dict, List, Optional, Tuple

from config import ConfigurationError

PROVIDERS: Dict[str, ModuleType] = {
    "aws": aws,
    "awsx": awsx,
}
DEFAULT_PROVIDER = "aws"


class SharedInfraNotFound(ConfigurationError):
    """Raised when a lookup of pre-existing infrastructure resolves to nothing."""


def to_snake_case(name: str) -> str:
    return re.sub(r'(?<!^)(?=[A-Z])', '_', name).lower()


def split_kind(kind: str):
    """Split 'awsx:ecr.Image' into ('awsx', 'ecr', 'Image'). The provider defaults to aws."""
    provider, _, type_path = kind.rpartition(":")
    if "." not in type_path:
        raise ValueError(f"Resource kind '{kind}' must look like '<module>.<Class>'")
    module_name, class_name = type_path.rsplit(".", 1)
    return provider or DEFAULT_PROVIDER, module_name, class_name


def resolve_module(kind: str) -> ModuleType:
    provider_name, module_name, _ = split_kind(kind)
    provider = PROVIDERS.get(provider_name)
    if provider is None:
        raise ValueError(f"Unknown provider '{provider_name}' in resource kind '{kind}'")
    module = getattr(provider, module_name, None)
    if module is None:
        raise ValueError(f"{provider_name} module '{module_name}' not found for '{kind}'")
    return module


def resolve_resource_class(kind: str) -> type:
    _, _, class_name = split_kind(kind)
    module = resolve_module(kind)
    try:
        return getattr(module, class_name)
    except AttributeError:
        raise ValueError(f"Resource class '{class_name}' not found for '{kind}'")


def resolve_lookup_function(kind: str) -> Callable[..., Any]:
    """The Output form of the invoke, so lookups never block the program."""
    _, _, class_name = split_kind(kind)
    module = resolve_module(kind)
    get_func_name = f"get_{to_snake_case(class_name)}_output"
    try:
        return getattr(module, get_func_name)
    except AttributeError:
        raise ValueError(f"Function '{get_func_name}' not found for '{kind}'")


class ResourceEngine(abc.ABC):
    """
    What the builder needs from a provisioning engine. Handles returned by
    lookup and declare expose named outputs (arn, dns_name, zone_id, ...)
    which are only threaded forward, never awaited. A lookup that matches
    nothing must abort the build: PulumiEngine lets the failed invoke fail
    the update, in-memory engines raise SharedInfraNotFound.
    """

    @abc.abstractmethod
    def lookup(self, kind: str, **selector) -> Any:
        ...

    @abc.abstractmethod
    def declare(
        self,
        kind: str,
        name: str,
        properties: Dict[str, Any],
        depends_on: Optional[List[Any]] = None,
        protect: bool = False,
    ) -> Any:
        ...

    @abc.abstractmethod
    def concat(self, *parts) -> Any:
        ...


class PulumiEngine(ResourceEngine):
    def __init__(self, default_tags: Optional[Dict[str, str]] = None):
        self.default_tags = dict(default_tags or {})
        self.resources: Dict[Tuple[str, str], Any] = {}

    def _apply_common_parameters(self, properties: dict, init_sig: inspect.Signature) -> dict:
        if "tags" in init_sig.parameters:
            if self.default_tags:
                properties["tags"] = {**self.default_tags, **(properties.get("tags") or {})}
        else:
            properties.pop("tags", None)
        return properties

    def _resource_options(self, protect: bool, depends_on: Optional[List[Any]]) -> pulumi.ResourceOptions:
        return pulumi.ResourceOptions(protect=protect, depends_on=depends_on or None)

    def lookup(self, kind: str, **selector) -> Any:
        get_func = resolve_lookup_function(kind)
        pulumi.log.info(f"Looking up existing {kind} with {selector}")
        return get_func(**selector)

    def declare(
        self,
        kind: str,
        name: str,
        properties: Dict[str, Any],
        depends_on: Optional[List[Any]] = None,
        protect: bool = False,
    ) -> Any:
        if (kind, name) in self.resources:
            raise ValueError(f"Resource '{name}' ({kind}) declared twice")
        ResourceClass = resolve_resource_class(kind)
        # generated classes overload __init__, the keyword arguments live on _internal_init
        init_sig = inspect.signature(getattr(ResourceClass, "_internal_init", ResourceClass.__init__))
        resolved_args = self._apply_common_parameters(dict(properties), init_sig)
        resource_instance = ResourceClass(name, **resolved_args, opts=self._resource_options(protect, depends_on))
        self.resources[(kind, name)] = resource_instance
        pulumi.log.info(f"Declared resource: {name} ({kind})")
        return resource_instance

    def concat(self, *parts) -> Any:
        return pulumi.Output.concat(*parts)
