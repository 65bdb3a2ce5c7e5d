"""
Tool registry.

Built once per configuration snapshot: every manifest entry is bound to its
compiled input/output validators and, where one exists, its handler. The
registry and the snapshot it was built from are swapped together as one
GatewayRuntime.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import httpx
from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from jsonschema.validators import validator_for

from .config import ConfigSnapshot, TenantContext, ToolDescriptor
from .errors import NotImplementedToolError, OutputContractError, ValidationError
from .security import Principal


@dataclass(frozen=True)
class HandlerContext:
    tool: str
    tenant: TenantContext
    principal: Principal
    correlation_id: Optional[str] = None
    http: Optional[httpx.AsyncClient] = None


Handler = Callable[[HandlerContext, Dict[str, Any]], Awaitable[Dict[str, Any]]]


class SchemaValidator:
    def __init__(self, schema: Mapping[str, Any]) -> None:
        cls = validator_for(schema, default=Draft202012Validator)
        cls.check_schema(schema)
        self._validator = cls(schema, format_checker=cls.FORMAT_CHECKER)

    def errors(self, instance: Any) -> List[Dict[str, Any]]:
        found = sorted(self._validator.iter_errors(instance), key=lambda e: [str(p) for p in e.absolute_path])
        return [
            {
                "path": "/" + "/".join(str(p) for p in error.absolute_path),
                "message": error.message,
                "validator": error.validator,
            }
            for error in found
        ]


@dataclass(frozen=True)
class ToolCapability:
    descriptor: ToolDescriptor
    input_validator: SchemaValidator
    output_validator: SchemaValidator
    handler: Optional[Handler] = None

    @property
    def name(self) -> str:
        return self.descriptor.name

    def validate_input(self, body: Any) -> None:
        errors = self.input_validator.errors(body)
        if errors:
            raise ValidationError("Invalid input", details={"errors": errors})

    def validate_output(self, payload: Any) -> None:
        errors = self.output_validator.errors(payload)
        if errors:
            raise OutputContractError("Output did not match schema", details={"errors": errors})

    async def invoke(self, ctx: HandlerContext, body: Dict[str, Any]) -> Dict[str, Any]:
        if self.handler is None:
            raise NotImplementedToolError("Tool not implemented yet", details={"tool": self.name})
        return await self.handler(ctx, body)


class ToolRegistry:
    def __init__(self, capabilities: Mapping[str, ToolCapability]) -> None:
        self._by_name = dict(capabilities)
        self._by_path = {cap.descriptor.path: cap for cap in capabilities.values()}

    @classmethod
    def build(cls, tools: Mapping[str, ToolDescriptor], handlers: Mapping[str, Handler]) -> "ToolRegistry":
        capabilities: Dict[str, ToolCapability] = {}
        for name, descriptor in tools.items():
            try:
                capabilities[name] = ToolCapability(
                    descriptor=descriptor,
                    input_validator=SchemaValidator(descriptor.input_schema),
                    output_validator=SchemaValidator(descriptor.output_schema),
                    handler=handlers.get(name),
                )
            except SchemaError as exc:
                raise ValueError(f"Tool {name}: invalid schema: {exc.message}") from exc
        return cls(capabilities)

    def get(self, name: str) -> Optional[ToolCapability]:
        return self._by_name.get(name)

    def by_path(self, path: str) -> Optional[ToolCapability]:
        return self._by_path.get(path)

    def names(self) -> List[str]:
        return sorted(self._by_name)

    def __iter__(self):
        return iter(self._by_name[name] for name in self.names())

    def __len__(self) -> int:
        return len(self._by_name)


@dataclass(frozen=True)
class GatewayRuntime:
    snapshot: ConfigSnapshot
    registry: ToolRegistry

    @classmethod
    def build(cls, snapshot: ConfigSnapshot, handlers: Mapping[str, Handler]) -> "GatewayRuntime":
        return cls(snapshot=snapshot, registry=ToolRegistry.build(snapshot.tools, handlers))
