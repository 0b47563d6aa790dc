"""Stack loading and validation.

A stack declares typed resources. Resource properties are trees of plain
YAML values in which any leaf may be a reference to another resource's
output attribute:

    resources:
      PostsApi:
        type: graphql-api
        properties:
          name: posts-api
          authenticationType: API_KEY
      PostsApiKey:
        type: api-key
        properties:
          apiId: {ref: PostsApi.apiId}

Leaves are parsed into a tagged union (LiteralValue | Ref). String literals
may use ${var.NAME} to substitute stack variables.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from config import ConfigError, RunConfig
from errors import ValidationError
from providers.types import get_type

logger = logging.getLogger(__name__)

LOGICAL_ID_PATTERN = re.compile(r'^[A-Za-z][A-Za-z0-9_-]*$')
VARIABLE_PATTERN = re.compile(r'\$\{var\.([A-Za-z_][A-Za-z0-9_]*)\}')

REMOVAL_POLICIES = ('delete', 'retain')
ON_ERROR_MODES = ('stop',)


@dataclass(frozen=True)
class Ref:
    """Reference to a producer resource's output attribute."""
    resource: str
    attribute: str

    def __str__(self) -> str:
        return f"{self.resource}.{self.attribute}"


@dataclass(frozen=True)
class LiteralValue:
    """A plain scalar leaf."""
    value: Any


PropertyValue = Union[LiteralValue, Ref, dict, list]


def _parse_ref(raw: Any, logical_id: str) -> Ref:
    if isinstance(raw, str):
        resource, sep, attribute = raw.partition('.')
        if not sep or not resource or not attribute:
            raise ValidationError(
                f"Invalid reference '{raw}': expected 'Resource.attribute'",
                logical_id=logical_id,
            )
        return Ref(resource, attribute)
    if isinstance(raw, dict) and set(raw) == {'resource', 'attribute'}:
        return Ref(str(raw['resource']), str(raw['attribute']))
    raise ValidationError(f"Invalid reference {raw!r}", logical_id=logical_id)


def _substitute(text: str, variables: dict, logical_id: str) -> str:
    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name not in variables:
            raise ValidationError(f"Unknown variable '{name}'", logical_id=logical_id)
        return str(variables[name])
    return VARIABLE_PATTERN.sub(_replace, text)


def parse_value(raw: Any, logical_id: str, variables: Optional[dict] = None) -> PropertyValue:
    """Parse a raw YAML property value into a property tree.

    {ref: ...} mappings become Ref leaves; other scalars become LiteralValue.
    """
    variables = variables or {}
    if isinstance(raw, dict):
        if 'ref' in raw:
            if len(raw) != 1:
                raise ValidationError(
                    f"Reference mapping must contain only 'ref', got {sorted(raw)}",
                    logical_id=logical_id,
                )
            return _parse_ref(raw['ref'], logical_id)
        return {str(k): parse_value(v, logical_id, variables) for k, v in raw.items()}
    if isinstance(raw, list):
        return [parse_value(v, logical_id, variables) for v in raw]
    if isinstance(raw, str):
        return LiteralValue(_substitute(raw, variables, logical_id))
    return LiteralValue(raw)


def unparse_value(value: PropertyValue) -> Any:
    """Inverse of parse_value (for serialization)."""
    if isinstance(value, Ref):
        return {'ref': str(value)}
    if isinstance(value, LiteralValue):
        return value.value
    if isinstance(value, dict):
        return {k: unparse_value(v) for k, v in value.items()}
    return [unparse_value(v) for v in value]


def collect_refs(value: PropertyValue) -> list[Ref]:
    """Collect Ref leaves of a property tree in traversal order."""
    if isinstance(value, Ref):
        return [value]
    if isinstance(value, dict):
        return [r for v in value.values() for r in collect_refs(v)]
    if isinstance(value, list):
        return [r for v in value for r in collect_refs(v)]
    return []


@dataclass
class Resource:
    """A declared resource.

    Attributes:
        logical_id: Stable name, unique within the stack
        type: Resource type tag (see providers.types)
        properties: Property name -> property tree
        depends_on: Explicit dependencies (logical ids)
        removal_policy: 'delete' or 'retain' (retain leaves the physical
                        resource in place when it leaves the stack)
        index: Declaration order
    """
    logical_id: str
    type: str
    properties: dict[str, PropertyValue] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    removal_policy: str = 'delete'
    index: int = 0

    def references(self) -> list[Ref]:
        refs: list[Ref] = []
        for value in self.properties.values():
            refs.extend(collect_refs(value))
        return refs

    @classmethod
    def from_dict(cls, logical_id: str, data: dict, index: int = 0,
                  variables: Optional[dict] = None) -> 'Resource':
        """Create Resource from dictionary.

        Raises:
            ValidationError: If the declaration is malformed
        """
        if not LOGICAL_ID_PATTERN.match(str(logical_id)):
            raise ValidationError(
                f"Invalid logical id '{logical_id}' "
                f"(letters, digits, '-' and '_', starting with a letter)"
            )
        if not isinstance(data, dict):
            raise ValidationError("Resource declaration must be a mapping", logical_id=logical_id)
        if 'type' not in data:
            raise ValidationError("Missing required field: type", logical_id=logical_id)

        try:
            rtype = get_type(data['type'])
        except ValidationError as e:
            raise ValidationError(e.message, logical_id=logical_id) from None

        raw_props = data.get('properties') or {}
        if not isinstance(raw_props, dict):
            raise ValidationError("'properties' must be a mapping", logical_id=logical_id)

        missing = sorted(rtype.required - set(raw_props))
        if missing:
            raise ValidationError(
                f"Missing required properties for {rtype.name}: {', '.join(missing)}",
                logical_id=logical_id,
            )

        depends_on = data.get('depends_on') or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
            raise ValidationError("'depends_on' must be a list of logical ids",
                                  logical_id=logical_id)

        removal_policy = data.get('removal_policy', 'delete')
        if removal_policy not in REMOVAL_POLICIES:
            raise ValidationError(
                f"Invalid removal_policy '{removal_policy}'. "
                f"Supported: {', '.join(REMOVAL_POLICIES)}",
                logical_id=logical_id,
            )

        unknown = sorted(set(data) - {'type', 'properties', 'depends_on', 'removal_policy'})
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(unknown)}", logical_id=logical_id)

        return cls(
            logical_id=logical_id,
            type=rtype.name,
            properties={k: parse_value(v, logical_id, variables) for k, v in raw_props.items()},
            depends_on=list(depends_on),
            removal_policy=removal_policy,
            index=index,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        d: dict[str, Any] = {'type': self.type}
        if self.properties:
            d['properties'] = {k: unparse_value(v) for k, v in self.properties.items()}
        if self.depends_on:
            d['depends_on'] = list(self.depends_on)
        if self.removal_policy != 'delete':
            d['removal_policy'] = self.removal_policy
        return d


@dataclass
class StackSettings:
    """Optional settings for stack execution.

    Attributes:
        concurrency: Per-stack concurrency override (None = use run config)
        on_error: Error handling strategy (only 'stop' is supported)
    """
    concurrency: Optional[int] = None
    on_error: str = 'stop'

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'StackSettings':
        if not data:
            return cls()
        concurrency = data.get('concurrency')
        if concurrency is not None and (not isinstance(concurrency, int) or concurrency < 1):
            raise ValidationError(f"settings.concurrency must be a positive integer, got {concurrency!r}")
        on_error = data.get('on_error', 'stop')
        if on_error not in ON_ERROR_MODES:
            raise ValidationError(f"Unsupported settings.on_error '{on_error}'")
        return cls(concurrency=concurrency, on_error=on_error)


@dataclass
class Stack:
    """A set of resource declarations.

    Attributes:
        name: Stack name (also the state record key)
        resources: Declarations in declaration order
        description: Optional description
        variables: Values substituted for ${var.NAME}
        settings: Execution settings
        source_path: Path the stack was loaded from (for debugging)
    """
    name: str
    resources: list[Resource]
    description: str = ''
    variables: dict[str, Any] = field(default_factory=dict)
    settings: StackSettings = field(default_factory=StackSettings)
    source_path: Optional[Path] = None

    def get_resource(self, logical_id: str) -> Resource:
        """Raises KeyError if not declared."""
        for resource in self.resources:
            if resource.logical_id == logical_id:
                return resource
        raise KeyError(logical_id)

    def to_dict(self) -> dict:
        """Convert stack to dictionary (for JSON serialization)."""
        d: dict[str, Any] = {
            'name': self.name,
            'description': self.description,
            'resources': {r.logical_id: r.to_dict() for r in self.resources},
        }
        if self.variables:
            d['variables'] = dict(self.variables)
        if self.settings.concurrency is not None:
            d['settings'] = {'concurrency': self.settings.concurrency}
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'Stack':
        """Create Stack from dictionary.

        Resources may be given as a mapping (logical id -> declaration) or as
        a list of declarations each carrying an 'id' field.

        Raises:
            ValidationError: If the stack is malformed
        """
        if not isinstance(data, dict):
            raise ValidationError("Stack must be a mapping")
        if 'name' not in data:
            raise ValidationError("Stack missing required field: name")

        variables = data.get('variables') or {}
        if not isinstance(variables, dict):
            raise ValidationError("'variables' must be a mapping")

        raw = data.get('resources')
        if not raw:
            raise ValidationError("Stack must declare at least one resource")

        entries: list[tuple[str, dict]] = []
        if isinstance(raw, dict):
            entries = [(str(k), v) for k, v in raw.items()]
        elif isinstance(raw, list):
            for i, item in enumerate(raw):
                if not isinstance(item, dict) or 'id' not in item:
                    raise ValidationError(f"Resource {i} missing required field: id")
                body = {k: v for k, v in item.items() if k != 'id'}
                entries.append((str(item['id']), body))
        else:
            raise ValidationError("'resources' must be a mapping or a list")

        resources = []
        seen: set[str] = set()
        for index, (logical_id, body) in enumerate(entries):
            if logical_id in seen:
                raise ValidationError("Duplicate logical id", logical_id=logical_id)
            seen.add(logical_id)
            resources.append(Resource.from_dict(logical_id, body, index=index, variables=variables))

        return cls(
            name=str(data['name']),
            description=data.get('description', ''),
            resources=resources,
            variables=dict(variables),
            settings=StackSettings.from_dict(data.get('settings')),
            source_path=source_path,
        )

    @classmethod
    def from_json(cls, json_str: str) -> 'Stack':
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid stack JSON: {e}")
        return cls.from_dict(data)


class StackLoader:
    """Loads stacks from the workspace stacks/ directory."""

    def __init__(self, stacks_dir: Path):
        self.stacks_dir = Path(stacks_dir)

    def list_stacks(self) -> list[str]:
        if not self.stacks_dir.exists():
            return []
        return sorted(f.stem for f in self.stacks_dir.glob('*.yaml') if f.is_file())

    def load(self, name: str) -> Stack:
        """Load stack by name.

        Raises:
            ConfigError: If the stack file is not found
            ValidationError: If the stack is invalid
        """
        path = self.stacks_dir / f'{name}.yaml'
        if not path.exists():
            available = self.list_stacks()
            raise ConfigError(
                f"Stack '{name}' not found at {path}. "
                f"Available: {', '.join(available) if available else 'none'}"
            )
        return self.load_file(path)

    def load_file(self, path: Path) -> Stack:
        """Load stack from a specific YAML file.

        Raises:
            ConfigError: If the file is missing or not valid YAML
            ValidationError: If the stack is invalid
        """
        if not path.exists():
            raise ConfigError(f"Stack file not found: {path}")
        try:
            with open(path, encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in stack {path}: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"Stack {path} must be a YAML object (dict)")
        stack = Stack.from_dict(data, source_path=path)
        logger.debug(f"Loaded stack '{stack.name}' ({len(stack.resources)} resources) from {path}")
        return stack


def load_stack(
    config: RunConfig,
    name: Optional[str] = None,
    file_path: Optional[str] = None,
    json_str: Optional[str] = None,
) -> Stack:
    """Load a stack from one of several sources.

    Priority:
    1. json_str - Inline JSON
    2. file_path - Specific file path
    3. name - Named stack from the stacks directory

    Raises:
        ConfigError: If no source is given or the stack is not found
        ValidationError: If the stack is invalid
    """
    if json_str:
        return Stack.from_json(json_str)
    loader = StackLoader(config.stacks_dir)
    if file_path:
        return loader.load_file(Path(file_path))
    if name:
        return loader.load(name)
    raise ConfigError("No stack specified")
