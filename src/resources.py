"""Resource document loading and validation.

A resource document declares the desired infrastructure:

    name: web-stack
    variables:
      size: small
    resources:
      - provider: aws
        type: vm
        name: web
        attributes:
          size: ${var.size}
      - provider: aws
        type: storage
        name: logs
        attributes:
          attached_to: ${aws.vm.web.id}
    outputs:
      web_id: ${aws.vm.web.id}

Attribute values may reference other resources (${provider.type.name.attr}),
variables (${var.NAME}) and secrets (${secret.NAME}). Variables are
substituted at load time; resource and secret references survive into the
ResourceSpec and are resolved by the engine.
"""

import datetime
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

import yaml

from engine.errors import ValidationError

logger = logging.getLogger(__name__)

IDENTIFIER_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_-]*$')
REFERENCE_RE = re.compile(r'\$\{([^}]*)\}')

# Reserved reference prefixes (not resource providers)
VAR_PREFIX = 'var'
SECRET_PREFIX = 'secret'


class _Unknown:
    """Placeholder for a value that is only known after apply."""

    _instance: Optional['_Unknown'] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return '(known after apply)'

    def __str__(self) -> str:
        return '(known after apply)'


UNKNOWN = _Unknown()


@dataclass(frozen=True)
class Reference:
    """A parsed ${...} reference.

    Attributes:
        kind: 'resource', 'var' or 'secret'
        target: Resource address (resource) or variable/secret name
        attribute: Referenced attribute (resource kind only)
        expression: The original text between the braces
    """
    kind: str
    target: str
    attribute: Optional[str] = None
    expression: str = ''


def parse_reference(expression: str) -> Reference:
    """Parse the inside of a ${...} expression.

    Raises:
        ValidationError: If the expression is malformed
    """
    parts = expression.strip().split('.')
    if parts[0] in (VAR_PREFIX, SECRET_PREFIX):
        if len(parts) != 2 or not IDENTIFIER_RE.match(parts[1]):
            raise ValidationError(f"Invalid {parts[0]} reference: '${{{expression}}}'")
        return Reference(kind=parts[0], target=parts[1], expression=expression)

    if len(parts) != 4 or not all(IDENTIFIER_RE.match(p) for p in parts):
        raise ValidationError(
            f"Invalid reference '${{{expression}}}': expected "
            f"${{provider.type.name.attribute}}"
        )
    return Reference(
        kind='resource',
        target='.'.join(parts[:3]),
        attribute=parts[3],
        expression=expression,
    )


def find_references(value: Any) -> list[Reference]:
    """Collect references from a nested attribute value, in order of appearance."""
    refs: list[Reference] = []
    if isinstance(value, str):
        for match in REFERENCE_RE.finditer(value):
            refs.append(parse_reference(match.group(1)))
    elif isinstance(value, dict):
        for item in value.values():
            refs.extend(find_references(item))
    elif isinstance(value, (list, tuple)):
        for item in value:
            refs.extend(find_references(item))
    return refs


def substitute(value: Any, resolve: Callable[[Reference], Any]) -> Any:
    """Replace references in a nested value using a resolver callback.

    A string that is exactly one reference takes the resolved value as-is
    (preserving its type). References embedded in a longer string are
    interpolated with str(). The resolver may return the reference text
    unchanged to leave it in place, or UNKNOWN; any UNKNOWN part makes the
    whole string UNKNOWN.
    """
    if isinstance(value, str):
        whole = REFERENCE_RE.fullmatch(value)
        if whole:
            return resolve(parse_reference(whole.group(1)))

        unknown = False

        def _replace(match: re.Match) -> str:
            nonlocal unknown
            resolved = resolve(parse_reference(match.group(1)))
            if resolved is UNKNOWN:
                unknown = True
                return ''
            return str(resolved)

        result = REFERENCE_RE.sub(_replace, value)
        return UNKNOWN if unknown else result
    if isinstance(value, dict):
        return {k: substitute(v, resolve) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute(v, resolve) for v in value]
    return value


def contains_unknown(value: Any) -> bool:
    """True if UNKNOWN appears anywhere in a nested value."""
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False


def make_address(provider: str, type_: str, name: str) -> str:
    return f'{provider}.{type_}.{name}'


@dataclass(frozen=True)
class ResourceSpec:
    """Declared desired configuration for one infrastructure object.

    Attributes:
        provider: Provider name (e.g. aws, azure, gcp)
        type: Resource type within the provider (e.g. vm, storage)
        name: Logical name, unique per provider/type
        attributes: Declared attribute map (may contain references)
        depends_on: Explicit dependency addresses
        index: Declaration order within the document
    """
    provider: str
    type: str
    name: str
    attributes: dict = field(default_factory=dict, compare=False)
    depends_on: tuple[str, ...] = ()
    index: int = 0

    @property
    def address(self) -> str:
        return make_address(self.provider, self.type, self.name)

    @property
    def references(self) -> list[Reference]:
        """Resource references in attribute order."""
        return [r for r in find_references(self.attributes) if r.kind == 'resource']

    @property
    def secret_names(self) -> list[str]:
        return [r.target for r in find_references(self.attributes) if r.kind == SECRET_PREFIX]

    @property
    def dependencies(self) -> list[str]:
        """Addresses this resource depends on (references, then depends_on), deduplicated."""
        deps: list[str] = []
        for address in [r.target for r in self.references] + list(self.depends_on):
            if address not in deps:
                deps.append(address)
        return deps

    @classmethod
    def from_dict(cls, data: dict, index: int = 0) -> 'ResourceSpec':
        """Create ResourceSpec from dictionary.

        Raises:
            ValidationError: If required fields are missing or malformed
        """
        label = data.get('name', 'unnamed') if isinstance(data, dict) else 'unnamed'
        if not isinstance(data, dict):
            raise ValidationError(f"Resource {index} must be a mapping")
        for key in ('provider', 'type', 'name'):
            if key not in data:
                raise ValidationError(f"Resource {index} ({label}) missing required field: {key}")
            if not isinstance(data[key], str) or not IDENTIFIER_RE.match(data[key]):
                raise ValidationError(
                    f"Resource {index} ({label}) has invalid {key}: '{data[key]}'"
                )
        if data['provider'] in (VAR_PREFIX, SECRET_PREFIX):
            raise ValidationError(
                f"Resource {index} ({label}) uses reserved provider name '{data['provider']}'"
            )

        attributes = data.get('attributes') or {}
        if not isinstance(attributes, dict):
            raise ValidationError(f"Resource {index} ({label}) attributes must be a mapping")

        depends_on = data.get('depends_on') or []
        if not isinstance(depends_on, list):
            raise ValidationError(f"Resource {index} ({label}) depends_on must be a list")

        spec = cls(
            provider=data['provider'],
            type=data['type'],
            name=data['name'],
            attributes=attributes,
            depends_on=tuple(depends_on),
            index=index,
        )
        # Surface malformed references at load time
        try:
            find_references(attributes)
        except ValidationError as e:
            raise ValidationError(f"{spec.address}: {e.message}", address=spec.address)
        return spec

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        d: dict[str, Any] = {
            'provider': self.provider,
            'type': self.type,
            'name': self.name,
            'attributes': self.attributes,
        }
        if self.depends_on:
            d['depends_on'] = list(self.depends_on)
        return d


@dataclass
class ResourceDocument:
    """A loaded resource document.

    Attributes:
        name: Document name (defaults to the file stem)
        resources: ResourceSpecs in declaration order, variables substituted
        variables: Effective variable values (defaults merged with overrides)
        outputs: Output name -> expression (may contain resource references)
        source_path: Path the document was loaded from
    """
    name: str
    resources: list[ResourceSpec]
    variables: dict = field(default_factory=dict)
    outputs: dict = field(default_factory=dict)
    source_path: Optional[Path] = None

    def get(self, address: str) -> ResourceSpec:
        """Get a resource by address.

        Raises:
            KeyError: If no resource has that address
        """
        for spec in self.resources:
            if spec.address == address:
                return spec
        raise KeyError(address)

    @property
    def addresses(self) -> list[str]:
        return [spec.address for spec in self.resources]

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'variables': self.variables,
            'resources': [spec.to_dict() for spec in self.resources],
            'outputs': self.outputs,
        }

    @classmethod
    def from_dict(
        cls,
        data: dict,
        source_path: Optional[Path] = None,
        overrides: Optional[dict] = None,
    ) -> 'ResourceDocument':
        """Create a ResourceDocument from a dictionary.

        Args:
            data: Parsed document
            source_path: Optional source path (name fallback, error messages)
            overrides: Variable values overriding declared defaults

        Raises:
            ValidationError: If the document is invalid
        """
        if not isinstance(data, dict):
            raise ValidationError("Resource document must be a mapping")

        name = data.get('name') or (source_path.stem if source_path else 'resources')

        variables = dict(data.get('variables') or {})
        for key, value in (overrides or {}).items():
            if key not in variables:
                raise ValidationError(
                    f"Unknown variable '{key}'. Declared: "
                    f"{', '.join(sorted(variables)) if variables else 'none'}"
                )
            variables[key] = value

        raw_resources = data.get('resources')
        if raw_resources is None:
            raise ValidationError("Resource document missing required field: resources")
        if not isinstance(raw_resources, list):
            raise ValidationError("Resource document field 'resources' must be a list")

        resources: list[ResourceSpec] = []
        seen: set[str] = set()
        for i, item in enumerate(raw_resources):
            spec = ResourceSpec.from_dict(item, index=i)
            if spec.address in seen:
                raise ValidationError(f"Duplicate resource address: '{spec.address}'",
                                      address=spec.address)
            seen.add(spec.address)
            resources.append(_apply_variables(spec, variables))

        outputs = data.get('outputs') or {}
        if not isinstance(outputs, dict):
            raise ValidationError("Resource document field 'outputs' must be a mapping")
        outputs = to_json_value(_substitute_variables(outputs, variables, 'outputs'), 'outputs')

        return cls(
            name=name,
            resources=resources,
            variables=variables,
            outputs=outputs,
            source_path=source_path,
        )

    @classmethod
    def from_json(cls, json_str: str, overrides: Optional[dict] = None) -> 'ResourceDocument':
        """Create ResourceDocument from JSON string."""
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid resource JSON: {e}")
        return cls.from_dict(data, overrides=overrides)


def _substitute_variables(value: Any, variables: dict, where: str,
                          address: Optional[str] = None) -> Any:
    def _resolve(ref: Reference) -> Any:
        if ref.kind != VAR_PREFIX:
            return f'${{{ref.expression}}}'
        if ref.target not in variables:
            raise ValidationError(f"{where} references undefined variable '{ref.target}'",
                                  address=address)
        return variables[ref.target]

    return substitute(value, _resolve)


def _json_key(key: Any) -> str:
    """Mapping key as json.dump writes it."""
    if isinstance(key, str):
        return key
    if key is None or isinstance(key, (bool, int, float)):
        return json.dumps(key)
    if isinstance(key, datetime.date):
        return key.isoformat()
    raise TypeError(key)


def to_json_value(value: Any, where: str, address: Optional[str] = None) -> Any:
    """Normalize a loaded value to what it reads back as from state.

    Mapping keys become strings and YAML dates become ISO strings, so a
    stored record compares equal to the document that produced it.

    Raises:
        ValidationError: For values JSON cannot hold (binary, sets, ...) or
            keys that collide once converted
    """
    if isinstance(value, dict):
        normalized: dict[str, Any] = {}
        for key, item in value.items():
            try:
                name = _json_key(key)
            except TypeError:
                raise ValidationError(f"{where}: unsupported mapping key {key!r}", address=address)
            if name in normalized:
                raise ValidationError(f"{where}: duplicate key '{name}' after conversion to string",
                                      address=address)
            normalized[name] = to_json_value(item, where, address)
        return normalized
    if isinstance(value, (list, tuple)):
        return [to_json_value(item, where, address) for item in value]
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, datetime.date):
        return value.isoformat()
    raise ValidationError(
        f"{where}: unsupported value {value!r} ({type(value).__name__})",
        address=address,
    )


def _apply_variables(spec: ResourceSpec, variables: dict) -> ResourceSpec:
    """Return a copy of spec with ${var.*} substituted."""
    attributes = _substitute_variables(spec.attributes, variables, spec.address,
                                      address=spec.address)
    attributes = to_json_value(attributes, spec.address, address=spec.address)
    return ResourceSpec(
        provider=spec.provider,
        type=spec.type,
        name=spec.name,
        attributes=attributes,
        depends_on=spec.depends_on,
        index=spec.index,
    )


def load_resources(
    file_path: Optional[str] = None,
    json_str: Optional[str] = None,
    variables: Optional[dict] = None,
) -> ResourceDocument:
    """Load a resource document from a file (YAML or JSON) or inline JSON.

    Args:
        file_path: Path to the resource document
        json_str: Inline JSON document (takes priority)
        variables: Variable overrides

    Returns:
        ResourceDocument instance

    Raises:
        ValidationError: If the document is missing or invalid
    """
    if json_str:
        return ResourceDocument.from_json(json_str, overrides=variables)
    if not file_path:
        raise ValidationError("No resource document specified")

    path = Path(file_path)
    if not path.exists():
        raise ValidationError(f"Resource document not found: {path}")

    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid YAML in resource document {path}: {e}")

    if not isinstance(data, dict):
        raise ValidationError(f"Resource document {path} must be a YAML object (dict)")

    document = ResourceDocument.from_dict(data, source_path=path, overrides=variables)
    logger.debug(f"Loaded {len(document.resources)} resources from {path}")
    return document
