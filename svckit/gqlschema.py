"""GraphQL schema model, schema hooks and the code-generation extension."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List

SCALAR = "SCALAR"
OBJECT = "OBJECT"
INTERFACE = "INTERFACE"
STRING_VALUE = "STRING"

FEDERATION_TEMPLATE = "template/gql_federation.tmpl"
EVENT_HOOKS_TEMPLATE = "template/event_hooks.tmpl"

TEMPLATE_FUNCS: Dict[str, Callable[[str, str], bool]] = {
    "contains": lambda text, sub: sub in text,
}


class SchemaError(Exception):
    """Raised when a schema hook cannot find what it needs."""


@dataclass
class Argument:
    """A directive argument."""

    name: str
    value: str
    kind: str = STRING_VALUE


@dataclass
class Directive:
    """A directive applied to a definition or field."""

    name: str
    arguments: List[Argument] = field(default_factory=list)


@dataclass
class FieldDefinition:
    """A field of a type definition."""

    name: str
    type: str = ""
    directives: List[Directive] = field(default_factory=list)


@dataclass
class Definition:
    """A named type in the schema."""

    name: str
    kind: str = OBJECT
    description: str = ""
    fields: List[FieldDefinition] = field(default_factory=list)
    directives: List[Directive] = field(default_factory=list)


@dataclass
class Schema:
    """A GraphQL schema: its type definitions by name."""

    types: Dict[str, Definition] = field(default_factory=dict)


SchemaHook = Callable[[Schema], None]


def remove_node_go_model(schema: Schema) -> None:
    """Drop ``goModel`` directives from the Node interface."""
    node = schema.types.get("Node")
    if node is None:
        raise SchemaError("failed to find node interface in schema")
    node.directives = [d for d in node.directives if d.name != "goModel"]


def remove_node_queries(schema: Schema) -> None:
    """Drop the ``node`` and ``nodes`` fields from Query."""
    query = schema.types.get("Query")
    if query is None:
        raise SchemaError("failed to find query definition in schema")
    query.fields = [f for f in query.fields if f.name not in ("node", "nodes")]


def set_page_info_shareable(schema: Schema) -> None:
    """Mark PageInfo ``@shareable`` when the type exists."""
    page_info = schema.types.get("PageInfo")
    if page_info is not None:
        page_info.directives.append(Directive(name="shareable"))


def add_json_scalar(schema: Schema) -> None:
    """Add the JSON scalar type."""
    schema.types["JSON"] = Definition(
        name="JSON",
        kind=SCALAR,
        description="A valid JSON string.",
    )


def key_directive(fields: str) -> Directive:
    """Return a federation ``@key`` directive for the given fields."""
    arguments = [Argument(name="fields", value=fields, kind=STRING_VALUE)] if fields else []
    return Directive(name="key", arguments=arguments)


@dataclass
class Extension:
    """Templates and schema hooks contributed to code generation."""

    templates: List[str] = field(default_factory=list)
    gql_schema_hooks: List[SchemaHook] = field(default_factory=list)

    def apply(self, schema: Schema) -> Schema:
        """Run every schema hook, in order, on the schema."""
        for hook in self.gql_schema_hooks:
            hook(schema)
        return schema


ExtensionOption = Callable[[Extension], None]


def with_federation() -> ExtensionOption:
    """Add federation support: the federation template and node cleanup hooks."""

    def option(ext: Extension) -> None:
        ext.templates.append(FEDERATION_TEMPLATE)
        ext.gql_schema_hooks.extend(
            [remove_node_go_model, remove_node_queries, set_page_info_shareable]
        )

    return option


def with_json_scalar() -> ExtensionOption:
    """Add the JSON scalar definition."""

    def option(ext: Extension) -> None:
        ext.gql_schema_hooks.append(add_json_scalar)

    return option


def with_event_hooks() -> ExtensionOption:
    """Add the event hooks template."""

    def option(ext: Extension) -> None:
        ext.templates.append(EVENT_HOOKS_TEMPLATE)

    return option


def new_extension(*options: ExtensionOption) -> Extension:
    """Build an Extension with the given options applied in order."""
    ext = Extension()
    for option in options:
        option(ext)
    return ext