"""Merge several GraphQL documents into one request, and split the result.

Merging rules:

* The first document's top-level selections are copied as they are.
* Every later document's top-level fields are copied under a fresh alias
  (``a``, ``b``, ... ``z``, ``aa``, ...), skipping any name already in use.
  Top-level fragment spreads and inline fragments are flattened first, with
  their directives moved onto the fields they contained.
* Variables are shared when two documents declare the same name with the
  same type, value and default.  Otherwise the later one is renamed and every
  reference to it inside that document is rewritten.
* Identical fragments are shared; conflicting fragment names are renamed.

The resulting :class:`CombinedRequest` remembers which top-level key of the
combined response belongs to which original document so that the response
can be split back apart.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import cached_property
from typing import TYPE_CHECKING, Any

from graphql import (
    DocumentNode,
    FieldNode,
    FragmentDefinitionNode,
    FragmentSpreadNode,
    InlineFragmentNode,
    NameNode,
    OperationDefinitionNode,
    OperationType,
    SelectionSetNode,
    VariableDefinitionNode,
    VariableNode,
    Visitor,
    print_ast,
    visit,
)

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping, Sequence

    from graphql import DirectiveNode, Node, SelectionNode

    from graphbatch.core.models import QueryDescriptor

_MISSING = object()


def operation_definition(document: DocumentNode) -> OperationDefinitionNode:
    """Return the single query or mutation operation of *document*."""
    operations = [d for d in document.definitions if isinstance(d, OperationDefinitionNode)]
    if len(operations) != 1:
        raise ValueError(
            f"Expected exactly one operation per document, found {len(operations)}"
        )
    operation = operations[0]
    if operation.operation == OperationType.SUBSCRIPTION:
        raise ValueError("Subscriptions cannot be batched")
    return operation


def _fragments(document: DocumentNode) -> dict[str, FragmentDefinitionNode]:
    return {
        d.name.value: d for d in document.definitions if isinstance(d, FragmentDefinitionNode)
    }


def _response_key(node: FieldNode) -> str:
    return node.alias.value if node.alias else node.name.value


def _nth_name(n: int) -> str:
    """0 -> a, 25 -> z, 26 -> aa, ..."""
    name = ""
    n += 1
    while n:
        n, rem = divmod(n - 1, 26)
        name = chr(ord("a") + rem) + name
    return name


class _NameGenerator:
    """Yields short sequential names that are not already taken."""

    def __init__(self, taken: set[str]) -> None:
        self._taken = taken
        self._counter = 0

    def __call__(self) -> str:
        while True:
            name = _nth_name(self._counter)
            self._counter += 1
            if name not in self._taken:
                self._taken.add(name)
                return name


class _Rename(Visitor):
    """Rewrites variable references and fragment names."""

    def __init__(self, variables: Mapping[str, str], fragments: Mapping[str, str]) -> None:
        super().__init__()
        self._variables = variables
        self._fragments = fragments

    def enter_variable(self, node: VariableNode, *_args: Any) -> VariableNode | None:
        new = self._variables.get(node.name.value)
        if new is None or new == node.name.value:
            return None
        return VariableNode(name=NameNode(value=new))

    def enter_fragment_spread(self, node: FragmentSpreadNode, *_args: Any) -> Node | None:
        return self._renamed(node)

    def enter_fragment_definition(self, node: FragmentDefinitionNode, *_args: Any) -> Node | None:
        return self._renamed(node)

    def _renamed(self, node: Any) -> Any:
        new = self._fragments.get(node.name.value)
        if new is None or new == node.name.value:
            return None
        if isinstance(node, FragmentSpreadNode):
            return FragmentSpreadNode(name=NameNode(value=new), directives=node.directives)
        return FragmentDefinitionNode(
            name=NameNode(value=new),
            variable_definitions=node.variable_definitions,
            type_condition=node.type_condition,
            directives=node.directives,
            selection_set=node.selection_set,
        )


class _SpreadCollector(Visitor):
    def __init__(self) -> None:
        super().__init__()
        self.names: list[str] = []

    def enter_fragment_spread(self, node: FragmentSpreadNode, *_args: Any) -> None:
        self.names.append(node.name.value)


def _spreads(node: Node) -> list[str]:
    collector = _SpreadCollector()
    visit(node, collector)
    return collector.names


def _root_fields(
    selections: Sequence[SelectionNode],
    fragments: Mapping[str, FragmentDefinitionNode],
    directives: tuple[DirectiveNode, ...] = (),
) -> Iterator[tuple[FieldNode, tuple[DirectiveNode, ...]]]:
    """Flatten top-level fragments into ``(field, inherited directives)`` pairs."""
    for selection in selections:
        if isinstance(selection, FieldNode):
            yield selection, directives
        elif isinstance(selection, FragmentSpreadNode):
            name = selection.name.value
            if name not in fragments:
                raise ValueError(f"Unknown fragment '{name}'")
            yield from _root_fields(
                fragments[name].selection_set.selections,
                fragments,
                directives + tuple(selection.directives or ()),
            )
        elif isinstance(selection, InlineFragmentNode):
            yield from _root_fields(
                selection.selection_set.selections,
                fragments,
                directives + tuple(selection.directives or ()),
            )


def _signature(definition: VariableDefinitionNode, values: Mapping[str, Any]) -> tuple[Any, ...]:
    name = definition.variable.name.value
    default = print_ast(definition.default_value) if definition.default_value else None
    return (print_ast(definition.type), values.get(name, _MISSING), default)


@dataclass(frozen=True)
class CombinedRequest:
    """A merged document plus the table needed to split its response.

    ``aliases[i]`` maps each top-level key of the combined response to the
    key entry *i* expects; ``variable_names[i]`` maps entry *i*'s variable
    names to the names used in the combined request.
    """

    document: DocumentNode
    variables: dict[str, Any]
    aliases: tuple[dict[str, str], ...]
    variable_names: tuple[dict[str, str], ...]

    @cached_property
    def query(self) -> str:
        return print_ast(self.document)

    @cached_property
    def _owners(self) -> dict[str, tuple[int, str]]:
        return {
            combined: (index, original)
            for index, table in enumerate(self.aliases)
            for combined, original in table.items()
        }

    def split(self, data: Mapping[str, Any] | None) -> list[dict[str, Any]]:
        """Split combined response data into one result per entry."""
        data = data or {}
        return [
            {original: data[combined] for combined, original in table.items() if combined in data}
            for table in self.aliases
        ]

    def locate(self, path: Sequence[str | int] | None) -> tuple[int, list[str | int]] | None:
        """Map an error path to ``(entry index, path in that entry's terms)``."""
        if not path:
            return None
        owner = self._owners.get(path[0]) if isinstance(path[0], str) else None
        if owner is None:
            return None
        index, original = owner
        return index, [original, *path[1:]]


def _shared_fragments(
    candidates: dict[str, FragmentDefinitionNode],
    existing: dict[str, FragmentDefinitionNode],
) -> set[str]:
    """Names of *candidates* that can reuse an identical existing fragment.

    A fragment is only shared if every fragment it spreads is shared too.
    """
    shared = {
        name
        for name, fragment in candidates.items()
        if name in existing and print_ast(existing[name]) == print_ast(fragment)
    }
    changed = True
    while changed:
        changed = False
        for name in list(shared):
            if any(dep in candidates and dep not in shared for dep in _spreads(candidates[name])):
                shared.discard(name)
                changed = True
    return shared


def merge_queries(descriptors: Sequence[QueryDescriptor]) -> CombinedRequest:
    """Combine *descriptors* into a single request.

    All documents must share one operation type.
    """
    if not descriptors:
        raise ValueError("Cannot merge an empty list of queries")

    operations = [operation_definition(d.document) for d in descriptors]
    operation_types = {op.operation for op in operations}
    if len(operation_types) > 1:
        raise ValueError("Cannot merge queries and mutations into one request")
    fragment_maps = [_fragments(d.document) for d in descriptors]

    first_fields = _root_fields(operations[0].selection_set.selections, fragment_maps[0])
    first_keys = list(dict.fromkeys(_response_key(f) for f, _ in first_fields))
    taken = set(first_keys)
    for operation, fragments in zip(operations, fragment_maps, strict=True):
        taken.update(d.variable.name.value for d in operation.variable_definitions or ())
        taken.update(fragments)
    fresh = _NameGenerator(taken)

    signatures: dict[str, tuple[Any, ...]] = {}
    definitions: list[VariableDefinitionNode] = []
    variables: dict[str, Any] = {}
    fragments: dict[str, FragmentDefinitionNode] = {}
    selections: list[SelectionNode] = []
    aliases: list[dict[str, str]] = []
    variable_names: list[dict[str, str]] = []

    for index, (descriptor, operation) in enumerate(zip(descriptors, operations, strict=True)):
        values = descriptor.variables

        renamed_variables: dict[str, str] = {}
        for definition in operation.variable_definitions or ():
            name = definition.variable.name.value
            signature = _signature(definition, values)
            target = name if signatures.get(name, signature) == signature else fresh()
            renamed_variables[name] = target
            if target in signatures:
                continue
            signatures[target] = signature
            definitions.append(visit(definition, _Rename({name: target}, {})))
            if name in values:
                variables[target] = values[name]
        variable_names.append(renamed_variables)

        own_fragments = {
            name: visit(fragment, _Rename(renamed_variables, {}))
            for name, fragment in fragment_maps[index].items()
        }
        shared = _shared_fragments(own_fragments, fragments)
        renamed_fragments = {
            name: (name if name in shared or name not in fragments else fresh())
            for name in own_fragments
        }
        renamer = _Rename(renamed_variables, renamed_fragments)
        for name, fragment in own_fragments.items():
            if name not in shared:
                fragments[renamed_fragments[name]] = visit(fragment, _Rename({}, renamed_fragments))

        if index == 0:
            selections.extend(visit(s, renamer) for s in operation.selection_set.selections)
            aliases.append({key: key for key in first_keys})
            continue

        table: dict[str, str] = {}
        by_key: dict[str, str] = {}
        fields = _root_fields(operation.selection_set.selections, fragment_maps[index])
        for field, inherited in fields:
            key = _response_key(field)
            alias = by_key.get(key)
            if alias is None:
                alias = by_key[key] = fresh()
                table[alias] = key
            aliased = FieldNode(
                alias=NameNode(value=alias),
                name=field.name,
                arguments=field.arguments,
                directives=(*(field.directives or ()), *inherited),
                selection_set=field.selection_set,
            )
            selections.append(visit(aliased, renamer))
        aliases.append(table)

    combined_operation = OperationDefinitionNode(
        operation=operations[0].operation,
        name=None,
        variable_definitions=tuple(definitions),
        directives=(),
        selection_set=SelectionSetNode(selections=tuple(selections)),
    )
    document = DocumentNode(
        definitions=(combined_operation, *_reachable(combined_operation, fragments))
    )
    return CombinedRequest(
        document=document,
        variables=variables,
        aliases=tuple(aliases),
        variable_names=tuple(variable_names),
    )


def _reachable(
    operation: OperationDefinitionNode, fragments: dict[str, FragmentDefinitionNode]
) -> list[FragmentDefinitionNode]:
    seen: dict[str, None] = {}
    pending = _spreads(operation)
    while pending:
        name = pending.pop(0)
        if name in seen or name not in fragments:
            continue
        seen[name] = None
        pending.extend(_spreads(fragments[name]))
    return [fragment for name, fragment in fragments.items() if name in seen]
