"""
Template Rendering and Guard Evaluation

Directives never see mutable state: variables (and gathered host facts)
are frozen into a RunContext once per Run, then every directive renders
its body and evaluates its guard against that snapshot.

Template syntax:
    {{ name }}                  plain lookup
    {{ facts.architecture }}    dotted lookup (mappings and sequences)
    {{ key | quote }}           shell-quoted value
    {{ port | default(22) }}    fallback for undefined names

Guard syntax (no parentheses):
    name | not name | name is defined | name is not defined
    name == 'value' | name != 'value' | true | false
    combined with "and" / "or" ("or" binds loosest)
"""

from collections.abc import Mapping
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterator, List, Optional
import re
import shlex

from .errors import RenderError

PLACEHOLDER = re.compile(r"\{\{\s*((?:(?!\}\}).)+?)\s*\}\}")
FILTER_CALL = re.compile(r"^(\w+)(?:\((.*)\))?$")

_MISSING = object()


def freeze(value: Any) -> Any:
    """Recursively convert mappings/lists into read-only equivalents."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    if isinstance(value, set):
        return frozenset(freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Inverse of freeze(), used when rendered values feed pydantic models."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    return value


def stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def _parse_literal(text: str) -> Any:
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        return text[1:-1]
    lowered = text.lower()
    if lowered in ("true", "yes"):
        return True
    if lowered in ("false", "no"):
        return False
    if lowered in ("none", "null"):
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return text


def lookup_path(root: Mapping, path: str) -> Any:
    """Resolve a dotted path. Raises KeyError when any segment is missing."""
    current: Any = root
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                raise KeyError(path)
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                raise KeyError(path)
            current = current[index]
        else:
            raise KeyError(path)
    return current


def _evaluate_expression(expression: str, lookup: Callable[[str], Any]) -> Any:
    parts = [p.strip() for p in expression.split("|")]
    path, filters = parts[0], parts[1:]

    try:
        value = lookup(path)
    except KeyError:
        value = _MISSING

    for spec in filters:
        match = FILTER_CALL.match(spec)
        if not match:
            raise RenderError(f"Malformed filter '{spec}' in '{{{{ {expression} }}}}'")
        name, argument = match.group(1), match.group(2)

        if name == "default":
            if value is _MISSING:
                value = _parse_literal(argument or "''")
        elif name == "quote":
            if value is _MISSING:
                break
            value = shlex.quote(stringify(value))
        elif name == "lower":
            if value is _MISSING:
                break
            value = stringify(value).lower()
        else:
            raise RenderError(f"Unknown filter '{name}'")

    if value is _MISSING:
        raise RenderError(f"Undefined variable '{path}'")
    return value


def render_string(template: str, lookup: Callable[[str], Any]) -> Any:
    """
    Render one template string.

    A string consisting of exactly one placeholder renders to the raw value
    so list and mapping variables survive rendering intact.
    """
    whole = PLACEHOLDER.fullmatch(template)
    if whole:
        return _evaluate_expression(whole.group(1), lookup)

    def _substitute(match: "re.Match[str]") -> str:
        return stringify(_evaluate_expression(match.group(1), lookup))

    return PLACEHOLDER.sub(_substitute, template)


def render_value(value: Any, lookup: Callable[[str], Any]) -> Any:
    if isinstance(value, str):
        return render_string(value, lookup)
    if isinstance(value, Mapping):
        return {k: render_value(v, lookup) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        rendered = []
        for item in value:
            result = render_value(item, lookup)
            # "{{ some_list }}" inside a list splices its items
            if isinstance(item, str) and PLACEHOLDER.fullmatch(item) and isinstance(result, (list, tuple)):
                rendered.extend(result)
            else:
                rendered.append(result)
        return rendered
    return value


class RunContext(Mapping):
    """
    Immutable snapshot of configuration variables for one Run.

    Built once via RunContext.resolve(); directives only ever read it.
    """

    def __init__(self, values: Optional[Mapping] = None):
        self._values = freeze(dict(values or {}))

    @classmethod
    def resolve(
        cls,
        variables: Optional[Mapping] = None,
        facts: Optional[Mapping] = None
    ) -> "RunContext":
        """
        Resolve inter-variable references to a fixed point.

        Args:
            variables: Raw variables, values may contain {{ other_var }}
            facts: Host facts, exposed read-only as "facts"

        Raises:
            RenderError: On undefined references or reference cycles
        """
        raw: Dict[str, Any] = dict(variables or {})
        resolved: Dict[str, Any] = {"facts": dict(facts or {})}

        def resolve_name(name: str, stack: List[str]) -> Any:
            if name in resolved:
                return resolved[name]
            if name not in raw:
                raise KeyError(name)
            if name in stack:
                chain = " -> ".join(stack + [name])
                raise RenderError(f"Variable reference cycle: {chain}")

            def lookup(path: str) -> Any:
                head, _, rest = path.partition(".")
                value = resolve_name(head, stack + [name])
                return lookup_path({head: value}, path) if rest else value

            resolved[name] = render_value(raw[name], lookup)
            return resolved[name]

        for name in raw:
            try:
                resolve_name(name, [])
            except KeyError as e:
                raise RenderError(f"Variable '{name}' references undefined '{e.args[0]}'")

        return cls(resolved)

    def lookup(self, path: str) -> Any:
        return lookup_path(self._values, path)

    def render(self, value: Any) -> Any:
        return thaw(render_value(thaw(value), self.lookup))

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"RunContext({sorted(self._values)})"


def _evaluate_atom(atom: str, context: RunContext) -> bool:
    atom = atom.strip()
    if not atom:
        raise RenderError("Empty guard expression")

    if atom.startswith("not "):
        return not _evaluate_atom(atom[4:], context)

    lowered = atom.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False

    if atom.endswith(" is not defined"):
        name = atom[: -len(" is not defined")].strip()
        return not _is_defined(name, context)
    if atom.endswith(" is defined"):
        name = atom[: -len(" is defined")].strip()
        return _is_defined(name, context)

    for operator in ("==", "!="):
        if operator in atom:
            left, right = atom.split(operator, 1)
            actual = _guard_lookup(left.strip(), context)
            expected = _parse_literal(right)
            equal = stringify(actual) == stringify(expected)
            return equal if operator == "==" else not equal

    return bool(_guard_lookup(atom, context))


def _is_defined(name: str, context: RunContext) -> bool:
    try:
        context.lookup(name)
        return True
    except KeyError:
        return False


def _guard_lookup(name: str, context: RunContext) -> Any:
    try:
        return context.lookup(name)
    except KeyError:
        raise RenderError(f"Guard references undefined variable '{name}'")


def evaluate_guard(expression: Optional[str], context: RunContext) -> bool:
    """Evaluate a guard expression. None means "always run"."""
    if expression is None:
        return True
    return any(
        all(_evaluate_atom(atom, context) for atom in clause.split(" and "))
        for clause in expression.split(" or ")
    )
