"""Lossless tokenizer and AST for firewalld rich rules.

``RichRule.parse`` turns a rule string into an ordered list of components
and ``str()`` turns it back. Unlike the positional parser in
``rich_rule``, nothing is dropped, so a rule can be read, edited
(for example to remove its ``source`` element) and written back.

Component shapes:
- flag: ``accept``, ``drop``, ``masquerade``
- simple: ``family="ipv4"`` and any other stray ``key=value``
- composite: ``port port="22" protocol="tcp"``, ``source NOT address="..."``
"""

from dataclasses import dataclass, field
from typing import Optional, Union


FLAG_COMPONENTS = frozenset({"accept", "reject", "drop", "mark", "masquerade"})

COMPOSITE_COMPONENTS = frozenset({
    "source", "destination", "service", "port", "protocol",
    "icmp-block", "icmp-type", "forward-port", "source-port",
    "log", "audit", "limit",
})

# Flags that become composites when followed by one attribute
FLAG_ATTRIBUTES = {"reject": "type", "mark": "set"}

_PROTECTED_SPACE = "␣"


@dataclass
class SimpleComponent:
    """A bare flag (``value is None``) or a single ``name="value"`` pair."""
    name: str
    value: Optional[str] = None

    def __str__(self) -> str:
        if self.value is None:
            return self.name
        return f'{self.name}="{self.value}"'


@dataclass
class CompositeComponent:
    """An element with ordered attributes and an optional NOT."""
    name: str
    attributes: dict[str, str] = field(default_factory=dict)
    invert: bool = False

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.attributes.get(key, default)

    def __str__(self) -> str:
        parts = [self.name]
        if self.invert:
            parts.append("NOT")
        parts.extend(f'{key}="{value}"' for key, value in self.attributes.items())
        return " ".join(parts)


Component = Union[SimpleComponent, CompositeComponent]


def _protect_quoted_spaces(text: str) -> str:
    result = []
    in_quotes = False
    for char in text:
        if char == '"':
            in_quotes = not in_quotes
        elif char == " " and in_quotes:
            char = _PROTECTED_SPACE
        result.append(char)
    return "".join(result)


def _tokenize(text: str) -> list[str]:
    protected = _protect_quoted_spaces(text)
    return [t.replace(_PROTECTED_SPACE, " ") for t in protected.split() if t]


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
        return value[1:-1]
    return value


def _split_attribute(token: str) -> Optional[tuple[str, str]]:
    name, sep, value = token.partition("=")
    if not sep or not name:
        return None
    return name, _unquote(value)


def _is_component_name(token: str) -> bool:
    return (
        token in FLAG_COMPONENTS
        or token in COMPOSITE_COMPONENTS
        or token.startswith("family=")
    )


@dataclass
class RichRule:
    """Ordered component list of one rich rule."""
    components: list[Component] = field(default_factory=list)

    @classmethod
    def parse(cls, text: str) -> "RichRule":
        """Parse a rich-rule string. A leading ``rule`` keyword is optional."""
        body = text.strip()
        if body.lower().startswith("rule"):
            body = body[4:].strip()

        rule = cls()
        tokens = _tokenize(body)
        index = 0
        while index < len(tokens):
            token = tokens[index]

            if token.startswith("family="):
                rule.add_simple("family", _unquote(token[len("family="):]))
                index += 1
                continue

            if token in COMPOSITE_COMPONENTS:
                invert = index + 1 < len(tokens) and tokens[index + 1] == "NOT"
                if invert:
                    index += 1
                component = rule.add_composite(token, invert=invert)
                index += 1
                while index < len(tokens) and not _is_component_name(tokens[index]):
                    attribute = _split_attribute(tokens[index])
                    if attribute:
                        component.attributes[attribute[0]] = attribute[1]
                    index += 1
                continue

            attribute_key = FLAG_ATTRIBUTES.get(token)
            if (
                attribute_key
                and index + 1 < len(tokens)
                and tokens[index + 1].startswith(f"{attribute_key}=")
            ):
                component = rule.add_composite(token)
                component.attributes[attribute_key] = _unquote(
                    tokens[index + 1][len(attribute_key) + 1:]
                )
                index += 2
                continue

            if token in FLAG_COMPONENTS:
                rule.add_flag(token)
                index += 1
                continue

            attribute = _split_attribute(token)
            if attribute:
                rule.add_simple(*attribute)
            else:
                rule.add_flag(token)
            index += 1

        return rule

    def add_flag(self, name: str) -> SimpleComponent:
        component = SimpleComponent(name)
        self.components.append(component)
        return component

    def add_simple(self, name: str, value: str) -> SimpleComponent:
        component = SimpleComponent(name, value)
        self.components.append(component)
        return component

    def add_composite(self, name: str, *, invert: bool = False, **attributes: str) -> CompositeComponent:
        component = CompositeComponent(name, dict(attributes), invert)
        self.components.append(component)
        return component

    def find(self, name: str) -> Optional[Component]:
        """First component with this name, or None."""
        for component in self.components:
            if component.name == name:
                return component
        return None

    def find_all(self, name: str) -> list[Component]:
        return [c for c in self.components if c.name == name]

    def remove(self, name: str) -> int:
        """Drop every component with this name; returns how many were removed."""
        before = len(self.components)
        self.components = [c for c in self.components if c.name != name]
        return before - len(self.components)

    @property
    def family(self) -> Optional[str]:
        component = self.find("family")
        if isinstance(component, SimpleComponent):
            return component.value
        return None

    @property
    def action(self) -> Optional[str]:
        """The accept/reject/drop verdict, if the rule has one."""
        for component in reversed(self.components):
            if component.name in ("accept", "reject", "drop"):
                return component.name
        return None

    def __str__(self) -> str:
        return " ".join(["rule"] + [str(c) for c in self.components])
