"""Static command tree.

Built once at startup and never mutated. Flag kinds are fixed at
registration so dispatch never has to guess whether a flag takes a value.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from stackctl.infra.errors import CommandError

if TYPE_CHECKING:
    from stackctl.cli.context import Cli

Handler = Callable[["Cli"], Awaitable[None]]
FlagValue = str | bool


class FlagKind(StrEnum):
    string = "string"
    bool = "bool"


@dataclass(frozen=True)
class Description:
    short: str = ""
    long: str = ""


@dataclass(frozen=True)
class Argument:
    name: str
    required: bool = False
    description: Description = Description()


@dataclass(frozen=True)
class Flag:
    name: str
    kind: FlagKind
    description: Description = Description()


@dataclass(frozen=True)
class Example:
    content: str
    description: Description = Description()


@dataclass(frozen=True)
class Command:
    name: str
    description: Description = Description()
    arguments: tuple[Argument, ...] = ()
    flags: tuple[Flag, ...] = ()
    examples: tuple[Example, ...] = ()
    children: tuple[Command, ...] = ()
    handler: Handler | None = field(default=None, compare=False)
    hidden: bool = False

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for child in self.children:
            if child.name in seen:
                raise CommandError(f"Duplicate command '{child.name}' under '{self.name}'")
            seen.add(child.name)

    def child(self, name: str) -> Command | None:
        for child in self.children:
            if child.name == name:
                return child
        return None

    @property
    def required_arguments(self) -> int:
        return sum(1 for arg in self.arguments if arg.required)

    def walk(self) -> Iterator[Command]:
        yield self
        for child in self.children:
            yield from child.walk()

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "hidden": self.hidden,
            "description": {"short": self.description.short, "long": self.description.long},
            "args": [
                {"name": a.name, "required": a.required, "description": a.description.short}
                for a in self.arguments
            ],
            "flags": [
                {"name": f.name, "type": f.kind.value, "description": f.description.short}
                for f in self.flags
            ],
            "examples": [e.content for e in self.examples],
            "children": [c.to_dict() for c in self.children],
        }


def usage_arguments(arguments: tuple[Argument, ...]) -> str:
    """``<required> [optional]`` rendering of an argument list."""
    return " ".join(f"<{a.name}>" if a.required else f"[{a.name}]" for a in arguments)


def collect_flags(root: Command) -> dict[str, Flag]:
    """Every flag declared anywhere in the tree, by name.

    Flags are parsed independently of position, so one name must mean one
    kind across the whole tree.
    """
    flags: dict[str, Flag] = {}
    for command in root.walk():
        for flag in command.flags:
            existing = flags.get(flag.name)
            if existing is not None and existing.kind != flag.kind:
                raise CommandError(
                    f"Flag '--{flag.name}' declared as both {existing.kind} and {flag.kind}"
                )
            flags.setdefault(flag.name, flag)
    return flags
