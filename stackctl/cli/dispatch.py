from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from stackctl.cli.registry import Command, Flag, FlagKind, FlagValue, collect_flags
from stackctl.infra.errors import CommandError

_TRUE = frozenset({"1", "t", "true", "yes"})
_FALSE = frozenset({"0", "f", "false", "no"})


@dataclass(frozen=True)
class Invocation:
    path: tuple[Command, ...]
    flags: Mapping[str, FlagValue] = field(default_factory=dict)
    positionals: tuple[str, ...] = ()

    @property
    def command(self) -> Command:
        return self.path[-1]

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.path)

    def string(self, name: str) -> str:
        value = self.flags.get(name, "")
        return value if isinstance(value, str) else ""

    def bool(self, name: str) -> bool:
        return self.flags.get(name) is True

    def positional(self, index: int) -> str:
        if index >= len(self.positionals):
            return ""
        return self.positionals[index]


@dataclass(frozen=True)
class HelpRequest:
    """Dispatch resolved to "show help for this path" instead of a handler."""

    path: tuple[Command, ...]
    flags: Mapping[str, FlagValue] = field(default_factory=dict)
    reason: str = ""


def parse_flags(
    argv: Sequence[str], known: Mapping[str, Flag]
) -> tuple[dict[str, FlagValue], list[str]]:
    """Split argv into (flags, remaining tokens).

    Accepts ``--name=value`` and ``--name value`` for string flags,
    ``--name`` / ``--name=false`` for bool flags, anywhere in argv. A bare
    ``--`` ends flag parsing. Raises CommandError on unknown or malformed flags.
    """
    flags: dict[str, FlagValue] = {}
    rest: list[str] = []
    tokens = list(argv)
    i = 0
    while i < len(tokens):
        token = tokens[i]
        i += 1
        if token == "--":
            rest.extend(tokens[i:])
            break
        if not token.startswith("--"):
            rest.append(token)
            continue

        name, eq, raw = token[2:].partition("=")
        flag = known.get(name)
        if not name or flag is None:
            raise CommandError(f"Unknown flag: {token}")

        if flag.kind == FlagKind.bool:
            if not eq:
                flags[name] = True
            elif raw.lower() in _TRUE:
                flags[name] = True
            elif raw.lower() in _FALSE:
                flags[name] = False
            else:
                raise CommandError(f"Invalid boolean value for --{name}: {raw!r}")
            continue

        if eq:
            flags[name] = raw
        elif i < len(tokens):
            flags[name] = tokens[i]
            i += 1
        else:
            raise CommandError(f"Flag --{name} needs a value")
    return flags, rest


def resolve(root: Command, argv: Sequence[str]) -> Invocation | HelpRequest:
    """Pure function: argv (without program name) -> Invocation or HelpRequest.

    Walks the tree by exact child name; the first token that does not match
    a child, and everything after it, becomes a positional of the last
    matched command. Bad flags, ``--help``, a command without handler and
    missing required arguments all resolve to help rather than an error.
    """
    known = collect_flags(root)
    try:
        flags, tokens = parse_flags(argv, known)
    except CommandError as e:
        return HelpRequest(path=(root,), reason=str(e))

    path: list[Command] = [root]
    consumed = 0
    for token in tokens:
        child = path[-1].child(token) if path[-1].children else None
        if child is None:
            break
        path.append(child)
        consumed += 1
    positionals = tuple(tokens[consumed:])

    active = path[-1]
    if flags.get("help") is True:
        return HelpRequest(path=tuple(path), flags=flags, reason="help requested")
    if active.handler is None:
        return HelpRequest(path=tuple(path), flags=flags, reason="no handler")
    if len(positionals) < active.required_arguments:
        return HelpRequest(path=tuple(path), flags=flags, reason="missing arguments")
    return Invocation(path=tuple(path), flags=flags, positionals=positionals)
