from __future__ import annotations

from collections.abc import Sequence

from stackctl.cli.registry import Command, usage_arguments


def render_help(path: Sequence[Command]) -> str:
    """Plain-text help for the command at the end of ``path``."""
    prefix = " ".join(c.name for c in path)
    active = path[-1]
    lines: list[str] = []

    if active.children:
        lines.append(f"{prefix}: {active.description.short}")
        lines.append("")
        visible = [c for c in active.children if not c.hidden]
        labels = [
            f"{c.name} {usage_arguments(c.arguments)}" if c.arguments else c.name
            for c in visible
        ]
        width = max((len(label) for label in labels), default=0)
        for child, label in zip(visible, labels, strict=True):
            lines.append(f"  {prefix} {label:<{width}}  {child.description.short}")
    else:
        usage = f"Usage: {prefix}"
        if active.arguments:
            usage += " " + usage_arguments(active.arguments)
        lines.append(usage)
        if active.description.long or active.description.short:
            lines.append("")
            lines.append(active.description.long or active.description.short)
        lines.append("")
        lines.append("Flags:")
        flags = [f for c in path for f in c.flags]
        width = max((len(f.name) + 2 for f in flags), default=0)
        for flag in flags:
            lines.append(f"  {'--' + flag.name:<{width}}  {flag.description.short}")
        if active.examples:
            lines.append("")
            lines.append("Examples:")
            for example in active.examples:
                lines.append(f"  {example.content}")

    return "\n".join(lines) + "\n"
