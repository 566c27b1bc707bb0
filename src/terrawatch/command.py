"""Command-line construction for terraform invocations.

Turns an option set such as::

    {
        "state": "state.tfstate",
        "var": {"foo": "bar", "bah": "boo"},
        "var_file": ["x.tfvars", "y.tfvars"],
    }

into::

    -state=state.tfstate -var 'foo=bar' -var 'bah=boo' -var-file=x.tfvars -var-file=y.tfvars

Raw option values are first coerced into one of four tagged kinds
(Flag, Scalar, Repeated, VarMap); rendering then dispatches on the kind.
Output follows the insertion order of the option mapping, never sorted.
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import NamedTuple

from .errors import OptionError

VAR_OPTION = "var"
NO_COLOR_OPTION = "no_color"


# === Option kinds ===


@dataclass(frozen=True)
class Flag:
    """Bare ``-NAME`` flag, emitted only when enabled."""

    enabled: bool


@dataclass(frozen=True)
class Scalar:
    """Single ``-NAME=VALUE`` token."""

    value: str


@dataclass(frozen=True)
class Repeated:
    """One ``-NAME=ITEM`` token per item."""

    values: tuple[str, ...]


@dataclass(frozen=True)
class VarMap:
    """``-var 'KEY=VALUE'`` pairs, in key order."""

    pairs: tuple[tuple[str, str], ...]


OptionValue = Flag | Scalar | Repeated | VarMap


class _Token(NamedTuple):
    display: str
    argv: tuple[str, ...]


@dataclass(frozen=True)
class CommandLine:
    """A rendered invocation.

    ``tokens`` are the display tokens (``-var 'k=v'`` is one token) that make
    up the command string; ``argv`` is what gets handed to the OS.
    """

    tokens: tuple[str, ...]
    argv: tuple[str, ...]

    def __str__(self) -> str:
        return " ".join(self.tokens)


# === Coercion ===


def normalize_option(name: str) -> str:
    """Replace the first underscore of an option name with a hyphen.

    ``var_file`` becomes ``var-file``; only one underscore is touched.
    """
    return name.replace("_", "-", 1)


def _scalar_text(option: str, value: object) -> str:
    if isinstance(value, bool):
        raise OptionError(option, f"boolean {value!r} is not allowed here")
    if isinstance(value, (str, int, float)):
        return str(value)
    if isinstance(value, os.PathLike):
        return os.fspath(value)
    raise OptionError(option, f"unsupported value {value!r}")


def coerce_option(name: str, raw: object) -> OptionValue | None:
    """Classify a raw option value. Returns None for omitted (None) values."""
    if isinstance(raw, (Flag, Scalar, Repeated, VarMap)):
        return raw
    if raw is None:
        return None

    if name == VAR_OPTION:
        if not isinstance(raw, Mapping):
            raise OptionError(name, "expected a mapping of variable names to values")
        pairs = []
        for key, value in raw.items():
            if not isinstance(key, str) or not key:
                raise OptionError(name, f"invalid variable name {key!r}")
            pairs.append((key, _scalar_text(f"{name}.{key}", value)))
        return VarMap(tuple(pairs))

    if isinstance(raw, bool):
        return Flag(raw)
    if isinstance(raw, Mapping):
        raise OptionError(name, "nested mappings are only supported for 'var'")
    if isinstance(raw, (list, tuple)):
        return Repeated(tuple(_scalar_text(name, item) for item in raw))
    return Scalar(_scalar_text(name, raw))


# === Rendering ===


def _single_quote(text: str) -> str:
    return "'" + text.replace("'", "'\\''") + "'"


def render_option(name: str, value: OptionValue) -> list[_Token]:
    """Render one coerced option into tokens."""
    flag = f"-{normalize_option(name)}"

    if isinstance(value, VarMap):
        tokens = []
        for key, item in value.pairs:
            pair = f"{key}={item}"
            tokens.append(_Token(f"{flag} {_single_quote(pair)}", (flag, pair)))
        return tokens
    if isinstance(value, Flag):
        return [_Token(flag, (flag,))] if value.enabled else []
    if isinstance(value, Repeated):
        return [_Token(f"{flag}={item}", (f"{flag}={item}",)) for item in value.values]
    if isinstance(value, Scalar):
        return [_Token(f"{flag}={value.value}", (f"{flag}={value.value}",))]
    raise OptionError(name, f"unknown option kind {type(value).__name__}")


def render_options(options: Mapping[str, object]) -> list[_Token]:
    tokens: list[_Token] = []
    for name, raw in options.items():
        value = coerce_option(name, raw)
        if value is not None:
            tokens.extend(render_option(name, value))
    return tokens


def build_command(
    tool: str,
    command: str,
    options: Mapping[str, object] | None = None,
    *positionals: str | os.PathLike | None,
    no_color: bool = False,
) -> CommandLine:
    """Build a terraform invocation.

    Args:
        tool: Executable name (e.g. "terraform").
        command: Subcommand (e.g. "apply").
        options: Option set, rendered in insertion order.
        *positionals: Trailing arguments; None entries are dropped.
        no_color: Context setting merged in as the last option.

    Returns:
        CommandLine with display tokens and argv.

    Raises:
        OptionError: An option value cannot be rendered.
    """
    merged = {**(options or {}), NO_COLOR_OPTION: no_color}
    option_tokens = render_options(merged)
    args = [os.fspath(p) for p in positionals if p is not None]

    tokens = [tool, command, *(t.display for t in option_tokens), *args]
    argv = [tool, command, *(part for t in option_tokens for part in t.argv), *args]
    return CommandLine(tokens=tuple(tokens), argv=tuple(argv))
