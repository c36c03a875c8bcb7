# dsl.py
from __future__ import annotations

import re
from typing import Dict, List, Tuple

from .errors import ScriptSyntaxError

# ---------------------------------------------------------------------
# Script line grammar
# ---------------------------------------------------------------------
#
#   DIRECTIVE [param0:value0 param1:"value with spaces" ...]
#
# Parameter names are lowercase letters, digits, `_` and `-`. Values may be
# bare or wrapped in single/double quotes. There is no escape character: a
# quote of one kind may appear inside a run quoted with the other kind.
# ---------------------------------------------------------------------

QUOTES = ("'", '"')

_SPACE_SEP = re.compile(r"\s+")
_NAMED_PARAM = re.compile(r"^([a-z0-9_\-]+):(.+)$", re.DOTALL)
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._\-]+")


def split_directive(line: str) -> Tuple[str, str]:
    """Split `DIRECTIVE rest of line` into (directive, raw_args)."""
    tokens = _SPACE_SEP.split(line.strip(), maxsplit=1)
    if len(tokens) == 2:
        return tokens[0], tokens[1]
    return tokens[0], ""


def split_arguments(raw_args: str, keep_quotes: bool = True) -> List[str]:
    """
    Split raw arguments on whitespace, keeping quoted runs together.

        a:b c:'d e' "f g"  ->  ["a:b", "c:'d e'", '"f g"']

    With keep_quotes=False the delimiting quotes are dropped, which is what
    a program argv needs:

        /bin/echo 'HELLO WORLD'  ->  ["/bin/echo", "HELLO WORLD"]
    """
    tokens: List[str] = []
    buf: List[str] = []
    in_token = False
    quote = None

    for ch in raw_args:
        if quote is not None:
            if ch == quote:
                quote = None
                if keep_quotes:
                    buf.append(ch)
            else:
                buf.append(ch)
            continue

        if ch in QUOTES:
            quote = ch
            in_token = True
            if keep_quotes:
                buf.append(ch)
        elif ch.isspace():
            if in_token:
                tokens.append("".join(buf))
                buf = []
                in_token = False
        else:
            buf.append(ch)
            in_token = True

    if quote is not None:
        raise ScriptSyntaxError(f"unterminated quote ({quote}) in: {raw_args}")
    if in_token:
        tokens.append("".join(buf))
    return tokens


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] in QUOTES and value[-1] == value[0]:
        return value[1:-1]
    return value


def is_named_param(token: str) -> bool:
    return _NAMED_PARAM.match(token) is not None


def split_named_param(token: str) -> Tuple[str, str]:
    """`name:value` -> (name, value) with surrounding quotes stripped."""
    m = _NAMED_PARAM.match(token)
    if m is None:
        raise ScriptSyntaxError(f"{token!r} is not a recognized named parameter")
    return m.group(1), _unquote(m.group(2))


def map_args(raw_args: str) -> Dict[str, str]:
    """
    Map `param0:"val0" ... paramN:"valN"` into a dict.
    A parameter repeated later on the line overwrites the earlier value.
    """
    arg_map: Dict[str, str] = {}
    for token in split_arguments(raw_args):
        name, value = split_named_param(token)
        arg_map[name] = value
    return arg_map


def make_named_param(name: str, value: str) -> str:
    """Build a `name:'value'` token that split_named_param reads back as (name, value)."""
    if not _NAMED_PARAM.match(f"{name}:x"):
        raise ValueError(f"invalid parameter name: {name!r}")
    if "'" not in value:
        return f"{name}:'{value}'"
    if '"' not in value:
        return f'{name}:"{value}"'
    raise ValueError(f"value for {name!r} cannot hold both quote characters: {value!r}")


def flatten_command(cli: str) -> str:
    """
    Turn a command line into a token usable as a file name.

        /bin/echo 'HELLO WORLD'  ->  bin_echo_HELLO_WORLD
    """
    flat = _UNSAFE_CHARS.sub("_", cli).strip("_.")
    return flat or "command"
