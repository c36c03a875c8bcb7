# model.py
from __future__ import annotations

import grp
import os
import pwd
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Callable, ClassVar, Dict, FrozenSet, List, Optional, Tuple

from .dsl import is_named_param, map_args, split_arguments
from .errors import FlareError, IdentityResolutionError, ScriptSyntaxError, ValidationError

# ---------------------------------------------------------------------
# Directive names
# ---------------------------------------------------------------------

CMD_AS = "AS"
CMD_ENV = "ENV"
CMD_FROM = "FROM"
CMD_KUBECONFIG = "KUBECONFIG"
CMD_AUTHCONFIG = "AUTHCONFIG"
CMD_OUTPUT = "OUTPUT"
CMD_WORKDIR = "WORKDIR"
CMD_CAPTURE = "CAPTURE"
CMD_COPY = "COPY"
CMD_RUN = "RUN"
CMD_KUBEGET = "KUBEGET"

LOCAL_NODE = "local"
DEFAULT_SSH_PORT = 22

# uid_t / gid_t are 32-bit; (uid_t)-1 means "unchanged" to the kernel
MAX_ID = 2**32 - 2


# ---------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Command:
    """A parsed script line. `index` is the source line (0 for defaults)."""
    name: ClassVar[str] = ""

    index: int
    raw_args: str


@dataclass(frozen=True)
class Node:
    """A target the actions are evaluated for."""
    address: str
    port: int = DEFAULT_SSH_PORT

    @property
    def is_local(self) -> bool:
        return self.address == LOCAL_NODE

    @property
    def dirname(self) -> str:
        """Per-node output directory name under the working directory."""
        if self.is_local or self.port == DEFAULT_SSH_PORT:
            return self.address
        return f"{self.address}_{self.port}"

    def __str__(self) -> str:
        return self.address if self.is_local else f"{self.address}:{self.port}"


@dataclass(frozen=True)
class AsCommand(Command):
    name: ClassVar[str] = CMD_AS

    user: str = ""
    group: Optional[str] = None

    def get_credentials(self) -> Tuple[int, int]:
        """
        Resolve (uid, gid). Numeric values are taken as-is, names are looked
        up. Without a group the user's primary group is used.
        """
        uid, entry = self._resolve_user()
        if self.group is None:
            if entry is None:
                try:
                    entry = pwd.getpwuid(uid)
                except KeyError:
                    raise IdentityResolutionError(
                        f"no group given and uid {uid} has no passwd entry",
                        line=self.index,
                        directive=self.name,
                    ) from None
            return uid, entry.pw_gid
        return uid, self._resolve_group()

    def _numeric_id(self, value: str, what: str) -> int:
        ident = int(value)
        if ident > MAX_ID:
            raise IdentityResolutionError(
                f"{what} {ident} out of range (max {MAX_ID})", line=self.index, directive=self.name
            )
        return ident

    def _resolve_user(self) -> Tuple[int, Optional[pwd.struct_passwd]]:
        if self.user.isdecimal():
            return self._numeric_id(self.user, "uid"), None
        try:
            entry = pwd.getpwnam(self.user)
        except KeyError:
            raise IdentityResolutionError(
                f"unknown user {self.user!r}", line=self.index, directive=self.name
            ) from None
        return entry.pw_uid, entry

    def _resolve_group(self) -> int:
        if self.group.isdecimal():
            return self._numeric_id(self.group, "gid")
        try:
            return grp.getgrnam(self.group).gr_gid
        except KeyError:
            raise IdentityResolutionError(
                f"unknown group {self.group!r}", line=self.index, directive=self.name
            ) from None


@dataclass(frozen=True)
class FromCommand(Command):
    name: ClassVar[str] = CMD_FROM

    nodes: Tuple[Node, ...] = ()


@dataclass(frozen=True)
class EnvCommand(Command):
    name: ClassVar[str] = CMD_ENV

    envs: Tuple[str, ...] = ()


@dataclass(frozen=True)
class AuthConfigCommand(Command):
    name: ClassVar[str] = CMD_AUTHCONFIG

    username: str = ""
    private_key: Optional[Path] = None


@dataclass(frozen=True)
class PathCommand(Command):
    path: Path = Path(".")


@dataclass(frozen=True)
class OutputCommand(PathCommand):
    name: ClassVar[str] = CMD_OUTPUT


@dataclass(frozen=True)
class WorkdirCommand(PathCommand):
    name: ClassVar[str] = CMD_WORKDIR


@dataclass(frozen=True)
class KubeConfigCommand(PathCommand):
    name: ClassVar[str] = CMD_KUBECONFIG


@dataclass(frozen=True)
class CopyCommand(Command):
    name: ClassVar[str] = CMD_COPY

    paths: Tuple[Path, ...] = ()


@dataclass(frozen=True)
class CliCommand(Command):
    cli: str = ""

    def parsed_cli(self) -> Tuple[str, List[str]]:
        argv = split_arguments(self.cli, keep_quotes=False)
        return argv[0], argv[1:]


@dataclass(frozen=True)
class CaptureCommand(CliCommand):
    name: ClassVar[str] = CMD_CAPTURE


@dataclass(frozen=True)
class RunCommand(CliCommand):
    name: ClassVar[str] = CMD_RUN


KUBEGET_WHAT = ("objects", "logs")


@dataclass(frozen=True)
class KubeGetCommand(Command):
    name: ClassVar[str] = CMD_KUBEGET

    what: str = "objects"
    namespaces: Tuple[str, ...] = ()
    groups: Tuple[str, ...] = ()
    kinds: Tuple[str, ...] = ()
    versions: Tuple[str, ...] = ()
    names: Tuple[str, ...] = ()
    labels: Tuple[str, ...] = ()
    containers: Tuple[str, ...] = ()


# ---------------------------------------------------------------------
# Argument helpers
# ---------------------------------------------------------------------

def _args(name: str, index: int, raw_args: str) -> Dict[str, str]:
    """
    Map raw arguments to named parameters and check arity against the
    directive's capability entry.

    Directives with a `default_param` also accept bare text
    (`CAPTURE ls -l`, `AS user:group`), which becomes that parameter.
    """
    entry = DIRECTIVES[name]
    raw = raw_args.strip()
    if not raw:
        if entry.min_args > 0:
            raise ValidationError(f"must have at least {entry.min_args} argument(s)", line=index, directive=name)
        return {}

    args: Optional[Dict[str, str]] = None
    tokens = split_arguments(raw)
    if all(is_named_param(t) for t in tokens):
        mapped = map_args(raw)
        if set(mapped) <= entry.params:
            args = mapped
        elif entry.default_param is None:
            unknown = ", ".join(sorted(set(mapped) - entry.params))
            raise ValidationError(f"unknown parameter(s): {unknown}", line=index, directive=name)

    if args is None:
        if entry.default_param is None:
            map_args(raw)  # raises on the first token that is not name:value
        args = {entry.default_param: raw}

    if len(args) < entry.min_args:
        raise ValidationError(f"must have at least {entry.min_args} argument(s)", line=index, directive=name)
    if entry.max_args > -1 and len(args) > entry.max_args:
        raise ValidationError(f"can only have up to {entry.max_args} argument(s)", line=index, directive=name)
    return args


def _required(args: Dict[str, str], param: str, index: int, name: str) -> str:
    value = args.get(param, "").strip()
    if not value:
        raise ValidationError(f"parameter {param!r} is required", line=index, directive=name)
    return value


def _path(value: str, index: int, name: str) -> Path:
    expanded = os.path.expanduser(os.path.expandvars(value.strip()))
    if not expanded:
        raise ValidationError("empty path", line=index, directive=name)
    return Path(expanded)


def _list(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(split_arguments(value, keep_quotes=False))


def _port(value: str, index: int, name: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise ValidationError(f"invalid port {value!r}", line=index, directive=name) from None
    if not 0 < port < 65536:
        raise ValidationError(f"port {port} out of range", line=index, directive=name)
    return port


# ---------------------------------------------------------------------
# Factories (one per directive)
# ---------------------------------------------------------------------

def new_as_command(index: int, raw_args: str) -> AsCommand:
    args = _args(CMD_AS, index, raw_args)
    if "user" in args:
        # shorthand: AS user[:group]
        ident = args["user"].strip().strip("'\"")
        user, sep, group = ident.partition(":")
        if not user or (sep and not group) or any(c.isspace() for c in ident):
            raise ValidationError(f"malformed identity {args['user']!r}", line=index, directive=CMD_AS)
        return AsCommand(index=index, raw_args=raw_args, user=user, group=group or None)
    user = _required(args, "userid", index, CMD_AS)
    group = args.get("groupid", "").strip() or None
    return AsCommand(index=index, raw_args=raw_args, user=user, group=group)


def new_from_command(index: int, raw_args: str) -> FromCommand:
    args = _args(CMD_FROM, index, raw_args)
    default_port = _port(args["port"], index, CMD_FROM) if "port" in args else DEFAULT_SSH_PORT

    nodes: List[Node] = []
    for host in _list(_required(args, "hosts", index, CMD_FROM)):
        if host == LOCAL_NODE:
            nodes.append(Node(address=LOCAL_NODE))
            continue
        address, sep, port = host.rpartition(":")
        if not sep:
            address, port = host, ""
        if not address:
            raise ValidationError(f"malformed host {host!r}", line=index, directive=CMD_FROM)
        nodes.append(Node(address=address, port=_port(port, index, CMD_FROM) if port else default_port))
    if not nodes:
        raise ValidationError("no hosts given", line=index, directive=CMD_FROM)
    return FromCommand(index=index, raw_args=raw_args, nodes=tuple(nodes))


def new_env_command(index: int, raw_args: str) -> EnvCommand:
    args = _args(CMD_ENV, index, raw_args)
    envs = _list(_required(args, "vars", index, CMD_ENV))
    for pair in envs:
        key, sep, _ = pair.partition("=")
        if not sep or not key:
            raise ValidationError(f"{pair!r} is not of the form KEY=VALUE", line=index, directive=CMD_ENV)
    return EnvCommand(index=index, raw_args=raw_args, envs=envs)


def new_authconfig_command(index: int, raw_args: str) -> AuthConfigCommand:
    args = _args(CMD_AUTHCONFIG, index, raw_args)
    username = os.path.expandvars(args.get("username", "")).strip()
    key = args.get("private-key")
    private_key = _path(key, index, CMD_AUTHCONFIG) if key else None
    if not username and private_key is None:
        raise ValidationError("needs username or private-key", line=index, directive=CMD_AUTHCONFIG)
    return AuthConfigCommand(index=index, raw_args=raw_args, username=username, private_key=private_key)


def _path_factory(cls) -> Callable[[int, str], PathCommand]:
    def factory(index: int, raw_args: str) -> PathCommand:
        args = _args(cls.name, index, raw_args)
        path = _path(_required(args, "path", index, cls.name), index, cls.name)
        return cls(index=index, raw_args=raw_args, path=path)
    factory.__name__ = f"new_{cls.name.lower()}_command"
    return factory


new_output_command = _path_factory(OutputCommand)
new_workdir_command = _path_factory(WorkdirCommand)
new_kubeconfig_command = _path_factory(KubeConfigCommand)


def new_copy_command(index: int, raw_args: str) -> CopyCommand:
    args = _args(CMD_COPY, index, raw_args)
    paths = tuple(_path(p, index, CMD_COPY) for p in _list(_required(args, "paths", index, CMD_COPY)))
    return CopyCommand(index=index, raw_args=raw_args, paths=paths)


def _cli_factory(cls) -> Callable[[int, str], CliCommand]:
    def factory(index: int, raw_args: str) -> CliCommand:
        args = _args(cls.name, index, raw_args)
        cli = _required(args, "cmd", index, cls.name)
        # fail at parse time rather than at execution
        if not split_arguments(cli, keep_quotes=False):
            raise ValidationError("empty command", line=index, directive=cls.name)
        return cls(index=index, raw_args=raw_args, cli=cli)
    factory.__name__ = f"new_{cls.name.lower()}_command"
    return factory


new_capture_command = _cli_factory(CaptureCommand)
new_run_command = _cli_factory(RunCommand)


def new_kubeget_command(index: int, raw_args: str) -> KubeGetCommand:
    args = _args(CMD_KUBEGET, index, raw_args)
    what = _required(args, "what", index, CMD_KUBEGET)
    if what not in KUBEGET_WHAT:
        raise ValidationError(
            f"what must be one of {', '.join(KUBEGET_WHAT)}, got {what!r}", line=index, directive=CMD_KUBEGET
        )
    return KubeGetCommand(
        index=index,
        raw_args=raw_args,
        what=what,
        namespaces=_list(args.get("namespaces")),
        groups=_list(args.get("groups")),
        kinds=_list(args.get("kinds")),
        versions=_list(args.get("versions")),
        names=_list(args.get("names")),
        labels=_list(args.get("labels")),
        containers=_list(args.get("containers")),
    )


# ---------------------------------------------------------------------
# Capability table
# ---------------------------------------------------------------------

class Kind(Enum):
    PREAMBLE = "preamble"
    ACTION = "action"


class Merge(Enum):
    REPLACE = "replace"  # last occurrence wins
    APPEND = "append"    # every occurrence kept, in order


@dataclass(frozen=True)
class Directive:
    name: str
    kind: Kind
    merge: Merge
    min_args: int
    max_args: int  # -1 = unbounded
    params: FrozenSet[str]
    factory: Callable[[int, str], Command]
    default_param: Optional[str] = None
    supported: bool = True


def _d(name, kind, merge, min_args, max_args, params, factory, default_param=None) -> Directive:
    return Directive(name, kind, merge, min_args, max_args, frozenset(params), factory, default_param)


P, A = Kind.PREAMBLE, Kind.ACTION
REPLACE, APPEND = Merge.REPLACE, Merge.APPEND

DIRECTIVES: Dict[str, Directive] = {
    d.name: d
    for d in (
        _d(CMD_AS, P, REPLACE, 1, 2, {"userid", "groupid"}, new_as_command, "user"),
        _d(CMD_ENV, P, APPEND, 1, 1, {"vars"}, new_env_command, "vars"),
        _d(CMD_FROM, P, REPLACE, 1, 2, {"hosts", "port"}, new_from_command, "hosts"),
        _d(CMD_KUBECONFIG, P, REPLACE, 1, 1, {"path"}, new_kubeconfig_command),
        _d(CMD_AUTHCONFIG, P, REPLACE, 1, 2, {"username", "private-key"}, new_authconfig_command),
        _d(CMD_OUTPUT, P, REPLACE, 1, 1, {"path"}, new_output_command),
        _d(CMD_WORKDIR, P, REPLACE, 1, 1, {"path"}, new_workdir_command),
        _d(CMD_CAPTURE, A, APPEND, 1, 1, {"cmd"}, new_capture_command, "cmd"),
        _d(CMD_COPY, A, APPEND, 1, 1, {"paths"}, new_copy_command, "paths"),
        _d(CMD_RUN, A, APPEND, 1, 1, {"cmd"}, new_run_command, "cmd"),
        _d(
            CMD_KUBEGET, A, APPEND, 1, 8,
            {"what", "namespaces", "groups", "kinds", "versions", "names", "labels", "containers"},
            new_kubeget_command,
        ),
    )
}

REQUIRED_PREAMBLES = (CMD_AS, CMD_FROM, CMD_AUTHCONFIG, CMD_OUTPUT, CMD_WORKDIR, CMD_KUBECONFIG)


# ---------------------------------------------------------------------
# Script
# ---------------------------------------------------------------------

@dataclass
class Script:
    """
    A parsed job.

    preambles: directive name -> commands (one for REPLACE directives,
               every occurrence for ENV)
    actions:   executable commands in source order
    """
    preambles: Dict[str, List[Command]] = field(default_factory=dict)
    actions: List[Command] = field(default_factory=list)

    def preamble(self, name: str) -> Command:
        cmds = self.preambles.get(name)
        if not cmds:
            raise ValidationError(f"script missing valid {name}", directive=name)
        return cmds[0]

    def env(self) -> List[str]:
        """Every ENV entry, in declaration order, duplicates kept."""
        pairs: List[str] = []
        for cmd in self.preambles.get(CMD_ENV, []):
            pairs.extend(cmd.envs)
        return pairs

    def add(self, cmd: Command) -> None:
        entry = DIRECTIVES[cmd.name]
        if entry.kind is Kind.ACTION:
            self.actions.append(cmd)
        elif entry.merge is Merge.REPLACE:
            self.preambles[cmd.name] = [cmd]
        else:
            self.preambles.setdefault(cmd.name, []).append(cmd)


def new_command(name: str, index: int, raw_args: str) -> Command:
    """Build a command through the capability table; errors carry the line."""
    entry = DIRECTIVES.get(name)
    if entry is None or not entry.supported:
        raise ScriptSyntaxError("unsupported directive", line=index, directive=name)
    try:
        return entry.factory(index, raw_args)
    except FlareError as e:
        raise e.at(index, name)


def command_to_dict(cmd: Command) -> dict:
    """Plain-data view of a command, for printing or handing to collaborators."""
    out = {"directive": cmd.name, "line": cmd.index}
    for f in fields(cmd):
        if f.name in ("index", "raw_args"):
            continue
        value = getattr(cmd, f.name)
        if isinstance(value, tuple):
            value = [str(v) for v in value]
        elif isinstance(value, Path):
            value = str(value)
        out[f.name] = value
    return out


def script_to_dict(script: Script) -> dict:
    return {
        "preambles": {
            name: [command_to_dict(c) for c in cmds] for name, cmds in sorted(script.preambles.items())
        },
        "actions": [command_to_dict(c) for c in script.actions],
    }
