# runner.py
from __future__ import annotations

import logging
import os
import shutil
import stat
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .archive import bundle
from .dsl import flatten_command
from .errors import CaptureExecutionError, CopyPathError, FlareError
from .model import (
    CMD_AS,
    CMD_FROM,
    CMD_KUBEGET,
    CMD_OUTPUT,
    CMD_RUN,
    CMD_WORKDIR,
    AsCommand,
    CaptureCommand,
    Command,
    CopyCommand,
    FromCommand,
    Node,
    OutputCommand,
    Script,
    WorkdirCommand,
)

logger = logging.getLogger(__name__)

# RUN / KUBEGET handlers supplied by transport or cluster collaborators.
Delegate = Callable[[Node, Command, Script], None]

_OUTPUT_TAIL = 4000


@dataclass
class RunResult:
    workdir: Path
    archive: Optional[Path] = None
    captured: List[Path] = field(default_factory=list)
    copied: List[Path] = field(default_factory=list)
    copy_errors: List[CopyPathError] = field(default_factory=list)
    delegated: List[Tuple[str, int]] = field(default_factory=list)  # (node, line)


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def _is_within(path: Path, root: Path) -> bool:
    """True when path is root itself or lies below it."""
    rel = os.path.relpath(path, root)
    return not (rel == os.pardir or rel.startswith(os.pardir + os.sep))


def _merged_env(pairs: List[str]) -> Dict[str, str]:
    env = os.environ.copy()
    for pair in pairs:
        key, _, value = pair.partition("=")
        env[key] = value
    return env


def _copy_tree(cmd: CopyCommand, src: Path, dest: Path, skip: Path, copied: List[Path]) -> None:
    """Mirror src at dest, keeping its relative layout. Never descends into skip."""
    try:
        st = src.lstat()
    except OSError as e:
        raise CopyPathError(f"cannot stat {src}: {e}", line=cmd.index, directive=cmd.name) from e

    if stat.S_ISDIR(st.st_mode):
        try:
            dest.mkdir(parents=True, exist_ok=True)
            children = sorted(src.iterdir())
        except OSError as e:
            raise CopyPathError(f"cannot copy directory {src}: {e}", line=cmd.index, directive=cmd.name) from e
        logger.debug("Created subpath %s", dest)
        for child in children:
            if child.resolve() == skip:
                logger.debug("Skipping working directory %s inside %s", child, src)
                continue
            _copy_tree(cmd, child, dest / child.name, skip, copied)

    elif stat.S_ISREG(st.st_mode):
        logger.debug("Copying %s -> %s", src, dest)
        try:
            shutil.copyfile(src, dest)
            written = dest.stat().st_size
        except OSError as e:
            raise CopyPathError(f"cannot copy {src}: {e}", line=cmd.index, directive=cmd.name) from e
        if written != st.st_size:
            raise CopyPathError(
                f"copy did not complete for {src}",
                line=cmd.index,
                directive=cmd.name,
                details={"expected": str(st.st_size), "written": str(written)},
            )
        copied.append(dest)

    else:
        raise CopyPathError(f"unknown file type for {src}", line=cmd.index, directive=cmd.name)


def _capture_path(node_dir: Path, cmd: CaptureCommand, taken: List[Path]) -> Path:
    """
    Output file for a CAPTURE. Flattening is lossy, so a name already written
    in this run gets the source line appended (then a counter if need be).
    """
    stem = flatten_command(cmd.cli)
    path = node_dir / f"{stem}.txt"
    n = 0
    while path in taken:
        n += 1
        suffix = f"_L{cmd.index}" if n == 1 else f"_L{cmd.index}_{n}"
        path = node_dir / f"{stem}{suffix}.txt"
    return path


def run_capture(
    cmd: CaptureCommand,
    uid: int,
    gid: int,
    env: Dict[str, str],
) -> bytes:
    """
    Run a CAPTURE command line and return its stdout.
    The process identity is only switched when it differs from ours.
    """
    program, args = cmd.parsed_cli()
    kwargs = {}
    if uid != os.getuid():
        kwargs["user"] = uid
    if gid != os.getgid():
        kwargs["group"] = gid

    logger.debug("Running %s %s as %d:%d", program, args, uid, gid)
    try:
        proc = subprocess.run(
            [program, *args],
            env=env,
            capture_output=True,
            **kwargs,
        )
    except (OSError, ValueError, OverflowError, subprocess.SubprocessError) as e:
        raise CaptureExecutionError(
            f"cannot start {program!r}: {e}", line=cmd.index, directive=cmd.name
        ) from e

    if proc.returncode != 0:
        raise CaptureExecutionError(
            f"{cmd.cli!r} failed (exit={proc.returncode})",
            line=cmd.index,
            directive=cmd.name,
            details={
                "exit_code": str(proc.returncode),
                "stderr": proc.stderr[-_OUTPUT_TAIL:].decode("utf-8", errors="replace").strip(),
            },
        )
    return proc.stdout


# ----------------------------------------------------------------------
# Executor
# ----------------------------------------------------------------------

class Executor:
    """
    Runs a parsed Script: every action, in order, for every FROM node.

    Output for a node lives in <workdir>/<node>/. COPY failures are logged per
    path and the run goes on; every other failure aborts the run.
    """

    def __init__(
        self,
        script: Script,
        delegates: Optional[Dict[str, Delegate]] = None,
        archive: bool = True,
    ):
        self.script = script
        self.delegates = dict(delegates or {})
        self.archive = archive

    def execute(self) -> RunResult:
        logger.info("Executing script")
        script = self.script

        from_cmd: FromCommand = script.preamble(CMD_FROM)
        as_cmd: AsCommand = script.preamble(CMD_AS)
        workdir_cmd: WorkdirCommand = script.preamble(CMD_WORKDIR)

        # resolve identity before touching the filesystem
        uid, gid = as_cmd.get_credentials()
        logger.debug("Using identity %d:%d", uid, gid)

        workdir = workdir_cmd.path.resolve()
        workdir.mkdir(parents=True, exist_ok=True)
        logger.debug("Using workdir %s", workdir)

        env = _merged_env(script.env())
        result = RunResult(workdir=workdir)

        for node in from_cmd.nodes:
            node_dir = workdir / node.dirname
            node_dir.mkdir(parents=True, exist_ok=True)
            logger.info("Processing node %s", node)

            for action in script.actions:
                if isinstance(action, CopyCommand):
                    self._copy(action, workdir, node_dir, result)
                elif isinstance(action, CaptureCommand):
                    self._capture(action, uid, gid, env, node_dir, result)
                elif action.name in (CMD_RUN, CMD_KUBEGET):
                    self._delegate(node, action, result)

        if self.archive:
            result.archive = self._bundle(workdir, result)
        return result

    def _copy(self, cmd: CopyCommand, workdir: Path, node_dir: Path, result: RunResult) -> None:
        for path in cmd.paths:
            src = Path(os.path.abspath(path))
            if _is_within(path.resolve(), workdir):
                err = CopyPathError(
                    f"path {path} cannot be relative to workdir {workdir}", line=cmd.index, directive=cmd.name
                )
                logger.error("%s", err)
                result.copy_errors.append(err)
                continue

            logger.debug("Copying content from %s", src)
            # mirror the absolute source path so same-named sources stay apart
            rel = src.relative_to(src.anchor)
            dest = node_dir / rel if rel.parts else node_dir / "root"
            try:
                _copy_tree(cmd, src, dest, workdir, result.copied)
            except CopyPathError as err:
                logger.error("%s", err)
                result.copy_errors.append(err)

    def _capture(
        self,
        cmd: CaptureCommand,
        uid: int,
        gid: int,
        env: Dict[str, str],
        node_dir: Path,
        result: RunResult,
    ) -> None:
        output = run_capture(cmd, uid, gid, env)
        file_path = _capture_path(node_dir, cmd, result.captured)
        logger.debug("Capturing command out: [%s] -> %s", cmd.cli, file_path)
        try:
            file_path.write_bytes(output)
        except OSError as e:
            raise CaptureExecutionError(
                f"cannot write {file_path}: {e}", line=cmd.index, directive=cmd.name
            ) from e
        result.captured.append(file_path)

    def _delegate(self, node: Node, cmd: Command, result: RunResult) -> None:
        handler = self.delegates.get(cmd.name)
        if handler is None:
            logger.info("%s (line %d) has no handler, skipping", cmd.name, cmd.index)
            return
        handler(node, cmd, self.script)
        result.delegated.append((str(node), cmd.index))

    def _bundle(self, workdir: Path, result: RunResult) -> Path:
        output: OutputCommand = self.script.preamble(CMD_OUTPUT)
        manifest = {
            "nodes": [str(n) for n in self.script.preamble(CMD_FROM).nodes],
            "actions": [{"line": a.index, "directive": a.name, "args": a.raw_args} for a in self.script.actions],
            "captured": [p.relative_to(workdir).as_posix() for p in result.captured],
            "copy_errors": [str(e) for e in result.copy_errors],
        }
        try:
            return bundle(workdir, output.path, manifest)
        except (OSError, ValueError) as e:
            raise FlareError(f"cannot write bundle {output.path}: {e}", directive=CMD_OUTPUT) from e


def execute(
    script: Script,
    delegates: Optional[Dict[str, Delegate]] = None,
    archive: bool = True,
) -> RunResult:
    return Executor(script, delegates=delegates, archive=archive).execute()
