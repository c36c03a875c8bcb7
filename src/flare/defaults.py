# defaults.py
from __future__ import annotations

import logging
import os
from typing import Optional

from pydantic import BaseModel

from .dsl import make_named_param
from .errors import DefaultResolutionError, FlareError
from .model import (
    CMD_AS,
    CMD_AUTHCONFIG,
    CMD_FROM,
    CMD_KUBECONFIG,
    CMD_OUTPUT,
    CMD_WORKDIR,
    LOCAL_NODE,
    Script,
    new_command,
)

logger = logging.getLogger(__name__)

DEFAULT_WORKDIR = "/tmp/flareout"
DEFAULT_OUTPUT = "out.tar.gz"


class DefaultsConfig(BaseModel):
    """
    Process facts and fixed paths used to fill directives a script leaves out.
    Built once (see from_env) and passed in, so resolution never reads
    ambient state by itself.
    """
    uid: int
    gid: int
    username: str = ""
    home: str = "~"
    from_value: str = LOCAL_NODE
    workdir: str = DEFAULT_WORKDIR
    output: str = DEFAULT_OUTPUT
    kubeconfig: Optional[str] = None
    private_key: Optional[str] = None

    @classmethod
    def from_env(cls) -> "DefaultsConfig":
        home = os.environ.get("HOME") or os.path.expanduser("~")
        return cls(
            uid=os.getuid(),
            gid=os.getgid(),
            username=os.environ.get("USER", ""),
            home=home,
            workdir=os.environ.get("FLARE_WORKDIR", DEFAULT_WORKDIR),
            output=os.environ.get("FLARE_OUTPUT", DEFAULT_OUTPUT),
            kubeconfig=os.environ.get("KUBECONFIG"),
        )

    @property
    def kubeconfig_path(self) -> str:
        return self.kubeconfig or os.path.join(self.home, ".kube", "config")

    @property
    def private_key_path(self) -> str:
        return self.private_key or os.path.join(self.home, ".ssh", "id_rsa")


DEFAULT_BUILDERS = {
    CMD_AS: lambda c: f"userid:{c.uid} groupid:{c.gid}",
    CMD_FROM: lambda c: make_named_param("hosts", c.from_value),
    CMD_AUTHCONFIG: lambda c: " ".join(
        ([make_named_param("username", c.username)] if c.username else [])
        + [make_named_param("private-key", c.private_key_path)]
    ),
    CMD_WORKDIR: lambda c: make_named_param("path", c.workdir),
    CMD_OUTPUT: lambda c: make_named_param("path", c.output),
    CMD_KUBECONFIG: lambda c: make_named_param("path", c.kubeconfig_path),
}


def enforce_defaults(script: Script, config: DefaultsConfig | None = None) -> Script:
    """
    Add a line-0 command for every configuration directive the script did
    not set. Defaults go through the same factories as user input.
    """
    if config is None:
        config = DefaultsConfig.from_env()

    logger.debug("Applying default values")
    for name, build in DEFAULT_BUILDERS.items():
        if script.preambles.get(name):
            continue
        raw_args = ""
        try:
            raw_args = build(config)
            cmd = new_command(name, 0, raw_args)
        except (FlareError, ValueError) as e:
            raise DefaultResolutionError(
                f"cannot build default: {e}", line=0, directive=name, details={"args": raw_args}
            ) from e
        script.add(cmd)
        logger.debug("%s %s (as default)", name, raw_args)
    return script
